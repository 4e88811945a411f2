"""
Trading engine: wires the classifier, resolver, sizing, guard, spike detector
and profit taker into one serialized control loop.

tick() runs every phase in a fixed order against a single settings snapshot.
Each text event is carried through classify -> resolve -> size -> execute
before the next one is looked at.
"""
import time
from typing import Any, Callable, Dict, List, Optional, Set

from loguru import logger

from ad_classifier import AdClassifier, find_brand, resolve_ad_instrument
from classifier import ConfidenceClassifier, summarize_analysis
from config import BotConfig, BotSettings
from market_resolver import MarketCache, MarketResolver, instrument_from_market
from models import (
    Instrument,
    MarketKind,
    OrderAction,
    Position,
    Side,
    Signal,
    SignalAction,
    SkipReason,
    TextEvent,
    Tier,
    synthetic_signal,
)
from order_guard import OrderExecutionGuard
from position_sizing import SizingResult, SourceReliabilityTracker, size_signal
from profit_taker import ProfitTaker, legs_from_positions
from reports import build_daily_summary, format_daily_summary
from settings_store import SettingsStore, format_settings_changes, format_settings_summary
from spike_detector import OrderbookMonitor, PriceSpikeMonitor

BOT_NAME = "nba_trade_bot"


class TradingEngine:
    """
    Single owner of all per-instrument state (price windows, dedup map, pending sells).

    Usage:
        engine = TradingEngine(config, kalshi, db, settings_store, notifier,
                               classifier, ad_classifier, poller, market_cache)
        await engine.start()
        await engine.tick()
    """

    def __init__(
        self,
        config: BotConfig,
        kalshi: Any,
        db: Any,
        settings_store: SettingsStore,
        notifier: Any,
        classifier: ConfidenceClassifier,
        ad_classifier: Optional[AdClassifier] = None,
        poller: Any = None,
        market_cache: Optional[MarketCache] = None,
        live_trading: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.kalshi = kalshi
        self.db = db
        self.settings_store = settings_store
        self.notifier = notifier
        self.classifier = classifier
        self.ad_classifier = ad_classifier or AdClassifier()
        self.poller = poller
        self.live_trading = live_trading
        self._clock = clock

        sched = config.scheduler
        self.market_cache = market_cache or MarketCache(
            kalshi, sched.market_cache_ttl_seconds, sched.ad_market_cache_ttl_seconds, clock=clock
        )
        self.resolver = MarketResolver()
        self.reliability = SourceReliabilityTracker(db, clock=clock)
        self.guard = OrderExecutionGuard(
            kalshi, self.market_cache, notifier, db, config.execution, live_trading=live_trading, clock=clock
        )
        self.spike_monitor = PriceSpikeMonitor(
            self.guard, notifier, db, recent_signal_minutes=config.deadlines.recent_signal_minutes, clock=clock
        )
        self.orderbook_monitor = OrderbookMonitor(kalshi, notifier, db, clock=clock)
        self.profit_taker = ProfitTaker(
            kalshi, self.guard, self.market_cache, notifier, db, config.profit_taking, config.deadlines
        )

        self._processed: Set[str] = set()
        self._last_run: Dict[str, float] = {}
        self._stats = {"ticks": 0, "events": 0, "signals": 0, "orders": 0, "phase_errors": 0}

    @property
    def stats(self) -> Dict[str, int]:
        return self._stats.copy()

    @property
    def mode(self) -> str:
        return "live" if self.live_trading else "dry_run"

    # =========================================================================
    # Lifecycle
    # =========================================================================
    async def start(self) -> None:
        """Load settings and state, warm the market cache, announce startup."""
        self.settings_store.subscribe(self._on_settings_changed)
        await self.settings_store.refresh(force=True)
        settings = self.settings_store.get()

        if self.poller is not None:
            await self.poller.load_state()
        await self.market_cache.refresh(force=True)

        counts = {kind.value: len(self.market_cache.instruments(kind)) for kind in self.market_cache.kinds}
        logger.info(f"Engine started ({self.mode}); instruments: {counts}")
        await self._notify(
            f"BOT STARTED\n\n"
            f"Mode: {self.mode.upper()}\n"
            f"Markets: {counts}\n\n"
            f"{format_settings_summary(settings)}",
            force=True,
        )

    async def stop(self) -> None:
        if self.poller is not None:
            await self.poller.save_state()
        await self._persist_status("stopped")

    async def _on_settings_changed(
        self, old: BotSettings, new: BotSettings, changes: Dict[str, tuple]
    ) -> None:
        logger.info(f"Settings v{old.version} -> v{new.version}: {list(changes)}")
        await self._notify(f"SETTINGS UPDATED (v{new.version})\n\n{format_settings_changes(changes)}", force=True)

    def _due(self, phase: str, interval_seconds: float) -> bool:
        now = self._clock()
        last = self._last_run.get(phase)
        if last is not None and now - last < interval_seconds:
            return False
        self._last_run[phase] = now
        return True

    async def _run_phase(self, name: str, coro) -> Any:
        try:
            return await coro
        except Exception as e:
            self._stats["phase_errors"] += 1
            logger.error(f"Phase '{name}' failed: {e}")
            return None

    # =========================================================================
    # Control loop
    # =========================================================================
    async def tick(self) -> Dict[str, Any]:
        """One pass of every phase. Returns a summary of what ran."""
        self._stats["ticks"] += 1
        errors_before = self._stats["phase_errors"]
        sched = self.config.scheduler
        ran: List[str] = []

        if self.settings_store.is_stale():
            await self._run_phase("settings", self.settings_store.refresh())
        settings = self.settings_store.get()

        await self._run_phase("markets", self.market_cache.refresh())
        instruments = self.market_cache.all_instruments()

        if self._due("profit_taking", sched.profit_taking_interval_seconds):
            await self._run_phase("profit_taking", self.profit_taker.check_all_positions(settings))
            ran.append("profit_taking")

        trade_instruments = self.market_cache.instruments(MarketKind.TRADE)
        await self._run_phase("deadline_no_buy", self.profit_taker.check_deadline_no_buy(trade_instruments, settings))

        await self._run_phase("spikes", self.spike_monitor.check(instruments, settings))

        if settings.features.orderbook_monitoring and self._due("orderbook", sched.orderbook_interval_seconds):
            await self._run_phase("orderbook", self.orderbook_monitor.scan(instruments, settings))
            ran.append("orderbook")

        if self._due("price_history", sched.price_history_interval_seconds):
            await self._run_phase("price_history", self.record_price_history(instruments))
            ran.append("price_history")

        if self._due("resolution", sched.resolution_interval_minutes * 60):
            await self._run_phase("resolution", self.resolve_predictions())
            ran.append("resolution")

        # First tick only stamps the timer; the startup message already covers it
        if self._last_run.get("summary") is None:
            self._last_run["summary"] = self._clock()
        elif self._due("summary", sched.summary_interval_minutes * 60):
            await self._run_phase("summary", self.send_summary())
            ran.append("summary")

        processed = 0
        if settings.features.twitter_monitoring and self.poller is not None:
            events = await self._run_phase("poll", self.poller.poll()) or []
            for event in events:
                await self._run_phase("event", self.process_event(event, settings))
                processed += 1
            ran.append("poll")

        await self._run_phase("status", self._persist_status("running", settings))

        return {
            "tick": self._stats["ticks"],
            "settings_version": settings.version,
            "instruments": len(instruments),
            "events": processed,
            "phases": ran,
            "errors": self._stats["phase_errors"] - errors_before,
        }

    async def record_price_history(self, instruments: List[Instrument]) -> int:
        if self.db is None or not instruments:
            return 0
        rows = [
            {
                "market_ticker": i.ticker,
                "player_name": i.entity_name,
                "price_cents": i.yes_price,
                "volume": i.volume,
                "open_interest": i.open_interest,
            }
            for i in instruments
        ]
        return await self.db.insert_price_history(rows)

    async def resolve_predictions(self) -> int:
        """Score pending source predictions against settled trade and next-team markets."""
        if self.db is None:
            return 0
        resolved = 0
        for kind in (MarketKind.TRADE, MarketKind.NEXT_TEAM):
            for series in MarketCache.SERIES[kind]:
                for market in await self.kalshi.get_markets(series_ticker=series, status="settled", limit=200):
                    result = str(market.get("result") or "").lower()
                    if result not in ("yes", "no"):
                        continue
                    instrument = instrument_from_market(market, kind)
                    if not instrument.entity_name:
                        continue
                    if kind is MarketKind.TRADE:
                        resolved += await self.reliability.resolve(instrument.entity_name, traded=result == "yes")
                    elif result == "yes" and instrument.team_code:
                        resolved += await self.reliability.resolve(
                            instrument.entity_name, traded=True, team_code=instrument.team_code
                        )
        if resolved:
            logger.info(f"Resolved {resolved} source predictions from settled markets")
        return resolved

    async def send_summary(self) -> Dict[str, Any]:
        summary = await build_daily_summary(self.kalshi, self.profit_taker, self.db, self.market_cache)
        await self._notify(format_daily_summary(summary))
        return summary

    async def _persist_status(self, status: str, settings: Optional[BotSettings] = None) -> None:
        if self.db is None:
            return
        meta = {
            "mode": self.mode,
            "settings_version": settings.version if settings else self.settings_store.version,
            "instruments": len(self.market_cache.all_instruments()),
            **self._stats,
            "guard": self.guard.stats,
        }
        try:
            await self.db.upsert_bot_status(BOT_NAME, status, meta)
        except Exception as e:
            logger.error(f"Error persisting bot status: {e}")

    # =========================================================================
    # Text events
    # =========================================================================
    async def is_processed(self, event: TextEvent) -> bool:
        if event.id in self._processed:
            return True
        if self.db is None:
            return False
        try:
            return await self.db.is_tweet_processed(event.id)
        except Exception as e:
            logger.error(f"Error checking processed state for {event.id}: {e}")
            return False

    async def process_event(self, event: TextEvent, settings: BotSettings) -> List[Dict[str, Any]]:
        """Classify one event and act on each resulting signal, in order."""
        if await self.is_processed(event):
            logger.debug(f"Already processed {event.id}")
            return []
        self._processed.add(event.id)
        self._stats["events"] += 1

        if event.stream == "ad":
            if not settings.features.ad_trading:
                logger.debug(f"Ad trading disabled; ignoring {event.id}")
                await self._record_tweet(event, [])
                return []
            signals = await self.ad_classifier.classify(event)
        else:
            signals = await self.classifier.classify(event)

        await self._record_tweet(event, signals)
        if not signals:
            return []

        self._stats["signals"] += len(signals)
        logger.info(f"@{event.author}: {len(signals)} signal(s) from {event.id}")
        if event.stream != "ad":
            analysis = self.classifier.last_analysis
            details = summarize_analysis(analysis) if analysis else "\n".join(
                f"{s.entity_name}: {s.tier.value.upper()} ({s.score})" for s in signals
            )
            await self._notify(
                f"TRADE TWEET DETECTED\n\n"
                f"@{event.author}:\n\"{event.text[:200]}\"\n\n"
                f"{details}"
            )

        results = []
        for signal in signals:
            results.append(await self.execute_signal(signal, settings))
        return results

    async def _record_tweet(self, event: TextEvent, signals: List[Signal]) -> None:
        if self.db is None:
            return
        top = min(signals, key=lambda s: s.tier.rank) if signals else None
        try:
            await self.db.upsert_tweet({
                "tweet_id": event.id,
                "author": event.author,
                "text": event.text,
                "tweeted_at": event.timestamp.isoformat(),
                "players_mentioned": [s.entity_name for s in signals],
                "confidence_tier": top.tier.value if top else None,
                "signals_count": len(signals),
            })
        except Exception as e:
            logger.error(f"Failed to record tweet {event.id}: {e}")

    # =========================================================================
    # Signal execution
    # =========================================================================
    async def execute_signal(self, signal: Signal, settings: BotSettings) -> Dict[str, Any]:
        """Resolve, size and submit one signal through the guard."""
        if signal.action is SignalAction.HOLD:
            return {"success": False, "skipped": True, "error": "hold signal"}
        if signal.event.stream == "ad":
            return await self._execute_ad_signal(signal, settings)

        instrument = self.resolver.resolve(signal.entity_name, self.market_cache.instruments(MarketKind.TRADE))
        if instrument is None:
            logger.info(f"No trade market for {signal.entity_name}; skipping")
            await self._record_signal(signal, None, {"skip_reason": SkipReason.NO_INSTRUMENT})
            return {"success": False, "skipped": True, "skip_reason": SkipReason.NO_INSTRUMENT,
                    "error": f"No instrument for {signal.entity_name}"}

        side = signal.side
        source_multiplier = await self.reliability.multiplier(signal.event.author)
        sizing = size_signal(
            signal.tier, signal.score, instrument.price_for(side), source_multiplier,
            settings.base_count_for(MarketKind.TRADE),
        )
        logger.info(
            f"{signal.entity_name}: {signal.tier.value} {side.value.upper()} -> {sizing.contracts} contracts "
            f"({sizing.pct:.2f} of base, source {source_multiplier:.2f}x)"
        )
        await self.reliability.track_prediction(
            signal.event.author, signal.entity_name, signal.tier, signal.event.id, signal.destination
        )

        if sizing.is_skip:
            result = {"success": False, "skipped": True, "skip_reason": SkipReason.ZERO_CONTRACTS,
                      "error": "Zero contracts"}
            await self._record_signal(signal, instrument, result, sizing)
            return result

        await self.close_opposite_leg(instrument, side, signal, settings)

        result = await self.guard.execute(
            instrument, side, OrderAction.BUY, sizing.contracts, settings.tier_max_price(signal.tier),
            signal, settings,
        )
        if result.get("success"):
            self._stats["orders"] += 1
        await self._record_signal(signal, instrument, result, sizing)

        if signal.action is SignalAction.BUY_YES and signal.destination:
            result["next_team"] = await self.buy_next_team(signal, settings, source_multiplier)
        return result

    async def close_opposite_leg(
        self, instrument: Instrument, side: Side, signal: Signal, settings: BotSettings
    ) -> Optional[Dict[str, Any]]:
        """Sell any live leg on the other side of the ticker before buying this side."""
        opposite = side.opposite
        legs = legs_from_positions(await self.kalshi.get_positions())
        leg = next((p for p in legs if p.ticker == instrument.ticker and p.side is opposite), None)
        if leg is None or leg.contracts <= 0:
            return None

        logger.info(f"Closing {leg.contracts} {opposite.value.upper()} on {instrument.ticker} before {side.value.upper()} buy")
        await self._notify(
            f"EXITING {opposite.value.upper()} POSITION\n\n"
            f"Player: {signal.entity_name}\n"
            f"Selling {leg.contracts} {opposite.value.upper()} contracts\n"
            f"Reason: {signal.tier.value} signal favors {side.value.upper()}"
        )
        return await self.guard.execute(
            instrument, opposite, OrderAction.SELL, leg.contracts,
            self.config.execution.conflict_exit_floor, signal, settings,
        )

    async def buy_next_team(
        self, signal: Signal, settings: BotSettings, source_multiplier: float
    ) -> Optional[Dict[str, Any]]:
        instrument = self.resolver.resolve_next_team(
            signal.entity_name, signal.destination, self.market_cache.instruments(MarketKind.NEXT_TEAM)
        )
        if instrument is None:
            logger.debug(f"No next-team market for {signal.entity_name} -> {signal.destination}")
            return None

        sizing = size_signal(
            signal.tier, signal.score, instrument.yes_price, source_multiplier,
            settings.base_count_for(MarketKind.NEXT_TEAM),
        )
        if sizing.is_skip:
            return None
        await self._notify(
            f"NEXT TEAM TRADE\n\n"
            f"Player: {signal.entity_name}\n"
            f"Team: {instrument.team_name or signal.destination}\n"
            f"Market: {instrument.ticker}\n"
            f"Contracts: {sizing.contracts} @ {instrument.yes_price}c"
        )
        result = await self.guard.execute(
            instrument, Side.YES, OrderAction.BUY, sizing.contracts, settings.tier_max_price(signal.tier),
            signal, settings,
        )
        if result.get("success"):
            self._stats["orders"] += 1
        await self._record_signal(signal, instrument, result, sizing)
        return result

    async def _execute_ad_signal(self, signal: Signal, settings: BotSettings) -> Dict[str, Any]:
        brand = find_brand(signal.entity_name)
        instrument = None
        if brand is not None:
            instrument = resolve_ad_instrument(brand, self.market_cache.instruments(MarketKind.AD))
        if instrument is None:
            logger.info(f"No ad market for {signal.entity_name}; skipping")
            await self._record_signal(signal, None, {"skip_reason": SkipReason.NO_INSTRUMENT})
            return {"success": False, "skipped": True, "skip_reason": SkipReason.NO_INSTRUMENT,
                    "error": f"No ad instrument for {signal.entity_name}"}

        source_multiplier = await self.reliability.multiplier(signal.event.author)
        sizing = size_signal(
            signal.tier, signal.score, instrument.yes_price, source_multiplier,
            settings.base_count_for(MarketKind.AD),
        )
        if sizing.is_skip:
            return {"success": False, "skipped": True, "skip_reason": SkipReason.ZERO_CONTRACTS,
                    "error": "Zero contracts"}

        result = await self.guard.execute(
            instrument, Side.YES, OrderAction.BUY, sizing.contracts,
            settings.tier_max_price(signal.tier, MarketKind.AD), signal, settings,
        )
        if result.get("success"):
            self._stats["orders"] += 1
        await self._record_signal(signal, instrument, result, sizing)
        return result

    async def _record_signal(
        self,
        signal: Signal,
        instrument: Optional[Instrument],
        result: Dict[str, Any],
        sizing: Optional[SizingResult] = None,
    ) -> None:
        if self.db is None:
            return
        skip = result.get("skip_reason")
        try:
            await self.db.record_signal({
                "signal_type": "ad" if signal.event.stream == "ad" else "text",
                "market_ticker": instrument.ticker if instrument else None,
                "entity_name": signal.entity_name,
                "tier": signal.tier.value,
                "score": signal.score,
                "action": signal.action.value,
                "source": signal.event.author,
                "event_id": signal.event.id,
                "meta": {
                    "destination": signal.destination,
                    "reasoning": signal.reasoning,
                    "contracts": sizing.contracts if sizing else None,
                    "order_id": result.get("order_id"),
                    "price": result.get("price"),
                    "skip_reason": skip.value if isinstance(skip, SkipReason) else skip,
                },
            })
        except Exception as e:
            logger.error(f"Failed to record signal for {signal.entity_name}: {e}")

    # =========================================================================
    # Read views and manual actions
    # =========================================================================
    async def positions(self) -> List[Position]:
        """Live position legs, never cached."""
        if not self.market_cache.all_instruments():
            await self.market_cache.refresh()
        return await self.profit_taker.load_positions(with_entries=True)

    async def balance(self) -> Optional[Dict[str, float]]:
        return await self.kalshi.get_balance()

    async def recommend(self, text: str, author: str = "manual") -> List[Dict[str, Any]]:
        """What the engine would do with this text, without placing anything."""
        await self.market_cache.refresh()
        settings = self.settings_store.get()
        event = TextEvent(id=f"recommend-{int(self._clock() * 1000)}", text=text, author=author)
        recommendations = []
        for signal in await self.classifier.classify(event):
            instrument = self.resolver.resolve(signal.entity_name, self.market_cache.instruments(MarketKind.TRADE))
            row = {**signal.to_dict(), "ticker": None, "price": None, "contracts": 0,
                   "max_price": settings.tier_max_price(signal.tier)}
            if instrument is not None:
                price = instrument.price_for(signal.side)
                multiplier = await self.reliability.multiplier(author)
                sizing = size_signal(
                    signal.tier, signal.score, price, multiplier, settings.base_count_for(MarketKind.TRADE)
                )
                row.update({"ticker": instrument.ticker, "price": price, "contracts": sizing.contracts})
            recommendations.append(row)
        return recommendations

    async def trade_now(
        self,
        player: str,
        count: Optional[int] = None,
        max_price: Optional[int] = None,
        slippage: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Operator-initiated YES buy on a player's trade market, through the guard."""
        manual = self.config.manual_trade
        count = manual.contract_count if count is None else count
        max_price = manual.max_yes_price if max_price is None else max_price
        slippage = manual.slippage if slippage is None else slippage

        await self.settings_store.refresh()
        settings = self.settings_store.get()
        await self.market_cache.refresh()
        instrument = self.resolver.resolve(player, self.market_cache.instruments(MarketKind.TRADE))
        if instrument is None:
            return {"success": False, "skip_reason": SkipReason.NO_INSTRUMENT, "error": f"No market for {player}"}

        quote = await self.guard.quote(instrument, Side.YES)
        limit = max_price if quote.reference is None else min(quote.reference + slippage, max_price)
        logger.info(f"Manual trade: {count} YES {instrument.ticker} (ref {quote.reference}c, limit {limit}c)")

        event_id = f"manual-{int(self._clock() * 1000)}"
        signal = synthetic_signal(Tier.CONFIRMED, instrument.entity_name, event_id, author="manual", score=100)
        return await self.guard.execute(instrument, Side.YES, OrderAction.BUY, count, limit, signal, settings)

    async def _notify(self, message: str, force: bool = False) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.send(message, force=force)
        except Exception as e:
            logger.error(f"Notification failed: {e}")
