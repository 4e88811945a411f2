"""
Price-movement and orderbook-flow detection.

PriceWindow / SpikeDetector: per-instrument rolling price history. A move of
price_alert_threshold or more (oldest sample below the alert ceiling) on a
market with enough volume fires an alert and resets the window to the current
sample. Sub-threshold ticks only slide the window. Low-volume candidates reset
the window without alerting.

PriceSpikeMonitor: turns upward spikes into notifications and, behind a
stack of gates and a cooldown, into auto-buys.

OrderbookMonitor: compares consecutive orderbook snapshots on "hot" markets
and reports one-sided consumed depth.
"""
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from loguru import logger

from config import BotSettings
from models import Instrument, MarketKind, OrderAction, Side, Tier, synthetic_signal
from position_sizing import spike_contracts

PRICE_WINDOW_SECONDS = 300
LARGE_ORDER_THRESHOLD = 2000
ORDERBOOK_HISTORY = 10
HOT_MIN_PRICE = 30
HOT_MAX_PRICE = 90
HOT_MARKET_LIMIT = 15


@dataclass
class PriceSample:
    price: int
    timestamp: float


class PriceWindow:
    """Time-bounded price history for one instrument."""

    def __init__(self, window_seconds: float = PRICE_WINDOW_SECONDS):
        self.window_seconds = window_seconds
        self.samples: List[PriceSample] = []

    def add(self, price: int, now: float) -> None:
        self.samples.append(PriceSample(price, now))
        self.prune(now)

    def prune(self, now: float) -> None:
        self.samples = [s for s in self.samples if now - s.timestamp < self.window_seconds]

    def reset(self, price: int, now: float) -> None:
        self.samples = [PriceSample(price, now)]

    @property
    def oldest(self) -> Optional[PriceSample]:
        return self.samples[0] if self.samples else None

    @property
    def low(self) -> Optional[int]:
        return min((s.price for s in self.samples), default=None)

    def __len__(self) -> int:
        return len(self.samples)


@dataclass
class PriceAlert:
    """A volume-backed price move that cleared the alert threshold."""

    ticker: str
    entity_name: str
    old_price: int
    new_price: int
    pct_change: float
    elapsed_seconds: float
    volume: int
    open_interest: int
    session_low: int
    is_spike: bool = False
    high_volume: bool = False

    @property
    def direction(self) -> str:
        return "UP" if self.new_price > self.old_price else "DOWN"

    @property
    def move_cents(self) -> int:
        return self.new_price - self.old_price

    @property
    def significance(self) -> float:
        return self.pct_change * self.volume

    def to_meta(self) -> Dict[str, Any]:
        return {
            "player_name": self.entity_name,
            "old_price": self.old_price,
            "new_price": self.new_price,
            "pct_change": round(self.pct_change, 4),
            "direction": self.direction,
            "volume": self.volume,
            "open_interest": self.open_interest,
            "significance_score": round(self.significance, 1),
            "source": "price_monitor",
        }


class SpikeDetector:
    """
    Owns every instrument's PriceWindow. Single writer: only evaluate() mutates.
    """

    def __init__(self, window_seconds: float = PRICE_WINDOW_SECONDS):
        self.window_seconds = window_seconds
        self.windows: Dict[str, PriceWindow] = {}
        self.suppressed_low_volume = 0

    def window(self, ticker: str) -> PriceWindow:
        if ticker not in self.windows:
            self.windows[ticker] = PriceWindow(self.window_seconds)
        return self.windows[ticker]

    def evaluate(self, instrument: Instrument, settings: BotSettings, now: float) -> Optional[PriceAlert]:
        """Add the current price and return an alert if one fires."""
        price = instrument.yes_price
        if price <= 0:
            return None

        window = self.window(instrument.ticker)
        window.add(price, now)
        if len(window) < 2:
            return None

        oldest = window.oldest
        pct_change = abs(price - oldest.price) / oldest.price
        if pct_change < settings.price_alert_threshold or oldest.price >= settings.price_alert_ceiling:
            return None

        if instrument.volume < settings.min_volume_for_alert:
            logger.info(
                f"{instrument.entity_name}: {pct_change * 100:.1f}% move but low volume "
                f"({instrument.volume} < {settings.min_volume_for_alert}); ignoring"
            )
            self.suppressed_low_volume += 1
            window.reset(price, now)
            return None

        alert = PriceAlert(
            ticker=instrument.ticker,
            entity_name=instrument.entity_name,
            old_price=oldest.price,
            new_price=price,
            pct_change=pct_change,
            elapsed_seconds=now - oldest.timestamp,
            volume=instrument.volume,
            open_interest=instrument.open_interest,
            session_low=window.low,
            is_spike=price > oldest.price and pct_change * 100 >= settings.price_spike_threshold,
            high_volume=instrument.volume >= settings.min_volume_for_auto_buy,
        )
        window.reset(price, now)
        return alert


def spike_buy_block_reason(
    old_price: int,
    new_price: int,
    session_low: Optional[int],
    settings: BotSettings,
) -> Optional[str]:
    """Why an upward spike must not be bought, or None when every price gate passes."""
    if new_price < settings.price_spike_min_price:
        return f"too cheap ({new_price}c < {settings.price_spike_min_price}c)"
    if new_price - old_price < settings.price_spike_min_move_cents:
        return f"only moved {new_price - old_price}c (need {settings.price_spike_min_move_cents}c)"
    if new_price >= settings.price_spike_max_entry:
        return f"too expensive ({new_price}c >= {settings.price_spike_max_entry}c)"
    if session_low:
        runup = (new_price - session_low) / session_low * 100
        if runup > settings.price_spike_max_runup_pct:
            return f"already up {runup:.0f}% from session low {session_low}c"
    if old_price > 0 and (new_price - old_price) / old_price * 100 < settings.price_spike_threshold:
        return "below spike threshold"
    return None


@dataclass
class PendingSpike:
    """An accepted spike waiting out the cooldown before buying."""

    ticker: str
    entity_name: str
    old_price: int
    detected_price: int
    detected_at: float


class PriceSpikeMonitor:
    """
    Runs the detector over the instrument cache each tick and acts on alerts.

    Usage:
        monitor = PriceSpikeMonitor(guard, notifier, db)
        alerts = await monitor.check(instruments, settings)
    """

    def __init__(
        self,
        guard: Any,
        notifier: Any = None,
        db: Any = None,
        detector: Optional[SpikeDetector] = None,
        recent_signal_minutes: int = 30,
        clock: Callable[[], float] = time.time,
    ):
        self.guard = guard
        self.notifier = notifier
        self.db = db
        self.detector = detector or SpikeDetector()
        self.recent_signal_minutes = recent_signal_minutes
        self._clock = clock
        self.pending: Dict[str, PendingSpike] = {}
        self._stats = {"alerts": 0, "spikes": 0, "buys": 0, "blocked": 0}

    @property
    def stats(self) -> Dict[str, int]:
        return self._stats.copy()

    async def check(self, instruments: List[Instrument], settings: BotSettings) -> List[PriceAlert]:
        now = self._clock()
        alerts: List[PriceAlert] = []
        by_ticker = {}
        for instrument in instruments:
            if instrument.kind is MarketKind.AD:
                continue
            by_ticker[instrument.ticker] = instrument
            alert = self.detector.evaluate(instrument, settings, now)
            if alert is None:
                continue
            alerts.append(alert)
            await self._handle_alert(alert, settings, now)

        await self._process_pending(by_ticker, settings, now)
        return alerts

    async def _handle_alert(self, alert: PriceAlert, settings: BotSettings, now: float) -> None:
        self._stats["alerts"] += 1
        logger.info(
            f"PRICE ALERT {alert.entity_name}: {alert.direction} {alert.pct_change * 100:.1f}% "
            f"in {alert.elapsed_seconds:.0f}s ({alert.old_price}c -> {alert.new_price}c, vol {alert.volume})"
        )
        await self._record_signal(alert)

        if not alert.is_spike:
            return
        self._stats["spikes"] += 1
        label = "HIGH VOLUME" if alert.high_volume else "MEDIUM VOLUME"
        await self._notify(
            f"PRICE SPIKE ({label})\n\n"
            f"Player: {alert.entity_name}\n"
            f"Move: {alert.old_price}c -> {alert.new_price}c\n"
            f"Change: +{alert.pct_change * 100:.1f}%\n"
            f"Volume: {alert.volume:,}\n"
            f"Open Interest: {alert.open_interest:,}"
        )

        if not alert.high_volume:
            logger.info(f"{alert.entity_name}: medium volume, alert only")
            return
        if not settings.features.price_spike_trading:
            logger.info(f"{alert.entity_name}: price spike trading disabled in settings")
            return

        reason = spike_buy_block_reason(alert.old_price, alert.new_price, alert.session_low, settings)
        if reason:
            self._stats["blocked"] += 1
            logger.info(f"Spike buy blocked for {alert.entity_name}: {reason}")
            return

        if alert.ticker in self.pending:
            logger.debug(f"Spike entry already pending for {alert.ticker}")
            return
        self.pending[alert.ticker] = PendingSpike(
            ticker=alert.ticker,
            entity_name=alert.entity_name,
            old_price=alert.old_price,
            detected_price=alert.new_price,
            detected_at=now,
        )
        logger.info(
            f"Spike entry queued for {alert.entity_name}; buying after {settings.price_spike_cooldown_minutes}m cooldown"
        )

    async def _process_pending(self, by_ticker: Dict[str, Instrument], settings: BotSettings, now: float) -> None:
        cooldown = settings.price_spike_cooldown_minutes * 60
        for ticker, entry in list(self.pending.items()):
            if now - entry.detected_at < cooldown:
                continue
            del self.pending[ticker]

            instrument = by_ticker.get(ticker)
            if instrument is None or not instrument.is_open:
                logger.info(f"Spike entry for {ticker} dropped: market no longer open")
                continue
            if not settings.features.price_spike_trading:
                logger.info(f"Spike entry for {entry.entity_name} dropped: trading disabled")
                continue

            price = instrument.yes_price
            window = self.detector.window(ticker)
            reason = spike_buy_block_reason(entry.old_price, price, window.low, settings)
            if reason:
                self._stats["blocked"] += 1
                logger.info(f"Spike entry for {entry.entity_name} dropped after cooldown: {reason}")
                continue
            if settings.price_spike_require_twitter and not await self._corroborated(entry.entity_name):
                self._stats["blocked"] += 1
                logger.info(f"Spike entry for {entry.entity_name} dropped: no recent text signal")
                continue

            await self._buy(instrument, entry, price, settings)

    async def _corroborated(self, entity_name: str) -> bool:
        if self.db is None:
            return False
        since = datetime.now(timezone.utc) - timedelta(minutes=self.recent_signal_minutes)
        try:
            return await self.db.has_recent_signal(entity_name, since)
        except Exception as e:
            logger.error(f"Error checking recent signals for {entity_name}: {e}")
            return False

    async def _buy(self, instrument: Instrument, entry: PendingSpike, price: int, settings: BotSettings) -> None:
        contracts = spike_contracts(settings.price_spike_position_limit, price)
        if contracts <= 0:
            logger.info(f"Spike buy for {entry.entity_name} sized to zero contracts")
            return
        pct_jump = (price - entry.old_price) / entry.old_price * 100

        logger.info(f"Spike auto-buy: {contracts} YES {entry.entity_name} @ {price}c (+{price - entry.old_price}c)")
        if self.db is not None:
            try:
                await self.db.record_event(
                    instrument.ticker,
                    "price_spike_buy",
                    f"Auto-bought on {pct_jump:.1f}% spike: {entry.old_price}c -> {price}c",
                    player_name=entry.entity_name,
                    metadata={"old_price": entry.old_price, "new_price": price, "contracts": contracts},
                )
            except Exception as e:
                logger.error(f"Failed to record spike event: {e}")

        signal = synthetic_signal(
            Tier.SERIOUS,
            entry.entity_name,
            event_id=f"spike-{int(self._clock() * 1000)}",
            author="price_monitor",
            score=60,
        )
        result = await self.guard.execute(
            instrument, Side.YES, OrderAction.BUY, contracts, settings.price_spike_max_entry, signal, settings,
        )
        if result.get("success"):
            self._stats["buys"] += 1

    async def _record_signal(self, alert: PriceAlert) -> None:
        if self.db is None:
            return
        try:
            await self.db.record_signal({
                "signal_type": "price_movement",
                "market_ticker": alert.ticker,
                "entity_name": alert.entity_name,
                "source": "price_monitor",
                "meta": alert.to_meta(),
            })
        except Exception as e:
            logger.error(f"Failed to record price alert: {e}")

    async def _notify(self, message: str) -> None:
        if self.notifier is not None:
            await self.notifier.send(message)


# =============================================================================
# Orderbook flow
# =============================================================================
@dataclass
class OrderbookSnapshot:
    yes_bid_depth: int
    no_bid_depth: int
    timestamp: float = field(default_factory=time.time)

    # Buying YES consumes NO bids and vice versa
    @property
    def yes_ask_depth(self) -> int:
        return self.no_bid_depth

    @property
    def no_ask_depth(self) -> int:
        return self.yes_bid_depth


@dataclass
class FlowAlert:
    ticker: str
    entity_name: str
    direction: str
    contracts: int
    yes_price: int

    def to_meta(self) -> Dict[str, Any]:
        return {
            "player_name": self.entity_name,
            "direction": self.direction,
            "contracts": self.contracts,
            "price": self.yes_price,
            "source": "orderbook_monitor",
        }


def hot_instruments(instruments: List[Instrument], limit: int = HOT_MARKET_LIMIT) -> List[Instrument]:
    """Trade and next-team markets priced 30-89c, most traded first."""
    hot = [
        i for i in instruments
        if i.kind in (MarketKind.TRADE, MarketKind.NEXT_TEAM) and HOT_MIN_PRICE <= i.yes_price < HOT_MAX_PRICE
    ]
    hot.sort(key=lambda i: i.volume, reverse=True)
    return hot[:limit]


class OrderbookMonitor:
    """Detects net one-sided depth consumption between snapshots."""

    def __init__(self, kalshi: Any, notifier: Any = None, db: Any = None,
                 threshold: int = LARGE_ORDER_THRESHOLD, clock: Callable[[], float] = time.time):
        self.kalshi = kalshi
        self.notifier = notifier
        self.db = db
        self.threshold = threshold
        self._clock = clock
        self.history: Dict[str, Deque[OrderbookSnapshot]] = {}

    def observe(self, instrument: Instrument, book: Dict[str, Any]) -> Optional[FlowAlert]:
        """Store a snapshot and compare with the previous one."""
        snapshot = OrderbookSnapshot(
            yes_bid_depth=int(book.get("yes_bid_depth") or 0),
            no_bid_depth=int(book.get("no_bid_depth") or 0),
            timestamp=self._clock(),
        )
        history = self.history.setdefault(instrument.ticker, deque(maxlen=ORDERBOOK_HISTORY))
        previous = history[-1] if history else None
        history.append(snapshot)
        if previous is None:
            return None

        yes_consumed = max(0, previous.yes_ask_depth - snapshot.yes_ask_depth)
        no_consumed = max(0, previous.no_ask_depth - snapshot.no_ask_depth)
        net_bullish = yes_consumed - no_consumed
        net_bearish = no_consumed - yes_consumed

        if net_bullish > self.threshold and yes_consumed > no_consumed * 2:
            return FlowAlert(instrument.ticker, instrument.entity_name, "bullish", net_bullish, instrument.yes_price)
        if net_bearish > self.threshold and no_consumed > yes_consumed * 2:
            return FlowAlert(instrument.ticker, instrument.entity_name, "bearish", net_bearish, instrument.yes_price)
        return None

    async def scan(self, instruments: List[Instrument], settings: BotSettings) -> List[FlowAlert]:
        if not settings.features.orderbook_monitoring:
            return []
        hot = hot_instruments(instruments)
        logger.debug(f"Orderbook scan over {len(hot)} hot markets")

        alerts = []
        for instrument in hot:
            book = await self.kalshi.get_orderbook(instrument.ticker)
            if book is None:
                continue
            alert = self.observe(instrument, book)
            if alert is None:
                continue
            alerts.append(alert)
            await self._report(alert)
        return alerts

    async def _report(self, alert: FlowAlert) -> None:
        sign = "+" if alert.direction == "bullish" else "-"
        logger.info(f"NET {alert.direction.upper()} on {alert.entity_name}: {sign}{alert.contracts} contracts @ {alert.yes_price}c")
        if self.notifier is not None:
            pressure = "Net buying pressure UP" if alert.direction == "bullish" else "Net selling pressure DOWN"
            await self.notifier.send(
                f"{alert.direction.upper()} VOLUME SPIKE\n\n"
                f"Player: {alert.entity_name}\n"
                f"Net Volume: {sign}{alert.contracts} contracts\n"
                f"YES Price: {alert.yes_price}c\n\n"
                f"{pressure}"
            )
        if self.db is not None:
            try:
                await self.db.record_signal({
                    "signal_type": "volume_spike",
                    "market_ticker": alert.ticker,
                    "entity_name": alert.entity_name,
                    "source": "orderbook_monitor",
                    "meta": alert.to_meta(),
                })
            except Exception as e:
                logger.error(f"Failed to record volume spike: {e}")
