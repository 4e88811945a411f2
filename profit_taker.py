"""
Profit-taking and deadline risk management
==========================================
Per-position exit rules evaluated in priority order (first match wins):

1. NEAR_RESOLUTION   side price >= 95 and profit/contract >= 5 -> sell all
2. PARTIAL_PROFIT    gain >= 30% and price >= 60 -> sell half (lot >= 5)
3. STOP_LOSS         loss <= -40% outside the final window -> sell all
4. DEADLINE_LIQUIDATION  final window and price < 60 -> sell all
5. hold

Positions and resting orders are fetched live on every pass. A leg (ticker and
side) with a resting sell on the exchange, or a sell submitted by this process
within the pending TTL, is skipped. A resting sell without a side blocks both
legs of its ticker. When the resting-order query fails the whole pass is
skipped.

Usage:
    taker = ProfitTaker(kalshi, guard, market_cache, notifier, db, config.profit_taking, config.deadlines)
    exits = await taker.check_all_positions(settings)
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from loguru import logger

from config import BotSettings, DeadlineConfig, ProfitTakingConfig
from models import (
    Fill,
    Instrument,
    MarketKind,
    OrderAction,
    Position,
    Side,
    Tier,
    clamp_price,
    invert_price,
    synthetic_signal,
)
from market_resolver import TRADE_SERIES

ENTRY_TOLERANCE_CENTS = 2


class ExitRule(Enum):
    """Exit rules in priority order."""

    NEAR_RESOLUTION = "near_resolution"
    PARTIAL_PROFIT = "partial_profit"
    STOP_LOSS = "stop_loss"
    DEADLINE_LIQUIDATION = "deadline_liquidation"


@dataclass
class ExitDecision:
    """A rule that fired for one position leg."""

    position: Position
    rule: ExitRule
    contracts: int
    price: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticker": self.position.ticker,
            "side": self.position.side.value,
            "rule": self.rule.value,
            "contracts": self.contracts,
            "price": self.price,
            "entry": self.position.avg_entry,
            "current": self.position.current_price,
            "pnl_pct": round(self.position.pnl_pct or 0.0, 2),
            "timestamp": self.timestamp.isoformat(),
        }


def hours_until(deadline: datetime, now: datetime) -> float:
    return (deadline - now).total_seconds() / 3600


def in_final_hours(deadline: datetime, now: datetime, final_hours: float) -> bool:
    remaining = hours_until(deadline, now)
    return 0 < remaining <= final_hours


def average_entry_from_fills(fills: List[Fill], side: Side) -> Optional[float]:
    """Contract-weighted average buy price on the leg's own basis."""
    total_cost = 0.0
    total_contracts = 0
    for fill in fills:
        if fill.action is not OrderAction.BUY or fill.side is not side:
            continue
        total_cost += fill.side_price * fill.count
        total_contracts += fill.count
    if total_contracts == 0:
        return None
    return total_cost / total_contracts


def entry_inconsistency(
    side: Side, fill_entry: float, recorded_entry: Optional[float], tolerance: int = ENTRY_TOLERANCE_CENTS
) -> Optional[str]:
    """
    Compare the fill-derived entry with the entry recorded at order time.

    Returns a description when the recorded price only matches after inverting
    it, i.e. it was written on the other side's basis.
    """
    if recorded_entry is None:
        return None
    if abs(recorded_entry - fill_entry) <= tolerance:
        return None
    if abs(invert_price(recorded_entry) - fill_entry) <= tolerance:
        return (
            f"{side.value.upper()} entry recorded as {recorded_entry:.0f}c looks like the "
            f"{side.opposite.value.upper()} basis; fills say {fill_entry:.1f}c"
        )
    return f"recorded entry {recorded_entry:.0f}c disagrees with fills {fill_entry:.1f}c"


def evaluate_position(
    position: Position, config: ProfitTakingConfig, final_hours: bool
) -> Optional[ExitDecision]:
    """Apply the exit rules in priority order. Returns None to hold."""
    current = position.current_price
    entry = position.avg_entry
    if current is None or entry is None:
        return None

    profit = position.profit_per_contract
    pnl_pct = position.pnl_pct or 0.0

    if current >= config.near_resolution_price and profit >= config.near_resolution_min_profit:
        price = max(math.ceil(entry + config.near_resolution_margin), current - config.near_resolution_slippage)
        return ExitDecision(position, ExitRule.NEAR_RESOLUTION, position.contracts, clamp_price(price))

    if pnl_pct >= config.partial_gain_pct and current >= config.partial_min_price:
        sell_count = math.floor(position.contracts * config.partial_fraction)
        if sell_count >= config.partial_min_lot:
            return ExitDecision(
                position, ExitRule.PARTIAL_PROFIT, sell_count, clamp_price(current - config.partial_slippage)
            )

    if pnl_pct <= config.stop_loss_pct and not final_hours:
        return ExitDecision(
            position, ExitRule.STOP_LOSS, position.contracts, clamp_price(current - config.stop_loss_slippage)
        )

    if final_hours and current < config.liquidation_floor:
        return ExitDecision(
            position,
            ExitRule.DEADLINE_LIQUIDATION,
            position.contracts,
            clamp_price(current - config.liquidation_slippage),
        )

    if abs(pnl_pct) > config.report_threshold_pct:
        logger.info(
            f"{position.ticker} ({position.side.value.upper()}): {pnl_pct:+.0f}% "
            f"(entry {entry:.0f}c, now {current}c) - monitoring"
        )
    return None


def legs_from_positions(raw_positions: List[Dict[str, Any]]) -> List[Position]:
    """One Position per non-zero leg. YES and NO on one ticker stay separate."""
    legs = []
    for raw in raw_positions:
        if raw.get("yes_contracts", 0) > 0:
            legs.append(Position(ticker=raw["ticker"], side=Side.YES, contracts=raw["yes_contracts"]))
        if raw.get("no_contracts", 0) > 0:
            legs.append(Position(ticker=raw["ticker"], side=Side.NO, contracts=raw["no_contracts"]))
    return legs


def resting_sell_legs(orders: List[Dict[str, Any]]) -> Set[Tuple[str, Side]]:
    """(ticker, side) pairs blocked by resting sells. A sell without a side blocks both legs."""
    blocked = set()
    for order in orders:
        if order.get("action", "sell") != "sell" or order.get("status", "resting") != "resting":
            continue
        side = str(order.get("side") or "").lower()
        if side in ("yes", "no"):
            blocked.add((order.get("ticker"), Side(side)))
        else:
            blocked.update({(order.get("ticker"), Side.YES), (order.get("ticker"), Side.NO)})
    return blocked


_EXIT_TITLES = {
    ExitRule.NEAR_RESOLUTION: "PROFIT TAKING - NEAR RESOLUTION",
    ExitRule.PARTIAL_PROFIT: "PARTIAL PROFIT TAKING",
    ExitRule.STOP_LOSS: "STOP LOSS TRIGGERED",
    ExitRule.DEADLINE_LIQUIDATION: "DEADLINE LIQUIDATION",
}


class ProfitTaker:
    """
    Evaluates live positions each pass and routes exits through the order guard.
    """

    def __init__(
        self,
        kalshi: Any,
        guard: Any,
        market_cache: Any = None,
        notifier: Any = None,
        db: Any = None,
        config: Optional[ProfitTakingConfig] = None,
        deadlines: Optional[DeadlineConfig] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.kalshi = kalshi
        self.guard = guard
        self.market_cache = market_cache
        self.notifier = notifier
        self.db = db
        self.config = config or ProfitTakingConfig()
        self.deadlines = deadlines or DeadlineConfig()
        self._clock = clock

        self._pending_sells: Dict[Tuple[str, Side], datetime] = {}
        self._flagged_entries: Set[str] = set()
        self.deadline_no_buys: Set[str] = set()
        self._stats = {"checks": 0, "exits": 0, "failed_exits": 0, "skipped_resting": 0, "flagged": 0}

    @property
    def stats(self) -> Dict[str, int]:
        return self._stats.copy()

    # =========================================================================
    # Position views
    # =========================================================================
    def _current_price(self, ticker: str, side: Side) -> Optional[int]:
        if self.market_cache is None:
            return None
        yes_price = self.market_cache.last_price(ticker)
        if yes_price is None:
            return None
        return yes_price if side is Side.YES else invert_price(yes_price)

    async def load_positions(self, with_entries: bool = True) -> List[Position]:
        """Live position legs with side-correct current prices and fill-derived entries."""
        legs = legs_from_positions(await self.kalshi.get_positions())
        for leg in legs:
            leg.current_price = self._current_price(leg.ticker, leg.side)
            if with_entries:
                fills = [Fill.from_api(f) for f in await self.kalshi.get_fills(leg.ticker, self.config.fills_lookback)]
                leg.avg_entry = average_entry_from_fills(fills, leg.side)
        return legs

    def is_pending_sell(self, ticker: str, side: Side) -> bool:
        submitted = self._pending_sells.get((ticker, side))
        if submitted is None:
            return False
        if (self._clock() - submitted).total_seconds() >= self.config.pending_sell_ttl_seconds:
            del self._pending_sells[(ticker, side)]
            logger.debug(f"Cleared pending sell for {ticker} ({side.value.upper()})")
            return False
        return True

    def _tracked(self, ticker: str) -> bool:
        return any(ticker.startswith(prefix) for prefix in self.config.tracked_prefixes)

    # =========================================================================
    # Profit-taking pass
    # =========================================================================
    async def check_all_positions(self, settings: BotSettings) -> List[ExitDecision]:
        if not settings.features.profit_taking:
            logger.debug("Profit-taking disabled in settings")
            return []
        self._stats["checks"] += 1

        raw_positions = await self.kalshi.get_positions()
        legs = [leg for leg in legs_from_positions(raw_positions) if self._tracked(leg.ticker)]
        if not legs:
            return []

        resting = await self.kalshi.get_resting_orders()
        if resting is None:
            logger.warning("Resting orders unavailable; skipping profit-taking pass")
            return []
        resting_legs = resting_sell_legs(resting)

        now = self._clock()
        final_hours = in_final_hours(self.deadlines.trade_deadline, now, self.deadlines.final_hours)
        logger.info(
            f"Checking {len(legs)} position legs "
            f"({hours_until(self.deadlines.trade_deadline, now):.1f}h until deadline)"
        )

        decisions = []
        for leg in legs:
            if (leg.ticker, leg.side) in resting_legs:
                self._stats["skipped_resting"] += 1
                logger.info(f"{leg.ticker} ({leg.side.value.upper()}): resting sell order exists, skipping")
                continue
            if self.is_pending_sell(leg.ticker, leg.side):
                logger.info(f"{leg.ticker} ({leg.side.value.upper()}): sell submitted recently, skipping")
                continue

            leg.current_price = self._current_price(leg.ticker, leg.side)
            if leg.current_price is None:
                continue

            fills = [Fill.from_api(f) for f in await self.kalshi.get_fills(leg.ticker, self.config.fills_lookback)]
            leg.avg_entry = average_entry_from_fills(fills, leg.side)
            if leg.avg_entry is None:
                logger.info(f"{leg.ticker} ({leg.side.value.upper()}): no buy fills found, skipping")
                continue
            await self._check_entry(leg)

            decision = evaluate_position(leg, self.config, final_hours)
            if decision is None:
                continue
            decisions.append(decision)
            await self._execute_exit(decision, settings)
        return decisions

    async def _check_entry(self, leg: Position) -> None:
        if self.db is None:
            return
        try:
            recorded = await self.db.get_avg_buy_price(leg.ticker, leg.side.value)
        except Exception as e:
            logger.error(f"Error reading recorded entry for {leg.ticker}: {e}")
            return
        problem = entry_inconsistency(leg.side, leg.avg_entry, recorded)
        if problem is None:
            return
        leg.entry_flagged = True
        key = f"{leg.ticker}:{leg.side.value}"
        if key in self._flagged_entries:
            return
        self._flagged_entries.add(key)
        self._stats["flagged"] += 1
        logger.warning(f"Entry price flag on {leg.ticker}: {problem}")
        try:
            await self.db.record_event(
                leg.ticker,
                "entry_price_flag",
                problem,
                metadata={"side": leg.side.value, "fill_entry": leg.avg_entry, "recorded_entry": recorded},
            )
        except Exception as e:
            logger.error(f"Failed to record entry flag: {e}")

    def _instrument_for(self, ticker: str) -> Instrument:
        instrument = self.market_cache.get(ticker) if self.market_cache is not None else None
        return instrument or Instrument(ticker=ticker, title=ticker, entity_name=ticker)

    async def _execute_exit(self, decision: ExitDecision, settings: BotSettings) -> bool:
        position = decision.position
        instrument = self._instrument_for(position.ticker)
        name = instrument.entity_name

        logger.warning(
            f"{decision.rule.value.upper()}: {name} {position.side.value.upper()} "
            f"{decision.contracts}/{position.contracts} @ {decision.price}c "
            f"(entry {position.avg_entry:.0f}c, now {position.current_price}c, {position.pnl_pct:+.0f}%)"
        )
        if self.notifier is not None:
            locked = (position.profit_per_contract or 0) * decision.contracts / 100
            await self.notifier.send(
                f"{_EXIT_TITLES[decision.rule]}\n\n"
                f"Player: {name}\n"
                f"Side: {position.side.value.upper()}\n"
                f"Entry: {position.avg_entry:.0f}c -> Now: {position.current_price}c\n"
                f"P&L: {position.pnl_pct:+.0f}%\n"
                f"Selling: {decision.contracts} of {position.contracts}\n\n"
                f"Realizing: ${locked:.2f}"
            )

        self._pending_sells[(position.ticker, position.side)] = self._clock()
        signal = synthetic_signal(Tier.CONFIRMED, name, event_id="auto-sell", author="system", score=100)
        result = await self.guard.execute(
            instrument,
            position.side,
            OrderAction.SELL,
            decision.contracts,
            decision.price,
            signal,
            settings,
            exit_price=decision.price,
        )
        if result.get("success"):
            self._stats["exits"] += 1
            return True
        self._stats["failed_exits"] += 1
        return False

    # =========================================================================
    # Deadline NO-buy
    # =========================================================================
    async def _has_recent_signal(self, entity_name: str) -> bool:
        if self.db is None:
            return False
        since = self._clock() - timedelta(minutes=self.deadlines.recent_signal_minutes)
        try:
            return await self.db.has_recent_signal(entity_name, since)
        except Exception as e:
            # Unknown means a signal might exist
            logger.error(f"Error checking recent signals for {entity_name}: {e}")
            return True

    async def check_deadline_no_buy(self, instruments: List[Instrument], settings: BotSettings) -> List[str]:
        """In the last minutes before the deadline, buy NO on players with no recent news."""
        if not settings.features.deadline_no_buy:
            return []
        now = self._clock()
        minutes_left = hours_until(self.deadlines.trade_deadline, now) * 60
        if minutes_left > self.deadlines.no_buy_window_minutes or minutes_left < 0:
            return []

        logger.info(f"{minutes_left:.1f} minutes until deadline - scanning for NO opportunities")
        candidates = []
        for instrument in instruments:
            if instrument.kind is not MarketKind.TRADE or not instrument.ticker.startswith(TRADE_SERIES):
                continue
            if instrument.ticker in self.deadline_no_buys:
                continue
            no_price = instrument.no_price
            if self.deadlines.no_buy_min_price <= no_price <= self.deadlines.no_buy_scan_max_price:
                candidates.append(instrument)
        candidates.sort(key=lambda i: i.no_price)

        bought = []
        for instrument in candidates[: self.deadlines.no_buy_max_candidates]:
            no_price = instrument.no_price
            if no_price > self.deadlines.no_buy_max_price:
                continue
            if await self._has_recent_signal(instrument.entity_name):
                logger.info(f"{instrument.entity_name}: recent signal, no deadline NO buy")
                continue

            contracts = min(self.deadlines.no_buy_max_contracts, settings.base_contract_count)
            potential = (100 - no_price) * contracts / 100
            logger.info(f"Deadline NO buy: {instrument.entity_name} @ {no_price}c ({contracts} contracts)")
            if self.notifier is not None:
                await self.notifier.send(
                    f"DEADLINE NO BUY\n\n"
                    f"Player: {instrument.entity_name}\n"
                    f"Time left: {minutes_left:.0f} minutes\n\n"
                    f"Buying NO @ {no_price}c\n"
                    f"Contracts: {contracts}\n"
                    f"Max profit if no trade: ${potential:.2f}"
                )
            if self.db is not None:
                try:
                    await self.db.record_event(
                        instrument.ticker,
                        "deadline_no_buy",
                        f"NO @ {no_price}c with {minutes_left:.0f}m left",
                        player_name=instrument.entity_name,
                        metadata={"no_price": no_price, "contracts": contracts},
                    )
                except Exception as e:
                    logger.error(f"Failed to record deadline event: {e}")

            signal = synthetic_signal(
                Tier.CONFIRMED, instrument.entity_name, event_id="deadline-no-buy", author="system", score=95
            )
            await self.guard.execute(
                instrument, Side.NO, OrderAction.BUY, contracts, no_price, signal, settings
            )
            self.deadline_no_buys.add(instrument.ticker)
            bought.append(instrument.ticker)
        return bought
