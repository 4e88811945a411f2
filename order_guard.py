"""
Order execution guard: the last decision point before an order reaches the exchange.

Checks run in a fixed order:
1. Kill switch (settings.kill_switch, or dry-run mode) -> logged "would have traded"
2. Contract count > 0
3. Dedup cooldown for buys
4. Reference price: orderbook ask reconciled against the cached last price
5. Buy guards (priced in, above tier max) or sell pricing
6. Submit once. Failed submissions are returned, never retried.
"""
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from loguru import logger

from config import BotSettings, ExecutionConfig
from models import (
    Instrument,
    OrderAction,
    Side,
    Signal,
    SkipReason,
    Tier,
    invert_price,
    round_half_up,
)


class DedupTracker:
    """Last-buy timestamps per ticker. Single writer: the guard."""

    def __init__(self, cooldown_seconds: float = 300, clock: Callable[[], float] = time.time):
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._last_buy: Dict[str, float] = {}

    def seconds_since(self, ticker: str) -> Optional[float]:
        ts = self._last_buy.get(ticker)
        return None if ts is None else self._clock() - ts

    def is_recent(self, ticker: str) -> bool:
        elapsed = self.seconds_since(ticker)
        return elapsed is not None and elapsed < self.cooldown_seconds

    def record(self, ticker: str) -> None:
        now = self._clock()
        self._last_buy[ticker] = now
        for t, ts in list(self._last_buy.items()):
            if now - ts > self.cooldown_seconds:
                del self._last_buy[t]

    def __len__(self) -> int:
        return len(self._last_buy)


def reconcile_reference(
    orderbook_ask: Optional[int], last_price: Optional[int], threshold: int
) -> Tuple[Optional[int], bool]:
    """
    Pick the reference price. Returns (price, overridden) where overridden means
    the orderbook diverged by more than the threshold and the last price won.
    """
    if orderbook_ask is not None and last_price is not None:
        if abs(orderbook_ask - last_price) > threshold:
            return last_price, True
        return orderbook_ask, False
    if orderbook_ask is not None:
        return orderbook_ask, False
    return last_price, False


def buy_limit_price(
    tier: Tier, reference: Optional[int], max_price: int, config: ExecutionConfig
) -> Tuple[Optional[int], Optional[SkipReason]]:
    """Limit price for a buy, or the reason it must be skipped."""
    if reference is None:
        logger.warning(f"No price data; bidding at max {max_price}c")
        return max_price, None
    if reference >= config.priced_in_ceiling:
        return None, SkipReason.PRICED_IN
    if reference > max_price:
        return None, SkipReason.ABOVE_TIER_MAX
    if tier is Tier.CONFIRMED:
        return max_price, None
    if tier is Tier.IMMINENT:
        return min(round_half_up((reference + max_price) / 2), max_price), None
    return min(reference + config.lower_tier_slippage, max_price), None


def sell_limit_price(reference: Optional[int], fallback: int, config: ExecutionConfig) -> int:
    """Zero slippage at near-certain prices, small slippage otherwise."""
    if reference is None:
        return fallback
    if reference >= config.zero_slippage_sell_floor:
        return reference
    return max(reference - config.sell_slippage, 1)


@dataclass
class PriceQuote:
    orderbook_ask: Optional[int]
    last_price: Optional[int]
    reference: Optional[int]
    overridden: bool = False


class OrderExecutionGuard:
    """
    Terminal gate for every order the engine places.

    Usage:
        guard = OrderExecutionGuard(kalshi, market_cache, notifier, db, config.execution, live_trading=True)
        result = await guard.execute(instrument, Side.YES, OrderAction.BUY, 20, 92, signal, settings)
    """

    def __init__(
        self,
        kalshi: Any,
        market_cache: Any = None,
        notifier: Any = None,
        db: Any = None,
        config: Optional[ExecutionConfig] = None,
        live_trading: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.kalshi = kalshi
        self.market_cache = market_cache
        self.notifier = notifier
        self.db = db
        self.config = config or ExecutionConfig()
        self.live_trading = live_trading
        self._clock = clock
        self.dedup = DedupTracker(self.config.dedup_cooldown_seconds, clock)
        self._stats = {"submitted": 0, "failed": 0, "skipped": 0}

    @property
    def stats(self) -> Dict[str, int]:
        return self._stats.copy()

    def kill_switch_active(self, settings: BotSettings) -> bool:
        return settings.kill_switch or not self.live_trading

    async def quote(self, instrument: Instrument, side: Side) -> PriceQuote:
        """Reference price for one side, from the live orderbook and the cached last trade."""
        book = await self.kalshi.get_orderbook(instrument.ticker)
        ask = None
        if book:
            ask = book.get("yes_ask") if side is Side.YES else book.get("no_ask")

        yes_last = None
        if self.market_cache is not None:
            yes_last = self.market_cache.last_price(instrument.ticker)
        if yes_last is None and instrument.yes_price > 0:
            yes_last = instrument.yes_price
        last = None
        if yes_last is not None:
            last = yes_last if side is Side.YES else invert_price(yes_last)

        reference, overridden = reconcile_reference(ask, last, self.config.price_sanity_threshold)
        if overridden:
            logger.warning(
                f"{instrument.ticker}: orderbook {ask}c far from last price {last}c, using last price"
            )
        return PriceQuote(ask, last, reference, overridden)

    async def execute(
        self,
        instrument: Instrument,
        side: Side,
        action: OrderAction,
        count: int,
        max_price: int,
        signal: Signal,
        settings: BotSettings,
        exit_price: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Gate and submit one order.

        Args:
            max_price: tier ceiling for buys; fallback limit for sells without a reference
            exit_price: explicit sell limit chosen by the caller (profit-taking)

        Returns:
            {"success", "order_id", "price", "error", "skip_reason"}
        """
        ticker = instrument.ticker
        label = f"{action.value.upper()} {count} {side.value.upper()} {ticker}"

        if self.kill_switch_active(settings):
            reason = "kill switch" if settings.kill_switch else "dry run"
            logger.info(f"TRADING DISABLED ({reason}) - would have {label} (max {max_price}c)")
            return self._skip(SkipReason.KILL_SWITCH, "Trading disabled", would_trade=label)

        if count <= 0:
            return self._skip(SkipReason.ZERO_CONTRACTS, "Zero contracts")

        if action is OrderAction.BUY and self.dedup.is_recent(ticker):
            elapsed = self.dedup.seconds_since(ticker)
            logger.info(f"SKIP (dedup): bought {ticker} {elapsed:.0f}s ago")
            return self._skip(SkipReason.DEDUPED, f"Dedup: bought {elapsed:.0f}s ago")

        quote = await self.quote(instrument, side)

        if action is OrderAction.SELL:
            if exit_price is not None:
                price = max(1, min(99, exit_price))
            else:
                price = sell_limit_price(quote.reference, max_price, self.config)
            logger.info(f"SELL {ticker} at {price}c (reference {quote.reference}c)")
        else:
            price, skip = buy_limit_price(signal.tier, quote.reference, max_price, self.config)
            if skip is SkipReason.PRICED_IN:
                logger.info(f"SKIP: {ticker} already at {quote.reference}c - no edge left")
                return self._skip(skip, f"Market at {quote.reference}c - already priced in")
            if skip is SkipReason.ABOVE_TIER_MAX:
                logger.info(f"SKIP: {ticker} {quote.reference}c > max {max_price}c for {signal.tier.value}")
                await self._notify(
                    f"ORDER SKIPPED\n\n"
                    f"Player: {signal.entity_name}\n"
                    f"Reason: Market {quote.reference}c > max {max_price}c\n"
                    f"Tier: {signal.tier.value}\n\n"
                    f"Price too high for auto-buy. Manual review?"
                )
                return self._skip(skip, f"Market {quote.reference}c > tier max {max_price}c")

        logger.info(
            f"{label} @ {price}c (ask {quote.orderbook_ask}c, last {quote.last_price}c, max {max_price}c)"
        )
        client_order_id = f"{self.config.client_order_prefix}-{signal.event.id}-{int(self._clock() * 1000)}"
        result = await self.kalshi.place_order(
            ticker=ticker,
            side=side.value,
            action=action.value,
            count=count,
            price=price,
            client_order_id=client_order_id,
        )

        if not result.get("success"):
            self._stats["failed"] += 1
            logger.error(f"Order failed for {ticker}: {result.get('error')}")
            return {
                "success": False,
                "error": result.get("error", "unknown error"),
                "skip_reason": SkipReason.EXCHANGE_ERROR,
                "price": price,
            }

        self._stats["submitted"] += 1
        order_id = result.get("order_id", "")
        status = result.get("status", "")
        logger.info(f"Order placed: {order_id} ({status})")

        if action is OrderAction.BUY:
            self.dedup.record(ticker)

        await self._notify(
            f"{signal.tier.value.upper()} {action.value.upper()} {count} {side.value.upper()}\n"
            f"Player: {signal.entity_name}\n"
            f"Market: {ticker}\n"
            f"Price: {price}c\n"
            f"Status: {status}\n\n"
            f"Source: @{signal.event.author}\n"
            f"\"{signal.event.text[:100]}\""
        )
        await self._record_trade(instrument, side, action, count, price, order_id, status, signal)

        return {"success": True, "order_id": order_id, "price": price, "status": status}

    def _skip(self, reason: SkipReason, error: str, **extra: Any) -> Dict[str, Any]:
        self._stats["skipped"] += 1
        return {"success": False, "skipped": True, "skip_reason": reason, "error": error, **extra}

    async def _notify(self, message: str) -> None:
        if self.notifier is not None:
            await self.notifier.send(message)

    async def _record_trade(
        self,
        instrument: Instrument,
        side: Side,
        action: OrderAction,
        count: int,
        price: int,
        order_id: str,
        status: str,
        signal: Signal,
    ) -> None:
        if self.db is None:
            return
        try:
            await self.db.record_trade({
                "market_ticker": instrument.ticker,
                "order_id": order_id,
                "side": side.value,
                "action": action.value,
                "price_cents": price,
                "contract_count": count,
                "status": status,
                "llm_analysis_id": signal.analysis_id,
                "meta": {
                    "player_name": signal.entity_name,
                    "team": signal.destination,
                    "confidence_tier": signal.tier.value,
                    "tweet_id": signal.event.id,
                    "tweet_author": signal.event.author,
                    "kind": instrument.kind.value,
                },
            })
        except Exception as e:
            logger.error(f"Failed to record trade for {instrument.ticker}: {e}")
