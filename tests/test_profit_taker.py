"""
Tests for profit-taking and deadline risk management.

Coverage:
- Exit rule priority: near resolution, partial profit, stop loss, deadline liquidation
- Side-basis entries from fills and YES-basis inconsistency flags
- Live pass: per-leg resting-order skip, pending-sell TTL, unavailable resting orders
- Both legs of one ticker exiting in the same pass
- Deadline NO-buy window, candidate filters and recent-signal suppression
"""
import pytest
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
import os
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import BotSettings, DeadlineConfig, FeatureFlags, ProfitTakingConfig
from models import Fill, Instrument, MarketKind, OrderAction, Position, Side
from profit_taker import (
    ExitRule,
    ProfitTaker,
    average_entry_from_fills,
    entry_inconsistency,
    evaluate_position,
    in_final_hours,
    legs_from_positions,
    resting_sell_legs,
)

DEADLINE = datetime(2026, 2, 5, 20, 0, tzinfo=timezone.utc)
TICKER = "KXNBATRADE-26-PX"


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def leg(side=Side.YES, contracts=20, entry=40.0, current=60):
    return Position(TICKER, side, contracts, avg_entry=entry, current_price=current)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def kalshi():
    kalshi = AsyncMock()
    kalshi.get_positions.return_value = [
        {"ticker": TICKER, "yes_contracts": 20, "no_contracts": 0},
        {"ticker": "KXOTHER-1", "yes_contracts": 5, "no_contracts": 0},
    ]
    kalshi.get_resting_orders.return_value = []
    kalshi.get_fills.return_value = [
        {"ticker": TICKER, "side": "yes", "action": "buy", "count": 20, "yes_price": 40, "no_price": 60},
    ]
    return kalshi


@pytest.fixture
def guard():
    guard = AsyncMock()
    guard.execute.return_value = {"success": True, "order_id": "s1"}
    return guard


def make_cache(yes_price):
    cache = MagicMock()
    cache.last_price.return_value = yes_price
    cache.get.return_value = Instrument(TICKER, "Will Player X be traded?", "Player X", yes_price=yes_price or 0)
    return cache


# ============================================================================
# Pure rules
# ============================================================================

class TestEvaluatePosition:
    """Tests for evaluate_position."""

    def test_near_resolution_sells_all(self):
        """96c with 16c profit sells everything near the current price."""
        decision = evaluate_position(leg(entry=80, current=96), ProfitTakingConfig(), False)
        assert decision.rule is ExitRule.NEAR_RESOLUTION
        assert decision.contracts == 20
        assert decision.price == 94

    def test_near_resolution_protects_entry(self):
        """The exit never goes below entry plus margin."""
        decision = evaluate_position(leg(entry=91, current=96), ProfitTakingConfig(), False)
        assert decision.price == 94
        decision = evaluate_position(leg(entry=91.5, current=97), ProfitTakingConfig(), False)
        assert decision.price == 95

    def test_partial_profit_sells_half(self):
        """+50% at 60c sells half at a small discount."""
        decision = evaluate_position(leg(entry=40, current=60), ProfitTakingConfig(), False)
        assert decision.rule is ExitRule.PARTIAL_PROFIT
        assert decision.contracts == 10
        assert decision.price == 58

    def test_partial_needs_minimum_lot(self):
        """A half lot under five contracts holds."""
        assert evaluate_position(leg(contracts=9, entry=40, current=60), ProfitTakingConfig(), False) is None

    def test_partial_needs_minimum_price(self):
        """Big percentage gains on cheap contracts hold."""
        assert evaluate_position(leg(entry=20, current=40), ProfitTakingConfig(), False) is None

    def test_stop_loss(self):
        """-44% sells everything."""
        decision = evaluate_position(leg(entry=50, current=28), ProfitTakingConfig(), False)
        assert decision.rule is ExitRule.STOP_LOSS
        assert decision.contracts == 20
        assert decision.price == 25

    def test_final_hours_liquidation_replaces_stop_loss(self):
        """In the final window cheap legs are liquidated instead."""
        decision = evaluate_position(leg(entry=50, current=28), ProfitTakingConfig(), True)
        assert decision.rule is ExitRule.DEADLINE_LIQUIDATION
        assert decision.price == 23

    def test_final_hours_hold_when_strong(self):
        assert evaluate_position(leg(entry=65, current=70), ProfitTakingConfig(), True) is None

    def test_unknown_values_hold(self):
        assert evaluate_position(leg(entry=None), ProfitTakingConfig(), False) is None
        assert evaluate_position(leg(current=None), ProfitTakingConfig(), False) is None

    def test_sell_price_clamped(self):
        decision = evaluate_position(leg(entry=10, current=2), ProfitTakingConfig(), False)
        assert decision.price == 1


class TestEntries:
    """Tests for side-basis entries."""

    def test_average_from_fills(self):
        """Weighted by contracts, own side only, buys only."""
        fills = [
            Fill(TICKER, Side.NO, OrderAction.BUY, 10, yes_price=62, no_price=38),
            Fill(TICKER, Side.NO, OrderAction.BUY, 30, yes_price=58, no_price=42),
            Fill(TICKER, Side.NO, OrderAction.SELL, 5, yes_price=50, no_price=50),
            Fill(TICKER, Side.YES, OrderAction.BUY, 10, yes_price=70, no_price=30),
        ]
        assert average_entry_from_fills(fills, Side.NO) == pytest.approx(41.0)
        assert average_entry_from_fills(fills, Side.YES) == pytest.approx(70.0)

    def test_no_fills(self):
        assert average_entry_from_fills([], Side.YES) is None

    def test_yes_basis_detected(self):
        """A NO entry stored as 62 when fills say 38 is flagged as a basis error."""
        problem = entry_inconsistency(Side.NO, 38.0, 62)
        assert "YES basis" in problem

    def test_consistent_entry(self):
        assert entry_inconsistency(Side.NO, 38.0, 39) is None
        assert entry_inconsistency(Side.NO, 38.0, None) is None

    def test_legs_kept_separate(self):
        """Both legs of one ticker become separate positions."""
        legs = legs_from_positions([{"ticker": TICKER, "yes_contracts": 3, "no_contracts": 7}])
        assert [(p.side, p.contracts) for p in legs] == [(Side.YES, 3), (Side.NO, 7)]

    def test_final_hours_window(self):
        assert in_final_hours(DEADLINE, DEADLINE - timedelta(hours=2), 3)
        assert not in_final_hours(DEADLINE, DEADLINE - timedelta(hours=4), 3)
        assert not in_final_hours(DEADLINE, DEADLINE + timedelta(minutes=1), 3)


# ============================================================================
# Live pass
# ============================================================================

class TestCheckAllPositions:
    """Tests for ProfitTaker.check_all_positions."""

    def test_partial_exit_routed_through_guard(self, kalshi, guard):
        """A +50% YES leg sells half through the guard at the decided price."""
        clock = FakeClock(datetime(2026, 1, 20, tzinfo=timezone.utc))
        notifier = AsyncMock()
        taker = ProfitTaker(kalshi, guard, make_cache(60), notifier, None, clock=clock)
        decisions = asyncio.run(taker.check_all_positions(BotSettings()))

        assert len(decisions) == 1
        assert decisions[0].rule is ExitRule.PARTIAL_PROFIT
        args = guard.execute.await_args.args
        assert args[1] is Side.YES
        assert args[2] is OrderAction.SELL
        assert args[3] == 10
        assert guard.execute.await_args.kwargs["exit_price"] == 58
        assert "PARTIAL PROFIT TAKING" in notifier.send.await_args.args[0]
        kalshi.get_fills.assert_awaited_once()

    def test_pending_sell_skips_until_ttl(self, kalshi, guard):
        """A leg with a sell submitted in this process is skipped until the TTL passes."""
        clock = FakeClock(datetime(2026, 1, 20, tzinfo=timezone.utc))
        taker = ProfitTaker(kalshi, guard, make_cache(60), None, None, clock=clock)

        async def run():
            await taker.check_all_positions(BotSettings())
            clock.now += timedelta(seconds=60)
            await taker.check_all_positions(BotSettings())
            assert guard.execute.await_count == 1
            clock.now += timedelta(seconds=300)
            await taker.check_all_positions(BotSettings())

        asyncio.run(run())
        assert guard.execute.await_count == 2

    def test_resting_sell_skips(self, kalshi, guard):
        """A resting sell on the exchange blocks another exit."""
        kalshi.get_resting_orders.return_value = [{"ticker": TICKER, "action": "sell", "status": "resting"}]
        taker = ProfitTaker(kalshi, guard, make_cache(60), None, None,
                            clock=FakeClock(datetime(2026, 1, 20, tzinfo=timezone.utc)))
        assert asyncio.run(taker.check_all_positions(BotSettings())) == []
        guard.execute.assert_not_awaited()
        assert taker.stats["skipped_resting"] == 1

    def test_both_legs_of_one_ticker_exit(self, kalshi, guard):
        """YES at 96 from 62 takes profit while NO at 4 from 38 stops out in the same pass."""
        kalshi.get_positions.return_value = [{"ticker": TICKER, "yes_contracts": 5, "no_contracts": 3}]
        kalshi.get_fills.return_value = [
            {"ticker": TICKER, "side": "yes", "action": "buy", "count": 5, "yes_price": 62, "no_price": 38},
            {"ticker": TICKER, "side": "no", "action": "buy", "count": 3, "yes_price": 62, "no_price": 38},
        ]
        taker = ProfitTaker(kalshi, guard, make_cache(96), None, None,
                            clock=FakeClock(datetime(2026, 1, 20, tzinfo=timezone.utc)))
        decisions = asyncio.run(taker.check_all_positions(BotSettings()))

        by_side = {d.position.side: d for d in decisions}
        assert set(by_side) == {Side.YES, Side.NO}
        assert by_side[Side.YES].rule is ExitRule.NEAR_RESOLUTION
        assert (by_side[Side.YES].contracts, by_side[Side.YES].price) == (5, 94)
        assert by_side[Side.NO].rule is ExitRule.STOP_LOSS
        assert (by_side[Side.NO].contracts, by_side[Side.NO].price) == (3, 1)
        assert guard.execute.await_count == 2
        assert taker.is_pending_sell(TICKER, Side.YES)
        assert taker.is_pending_sell(TICKER, Side.NO)

    def test_resting_sell_blocks_only_its_side(self, kalshi, guard):
        """A resting YES sell leaves the NO leg of the same ticker free to exit."""
        kalshi.get_positions.return_value = [{"ticker": TICKER, "yes_contracts": 5, "no_contracts": 3}]
        kalshi.get_fills.return_value = [
            {"ticker": TICKER, "side": "yes", "action": "buy", "count": 5, "yes_price": 62, "no_price": 38},
            {"ticker": TICKER, "side": "no", "action": "buy", "count": 3, "yes_price": 62, "no_price": 38},
        ]
        kalshi.get_resting_orders.return_value = [
            {"ticker": TICKER, "side": "yes", "action": "sell", "status": "resting"},
        ]
        taker = ProfitTaker(kalshi, guard, make_cache(96), None, None,
                            clock=FakeClock(datetime(2026, 1, 20, tzinfo=timezone.utc)))
        decisions = asyncio.run(taker.check_all_positions(BotSettings()))

        assert [d.position.side for d in decisions] == [Side.NO]
        assert guard.execute.await_args.args[1] is Side.NO
        assert taker.stats["skipped_resting"] == 1

    def test_resting_sell_legs(self):
        blocked = resting_sell_legs([
            {"ticker": "A", "side": "no", "action": "sell", "status": "resting"},
            {"ticker": "B", "action": "sell", "status": "resting"},
            {"ticker": "C", "side": "yes", "action": "buy", "status": "resting"},
            {"ticker": "D", "side": "yes", "action": "sell", "status": "executed"},
        ])
        assert blocked == {("A", Side.NO), ("B", Side.YES), ("B", Side.NO)}

    def test_resting_orders_unavailable_skips_pass(self, kalshi, guard):
        """Failure to list resting orders skips the whole pass."""
        kalshi.get_resting_orders.return_value = None
        taker = ProfitTaker(kalshi, guard, make_cache(60), None, None,
                            clock=FakeClock(datetime(2026, 1, 20, tzinfo=timezone.utc)))
        assert asyncio.run(taker.check_all_positions(BotSettings())) == []
        kalshi.get_fills.assert_not_awaited()
        guard.execute.assert_not_awaited()

    def test_disabled(self, kalshi, guard):
        taker = ProfitTaker(kalshi, guard, make_cache(60))
        settings = BotSettings(features=FeatureFlags(profit_taking=False))
        assert asyncio.run(taker.check_all_positions(settings)) == []
        kalshi.get_positions.assert_not_awaited()

    def test_no_leg_priced_on_no_basis(self, kalshi, guard):
        """A NO leg bought at 38 (YES 62) with YES now 55 is +18% and holds; the stored 62 is flagged once."""
        kalshi.get_positions.return_value = [{"ticker": TICKER, "yes_contracts": 0, "no_contracts": 50}]
        kalshi.get_fills.return_value = [
            {"ticker": TICKER, "side": "no", "action": "buy", "count": 50, "yes_price": 62, "no_price": 38},
        ]
        db = AsyncMock()
        db.get_avg_buy_price.return_value = 62
        taker = ProfitTaker(kalshi, guard, make_cache(55), None, db,
                            clock=FakeClock(datetime(2026, 1, 20, tzinfo=timezone.utc)))

        async def run():
            await taker.check_all_positions(BotSettings())
            await taker.check_all_positions(BotSettings())

        asyncio.run(run())
        guard.execute.assert_not_awaited()
        db.record_event.assert_awaited_once()
        assert db.record_event.await_args.args[1] == "entry_price_flag"
        assert taker.stats["flagged"] == 1

    def test_load_positions(self, kalshi, guard):
        """load_positions gives side-correct prices and fill entries."""
        taker = ProfitTaker(kalshi, guard, make_cache(60))
        legs = asyncio.run(taker.load_positions())
        assert len(legs) == 2
        assert legs[0].avg_entry == 40
        assert legs[0].current_price == 60


# ============================================================================
# Deadline NO-buy
# ============================================================================

def trade_market(suffix, yes_price, kind=MarketKind.TRADE):
    prefix = "KXNBATRADE" if kind is MarketKind.TRADE else "KXNEXTTEAMNBA"
    return Instrument(f"{prefix}-26-{suffix}", f"Player {suffix}", f"Player {suffix}", yes_price=yes_price, kind=kind)


class TestDeadlineNoBuy:
    """Tests for ProfitTaker.check_deadline_no_buy."""

    @pytest.fixture
    def instruments(self):
        return [
            trade_market("A", 30),   # NO 70: candidate
            trade_market("B", 5),    # NO 95: above scan ceiling
            trade_market("C", 12),   # NO 88: scanned but above buy max
            trade_market("D", 60),   # NO 40: below floor
            trade_market("E", 30, MarketKind.NEXT_TEAM),
        ]

    def test_buys_quiet_players_once(self, guard, instruments):
        """Inside the window, quiet candidates get one NO buy each."""
        db = AsyncMock()
        db.has_recent_signal.return_value = False
        clock = FakeClock(DEADLINE - timedelta(minutes=10))
        taker = ProfitTaker(AsyncMock(), guard, None, AsyncMock(), db, deadlines=DeadlineConfig(), clock=clock)

        async def run():
            first = await taker.check_deadline_no_buy(instruments, BotSettings())
            second = await taker.check_deadline_no_buy(instruments, BotSettings())
            return first, second

        first, second = asyncio.run(run())
        assert first == ["KXNBATRADE-26-A"]
        assert second == []
        args = guard.execute.await_args.args
        assert args[1] is Side.NO
        assert args[2] is OrderAction.BUY
        assert args[3] == 50
        assert args[4] == 70

    def test_recent_signal_suppresses(self, guard, instruments):
        db = AsyncMock()
        db.has_recent_signal.return_value = True
        taker = ProfitTaker(AsyncMock(), guard, None, None, db,
                            clock=FakeClock(DEADLINE - timedelta(minutes=10)))
        assert asyncio.run(taker.check_deadline_no_buy(instruments, BotSettings())) == []
        guard.execute.assert_not_awaited()

    def test_lookup_error_suppresses(self, guard, instruments):
        """An unknown signal history is treated as a possible signal."""
        db = AsyncMock()
        db.has_recent_signal.side_effect = RuntimeError("db down")
        taker = ProfitTaker(AsyncMock(), guard, None, None, db,
                            clock=FakeClock(DEADLINE - timedelta(minutes=10)))
        assert asyncio.run(taker.check_deadline_no_buy(instruments, BotSettings())) == []

    def test_outside_window(self, guard, instruments):
        taker = ProfitTaker(AsyncMock(), guard, clock=FakeClock(DEADLINE - timedelta(minutes=60)))
        assert asyncio.run(taker.check_deadline_no_buy(instruments, BotSettings())) == []
        taker = ProfitTaker(AsyncMock(), guard, clock=FakeClock(DEADLINE + timedelta(minutes=1)))
        assert asyncio.run(taker.check_deadline_no_buy(instruments, BotSettings())) == []

    def test_disabled(self, guard, instruments):
        taker = ProfitTaker(AsyncMock(), guard, clock=FakeClock(DEADLINE - timedelta(minutes=10)))
        settings = BotSettings(features=FeatureFlags(deadline_no_buy=False))
        assert asyncio.run(taker.check_deadline_no_buy(instruments, settings)) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
