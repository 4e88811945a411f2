"""
Tests for price-movement and orderbook-flow detection.

Coverage:
- PriceWindow pruning and reset
- SpikeDetector: sub-threshold sliding, low-volume suppression, alert reset, ceiling
- Spike buy price gates
- PriceSpikeMonitor: notifications, feature toggle, cooldown, corroboration, auto-buy
- OrderbookMonitor: hot market selection, bullish/bearish net flow, reporting
"""
import pytest
import asyncio
from unittest.mock import AsyncMock
import os
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import BotSettings, FeatureFlags
from models import Instrument, MarketKind, OrderAction, Side, Tier
from spike_detector import (
    OrderbookMonitor,
    PriceSpikeMonitor,
    PriceWindow,
    SpikeDetector,
    hot_instruments,
    spike_buy_block_reason,
)


class FakeClock:
    def __init__(self, now: float = 10_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_instrument(price, volume=30_000, ticker="KXNBATRADE-26-PX", name="Player X",
                    kind=MarketKind.TRADE, open_interest=5_000):
    return Instrument(
        ticker=ticker,
        title=f"Will {name} be traded?",
        entity_name=name,
        yes_price=price,
        volume=volume,
        open_interest=open_interest,
        kind=kind,
    )


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def settings():
    """Default thresholds with spike trading on and no cooldown."""
    return BotSettings(
        features=FeatureFlags(price_spike_trading=True),
        price_spike_require_twitter=False,
        price_spike_cooldown_minutes=0,
    )


@pytest.fixture
def guard():
    guard = AsyncMock()
    guard.execute.return_value = {"success": True, "order_id": "o1", "price": 62}
    return guard


# ============================================================================
# PriceWindow
# ============================================================================

class TestPriceWindow:
    """Tests for PriceWindow."""

    def test_prunes_old_samples(self):
        """Samples older than the window are dropped on add."""
        window = PriceWindow(300)
        window.add(50, 0)
        window.add(52, 100)
        window.add(55, 301)
        assert [s.price for s in window.samples] == [52, 55]

    def test_reset(self):
        """reset leaves only the current sample."""
        window = PriceWindow(300)
        window.add(50, 0)
        window.add(60, 10)
        window.reset(60, 10)
        assert len(window) == 1
        assert window.oldest.price == 60

    def test_low(self):
        """low is the minimum in the window."""
        window = PriceWindow(300)
        assert window.low is None
        for t, p in enumerate([50, 44, 60]):
            window.add(p, t)
        assert window.low == 44


# ============================================================================
# SpikeDetector
# ============================================================================

class TestSpikeDetector:
    """Tests for SpikeDetector.evaluate."""

    def test_sub_threshold_slides_window(self):
        """70c -> 74c over 60s at volume 2,000 (floor 5,000): no alert, window kept."""
        settings = BotSettings(min_volume_for_alert=5_000)
        detector = SpikeDetector()
        assert detector.evaluate(make_instrument(70, volume=2_000), settings, 0) is None
        assert detector.evaluate(make_instrument(74, volume=2_000), settings, 60) is None

        window = detector.window("KXNBATRADE-26-PX")
        assert len(window) == 2
        assert window.oldest.price == 70
        assert detector.suppressed_low_volume == 0

    def test_low_volume_candidate_resets_without_alert(self):
        """A threshold move on thin volume is suppressed and resets the window."""
        settings = BotSettings(min_volume_for_alert=5_000)
        detector = SpikeDetector()
        detector.evaluate(make_instrument(70, volume=2_000), settings, 0)
        detector.evaluate(make_instrument(74, volume=2_000), settings, 60)
        assert detector.evaluate(make_instrument(78, volume=2_000), settings, 120) is None

        window = detector.window("KXNBATRADE-26-PX")
        assert detector.suppressed_low_volume == 1
        assert len(window) == 1
        assert window.oldest.price == 78

    def test_alert_fires_and_resets(self):
        """A volume-backed 24% rise is a high-volume spike; the window resets."""
        settings = BotSettings()
        detector = SpikeDetector()
        detector.evaluate(make_instrument(50), settings, 0)
        alert = detector.evaluate(make_instrument(62), settings, 60)

        assert alert is not None
        assert alert.old_price == 50
        assert alert.new_price == 62
        assert alert.pct_change == pytest.approx(0.24)
        assert alert.elapsed_seconds == 60
        assert alert.is_spike
        assert alert.high_volume
        assert alert.direction == "UP"
        assert alert.session_low == 50
        assert len(detector.window("KXNBATRADE-26-PX")) == 1

    def test_medium_volume_not_high(self):
        """Volume between the alert and auto-buy floors is medium."""
        settings = BotSettings()
        detector = SpikeDetector()
        detector.evaluate(make_instrument(50, volume=20_000), settings, 0)
        alert = detector.evaluate(make_instrument(62, volume=20_000), settings, 30)
        assert alert.is_spike
        assert not alert.high_volume

    def test_drop_is_not_spike(self):
        """Downward moves alert but are never spikes."""
        settings = BotSettings()
        detector = SpikeDetector()
        detector.evaluate(make_instrument(60), settings, 0)
        alert = detector.evaluate(make_instrument(45), settings, 30)
        assert alert.direction == "DOWN"
        assert not alert.is_spike

    def test_ceiling_blocks_alert(self):
        """Moves starting at or above the alert ceiling are ignored."""
        settings = BotSettings(price_alert_ceiling=90)
        detector = SpikeDetector()
        detector.evaluate(make_instrument(92), settings, 0)
        assert detector.evaluate(make_instrument(60), settings, 30) is None
        assert len(detector.window("KXNBATRADE-26-PX")) == 2

    def test_unpriced_ignored(self):
        """Zero prices are not sampled."""
        detector = SpikeDetector()
        assert detector.evaluate(make_instrument(0), BotSettings(), 0) is None
        assert len(detector.window("KXNBATRADE-26-PX")) == 0


class TestSpikeBuyGates:
    """Tests for spike_buy_block_reason."""

    def test_passes(self):
        """A clean 50 -> 62 move passes every gate."""
        assert spike_buy_block_reason(50, 62, 50, BotSettings()) is None

    def test_too_cheap(self):
        assert "too cheap" in spike_buy_block_reason(10, 15, 10, BotSettings())

    def test_small_move(self):
        assert "only moved" in spike_buy_block_reason(20, 24, 20, BotSettings())

    def test_too_expensive(self):
        assert "too expensive" in spike_buy_block_reason(60, 86, 60, BotSettings())

    def test_runup_from_session_low(self):
        """Already far above the session low."""
        assert "session low" in spike_buy_block_reason(50, 62, 40, BotSettings())

    def test_below_spike_threshold(self):
        """A move under the spike percentage is rejected."""
        assert spike_buy_block_reason(60, 70, 60, BotSettings()) == "below spike threshold"


# ============================================================================
# PriceSpikeMonitor
# ============================================================================

class TestPriceSpikeMonitor:
    """Tests for PriceSpikeMonitor."""

    def test_spike_buys_without_cooldown(self, settings, guard):
        """With no cooldown an accepted spike is bought in the same tick."""
        clock = FakeClock()
        notifier = AsyncMock()
        db = AsyncMock()
        monitor = PriceSpikeMonitor(guard, notifier, db, clock=clock)

        async def run():
            await monitor.check([make_instrument(50)], settings)
            clock.now += 60
            return await monitor.check([make_instrument(62)], settings)

        alerts = asyncio.run(run())
        assert len(alerts) == 1
        assert "PRICE SPIKE (HIGH VOLUME)" in notifier.send.await_args_list[0].args[0]

        args = guard.execute.await_args.args
        assert args[1] is Side.YES
        assert args[2] is OrderAction.BUY
        assert args[3] == 8
        assert args[4] == settings.price_spike_max_entry
        assert args[5].tier is Tier.SERIOUS
        assert args[5].event.author == "price_monitor"

        assert db.record_signal.await_args.args[0]["signal_type"] == "price_movement"
        assert db.record_event.await_args.args[1] == "price_spike_buy"
        assert monitor.stats["buys"] == 1

    def test_trading_disabled_alerts_only(self, guard):
        """With the toggle off the spike is notified but not bought."""
        clock = FakeClock()
        notifier = AsyncMock()
        monitor = PriceSpikeMonitor(guard, notifier, None, clock=clock)
        settings = BotSettings(features=FeatureFlags(price_spike_trading=False))

        async def run():
            await monitor.check([make_instrument(50)], settings)
            clock.now += 60
            await monitor.check([make_instrument(62)], settings)

        asyncio.run(run())
        notifier.send.assert_awaited_once()
        guard.execute.assert_not_awaited()
        assert not monitor.pending

    def test_medium_volume_not_bought(self, settings, guard):
        """Medium-volume spikes only alert."""
        clock = FakeClock()
        monitor = PriceSpikeMonitor(guard, AsyncMock(), None, clock=clock)

        async def run():
            await monitor.check([make_instrument(50, volume=20_000)], settings)
            clock.now += 60
            await monitor.check([make_instrument(62, volume=20_000)], settings)

        asyncio.run(run())
        guard.execute.assert_not_awaited()

    def test_cooldown_then_corroborated_buy(self, guard):
        """A queued spike buys after the cooldown when a recent text signal exists."""
        clock = FakeClock()
        db = AsyncMock()
        db.has_recent_signal.return_value = True
        monitor = PriceSpikeMonitor(guard, AsyncMock(), db, clock=clock)
        settings = BotSettings(
            features=FeatureFlags(price_spike_trading=True),
            price_spike_require_twitter=True,
            price_spike_cooldown_minutes=2,
        )

        async def run():
            await monitor.check([make_instrument(50)], settings)
            clock.now += 60
            await monitor.check([make_instrument(62)], settings)
            assert "KXNBATRADE-26-PX" in monitor.pending
            guard.execute.assert_not_awaited()
            clock.now += 121
            await monitor.check([make_instrument(62)], settings)

        asyncio.run(run())
        guard.execute.assert_awaited_once()
        db.has_recent_signal.assert_awaited_once()
        assert not monitor.pending

    def test_uncorroborated_dropped(self, guard):
        """No recent text signal drops the pending entry."""
        clock = FakeClock()
        db = AsyncMock()
        db.has_recent_signal.return_value = False
        monitor = PriceSpikeMonitor(guard, AsyncMock(), db, clock=clock)
        settings = BotSettings(
            features=FeatureFlags(price_spike_trading=True),
            price_spike_require_twitter=True,
            price_spike_cooldown_minutes=0,
        )

        async def run():
            await monitor.check([make_instrument(50)], settings)
            clock.now += 60
            await monitor.check([make_instrument(62)], settings)

        asyncio.run(run())
        guard.execute.assert_not_awaited()
        assert monitor.stats["blocked"] == 1

    def test_corroboration_error_is_no(self, guard):
        """A failed lookup counts as no corroboration."""
        clock = FakeClock()
        db = AsyncMock()
        db.has_recent_signal.side_effect = RuntimeError("db down")
        monitor = PriceSpikeMonitor(guard, AsyncMock(), db, clock=clock)
        settings = BotSettings(features=FeatureFlags(price_spike_trading=True), price_spike_cooldown_minutes=0)

        async def run():
            await monitor.check([make_instrument(50)], settings)
            clock.now += 60
            await monitor.check([make_instrument(62)], settings)

        asyncio.run(run())
        guard.execute.assert_not_awaited()

    def test_price_reverted_after_cooldown(self, guard):
        """Gates are re-checked at the post-cooldown price."""
        clock = FakeClock()
        monitor = PriceSpikeMonitor(guard, AsyncMock(), None, clock=clock)
        settings = BotSettings(
            features=FeatureFlags(price_spike_trading=True),
            price_spike_require_twitter=False,
            price_spike_cooldown_minutes=2,
        )

        async def run():
            await monitor.check([make_instrument(50)], settings)
            clock.now += 60
            await monitor.check([make_instrument(62)], settings)
            clock.now += 121
            await monitor.check([make_instrument(53)], settings)

        asyncio.run(run())
        guard.execute.assert_not_awaited()

    def test_ad_markets_skipped(self, settings, guard):
        """Ad instruments are not price-monitored."""
        clock = FakeClock()
        monitor = PriceSpikeMonitor(guard, AsyncMock(), None, clock=clock)
        ad = make_instrument(50, ticker="KXSUPERBOWLAD-SB2026-NIKE", name="Nike", kind=MarketKind.AD)

        async def run():
            await monitor.check([ad], settings)
            clock.now += 60
            ad.yes_price = 70
            return await monitor.check([ad], settings)

        assert asyncio.run(run()) == []


# ============================================================================
# OrderbookMonitor
# ============================================================================

class TestOrderbookMonitor:
    """Tests for OrderbookMonitor."""

    def test_hot_instruments(self):
        """Only 30-89c trade/next-team markets, by volume, capped."""
        instruments = [
            make_instrument(50, volume=100, ticker="A"),
            make_instrument(20, volume=900, ticker="B"),
            make_instrument(90, volume=900, ticker="C"),
            make_instrument(30, volume=500, ticker="D", kind=MarketKind.NEXT_TEAM),
            make_instrument(60, volume=999, ticker="E", kind=MarketKind.AD),
        ]
        assert [i.ticker for i in hot_instruments(instruments)] == ["D", "A"]
        assert len(hot_instruments([make_instrument(50, ticker=str(n)) for n in range(20)])) == 15

    def test_first_snapshot_no_alert(self):
        monitor = OrderbookMonitor(AsyncMock())
        assert monitor.observe(make_instrument(50), {"yes_bid_depth": 5000, "no_bid_depth": 5000}) is None

    def test_bullish_flow(self):
        """YES asks (NO bids) consumed beyond threshold and 2x the other side."""
        monitor = OrderbookMonitor(AsyncMock())
        inst = make_instrument(50)
        monitor.observe(inst, {"yes_bid_depth": 5000, "no_bid_depth": 5000})
        alert = monitor.observe(inst, {"yes_bid_depth": 5000, "no_bid_depth": 2000})
        assert alert.direction == "bullish"
        assert alert.contracts == 3000

    def test_bearish_flow(self):
        """NO asks (YES bids) consumed is bearish."""
        monitor = OrderbookMonitor(AsyncMock())
        inst = make_instrument(50)
        monitor.observe(inst, {"yes_bid_depth": 6000, "no_bid_depth": 5000})
        alert = monitor.observe(inst, {"yes_bid_depth": 2500, "no_bid_depth": 5000})
        assert alert.direction == "bearish"
        assert alert.contracts == 3500

    def test_below_threshold(self):
        monitor = OrderbookMonitor(AsyncMock())
        inst = make_instrument(50)
        monitor.observe(inst, {"yes_bid_depth": 5000, "no_bid_depth": 5000})
        assert monitor.observe(inst, {"yes_bid_depth": 5000, "no_bid_depth": 3500}) is None

    def test_two_sided_flow_not_dominant(self):
        """Net flow over threshold but not 2x the other side is ignored."""
        monitor = OrderbookMonitor(AsyncMock())
        inst = make_instrument(50)
        monitor.observe(inst, {"yes_bid_depth": 10000, "no_bid_depth": 10000})
        assert monitor.observe(inst, {"yes_bid_depth": 6000, "no_bid_depth": 3000}) is None

    def test_scan_reports(self):
        """scan notifies and records a volume_spike signal."""
        kalshi = AsyncMock()
        kalshi.get_orderbook.side_effect = [
            {"yes_bid_depth": 5000, "no_bid_depth": 5000},
            {"yes_bid_depth": 5000, "no_bid_depth": 1000},
        ]
        notifier = AsyncMock()
        db = AsyncMock()
        monitor = OrderbookMonitor(kalshi, notifier, db)
        inst = make_instrument(50)

        async def run():
            await monitor.scan([inst], BotSettings())
            return await monitor.scan([inst], BotSettings())

        alerts = asyncio.run(run())
        assert len(alerts) == 1
        assert "BULLISH VOLUME SPIKE" in notifier.send.await_args.args[0]
        assert db.record_signal.await_args.args[0]["signal_type"] == "volume_spike"

    def test_scan_disabled(self):
        """The feature toggle turns the scan off."""
        kalshi = AsyncMock()
        monitor = OrderbookMonitor(kalshi)
        settings = BotSettings(features=FeatureFlags(orderbook_monitoring=False))
        assert asyncio.run(monitor.scan([make_instrument(50)], settings)) == []
        kalshi.get_orderbook.assert_not_awaited()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
