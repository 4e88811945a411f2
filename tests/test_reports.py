"""
Tests for operator reports.

Coverage:
- Daily summary: per-leg valuation, unrealized P&L, trades today
- Summary text with and without a balance
- Win rate by source and tier, with failures degrading to an empty report
- Rich tables for the CLI
"""
import pytest
import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
import os
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models import Instrument, Position, Side
from reports import (
    build_daily_summary,
    build_win_rate,
    format_daily_summary,
    format_win_rate,
    positions_table,
    win_rate_tables,
)

NOW = datetime(2026, 2, 5, 15, 30, tzinfo=timezone.utc)


@pytest.fixture
def legs():
    return [
        Position("KXNBATRADE-26-JBUT", Side.YES, 100, avg_entry=40.0, current_price=55),
        Position("KXNBATRADE-26-JBUT", Side.NO, 20, avg_entry=50.0, current_price=45),
    ]


def summary_deps(legs, balance=None):
    kalshi = AsyncMock()
    kalshi.get_balance.return_value = balance
    profit_taker = AsyncMock()
    profit_taker.load_positions.return_value = legs
    market_cache = MagicMock()
    market_cache.get.return_value = Instrument("KXNBATRADE-26-JBUT", "Will Jimmy Butler be traded?", "Jimmy Butler")
    db = AsyncMock()
    db.count_trades_since.return_value = 3
    return kalshi, profit_taker, db, market_cache


# ============================================================================
# Daily summary
# ============================================================================

class TestDailySummary:
    """Tests for build_daily_summary and format_daily_summary."""

    def test_build(self, legs):
        kalshi, profit_taker, db, market_cache = summary_deps(legs, {"cash": 100.0, "positions_value": 64.0})
        summary = asyncio.run(build_daily_summary(kalshi, profit_taker, db, market_cache, now=NOW))

        assert summary["position_value"] == 64.0
        assert summary["cost_basis"] == 50.0
        assert summary["unrealized_pnl"] == 14.0
        assert summary["trades_today"] == 3
        assert [p["name"] for p in summary["positions"]] == ["Jimmy Butler", "Jimmy Butler"]
        profit_taker.load_positions.assert_awaited_once_with(with_entries=True)
        assert db.count_trades_since.await_args.args[0] == datetime(2026, 2, 5, tzinfo=timezone.utc)

    def test_format(self, legs):
        kalshi, profit_taker, db, market_cache = summary_deps(legs, {"cash": 100.0, "positions_value": 64.0})
        text = format_daily_summary(asyncio.run(build_daily_summary(kalshi, profit_taker, db, market_cache, now=NOW)))

        assert text.startswith("DAILY SUMMARY")
        assert "- Jimmy Butler YES: 100 @ 55c (+$15.00, 38%)" in text
        assert "- Jimmy Butler NO: 20 @ 45c (-$1.00, -10%)" in text
        assert "- Portfolio: $164.00" in text
        assert "- Trades: 3" in text

    def test_format_without_balance(self):
        kalshi, profit_taker, db, _ = summary_deps([])
        db.count_trades_since.side_effect = RuntimeError("db down")
        summary = asyncio.run(build_daily_summary(kalshi, profit_taker, db, now=NOW))
        text = format_daily_summary(summary)

        assert summary["trades_today"] == 0
        assert "Positions (0):\nNone" in text
        assert "- Cost Basis: $0.00" in text

    def test_unpriced_leg(self):
        leg = Position("KXNBATRADE-26-NEW", Side.YES, 5)
        kalshi, profit_taker, db, _ = summary_deps([leg])
        text = format_daily_summary(asyncio.run(build_daily_summary(kalshi, profit_taker, db, now=NOW)))
        assert "- KXNBATRADE-26-NEW YES: 5 @ ?" in text

    def test_positions_table(self, legs):
        assert positions_table(legs).row_count == 2


# ============================================================================
# Win rate
# ============================================================================

def win_rate_db():
    db = AsyncMock()
    db.get_all_source_reliability.return_value = [
        {"source_username": "ShamsCharania", "total_resolved": 4, "correct_predictions": 3,
         "reliability_multiplier": 1.2},
    ]
    db.get_tier_outcomes.return_value = [
        {"confidence_tier": "confirmed", "correct": 2, "incorrect": 0, "pending": 1},
        {"confidence_tier": None, "correct": 0, "incorrect": 0, "pending": 2},
    ]
    return db


class TestWinRate:
    """Tests for build_win_rate and its renderers."""

    def test_build(self):
        report = asyncio.run(build_win_rate(win_rate_db()))
        assert report["sources"][0]["accuracy_pct"] == 75.0
        assert [t["tier"] for t in report["tiers"]] == ["confirmed", "unknown"]
        assert report["tiers"][1]["accuracy_pct"] is None

    def test_format(self):
        text = format_win_rate(asyncio.run(build_win_rate(win_rate_db())))
        assert "- @ShamsCharania: 75% (3/4)" in text
        assert "- confirmed: 100% (2/2)" in text
        assert "- unknown: N/A (0/0)" in text

    def test_failure_is_empty(self):
        db = AsyncMock()
        db.get_all_source_reliability.side_effect = RuntimeError("no table")
        report = asyncio.run(build_win_rate(db))
        assert format_win_rate(report) == "WIN RATE REPORT\n\nNo resolved predictions yet."

    def test_tables(self):
        by_source, by_tier = win_rate_tables(asyncio.run(build_win_rate(win_rate_db())))
        assert by_source.row_count == 1
        assert by_tier.row_count == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
