"""
Operator reports: the periodic portfolio summary and win rate by source and tier.

Each report is built as a plain dict, then rendered either as notification
text or as rich tables for the CLI.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger
from rich.table import Table

from models import Position

MAX_SUMMARY_POSITIONS = 10


# =============================================================================
# Daily summary
# =============================================================================
async def build_daily_summary(
    kalshi: Any,
    profit_taker: Any,
    db: Any = None,
    market_cache: Any = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Balance, live positions priced on their own side, and trades placed today."""
    now = now or datetime.now(timezone.utc)
    balance = await kalshi.get_balance()
    legs: List[Position] = await profit_taker.load_positions(with_entries=True)

    positions = []
    total_value = 0.0
    total_cost = 0.0
    for leg in legs:
        instrument = market_cache.get(leg.ticker) if market_cache is not None else None
        value = (leg.current_price or 0) * leg.contracts / 100
        cost = (leg.avg_entry or 0) * leg.contracts / 100
        total_value += value
        total_cost += cost
        row = leg.to_dict()
        row["name"] = instrument.entity_name if instrument is not None else leg.ticker
        row["value"] = round(value, 2)
        positions.append(row)

    trades_today = 0
    if db is not None:
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        try:
            trades_today = await db.count_trades_since(midnight)
        except Exception as e:
            logger.error(f"Error counting today's trades: {e}")

    return {
        "balance": balance,
        "positions": positions,
        "position_value": round(total_value, 2),
        "cost_basis": round(total_cost, 2),
        "unrealized_pnl": round(total_value - total_cost, 2),
        "trades_today": trades_today,
    }


def _position_line(p: Dict[str, Any]) -> str:
    price = p.get("current_price")
    price_text = f"{price}c" if price is not None else "?"
    pnl = p.get("pnl_dollars")
    pnl_pct = p.get("pnl_pct")
    if pnl is None:
        return f"- {p['name']} {p['side'].upper()}: {p['contracts']} @ {price_text}"
    sign = "+" if pnl >= 0 else "-"
    return (
        f"- {p['name']} {p['side'].upper()}: {p['contracts']} @ {price_text} "
        f"({sign}${abs(pnl):.2f}, {pnl_pct:.0f}%)"
    )


def format_daily_summary(summary: Dict[str, Any]) -> str:
    positions = summary["positions"]
    lines = [_position_line(p) for p in positions[:MAX_SUMMARY_POSITIONS]]
    balance = summary.get("balance")
    if balance:
        portfolio = (
            f"- Portfolio: ${balance['cash'] + balance['positions_value']:.2f}\n"
            f"- Positions: ${balance['positions_value']:.2f}\n"
            f"- Cash: ${balance['cash']:.2f}"
        )
    else:
        portfolio = f"- Positions: {len(positions)}\n- Cost Basis: ${summary['cost_basis']:.2f}"

    return (
        f"DAILY SUMMARY\n\n"
        f"Positions ({len(positions)}):\n{chr(10).join(lines) or 'None'}\n\n"
        f"Portfolio:\n{portfolio}\n\n"
        f"Today's Activity:\n"
        f"- Trades: {summary['trades_today']}"
    )


def positions_table(positions: List[Position], title: str = "Live Positions") -> Table:
    table = Table(title=title)
    table.add_column("Ticker", style="cyan", max_width=40)
    table.add_column("Side", style="green")
    table.add_column("Contracts", justify="right")
    table.add_column("Entry", justify="right")
    table.add_column("Current", justify="right")
    table.add_column("P&L $", justify="right")
    table.add_column("P&L %", justify="right")

    for leg in positions:
        pnl = leg.pnl_dollars
        pnl_pct = leg.pnl_pct
        color = "green" if (pnl or 0) >= 0 else "red"
        entry = f"{leg.avg_entry:.1f}c" if leg.avg_entry is not None else "-"
        if leg.entry_flagged:
            entry += " [yellow]![/yellow]"
        table.add_row(
            leg.ticker,
            leg.side.value.upper(),
            str(leg.contracts),
            entry,
            f"{leg.current_price}c" if leg.current_price is not None else "-",
            f"[{color}]${pnl:.2f}[/{color}]" if pnl is not None else "-",
            f"[{color}]{pnl_pct:.1f}%[/{color}]" if pnl_pct is not None else "-",
        )
    return table


# =============================================================================
# Win rate
# =============================================================================
async def build_win_rate(db: Any) -> Dict[str, Any]:
    """Resolved accuracy per source handle and per confidence tier."""
    sources: List[Dict[str, Any]] = []
    tiers: List[Dict[str, Any]] = []
    try:
        for row in await db.get_all_source_reliability():
            resolved = row.get("total_resolved") or 0
            correct = row.get("correct_predictions") or 0
            sources.append({
                "source": row["source_username"],
                "correct": correct,
                "resolved": resolved,
                "accuracy_pct": round(correct / resolved * 100, 1) if resolved else None,
                "multiplier": row.get("reliability_multiplier"),
            })
        for row in await db.get_tier_outcomes():
            correct = row.get("correct") or 0
            resolved = correct + (row.get("incorrect") or 0)
            tiers.append({
                "tier": row.get("confidence_tier") or "unknown",
                "correct": correct,
                "resolved": resolved,
                "pending": row.get("pending") or 0,
                "accuracy_pct": round(correct / resolved * 100, 1) if resolved else None,
            })
    except Exception as e:
        logger.error(f"Error building win rate report: {e}")
    return {"sources": sources, "tiers": tiers}


def _pct(value: Optional[float]) -> str:
    return "N/A" if value is None else f"{value:.0f}%"


def format_win_rate(report: Dict[str, Any]) -> str:
    if not report["sources"] and not report["tiers"]:
        return "WIN RATE REPORT\n\nNo resolved predictions yet."
    source_lines = [
        f"- @{s['source']}: {_pct(s['accuracy_pct'])} ({s['correct']}/{s['resolved']})"
        for s in report["sources"]
    ]
    tier_lines = [
        f"- {t['tier']}: {_pct(t['accuracy_pct'])} ({t['correct']}/{t['resolved']})"
        for t in report["tiers"]
    ]
    return (
        f"WIN RATE REPORT\n\n"
        f"By Source:\n{chr(10).join(source_lines) or 'No data'}\n\n"
        f"By Tier:\n{chr(10).join(tier_lines) or 'No data'}"
    )


def win_rate_tables(report: Dict[str, Any]) -> List[Table]:
    by_source = Table(title="Win Rate by Source")
    by_source.add_column("Source", style="cyan")
    by_source.add_column("Accuracy", justify="right")
    by_source.add_column("Correct/Resolved", justify="right")
    by_source.add_column("Multiplier", justify="right")
    for s in report["sources"]:
        multiplier = s.get("multiplier")
        by_source.add_row(
            f"@{s['source']}",
            _pct(s["accuracy_pct"]),
            f"{s['correct']}/{s['resolved']}",
            f"{multiplier:.2f}x" if multiplier is not None else "-",
        )

    by_tier = Table(title="Win Rate by Tier")
    by_tier.add_column("Tier", style="cyan")
    by_tier.add_column("Accuracy", justify="right")
    by_tier.add_column("Correct/Resolved", justify="right")
    by_tier.add_column("Pending", justify="right")
    for t in report["tiers"]:
        by_tier.add_row(t["tier"], _pct(t["accuracy_pct"]), f"{t['correct']}/{t['resolved']}", str(t["pending"]))
    return [by_source, by_tier]
