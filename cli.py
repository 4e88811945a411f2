"""
CLI Commands for the Kalshi Trade Signal Bot
============================================
Operator commands for running the bot, inspecting positions and tuning settings.

Usage:
    python cli.py run [--live]              # Start the continuous bot
    python cli.py positions                 # Live positions with side-correct P&L
    python cli.py balance                   # Cash and position value
    python cli.py settings show             # Current settings snapshot
    python cli.py settings set KEY VALUE    # Change one setting (features.<name> allowed)
    python cli.py kill-switch on|off        # Halt or resume all order placement
    python cli.py trade-now "Player Name"   # Manual YES buy through the guard
    python cli.py report summary|win-rate   # Operator reports
    python cli.py recommend "text"          # Classify text without trading
"""

import asyncio
import json
from typing import Any, Optional

import click
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from config import BotSettings, load_config
from continuous_bot import ContinuousTradingBot, build_engine
from db import close_database, get_database
from reports import (
    build_daily_summary,
    build_win_rate,
    format_daily_summary,
    format_win_rate,
    positions_table,
    win_rate_tables,
)
from settings_store import SettingsStore

console = Console()


async def get_engine(live: bool = False):
    """Build an engine for one-shot commands."""
    config = load_config()
    engine = await build_engine(config, live_trading=live)
    await engine.settings_store.refresh(force=True)
    return engine


async def close_engine(engine) -> None:
    await engine.kalshi.close()
    await close_database()


async def get_settings_store() -> SettingsStore:
    config = load_config()
    db = await get_database(config.database.db_path)
    store = SettingsStore(db, ttl_seconds=config.scheduler.settings_ttl_seconds)
    await store.refresh(force=True)
    return store


def parse_setting_value(raw: str) -> Any:
    """JSON-ish value parsing: true/false, numbers, otherwise the raw string."""
    lowered = raw.strip().lower()
    if lowered in ("true", "on", "yes"):
        return True
    if lowered in ("false", "off", "no"):
        return False
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def settings_table(settings: BotSettings) -> Table:
    table = Table(title=f"Bot Settings v{settings.version}")
    table.add_column("Key", style="cyan")
    table.add_column("Value", justify="right")
    for key, value in sorted(settings.flat().items()):
        style = ""
        if isinstance(value, bool):
            style = "green" if value else "red"
        table.add_row(key, f"[{style}]{value}[/{style}]" if style else str(value))
    return table


@click.group()
def cli():
    """Kalshi Trade Signal Bot CLI"""
    pass


@cli.command()
@click.option("--live", is_flag=True, help="Enable live trading (default: dry run)")
def run(live: bool):
    """Start the continuous bot."""
    if live and not click.confirm("Start LIVE trading with real orders?"):
        console.print("[yellow]Cancelled[/yellow]")
        return
    bot = ContinuousTradingBot(live_trading=live)
    asyncio.run(bot.run())


@cli.command()
def positions():
    """Show live positions (YES and NO legs separately) with P&L."""

    async def _show():
        engine = await get_engine()
        try:
            legs = await engine.positions()
        finally:
            await close_engine(engine)

        if not legs:
            console.print("[dim]No open positions[/dim]")
            return
        console.print(positions_table(legs))
        flagged = [leg for leg in legs if leg.entry_flagged]
        if flagged:
            console.print(f"[yellow]{len(flagged)} leg(s) with inconsistent recorded entry (!)[/yellow]")
        total = sum(leg.pnl_dollars or 0 for leg in legs)
        color = "green" if total >= 0 else "red"
        console.print(f"\nTotal legs: {len(legs)} | Unrealized P&L: [{color}]${total:.2f}[/{color}]")

    asyncio.run(_show())


@cli.command()
def balance():
    """Show cash and position value."""

    async def _show():
        engine = await get_engine()
        try:
            result = await engine.balance()
        finally:
            await close_engine(engine)

        if result is None:
            console.print("[red]Could not fetch balance[/red]")
            return
        total = result["cash"] + result["positions_value"]
        console.print(Panel(
            f"Cash: [green]${result['cash']:.2f}[/green]\n"
            f"Positions: ${result['positions_value']:.2f}\n"
            f"[bold]Portfolio: ${total:.2f}[/bold]",
            title="Balance",
        ))

    asyncio.run(_show())


@cli.group()
def settings():
    """Show or change runtime settings."""
    pass


@settings.command("show")
def settings_show():
    """Print the active settings snapshot."""

    async def _show():
        store = await get_settings_store()
        try:
            console.print(settings_table(store.get()))
        finally:
            await close_database()

    asyncio.run(_show())


@settings.command("set")
@click.argument("key")
@click.argument("value")
def settings_set(key: str, value: str):
    """Set KEY to VALUE (e.g. base_contract_count 50, features.profit_taking off)."""

    async def _set():
        store = await get_settings_store()
        try:
            current = store.get()
            if key not in current.flat():
                console.print(f"[red]Unknown setting: {key}[/red]")
                return
            try:
                new = await store.update(**{key: parse_setting_value(value)})
            except ValidationError as e:
                console.print(f"[red]Invalid value for {key}: {e.errors()[0]['msg']}[/red]")
                return
            console.print(f"[green]{key}: {current.flat()[key]} -> {new.flat()[key]} (v{new.version})[/green]")
            logger.info(f"Setting {key} changed to {new.flat()[key]} via CLI")
        finally:
            await close_database()

    asyncio.run(_set())


@cli.command("kill-switch")
@click.argument("state", type=click.Choice(["on", "off"]))
def kill_switch(state: str):
    """Halt (on) or resume (off) all order placement."""

    async def _toggle():
        store = await get_settings_store()
        try:
            new = await store.update(kill_switch=(state == "on"))
        finally:
            await close_database()
        if new.kill_switch:
            console.print("[bold red]KILL SWITCH ACTIVE - no orders will be placed[/bold red]")
        else:
            console.print("[green]Kill switch off - trading resumed[/green]")

    asyncio.run(_toggle())


@cli.command("trade-now")
@click.argument("player")
@click.option("--count", type=int, default=None, help="Contracts to buy")
@click.option("--max-price", type=int, default=None, help="Max YES price in cents")
@click.option("--slippage", type=int, default=None, help="Cents above reference")
@click.option("--live", is_flag=True, help="Place a real order (default: dry run)")
def trade_now(player: str, count: Optional[int], max_price: Optional[int], slippage: Optional[int], live: bool):
    """Buy YES on PLAYER's trade market right now."""

    if live and not click.confirm(f"Place a LIVE YES order on {player}?"):
        console.print("[yellow]Cancelled[/yellow]")
        return

    async def _trade():
        engine = await get_engine(live=live)
        try:
            result = await engine.trade_now(player, count, max_price, slippage)
        finally:
            await close_engine(engine)

        if result.get("success"):
            console.print(f"[green]Order placed: {result['order_id']} @ {result['price']}c ({result.get('status')})[/green]")
        elif result.get("would_trade"):
            console.print(f"[yellow]Dry run - would have: {result['would_trade']}[/yellow]")
        else:
            reason = result.get("skip_reason")
            reason_text = reason.value if reason is not None else "error"
            console.print(f"[red]Not placed ({reason_text}): {result.get('error')}[/red]")

    asyncio.run(_trade())


@cli.command()
@click.argument("kind", type=click.Choice(["summary", "win-rate"]))
@click.option("--send", is_flag=True, help="Also send the report as a notification")
def report(kind: str, send: bool):
    """Portfolio summary or win rate by source and tier."""

    async def _report():
        engine = await get_engine()
        try:
            if kind == "summary":
                await engine.market_cache.refresh()
                if send:
                    summary = await engine.send_summary()
                else:
                    summary = await build_daily_summary(
                        engine.kalshi, engine.profit_taker, engine.db, engine.market_cache
                    )
                console.print(Panel(format_daily_summary(summary), title="Summary"))
            else:
                if engine.db is None:
                    console.print("[red]Database disabled; no win rate data[/red]")
                    return
                data = await build_win_rate(engine.db)
                for table in win_rate_tables(data):
                    console.print(table)
                if send:
                    await engine.notifier.send(format_win_rate(data))
        finally:
            await close_engine(engine)

    asyncio.run(_report())


@cli.command()
@click.argument("text")
@click.option("--author", default="manual", help="Source handle used for reliability weighting")
def recommend(text: str, author: str):
    """Show what the engine would do with TEXT, without trading."""

    async def _recommend():
        engine = await get_engine()
        try:
            rows = await engine.recommend(text, author=author)
        finally:
            await close_engine(engine)

        if not rows:
            console.print("[dim]No actionable signals[/dim]")
            return
        table = Table(title="Recommendations")
        table.add_column("Entity", style="cyan")
        table.add_column("Tier")
        table.add_column("Action")
        table.add_column("Ticker")
        table.add_column("Price", justify="right")
        table.add_column("Contracts", justify="right")
        table.add_column("Max", justify="right")
        for row in rows:
            table.add_row(
                row["entity"],
                row["tier"],
                row["action"],
                row["ticker"] or "[dim]no market[/dim]",
                f"{row['price']}c" if row["price"] is not None else "-",
                str(row["contracts"]),
                f"{row['max_price']}c",
            )
        console.print(table)

    asyncio.run(_recommend())


if __name__ == "__main__":
    cli()
