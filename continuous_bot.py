"""
Continuous trade/ad signal bot with APScheduler.
Runs one engine tick every few seconds; phases inside the tick gate themselves.
"""
import asyncio
import argparse
import signal
from datetime import datetime
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from loguru import logger
from rich.console import Console

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ad_classifier import AdClassifier
from classifier import ConfidenceClassifier, LLMTradeAnalyzer
from config import BotConfig, load_config
from db import close_database, get_database
from kalshi_client import KalshiClient
from notifier import TelegramNotifier
from settings_store import SettingsStore
from trading_engine import TradingEngine
from tweet_poller import TweetPoller


async def build_engine(config: BotConfig, live_trading: bool = False) -> TradingEngine:
    """Assemble the engine and its collaborators from configuration."""
    db = await get_database(config.database.db_path) if config.database.enable_db else None
    kalshi = KalshiClient(config.kalshi)
    await kalshi.login()

    settings_store = SettingsStore(db, ttl_seconds=config.scheduler.settings_ttl_seconds)
    notifier = TelegramNotifier(config.telegram, settings_provider=settings_store.get)

    analyzer = LLMTradeAnalyzer(config.llm, db) if config.llm.enabled else None
    if analyzer is None:
        logger.warning("No LLM key configured; classification is keyword-only")
    classifier = ConfidenceClassifier(analyzer)
    ad_classifier = AdClassifier(config.llm)

    poller = TweetPoller(config.twitter, db)
    if not config.twitter.enabled:
        logger.warning("TWITTER_BEARER_TOKEN not set; text polling disabled")

    return TradingEngine(
        config=config,
        kalshi=kalshi,
        db=db,
        settings_store=settings_store,
        notifier=notifier,
        classifier=classifier,
        ad_classifier=ad_classifier,
        poller=poller,
        live_trading=live_trading,
    )


class ContinuousTradingBot:
    """Continuous trading bot that runs the engine tick on a schedule."""

    def __init__(self, live_trading: bool = False):
        self.config = load_config()
        self.live_trading = live_trading
        self.scheduler = AsyncIOScheduler()
        self.console = Console()
        self.running = True
        self.consecutive_failures = 0
        self.paused = False
        self.total_ticks = 0
        self.successful_ticks = 0
        self.last_tick_time: Optional[datetime] = None
        self.engine: Optional[TradingEngine] = None

        Path("logs").mkdir(exist_ok=True)

    async def tick_job(self):
        """Execute a single engine tick."""
        if self.engine is None or self.paused:
            return
        self.total_ticks += 1
        tick_start = datetime.now()

        try:
            summary = await self.engine.tick()
        except Exception as e:
            summary = {"errors": 1}
            logger.error(f"Tick #{self.total_ticks} raised: {e}")

        if summary.get("errors"):
            self.consecutive_failures += 1
            logger.warning(
                f"Tick #{self.total_ticks} had {summary['errors']} failed phase(s) "
                f"(failure #{self.consecutive_failures})"
            )
            if self.consecutive_failures >= self.config.scheduler.max_consecutive_failures:
                logger.critical("Max consecutive failures reached, pausing trading")
                self.console.print(
                    f"[bold red]CRITICAL: {self.consecutive_failures} consecutive failures - trading paused[/bold red]"
                )
                self.paused = True
                await self.engine.notifier.send(
                    f"BOT PAUSED\n\n{self.consecutive_failures} consecutive failed ticks. Restart required.",
                    force=True,
                )
            return

        self.consecutive_failures = 0
        self.successful_ticks += 1
        self.last_tick_time = datetime.now()
        duration = (self.last_tick_time - tick_start).total_seconds()
        if summary.get("events") or summary.get("phases"):
            logger.info(
                f"Tick #{self.total_ticks}: {summary.get('events', 0)} events, "
                f"phases {summary.get('phases')} in {duration:.1f}s"
            )
            self.console.print(
                f"[dim]{self.last_tick_time.strftime('%H:%M:%S')}[/dim] tick #{self.total_ticks} "
                f"[cyan]{summary.get('instruments', 0)} markets[/cyan] "
                f"[green]{summary.get('events', 0)} events[/green] {duration:.1f}s"
            )

    def schedule_ticks(self):
        """Register the tick job. The first run fires at once under the same overlap guard."""
        self.scheduler.add_job(
            self.tick_job,
            IntervalTrigger(seconds=self.config.scheduler.tick_seconds),
            id='tick',
            name='Engine Tick',
            next_run_time=datetime.now(),
            max_instances=1,  # Prevent overlapping ticks
            coalesce=True     # Combine missed runs
        )

    def setup_signal_handlers(self):
        """Setup graceful shutdown handlers."""
        def shutdown(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self.console.print("\n[yellow]Received shutdown signal, stopping...[/yellow]")
            self.running = False
            if self.scheduler.running:
                self.scheduler.shutdown(wait=False)

        signal.signal(signal.SIGINT, shutdown)
        if hasattr(signal, 'SIGTERM'):
            signal.signal(signal.SIGTERM, shutdown)

    async def run(self):
        """Start the continuous trading system."""
        self.setup_signal_handlers()

        logger.add(
            "logs/trade_bot_{time:YYYY-MM-DD}.log",
            rotation="1 day",
            retention="7 days",
            level="INFO",
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}"
        )

        mode = "LIVE TRADING" if self.live_trading else "DRY RUN"
        mode_color = "red" if self.live_trading else "green"
        sched = self.config.scheduler

        self.console.print("\n[bold blue]" + "=" * 60 + "[/bold blue]")
        self.console.print("[bold blue]      KALSHI NBA TRADE & AD SIGNAL BOT[/bold blue]")
        self.console.print("[bold blue]" + "=" * 60 + "[/bold blue]")
        self.console.print(f"[{mode_color}]Mode: {mode}[/{mode_color}]")
        self.console.print(f"Tick interval: {sched.tick_seconds} seconds")
        self.console.print(f"Profit-taking interval: {sched.profit_taking_interval_seconds} seconds")
        self.console.print(f"Orderbook interval: {sched.orderbook_interval_seconds} seconds")
        self.console.print(f"Trade deadline: {self.config.deadlines.trade_deadline.isoformat()}")
        self.console.print(f"Max consecutive failures: {sched.max_consecutive_failures}")
        self.console.print("[dim]Press Ctrl+C to stop[/dim]")
        self.console.print("[bold blue]" + "=" * 60 + "[/bold blue]\n")

        logger.info(f"Starting continuous bot ({mode} mode), tick every {sched.tick_seconds}s")

        self.engine = await build_engine(self.config, live_trading=self.live_trading)
        await self.engine.start()

        if sched.startup_delay_seconds:
            await asyncio.sleep(sched.startup_delay_seconds)

        self.schedule_ticks()
        self.scheduler.start()

        try:
            while self.running:
                await asyncio.sleep(1)
        except (KeyboardInterrupt, SystemExit):
            pass
        finally:
            if self.scheduler.running:
                self.scheduler.shutdown()
            await self.engine.stop()
            await self.engine.kalshi.close()
            await close_database()
            self.console.print(
                f"\n[bold]Bot stopped. Total ticks: {self.total_ticks}, Successful: {self.successful_ticks}[/bold]"
            )
            logger.info(f"Bot stopped. Total ticks: {self.total_ticks}, Successful: {self.successful_ticks}")


def main():
    """Entry point for continuous bot."""
    load_dotenv()
    parser = argparse.ArgumentParser(
        description="Kalshi NBA trade / Super Bowl ad signal bot - runs the engine tick on a schedule"
    )
    parser.add_argument(
        "--live",
        action="store_true",
        help="Enable live trading (default: dry run mode)"
    )
    parser.add_argument(
        "--version",
        action="version",
        version="Kalshi Trade Signal Bot v2.0.0"
    )
    args = parser.parse_args()

    bot = ContinuousTradingBot(live_trading=args.live)
    asyncio.run(bot.run())


if __name__ == "__main__":
    main()
