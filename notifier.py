"""
Telegram notification sink.

Usage:
    notifier = TelegramNotifier(config.telegram, settings_store.get)
    await notifier.send("PRICE SPIKE ...")

Delivery is best effort: failures are logged and never raised to the caller.
Only delivery retries (exponential backoff); 4xx responses are not retried.
"""
import asyncio
from typing import Awaitable, Callable, Optional

import httpx
from loguru import logger

from config import BotSettings, TelegramConfig

TELEGRAM_API_URL = "https://api.telegram.org"
MAX_MESSAGE_CHARS = 4000


class TelegramNotifier:
    """Sends operator notifications to a Telegram chat."""

    def __init__(
        self,
        config: TelegramConfig,
        settings_provider: Optional[Callable[[], BotSettings]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        base_url: str = TELEGRAM_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.settings_provider = settings_provider
        self._sleep = sleep
        self.base_url = base_url
        self._transport = transport
        self.sent = 0
        self.failed = 0

        if not config.enabled:
            logger.warning("Telegram not configured (TELEGRAM_BOT_TOKEN/TELEGRAM_CHAT_ID); notifications disabled")

    def _muted(self) -> bool:
        if self.settings_provider is None:
            return False
        return not self.settings_provider().features.telegram_notifications

    async def send(self, message: str, force: bool = False) -> bool:
        """
        Send a message.

        Args:
            message: Plain text body (truncated to Telegram's limit)
            force: Deliver even when notifications are toggled off

        Returns:
            True if delivered, False otherwise
        """
        if not self.config.enabled:
            logger.debug(f"Notification skipped (not configured): {message[:60]}")
            return False
        if not force and self._muted():
            logger.debug(f"Notification skipped (disabled in settings): {message[:60]}")
            return False

        url = f"{self.base_url}/bot{self.config.bot_token}/sendMessage"
        payload = {
            "chat_id": self.config.chat_id,
            "text": message[:MAX_MESSAGE_CHARS],
            "disable_web_page_preview": True,
        }

        for attempt in range(self.config.max_retries):
            try:
                async with httpx.AsyncClient(timeout=self.config.timeout_seconds, transport=self._transport) as client:
                    response = await client.post(url, json=payload)
                if response.status_code == 200:
                    self.sent += 1
                    return True
                if 400 <= response.status_code < 500 and response.status_code != 429:
                    logger.error(f"Telegram rejected message: {response.status_code} {response.text[:200]}")
                    self.failed += 1
                    return False
                logger.warning(
                    f"Telegram send failed (attempt {attempt + 1}/{self.config.max_retries}): {response.status_code}"
                )
            except httpx.HTTPError as e:
                logger.warning(
                    f"Telegram send error (attempt {attempt + 1}/{self.config.max_retries}): {e}"
                )

            if attempt < self.config.max_retries - 1:
                await self._sleep((2 ** attempt) * self.config.base_delay_ms / 1000)

        self.failed += 1
        logger.error(f"Telegram delivery gave up after {self.config.max_retries} attempts")
        return False
