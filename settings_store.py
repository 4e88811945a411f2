"""
Settings store: serves the active BotSettings snapshot.

The active snapshot is replaced atomically on reload; callers hold on to the
snapshot they read for the duration of a decision.
"""
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from loguru import logger
from pydantic import ValidationError

from config import BotSettings
from ttl_cache import CacheEntry

SettingsListener = Callable[[BotSettings, BotSettings, Dict[str, tuple]], Awaitable[None]]


class SettingsStore:
    """TTL-cached, DB-backed settings with atomic snapshot swap."""

    def __init__(
        self,
        db: Any = None,
        ttl_seconds: float = 60.0,
        initial: Optional[BotSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entry: CacheEntry[BotSettings] = CacheEntry(
            value=initial or BotSettings(), fetched_at=float("-inf"), ttl=ttl_seconds
        )
        self._dirty = False
        self._listeners: List[SettingsListener] = []
        self.loaded_at: Optional[float] = None

    def get(self) -> BotSettings:
        """Current snapshot. Never triggers I/O."""
        return self._entry.value

    @property
    def version(self) -> int:
        return self._entry.value.version

    def subscribe(self, listener: SettingsListener) -> None:
        """Register a coroutine called with (old, new, changes) after a swap."""
        self._listeners.append(listener)

    def mark_dirty(self) -> None:
        """External change push: the next refresh() reloads regardless of TTL."""
        self._dirty = True

    def is_stale(self) -> bool:
        return self._dirty or self._entry.is_stale(self._clock())

    async def refresh(self, force: bool = False) -> Tuple[BotSettings, Dict[str, tuple]]:
        """
        Reload from the backing table when stale, dirty or forced.

        Returns the active snapshot and the changed keys (empty when nothing
        changed or no reload happened). On load failure the previous snapshot
        stays active.
        """
        forced = force or self._dirty
        if not forced and not self._entry.is_stale(self._clock()):
            return self._entry.value, {}

        self._dirty = False
        loaded = await self._load()
        now = self._clock()
        current = self._entry.value

        if loaded is None:
            # Keep serving the previous snapshot; try again after another TTL
            self._entry = CacheEntry(value=current, fetched_at=now, ttl=self.ttl_seconds)
            return current, {}

        changes = current.diff(loaded)
        self._entry = CacheEntry(value=loaded, fetched_at=now, ttl=self.ttl_seconds)
        self.loaded_at = now

        if changes:
            logger.info(
                f"Settings reloaded: v{current.version} -> v{loaded.version} "
                f"({len(changes)} change(s){', forced' if forced else ''})"
            )
            for listener in self._listeners:
                try:
                    await listener(current, loaded, changes)
                except Exception as e:
                    logger.error(f"Settings listener failed: {e}")
        return loaded, changes

    async def set(self, settings: BotSettings) -> BotSettings:
        """Persist a new snapshot (next version) and make it active."""
        current = self._entry.value
        new = BotSettings.model_validate(
            {**settings.model_dump(), "version": max(current.version + 1, settings.version)}
        )
        await self._save(new)
        changes = current.diff(new)
        self._entry = CacheEntry(value=new, fetched_at=self._clock(), ttl=self.ttl_seconds)
        if changes:
            for listener in self._listeners:
                try:
                    await listener(current, new, changes)
                except Exception as e:
                    logger.error(f"Settings listener failed: {e}")
        return new

    async def update(self, **changes: Any) -> BotSettings:
        """Apply field changes (features.<name> keys allowed) and persist."""
        return await self.set(self.get().with_updates(**changes))

    async def _load(self) -> Optional[BotSettings]:
        if self.db is None:
            return self._entry.value
        try:
            row = await self.db.get_bot_settings()
        except Exception as e:
            logger.error(f"Error loading settings: {e}")
            return None
        if not row:
            return self._entry.value
        try:
            payload = json.loads(row["settings_json"])
            payload["version"] = row.get("version", payload.get("version", 0))
            return BotSettings.model_validate(payload)
        except (ValueError, ValidationError) as e:
            logger.error(f"Malformed settings row ignored: {e}")
            return None

    async def _save(self, settings: BotSettings) -> None:
        if self.db is None:
            return
        await self.db.save_bot_settings(
            settings.version, json.dumps(settings.model_dump(exclude={"version"}))
        )


def format_settings_summary(settings: BotSettings) -> str:
    """Multi-line summary used in startup notifications."""
    f = settings.features
    lines = [
        f"Settings v{settings.version}",
        f"Base contracts: {settings.base_contract_count}",
        f"Max price: confirmed {settings.max_price_confirmed}c / imminent {settings.max_price_imminent}c "
        f"/ serious {settings.max_price_serious}c",
        f"Volume floors: alert {settings.min_volume_for_alert:,} / auto-buy {settings.min_volume_for_auto_buy:,}",
        f"Spike: {settings.price_spike_threshold:.0f}% (max entry {settings.price_spike_max_entry}c)",
        f"Twitter: {'ON' if f.twitter_monitoring else 'OFF'} | Spike trading: {'ON' if f.price_spike_trading else 'OFF'} "
        f"| Orderbook: {'ON' if f.orderbook_monitoring else 'OFF'} | Profit taking: {'ON' if f.profit_taking else 'OFF'}",
        f"Kill switch: {'ACTIVE' if settings.kill_switch else 'off'}",
    ]
    return "\n".join(lines)


def format_settings_changes(changes: Dict[str, tuple]) -> str:
    return "\n".join(f"{key}: {old} -> {new}" for key, (old, new) in sorted(changes.items()))
