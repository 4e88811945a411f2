"""
TTL caches for market lists, reliability lookups and other slow-changing reads.

Staleness is a pure function of the entry and the caller-supplied clock, so
tests can drive time explicitly.
"""
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, Optional, TypeVar

from loguru import logger

V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    """A cached value with the time it was fetched and its TTL in seconds."""

    value: V
    fetched_at: float
    ttl: float = 60.0

    def is_stale(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now - self.fetched_at >= self.ttl

    def age(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return now - self.fetched_at


class TTLCache(Generic[V]):
    """Keyed TTL cache."""

    def __init__(self, default_ttl: float = 60.0, clock: Callable[[], float] = time.time):
        self._entries: Dict[Hashable, CacheEntry[V]] = {}
        self.default_ttl = default_ttl
        self._clock = clock

    def get(self, key: Hashable) -> Optional[V]:
        """Return the cached value, or None when missing or stale."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_stale(self._clock()):
            logger.debug(f"Cache STALE for {key} (age {entry.age(self._clock()):.0f}s)")
            return None
        return entry.value

    def get_entry(self, key: Hashable) -> Optional[CacheEntry[V]]:
        return self._entries.get(key)

    def set(self, key: Hashable, value: V, ttl: Optional[float] = None) -> None:
        self._entries[key] = CacheEntry(
            value=value,
            fetched_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )

    def is_stale(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is None or entry.is_stale(self._clock())

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Any) -> bool:
        return key in self._entries
