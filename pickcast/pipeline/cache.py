"""
Time-boxed cache for expensive upstream lookups.

An explicit object owned by its caller (pipeline, consensus service) with an
injected clock, so tests control time and runs never share hidden state.
Entries expire by age; when full, the oldest entry is evicted.
"""

import time
from typing import Any, Awaitable, Callable, Hashable, Optional

import structlog

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]

DEFAULT_TTL_SECONDS: float = 300.0
DEFAULT_MAX_ENTRIES: int = 1024


class TTLCache:
    """Age-evicted key/value cache."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Clock = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        # key → (stored_at, value); insertion order doubles as age order
        self._entries: dict[Hashable, tuple[float, Any]] = {}

    def __len__(self) -> int:
        self._purge_expired()
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def get(self, key: Hashable) -> Optional[Any]:
        """Cached value, or None on miss / expiry."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._entries.pop(key, None)
        if len(self._entries) >= self.max_entries:
            self._purge_expired()
        while len(self._entries) >= self.max_entries:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
        self._entries[key] = (self._clock(), value)

    async def get_or_compute(self, key: Hashable, compute: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value or await ``compute`` and cache its result."""
        cached = self.get(key)
        if cached is not None:
            logger.debug("cache_hit", key=str(key))
            return cached
        value = await compute()
        if value is not None:
            self.set(key, value)
        return value

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [k for k, (ts, _) in self._entries.items() if now - ts >= self.ttl_seconds]
        for key in expired:
            del self._entries[key]


# ── Cache key builders ───────────────────────────────────────────────────


def snapshot_key(entity_id: str, kind: str) -> str:
    return f"snapshot:{entity_id}:{kind}"


def eligible_sources_key(kind: str) -> str:
    return f"eligible:{kind}"
