"""In-process TTL cache with per-entry expiry and explicit sweeping."""

from __future__ import annotations

import functools
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

import structlog
from cachetools import TLRUCache

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_TTL_SECONDS = 300.0


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A stored value and the clock readings it was written and expires at."""

    data: T
    timestamp: float
    expires_at: float


def _entry_expiry(_key: str, entry: CacheEntry[Any], _now: float) -> float:
    return entry.expires_at


class MemoryCache:
    """Key/value store whose entries expire individually.

    Reads past expiry return ``None`` and drop stale entries; :meth:`sweep`
    removes everything expired and is meant to run on a timer. The cache is
    owned by a single event loop and takes no locks.

    Args:
        default_ttl: Seconds an entry lives when :meth:`set` gets no TTL.
        max_size:    LRU bound on the number of live entries.
        timer:       Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        max_size: int = 10_000,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_ttl = default_ttl
        self._timer = timer
        self._entries: TLRUCache[str, CacheEntry[Any]] = TLRUCache(
            maxsize=max_size, ttu=_entry_expiry, timer=timer
        )

    def get(self, key: str) -> Any | None:
        """Return the live value for *key*, or ``None`` when absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self._entries.expire()
            return None
        return entry.data

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store *value* under *key* for *ttl* seconds (default TTL if ``None``)."""
        now = self._timer()
        expires_at = now + (self._default_ttl if ttl is None else ttl)
        self._entries[key] = CacheEntry(data=value, timestamp=now, expires_at=expires_at)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        """Drop every expired entry and return how many were removed."""
        expired = self._entries.expire()
        if expired:
            logger.debug("cache.swept", removed=len(expired), remaining=len(self._entries))
        return len(expired)

    def stats(self) -> dict[str, Any]:
        """Size and live keys, for health reporting."""
        self._entries.expire()
        return {"size": len(self._entries), "keys": list(self._entries.keys())}

    def memoize(
        self,
        fn: Callable[..., Awaitable[T]],
        key_fn: Callable[..., str],
        ttl: float | None = None,
    ) -> Callable[..., Awaitable[T]]:
        """Wrap coroutine function *fn* so results are cached under ``key_fn(*args)``.

        Only successful results are stored. Concurrent misses on the same key
        each invoke *fn*; there is no in-flight deduplication.
        """

        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            key = key_fn(*args, **kwargs)
            cached = self.get(key)
            if cached is not None:
                logger.debug("cache.hit", key=key[:16])
                return cached
            result = await fn(*args, **kwargs)
            self.set(key, result, ttl)
            return result

        return wrapper
