"""Redis-backed search log and result archive."""

from __future__ import annotations

import json
from typing import Any, Sequence

import structlog
from redis.asyncio import Redis

from iceberg_search.models import SearchLogEntry, SearchResult

logger = structlog.get_logger(__name__)

_RECENT_SEARCHES_KEY = "searches:recent"
_RECENT_SEARCHES_MAX = 500
RESULTS_TTL_SECONDS = 7 * 24 * 3600


class SearchLogStore:
    """Wrapper around ``redis.asyncio.Redis`` that records what searches did.

    Every write swallows and logs its own errors: the orchestrator calls these
    after the response is already built, so storage trouble must never reach
    the caller.

    Args:
        url: Redis connection URL, e.g. ``"redis://localhost:6379/0"``.
    """

    def __init__(self, url: str) -> None:
        self._url = url
        self._redis: Redis | None = None

    async def connect(self) -> None:
        """Open the connection pool."""
        self._redis = Redis.from_url(self._url, decode_responses=True)
        logger.info("redis.connected", url=self._url)

    async def disconnect(self) -> None:
        """Close the connection pool gracefully."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("redis.disconnected")

    @property
    def _r(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("SearchLogStore not connected, call connect() first.")
        return self._redis

    async def ping(self) -> bool:
        """Return True if Redis responds to PING."""
        return await self._r.ping()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def log_search(self, entry: SearchLogEntry) -> None:
        """Append *entry* to the recent-searches list and bump the counters."""
        try:
            pipe = self._r.pipeline()
            pipe.lpush(_RECENT_SEARCHES_KEY, entry.model_dump_json())
            pipe.ltrim(_RECENT_SEARCHES_KEY, 0, _RECENT_SEARCHES_MAX - 1)
            pipe.incrbyfloat("queries_total", 1)
            pipe.incrbyfloat("total_latency_ms", entry.duration_ms)
            if entry.from_cache:
                pipe.incrbyfloat("cache_hits", 1)
            for provider in entry.providers:
                pipe.incrbyfloat(f"queries_by_provider:{provider}", 1)
            await pipe.execute()
        except Exception as exc:  # noqa: BLE001
            logger.warning("redis.log_search_error", search_id=entry.search_id, error=str(exc))

    async def save_results(
        self,
        search_id: str,
        results: Sequence[SearchResult],
        ttl_seconds: int = RESULTS_TTL_SECONDS,
    ) -> None:
        """Archive the result set of one search under ``results:{search_id}``.

        Args:
            search_id:   Identifier returned to the caller.
            results:     Final, truncated result list.
            ttl_seconds: Expiry in seconds.
        """
        try:
            payload = json.dumps([r.model_dump() for r in results])
            await self._r.setex(f"results:{search_id}", ttl_seconds, payload)
        except Exception as exc:  # noqa: BLE001
            logger.warning("redis.save_results_error", search_id=search_id, error=str(exc))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_results(self, search_id: str) -> list[SearchResult] | None:
        """Fetch an archived result set, or ``None`` on miss / error."""
        try:
            raw = await self._r.get(f"results:{search_id}")
            if raw is None:
                return None
            return [SearchResult(**item) for item in json.loads(raw)]
        except Exception as exc:  # noqa: BLE001
            logger.warning("redis.get_results_error", search_id=search_id, error=str(exc))
            return None

    async def get_stats(self) -> dict[str, Any]:
        """Collect all stats counters from Redis.

        Returns:
            Dict with keys ``queries_total``, ``cache_hits``,
            ``total_latency_ms``, and ``queries_by_provider``.
        """
        queries_total = float(await self._r.get("queries_total") or 0)
        cache_hits = float(await self._r.get("cache_hits") or 0)
        total_latency = float(await self._r.get("total_latency_ms") or 0)

        providers: dict[str, int] = {}
        async for key in self._r.scan_iter("queries_by_provider:*"):
            provider_name = key.split(":", 1)[1]
            val = await self._r.get(key)
            providers[provider_name] = int(float(val or 0))

        return {
            "queries_total": int(queries_total),
            "cache_hits": int(cache_hits),
            "total_latency_ms": total_latency,
            "queries_by_provider": providers,
        }
