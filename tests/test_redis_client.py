"""Tests for the Redis search-log store against a mocked client."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from iceberg_search.models import SearchLogEntry
from iceberg_search.services.redis_client import RESULTS_TTL_SECONDS, SearchLogStore


@pytest.fixture
def fake_redis() -> MagicMock:
    redis = MagicMock()
    redis.pipeline.return_value.execute = AsyncMock(return_value=[])
    redis.setex = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.ping = AsyncMock(return_value=True)
    return redis


@pytest.fixture
def store(fake_redis) -> SearchLogStore:
    store = SearchLogStore("redis://localhost:6379/0")
    store._redis = fake_redis
    return store


def _entry(**overrides) -> SearchLogEntry:
    fields = {
        "search_id": "abc",
        "query": "volcanoes",
        "model": "m",
        "providers": ["tavily", "exa"],
        "results_count": 10,
        "duration_ms": 812.5,
        "from_cache": False,
    }
    fields.update(overrides)
    return SearchLogEntry(**fields)


@pytest.mark.asyncio
class TestSearchLogStore:
    """Tests for log writes, archives and stats."""

    async def test_requires_connect(self) -> None:
        """Using the store before connect() is an error."""
        with pytest.raises(RuntimeError, match="connect"):
            await SearchLogStore("redis://x").ping()

    async def test_log_search_bumps_counters(self, store, fake_redis) -> None:
        """One pipeline: list push, trim and counter increments."""
        await store.log_search(_entry())

        pipe = fake_redis.pipeline.return_value
        pushed = json.loads(pipe.lpush.call_args.args[1])
        assert pushed["search_id"] == "abc"
        pipe.ltrim.assert_called_once_with("searches:recent", 0, 499)
        increments = [c.args for c in pipe.incrbyfloat.call_args_list]
        assert ("queries_total", 1) in increments
        assert ("total_latency_ms", 812.5) in increments
        assert ("queries_by_provider:tavily", 1) in increments
        assert ("queries_by_provider:exa", 1) in increments
        assert all(name != "cache_hits" for name, _ in increments)
        pipe.execute.assert_awaited_once()

    async def test_cache_hit_counted(self, store, fake_redis) -> None:
        """Cache-hit entries increment cache_hits."""
        await store.log_search(_entry(from_cache=True))
        increments = [c.args for c in fake_redis.pipeline.return_value.incrbyfloat.call_args_list]
        assert ("cache_hits", 1) in increments

    async def test_write_errors_swallowed(self, store, fake_redis, make_result) -> None:
        """Storage failures never propagate."""
        fake_redis.pipeline.return_value.execute.side_effect = ConnectionError("down")
        fake_redis.setex.side_effect = ConnectionError("down")
        await store.log_search(_entry())
        await store.save_results("abc", [make_result()])

    async def test_results_archive(self, store, fake_redis, make_result) -> None:
        """Results are stored with a TTL and read back as models."""
        results = [make_result(url="https://a.org", knowledge_level=2)]
        await store.save_results("abc", results)

        key, ttl, payload = fake_redis.setex.await_args.args
        assert key == "results:abc"
        assert ttl == RESULTS_TTL_SECONDS

        fake_redis.get.return_value = payload
        assert await store.get_results("abc") == results

        fake_redis.get.return_value = None
        assert await store.get_results("missing") is None

    async def test_get_stats(self, store, fake_redis) -> None:
        """Counters are read back and provider keys folded into a dict."""
        values = {
            "queries_total": "4",
            "cache_hits": "1",
            "total_latency_ms": "2000.5",
            "queries_by_provider:tavily": "3",
            "queries_by_provider:exa": "2",
        }
        fake_redis.get.side_effect = lambda key: values.get(key)

        async def _scan(_pattern):
            for key in ("queries_by_provider:tavily", "queries_by_provider:exa"):
                yield key

        fake_redis.scan_iter = _scan

        assert await store.get_stats() == {
            "queries_total": 4,
            "cache_hits": 1,
            "total_latency_ms": 2000.5,
            "queries_by_provider": {"tavily": 3, "exa": 2},
        }
