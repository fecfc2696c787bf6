"""Tests for the HTTP surface, with the engine wired in by hand."""

from __future__ import annotations

from typing import Iterator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from conftest import ScriptedAdapter
from iceberg_search.exceptions import SearchTimeoutError
from iceberg_search.main import app
from iceberg_search.models import ProviderName, SearchResult
from iceberg_search.pipeline.orchestrator import SearchEngine
from iceberg_search.services.memory_cache import MemoryCache


@pytest.fixture
def engine(test_settings, router) -> SearchEngine:
    """Engine with two scripted providers and no LLM."""
    hits = [
        SearchResult(title=f"Hit {i}", url=f"https://hits.org/{i}", content="", score=0.9 - i / 10, provider="tavily")
        for i in range(5)
    ]
    adapters = {
        ProviderName.TAVILY: ScriptedAdapter(ProviderName.TAVILY, router, hits),
        ProviderName.EXA: ScriptedAdapter(ProviderName.EXA, router, []),
    }
    return SearchEngine(test_settings, router, adapters, MemoryCache())


@pytest.fixture
def client(engine) -> Iterator[TestClient]:
    """Client that skips the lifespan; state is injected instead."""
    app.state.engine = engine
    app.state.log_store = None
    yield TestClient(app, raise_server_exceptions=False)
    del app.state.engine
    del app.state.log_store


class TestSearchEndpoint:
    """Tests for GET /search."""

    def test_returns_ranked_results(self, client) -> None:
        """Query parameters map onto the search and the response is the engine's."""
        resp = client.get("/search", params={"q": "volcanoes", "limit": 3, "use_llm": "false"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["query"] == "volcanoes"
        assert body["providers"] == ["tavily"]
        assert len(body["results"]) == 3
        assert body["results"][0]["knowledge_level"] == 1
        assert body["from_cache"] is False
        assert "tavily" in body["provider_statuses"]

    def test_validation(self, client) -> None:
        """Missing query, blank query and unknown providers are rejected."""
        assert client.get("/search").status_code == 422
        assert client.get("/search", params={"q": "   "}).status_code == 400
        assert client.get("/search", params={"q": "x", "skip_provider": "bing"}).status_code == 422
        assert client.get("/search", params={"q": "x", "limit": 0}).status_code == 422

    def test_timeout_maps_to_504(self, client) -> None:
        """An exceeded deadline is a gateway timeout."""
        app.state.engine = MagicMock()
        app.state.engine.search = AsyncMock(side_effect=SearchTimeoutError(timeout_seconds=55.0))
        resp = client.get("/search", params={"q": "slow"})
        assert resp.status_code == 504
        assert resp.json()["timeout_seconds"] == 55.0

    def test_unexpected_error_maps_to_500(self, client) -> None:
        """Anything else is a structured 500."""
        app.state.engine = MagicMock()
        app.state.engine.search = AsyncMock(side_effect=RuntimeError("kaboom"))
        resp = client.get("/search", params={"q": "x"})
        assert resp.status_code == 500
        assert resp.json()["detail"] == "Internal server error."


class TestObservabilityEndpoints:
    """Tests for /providers, /health, /stats and /jobs."""

    def test_providers_snapshot(self, client) -> None:
        """Every tracked provider is listed with its weight and status."""
        body = client.get("/providers").json()
        assert set(body) == {"tavily", "exa", "google", "openrouter"}
        assert body["tavily"]["status"] == "healthy"
        assert body["tavily"]["weight"] == 1.0

    def test_health_ok_without_redis(self, client) -> None:
        """Fresh providers and no log store: ok, with Redis disabled."""
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["redis"] == "disabled"
        assert body["cache_entries"] == 0

    def test_health_reports_deprecated_providers(self, client, router) -> None:
        """A deprecated provider degrades; all search providers deprecated is failing."""
        router.record_failure(ProviderName.TAVILY, is_rate_limit=True)
        body = client.get("/health").json()
        assert body["status"] == "degraded"
        assert body["providers"]["tavily"] == "deprecated"

        for provider in (ProviderName.EXA, ProviderName.GOOGLE):
            router.record_failure(provider, is_rate_limit=True)
        assert client.get("/health").json()["status"] == "failing"

    def test_health_with_unreachable_redis(self, client, mock_log_store) -> None:
        """A failing ping marks Redis unavailable."""
        mock_log_store.ping.side_effect = ConnectionError("refused")
        app.state.log_store = mock_log_store
        body = client.get("/health").json()
        assert body["redis"] == "unavailable"
        assert body["status"] == "degraded"

    def test_stats(self, client, mock_log_store) -> None:
        """Counters are turned into rates and averages."""
        assert client.get("/stats").status_code == 503

        app.state.log_store = mock_log_store
        body = client.get("/stats").json()
        assert body == {
            "queries_total": 10,
            "cache_hit_rate": 0.4,
            "avg_latency_ms": 500.0,
            "queries_by_provider": {"tavily": 8, "exa": 6},
        }

    def test_jobs(self, client, engine) -> None:
        """Jobs are listed and can be triggered; unknown ids conflict."""
        engine.scheduler.schedule("cache-sweep", engine._sweep_cache, 60)
        jobs = client.get("/jobs").json()
        assert [job["id"] for job in jobs] == ["cache-sweep"]

        assert client.post("/jobs/cache-sweep/run").json() == {"job": "cache-sweep", "status": "completed"}
        assert client.post("/jobs/nope/run").status_code == 409
