"""Shared pytest fixtures and configuration."""

from __future__ import annotations

import asyncio
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from iceberg_search.config import Settings
from iceberg_search.models import ProviderName, SearchResult
from iceberg_search.pipeline.router import ProviderHealthRouter
from iceberg_search.services.providers.base import ProviderAdapter, SearchDepth


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced clock, usable wherever a ``time.time``-style callable is."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedAdapter(ProviderAdapter):
    """Adapter whose live call returns or raises whatever ``behaviour`` holds.

    ``behaviour`` may be a result list, an exception instance, or a callable
    taking the query and returning either of those. ``delay`` sleeps before
    answering.
    """

    def __init__(
        self,
        name: ProviderName,
        router: ProviderHealthRouter,
        behaviour: Any = None,
        delay: float = 0.0,
        credentials: bool = True,
        **kwargs: Any,
    ) -> None:
        self.name = name
        kwargs.setdefault("max_retries", 0)
        kwargs.setdefault("retry_delay", 0.0)
        super().__init__(MagicMock(), router, **kwargs)
        self.behaviour = behaviour if behaviour is not None else []
        self.delay = delay
        self.credentials = credentials
        self.calls = 0

    @property
    def has_credentials(self) -> bool:
        return self.credentials

    async def _search_live(self, query: str, max_results: int, search_depth: SearchDepth) -> list[SearchResult]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.behaviour(query) if callable(self.behaviour) else self.behaviour
        if isinstance(outcome, BaseException):
            raise outcome
        return list(outcome)[:max_results]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    """Clock starting at an arbitrary fixed epoch."""
    return FakeClock()


@pytest.fixture
def router(clock: FakeClock) -> ProviderHealthRouter:
    """Fresh router tracking every provider, driven by the fake clock."""
    return ProviderHealthRouter(clock=clock)


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the environment, with fast retries and no Redis."""
    return Settings(
        _env_file=None,
        tavily_api_key=None,
        exa_api_key=None,
        google_api_key=None,
        google_cse_id=None,
        openrouter_api_key=None,
        anthropic_api_key=None,
        redis_url=None,
        provider_retry_delay_seconds=0.0,
        provider_max_retries=0,
        search_deadline_seconds=5.0,
    )


@pytest.fixture
def make_result() -> Callable[..., SearchResult]:
    """Factory for :class:`SearchResult` with sensible defaults."""

    def _make(
        url: str = "https://example.org/a",
        score: float = 0.5,
        provider: str = "tavily",
        title: str | None = None,
        **extra: Any,
    ) -> SearchResult:
        return SearchResult(
            title=title if title is not None else f"Result {url}",
            url=url,
            content=extra.pop("content", f"Snippet for {url}"),
            score=score,
            provider=provider,
            **extra,
        )

    return _make


@pytest.fixture
def mock_log_store() -> AsyncMock:
    """Search-log store double that never touches Redis."""
    mock = AsyncMock()
    mock.ping.return_value = True
    mock.log_search.return_value = None
    mock.save_results.return_value = None
    mock.get_stats.return_value = {
        "queries_total": 10,
        "cache_hits": 4,
        "total_latency_ms": 5000.0,
        "queries_by_provider": {"tavily": 8, "exa": 6},
    }
    return mock
