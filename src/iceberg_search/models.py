"""Pydantic v2 data models for the search core."""

from __future__ import annotations

from collections import deque
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class ProviderName(str, Enum):
    """The fixed set of external providers the router tracks."""

    TAVILY = "tavily"
    EXA = "exa"
    GOOGLE = "google"
    OPENROUTER = "openrouter"


SEARCH_PROVIDERS: tuple[ProviderName, ...] = (
    ProviderName.TAVILY,
    ProviderName.EXA,
    ProviderName.GOOGLE,
)

LLM_PROVIDER = ProviderName.OPENROUTER

MOCK_PROVIDER = "mock"

HealthCheckStatus = Literal["passing", "warning", "failing", "unknown"]
SnapshotStatus = Literal["healthy", "degraded", "failing", "deprecated"]

MAX_RESPONSE_SAMPLES = 10


class ProviderStatus(BaseModel):
    """Mutable health / circuit-breaker state for one provider."""

    failure_count: int = Field(default=0, ge=0)
    success_count: int = Field(default=0, ge=0)
    last_failure_time: Optional[float] = None
    weight: float = Field(default=1.0, ge=0.0, le=1.0)
    is_deprecated: bool = False
    last_error_message: Optional[str] = None
    response_times: deque[float] = Field(default_factory=lambda: deque(maxlen=MAX_RESPONSE_SAMPLES))
    health_check_status: HealthCheckStatus = "unknown"
    cooldown_multiplier: float = 1.0
    rate_limited: bool = False
    on_probation: bool = False

    @property
    def average_response_time(self) -> float | None:
        """Mean of the retained response-time samples, in milliseconds."""
        if not self.response_times:
            return None
        return sum(self.response_times) / len(self.response_times)


class ProviderSnapshot(BaseModel):
    """Per-provider health summary exposed to dashboards."""

    success_rate: float = Field(..., ge=0.0, le=1.0)
    avg_response_time: Optional[float] = None
    status: SnapshotStatus
    weight: float = Field(..., ge=0.0, le=1.0)
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: Optional[float] = None
    last_error_message: Optional[str] = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class SearchResult(BaseModel):
    """One normalised hit from any provider."""

    title: str
    url: str
    content: str = ""
    score: float = Field(default=0.0, ge=0.0)
    provider: str
    knowledge_level: Optional[int] = Field(default=None, ge=1, le=5)
    image: Optional[str] = None


class SearchParams(BaseModel):
    """Inbound parameters for one search."""

    query: str = Field(..., min_length=1)
    max_results: int = Field(default=10, ge=1)
    search_depth: Literal["basic", "advanced"] = "advanced"
    model: Optional[str] = None
    use_llm: bool = True
    skip_provider: Optional[ProviderName] = None
    use_cache: bool = True


class SearchResponse(BaseModel):
    """Unified, ranked answer to one search."""

    results: list[SearchResult]
    query: str
    providers: list[str]
    search_id: str
    from_cache: bool = False
    provider_statuses: dict[str, ProviderSnapshot] = Field(default_factory=dict)
    duration_ms: float = 0.0


class SearchLogEntry(BaseModel):
    """What the orchestrator hands to the search-log store after responding."""

    search_id: str
    query: str
    model: Optional[str] = None
    providers: list[str]
    results_count: int
    duration_ms: float
    from_cache: bool = False


# ---------------------------------------------------------------------------
# API response models
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Response from GET /health."""

    status: str
    redis: str
    providers: dict[str, SnapshotStatus]
    cache_entries: int
    uptime_seconds: float


class StatsResponse(BaseModel):
    """Response from GET /stats."""

    queries_total: int
    cache_hit_rate: float
    avg_latency_ms: float
    queries_by_provider: dict[str, int]


class ProviderConfig(BaseModel):
    """Per-provider switches from ``config/providers.yaml``."""

    enabled: bool = True
    results: int = Field(default=10, ge=1, le=50)
