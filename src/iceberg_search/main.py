"""FastAPI application entry point with lifespan management."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Literal

import httpx
import structlog
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from iceberg_search.config import settings
from iceberg_search.exceptions import SearchTimeoutError
from iceberg_search.models import (
    HealthResponse,
    ProviderName,
    ProviderSnapshot,
    SearchParams,
    SearchResponse,
    StatsResponse,
)
from iceberg_search.pipeline.orchestrator import SearchEngine
from iceberg_search.services.redis_client import SearchLogStore
from iceberg_search.utils.logging import configure_logging

logger = structlog.get_logger(__name__)

_startup_time: float = 0.0

# Per-request ceiling; the adapters bound their own calls more tightly.
_HTTP_TIMEOUT = httpx.Timeout(connect=5.0, read=20.0, write=5.0, pool=5.0)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the search engine at startup and tear it down on shutdown."""
    global _startup_time
    configure_logging(settings.environment, settings.log_level)
    log = structlog.get_logger(__name__)

    log.info("iceberg_search.startup", environment=settings.environment, port=settings.port)

    app.state.http = httpx.AsyncClient(timeout=_HTTP_TIMEOUT)

    app.state.log_store = None
    if settings.redis_url:
        store = SearchLogStore(settings.redis_url)
        await store.connect()
        app.state.log_store = store
    else:
        log.info("redis.disabled")

    app.state.engine = SearchEngine.create(settings, app.state.http, app.state.log_store)
    app.state.engine.start()

    _startup_time = time.time()
    log.info("iceberg_search.ready", providers=[p.value for p in app.state.engine.adapters])

    yield

    log.info("iceberg_search.shutdown")
    await app.state.engine.stop()
    if app.state.log_store is not None:
        await app.state.log_store.disconnect()
    await app.state.http.aclose()


app = FastAPI(
    title="Iceberg Search",
    description="Multi-provider search aggregation with adaptive provider routing and knowledge-depth ranking.",
    version="0.1.0",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/search", response_model=SearchResponse, summary="Search every healthy provider")
async def search(
    q: str = Query(..., min_length=1, max_length=512, description="Search query"),
    limit: int = Query(default=10, ge=1, le=50, description="Maximum results to return"),
    depth: Literal["basic", "advanced"] = Query(default="advanced", description="Provider search depth"),
    model: str | None = Query(default=None, description="LLM model id used for enhancement"),
    use_llm: bool = Query(default=True, description="Ask the LLM to assign knowledge levels"),
    skip_provider: ProviderName | None = Query(default=None, description="Provider to leave out"),
    use_cache: bool = Query(default=True, description="Serve and store cached responses"),
) -> SearchResponse:
    """Fan the query out, merge, optionally enhance, and return ranked results."""
    if not q.strip():
        raise HTTPException(status_code=400, detail="Query cannot be blank.")

    params = SearchParams(
        query=q.strip(),
        max_results=limit,
        search_depth=depth,
        model=model,
        use_llm=use_llm,
        skip_provider=skip_provider,
        use_cache=use_cache,
    )
    return await app.state.engine.search(params, timeout=settings.request_timeout_seconds)


@app.get("/providers", response_model=dict[str, ProviderSnapshot], summary="Provider health snapshot")
async def providers() -> dict[str, ProviderSnapshot]:
    """Per-provider success rate, latency, status and weight."""
    return app.state.engine.provider_snapshot()


@app.get("/jobs", summary="Background job status")
async def jobs() -> list[dict[str, Any]]:
    """Bookkeeping for the cache-sweep and health-check jobs."""
    return app.state.engine.scheduler.status()


@app.post("/jobs/{job_id}/run", summary="Run a background job now")
async def run_job(job_id: str) -> dict[str, Any]:
    """Trigger *job_id* outside its timer."""
    if not await app.state.engine.scheduler.run_now(job_id):
        raise HTTPException(status_code=409, detail=f"Job {job_id!r} is unknown or already running.")
    return {"job": job_id, "status": "completed"}


@app.get("/health", response_model=HealthResponse, summary="Service health check")
async def health() -> HealthResponse:
    """Check Redis reachability and summarise provider health."""
    uptime = time.time() - _startup_time if _startup_time else 0.0

    redis_status = "disabled"
    if app.state.log_store is not None:
        redis_status = "connected"
        try:
            await app.state.log_store.ping()
        except Exception:  # noqa: BLE001
            redis_status = "unavailable"

    snapshot = app.state.engine.provider_snapshot()
    provider_states = {name: snap.status for name, snap in snapshot.items()}
    search_states = [state for name, state in provider_states.items() if name != ProviderName.OPENROUTER.value]

    overall = "ok"
    if redis_status == "unavailable" or any(state != "healthy" for state in search_states):
        overall = "degraded"
    if search_states and all(state == "deprecated" for state in search_states):
        overall = "failing"

    return HealthResponse(
        status=overall,
        redis=redis_status,
        providers=provider_states,
        cache_entries=app.state.engine.cache_stats()["size"],
        uptime_seconds=round(uptime, 1),
    )


@app.get("/stats", response_model=StatsResponse, summary="Aggregated query statistics")
async def stats() -> StatsResponse:
    """Return cumulative query statistics from the search-log store."""
    if app.state.log_store is None:
        raise HTTPException(status_code=503, detail="Stats unavailable, search log disabled.")
    try:
        data = await app.state.log_store.get_stats()
    except Exception as exc:  # noqa: BLE001
        logger.warning("stats.redis_error", error=str(exc))
        raise HTTPException(status_code=503, detail="Stats unavailable, Redis error.") from exc

    queries_total: int = data.get("queries_total", 0)
    cache_hits: int = data.get("cache_hits", 0)
    total_latency_ms: float = data.get("total_latency_ms", 0.0)

    cache_hit_rate = cache_hits / queries_total if queries_total else 0.0
    avg_latency_ms = total_latency_ms / queries_total if queries_total else 0.0

    return StatsResponse(
        queries_total=queries_total,
        cache_hit_rate=round(cache_hit_rate, 4),
        avg_latency_ms=round(avg_latency_ms, 1),
        queries_by_provider=data.get("queries_by_provider", {}),
    )


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------


@app.exception_handler(SearchTimeoutError)
async def search_timeout_handler(request: Request, exc: SearchTimeoutError) -> JSONResponse:
    """Report an exceeded search deadline as 504 rather than a generic error."""
    logger.warning("search_timeout", path=str(request.url), timeout_s=exc.timeout_seconds)
    return JSONResponse(
        status_code=504,
        content={"detail": "Search timed out.", "timeout_seconds": exc.timeout_seconds},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all error handler that logs and returns a structured response."""
    logger.error("unhandled_exception", path=str(request.url), error=str(exc))
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error.", "error": str(exc)},
    )
