"""Search orchestrator: one engine object owning all cross-request state."""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
import uuid
from typing import Any, Callable, Mapping, Sequence

import httpx
import structlog

from iceberg_search.config import Settings
from iceberg_search.exceptions import ProviderError, SearchTimeoutError
from iceberg_search.models import (
    LLM_PROVIDER,
    MOCK_PROVIDER,
    ProviderConfig,
    ProviderName,
    ProviderSnapshot,
    SearchLogEntry,
    SearchParams,
    SearchResponse,
    SearchResult,
)
from iceberg_search.pipeline.enhance import KnowledgeEnhancer
from iceberg_search.pipeline.merger import merge_results
from iceberg_search.pipeline.router import ProviderHealthRouter
from iceberg_search.services.llm import LLMClient
from iceberg_search.services.memory_cache import MemoryCache
from iceberg_search.services.providers.base import PING_TIMEOUT_SECONDS, ProviderAdapter
from iceberg_search.services.providers.mock import fallback_results
from iceberg_search.services.providers.registry import build_adapters
from iceberg_search.services.redis_client import SearchLogStore
from iceberg_search.services.scheduler import TaskScheduler
from iceberg_search.utils.async_utils import with_concurrency_limit, with_timeout
from iceberg_search.utils.logging import search_log_context

logger = structlog.get_logger(__name__)

CACHE_SWEEP_JOB = "cache-sweep"
HEALTH_CHECK_JOB = "provider-health-check"


def make_cache_key(params: SearchParams, model: str) -> str:
    """Return a deterministic response-cache key for the full parameter tuple.

    The tuple is JSON-encoded before hashing, so separators inside the query
    or the model id cannot make two different searches collide.

    Returns:
        ``"search:"`` followed by a 64-character lowercase hex digest.
    """
    skip = params.skip_provider.value if params.skip_provider else None
    payload = json.dumps(
        [params.query, params.search_depth, params.max_results, model, params.use_llm, skip],
        ensure_ascii=False,
    )
    return "search:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()


class SearchEngine:
    """Runs searches and holds the router, cache and adapters between them.

    Build one per process (see :meth:`create`) and share it across requests.

    Args:
        settings:  Runtime configuration.
        router:    Provider health router.
        adapters:  Enabled search adapters keyed by provider.
        cache:     TTL cache for responses and enhancement answers.
        enhancer:  LLM enhancement step; ``None`` disables enhancement.
        llm:       LLM client, pinged by health checks.
        log_store: Optional search-log sink written after each response.
        scheduler: Background job runner for sweeps and health checks.
    """

    def __init__(
        self,
        settings: Settings,
        router: ProviderHealthRouter,
        adapters: Mapping[ProviderName, ProviderAdapter],
        cache: MemoryCache,
        enhancer: KnowledgeEnhancer | None = None,
        llm: LLMClient | None = None,
        log_store: SearchLogStore | None = None,
        scheduler: TaskScheduler | None = None,
    ) -> None:
        self.settings = settings
        self.router = router
        self.adapters = dict(adapters)
        self.cache = cache
        self.enhancer = enhancer
        self.llm = llm
        self.log_store = log_store
        self.scheduler = scheduler or TaskScheduler()
        self._background: set[asyncio.Task[None]] = set()

    @classmethod
    def create(
        cls,
        settings: Settings,
        http: httpx.AsyncClient,
        log_store: SearchLogStore | None = None,
        provider_config: dict[ProviderName, ProviderConfig] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> "SearchEngine":
        """Wire up a production engine from *settings* and a shared HTTP client."""
        router = ProviderHealthRouter(clock=clock)
        cache = MemoryCache()
        llm = LLMClient(settings, http)
        enhancer = KnowledgeEnhancer(
            llm,
            router,
            cache,
            timeout=settings.enhancement_timeout_seconds,
            cache_ttl=settings.enhancement_cache_ttl_seconds,
        )
        adapters = build_adapters(http, router, settings, provider_config)
        return cls(settings, router, adapters, cache, enhancer, llm, log_store)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Register the cache-sweep and health-check jobs and start them."""
        self.scheduler.schedule(
            CACHE_SWEEP_JOB,
            self._sweep_cache,
            self.settings.cache_sweep_interval_seconds,
            description="Drop expired cache entries",
        )
        self.scheduler.schedule(
            HEALTH_CHECK_JOB,
            self.run_health_checks,
            self.settings.health_check_interval_seconds,
            description="Ping degraded and deprecated providers",
        )
        self.scheduler.start()

    async def stop(self) -> None:
        """Stop background jobs and let pending search-log writes finish."""
        await self.scheduler.stop()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(self, params: SearchParams, timeout: float | None = None) -> SearchResponse:
        """Run one search, optionally bounded by an outer *timeout* in seconds.

        Raises:
            SearchTimeoutError: *timeout* elapsed before a response was ready.
        """
        if timeout is None:
            return await self._search(params)
        try:
            return await with_timeout(self._search(params), timeout)
        except TimeoutError as exc:
            logger.error("search.timeout", query=params.query[:80], timeout_s=timeout)
            raise SearchTimeoutError(f"Search timed out after {timeout:g}s", timeout_seconds=timeout) from exc

    async def _search(self, params: SearchParams) -> SearchResponse:
        t_start = time.perf_counter()
        search_id = uuid.uuid4().hex
        model = params.model or self.settings.default_model

        with search_log_context(search_id, params.query, depth=params.search_depth):
            log = logger.bind(max_results=params.max_results)
            log.info("search.start")

            # ------------------------------------------------------------------ #
            # CacheCheck                                                           #
            # ------------------------------------------------------------------ #
            cache_key = make_cache_key(params, model)
            if params.use_cache:
                cached: SearchResponse | None = self.cache.get(cache_key)
                if cached is not None:
                    response = cached.model_copy(update={"from_cache": True}, deep=True)
                    log.info("search.cache_hit", cached_search_id=cached.search_id)
                    self._persist_in_background(response, model, (time.perf_counter() - t_start) * 1000)
                    return response

            # ------------------------------------------------------------------ #
            # ProviderSelection                                                    #
            # ------------------------------------------------------------------ #
            selected = self.select_providers(params.skip_provider)
            log.info("search.providers_selected", providers=[p.value for p in selected])

            # ------------------------------------------------------------------ #
            # ConcurrentFetch                                                      #
            # ------------------------------------------------------------------ #
            results_by_provider = await self._fetch_all(selected, params)

            if results_by_provider:
                # ------------------------------------------------------------------ #
                # Merge                                                                #
                # ------------------------------------------------------------------ #
                contributing = list(results_by_provider)
                merged = merge_results(results_by_provider, self.router.weights(), self.settings.dedup_strategy)

                # ------------------------------------------------------------------ #
                # Enhance                                                              #
                # ------------------------------------------------------------------ #
                if params.use_llm and self.enhancer is not None:
                    merged = await self.enhancer.enhance(merged, params.query, model, use_cache=params.use_cache)
            else:
                # ------------------------------------------------------------------ #
                # Fallback: nothing usable came back                                  #
                # ------------------------------------------------------------------ #
                log.warning("search.fallback", reason="no_provider_results")
                contributing = [MOCK_PROVIDER]
                merged = fallback_results(params.query)

            # ------------------------------------------------------------------ #
            # Respond                                                              #
            # ------------------------------------------------------------------ #
            elapsed_ms = (time.perf_counter() - t_start) * 1000
            response = SearchResponse(
                results=merged[: params.max_results],
                query=params.query,
                providers=contributing,
                search_id=search_id,
                from_cache=False,
                provider_statuses=self.router.snapshot(),
                duration_ms=round(elapsed_ms, 1),
            )

            # A fallback answer is not cached so the next request retries the providers.
            if params.use_cache and results_by_provider:
                self.cache.set(cache_key, response.model_copy(deep=True), self.settings.search_cache_ttl_seconds)

            self._persist_in_background(response, model, elapsed_ms)
            log.info(
                "search.complete",
                providers=contributing,
                results=len(response.results),
                latency_ms=round(elapsed_ms, 1),
            )
            return response

    def select_providers(self, skip: ProviderName | None = None) -> list[ProviderName]:
        """Enabled adapters the router currently trusts enough, best first."""
        available = self.router.get_available_providers(
            min_weight=self.settings.min_provider_weight,
            candidates=self.adapters,
        )
        return [provider for provider in available if provider != skip]

    async def _fetch_all(
        self,
        providers: Sequence[ProviderName],
        params: SearchParams,
    ) -> dict[str, list[SearchResult]]:
        """Query *providers* concurrently under the global deadline.

        Returns:
            Non-empty result lists keyed by provider name, in *providers*
            order. Providers that failed, timed out, returned nothing or were
            still running at the deadline are absent.
        """
        collected: dict[ProviderName, list[SearchResult]] = {}

        async def _fetch_one(provider: ProviderName, _index: int) -> None:
            try:
                hits = await self.adapters[provider].search(params.query, search_depth=params.search_depth)
            except TimeoutError:
                logger.warning("search.provider_timeout", provider=provider.value)
                return
            except ProviderError as exc:
                logger.warning("search.provider_failed", provider=provider.value, error=str(exc))
                return
            except Exception as exc:  # noqa: BLE001
                logger.error("search.provider_crashed", provider=provider.value, error=str(exc))
                return
            if hits:
                collected[provider] = hits

        if not providers:
            return {}

        fetch = asyncio.create_task(
            with_concurrency_limit(list(providers), _fetch_one, self.settings.fetch_concurrency)
        )
        try:
            done, _pending = await asyncio.wait({fetch}, timeout=self.settings.search_deadline_seconds)
        except asyncio.CancelledError:
            # Outer timeout: the fetch task is not ours to leave running.
            fetch.cancel()
            raise
        if fetch in done:
            fetch.result()
        else:
            fetch.cancel()
            await asyncio.gather(fetch, return_exceptions=True)
            logger.warning(
                "search.deadline_reached",
                deadline_s=self.settings.search_deadline_seconds,
                completed=[p.value for p in collected],
            )

        return {provider.value: collected[provider] for provider in providers if provider in collected}

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _persist_in_background(self, response: SearchResponse, model: str, duration_ms: float) -> None:
        if self.log_store is None:
            return
        entry = SearchLogEntry(
            search_id=response.search_id,
            query=response.query,
            model=model,
            providers=response.providers,
            results_count=len(response.results),
            duration_ms=duration_ms,
            from_cache=response.from_cache,
        )
        task = asyncio.create_task(self._persist(entry, response.results))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist(self, entry: SearchLogEntry, results: list[SearchResult]) -> None:
        assert self.log_store is not None
        try:
            await self.log_store.log_search(entry)
            if not entry.from_cache:
                await self.log_store.save_results(entry.search_id, results)
        except Exception as exc:  # noqa: BLE001
            logger.warning("search.persist_failed", search_id=entry.search_id, error=str(exc))

    async def _sweep_cache(self) -> None:
        self.cache.sweep()

    async def run_health_checks(self) -> dict[str, bool]:
        """Ping every provider the router wants news about.

        Pings run concurrently, each bounded by ``PING_TIMEOUT_SECONDS``; a
        ping that times out leaves the provider's state unchanged.

        Returns:
            Ping outcome per provider name that was actually pinged.
        """
        candidates = [
            p for p in self.router.health_check_candidates() if p in self.adapters or p == LLM_PROVIDER
        ]
        outcomes: dict[str, bool] = {}

        async def _ping(provider: ProviderName) -> None:
            if provider == LLM_PROVIDER:
                if self.llm is None:
                    return
                ping = self.llm.ping()
            else:
                ping = self.adapters[provider].ping()
            try:
                healthy = await with_timeout(ping, PING_TIMEOUT_SECONDS)
            except TimeoutError:
                logger.info("health.ping_timeout", provider=provider.value)
                return
            self.router.apply_health_check(provider, healthy)
            outcomes[provider.value] = healthy

        if candidates:
            await asyncio.gather(*(_ping(p) for p in candidates))
        logger.info("health.checks_completed", pinged=outcomes)
        return outcomes

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def provider_snapshot(self) -> dict[str, ProviderSnapshot]:
        return self.router.snapshot()

    def cache_stats(self) -> dict[str, Any]:
        return self.cache.stats()
