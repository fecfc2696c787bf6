"""LLM re-scoring of the top merged results by knowledge depth."""

from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Sequence

import structlog

from iceberg_search.exceptions import EnhancementError, ProviderError, RateLimitError
from iceberg_search.models import LLM_PROVIDER, SearchResult
from iceberg_search.pipeline.router import ProviderHealthRouter
from iceberg_search.services.llm import LLMClient
from iceberg_search.services.memory_cache import MemoryCache
from iceberg_search.utils.async_utils import with_timeout

logger = structlog.get_logger(__name__)

ENHANCE_TOP_N = 3
_SNIPPET_CHARS = 150

_PROMPT_TEMPLATE = """You are a research assistant sorting search results into an "iceberg" of knowledge.

The user is researching: "{query}"

Assign a knowledge level from 1 to 5 to each result below:
1 = Surface knowledge
2 = Intermediate knowledge
3 = Deep knowledge
4 = Specialized knowledge
5 = Obscure knowledge

Results:
{results}

Reply with ONLY a JSON array of objects of the form {{"id": "<id>", "knowledgeLevel": <1-5>}}, one per result."""


def _ref(index: int) -> str:
    return f"r{index}"


def build_prompt(results: Sequence[SearchResult], query: str) -> str:
    """Render the enhancement prompt; each result is tagged with a stable ``id``."""
    items = [
        {"id": _ref(index), "title": r.title, "content": r.content[:_SNIPPET_CHARS], "provider": r.provider}
        for index, r in enumerate(results)
    ]
    return _PROMPT_TEMPLATE.format(query=query, results=json.dumps(items, indent=2, ensure_ascii=False))


def parse_levels(raw: str, refs: Sequence[str]) -> dict[str, int]:
    """Extract ``{id: level}`` from the model's reply.

    The JSON array is taken from the first ``[`` to the last ``]``; entries
    with unknown ids or levels outside 1..5 are ignored.

    Raises:
        EnhancementError: No array could be decoded or no entry was usable.
    """
    start, end = raw.find("["), raw.rfind("]")
    if start < 0 or end <= start:
        raise EnhancementError("No JSON array in LLM response", provider=LLM_PROVIDER.value)
    try:
        items: Any = json.loads(raw[start : end + 1])
    except json.JSONDecodeError as exc:
        raise EnhancementError(f"Invalid JSON in LLM response: {exc}", provider=LLM_PROVIDER.value) from exc
    if not isinstance(items, list):
        raise EnhancementError("LLM response is not a JSON array", provider=LLM_PROVIDER.value)

    wanted = set(refs)
    levels: dict[str, int] = {}
    for item in items:
        if not isinstance(item, dict):
            continue
        ref = str(item.get("id", ""))
        level = item.get("knowledgeLevel")
        if ref in wanted and isinstance(level, (int, float)) and not isinstance(level, bool) and 1 <= level <= 5:
            levels[ref] = int(level)
    if not levels:
        raise EnhancementError("LLM response assigned no usable levels", provider=LLM_PROVIDER.value)
    return levels


def enhancement_cache_key(results: Sequence[SearchResult], query: str, model: str) -> str:
    """Digest of everything the prompt depends on, plus the model id."""
    payload = json.dumps(
        {
            "results": [[r.title, r.url, r.content[:_SNIPPET_CHARS]] for r in results],
            "query": query,
            "model": model,
        },
        sort_keys=True,
    )
    return "llm-enhance:" + hashlib.sha256(payload.encode()).hexdigest()


class KnowledgeEnhancer:
    """Asks the LLM for knowledge levels of the top results.

    Failures of any kind leave the algorithmic levels in place; nothing here
    ever raises to the orchestrator.

    Args:
        llm:       Completion client.
        router:    Health router; the LLM gateway reports as ``openrouter``.
        cache:     Shared TTL cache used to memoise successful answers.
        timeout:   Seconds allowed for one enhancement, cache miss included.
        cache_ttl: Seconds a successful answer stays cached.
        top_n:     How many leading results are sent to the model.
    """

    def __init__(
        self,
        llm: LLMClient,
        router: ProviderHealthRouter,
        cache: MemoryCache,
        *,
        timeout: float = 30.0,
        cache_ttl: float = 1800.0,
        top_n: int = ENHANCE_TOP_N,
    ) -> None:
        self._llm = llm
        self._router = router
        self._timeout = timeout
        self._top_n = top_n
        self._levels_cached = cache.memoize(self._fetch_levels, key_fn=enhancement_cache_key, ttl=cache_ttl)

    def can_enhance(self) -> bool:
        """LLM credentials exist and the gateway is not deprecated."""
        return self._llm.available and not self._router.is_deprecated(LLM_PROVIDER)

    async def enhance(
        self,
        results: Sequence[SearchResult],
        query: str,
        model: str,
        use_cache: bool = True,
    ) -> list[SearchResult]:
        """Return *results* with LLM-assigned levels on the top entries where available."""
        enhanced = list(results)
        if not enhanced:
            return enhanced
        if not self.can_enhance():
            logger.info("enhance.skipped", reason="llm_unavailable")
            return enhanced

        top = enhanced[: self._top_n]
        fetch = self._levels_cached if use_cache else self._fetch_levels
        started = time.perf_counter()
        try:
            levels = await with_timeout(fetch(top, query, model), self._timeout)
        except TimeoutError:
            self._router.record_timeout(LLM_PROVIDER, self._timeout)
            logger.warning("enhance.timeout", timeout_s=self._timeout)
            return enhanced
        except EnhancementError as exc:
            logger.warning("enhance.failed", error=str(exc))
            return enhanced

        for index, result in enumerate(top):
            level = levels.get(_ref(index))
            if level is not None:
                enhanced[index] = result.model_copy(update={"knowledge_level": level})

        logger.info(
            "enhance.applied",
            matched=len(levels),
            of=len(top),
            latency_ms=round((time.perf_counter() - started) * 1000),
        )
        return enhanced

    async def _fetch_levels(self, top: Sequence[SearchResult], query: str, model: str) -> dict[str, int]:
        started = time.perf_counter()
        try:
            raw = await self._llm.complete(build_prompt(top, query), model)
        except RateLimitError as exc:
            self._router.record_failure(LLM_PROVIDER, exc, is_rate_limit=True)
            raise EnhancementError(str(exc), provider=LLM_PROVIDER.value) from exc
        except ProviderError as exc:
            self._router.record_failure(LLM_PROVIDER, exc)
            raise EnhancementError(str(exc), provider=LLM_PROVIDER.value) from exc
        except Exception as exc:  # noqa: BLE001
            self._router.record_failure(LLM_PROVIDER, exc)
            raise EnhancementError(str(exc) or type(exc).__name__, provider=LLM_PROVIDER.value) from exc

        self._router.record_success(LLM_PROVIDER, (time.perf_counter() - started) * 1000.0)
        return parse_levels(raw, [_ref(index) for index in range(len(top))])
