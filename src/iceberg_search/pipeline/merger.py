"""Merge per-provider result sets into one ranked, deduplicated list.

Steps, in order:

1. Scale each result's ``score`` by its provider's router weight.
2. Sort by weighted score, highest first (stable, so ties keep provider order).
3. Drop URL-less results and collapse results whose normalised URLs match:
   ``keep_first`` keeps the best-scored record as is, ``merge`` folds the
   whole group into one record.
4. Give every result still lacking a knowledge level a position-based one.
"""

from __future__ import annotations

from typing import Literal, Mapping, Sequence

import structlog

from iceberg_search.models import SearchResult
from iceberg_search.utils.url_utils import normalize_url

logger = structlog.get_logger(__name__)

DedupStrategy = Literal["keep_first", "merge"]

KNOWLEDGE_LEVELS = 5

# Providers the router does not track (e.g. "mock") are taken at face value.
_UNTRACKED_WEIGHT = 1.0


def position_level(index: int, total: int) -> int:
    """Knowledge level for the result at *index* of *total*.

    The list is cut into five equal-width bands: the top 20% gets level 1 and
    the bottom 20% level 5.
    """
    if total <= 0:
        return 1
    return min(KNOWLEDGE_LEVELS, index * KNOWLEDGE_LEVELS // total + 1)


def assign_knowledge_levels(results: Sequence[SearchResult]) -> list[SearchResult]:
    """Fill in ``knowledge_level`` by position wherever it is missing."""
    total = len(results)
    return [
        result
        if result.knowledge_level is not None
        else result.model_copy(update={"knowledge_level": position_level(index, total)})
        for index, result in enumerate(results)
    ]


def merge_results(
    results_by_provider: Mapping[str, Sequence[SearchResult]],
    weights: Mapping[str, float],
    strategy: DedupStrategy = "keep_first",
) -> list[SearchResult]:
    """Produce the ranked, deduplicated, levelled result list for one query.

    Args:
        results_by_provider: Raw results keyed by provider name; arrival order
                             of providers does not matter beyond tie-breaking.
        weights:             Current router weight per provider name.
        strategy:            Duplicate handling, ``"keep_first"`` or ``"merge"``.

    Returns:
        New :class:`SearchResult` objects; the inputs are left untouched.
    """
    weighted: list[SearchResult] = []
    for provider, results in results_by_provider.items():
        weight = weights.get(provider, _UNTRACKED_WEIGHT)
        for result in results:
            weighted.append(result.model_copy(update={"score": result.score * weight}))

    weighted.sort(key=lambda r: r.score, reverse=True)

    groups: dict[str, list[SearchResult]] = {}
    dropped = 0
    for result in weighted:
        if not result.url.strip():
            dropped += 1
            continue
        groups.setdefault(normalize_url(result.url), []).append(result)

    if strategy == "merge":
        deduped = sorted((_merge_group(group) for group in groups.values()), key=lambda r: r.score, reverse=True)
    else:
        deduped = [group[0] for group in groups.values()]

    logger.debug(
        "merger.merged",
        providers=list(results_by_provider),
        incoming=len(weighted),
        without_url=dropped,
        unique=len(deduped),
        strategy=strategy,
    )
    return assign_knowledge_levels(deduped)


def _merge_group(group: list[SearchResult]) -> SearchResult:
    """Fold same-URL results (already score-sorted) into one record.

    The best-scored record provides the title and URL; the score is the group
    mean; the longest snippet, the first image and the deepest level win, and
    contributing providers are joined with ``+``.
    """
    best = group[0]
    if len(group) == 1:
        return best

    providers: list[str] = []
    for result in group:
        for name in result.provider.split("+"):
            if name not in providers:
                providers.append(name)

    levels = [r.knowledge_level for r in group if r.knowledge_level is not None]
    return best.model_copy(
        update={
            "score": sum(r.score for r in group) / len(group),
            "content": max((r.content for r in group), key=len),
            "provider": "+".join(providers),
            "image": next((r.image for r in group if r.image), None),
            "knowledge_level": max(levels) if levels else None,
        }
    )
