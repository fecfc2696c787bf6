"""Deterministic placeholder result sets.

Two flavours exist:

* :func:`mock_results` stands in for a single provider that has no
  credentials (or, when configured, one whose live call failed). Results are
  tagged with that provider's name.
* :func:`fallback_results` is what a whole search returns when no provider
  produced anything. Results are tagged ``"mock"`` and already carry one
  knowledge level per depth band.
"""

from __future__ import annotations

from iceberg_search.models import MOCK_PROVIDER, SearchResult

_BASE_URL = "https://example.com"

# (slug, title template, content template, score)
_PROVIDER_TOPICS: tuple[tuple[str, str, str, float], ...] = (
    ("intro", "The Fascinating World of {q}", "An introduction to {q}: origins, core ideas and where it is used today.", 0.95),
    ("secrets", "Hidden Secrets of {q}", "Lesser-known aspects of {q} that rarely come up outside specialist circles.", 0.92),
    ("history", "The Evolution of {q} Through History", "How understanding of {q} developed across eras and cultures.", 0.88),
    ("innovation", "Revolutionary Approaches to {q}", "Recent breakthroughs and new methods reshaping {q}.", 0.85),
    ("controversies", "The Dark Side of {q}", "Controversies, ethical questions and unintended consequences around {q}.", 0.82),
    ("philosophy", "{q} and Its Intersection with Philosophy", "What {q} has to say about knowledge, existence and ethics.", 0.79),
    ("future", "The Future of {q}: Predictions and Possibilities", "Where {q} may be heading over the coming decades.", 0.76),
    ("culture", "{q} in Popular Culture", "How films, books and art have portrayed {q}.", 0.73),
    ("anomalies", "Bizarre Anomalies in {q} Research", "Unexplained findings and open puzzles in the study of {q}.", 0.70),
    ("pioneers", "The Forgotten Pioneers of {q}", "Overlooked contributors whose work shaped {q}.", 0.67),
)

# (slug, title template, content template, score), one per knowledge level.
_FALLBACK_TOPICS: tuple[tuple[str, str, str, float], ...] = (
    ("intro", "The Fascinating World of {q}", "A general overview of {q} covering the basics everyone should know.", 0.95),
    ("secrets", "Hidden Secrets of {q}", "Aspects of {q} that go beyond the usual introductions.", 0.92),
    ("deep-dive", "Deep Dive into {q}", "A detailed look at the mechanics and debates within {q}.", 0.89),
    ("expert", "Expert Analysis of {q}", "Specialist perspectives on {q} drawn from research literature.", 0.85),
    ("obscure", "Obscure Facts About {q}", "Rarely discussed details at the far end of what is known about {q}.", 0.82),
)


def mock_results(provider: str, query: str, max_results: int = 10) -> list[SearchResult]:
    """Placeholder results attributed to *provider*, best first."""
    return [
        SearchResult(
            title=title.format(q=query),
            url=f"{_BASE_URL}/{slug}",
            content=content.format(q=query),
            score=score,
            provider=provider,
        )
        for slug, title, content, score in _PROVIDER_TOPICS[: max(0, max_results)]
    ]


def fallback_results(query: str) -> list[SearchResult]:
    """The five-result set served when every provider came back empty."""
    return [
        SearchResult(
            title=title.format(q=query),
            url=f"{_BASE_URL}/{slug}",
            content=content.format(q=query),
            score=score,
            provider=MOCK_PROVIDER,
            knowledge_level=level,
        )
        for level, (slug, title, content, score) in enumerate(_FALLBACK_TOPICS, start=1)
    ]
