"""Tavily search adapter."""

from __future__ import annotations

from typing import Any

import structlog

from iceberg_search.exceptions import ProviderError
from iceberg_search.models import ProviderName, SearchResult
from iceberg_search.services.providers.base import ProviderAdapter, SearchDepth

logger = structlog.get_logger(__name__)

TAVILY_SEARCH_URL = "https://api.tavily.com/search"


class TavilyAdapter(ProviderAdapter):
    """Calls ``POST /search`` on the Tavily API with bearer authentication.

    Tavily answers 403 as well as 429 when the key's quota is spent, so both
    are treated as rate limits.
    """

    name = ProviderName.TAVILY
    rate_limit_statuses = frozenset({403, 429})

    def __init__(self, *args: Any, api_key: str | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._api_key = api_key

    @property
    def has_credentials(self) -> bool:
        return bool(self._api_key)

    async def _search_live(self, query: str, max_results: int, search_depth: SearchDepth) -> list[SearchResult]:
        payload = {
            "query": query,
            "search_depth": search_depth,
            "max_results": max_results,
            "include_images": True,
        }
        logger.debug("tavily.search", query=query, depth=search_depth, max_results=max_results)
        resp = await self._http.post(
            TAVILY_SEARCH_URL,
            json=payload,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        data = self._check_response(resp)

        items = data.get("results") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise ProviderError("Invalid Tavily response format", provider=self.name.value)

        return [_to_result(item) for item in items if isinstance(item, dict)]


def _to_result(item: dict[str, Any]) -> SearchResult:
    images = item.get("images") or []
    return SearchResult(
        title=str(item.get("title") or ""),
        url=str(item.get("url") or ""),
        content=str(item.get("content") or ""),
        score=max(0.0, float(item.get("score") or 0.0)),
        provider=ProviderName.TAVILY.value,
        image=images[0] if images and isinstance(images[0], str) else None,
    )
