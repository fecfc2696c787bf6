"""Exa neural search adapter."""

from __future__ import annotations

from typing import Any

import structlog

from iceberg_search.exceptions import ProviderError
from iceberg_search.models import ProviderName, SearchResult
from iceberg_search.services.providers.base import ProviderAdapter, SearchDepth

logger = structlog.get_logger(__name__)

EXA_SEARCH_URL = "https://api.exa.ai/search"


class ExaAdapter(ProviderAdapter):
    """Calls ``POST /search`` on the Exa API in neural mode with autoprompt on.

    Exa has no notion of search depth; the argument is accepted and ignored.
    """

    name = ProviderName.EXA

    def __init__(self, *args: Any, api_key: str | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._api_key = api_key

    @property
    def has_credentials(self) -> bool:
        return bool(self._api_key)

    async def _search_live(self, query: str, max_results: int, search_depth: SearchDepth) -> list[SearchResult]:
        payload = {
            "query": query,
            "numResults": max_results,
            "useAutoprompt": True,
            "type": "neural",
        }
        logger.debug("exa.search", query=query, max_results=max_results)
        resp = await self._http.post(EXA_SEARCH_URL, json=payload, headers={"x-api-key": self._api_key or ""})
        data = self._check_response(resp)

        items = data.get("results") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise ProviderError("Invalid Exa response format", provider=self.name.value)

        return [
            SearchResult(
                title=str(item.get("title") or ""),
                url=str(item.get("url") or ""),
                content=str(item.get("text") or ""),
                score=max(0.0, float(item.get("score") or 0.0)),
                provider=self.name.value,
                image=item.get("image") or None,
            )
            for item in items
            if isinstance(item, dict)
        ]
