"""Google Custom Search JSON API adapter."""

from __future__ import annotations

from typing import Any

import structlog

from iceberg_search.models import ProviderName, SearchResult
from iceberg_search.services.providers.base import ProviderAdapter, SearchDepth

logger = structlog.get_logger(__name__)

GOOGLE_CSE_URL = "https://www.googleapis.com/customsearch/v1"

# The API returns no relevance score and caps ``num`` at 10.
GOOGLE_FIXED_SCORE = 0.8
_MAX_NUM = 10


class GoogleAdapter(ProviderAdapter):
    """Calls the Custom Search ``v1`` endpoint; needs both an API key and an engine id."""

    name = ProviderName.GOOGLE
    rate_limit_statuses = frozenset({403, 429})

    def __init__(
        self,
        *args: Any,
        api_key: str | None = None,
        search_engine_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._api_key = api_key
        self._cx = search_engine_id

    @property
    def has_credentials(self) -> bool:
        return bool(self._api_key and self._cx)

    async def _search_live(self, query: str, max_results: int, search_depth: SearchDepth) -> list[SearchResult]:
        params: dict[str, str | int] = {
            "key": self._api_key or "",
            "cx": self._cx or "",
            "q": query,
            "num": max(1, min(max_results, _MAX_NUM)),
        }
        logger.debug("google.search", query=query, num=params["num"])
        resp = await self._http.get(GOOGLE_CSE_URL, params=params)
        data = self._check_response(resp)

        # No "items" key simply means zero hits.
        items = (data.get("items") or []) if isinstance(data, dict) else []
        return [_to_result(item) for item in items if isinstance(item, dict)]


def _to_result(item: dict[str, Any]) -> SearchResult:
    images = (item.get("pagemap") or {}).get("cse_image") or []
    image = images[0].get("src") if images and isinstance(images[0], dict) else None
    return SearchResult(
        title=str(item.get("title") or ""),
        url=str(item.get("link") or ""),
        content=str(item.get("snippet") or ""),
        score=GOOGLE_FIXED_SCORE,
        provider=ProviderName.GOOGLE.value,
        image=image,
    )
