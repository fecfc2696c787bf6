"""Common behaviour for search-provider adapters."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Any, Literal

import httpx
import structlog

from iceberg_search.exceptions import ProviderError, RateLimitError
from iceberg_search.models import ProviderName, SearchResult
from iceberg_search.pipeline.router import ProviderHealthRouter
from iceberg_search.services.providers.mock import mock_results
from iceberg_search.utils.async_utils import retry_unless_timeout, with_retry, with_timeout

logger = structlog.get_logger(__name__)

SearchDepth = Literal["basic", "advanced"]

PING_TIMEOUT_SECONDS = 5.0


def is_retryable(error: BaseException) -> bool:
    """Retry transient failures; never timeouts, cancellation or rate limits."""
    return retry_unless_timeout(error) and not isinstance(error, RateLimitError)


class ProviderAdapter(ABC):
    """One external search vendor behind a uniform ``search`` call.

    Subclasses implement :meth:`_search_live` (one HTTP round trip, raising
    :class:`ProviderError` / :class:`RateLimitError` on bad statuses) and
    :attr:`has_credentials`. This base class wraps the live call with retry,
    a per-call timeout and outcome reporting to the health router.

    Args:
        client:               Shared HTTP client; the adapter never closes it.
        router:               Health router that receives every call outcome.
        results_per_provider: Cap on results requested from the vendor.
        timeout:              Seconds allowed for the whole call, retries included.
        max_retries:          Extra attempts after a transient failure.
        retry_delay:          Base delay in seconds, doubled per retry.
        mock_on_failure:      Serve mock results instead of raising after a
                              live failure has been reported.
    """

    name: ProviderName
    rate_limit_statuses: frozenset[int] = frozenset({429})

    def __init__(
        self,
        client: httpx.AsyncClient,
        router: ProviderHealthRouter,
        *,
        results_per_provider: int = 10,
        timeout: float = 15.0,
        max_retries: int = 1,
        retry_delay: float = 1.0,
        mock_on_failure: bool = False,
    ) -> None:
        self._http = client
        self._router = router
        self._results_per_provider = results_per_provider
        self._timeout = timeout
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._mock_on_failure = mock_on_failure

    @property
    @abstractmethod
    def has_credentials(self) -> bool:
        """Whether live calls are possible at all."""

    @abstractmethod
    async def _search_live(self, query: str, max_results: int, search_depth: SearchDepth) -> list[SearchResult]:
        """Perform one vendor request and normalise its payload."""

    async def search(self, query: str, *, search_depth: SearchDepth = "advanced") -> list[SearchResult]:
        """Search the vendor and report the outcome to the router.

        Without credentials the deterministic mock set is returned and the
        router is left untouched.

        Raises:
            TimeoutError:   The call exceeded the adapter timeout.
            RateLimitError: The vendor reported quota exhaustion.
            ProviderError:  Any other failure, unless ``mock_on_failure`` is set.
        """
        max_results = self._results_per_provider
        if not self.has_credentials:
            logger.debug("provider.mock_no_credentials", provider=self.name.value)
            return mock_results(self.name.value, query, max_results)

        def _delay(attempt: int) -> float:
            return self._retry_delay * (2**attempt)

        started = time.perf_counter()
        try:
            results = await with_timeout(
                with_retry(
                    lambda _attempt: self._search_live(query, max_results, search_depth),
                    max_retries=self._max_retries,
                    retry_delay=_delay,
                    should_retry=is_retryable,
                ),
                self._timeout,
            )
        except TimeoutError:
            self._router.record_timeout(self.name, self._timeout)
            logger.warning("provider.timeout", provider=self.name.value, timeout_s=self._timeout)
            raise
        except RateLimitError as exc:
            self._router.record_failure(self.name, exc, is_rate_limit=True, response_time_ms=_elapsed_ms(started))
            logger.warning("provider.rate_limited", provider=self.name.value, error=str(exc))
            if self._mock_on_failure:
                return mock_results(self.name.value, query, max_results)
            raise
        except Exception as exc:  # noqa: BLE001
            self._router.record_failure(self.name, exc, response_time_ms=_elapsed_ms(started))
            logger.warning("provider.search_failed", provider=self.name.value, error=str(exc))
            if self._mock_on_failure:
                return mock_results(self.name.value, query, max_results)
            if isinstance(exc, ProviderError):
                raise
            raise ProviderError(str(exc) or type(exc).__name__, provider=self.name.value) from exc

        elapsed = _elapsed_ms(started)
        self._router.record_success(self.name, elapsed)
        logger.info("provider.search_ok", provider=self.name.value, count=len(results), latency_ms=round(elapsed))
        return results

    async def ping(self) -> bool:
        """Lightweight liveness ping for scheduled health checks.

        Does not report to the router itself; the caller folds the answer in
        via :meth:`ProviderHealthRouter.apply_health_check`.
        """
        if not self.has_credentials:
            return False
        try:
            await with_timeout(self._search_live("health check", 1, "basic"), PING_TIMEOUT_SECONDS)
        except Exception as exc:  # noqa: BLE001
            logger.info("provider.ping_failed", provider=self.name.value, error=str(exc))
            return False
        return True

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _check_response(self, resp: httpx.Response) -> Any:
        """Raise the matching error for a non-2xx *resp*, else return its JSON body."""
        if resp.status_code in self.rate_limit_statuses:
            raise RateLimitError(
                f"{self.name.value} rate limit or quota exceeded: {_error_detail(resp)}",
                provider=self.name.value,
                status_code=resp.status_code,
            )
        if resp.is_error:
            raise ProviderError(
                f"{self.name.value} responded with status {resp.status_code}",
                provider=self.name.value,
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderError(f"{self.name.value} returned invalid JSON", provider=self.name.value) from exc


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or "no detail"
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("error") or body
        if isinstance(detail, dict):
            detail = detail.get("error") or detail.get("message") or detail
        return str(detail)[:200]
    return str(body)[:200]
