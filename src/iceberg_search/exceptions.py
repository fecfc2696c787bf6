"""Failure taxonomy for provider calls, enhancement and whole searches."""

from __future__ import annotations


class IcebergSearchError(Exception):
    """Base exception for the search core."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider

    def __str__(self) -> str:
        if self.provider:
            return f"[{self.provider}] {self.message}"
        return self.message


class ProviderError(IcebergSearchError):
    """A provider answered with a non-2xx status or an unusable payload."""

    def __init__(
        self,
        message: str = "Provider request failed",
        provider: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, provider)
        self.status_code = status_code


class RateLimitError(ProviderError):
    """Quota or rate limit exhausted; deprecates the provider immediately."""

    def __init__(
        self,
        message: str = "Rate limit or quota exceeded",
        provider: str | None = None,
        status_code: int | None = 429,
    ) -> None:
        super().__init__(message, provider, status_code)


class EnhancementError(IcebergSearchError):
    """The LLM call or the parsing of its answer failed."""


class SearchTimeoutError(IcebergSearchError):
    """A whole search exceeded the caller's deadline."""

    def __init__(self, message: str = "Search timed out", timeout_seconds: float | None = None) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds
