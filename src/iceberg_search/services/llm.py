"""Chat-completion client used for knowledge-level enhancement.

Two backends sit behind one ``complete`` call: OpenRouter over plain HTTP
(any model id such as ``"openai/gpt-3.5-turbo"``) and the Anthropic SDK.
Either way the health router sees a single ``openrouter`` provider.
"""

from __future__ import annotations

import anthropic
import httpx
import structlog

from iceberg_search.config import Settings
from iceberg_search.exceptions import ProviderError, RateLimitError
from iceberg_search.models import LLM_PROVIDER

logger = structlog.get_logger(__name__)

OPENROUTER_CHAT_URL = "https://openrouter.ai/api/v1/chat/completions"
OPENROUTER_KEY_URL = "https://openrouter.ai/api/v1/auth/key"

# 402 means the account is out of credits.
_OPENROUTER_QUOTA_STATUSES = frozenset({402, 429})


class LLMClient:
    """Thin completion wrapper with uniform error mapping.

    Args:
        settings:         Credentials, backend choice and default models.
        http:             Shared HTTP client for the OpenRouter backend.
        anthropic_client: Pre-built SDK client (tests); created lazily otherwise.
    """

    def __init__(
        self,
        settings: Settings,
        http: httpx.AsyncClient,
        anthropic_client: anthropic.AsyncAnthropic | None = None,
    ) -> None:
        self._settings = settings
        self._http = http
        self._backend = settings.llm_backend
        self._anthropic = anthropic_client
        if self._anthropic is None and self._backend == "anthropic" and settings.anthropic_api_key:
            self._anthropic = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)

    @property
    def backend(self) -> str:
        return self._backend

    @property
    def available(self) -> bool:
        """True when the configured backend has credentials."""
        if self._backend == "anthropic":
            return self._anthropic is not None
        return bool(self._settings.openrouter_api_key)

    async def complete(
        self,
        prompt: str,
        model: str | None = None,
        *,
        max_tokens: int = 500,
        temperature: float = 0.3,
    ) -> str:
        """Send *prompt* as a single user message and return the reply text.

        Args:
            prompt:      User message.
            model:       Model id; ``None`` uses the backend default.
            max_tokens:  Completion length cap.
            temperature: Sampling temperature.

        Raises:
            RateLimitError: Quota, credits or rate limit exhausted.
            ProviderError:  Any other API failure or an empty answer.
        """
        if not self.available:
            raise ProviderError("No LLM credentials configured", provider=LLM_PROVIDER.value)
        if self._backend == "anthropic":
            return await self._complete_anthropic(prompt, max_tokens, temperature)
        return await self._complete_openrouter(prompt, model or self._settings.default_model, max_tokens, temperature)

    async def ping(self) -> bool:
        """Cheap credential check that spends no tokens."""
        if not self.available:
            return False
        try:
            if self._backend == "anthropic":
                assert self._anthropic is not None
                await self._anthropic.models.list(limit=1)
            else:
                resp = await self._http.get(
                    OPENROUTER_KEY_URL,
                    headers={"Authorization": f"Bearer {self._settings.openrouter_api_key}"},
                    timeout=5.0,
                )
                resp.raise_for_status()
        except Exception as exc:  # noqa: BLE001
            logger.info("llm.ping_failed", backend=self._backend, error=str(exc))
            return False
        return True

    # ------------------------------------------------------------------
    # Backends
    # ------------------------------------------------------------------

    async def _complete_openrouter(self, prompt: str, model: str, max_tokens: int, temperature: float) -> str:
        resp = await self._http.post(
            OPENROUTER_CHAT_URL,
            json={
                "model": model,
                "messages": [{"role": "user", "content": prompt}],
                "max_tokens": max_tokens,
                "temperature": temperature,
            },
            headers={
                "Authorization": f"Bearer {self._settings.openrouter_api_key}",
                "HTTP-Referer": self._settings.app_url,
                "X-Title": self._settings.app_title,
            },
        )
        if resp.status_code in _OPENROUTER_QUOTA_STATUSES:
            raise RateLimitError(
                f"OpenRouter refused the request ({resp.status_code}): {resp.text[:200]}",
                provider=LLM_PROVIDER.value,
                status_code=resp.status_code,
            )
        if resp.is_error:
            raise ProviderError(
                f"OpenRouter responded with status {resp.status_code}",
                provider=LLM_PROVIDER.value,
                status_code=resp.status_code,
            )

        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ProviderError("Malformed OpenRouter response", provider=LLM_PROVIDER.value) from exc
        if not content:
            raise ProviderError("OpenRouter returned an empty completion", provider=LLM_PROVIDER.value)
        logger.debug("llm.completed", backend="openrouter", model=model, chars=len(content))
        return str(content)

    async def _complete_anthropic(self, prompt: str, max_tokens: int, temperature: float) -> str:
        assert self._anthropic is not None
        try:
            message = await self._anthropic.messages.create(
                model=self._settings.anthropic_model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.RateLimitError as exc:
            raise RateLimitError(str(exc), provider=LLM_PROVIDER.value) from exc
        except anthropic.APIStatusError as exc:
            raise ProviderError(str(exc), provider=LLM_PROVIDER.value, status_code=exc.status_code) from exc
        except anthropic.APIError as exc:
            raise ProviderError(str(exc), provider=LLM_PROVIDER.value) from exc

        text = "".join(block.text for block in message.content if getattr(block, "type", None) == "text").strip()
        if not text:
            raise ProviderError("Anthropic returned an empty completion", provider=LLM_PROVIDER.value)
        logger.debug("llm.completed", backend="anthropic", model=self._settings.anthropic_model, chars=len(text))
        return text
