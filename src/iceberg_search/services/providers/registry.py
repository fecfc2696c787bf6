"""Build the set of enabled search adapters from ``config/providers.yaml``."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

import httpx
import structlog
import yaml

from iceberg_search.config import Settings
from iceberg_search.models import SEARCH_PROVIDERS, ProviderConfig, ProviderName
from iceberg_search.pipeline.router import ProviderHealthRouter
from iceberg_search.services.providers.base import ProviderAdapter
from iceberg_search.services.providers.exa import ExaAdapter
from iceberg_search.services.providers.google import GoogleAdapter
from iceberg_search.services.providers.tavily import TavilyAdapter

logger = structlog.get_logger(__name__)

_CONFIG_PATH = Path(__file__).resolve().parents[4] / "config" / "providers.yaml"


@lru_cache(maxsize=1)
def load_provider_config(path: Path = _CONFIG_PATH) -> dict[ProviderName, ProviderConfig]:
    """Load and cache the provider table.

    Providers missing from the file, or the whole file being unreadable,
    fall back to ``ProviderConfig()`` defaults (enabled, 10 results).

    Returns:
        Dict mapping every search provider to its :class:`ProviderConfig`.
    """
    configs = {provider: ProviderConfig() for provider in SEARCH_PROVIDERS}
    try:
        with path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
        for name, spec in (raw.get("providers") or {}).items():
            try:
                provider = ProviderName(name)
            except ValueError:
                logger.warning("registry.unknown_provider", provider=name)
                continue
            if provider not in SEARCH_PROVIDERS:
                continue
            configs[provider] = ProviderConfig(**(spec or {}))
        logger.info(
            "registry.config_loaded",
            enabled=[p.value for p, c in configs.items() if c.enabled],
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning("registry.config_load_failed", path=str(path), error=str(exc))
    return configs


def build_adapters(
    client: httpx.AsyncClient,
    router: ProviderHealthRouter,
    settings: Settings,
    provider_config: dict[ProviderName, ProviderConfig] | None = None,
) -> dict[ProviderName, ProviderAdapter]:
    """Instantiate one adapter per enabled provider, in routing order.

    Args:
        client:          Shared HTTP client handed to every adapter.
        router:          Health router that receives call outcomes.
        settings:        Credentials and timeout/retry knobs.
        provider_config: Override for the YAML table (tests).
    """
    table = provider_config if provider_config is not None else load_provider_config()
    credentials: dict[ProviderName, dict[str, str | None]] = {
        ProviderName.TAVILY: {"api_key": settings.tavily_api_key},
        ProviderName.EXA: {"api_key": settings.exa_api_key},
        ProviderName.GOOGLE: {"api_key": settings.google_api_key, "search_engine_id": settings.google_cse_id},
    }
    classes: dict[ProviderName, type[TavilyAdapter] | type[ExaAdapter] | type[GoogleAdapter]] = {
        ProviderName.TAVILY: TavilyAdapter,
        ProviderName.EXA: ExaAdapter,
        ProviderName.GOOGLE: GoogleAdapter,
    }

    adapters: dict[ProviderName, ProviderAdapter] = {}
    for provider in SEARCH_PROVIDERS:
        config = table.get(provider, ProviderConfig())
        if not config.enabled:
            logger.info("registry.provider_disabled", provider=provider.value)
            continue
        adapter = classes[provider](
            client,
            router,
            results_per_provider=config.results,
            timeout=settings.provider_timeout_seconds,
            max_retries=settings.provider_max_retries,
            retry_delay=settings.provider_retry_delay_seconds,
            mock_on_failure=settings.mock_on_provider_failure,
            **credentials[provider],
        )
        if not adapter.has_credentials:
            logger.warning("registry.missing_credentials", provider=provider.value)
        adapters[provider] = adapter
    return adapters
