"""Structlog setup and per-search log context."""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

SERVICE_NAME = "iceberg-search"

_QUIET_LOGGERS = ("httpx", "httpcore", "anthropic", "redis")
_UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def _service_tagger(environment: str) -> Processor:
    def _tag(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", SERVICE_NAME)
        event_dict.setdefault("env", environment)
        return event_dict

    return _tag


def _drop_color_message(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
    # uvicorn duplicates every message with ANSI codes under this key
    event_dict.pop("color_message", None)
    return event_dict


def build_processors(environment: str) -> list[Processor]:
    """Processors shared by structlog loggers and bridged stdlib records."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _service_tagger(environment),
        _drop_color_message,
        structlog.processors.StackInfoRenderer(),
    ]
    if environment == "production":
        processors.append(structlog.processors.dict_tracebacks)
    else:
        processors.append(structlog.processors.format_exc_info)
    return processors


def configure_logging(environment: str, log_level: str = "INFO") -> None:
    """Route structlog, uvicorn and library records through one stdout handler.

    Production lines are JSON with structured tracebacks and carry
    ``service``/``env`` fields; other environments use the console renderer.
    Client libraries (HTTP, Redis, Anthropic) are held at WARNING in
    production.

    Args:
        environment: ``"production"`` or ``"development"``.
        log_level:   Standard Python log-level name, e.g. ``"INFO"``.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    production = environment == "production"
    processors = build_processors(environment)

    renderer: Processor = (
        structlog.processors.JSONRenderer() if production else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )

    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=processors,
        )
    )
    logging.basicConfig(handlers=[handler], level=level, force=True)

    # uvicorn installs its own handlers; hand its records to ours instead.
    for name in _UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True
    if production:
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def search_log_context(search_id: str, query: str, **extra: Any) -> Iterator[None]:
    """Attach *search_id*, a truncated *query* and *extra* to every log line in scope.

    Context variables are task-local, so concurrent searches on the same
    event loop never see each other's bindings.
    """
    tokens = structlog.contextvars.bind_contextvars(search_id=search_id, query=query[:80], **extra)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
