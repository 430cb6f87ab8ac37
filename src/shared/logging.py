"""Structured logging for the CRM agent endpoint.

Log lines are structlog events. Everything bound with ``request_scope`` (the
request id, then the JSON-RPC method and organization once known) rides
along on every line emitted while that request is handled. API keys and
other secrets are masked before rendering.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from structlog.types import EventDict, Processor

# Event keys whose values must never reach a log sink
_SECRET_KEYS = {"api_key", "apikey", "authorization", "x-api-key", "password", "token", "secret"}

# Standard-library loggers that should follow the configured level
_STDLIB_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi")


def redact_secrets(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Mask secret-looking keys in the event dict."""
    for key in list(event_dict):
        if key.lower() in _SECRET_KEYS:
            event_dict[key] = "[REDACTED]"
    return event_dict


def _renderer(json_output: bool) -> list[Processor]:
    if json_output:
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]


def setup_logging(log_level: str = "INFO", json_output: bool = False) -> None:
    """
    Configure structured logging for the endpoint.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: JSON lines (production) instead of console output
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_secrets,
            *_renderer(json_output),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _STDLIB_LOGGERS:
        logging.getLogger(name).setLevel(level)


def get_logger(name: str | None = None, **initial_context: Any) -> structlog.BoundLogger:
    """
    Get a logger, optionally with values pre-bound.

    Args:
        name: Logger name (typically ``__name__``)
        **initial_context: Values bound to every event from this logger
    """
    logger = structlog.get_logger(name)
    if initial_context:
        logger = logger.bind(**initial_context)
    return logger


def bind_context(**context: Any) -> None:
    """Add values to the current request's log context."""
    structlog.contextvars.bind_contextvars(**context)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


@contextmanager
def request_scope(**context: Any) -> Iterator[None]:
    """
    Fresh log context for one request.

    Anything left over from a previous request on the same task is dropped
    on entry, and everything bound inside the block is dropped on exit.
    """
    clear_context()
    bind_context(**context)
    try:
        yield
    finally:
        clear_context()
