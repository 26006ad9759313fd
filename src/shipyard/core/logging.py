"""
Shipyard Logging - structured logging for the orchestrator and its plugins.

Every component logs through structlog with dotted event names
(``deploy.stage_entered``, ``health.attempt_failed``) and keyword fields.
Deployments run unattended from CI, so the default output is JSON with
ECS-compatible field names; interactive terminals get the colored console
renderer.

Architecture:
    ::

        configure_logging(level="INFO", json_format=None, service="shipyard")
            │
            ▼
        processor chain:
          1. merge_contextvars     (app_name, run_id bound per deployment)
          2. add_log_level         (log.logger bound by get_logger)
          3. TimeStamper(iso)
          4. _add_service_metadata
          5. _redact_secrets       (no credential ever reaches a sink)
          6. _elasticsearch_compatible (JSON only)
          7. JSONRenderer | ConsoleRenderer

Examples:
    >>> from shipyard.core.logging import configure_logging, get_logger
    >>> configure_logging(level="DEBUG", json_format=False)
    >>> logger = get_logger(__name__)
    >>> logger.info("deploy.started", app_name="demo", port=8080)

    Scoped context for one deployment run:

    >>> with LogContext(app_name="demo", run_id="abc123"):
    ...     logger.info("deploy.stage_entered", stage="preparing")

Tags:
    logging, structlog, observability, ecs, json-logging, redaction
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from shipyard.core.redaction import redact, redact_value

# Set by configure_logging; stamped on every event as service.name
_SERVICE_NAME = "shipyard"


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Stamp ``service.name`` on every event."""
    event_dict.setdefault("service.name", _SERVICE_NAME)
    return event_dict


def _redact_secrets(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Mask credential-looking values before rendering."""
    for key, value in list(event_dict.items()):
        if key == "event" and isinstance(value, str):
            event_dict[key] = redact(value)
        elif key not in ("timestamp", "level", "log.logger"):
            event_dict[key] = redact_value(key, value)
    return event_dict


def _elasticsearch_compatible(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Rename ``timestamp``/``level`` to their ECS names (``@timestamp``, ``log.level``)."""
    if "timestamp" in event_dict:
        event_dict["@timestamp"] = event_dict.pop("timestamp")
    if "level" in event_dict:
        event_dict["log.level"] = event_dict.pop("level")
    return event_dict


def build_processors(json_format: bool, add_timestamp: bool = True) -> list[Processor]:
    """Return the processor chain used by :func:`configure_logging`."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service_metadata,
        _redact_secrets,
    ]
    if add_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        processors.append(_elasticsearch_compatible)
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))
    return processors


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "shipyard",
    add_timestamp: bool = True,
) -> None:
    """Configure structured logging for the process.

    Args:
        level: Minimum level name; unknown names fall back to INFO
        json_format: Force JSON (True) or console (False); None picks JSON unless stderr is a terminal
        service: Value of ``service.name`` on every event
        add_timestamp: Prefix events with an ISO-8601 timestamp
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service

    if json_format is None:
        json_format = not sys.stderr.isatty()

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    structlog.configure(
        processors=build_processors(json_format, add_timestamp),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=numeric_level,
    )


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``).

    The name travels as the ECS ``log.logger`` field, set as an initial value
    so the proxy stays lazy until :func:`configure_logging` has run.
    ``PrintLogger`` has no name of its own for ``add_logger_name`` to read.
    """
    if name is None:
        return structlog.get_logger()
    return structlog.get_logger(name, **{"log.logger": name})


def bind_context(**kwargs: Any) -> None:
    """Bind context to include in all subsequent logs."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Drop ``keys`` from the contextvars bound by :func:`bind_context`."""
    structlog.contextvars.unbind_contextvars(*keys)


class LogContext:
    """Bind fields for the duration of a ``with`` block, then unbind them.

    Example:
        with LogContext(app_name="demo", run_id="abc123"):
            logger.info("deploy.stage_entered")
        # Context cleared here
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs

    def __enter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        unbind_context(*self._context.keys())


__all__ = [
    "build_processors",
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "LogContext",
]
