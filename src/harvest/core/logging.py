"""
Structured logging for harvest, driven by ``HarvestSettings``.

Configuration Flow:
    ::

        HARVEST_LOG_LEVEL / HARVEST_LOG_FORMAT
            ↓
        HarvestSettings.log_level / .log_format
            ↓
        configure_logging(settings, service="harvest-api")
            ↓
        structlog processor chain:
          1. merge_contextvars      (batch_id / key bound by LogContext)
          2. add_log_level / add_logger_name
          3. TimeStamper            (UTC ISO, "@timestamp")
          4. service name
          5. JSONRenderer ("json") or ConsoleRenderer ("console")

Usage:
    >>> from harvest.core.logging import LogContext, configure_logging, get_logger
    >>> configure_logging()            # reads get_settings()
    >>> logger = get_logger(__name__)
    >>> with LogContext(batch_id="b-1", key="ai-grading"):
    ...     logger.warning("retry.attempt_failed", attempt=1)

Events are dotted snake-case names with key/value fields so that log
aggregators can filter on them without parsing messages.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Mapping
from contextvars import Token
from typing import TYPE_CHECKING, Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

if TYPE_CHECKING:
    from harvest.core.settings import HarvestSettings


def _service_field(service: str) -> Callable[[WrappedLogger, str, EventDict], EventDict]:
    def add_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service.name", service)
        return event_dict

    return add_service


def _ecs_level(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    if "level" in event_dict:
        event_dict["log.level"] = event_dict.pop("level")
    return event_dict


def configure_logging(
    settings: HarvestSettings | None = None,
    *,
    service: str = "harvest",
) -> None:
    """Configure structlog from ``settings`` (default: ``get_settings()``).

    ``log_format`` selects the renderer: ``json`` for aggregators, ``console``
    for development, ``auto`` for JSON unless stdout is a terminal.
    """
    if settings is None:
        from harvest.core.settings import get_settings

        settings = get_settings()

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"unknown log level {settings.log_level!r}")

    json_format = settings.log_format == "json" or (
        settings.log_format == "auto" and not sys.stdout.isatty()
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="@timestamp"),
        _service_field(service),
    ]
    if json_format:
        processors += [_ecs_level, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


class LogContext:
    """Bind fields to every log entry emitted inside the block.

    On exit the previous values are restored, so nested contexts that bind
    the same key behave. Works as a sync or async context manager; tasks
    created inside the block inherit the binding.
    """

    def __init__(self, **fields: Any):
        self._fields = fields
        self._tokens: Mapping[str, Token[Any]] = {}

    def __enter__(self) -> LogContext:
        self._tokens = structlog.contextvars.bind_contextvars(**self._fields)
        return self

    def __exit__(self, *exc_info: object) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)

    async def __aenter__(self) -> LogContext:
        return self.__enter__()

    async def __aexit__(self, *exc_info: object) -> None:
        self.__exit__(*exc_info)


__all__ = ["configure_logging", "get_logger", "LogContext"]
