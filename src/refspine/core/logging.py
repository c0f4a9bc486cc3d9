"""
Structured logging for refspine.

structlog is configured once per process by ``configure_logging``; modules
take a logger with ``get_logger(__name__)`` and log event-style names with
key/value context. A sync pass binds its run id and source name through
``LogContext`` so every line it emits, from any module, carries them.

Architecture:
    ::

        configure_logging(level="INFO", json_format=True, service="refspine")
            ↓
        processor chain:
          1. TimeStamper (ISO, UTC)
          2. merge_contextvars (sync_run_id, source, ...)
          3. add_log_level / add_logger_name
          4. service.name
          5. ECS field names (JSON mode only)
          6. JSONRenderer or ConsoleRenderer

Examples:
    >>> configure_logging(level="INFO", json_format=True)
    >>> log = get_logger(__name__)
    >>> with LogContext(sync_run_id="01J...", source="finto"):
    ...     log.info("sync.page_done", page=3, items=100)

Tags:
    logging, structlog, ecs, json-logging, refspine
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_service_name = "refspine"

# structlog keys renamed for Elasticsearch Common Schema in JSON mode
_ECS_FIELDS = {"timestamp": "@timestamp", "level": "log.level", "logger": "log.logger"}


def _add_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service.name", _service_name)
    return event_dict


def _ecs_fields(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    for key, ecs_key in _ECS_FIELDS.items():
        if key in event_dict:
            event_dict[ecs_key] = event_dict.pop(key)
    return event_dict


def _processors(json_format: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.dev.set_exc_info,
        _add_service,
    ]
    if json_format:
        processors += [
            structlog.processors.format_exc_info,
            _ecs_fields,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "refspine",
) -> None:
    """Configure structlog for the process.

    Args:
        level: minimum level (DEBUG, INFO, WARNING, ERROR)
        json_format: JSON lines when True, console output when False;
            None picks JSON unless stdout is a terminal
        service: value of ``service.name`` on every line
    """
    global _service_name
    _service_name = service
    if json_format is None:
        json_format = not sys.stdout.isatty()
    numeric_level = getattr(logging, level.upper())

    structlog.configure(
        processors=_processors(json_format),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    # httpx and sqlalchemy log through the stdlib
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)


def get_logger(name: str | None = None) -> Any:
    return structlog.get_logger(name)


class LogContext:
    """Bind key/values to every log line emitted inside the ``with`` block.

    Keys bound by an enclosing context are restored on exit.
    """

    def __init__(self, **values: Any):
        self._values = values
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> LogContext:
        self._tokens = structlog.contextvars.bind_contextvars(**self._values)
        return self

    def __exit__(self, *exc_info: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)


__all__ = ["configure_logging", "get_logger", "LogContext"]
