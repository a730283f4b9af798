"""
Structured logging for district-spine.

Every module logs through structlog with dotted event names
(``"job_manager.job_created"``) and key/value fields. A job run wraps its
work in :class:`LogContext`, so each line emitted while the job executes
carries ``job_id`` and ``job_type`` without the id being passed down.

Architecture:
    ::

        configure_logging(level, json_format, service)
            │
            ▼
        processor chain
          TimeStamper(iso)              (add_timestamp=True)
          merge_contextvars             ← LogContext
          add_log_level, add_logger_name
          _add_service                  service.name, service.version
          _ecs_fields                   JSON only: @timestamp, log.level,
                                        log.logger, labels.<job field>
          JSONRenderer | ConsoleRenderer

    In JSON mode the job-scoped fields (``job_id``, ``job_type``,
    ``snapshot_id``) move under ``labels.`` so log search can facet on them.

Examples:
    >>> from district_spine.core.logging import configure_logging, get_logger
    >>> configure_logging(level="DEBUG", json_format=False)
    >>> logger = get_logger(__name__)
    >>> logger.info("data_collector.date_collected", date="2024-01-15", districts=12)

Tags:
    logging, structlog, observability, json-logging
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from district_spine import __version__

LABEL_FIELDS = ("job_id", "job_type", "snapshot_id")

_service = "district-spine"


def _add_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service.name", _service)
    event_dict.setdefault("service.version", __version__)
    return event_dict


def _ecs_fields(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Rename to ECS keys and move job-scoped fields under ``labels.``."""
    for source, target in (("timestamp", "@timestamp"), ("level", "log.level"), ("logger", "log.logger")):
        if source in event_dict:
            event_dict[target] = event_dict.pop(source)
    for name in LABEL_FIELDS:
        if name in event_dict:
            event_dict[f"labels.{name}"] = event_dict.pop(name)
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "district-spine",
    add_timestamp: bool = True,
) -> None:
    """Install the processor chain and route structlog through stdlib logging.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        json_format: JSON lines when True, coloured console output when False,
            decided by whether stdout is a terminal when None
        service: Value of ``service.name`` on every line
        add_timestamp: Stamp each line with an ISO-8601 time
    """
    global _service
    _service = service
    numeric_level = getattr(logging, level.upper())

    if json_format is None:
        json_format = not sys.stdout.isatty()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service,
    ]
    if add_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        processors += [
            _ecs_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)


def get_logger(name: str | None = None) -> Any:
    """Module logger; call as ``get_logger(__name__)``."""
    return structlog.get_logger(name)


class LogContext:
    """Bind fields to every log line inside a ``with`` / ``async with`` block.

    Values bound by an enclosing block are restored on exit, so a nested
    context (a resumed job inside a recovery pass) does not erase the outer one.

    Example:
        async with LogContext(job_id=job.job_id, job_type=job.job_type.value):
            await collector.collect_for_date_range(...)
    """

    def __init__(self, **fields: Any):
        self._fields = fields
        self._saved: dict[str, Any] = {}

    def _bind(self) -> None:
        current = structlog.contextvars.get_contextvars()
        self._saved = {k: current[k] for k in self._fields if k in current}
        structlog.contextvars.bind_contextvars(**self._fields)

    def _restore(self) -> None:
        structlog.contextvars.unbind_contextvars(*self._fields)
        if self._saved:
            structlog.contextvars.bind_contextvars(**self._saved)

    def __enter__(self) -> LogContext:
        self._bind()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self._restore()

    async def __aenter__(self) -> LogContext:
        self._bind()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self._restore()


__all__ = ["LABEL_FIELDS", "LogContext", "configure_logging", "get_logger"]
