"""
Structured logging for inventory refresh.

Every component logs dotted event names (``scanner.finalized``,
``saver.saved``, ``sweeper.swept``) with keyword fields, so one refresh can be
followed across workers by filtering on ``refresh_state_uuid``.

Features:
    - structlog processor chain, JSON or colored console output
    - Context propagation through contextvars (refresh_state_uuid, collection)
    - ``LogContext`` for scoped binding around one collection save

Examples:
    >>> from inventory_spine.logging import configure_logging, get_logger
    >>> configure_logging(level="DEBUG", json_format=False)
    >>> logger = get_logger(__name__)
    >>> logger.info("saver.saved", collection="vms", created=3)

Tags:
    logging, structlog, observability, inventory-refresh

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from inventory_spine.settings import get_settings

_SERVICE_NAME = "inventory-spine"


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    event_dict.setdefault("service", _SERVICE_NAME)
    return event_dict


def configure_logging(
    level: str | None = None,
    json_format: bool | None = None,
    service: str = "inventory-spine",
) -> None:
    """Configure structlog for the process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR); the ``log_level``
            setting when omitted.
        json_format: True for JSON, False for console.  When omitted the
            ``log_json`` setting decides, and without it JSON is picked when
            stdout is not a tty.
        service: Service name added to every event.
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service

    settings = get_settings()
    level = level or settings.log_level
    if json_format is None:
        json_format = settings.log_json
    if json_format is None:
        json_format = not sys.stdout.isatty()

    processors: list[Processor] = [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service_metadata,
    ]
    if json_format:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> Any:
    """Return a structlog logger, usually called with ``__name__``."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind fields included in every subsequent event of this context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Context manager binding fields for the duration of a block.

    Example:
        with LogContext(refresh_state_uuid=uuid, collection="vms"):
            saver.save(collection)
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs

    def __enter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        unbind_context(*self._context.keys())


__all__ = [
    "LogContext",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "unbind_context",
]
