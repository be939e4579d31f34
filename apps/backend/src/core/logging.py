"""
Structured logging for sync passes.

structlog renders every record, including those emitted through stdlib
``logging.getLogger()`` by repositories and the HTTP client. Records carry
the ``sync_id`` of the pass that produced them so concurrent passes can be
told apart in a single log stream.
"""
from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
import logging
from typing import TYPE_CHECKING, Any, MutableMapping

import structlog

if TYPE_CHECKING:
    from apps.backend.src.core.config import LoggingSettings

# Correlation id of the sync pass running in the current task
sync_id_var: ContextVar[str | None] = ContextVar("sync_id", default=None)

# Libraries that log every request or statement at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncpg", "sqlalchemy.engine")

_HANDLER_MARKER = "_pve_state_sync_handler"


def _add_sync_id(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    sync_id = sync_id_var.get()
    if sync_id is not None:
        event_dict.setdefault("sync_id", sync_id)
    return event_dict


def _renderer(fmt: str) -> Any:
    if fmt == "console":
        return structlog.dev.ConsoleRenderer()
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    raise ValueError(f"Unknown log format: {fmt}")


def setup_logging(
    settings: LoggingSettings | None = None,
    level: int | str | None = None,
    fmt: str | None = None,
) -> None:
    """Route structlog and stdlib logging through one structured handler.

    Explicit ``level``/``fmt`` take precedence over ``settings``. Calling it
    again replaces the handler installed by the previous call and leaves
    other root handlers alone.
    """
    level = level if level is not None else (settings.log_level if settings else logging.INFO)
    fmt = fmt or (settings.log_format if settings else "json")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        _add_sync_id,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
    ]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
        wrapper_class=structlog.stdlib.BoundLogger,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(fmt),
            ],
            foreign_pre_chain=shared_processors,
        )
    )
    setattr(handler, _HANDLER_MARKER, True)

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if getattr(existing, _HANDLER_MARKER, False):
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_sync_id() -> str | None:
    return sync_id_var.get()


def set_sync_id(value: str | None) -> None:
    sync_id_var.set(value)


@contextmanager
def sync_context(sync_id: str) -> Iterator[str]:
    """Tag every record emitted inside the block with ``sync_id``."""
    token = sync_id_var.set(sync_id)
    try:
        yield sync_id
    finally:
        sync_id_var.reset(token)
