"""Structured logging for Switchyard.

Every log line is a structlog event. Records emitted through plain stdlib
loggers (SQLAlchemy, alembic, GitPython) are routed through the same
processor chain by a ``ProcessorFormatter``, so one handler renders both
in the configured format.

Context is carried in structlog's contextvars:

- ``correlation_id`` names the poll cycle a line belongs to
  (``poll_cycle_context``);
- ``task_id`` and ``agent_id`` name the pair being dispatched
  (``dispatch_context``).

Example:
    >>> setup_logging(LoggingConfig(level="INFO", format="console"))
    >>> logger = get_logger(__name__)
    >>> with poll_cycle_context("3f9a0c1d2e4b"):
    ...     with dispatch_context(task_id="el-abc1", agent_id="el-xyz9"):
    ...         logger.info("task_dispatched", priority=2)
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.typing import Processor

from switchyard.config import LoggingConfig

CORRELATION_KEY = "correlation_id"


def set_correlation_id(correlation_id: str | None) -> None:
    """Bind a correlation id to the current context; None clears it."""
    if correlation_id is None:
        structlog.contextvars.unbind_contextvars(CORRELATION_KEY)
    else:
        structlog.contextvars.bind_contextvars(**{CORRELATION_KEY: correlation_id})


def get_correlation_id() -> str | None:
    return structlog.contextvars.get_contextvars().get(CORRELATION_KEY)


@contextmanager
def poll_cycle_context(cycle_id: str) -> Iterator[None]:
    """Tag every log line inside the block with the poll cycle's id."""
    with structlog.contextvars.bound_contextvars(**{CORRELATION_KEY: cycle_id}):
        yield


@contextmanager
def dispatch_context(task_id: str, agent_id: str) -> Iterator[None]:
    """Bind task and agent identifiers to every log inside the block.

    Previous bindings are restored on exit, so dispatch contexts nest.
    """
    with structlog.contextvars.bound_contextvars(task_id=task_id, agent_id=agent_id):
        yield


def _shared_processors() -> list[Processor]:
    # Run for structlog events and for foreign stdlib records alike.
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _build_handler(config: LoggingConfig) -> logging.Handler:
    if config.file is None:
        return logging.StreamHandler(sys.stdout)

    config.file.parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        filename=config.file,
        maxBytes=config.rotation_size_mb * 1024 * 1024,
        backupCount=config.retention_count,
        encoding="utf-8",
    )


def setup_logging(config: LoggingConfig) -> None:
    """Configure structlog and the root logger.

    Replaces any handlers already installed on the root logger.

    Args:
        config: Logging section of SwitchyardConfig.
    """
    level = getattr(logging, config.level)
    shared = _shared_processors()

    renderer: Any
    if config.format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    handler = _build_handler(config)
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger named after the calling module."""
    return structlog.get_logger(name)
