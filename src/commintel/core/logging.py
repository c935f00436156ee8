"""Structured logging configuration for the communication intelligence engine.

Uses structlog for JSON-formatted logs to stdout (console rendering for the
CLI). A reprocess run binds its run id and thread id with ``run_context``;
every log entry written inside the run, including from the orchestrator,
the Claude adapter and the store, carries ``extraction_run_id`` and
``thread_id`` without passing them around.

Usage:
    from commintel.core.logging import get_logger, run_context

    logger = get_logger(__name__)

    with run_context(run_id, thread_id):
        logger.info("items_persisted", created=2)
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog

_run_id: ContextVar[str | None] = ContextVar("extraction_run_id", default=None)
_thread_id: ContextVar[str | None] = ContextVar("thread_id", default=None)


@contextmanager
def run_context(run_id: str, thread_id: str | None = None) -> Iterator[None]:
    """Bind a run id (and its thread) to every log entry in this context.

    Tasks created inside the block inherit the binding. The previous values
    are restored on exit, including when the block is cancelled.
    """
    run_token = _run_id.set(run_id)
    thread_token = _thread_id.set(thread_id)
    try:
        yield
    finally:
        _thread_id.reset(thread_token)
        _run_id.reset(run_token)


def get_correlation_id() -> str | None:
    """Run id bound by the enclosing ``run_context``, if any."""
    return _run_id.get()


def add_run_context(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor adding the bound run and thread ids.

    Explicit ``thread_id`` keys passed at the call site win.
    """
    run_id = _run_id.get()
    if run_id is not None:
        event_dict.setdefault("extraction_run_id", run_id)
    thread_id = _thread_id.get()
    if thread_id is not None:
        event_dict.setdefault("thread_id", thread_id)
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: JSON lines for the scheduler, colored console for the CLI
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        add_run_context,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer: structlog.types.Processor
    if json_output:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, typically ``get_logger(__name__)``."""
    return structlog.get_logger(name)
