"""Structured logging for chatsync.

structlog renders JSON when the emulator or a headless sync process runs,
and colored console lines for the CLI. Context such as a conversation or
request id is carried in contextvars, so concurrent drain workers and
requests each log their own.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog


def configure_logging(
    json_format: bool = True,
    level: str = "INFO",
    add_timestamp: bool = True,
) -> None:
    """Route structlog through the standard library at the given level.

    Args:
        json_format: Render JSON lines; otherwise human-readable console output.
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
        add_timestamp: Prefix entries with an ISO timestamp.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if add_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, usually named after the calling module."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context for every later entry logged by the current task."""
    structlog.contextvars.bind_contextvars(**kwargs)


@contextmanager
def bound_context(**kwargs: Any) -> Iterator[None]:
    """Bind context for the duration of a block, restoring it afterwards.

    Usage:
        with bound_context(request_id=request_id):
            ...
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield
