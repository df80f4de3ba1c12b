"""structlog setup for slack-mirror.

Every log line carries the emitting thread, because importer workers, the
poller loop and the Socket Mode client all log concurrently. JSON output is
meant for long-running ``listen`` processes, console output for interactive use.
"""

import logging
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

APP_NAME = "slack_mirror"

# Library loggers that are chatty at INFO (socket reconnects, HTTP pools).
QUIET_LOGGERS = (
    "slack_sdk",
    "slack_sdk.socket_mode",
    "urllib3",
)


def add_process_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Stamp the application name and the emitting thread on each entry."""
    event_dict["app"] = APP_NAME
    event_dict.setdefault("thread", threading.current_thread().name)
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_logs: bool = False,
) -> None:
    """Configure structlog on top of stdlib logging.

    Logs go to stderr so that command output on stdout (query results,
    live notifications) stays pipeable.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR)
        json_logs: Render JSON lines instead of the coloured console format
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=numeric_level,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        add_process_context,
    ]

    if json_logs:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Structured logger for a module, e.g. ``get_logger(__name__)``."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def bind_context(**kwargs: Any) -> None:
    """Bind keys into every later log entry of the current context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """Bind keys for the duration of a block, then remove them again."""
    bind_context(**kwargs)
    try:
        yield
    finally:
        unbind_context(*kwargs)
