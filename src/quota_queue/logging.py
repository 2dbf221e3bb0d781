"""Logging setup for quota-queue.

The scheduling package logs through the standard library so it can be
embedded in a host application unchanged. ``setup_logging`` routes those
records into loguru. Lines about a single request carry its short id and
priority, and can additionally be written as JSON lines to a dedicated
dispatch log.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from loguru import logger

if TYPE_CHECKING:
    from types import FrameType

    from loguru import Logger, Record

LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class InterceptHandler(logging.Handler):
    """Forward stdlib log records to loguru, keeping the caller's location."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame: FrameType | None = logging.currentframe()
        depth = 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _console_format(record: Record) -> str:
    extra = record["extra"]
    source = "{extra[name]}" if "name" in extra else "{name}"
    fmt = "<dim>{time:HH:mm:ss.SSS}</dim> | <level>{level: <8}</level> | <cyan>" + source + "</cyan>"
    if "request_id" in extra:
        fmt += " <magenta>{extra[request_id]}</magenta>"
    if "priority" in extra:
        fmt += " <dim>{extra[priority]}</dim>"
    if "job" in extra:
        fmt += " <yellow>job={extra[job]}</yellow>"
    return fmt + " - <level>{message}</level>\n{exception}"


def _is_dispatch_record(record: Record) -> bool:
    return "request_id" in record["extra"]


def setup_logging(
    level: LogLevel = "INFO",
    *,
    verbose: bool = False,
    quiet: bool = False,
    log_file: Path | None = None,
    dispatch_log_file: Path | None = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
    serialize: bool = False,
) -> list[int]:
    """Install the console sink and optional file sinks.

    Args:
        level: Base log level from config
        verbose: Use DEBUG (wins over ``quiet``)
        quiet: Use WARNING
        log_file: Rotating file receiving every record at DEBUG
        dispatch_log_file: JSON-lines file receiving only per-request records
        rotation: When to rotate file sinks (e.g. "10 MB", "1 day")
        retention: How long to keep rotated files
        serialize: Write ``log_file`` as JSON

    Returns:
        Ids of the installed loguru handlers
    """
    effective: LogLevel
    if verbose:
        effective = "DEBUG"
    elif quiet:
        effective = "WARNING"
    else:
        effective = level

    logger.remove()
    handler_ids = [
        logger.add(sys.stderr, level=effective, format=_console_format, diagnose=False),
    ]

    if log_file:
        handler_ids.append(
            logger.add(
                log_file,
                level="DEBUG",
                format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} | {extra} | {message}",
                rotation=rotation,
                retention=retention,
                compression="gz",
                serialize=serialize,
            )
        )

    if dispatch_log_file:
        handler_ids.append(
            logger.add(
                dispatch_log_file,
                level="DEBUG",
                filter=_is_dispatch_record,
                rotation=rotation,
                retention=retention,
                serialize=True,
            )
        )

    _route_stdlib_logging(effective)
    return handler_ids


def _route_stdlib_logging(level: LogLevel) -> None:
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    # One line per wait/dispatch at DEBUG
    debug = level in ("TRACE", "DEBUG")
    logging.getLogger("quota_queue").setLevel(logging.DEBUG if debug else logging.INFO)
    logging.getLogger("asyncio").setLevel(logging.DEBUG if level == "TRACE" else logging.WARNING)


def get_logger(name: str) -> Logger:
    """Return the loguru logger with ``name`` bound for the console source column."""
    return logger.bind(name=name)


def bind_request(
    request_id: str,
    description: str | None = None,
    priority: str | None = None,
) -> Logger:
    """Return a logger for lines about one request.

    The id is shortened to its first 8 characters. Records bound this way
    are the ones written to the dispatch log.
    """
    context: dict[str, Any] = {"request_id": request_id[:8]}
    if description:
        context["description"] = description
    if priority:
        context["priority"] = priority
    return logger.bind(name="quota_queue.scheduler", **context)


def reset_logging() -> None:
    """Remove all loguru sinks and the stdlib intercept (used by tests)."""
    logger.remove()
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, InterceptHandler):
            root.removeHandler(handler)
