"""Logging for the retrieval engine.

All loggers hang off the ``lectio`` package logger, so one call to
:func:`setup_logging` controls cache, store, reranker and CLI output.
Recoverable failures (a cache tier going away, a reranker timing out, one
document in a batch failing to index) go through :func:`log_failure` so
they read the same everywhere.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

logger = logging.getLogger("lectio")

_FORMATS = {
    "standard": (
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        "%Y-%m-%d %H:%M:%S",
    ),
    "json": (
        '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
        '"logger": "%(name)s", "message": "%(message)s"}',
        None,
    ),
}


def _formatter(format_style: str) -> logging.Formatter:
    fmt, datefmt = _FORMATS.get(format_style, _FORMATS["standard"])
    return logging.Formatter(fmt, datefmt=datefmt)


def setup_logging(
    level: int | str = logging.INFO,
    log_file: str | None = None,
    format_style: str = "standard",
) -> logging.Logger:
    """
    Configure the ``lectio`` package logger.

    Calling it again replaces the handlers installed by the previous call.

    Args:
        level: Level name or number, applied to the logger and its handlers
        log_file: Also write records to this file
        format_style: "standard" (human-readable) or "json" (one object per line)

    Returns:
        The package logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger.setLevel(level)
    logger.handlers.clear()

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    formatter = _formatter(format_style)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Child logger ``lectio.<name>`` for one component (e.g. "cache")."""
    return logging.getLogger(f"{logger.name}.{name}")


def _with_context(message: str, context: dict[str, Any] | None) -> str:
    if not context:
        return message
    pairs = ", ".join(f"{key}={value}" for key, value in context.items())
    return f"{message} | Context: {pairs}"


def log_failure(
    logger: logging.Logger,
    operation: str,
    error: Exception | str,
    context: dict[str, Any] | None = None,
    level: int = logging.ERROR,
) -> None:
    """
    Log a failed operation as ``<operation> failed: [<ErrorType>] <error>``.

    Args:
        logger: Component logger
        operation: What was being attempted, e.g. "Writing remote cache tier"
        error: The exception, or a plain message
        context: Key/value pairs appended to the message
        level: ERROR by default; degraded-but-working paths pass WARNING
    """
    error_type = type(error).__name__ if isinstance(error, Exception) else "Error"
    logger.log(level, _with_context(f"{operation} failed: [{error_type}] {error}", context))


def log_warning(
    logger: logging.Logger,
    operation: str,
    message: str,
    context: dict[str, Any] | None = None,
) -> None:
    """Log ``<operation>: <message>`` at WARNING with optional context."""
    logger.warning(_with_context(f"{operation}: {message}", context))


setup_logging(level=logging.WARNING)
