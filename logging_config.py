"""
logging_config.py - Centralized logging configuration.

Every pipeline module logs through `get_logger(__name__)` with structured
messages of the form "event_name | key=value | key=value". `setup_logging`
is called once by the CLI; library callers configure logging themselves.

`graceful` isolates a single unit of work (one prediction strategy, one
optional enrichment) so that a fault in it is logged and replaced by a
neutral default instead of aborting the whole document.
"""

from __future__ import annotations

import functools
import json
import logging
import sys
from typing import Callable, TypeVar

T = TypeVar("T")


class JsonLineFormatter(logging.Formatter):
    """One JSON object per log record, safe for messages containing quotes."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(level: int = logging.INFO, json_format: bool = False) -> None:
    """Configure root logger with consistent formatting.

    Args:
        level: Logging level.
        json_format: If True, emit one JSON object per line.
    """
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    if json_format:
        formatter: logging.Formatter = JsonLineFormatter(datefmt="%H:%M:%S")
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(name)-18s] %(levelname)-7s %(message)s",
            datefmt="%H:%M:%S",
        )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a named logger."""
    return logging.getLogger(name)


def graceful(default_factory: Callable[[], T], log_level: int = logging.ERROR):
    """Decorator that catches exceptions and returns `default_factory()`.

    KeyboardInterrupt and SystemExit are never swallowed.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except (KeyboardInterrupt, SystemExit):
                raise
            except Exception as exc:
                logger = logging.getLogger(func.__module__)
                logger.log(
                    log_level,
                    "isolated_failure | func=%s | error=%s: %s | fallback=default",
                    func.__name__,
                    type(exc).__name__,
                    exc,
                    exc_info=True,
                )
                return default_factory()

        return wrapper

    return decorator
