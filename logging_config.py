"""
logging_config.py - Centralized logging configuration.

Every module logs through `get_logger(__name__)` using the same
`event_name | key=value` line shape, so API, CLI and tests share one format.
With `json_format=True` each record becomes one JSON object per line.
"""

from __future__ import annotations

import functools
import json
import logging
import sys
from typing import IO, Callable, Optional, TypeVar

T = TypeVar("T")

TEXT_FORMAT = "%(asctime)s [%(name)-16s] %(levelname)-7s %(message)s"
TEXT_DATEFMT = "%H:%M:%S"
JSON_DATEFMT = "%Y-%m-%dT%H:%M:%S"

# Third-party clients that are chatty at INFO.
NOISY_LOGGERS = ("googleapiclient.discovery_cache", "httpx", "openai", "urllib3")


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record; messages are escaped, never spliced."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, JSON_DATEFMT),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["error_type"] = record.exc_info[0].__name__
            entry["traceback"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(
    level: int = logging.INFO,
    json_format: bool = False,
    stream: Optional[IO[str]] = None,
) -> None:
    """Install a single stderr handler on the root logger.

    Args:
        level: Root logging level.
        json_format: Emit JSON lines instead of the aligned text format.
        stream: Override the output stream (defaults to stderr).
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonLineFormatter() if json_format else logging.Formatter(TEXT_FORMAT, datefmt=TEXT_DATEFMT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    quiet = max(level, logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def graceful(default_factory: Callable[[], T], log_level: int = logging.WARNING):
    """Decorator that logs an exception and returns a default value instead.

    Only for call sites whose contract is "carry on without it" (e.g. optional
    prompt context). Everything else raises through the error taxonomy.
    The log event is `<function>_fallback`, leading underscores stripped.
    """

    def decorator(func):
        event = f"{func.__name__.lstrip('_')}_fallback"

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except (KeyboardInterrupt, SystemExit):
                raise
            except Exception as exc:
                logging.getLogger(func.__module__).log(
                    log_level,
                    "%s | error_type=%s | error=%s",
                    event,
                    type(exc).__name__,
                    exc,
                )
                return default_factory()

        return wrapper

    return decorator
