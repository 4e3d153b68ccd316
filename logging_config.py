from __future__ import annotations

import logging
import time
from enum import Enum
from logging.config import dictConfig
from typing import Any, Dict, Iterable, Optional, Sequence

from settings import get_settings

# Context fields appended to every line, in this order, when a record carries them.
STREAM_KEYS = ("company_lab", "machine_id", "status", "attempt")
DETAIL_KEYS = ("close_code", "reason", "event", "delay", "count", "kind")

# Chatty third-party loggers and the level they are capped at.
_LIBRARY_LEVELS = {
    "websockets": "WARNING",
    "httpx": "WARNING",
    "httpcore": "WARNING",
}

_configured = False


def stream_context(company_lab: Optional[str], machine_id: Optional[str], **fields: Any) -> Dict[str, Any]:
    """Build the ``extra=`` mapping for a log line about one lab machine."""
    context: Dict[str, Any] = {"company_lab": company_lab, "machine_id": machine_id}
    context.update(fields)
    return context


def _render(value: Any) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)


class ContextualFormatter(logging.Formatter):
    """Appends ``key=value`` pairs for known ``extra=`` fields; timestamps are UTC."""

    converter = time.gmtime

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        style: str = "%",
        extra_keys: Iterable[str] | None = None,
    ) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt, style=style)
        self._extra_keys: Sequence[str] = tuple(extra_keys or STREAM_KEYS + DETAIL_KEYS)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context: list[str] = []
        for key in self._extra_keys:
            value = getattr(record, key, None)
            if value is not None:
                context.append(f"{key}={_render(value)}")
        if not context:
            return message
        # Keep any traceback on the lines after the context.
        head, newline, tail = message.partition("\n")
        return f"{head} | {' '.join(context)}{newline}{tail}"


def configure_logging(level: str | int | None = None) -> None:
    """Configure application-wide logging once; later calls are ignored."""
    global _configured
    if _configured:
        return

    log_level = level if level is not None else get_settings().log_level

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "contextual": {
                    "()": "logging_config.ContextualFormatter",
                    "fmt": "%(asctime)sZ | %(levelname)s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S",
                    "extra_keys": list(STREAM_KEYS + DETAIL_KEYS),
                }
            },
            "handlers": {
                "stderr": {
                    "class": "logging.StreamHandler",
                    "level": log_level,
                    "formatter": "contextual",
                    "stream": "ext://sys.stderr",
                }
            },
            "loggers": {name: {"level": cap} for name, cap in _LIBRARY_LEVELS.items()},
            "root": {"handlers": ["stderr"], "level": log_level},
        }
    )
    _configured = True
