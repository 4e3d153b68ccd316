from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional, TypeVar

T = TypeVar("T", int, float)

_API_BASE_URL_ENV = "LAB_API_BASE_URL"
_WS_BASE_URL_ENV = "LAB_WS_BASE_URL"
_API_TOKEN_ENV = "LAB_API_TOKEN"
_RECONNECT_DELAY_ENV = "LAB_RECONNECT_DELAY"
_MAX_ATTEMPTS_ENV = "LAB_MAX_RECONNECT_ATTEMPTS"
_REQUEST_TIMEOUT_ENV = "LAB_REQUEST_TIMEOUT"
_HYDRATE_COUNT_ENV = "LAB_HYDRATE_COUNT"
_SOURCE_TIMEZONE_ENV = "LAB_SOURCE_TIMEZONE"
_LOG_LEVEL_ENV = "LOG_LEVEL"


@dataclass(frozen=True)
class Settings:
    api_base_url: str
    ws_base_url: str
    api_token: Optional[str]
    reconnect_delay: float
    max_reconnect_attempts: int
    request_timeout: float
    hydrate_count: int
    source_timezone: str
    log_level: str


def _env(name: str) -> Optional[str]:
    """Return the stripped value of ``name``, or ``None`` when unset or blank."""
    value = os.getenv(name)
    if value is None:
        return None
    return value.strip() or None


def _read_url(name: str, default: str) -> str:
    return (_env(name) or default).rstrip("/")


def _read_number(name: str, default: T, parse: Callable[[str], T], allow_zero: bool = False) -> T:
    candidate = _env(name)
    if candidate is None:
        return default
    try:
        parsed = parse(candidate)
    except ValueError:
        return default
    if parsed > 0 or (allow_zero and parsed == 0):
        return parsed
    return default


@lru_cache
def get_settings() -> Settings:
    return Settings(
        api_base_url=_read_url(_API_BASE_URL_ENV, "http://localhost:8000/api"),
        ws_base_url=_read_url(_WS_BASE_URL_ENV, "ws://localhost:8000/ws"),
        api_token=_env(_API_TOKEN_ENV),
        reconnect_delay=_read_number(_RECONNECT_DELAY_ENV, 3.0, float, allow_zero=True),
        max_reconnect_attempts=_read_number(_MAX_ATTEMPTS_ENV, 5, int),
        request_timeout=_read_number(_REQUEST_TIMEOUT_ENV, 30.0, float),
        hydrate_count=_read_number(_HYDRATE_COUNT_ENV, 20, int),
        source_timezone=_env(_SOURCE_TIMEZONE_ENV) or "UTC",
        log_level=(_env(_LOG_LEVEL_ENV) or "INFO").upper(),
    )
