"""Latest-value store for normalized readings, keyed by lab and machine."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional, Tuple

from logging_config import stream_context
from models.records import ConnectionStatus, SensorReading
from services.events import SubscriberRegistry

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


@dataclass(frozen=True)
class CacheEntry:
    reading: SensorReading
    connection_status: ConnectionStatus


Subscriber = Callable[[CacheEntry], None]


class LatestReadingCache:
    """Holds the newest reading and connectivity status per ``(company_lab, machine_id)``.

    ``set`` only accepts a reading strictly newer than the stored one, so the
    final value does not depend on the order readings arrive in. Older or
    equal timestamps are ignored silently.
    """

    def __init__(self) -> None:
        self._readings: Dict[CacheKey, SensorReading] = {}
        self._statuses: Dict[CacheKey, ConnectionStatus] = {}
        self._subscribers: SubscriberRegistry[CacheKey] = SubscriberRegistry()
        self._lock = Lock()

    def get(self, company_lab: str, machine_id: str) -> Optional[CacheEntry]:
        key = (company_lab, machine_id)
        with self._lock:
            return self._entry(key)

    def set(self, company_lab: str, machine_id: str, reading: SensorReading) -> bool:
        """Store ``reading`` if it is newer than the current one; ``True`` when stored."""
        key = (company_lab, machine_id)
        with self._lock:
            current = self._readings.get(key)
            if current is not None and reading.timestamp <= current.timestamp:
                logger.debug(
                    "Ignoring stale reading",
                    extra=stream_context(company_lab, machine_id),
                )
                return False
            self._readings[key] = reading
            entry = self._entry(key)
        self._subscribers.emit(key, entry)
        return True

    def set_status(self, company_lab: str, machine_id: str, status: ConnectionStatus) -> None:
        """Record connectivity; subscribers hear about it once a reading exists."""
        key = (company_lab, machine_id)
        with self._lock:
            if self._statuses.get(key) is status:
                return
            self._statuses[key] = status
            entry = self._entry(key)
        if entry is not None:
            self._subscribers.emit(key, entry)

    def status(self, company_lab: str, machine_id: str) -> ConnectionStatus:
        with self._lock:
            return self._statuses.get((company_lab, machine_id), ConnectionStatus.idle)

    def subscribe(self, company_lab: str, machine_id: str, callback: Subscriber) -> Callable[[], bool]:
        """Register ``callback`` for updates; returns a function that unsubscribes it."""
        key = (company_lab, machine_id)
        self._subscribers.on(key, callback)
        return lambda: self._subscribers.off(key, callback)

    def unsubscribe(self, company_lab: str, machine_id: str, callback: Subscriber) -> bool:
        return self._subscribers.off((company_lab, machine_id), callback)

    def _entry(self, key: CacheKey) -> Optional[CacheEntry]:
        reading = self._readings.get(key)
        if reading is None:
            return None
        return CacheEntry(
            reading=reading,
            connection_status=self._statuses.get(key, ConnectionStatus.idle),
        )
