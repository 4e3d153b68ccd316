"""Keeps the latest-value cache in sync with one lab machine.

The feed hydrates the cache from a REST snapshot, then opens the live
connection and folds every pushed frame into the cache. Connectivity changes
are mirrored into the cache so views keep showing the last good reading
while the stream is down.
"""

from __future__ import annotations

import logging
from datetime import timezone, tzinfo
from typing import Any, Dict

from logging_config import stream_context
from models.records import SensorReading
from services.cache import LatestReadingCache
from services.connection import ConnectionEvent, ConnectionManager
from services.fetcher import FetchError, SnapshotFetcher
from services.normalizer import normalize

logger = logging.getLogger(__name__)


class ReadingFeed:

    def __init__(
        self,
        manager: ConnectionManager,
        fetcher: SnapshotFetcher,
        cache: LatestReadingCache,
        company_lab: str,
        machine_id: str,
        *,
        assume_tz: tzinfo = timezone.utc,
    ) -> None:
        self.manager = manager
        self.fetcher = fetcher
        self.cache = cache
        self.company_lab = company_lab
        self.machine_id = machine_id
        self._assume_tz = assume_tz
        self._started = False

    async def hydrate(self, count: int) -> int:
        """Seed the cache from the most recent readings; returns how many were stored."""
        try:
            readings = await self.fetcher.fetch_recent(self.company_lab, self.machine_id, count)
        except FetchError as exc:
            logger.warning("Hydration failed: %s", exc, extra=self._context(kind=exc.kind))
            return 0
        stored = sum(1 for reading in readings if self._store(reading))
        logger.info("Hydrated cache", extra=self._context(count=stored))
        return stored

    async def start(self, credential: str, hydrate_count: int = 20) -> int:
        """Hydrate, subscribe and connect. Returns the number of hydrated readings."""
        stored = await self.hydrate(hydrate_count) if hydrate_count > 0 else 0
        if not self._started:
            self.manager.on(ConnectionEvent.data, self._on_data)
            self.manager.on(ConnectionEvent.connected, self._on_connectivity)
            self.manager.on(ConnectionEvent.disconnected, self._on_connectivity)
            self.manager.on(ConnectionEvent.error, self._on_connectivity)
            self._started = True
        self.manager.connect(credential, self.company_lab, self.machine_id)
        self._sync_status()
        return stored

    def stop(self) -> None:
        if self._started:
            self.manager.off(ConnectionEvent.data, self._on_data)
            self.manager.off(ConnectionEvent.connected, self._on_connectivity)
            self.manager.off(ConnectionEvent.disconnected, self._on_connectivity)
            self.manager.off(ConnectionEvent.error, self._on_connectivity)
            self._started = False
        self.manager.disconnect()
        self._sync_status()

    def _store(self, reading: SensorReading) -> bool:
        if not reading.timestamp_valid:
            logger.warning("Skipping reading with unparseable timestamp", extra=self._context())
            return False
        return self.cache.set(self.company_lab, self.machine_id, reading)

    def _on_data(self, payload: Any) -> None:
        self._store(normalize(payload, self.machine_id, assume_tz=self._assume_tz))

    def _on_connectivity(self, _payload: Any) -> None:
        self._sync_status()

    def _sync_status(self) -> None:
        self.cache.set_status(self.company_lab, self.machine_id, self.manager.state.status)

    def _context(self, **fields: Any) -> Dict[str, Any]:
        return stream_context(self.company_lab, self.machine_id, **fields)
