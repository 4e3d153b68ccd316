"""Publish/subscribe fan-out shared by the connection manager and the cache."""

from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Callable, Dict, Generic, Hashable, List, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
Handler = Callable[[Any], None]


class SubscriberRegistry(Generic[K]):
    """Maps event keys to ordered handler lists.

    Handlers run in registration order. A failing handler is logged and does
    not stop the remaining handlers of the same ``emit``. Emission iterates
    over a copy of the handler list, so handlers may subscribe or unsubscribe
    while an event is being delivered.
    """

    def __init__(self) -> None:
        self._handlers: Dict[K, List[Handler]] = {}
        self._lock = Lock()

    def on(self, event: K, handler: Handler) -> None:
        with self._lock:
            self._handlers.setdefault(event, []).append(handler)

    def off(self, event: K, handler: Handler) -> bool:
        """Remove the first registration of ``handler``; ``False`` if absent."""
        with self._lock:
            handlers = self._handlers.get(event)
            if not handlers:
                return False
            try:
                handlers.remove(handler)
            except ValueError:
                return False
            if not handlers:
                del self._handlers[event]
            return True

    def emit(self, event: K, payload: Any = None) -> int:
        """Deliver ``payload`` to every handler of ``event``; returns the number that succeeded."""
        with self._lock:
            snapshot = tuple(self._handlers.get(event, ()))
        delivered = 0
        for handler in snapshot:
            try:
                handler(payload)
            except Exception:  # noqa: BLE001 - one subscriber must not break the others
                logger.exception("Subscriber failed while handling event", extra={"event": event})
                continue
            delivered += 1
        return delivered

    def count(self, event: K) -> int:
        with self._lock:
            return len(self._handlers.get(event, ()))

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
