from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable, List, Optional, Union

import pytest

from services.connection import TransportClosed


class FakeTransport:
    """In-memory stand-in for a websocket connection."""

    def __init__(self, frames: Optional[List[Union[str, bytes]]] = None) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self.closed = False
        for frame in frames or []:
            self._queue.put_nowait(frame)

    def push(self, frame: Union[str, bytes]) -> None:
        self._queue.put_nowait(frame)

    def drop(self, code: int = 1006, reason: str = "connection lost") -> None:
        self._queue.put_nowait(TransportClosed(code, reason))

    async def messages(self) -> AsyncIterator[Union[str, bytes]]:
        while True:
            item = await self._queue.get()
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(TransportClosed(1000, "closed"))


class FakeConnector:
    """Hands out fake transports; ``failures`` makes the next N attempts fail."""

    def __init__(self) -> None:
        self.urls: List[str] = []
        self.transports: List[FakeTransport] = []
        self.failures = 0
        self.initial_frames: List[Union[str, bytes]] = []

    async def __call__(self, url: str) -> FakeTransport:
        self.urls.append(url)
        if self.failures > 0:
            self.failures -= 1
            raise OSError("connection refused")
        transport = FakeTransport(self.initial_frames)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]


class ManualTimer:

    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.fired = True
        self.callback()


class ManualScheduler:
    """Runs tasks on the loop but keeps timers until a test fires them."""

    def __init__(self) -> None:
        self.timers: List[ManualTimer] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(delay, callback)
        self.timers.append(timer)
        return timer

    def spawn(self, coro: Any) -> "asyncio.Task[None]":
        return asyncio.get_running_loop().create_task(coro)

    def pending(self) -> List[ManualTimer]:
        return [timer for timer in self.timers if not timer.cancelled and not timer.fired]

    def fire_pending(self) -> int:
        timers = self.pending()
        for timer in timers:
            timer.fire()
        return len(timers)


async def _settle(rounds: int = 20) -> None:
    """Let spawned tasks run until they block."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture()
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture()
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture()
def settle() -> Callable[..., Any]:
    return _settle
