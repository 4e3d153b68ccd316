"""Live telemetry connection lifecycle.

A :class:`ConnectionManager` owns one push stream for a
``(credential, company_lab, machine)`` tuple. It decodes frames, fans events
out to subscribers and reconnects after a fixed delay until its attempt budget
is spent. Normalizing the decoded payloads is left to the subscribers.

State changes go through the pure :func:`transition` function; timers and
tasks go through an injected :class:`Scheduler`, and sockets through an
injected connector, so the lifecycle can be driven without a network.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, replace
from enum import Enum
from functools import partial
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Coroutine,
    Optional,
    Protocol,
    Union,
)
from urllib.parse import quote, urlencode

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from logging_config import stream_context
from models.records import ConnectionState, ConnectionStatus
from services.events import Handler, SubscriberRegistry
from settings import get_settings

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006

Frame = Union[str, bytes]


class ConnectionEvent(str, Enum):
    connected = "connected"
    disconnected = "disconnected"
    data = "data"
    error = "error"


class TransportError(Exception):
    """The socket failed or could not be opened."""


class TransportClosed(TransportError):
    """The socket was closed; carries the close frame details."""

    def __init__(self, code: int, reason: str = "") -> None:
        super().__init__(f"connection closed (code={code}, reason={reason!r})")
        self.code = code
        self.reason = reason


class DecodeError(ValueError):
    """A single frame could not be decoded into a JSON object."""


class ReconnectExhausted(Exception):
    """Every reconnect attempt failed; the stream stays down until ``connect()``."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None) -> None:
        super().__init__(f"gave up after {attempts} reconnect attempts")
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class StreamKey:
    company_lab: str
    machine_id: str


@dataclass(frozen=True)
class CloseInfo:
    """Payload of the ``disconnected`` event."""

    code: int
    reason: str
    by_caller: bool
    will_reconnect: bool


class Trigger(str, Enum):
    connect = "connect"
    opened = "opened"
    lost = "lost"
    retry = "retry"
    retry_due = "retry_due"
    disconnect = "disconnect"


def transition(
    state: ConnectionState,
    trigger: Trigger,
    *,
    max_attempts: int,
    error: Optional[BaseException] = None,
) -> ConnectionState:
    """Return the state that follows ``state`` when ``trigger`` happens.

    Triggers that do not apply to the current status leave it unchanged.
    """
    status = state.status
    if trigger is Trigger.connect:
        if status in (ConnectionStatus.connecting, ConnectionStatus.open):
            return state
        return ConnectionState(status=ConnectionStatus.connecting)
    if trigger is Trigger.opened:
        if status is ConnectionStatus.connecting:
            return ConnectionState(status=ConnectionStatus.open)
        return state
    if trigger is Trigger.lost:
        if status in (ConnectionStatus.connecting, ConnectionStatus.open):
            return replace(state, status=ConnectionStatus.closed, last_error=error or state.last_error)
        return state
    if trigger is Trigger.retry:
        if status is not ConnectionStatus.closed:
            return state
        if state.attempt < max_attempts:
            return replace(state, status=ConnectionStatus.reconnecting, attempt=state.attempt + 1)
        return replace(state, status=ConnectionStatus.failed)
    if trigger is Trigger.retry_due:
        if status is ConnectionStatus.reconnecting:
            return replace(state, status=ConnectionStatus.connecting)
        return state
    if trigger is Trigger.disconnect:
        return ConnectionState(status=ConnectionStatus.closed, last_error=state.last_error)
    raise ValueError(f"Unknown trigger {trigger!r}")


class Cancellable(Protocol):
    def cancel(self) -> Any: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> Cancellable: ...

    def spawn(self, coro: Coroutine[Any, Any, None]) -> Cancellable: ...


class AsyncioScheduler:
    """Schedules on the running event loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)

    def spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        return asyncio.get_running_loop().create_task(coro)


class Transport(Protocol):
    def messages(self) -> AsyncIterator[Frame]: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[Transport]]
CredentialProvider = Callable[[], Optional[str]]


class WebSocketTransport:
    """Adapts a ``websockets`` client connection to :class:`Transport`."""

    def __init__(self, connection: Any) -> None:
        self._connection = connection

    async def messages(self) -> AsyncIterator[Frame]:
        while True:
            try:
                message = await self._connection.recv()
            except ConnectionClosed as exc:
                rcvd = exc.rcvd
                if rcvd is None:
                    raise TransportClosed(ABNORMAL_CLOSURE, "no close frame received") from exc
                raise TransportClosed(rcvd.code, rcvd.reason) from exc
            yield message

    async def close(self) -> None:
        await self._connection.close()


async def connect_websocket(url: str) -> WebSocketTransport:
    connection = await ws_connect(url)
    return WebSocketTransport(connection)


def build_stream_url(base_url: str, company_lab: str, machine_id: str, credential: str) -> str:
    """Build the push-channel URL; the lab segment keeps only ``[A-Za-z0-9_-]``."""
    safe_lab = re.sub(r"\s+", "_", company_lab.strip())
    safe_lab = re.sub(r"[^A-Za-z0-9_\-]", "", safe_lab)
    query = urlencode({"token": credential, "sensor": machine_id}, quote_via=quote)
    return f"{base_url.rstrip('/')}/{safe_lab}?{query}"


class ConnectionManager:
    """Caller-owned live connection: create, ``connect``, ``disconnect``, discard.

    Must be driven from within a running event loop. ``connect`` and
    ``disconnect`` never raise transport failures; those arrive as
    ``error``/``disconnected`` events.
    """

    def __init__(
        self,
        ws_base_url: str,
        *,
        reconnect_delay: float = 3.0,
        max_attempts: int = 5,
        connector: Optional[Connector] = None,
        scheduler: Optional[Scheduler] = None,
        credential_provider: Optional[CredentialProvider] = None,
    ) -> None:
        self.ws_base_url = ws_base_url
        self.reconnect_delay = reconnect_delay
        self.max_attempts = max_attempts
        self._connector: Connector = connector or connect_websocket
        self._scheduler: Scheduler = scheduler or AsyncioScheduler()
        self._credential_provider = credential_provider
        self._events: SubscriberRegistry[ConnectionEvent] = SubscriberRegistry()
        self._state = ConnectionState()
        self._key: Optional[StreamKey] = None
        self._credential: Optional[str] = None
        self._generation = 0
        self._task: Optional[Cancellable] = None
        self._timer: Optional[Cancellable] = None
        self._transport: Optional[Transport] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def key(self) -> Optional[StreamKey]:
        return self._key

    @property
    def is_connected(self) -> bool:
        return self._state.status is ConnectionStatus.open

    def on(self, event: Union[str, ConnectionEvent], handler: Handler) -> None:
        self._events.on(ConnectionEvent(event), handler)

    def off(self, event: Union[str, ConnectionEvent], handler: Handler) -> bool:
        return self._events.off(ConnectionEvent(event), handler)

    def connect(self, credential: str, company_lab: str, machine_id: str) -> None:
        key = StreamKey(company_lab=company_lab, machine_id=machine_id)
        if self._state.status in (ConnectionStatus.connecting, ConnectionStatus.open):
            if key == self._key:
                self._credential = credential
                logger.debug("Connect ignored; stream already active", extra=self._log_extra())
                return
            logger.info("Switching stream", extra=self._log_extra())
            self.disconnect()

        self._cancel_timer()
        self._key = key
        self._credential = credential
        self._apply(Trigger.connect)
        self._start(credential)

    def disconnect(self) -> None:
        self._generation += 1
        self._cancel_timer()
        task, self._task = self._task, None
        transport, self._transport = self._transport, None
        was_open = self._state.status is ConnectionStatus.open

        self._apply(Trigger.disconnect)
        if task is not None:
            task.cancel()
        if transport is not None:
            self._scheduler.spawn(self._close_transport(transport))
        if was_open:
            self._events.emit(
                ConnectionEvent.disconnected,
                CloseInfo(
                    code=NORMAL_CLOSURE,
                    reason="closed by client",
                    by_caller=True,
                    will_reconnect=False,
                ),
            )

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _log_extra(self, **fields: Any) -> dict[str, Any]:
        key = self._key
        return stream_context(
            key.company_lab if key else None,
            key.machine_id if key else None,
            status=self._state.status,
            attempt=self._state.attempt,
            **fields,
        )

    def _apply(self, trigger: Trigger, error: Optional[BaseException] = None) -> ConnectionState:
        previous = self._state
        self._state = transition(previous, trigger, max_attempts=self.max_attempts, error=error)
        if self._state.status is not previous.status:
            logger.info(
                "Connection %s -> %s on %s",
                previous.status.value,
                self._state.status.value,
                trigger.value,
                extra=self._log_extra(),
            )
        return self._state

    def _current_credential(self) -> str:
        if self._credential_provider is not None:
            refreshed = self._credential_provider()
            if refreshed:
                return refreshed
        return self._credential or ""

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def _start(self, credential: str) -> None:
        assert self._key is not None
        self._generation += 1
        url = build_stream_url(self.ws_base_url, self._key.company_lab, self._key.machine_id, credential)
        self._task = self._scheduler.spawn(self._run(self._generation, url))

    async def _run(self, generation: int, url: str) -> None:
        code, reason = ABNORMAL_CLOSURE, ""
        error: Optional[TransportError] = None
        try:
            transport = await self._connector(url)
        except Exception as exc:  # noqa: BLE001 - any handshake failure counts as a lost connection
            error = TransportError(f"could not open stream: {exc}")
            reason = str(exc)
        else:
            if generation != self._generation:
                await transport.close()
                return
            self._transport = transport
            self._apply(Trigger.opened)
            self._events.emit(ConnectionEvent.connected, self._key)
            try:
                async for frame in transport.messages():
                    if generation != self._generation:
                        return
                    self._dispatch(frame)
            except TransportClosed as exc:
                code, reason = exc.code, exc.reason
            except Exception as exc:  # noqa: BLE001 - surfaced as an error event
                error = TransportError(f"stream failed: {exc}")
                reason = str(exc)
            else:
                code = NORMAL_CLOSURE

        if generation != self._generation:
            return
        self._handle_lost(generation, code, reason, error)

    def _dispatch(self, frame: Frame) -> None:
        try:
            payload = json.loads(frame)
        except (TypeError, ValueError) as exc:
            self._reject(DecodeError(f"frame is not valid JSON: {exc}"))
            return
        if not isinstance(payload, dict):
            self._reject(DecodeError(f"frame is not a JSON object: {type(payload).__name__}"))
            return
        self._events.emit(ConnectionEvent.data, payload)

    def _reject(self, error: DecodeError) -> None:
        logger.warning("Dropping frame: %s", error, extra=self._log_extra())
        self._events.emit(ConnectionEvent.error, error)

    def _handle_lost(
        self,
        generation: int,
        code: int,
        reason: str,
        error: Optional[TransportError],
    ) -> None:
        self._task = None
        self._transport = None
        self._apply(Trigger.lost, error)
        logger.warning(
            "Stream lost",
            extra=self._log_extra(close_code=code, reason=reason or None),
        )

        state = self._apply(Trigger.retry)
        reconnecting = state.status is ConnectionStatus.reconnecting
        if reconnecting:
            logger.info(
                "Reconnecting in %.1fs",
                self.reconnect_delay,
                extra=self._log_extra(delay=self.reconnect_delay),
            )
            self._timer = self._scheduler.call_later(
                self.reconnect_delay, partial(self._reconnect_due, generation)
            )

        # Handlers may call connect() or disconnect(); stop once they have.
        self._events.emit(
            ConnectionEvent.disconnected,
            CloseInfo(code=code, reason=reason, by_caller=False, will_reconnect=reconnecting),
        )
        if error is not None and generation == self._generation:
            self._events.emit(ConnectionEvent.error, error)
        if reconnecting or generation != self._generation:
            return

        logger.error("Reconnect attempts exhausted", extra=self._log_extra())
        self._events.emit(
            ConnectionEvent.error,
            ReconnectExhausted(self.max_attempts, last_error=state.last_error),
        )

    def _reconnect_due(self, generation: int) -> None:
        if generation != self._generation or self._state.status is not ConnectionStatus.reconnecting:
            return
        self._timer = None
        self._apply(Trigger.retry_due)
        self._start(self._current_credential())

    async def _close_transport(self, transport: Transport) -> None:
        try:
            await transport.close()
        except Exception as exc:  # noqa: BLE001 - the stream is already abandoned
            logger.warning("Error while closing stream: %s", exc, extra=self._log_extra())


def build_connection_manager(
    credential_provider: Optional[CredentialProvider] = None,
) -> ConnectionManager:
    """Factory that wires a manager with the configured endpoints and retry policy."""
    settings = get_settings()
    return ConnectionManager(
        settings.ws_base_url,
        reconnect_delay=settings.reconnect_delay,
        max_attempts=settings.max_reconnect_attempts,
        credential_provider=credential_provider,
    )
