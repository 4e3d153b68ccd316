from __future__ import annotations

import pytest

from models.records import ConnectionState, ConnectionStatus
from services.connection import Trigger, transition


def _step(state: ConnectionState, trigger: Trigger, error=None) -> ConnectionState:
    return transition(state, trigger, max_attempts=2, error=error)


def test_connect_from_idle_starts_connecting() -> None:
    state = _step(ConnectionState(), Trigger.connect)

    assert state == ConnectionState(status=ConnectionStatus.connecting)


@pytest.mark.parametrize("status", [ConnectionStatus.connecting, ConnectionStatus.open])
def test_connect_while_active_is_ignored(status: ConnectionStatus) -> None:
    state = ConnectionState(status=status, attempt=1)

    assert _step(state, Trigger.connect) is state


def test_connect_from_failed_resets_attempts() -> None:
    failed = ConnectionState(status=ConnectionStatus.failed, attempt=2, last_error=OSError("x"))

    assert _step(failed, Trigger.connect) == ConnectionState(status=ConnectionStatus.connecting)


def test_open_resets_attempt_counter() -> None:
    state = ConnectionState(status=ConnectionStatus.connecting, attempt=2)

    assert _step(state, Trigger.opened) == ConnectionState(status=ConnectionStatus.open)


def test_lost_records_error_and_keeps_attempt() -> None:
    error = OSError("reset")
    state = ConnectionState(status=ConnectionStatus.connecting, attempt=1)

    lost = _step(state, Trigger.lost, error)

    assert lost.status is ConnectionStatus.closed
    assert lost.attempt == 1
    assert lost.last_error is error


def test_retry_counts_until_budget_then_fails() -> None:
    state = ConnectionState(status=ConnectionStatus.closed)

    state = _step(state, Trigger.retry)
    assert (state.status, state.attempt) == (ConnectionStatus.reconnecting, 1)

    state = _step(_step(state, Trigger.retry_due), Trigger.lost)
    state = _step(state, Trigger.retry)
    assert (state.status, state.attempt) == (ConnectionStatus.reconnecting, 2)

    state = _step(_step(state, Trigger.retry_due), Trigger.lost)
    state = _step(state, Trigger.retry)
    assert (state.status, state.attempt) == (ConnectionStatus.failed, 2)


def test_retry_due_only_applies_while_reconnecting() -> None:
    closed = ConnectionState(status=ConnectionStatus.closed)
    reconnecting = ConnectionState(status=ConnectionStatus.reconnecting, attempt=1)

    assert _step(closed, Trigger.retry_due) is closed
    assert _step(reconnecting, Trigger.retry_due).status is ConnectionStatus.connecting


@pytest.mark.parametrize("status", list(ConnectionStatus))
def test_disconnect_always_closes(status: ConnectionStatus) -> None:
    state = _step(ConnectionState(status=status, attempt=1), Trigger.disconnect)

    assert state.status is ConnectionStatus.closed
    assert state.attempt == 0


@pytest.mark.parametrize(
    "trigger, status",
    [
        (Trigger.opened, ConnectionStatus.idle),
        (Trigger.lost, ConnectionStatus.idle),
        (Trigger.lost, ConnectionStatus.failed),
        (Trigger.retry, ConnectionStatus.open),
    ],
)
def test_inapplicable_triggers_leave_state_unchanged(trigger: Trigger, status: ConnectionStatus) -> None:
    state = ConnectionState(status=status)

    assert _step(state, trigger) is state
