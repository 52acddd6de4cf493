from __future__ import annotations

import itertools

import pytest

from provisioning import device_machine, session_machine
from provisioning.device_machine import DEVICE_TRANSITIONS
from provisioning.session_machine import SESSION_TRANSITIONS, IllegalSessionTransition
from provisioning.state import DeviceState, SessionState


LEGAL_SESSION_EDGES = {
    (SessionState.DISCOVERING, SessionState.ACTIVE),
    (SessionState.ACTIVE, SessionState.PAUSED),
    (SessionState.PAUSED, SessionState.ACTIVE),
    (SessionState.ACTIVE, SessionState.CLOSING),
    (SessionState.PAUSED, SessionState.CLOSING),
    (SessionState.CLOSING, SessionState.CLOSED),
}


@pytest.mark.parametrize("current,target", list(itertools.product(SessionState, SessionState)))
def test_session_table_matches_lifecycle(current: SessionState, target: SessionState) -> None:
    assert session_machine.can_transition(current, target) == ((current, target) in LEGAL_SESSION_EDGES)


def test_session_initial_state_is_discovering() -> None:
    assert session_machine.INITIAL_STATE is SessionState.DISCOVERING


def test_closed_is_terminal_and_never_exited() -> None:
    assert session_machine.is_terminal(SessionState.CLOSED)
    assert SESSION_TRANSITIONS[SessionState.CLOSED] == frozenset()
    for target in SessionState:
        with pytest.raises(IllegalSessionTransition):
            session_machine.transition(SessionState.CLOSED, target)


def _walk(path):
    state = session_machine.INITIAL_STATE
    visited = [state]
    for target in path:
        state = session_machine.transition(state, target)
        visited.append(state)
    return visited


@pytest.mark.parametrize(
    "path",
    [
        [SessionState.ACTIVE, SessionState.CLOSING, SessionState.CLOSED],
        [SessionState.ACTIVE, SessionState.PAUSED, SessionState.ACTIVE, SessionState.PAUSED, SessionState.CLOSING],
        [SessionState.ACTIVE, SessionState.PAUSED, SessionState.CLOSING, SessionState.CLOSED],
    ],
)
def test_legal_sequences_stay_inside_state_set(path) -> None:
    visited = _walk(path)
    assert set(visited) <= set(SessionState)
    if SessionState.CLOSED in visited:
        assert visited[-1] is SessionState.CLOSED


def test_illegal_session_edge_raises_with_context() -> None:
    with pytest.raises(IllegalSessionTransition) as info:
        session_machine.transition(SessionState.DISCOVERING, SessionState.PAUSED)
    assert info.value.current is SessionState.DISCOVERING
    assert info.value.target is SessionState.PAUSED


def test_device_happy_path() -> None:
    path = [
        DeviceState.DISCOVERED,
        DeviceState.PROVISIONING,
        DeviceState.PROVISIONED,
        DeviceState.VERIFYING,
        DeviceState.VERIFIED,
    ]
    for current, target in zip(path, path[1:]):
        assert device_machine.can_transition(current, target)
    assert DEVICE_TRANSITIONS[DeviceState.VERIFIED] == frozenset()


@pytest.mark.parametrize("source", [DeviceState.PROVISIONING, DeviceState.VERIFYING])
def test_device_can_fail_while_working(source: DeviceState) -> None:
    assert device_machine.can_transition(source, DeviceState.FAILED)


@pytest.mark.parametrize("source", [DeviceState.DISCOVERED, DeviceState.PROVISIONED, DeviceState.VERIFIED])
def test_device_cannot_fail_from_idle_states(source: DeviceState) -> None:
    assert not device_machine.can_transition(source, DeviceState.FAILED)


def test_retry_edge_requires_explicit_retry() -> None:
    assert not device_machine.can_transition(DeviceState.FAILED, DeviceState.PROVISIONING)
    assert device_machine.can_transition(DeviceState.FAILED, DeviceState.PROVISIONING, via_retry=True)
    assert device_machine.is_retry_edge(DeviceState.FAILED, DeviceState.PROVISIONING)


def test_skip_allowed_only_when_idle() -> None:
    allowed = {state for state in DeviceState if device_machine.can_skip(state)}
    assert allowed == {DeviceState.DISCOVERED, DeviceState.FAILED}
