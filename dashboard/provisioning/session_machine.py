"""Session lifecycle transition table."""
from __future__ import annotations

from typing import Dict, FrozenSet

from .state import SessionState

INITIAL_STATE = SessionState.DISCOVERING

SESSION_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.DISCOVERING: frozenset({SessionState.ACTIVE}),
    SessionState.ACTIVE: frozenset({SessionState.PAUSED, SessionState.CLOSING}),
    SessionState.PAUSED: frozenset({SessionState.ACTIVE, SessionState.CLOSING}),
    SessionState.CLOSING: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


class IllegalSessionTransition(ValueError):
    def __init__(self, current: SessionState, target: SessionState) -> None:
        super().__init__(f"session transition {current.value} -> {target.value} is not allowed")
        self.current = current
        self.target = target


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in SESSION_TRANSITIONS[current]


def is_terminal(state: SessionState) -> bool:
    return not SESSION_TRANSITIONS[state]


def transition(current: SessionState, target: SessionState) -> SessionState:
    """Return ``target`` when the edge exists; raise otherwise."""

    if not can_transition(current, target):
        raise IllegalSessionTransition(current, target)
    return target


__all__ = [
    "INITIAL_STATE",
    "SESSION_TRANSITIONS",
    "IllegalSessionTransition",
    "can_transition",
    "is_terminal",
    "transition",
]
