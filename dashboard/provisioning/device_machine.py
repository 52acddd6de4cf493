"""Per-device provisioning transition table.

``failed -> provisioning`` is only reachable through an operator retry; events
that report it without a matching retry are not spontaneous transitions and are
refused by :func:`can_transition`.
"""
from __future__ import annotations

from typing import Dict, FrozenSet

from .state import DeviceState

INITIAL_STATE = DeviceState.DISCOVERED

DEVICE_TRANSITIONS: Dict[DeviceState, FrozenSet[DeviceState]] = {
    DeviceState.DISCOVERED: frozenset({DeviceState.PROVISIONING}),
    DeviceState.PROVISIONING: frozenset({DeviceState.PROVISIONED, DeviceState.FAILED}),
    DeviceState.PROVISIONED: frozenset({DeviceState.VERIFYING}),
    DeviceState.VERIFYING: frozenset({DeviceState.VERIFIED, DeviceState.FAILED}),
    DeviceState.VERIFIED: frozenset(),
    DeviceState.FAILED: frozenset({DeviceState.PROVISIONING}),
}

RETRY_EDGE = (DeviceState.FAILED, DeviceState.PROVISIONING)

PROVISIONABLE_STATES = frozenset({DeviceState.DISCOVERED})
RETRYABLE_STATES = frozenset({DeviceState.FAILED})
SKIPPABLE_STATES = frozenset({DeviceState.DISCOVERED, DeviceState.FAILED})


def can_transition(current: DeviceState, target: DeviceState, *, via_retry: bool = False) -> bool:
    if (current, target) == RETRY_EDGE:
        return via_retry
    return target in DEVICE_TRANSITIONS[current]


def is_retry_edge(current: DeviceState, target: DeviceState) -> bool:
    return (current, target) == RETRY_EDGE


def can_skip(state: DeviceState) -> bool:
    return state in SKIPPABLE_STATES


__all__ = [
    "INITIAL_STATE",
    "DEVICE_TRANSITIONS",
    "RETRY_EDGE",
    "PROVISIONABLE_STATES",
    "RETRYABLE_STATES",
    "SKIPPABLE_STATES",
    "can_transition",
    "can_skip",
    "is_retry_edge",
]
