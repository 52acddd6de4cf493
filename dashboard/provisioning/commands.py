"""Operator commands with client-side guards.

A command call returns once the orchestrator acknowledges it. The mirrored state
is never touched here; the effect shows up later as a stream event. A command is
recorded in the pending overlay before its request goes out, because the
confirming event may arrive ahead of the acknowledgment, and is taken out again
if the orchestrator rejects it.
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from . import device_machine
from .backend.http_client import OrchestratorHttpClient
from .backend.schemas import (
    DeviceOperationModel,
    NetworkStatusPayload,
    ProvisionAllModel,
    SessionDataModel,
    SessionModel,
)
from .errors import CommandRejected
from .pending import PendingCommands
from .state import CommandKind, DeviceCandidate, DeviceState, Session, SessionSnapshot, SessionState, normalize_mac

logger = logging.getLogger(__name__)

SnapshotReader = Callable[[], SessionSnapshot]
T = TypeVar("T")

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 63


class CommandClient:
    def __init__(
        self,
        http: OrchestratorHttpClient,
        snapshot: SnapshotReader,
        pending: PendingCommands,
    ) -> None:
        self._http = http
        self._snapshot = snapshot
        self._pending = pending

    # Session commands

    async def start(self, ssid: str, password: str, config: Optional[Dict[str, int]] = None) -> SessionModel:
        snapshot = self._snapshot()
        if snapshot.is_open:
            raise CommandRejected("SESSION_ALREADY_ACTIVE")
        ssid = ssid.strip()
        if not ssid:
            raise CommandRejected("VALIDATION_FAILED", "Target SSID is required")
        if not MIN_PASSWORD_LENGTH <= len(password) <= MAX_PASSWORD_LENGTH:
            raise CommandRejected(
                "VALIDATION_FAILED",
                f"Target password must be {MIN_PASSWORD_LENGTH}-{MAX_PASSWORD_LENGTH} characters",
            )
        logger.info("Starting provisioning session for SSID %s", ssid)
        return await self._issue(CommandKind.START, self._http.start_session(ssid, password, config))

    async def stop(self) -> SessionModel:
        session = self._require_open_session()
        if session.state is SessionState.CLOSING:
            raise CommandRejected("SESSION_INVALID_STATE", "The session is already closing")
        return await self._issue(CommandKind.STOP, self._http.stop_session(session.id))

    async def pause(self) -> SessionModel:
        session = self._require_open_session()
        if session.state is not SessionState.ACTIVE:
            raise CommandRejected("SESSION_INVALID_STATE", "Only an active session can be paused")
        return await self._issue(CommandKind.PAUSE, self._http.pause_session(session.id))

    async def resume(self) -> SessionModel:
        session = self._require_open_session()
        if session.state is not SessionState.PAUSED:
            raise CommandRejected("SESSION_INVALID_STATE", "Only a paused session can be resumed")
        return await self._issue(CommandKind.RESUME, self._http.resume_session(session.id))

    # Device commands

    async def provision_one(self, mac: str) -> DeviceOperationModel:
        session = self._require_open_session()
        device = self._require_device(mac)
        if not device.in_allowlist:
            logger.info("Refusing to provision %s: not in allowlist", device.mac)
            raise CommandRejected("DEVICE_NOT_IN_ALLOWLIST")
        if self._pending.has(CommandKind.PROVISION, device.mac):
            raise CommandRejected("DEVICE_ALREADY_PROVISIONING")
        if device.state not in device_machine.PROVISIONABLE_STATES:
            raise CommandRejected("DEVICE_INVALID_STATE")
        return await self._issue(
            CommandKind.PROVISION, self._http.provision_device(session.id, device.mac), device.mac
        )

    async def provision_all(self) -> ProvisionAllModel:
        session = self._require_open_session()
        eligible = self.eligible_devices()
        if not eligible:
            raise CommandRejected("NO_ELIGIBLE_DEVICES")
        result = await self._issue(
            CommandKind.PROVISION,
            self._http.provision_all(session.id, only_allowlisted=True),
            *(device.mac for device in eligible),
        )
        logger.info(
            "Provision-all accepted: initiated=%d skipped=%d", result.initiated_count, result.skipped_count
        )
        return result

    async def retry(self, mac: str) -> DeviceOperationModel:
        session = self._require_open_session()
        device = self._require_device(mac)
        if device.state not in device_machine.RETRYABLE_STATES:
            raise CommandRejected("DEVICE_INVALID_STATE", "Only failed devices can be retried")
        if self._pending.has(CommandKind.RETRY, device.mac):
            raise CommandRejected("DEVICE_ALREADY_PROVISIONING")
        return await self._issue(CommandKind.RETRY, self._http.retry_device(session.id, device.mac), device.mac)

    async def skip(self, mac: str) -> DeviceOperationModel:
        session = self._require_open_session()
        device = self._require_device(mac)
        if not device_machine.can_skip(device.state):
            raise CommandRejected("DEVICE_INVALID_STATE", "Only discovered or failed devices can be skipped")
        return await self._issue(CommandKind.SKIP, self._http.skip_device(session.id, device.mac), device.mac)

    # Read-only helpers

    async def refresh(self) -> SessionDataModel:
        """Fetch the orchestrator's view for display; does not touch the mirror."""

        session = self._require_open_session()
        return await self._http.get_session(session.id, include_devices=True)

    async def network_status(self) -> NetworkStatusPayload:
        return await self._http.network_status()

    def eligible_devices(self) -> List[DeviceCandidate]:
        return [
            device
            for device in self._snapshot().devices.values()
            if device.in_allowlist
            and device.state is DeviceState.DISCOVERED
            and not self._pending.has(CommandKind.PROVISION, device.mac)
        ]

    async def _issue(self, kind: CommandKind, request: Awaitable[T], *macs: Optional[str]) -> T:
        keys = macs or (None,)
        for mac in keys:
            self._pending.add(kind, mac)
        try:
            return await request
        except CommandRejected:
            for mac in keys:
                self._pending.resolve(kind, mac)
            raise

    def _require_open_session(self) -> Session:
        snapshot = self._snapshot()
        if snapshot.session is None or not snapshot.is_open:
            raise CommandRejected("SESSION_NOT_ACTIVE")
        return snapshot.session

    def _require_device(self, mac: str) -> DeviceCandidate:
        device = self._snapshot().device(normalize_mac(mac))
        if device is None:
            raise CommandRejected("DEVICE_NOT_FOUND")
        return device


__all__ = ["CommandClient"]
