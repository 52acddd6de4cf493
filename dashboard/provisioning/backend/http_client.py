"""HTTP client for orchestrator batch provisioning endpoints."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from ..config import Settings
from ..errors import CommandRejected, OrchestratorUnavailable
from .schemas import (
    DeviceOperationModel,
    NetworkStatusPayload,
    ProvisionAllModel,
    RecoverableSessionsModel,
    SessionDataModel,
    SessionModel,
)

logger = logging.getLogger(__name__)


def _seg(value: str) -> str:
    return quote(value, safe="")


class OrchestratorHttpClient:
    """Thin wrapper around `/provisioning/*` request/response endpoints.

    Every call returns the unwrapped ``data`` object of the orchestrator's
    envelope; rejections are raised as :class:`CommandRejected`.
    """

    def __init__(self, settings: Settings, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.api_base_url, timeout=settings.request_timeout_s
        )

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    # Sessions

    async def start_session(
        self, target_ssid: str, target_password: str, config: Optional[Dict[str, int]] = None
    ) -> SessionModel:
        payload: Dict[str, Any] = {"target_ssid": target_ssid, "target_password": target_password}
        if config:
            payload["config"] = config
        data = await self._request("POST", "/provisioning/batch/start", json=payload)
        return SessionModel.model_validate(data.get("session", data))

    async def get_session(self, session_id: str, *, include_devices: bool = True) -> SessionDataModel:
        data = await self._request(
            "GET",
            f"/provisioning/batch/{_seg(session_id)}",
            params={"include_devices": str(include_devices).lower()},
        )
        return SessionDataModel.model_validate(data)

    async def stop_session(self, session_id: str) -> SessionModel:
        return await self._session_action(session_id, "stop")

    async def pause_session(self, session_id: str) -> SessionModel:
        return await self._session_action(session_id, "pause")

    async def resume_session(self, session_id: str) -> SessionModel:
        return await self._session_action(session_id, "resume")

    async def _session_action(self, session_id: str, action: str) -> SessionModel:
        data = await self._request("POST", f"/provisioning/batch/{_seg(session_id)}/{action}")
        return SessionModel.model_validate(data.get("session", data))

    # Devices

    async def provision_device(self, session_id: str, mac: str) -> DeviceOperationModel:
        return await self._device_action(session_id, mac, "provision")

    async def retry_device(self, session_id: str, mac: str) -> DeviceOperationModel:
        return await self._device_action(session_id, mac, "retry")

    async def skip_device(self, session_id: str, mac: str) -> DeviceOperationModel:
        return await self._device_action(session_id, mac, "skip")

    async def _device_action(self, session_id: str, mac: str, action: str) -> DeviceOperationModel:
        data = await self._request(
            "POST",
            f"/provisioning/batch/{_seg(session_id)}/devices/{_seg(mac)}/{action}",
            json={"mac": mac},
        )
        data.setdefault("mac", mac)
        return DeviceOperationModel.model_validate(data)

    async def provision_all(self, session_id: str, *, only_allowlisted: bool = True) -> ProvisionAllModel:
        data = await self._request(
            "POST",
            f"/provisioning/batch/{_seg(session_id)}/provision-all",
            json={"confirm": True, "only_allowlisted": only_allowlisted},
        )
        return ProvisionAllModel.model_validate(data)

    async def network_status(self) -> NetworkStatusPayload:
        data = await self._request("GET", "/provisioning/network/status")
        return NetworkStatusPayload.model_validate(data)

    # Recovery

    async def list_recoverable(self) -> List[SessionModel]:
        data = await self._request("GET", "/provisioning/sessions/recoverable")
        return RecoverableSessionsModel.model_validate(data).sessions

    async def resume_recoverable(self, session_id: str) -> SessionDataModel:
        data = await self._request("POST", f"/provisioning/sessions/{_seg(session_id)}/resume")
        return SessionDataModel.model_validate(data)

    async def discard_recoverable(self, session_id: str) -> None:
        await self._request("DELETE", f"/provisioning/sessions/{_seg(session_id)}")

    async def session_history(self, limit: int = 10) -> List[SessionModel]:
        data = await self._request("GET", "/provisioning/sessions/history", params={"limit": limit})
        return RecoverableSessionsModel.model_validate(data).sessions

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("%s %s timed out", method, path)
            raise OrchestratorUnavailable(f"request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise OrchestratorUnavailable(f"transport error: {exc}") from exc

        body = self._decode(resp)
        correlation_id = body.get("correlation_id") if isinstance(body, dict) else None

        if resp.is_success and not (isinstance(body, dict) and body.get("success") is False):
            if isinstance(body, dict) and "success" in body:
                data = body.get("data")
                return dict(data) if isinstance(data, dict) else {}
            return dict(body) if isinstance(body, dict) else {}

        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            error = {}
        if resp.status_code >= 500 and not error:
            raise OrchestratorUnavailable(
                f"orchestrator returned {resp.status_code}", status=resp.status_code, correlation_id=correlation_id
            )
        code = str(error.get("code") or _status_code_name(resp.status_code))
        message = error.get("message")
        if not message and isinstance(body, dict) and isinstance(body.get("detail"), str):
            message = body["detail"]
        logger.info("%s %s rejected: %s (%s)", method, path, code, resp.status_code)
        raise CommandRejected(
            code,
            message,
            status=resp.status_code,
            retryable=bool(error.get("retryable", resp.status_code >= 500)),
            retry_after_seconds=error.get("retry_after_seconds"),
            correlation_id=correlation_id,
            details=error.get("details"),
        )

    @staticmethod
    def _decode(resp: httpx.Response) -> Any:
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            content_type = resp.headers.get("content-type", "")
            logger.error("Expected JSON from %s but received %s", resp.request.url, content_type or "unknown")
            return {}

    async def aclose(self) -> None:
        await self._client.aclose()


def _status_code_name(status: int) -> str:
    if status == 404:
        return "SESSION_NOT_FOUND"
    if status == 410:
        return "SESSION_EXPIRED"
    if status == 409:
        return "SESSION_INVALID_STATE"
    if status == 422 or status == 400:
        return "VALIDATION_FAILED"
    if status == 429:
        return "RATE_LIMITED"
    if status in (401, 403):
        return "UNAUTHORIZED"
    if status >= 500:
        return "INTERNAL_ERROR"
    return "INVALID_REQUEST"


__all__ = ["OrchestratorHttpClient"]
