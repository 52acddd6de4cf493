"""Error types and operator-facing messages for provisioning commands."""
from __future__ import annotations

from typing import Dict, Optional

ERROR_MESSAGES: Dict[str, str] = {
    # Session
    "SESSION_NOT_FOUND": "The provisioning session was not found. It may have expired.",
    "SESSION_EXPIRED": "The session has expired. Please start a new session.",
    "SESSION_ALREADY_ACTIVE": "Another provisioning session is already running.",
    "SESSION_ALREADY_CLOSED": "This session has already been closed.",
    "SESSION_NOT_RECOVERABLE": "This session cannot be recovered. Please start a new session.",
    "SESSION_NOT_ACTIVE": "There is no open provisioning session.",
    "SESSION_INVALID_STATE": "The session cannot do that in its current state.",
    # Device
    "DEVICE_NOT_FOUND": "The device was not found in this session.",
    "DEVICE_NOT_IN_ALLOWLIST": "This device is not approved for provisioning. Add it to the allowlist first.",
    "DEVICE_ALREADY_PROVISIONING": "This device is already being provisioned.",
    "DEVICE_INVALID_STATE": "Cannot perform this action on the device in its current state.",
    "NO_ELIGIBLE_DEVICES": "No allowlisted devices are waiting to be provisioned.",
    "MAX_RETRIES_EXCEEDED": "Maximum retry attempts reached. Please try again later.",
    # Transport
    "RATE_LIMITED": "Too many requests. Please wait before trying again.",
    "UNAUTHORIZED": "The orchestrator refused the request. Check the controller credentials.",
    "NETWORK_ERROR": "Network unavailable. Check your connection.",
    "INTERNAL_ERROR": "An internal error occurred. Please try again or contact support.",
    "CIRCUIT_OPEN": "Service temporarily unavailable. The system is recovering from errors.",
    # Validation
    "VALIDATION_FAILED": "Invalid input. Please check your data and try again.",
    "INVALID_REQUEST": "The request was invalid. Please check your input.",
}

GENERIC_MESSAGE = "An unexpected error occurred. Please try again."

VALIDATION_CODES = frozenset({"VALIDATION_FAILED", "INVALID_REQUEST", "MISSING_PARAMETER"})
STALE_SESSION_CODES = frozenset(
    {"SESSION_NOT_FOUND", "SESSION_EXPIRED", "SESSION_NOT_RECOVERABLE", "SESSION_ALREADY_CLOSED"}
)


def get_user_message(code: str) -> str:
    return ERROR_MESSAGES.get(code, GENERIC_MESSAGE)


class ProvisioningError(Exception):
    """Base class for every error raised by the provisioning engine."""


class CommandRejected(ProvisioningError):
    """A command was refused, either locally by a guard or by the orchestrator."""

    def __init__(
        self,
        code: str,
        message: Optional[str] = None,
        *,
        status: Optional[int] = None,
        retryable: bool = False,
        retry_after_seconds: Optional[float] = None,
        correlation_id: Optional[str] = None,
        details: Optional[str] = None,
    ) -> None:
        super().__init__(message or get_user_message(code))
        self.code = code
        self.status = status
        self.retryable = retryable
        self.retry_after_seconds = retry_after_seconds
        self.correlation_id = correlation_id
        self.details = details

    @property
    def local(self) -> bool:
        """True when the guard fired before any request was sent."""

        return self.status is None

    @property
    def is_stale_session(self) -> bool:
        return self.code in STALE_SESSION_CODES or self.status in (404, 410)

    @property
    def user_message(self) -> str:
        if self.code in ERROR_MESSAGES:
            return ERROR_MESSAGES[self.code]
        return str(self) or GENERIC_MESSAGE

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"code": self.code, "message": self.user_message}
        if self.correlation_id:
            payload["correlation_id"] = self.correlation_id
        if self.retry_after_seconds is not None:
            payload["retry_after_seconds"] = self.retry_after_seconds
        return payload


class OrchestratorUnavailable(CommandRejected):
    """Transport failure or 5xx; the command may succeed if retried later."""

    def __init__(self, message: str, *, status: Optional[int] = None, correlation_id: Optional[str] = None) -> None:
        super().__init__(
            "NETWORK_ERROR" if status is None else "INTERNAL_ERROR",
            message,
            status=status,
            retryable=True,
            correlation_id=correlation_id,
        )

    @property
    def local(self) -> bool:
        return False


class StaleSessionError(ProvisioningError):
    """The orchestrator no longer knows a locally recorded session."""

    def __init__(self, session_id: str, reason: str = "SESSION_NOT_FOUND") -> None:
        super().__init__(f"Session {session_id} could not be resumed ({reason})")
        self.session_id = session_id
        self.reason = reason

    @property
    def user_message(self) -> str:
        return (
            "The interrupted session is no longer available on the orchestrator "
            "and has been removed from this dashboard."
        )


__all__ = [
    "ERROR_MESSAGES",
    "STALE_SESSION_CODES",
    "VALIDATION_CODES",
    "CommandRejected",
    "OrchestratorUnavailable",
    "ProvisioningError",
    "StaleSessionError",
    "get_user_message",
]
