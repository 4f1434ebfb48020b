"""
Metering Error Kinds

Every error raised by the engine carries a stable ErrorKind so callers
(the API layer, the CLI, a UI) can branch without matching on strings.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Stable error kinds surfaced to callers."""
    ACCRUAL = "ACCRUAL"  # Tick arithmetic failed (fatal)
    SETTLEMENT_FAILURE = "SETTLEMENT_FAILURE"  # Gateway rejected / timed out
    CHECKPOINT_PERSISTENCE = "CHECKPOINT_PERSISTENCE"  # Durable store read/write failed
    RECOVERY_DATA_CORRUPTION = "RECOVERY_DATA_CORRUPTION"  # Stored checkpoint is invalid
    INVALID_STATE = "INVALID_STATE"  # Operation not valid in current status
    ACCESS_DENIED = "ACCESS_DENIED"  # Viewer has no access to the content
    CONTENT_NOT_FOUND = "CONTENT_NOT_FOUND"  # Catalog has no rate for the content


class MeteringError(Exception):
    """Base exception for all metering engine errors."""

    kind: ErrorKind = ErrorKind.INVALID_STATE
    default_user_message = "Streaming session error"

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or self.default_user_message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "user_message": self.user_message,
        }


class AccrualError(MeteringError):
    """Raised when tick arithmetic overflows or the rate is invalid."""

    kind = ErrorKind.ACCRUAL
    default_user_message = "Metering stopped due to an internal error"


class SettlementFailure(MeteringError):
    """
    Raised when the payment gateway reports failure or times out.

    The pending amount is never touched on failure; `attempt` carries the
    snapshot that was being settled.
    """

    kind = ErrorKind.SETTLEMENT_FAILURE
    default_user_message = "Streaming payment failed"

    def __init__(
        self,
        message: str,
        attempt: Any = None,
        user_message: Optional[str] = None,
    ):
        super().__init__(message, user_message)
        self.attempt = attempt

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.attempt is not None:
            data["amount"] = self.attempt.amount
            data["attempt_id"] = self.attempt.attempt_id
        return data


class CheckpointPersistenceFailure(MeteringError):
    """Raised when the durable checkpoint store cannot be read or written."""

    kind = ErrorKind.CHECKPOINT_PERSISTENCE
    default_user_message = "Progress could not be saved"


class RecoveryDataCorruption(MeteringError):
    """Raised when a stored checkpoint fails to parse or validate."""

    kind = ErrorKind.RECOVERY_DATA_CORRUPTION
    default_user_message = "Saved progress is unreadable"


class InvalidTransition(MeteringError):
    """Raised when an operation is not valid from the current session status."""

    kind = ErrorKind.INVALID_STATE

    def __init__(self, operation: str, status: Any):
        self.operation = operation
        self.status = status
        status_value = getattr(status, "value", status)
        super().__init__(
            f"Cannot {operation} from status {status_value}",
            user_message=f"Cannot {operation} right now",
        )


class AccessDenied(MeteringError):
    """Raised when the viewer may not stream the requested content."""

    kind = ErrorKind.ACCESS_DENIED
    default_user_message = "Access denied"

    def __init__(self, content_id: str, viewer: Optional[str]):
        self.content_id = content_id
        self.viewer = viewer
        super().__init__(f"Viewer {viewer!r} has no access to content {content_id!r}")


class UnknownContent(MeteringError):
    """Raised when the catalog has no rate for the requested content."""

    kind = ErrorKind.CONTENT_NOT_FOUND
    default_user_message = "Content not found"

    def __init__(self, content_id: str):
        self.content_id = content_id
        super().__init__(f"No catalog entry for content {content_id!r}")
