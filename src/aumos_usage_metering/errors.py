"""Error taxonomy for the usage metering service.

Ledger and aggregation errors are raised synchronously to callers.
Sync errors never leave the reconciler; they are recorded on the event.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Machine-readable error codes surfaced to API clients."""

    INVALID_EVENT = "INVALID_EVENT"
    STORAGE_FAILURE = "STORAGE_FAILURE"
    NOT_FOUND = "NOT_FOUND"
    SYNC_TRANSIENT = "SYNC_TRANSIENT"
    SYNC_PERMANENT = "SYNC_PERMANENT"


class MeteringError(Exception):
    """Base class for all usage metering errors."""

    default_code: ErrorCode = ErrorCode.STORAGE_FAILURE

    def __init__(self, message: str, error_code: ErrorCode | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code


class InvalidEventError(MeteringError):
    """Usage event rejected before persistence (unknown kind, bad quantity)."""

    default_code = ErrorCode.INVALID_EVENT


class StorageFailureError(MeteringError):
    """The local ledger write failed; the billable action did not happen."""

    default_code = ErrorCode.STORAGE_FAILURE


class NotFoundError(MeteringError):
    """A requested ledger entry or account does not exist."""

    default_code = ErrorCode.NOT_FOUND


class SyncError(MeteringError):
    """Submitting a usage event to the billing provider failed."""

    default_code = ErrorCode.SYNC_TRANSIENT

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: ErrorCode | None = None,
    ) -> None:
        super().__init__(message, error_code)
        self.status_code = status_code


class TransientSyncError(SyncError):
    """Network error, timeout, or provider 5xx. Retried with backoff."""

    default_code = ErrorCode.SYNC_TRANSIENT


class PermanentSyncError(SyncError):
    """Provider rejected the payload (4xx). Dead-lettered, never retried."""

    default_code = ErrorCode.SYNC_PERMANENT


__all__ = [
    "ErrorCode",
    "InvalidEventError",
    "MeteringError",
    "NotFoundError",
    "PermanentSyncError",
    "StorageFailureError",
    "SyncError",
    "TransientSyncError",
]
