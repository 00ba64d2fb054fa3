"""
Error classification tags and engine exceptions.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from shared.retry import RetryExhaustedError

__all__ = [
    "ErrorType",
    "NotificationDecodeError",
    "RetryExhaustedError",
    "SyncPassError",
    "retry_count_of",
]


class ErrorType(str, Enum):
    """Tag stored in ``sync_errors.error_type``."""

    SYNC_USER_FAILED = "SYNC_USER_FAILED"
    DELETE_USER_FAILED = "DELETE_USER_FAILED"
    BULK_SYNC_FAILED = "BULK_SYNC_FAILED"
    FULL_SYNC_FAILED = "FULL_SYNC_FAILED"
    REALTIME_SYNC_START_FAILED = "REALTIME_SYNC_START_FAILED"
    REALTIME_NOTIFICATION_FAILED = "REALTIME_NOTIFICATION_FAILED"
    REALTIME_RECONNECT_EXHAUSTED = "REALTIME_RECONNECT_EXHAUSTED"
    POOL_ERROR = "POOL_ERROR"
    VERIFY_FAILED = "VERIFY_FAILED"
    UNCAUGHT_EXCEPTION = "UNCAUGHT_EXCEPTION"


class SyncPassError(Exception):
    """A reconciliation pass was aborted by a pass-level query failure.

    Records already processed before the failure stay synced; the
    partial counts are carried so the coordinator can account for them.
    """

    def __init__(
        self,
        message: str,
        *,
        offset: int = 0,
        synced: int = 0,
        failed: int = 0,
        since: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.offset = offset
        self.synced = synced
        self.failed = failed
        self.since = since

    def context(self) -> dict:
        ctx = {"offset": self.offset, "synced": self.synced, "failed": self.failed}
        if self.since is not None:
            ctx["since"] = self.since
        return ctx


class NotificationDecodeError(ValueError):
    """A change-feed payload could not be decoded into an event."""

    def __init__(self, message: str, payload: str) -> None:
        super().__init__(message)
        self.payload = payload


def retry_count_of(exc: BaseException) -> int:
    """Retries spent before ``exc`` was raised (0 for non-retried errors)."""
    if isinstance(exc, RetryExhaustedError):
        return max(0, exc.attempts - 1)
    return 0
