"""
Process-lifetime engine state: counters, timestamps, and listener status.

One :class:`EngineState` is created per process and passed explicitly to
every component.  It is not persisted; the chat ``users`` table itself is
the durable state, so a restart only loses statistics.

Counters are advisory monitoring data.  A ``threading.Lock`` keeps each
update atomic because the metrics HTTP server reads them from its own
thread.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ListenerStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    LISTENING = "listening"
    RECONNECTING = "reconnecting"
    GIVEN_UP = "given_up"


@dataclass(frozen=True, slots=True)
class StateSnapshot:
    total_synced: int
    total_errors: int
    consecutive_failures: int
    last_sync_time: Optional[datetime]
    last_sync_duration: Optional[float]
    batch_in_progress: bool
    listener_status: ListenerStatus
    reconnect_attempts: int
    started_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_synced": self.total_synced,
            "total_errors": self.total_errors,
            "consecutive_failures": self.consecutive_failures,
            "last_sync_time": self.last_sync_time.isoformat() if self.last_sync_time else None,
            "last_sync_duration_seconds": (
                round(self.last_sync_duration, 3)
                if self.last_sync_duration is not None
                else None
            ),
            "batch_in_progress": self.batch_in_progress,
            "listener_status": self.listener_status.value,
            "reconnect_attempts": self.reconnect_attempts,
            "started_at": self.started_at.isoformat(),
        }


class EngineState:
    """Thread-safe counters shared by the real-time and batch paths."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total_synced = 0
        self._total_errors = 0
        self._consecutive_failures = 0
        self._last_sync_time: Optional[datetime] = None
        self._last_sync_monotonic: Optional[float] = None
        self._last_sync_duration: Optional[float] = None
        self._batch_in_progress = False
        self._listener_status = ListenerStatus.DISCONNECTED
        self._reconnect_attempts = 0
        self._started_at = datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # Per-record accounting
    # ------------------------------------------------------------------

    def record_synced(self, count: int = 1) -> None:
        with self._lock:
            self._total_synced += count

    def record_errors(self, count: int = 1) -> None:
        with self._lock:
            self._total_errors += count

    # ------------------------------------------------------------------
    # Pass accounting
    # ------------------------------------------------------------------

    def pass_succeeded(self, duration: float) -> None:
        """A pass ran to completion (possibly with per-record failures)."""
        with self._lock:
            self._consecutive_failures = 0
            self._last_sync_time = datetime.now(timezone.utc)
            self._last_sync_monotonic = time.monotonic()
            self._last_sync_duration = duration

    def pass_failed(self, duration: Optional[float] = None) -> int:
        """A pass aborted or made no progress.  Returns the new streak."""
        with self._lock:
            self._consecutive_failures += 1
            if duration is not None:
                self._last_sync_duration = duration
            return self._consecutive_failures

    def set_batch_in_progress(self, value: bool) -> None:
        with self._lock:
            self._batch_in_progress = value

    # ------------------------------------------------------------------
    # Listener
    # ------------------------------------------------------------------

    def set_listener_status(self, status: ListenerStatus) -> None:
        with self._lock:
            self._listener_status = status

    def next_reconnect_attempt(self) -> int:
        with self._lock:
            self._reconnect_attempts += 1
            return self._reconnect_attempts

    def reset_reconnect_attempts(self) -> None:
        with self._lock:
            self._reconnect_attempts = 0

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    @property
    def listener_status(self) -> ListenerStatus:
        with self._lock:
            return self._listener_status

    @property
    def batch_in_progress(self) -> bool:
        with self._lock:
            return self._batch_in_progress

    def seconds_since_last_sync(self) -> Optional[float]:
        with self._lock:
            if self._last_sync_monotonic is None:
                return None
            return max(0.0, time.monotonic() - self._last_sync_monotonic)

    def snapshot(self) -> StateSnapshot:
        with self._lock:
            return StateSnapshot(
                total_synced=self._total_synced,
                total_errors=self._total_errors,
                consecutive_failures=self._consecutive_failures,
                last_sync_time=self._last_sync_time,
                last_sync_duration=self._last_sync_duration,
                batch_in_progress=self._batch_in_progress,
                listener_status=self._listener_status,
                reconnect_attempts=self._reconnect_attempts,
                started_at=self._started_at,
            )
