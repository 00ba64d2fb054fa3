"""
Sync coordinator — owns batch-pass exclusion, pass accounting, health,
and the service lifecycle.

Only one reconciliation pass (full or catch-up) runs at a time.  A
scheduled trigger that finds a pass still in flight is skipped, not
queued; the scheduler simply tries again one interval later.  The
real-time listener is never excluded: both paths write idempotent
upserts, so interleaving is safe.

Lifecycle (``setup``)::

    full pass -> start change feed -> verify -> scheduler loop

``shutdown`` stops new passes, waits (bounded) for the in-flight one,
stops the listener, flushes the error log, and closes both pools.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shared.errorlog import SyncErrorLogger
from usersync.errors import ErrorType, SyncPassError
from usersync.gateway import UserGateway
from usersync.listener import ChangeFeedListener
from usersync.reconciler import BatchReconciler, BatchResult, lookback_since
from usersync.state import EngineState, ListenerStatus

logger = logging.getLogger("usersync.coordinator")


class SyncCoordinator:
    """Runs reconciliation passes and the scheduled loop around them.

    Args:
        gateway: Store access (counts for verification, pool shutdown).
        reconciler: Full / catch-up pass implementation.
        state: Shared engine state.
        error_log: Sync error sink.
        listener: Change feed listener, or ``None`` for batch-only use.
        interval_minutes: Scheduled pass interval.
        lookback_multiplier: Catch-up window as a multiple of the interval.
        shutdown_timeout: Seconds to wait for an in-flight pass on shutdown.
        overrun_warning_ratio: Warn when a pass takes longer than this
            fraction of the interval.
        verify_tolerance: Max source/chat count difference still
            considered consistent.
        max_consecutive_failures: Health threshold for failed passes.
        max_sync_age_minutes: Health threshold for time since the last
            successful pass (defaults to three intervals).
        sleep: Scheduler tick sleep (injectable for tests).
    """

    def __init__(
        self,
        gateway: UserGateway,
        reconciler: BatchReconciler,
        state: EngineState,
        error_log: SyncErrorLogger,
        listener: Optional[ChangeFeedListener] = None,
        interval_minutes: float = 5,
        lookback_multiplier: float = 3,
        shutdown_timeout: float = 30.0,
        overrun_warning_ratio: float = 0.8,
        verify_tolerance: int = 5,
        max_consecutive_failures: int = 3,
        max_sync_age_minutes: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.gateway = gateway
        self.reconciler = reconciler
        self.state = state
        self.error_log = error_log
        self.listener = listener
        self.interval_minutes = interval_minutes
        self.lookback_multiplier = max(1.0, float(lookback_multiplier))
        self.shutdown_timeout = shutdown_timeout
        self.overrun_warning_ratio = overrun_warning_ratio
        self.verify_tolerance = verify_tolerance
        self.max_consecutive_failures = max_consecutive_failures
        self.max_sync_age_minutes = (
            max_sync_age_minutes
            if max_sync_age_minutes is not None
            else interval_minutes * 3
        )
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._pass_task: asyncio.Task[Any] | None = None
        self._scheduled_task: asyncio.Task[Any] | None = None
        self._fatal_error: BaseException | None = None
        self._last_result: BatchResult | None = None
        self._stopping = False
        self._closed = False

    @property
    def interval_seconds(self) -> float:
        return float(self.interval_minutes) * 60.0

    @property
    def fatal_error(self) -> BaseException | None:
        """Unexpected exception that escaped a scheduled pass, if any."""
        return self._fatal_error

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def run_full_pass(self) -> Optional[BatchResult]:
        """Replay every eligible user.  ``None`` if skipped or aborted."""
        logger.info("Starting full sync of all active users")
        return await self._spawn(
            self._run_exclusive("full", self.reconciler.run_full, ErrorType.FULL_SYNC_FAILED)
        )

    async def run_catch_up_pass(
        self, since: Optional[datetime] = None
    ) -> Optional[BatchResult]:
        """Replay users changed inside the lookback window (or after ``since``)."""
        if since is None:
            since = lookback_since(self.interval_minutes, self.lookback_multiplier)
        return await self._spawn(
            self._run_exclusive(
                "catch-up",
                lambda: self.reconciler.run_catch_up(since),
                ErrorType.BULK_SYNC_FAILED,
                since=since,
            )
        )

    @staticmethod
    async def _spawn(coro: Awaitable[Any]) -> Any:
        # Own task, so shutdown can cancel the pass without cancelling the caller.
        return await asyncio.ensure_future(coro)

    async def _run_exclusive(
        self,
        kind: str,
        runner: Callable[[], Awaitable[BatchResult]],
        error_type: ErrorType,
        since: Optional[datetime] = None,
    ) -> Optional[BatchResult]:
        if self._lock.locked():
            logger.warning("Previous batch sync still running; skipping %s pass", kind)
            return None

        async with self._lock:
            self._pass_task = asyncio.current_task()
            self.state.set_batch_in_progress(True)
            start = time.monotonic()
            try:
                result = await runner()
            except SyncPassError as exc:
                streak = self.state.pass_failed(time.monotonic() - start)
                logger.error(
                    "%s sync pass aborted (consecutive failures: %d): %s",
                    kind.capitalize(),
                    streak,
                    exc,
                )
                context = exc.context()
                if since is not None:
                    context.setdefault("since", since.isoformat())
                await self.error_log.record_exception(error_type, exc, context=context)
                return None
            finally:
                self.state.set_batch_in_progress(False)
                self._pass_task = None

        self._account(result)
        return result

    def _account(self, result: BatchResult) -> None:
        self._last_result = result
        if result.synced == 0 and result.failed > 0:
            streak = self.state.pass_failed(result.duration)
            logger.warning(
                "%s sync made no progress: %d errors (consecutive failures: %d)",
                result.kind.capitalize(),
                result.failed,
                streak,
            )
        else:
            self.state.pass_succeeded(result.duration)
            logger.info(
                "%s sync completed: %d processed, %d synced, %d errors in %.2fs",
                result.kind.capitalize(),
                result.processed,
                result.synced,
                result.failed,
                result.duration,
            )
        self.check_overrun(result.duration)

    def check_overrun(self, duration: float) -> bool:
        """Warn when a pass used more than the allowed share of the interval."""
        limit = self.interval_seconds * self.overrun_warning_ratio
        if limit > 0 and duration > limit:
            logger.warning(
                "Sync took %.1fs, %.0f%% of the %s-minute interval. "
                "Consider widening the interval or optimizing the queries.",
                duration,
                duration / self.interval_seconds * 100,
                self.interval_minutes,
            )
            return True
        return False

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def trigger_scheduled_pass(self) -> bool:
        """Start a catch-up pass in the background unless one is running.

        Returns:
            ``True`` if a pass was started.
        """
        if self._stopping:
            return False
        if self._lock.locked():
            logger.warning(
                "Previous batch sync still running; skipping this cycle "
                "(next attempt in %s minute(s))",
                self.interval_minutes,
            )
            return False
        task = asyncio.create_task(
            self.run_catch_up_pass(), name="user-sync-scheduled-pass"
        )
        task.add_done_callback(self._on_scheduled_done)
        self._scheduled_task = task
        return True

    def _on_scheduled_done(self, task: asyncio.Task[Any]) -> None:
        if self._scheduled_task is task:
            self._scheduled_task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Unexpected error in scheduled sync pass", exc_info=exc)
            self._fatal_error = exc
            return
        self.report_health()

    async def run_scheduler(self, should_stop: Callable[[], bool]) -> None:
        """Trigger a catch-up pass every interval until ``should_stop()``.

        Raises:
            BaseException: The fatal error of a scheduled pass, if one
                escaped the pass boundary.
        """
        logger.info("Scheduled sync every %s minute(s)", self.interval_minutes)
        while True:
            if await self._wait_interval(should_stop):
                return
            self.trigger_scheduled_pass()

    async def _wait_interval(self, should_stop: Callable[[], bool]) -> bool:
        """Sleep one interval in short ticks.  ``True`` means stop."""
        remaining = self.interval_seconds
        while True:
            if self._fatal_error is not None:
                raise self._fatal_error
            if self._stopping or should_stop():
                return True
            if remaining <= 0:
                return False
            tick = min(0.5, remaining)
            await self._sleep(tick)
            remaining -= tick

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def setup(self) -> None:
        """Initial full pass, then start the change feed."""
        logger.info("Setting up user table sync")
        await self.run_full_pass()
        if self._stopping:
            return
        if self.listener is not None:
            self.listener.start()

    async def run(self, should_stop: Callable[[], bool]) -> None:
        """Full lifecycle: setup, verify, then the scheduled loop."""
        await self.setup()
        if self._stopping or should_stop():
            return
        result = await self.verify_status()
        if "error" not in result:
            logger.info(
                "Sync status: source=%d chat=%d difference=%d consistent=%s",
                result["source_count"],
                result["chat_count"],
                result["difference"],
                result["consistent"],
            )
        logger.info("User table sync is running")
        self.report_health()
        await self.run_scheduler(should_stop)

    async def shutdown(self) -> None:
        """Stop scheduling, drain the in-flight pass, release everything."""
        if self._closed:
            return
        self._closed = True
        self._stopping = True
        logger.info("Shutting down sync service...")

        task = self._pass_task
        if task is not None and not task.done():
            logger.info(
                "Waiting up to %.0fs for the in-flight sync pass", self.shutdown_timeout
            )
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self.shutdown_timeout)
            except asyncio.TimeoutError:
                logger.warning("In-flight sync pass did not finish in time; cancelling")
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception:
                    logger.debug("Cancelled pass raised during shutdown", exc_info=True)
            except Exception:
                logger.exception("In-flight sync pass failed during shutdown")

        if self.listener is not None:
            try:
                await self.listener.stop()
            except Exception:
                logger.exception("Failed to stop real-time listener")

        try:
            await self.error_log.close()
        except Exception:
            logger.exception("Failed to flush/close sync error log")

        await self.gateway.close()
        logger.info("Final stats: %s", self.status())

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def health(self) -> Dict[str, Any]:
        """Healthy only when all three signals pass; hints for each failure."""
        snap = self.state.snapshot()
        age = self.state.seconds_since_last_sync()
        max_age_seconds = float(self.max_sync_age_minutes) * 60.0
        issues: List[str] = []

        failures_ok = snap.consecutive_failures < self.max_consecutive_failures
        if not failures_ok:
            issues.append(
                f"{snap.consecutive_failures} consecutive sync failures; "
                "check database connectivity and the sync_errors table"
            )

        recent_ok = age is not None and age <= max_age_seconds
        if age is None:
            issues.append("No successful sync yet; the initial full sync may still be running")
        elif not recent_ok:
            issues.append(
                f"Last successful sync was {age / 60:.1f} minutes ago "
                f"(limit {self.max_sync_age_minutes} minutes); check the scheduler"
            )

        listening = snap.listener_status == ListenerStatus.LISTENING
        if not listening:
            if snap.listener_status == ListenerStatus.GIVEN_UP:
                issues.append(
                    "Real-time sync gave up reconnecting; restart the service "
                    "after fixing source database connectivity"
                )
            else:
                issues.append(
                    f"Real-time sync is {snap.listener_status.value}; "
                    "changes are only picked up by scheduled passes"
                )

        return {
            "healthy": failures_ok and recent_ok and listening,
            "checks": {
                "consecutive_failures": failures_ok,
                "recent_sync": recent_ok,
                "realtime_listening": listening,
            },
            "issues": issues,
        }

    def report_health(self) -> Dict[str, Any]:
        """Evaluate :meth:`health` and log every issue when unhealthy."""
        report = self.health()
        if report["healthy"]:
            logger.debug("Health check passed")
        else:
            for issue in report["issues"]:
                logger.warning("Health check: %s", issue)
        return report

    def status(self) -> Dict[str, Any]:
        snap = self.state.snapshot()
        age = self.state.seconds_since_last_sync()
        last = self._last_result
        data = snap.to_dict()
        data.update(
            {
                "is_realtime_active": snap.listener_status == ListenerStatus.LISTENING,
                "seconds_since_last_sync": round(age, 1) if age is not None else None,
                "interval_minutes": self.interval_minutes,
                "last_pass": last.to_dict() if last is not None else None,
            }
        )
        return data

    async def verify_status(self, tolerance: Optional[int] = None) -> Dict[str, Any]:
        """Compare active source users with chat users.

        Returns:
            ``source_count``, ``chat_count``, ``difference``,
            ``recent_difference`` (last hour) and ``consistent``; or
            ``{"error": message}`` when a count query fails.
        """
        tolerance = self.verify_tolerance if tolerance is None else tolerance
        try:
            source_count = await self.gateway.count_eligible()
            chat_count = await self.gateway.count_destination()
            recent_source = await self.gateway.count_recent_source(hours=1)
            recent_chat = await self.gateway.count_recent_destination(hours=1)
        except Exception as exc:
            logger.error("Sync verification failed: %s", exc)
            await self.error_log.record_exception(ErrorType.VERIFY_FAILED, exc)
            return {"error": str(exc)}

        difference = abs(source_count - chat_count)
        return {
            "source_count": source_count,
            "chat_count": chat_count,
            "difference": difference,
            "recent_difference": abs(recent_source - recent_chat),
            "consistent": difference <= tolerance,
        }
