"""
Unit tests for usersync.coordinator.SyncCoordinator.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from usersync.coordinator import SyncCoordinator
from usersync.errors import ErrorType, SyncPassError
from usersync.reconciler import BatchResult
from usersync.state import EngineState, ListenerStatus


def _coordinator(reconciler=None, gateway=None, listener=None, **kwargs):
    gateway = gateway or MagicMock()
    gateway.close = AsyncMock()
    reconciler = reconciler or MagicMock()
    state = EngineState()
    error_log = AsyncMock()
    coordinator = SyncCoordinator(
        gateway,
        reconciler,
        state,
        error_log,
        listener=listener,
        sleep=_tick,
        **kwargs,
    )
    return coordinator, state, error_log


async def _tick(seconds):
    # Yield to the loop without waiting out the scheduler interval
    await asyncio.sleep(0)


async def _wait_for(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0)


def _counts_gateway(source, chat, recent_source=10, recent_chat=10):
    gateway = MagicMock()
    gateway.count_eligible = AsyncMock(return_value=source)
    gateway.count_destination = AsyncMock(return_value=chat)
    gateway.count_recent_source = AsyncMock(return_value=recent_source)
    gateway.count_recent_destination = AsyncMock(return_value=recent_chat)
    return gateway


# ---------------------------------------------------------------------------
# Mutual exclusion
# ---------------------------------------------------------------------------


class TestNoOverlap:
    @pytest.mark.asyncio
    async def test_second_trigger_skipped_while_pass_running(self):
        release = asyncio.Event()

        async def slow_catch_up(since):
            await release.wait()
            return BatchResult(kind="catch-up", synced=1)

        reconciler = MagicMock()
        reconciler.run_catch_up = AsyncMock(side_effect=slow_catch_up)
        coordinator, state, _ = _coordinator(reconciler)

        assert coordinator.trigger_scheduled_pass() is True
        await _wait_for(lambda: state.batch_in_progress)

        # Next interval fires while the first pass is still running
        assert coordinator.trigger_scheduled_pass() is False
        assert await coordinator.run_catch_up_pass() is None

        release.set()
        await _wait_for(lambda: not state.batch_in_progress)
        assert reconciler.run_catch_up.await_count == 1

        # Mutex released: the next trigger runs again
        assert coordinator.trigger_scheduled_pass() is True
        await _wait_for(lambda: reconciler.run_catch_up.await_count == 2)
        await coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_full_and_catch_up_exclude_each_other(self):
        release = asyncio.Event()

        async def slow_full():
            await release.wait()
            return BatchResult(kind="full", synced=3)

        reconciler = MagicMock()
        reconciler.run_full = AsyncMock(side_effect=slow_full)
        reconciler.run_catch_up = AsyncMock()
        coordinator, state, _ = _coordinator(reconciler)

        full = asyncio.create_task(coordinator.run_full_pass())
        await _wait_for(lambda: state.batch_in_progress)
        assert await coordinator.run_catch_up_pass() is None
        release.set()

        assert (await full).synced == 3
        reconciler.run_catch_up.assert_not_awaited()


# ---------------------------------------------------------------------------
# Pass accounting
# ---------------------------------------------------------------------------


class TestPassAccounting:
    @pytest.mark.asyncio
    async def test_success_resets_failures(self):
        reconciler = MagicMock()
        reconciler.run_catch_up = AsyncMock(
            return_value=BatchResult(kind="catch-up", synced=10, failed=2, duration=1.5)
        )
        coordinator, state, _ = _coordinator(reconciler)
        state.pass_failed()

        result = await coordinator.run_catch_up_pass()

        assert result.synced == 10
        snap = state.snapshot()
        assert snap.consecutive_failures == 0
        assert snap.last_sync_time is not None
        assert snap.last_sync_duration == 1.5
        assert snap.batch_in_progress is False

    @pytest.mark.asyncio
    async def test_all_failed_pass_counts_as_failure(self):
        reconciler = MagicMock()
        reconciler.run_catch_up = AsyncMock(
            return_value=BatchResult(kind="catch-up", synced=0, failed=4)
        )
        coordinator, state, _ = _coordinator(reconciler)

        await coordinator.run_catch_up_pass()

        assert state.snapshot().consecutive_failures == 1
        assert state.snapshot().last_sync_time is None

    @pytest.mark.asyncio
    async def test_empty_pass_is_success(self):
        reconciler = MagicMock()
        reconciler.run_catch_up = AsyncMock(return_value=BatchResult(kind="catch-up"))
        coordinator, state, _ = _coordinator(reconciler)

        await coordinator.run_catch_up_pass()

        assert state.snapshot().last_sync_time is not None

    @pytest.mark.asyncio
    async def test_aborted_catch_up_recorded_as_bulk_failure(self):
        reconciler = MagicMock()
        reconciler.run_catch_up = AsyncMock(
            side_effect=SyncPassError("page query failed", offset=500, synced=500)
        )
        coordinator, state, error_log = _coordinator(reconciler)

        assert await coordinator.run_catch_up_pass() is None

        call = error_log.record_exception.await_args
        assert call.args[0] == ErrorType.BULK_SYNC_FAILED
        assert call.kwargs["context"]["offset"] == 500
        assert "since" in call.kwargs["context"]
        assert state.snapshot().consecutive_failures == 1
        assert state.batch_in_progress is False

    @pytest.mark.asyncio
    async def test_aborted_full_pass_recorded(self):
        reconciler = MagicMock()
        reconciler.run_full = AsyncMock(side_effect=SyncPassError("count failed"))
        coordinator, _, error_log = _coordinator(reconciler)

        assert await coordinator.run_full_pass() is None
        assert error_log.record_exception.await_args.args[0] == ErrorType.FULL_SYNC_FAILED

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self):
        reconciler = MagicMock()
        reconciler.run_catch_up = AsyncMock(side_effect=KeyError("bug"))
        coordinator, state, _ = _coordinator(reconciler)

        with pytest.raises(KeyError):
            await coordinator.run_catch_up_pass()
        assert state.batch_in_progress is False

    @pytest.mark.asyncio
    async def test_catch_up_uses_lookback_window(self):
        reconciler = MagicMock()
        reconciler.run_catch_up = AsyncMock(return_value=BatchResult(kind="catch-up"))
        coordinator, _, _ = _coordinator(reconciler, interval_minutes=5, lookback_multiplier=3)

        before = datetime.now(timezone.utc)
        await coordinator.run_catch_up_pass()
        since = reconciler.run_catch_up.await_args.args[0]

        assert before - timedelta(minutes=15, seconds=5) <= since <= before - timedelta(minutes=14)


class TestOverrun:
    def test_warns_above_ratio(self, caplog):
        coordinator, _, _ = _coordinator(interval_minutes=1, overrun_warning_ratio=0.8)
        with caplog.at_level(logging.WARNING, logger="usersync.coordinator"):
            assert coordinator.check_overrun(49.0) is True
        assert "Consider widening the interval" in caplog.text

    def test_quiet_below_ratio(self):
        coordinator, _, _ = _coordinator(interval_minutes=1, overrun_warning_ratio=0.8)
        assert coordinator.check_overrun(47.0) is False


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class TestScheduler:
    @pytest.mark.asyncio
    async def test_stops_when_requested(self):
        coordinator, _, _ = _coordinator(interval_minutes=1)
        calls = {"n": 0}

        def should_stop():
            calls["n"] += 1
            return calls["n"] > 3

        await asyncio.wait_for(coordinator.run_scheduler(should_stop), timeout=1.0)

    @pytest.mark.asyncio
    async def test_triggers_each_interval(self):
        reconciler = MagicMock()
        reconciler.run_catch_up = AsyncMock(return_value=BatchResult(kind="catch-up"))
        coordinator, _, _ = _coordinator(reconciler, interval_minutes=0.01)

        await asyncio.wait_for(
            coordinator.run_scheduler(lambda: reconciler.run_catch_up.await_count >= 2),
            timeout=1.0,
        )
        assert reconciler.run_catch_up.await_count >= 2
        await coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_fatal_error_in_scheduled_pass_surfaces(self):
        reconciler = MagicMock()
        reconciler.run_catch_up = AsyncMock(side_effect=RuntimeError("corrupt state"))
        coordinator, _, _ = _coordinator(reconciler, interval_minutes=0.01)

        with pytest.raises(RuntimeError, match="corrupt state"):
            await asyncio.wait_for(coordinator.run_scheduler(lambda: False), timeout=1.0)
        assert isinstance(coordinator.fatal_error, RuntimeError)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class TestVerifyStatus:
    @pytest.mark.asyncio
    async def test_small_difference_is_consistent(self):
        coordinator, _, _ = _coordinator(gateway=_counts_gateway(1000, 996, 12, 11))

        result = await coordinator.verify_status()

        assert result == {
            "source_count": 1000,
            "chat_count": 996,
            "difference": 4,
            "recent_difference": 1,
            "consistent": True,
        }

    @pytest.mark.asyncio
    async def test_large_difference_is_inconsistent(self):
        coordinator, _, _ = _coordinator(gateway=_counts_gateway(1000, 940))

        result = await coordinator.verify_status()

        assert result["difference"] == 60
        assert result["consistent"] is False

    @pytest.mark.asyncio
    async def test_difference_is_absolute(self):
        coordinator, _, _ = _coordinator(gateway=_counts_gateway(990, 1000))
        result = await coordinator.verify_status()
        assert result["difference"] == 10
        assert result["consistent"] is False

    @pytest.mark.asyncio
    async def test_custom_tolerance(self):
        coordinator, _, _ = _coordinator(gateway=_counts_gateway(1000, 940))
        assert (await coordinator.verify_status(tolerance=100))["consistent"] is True

    @pytest.mark.asyncio
    async def test_query_failure_recorded(self):
        gateway = _counts_gateway(1000, 996)
        gateway.count_destination = AsyncMock(side_effect=ConnectionError("chat db down"))
        coordinator, _, error_log = _coordinator(gateway=gateway)

        result = await coordinator.verify_status()

        assert result == {"error": "chat db down"}
        assert error_log.record_exception.await_args.args[0] == ErrorType.VERIFY_FAILED


# ---------------------------------------------------------------------------
# Health and status
# ---------------------------------------------------------------------------


class TestHealth:
    def test_healthy(self):
        coordinator, state, _ = _coordinator()
        state.pass_succeeded(1.0)
        state.set_listener_status(ListenerStatus.LISTENING)

        health = coordinator.health()

        assert health["healthy"] is True
        assert health["issues"] == []
        assert all(health["checks"].values())

    def test_no_sync_yet(self):
        coordinator, state, _ = _coordinator()
        state.set_listener_status(ListenerStatus.LISTENING)

        health = coordinator.health()

        assert health["healthy"] is False
        assert health["checks"]["recent_sync"] is False
        assert "No successful sync yet" in health["issues"][0]

    def test_consecutive_failures(self):
        coordinator, state, _ = _coordinator(max_consecutive_failures=3)
        state.pass_succeeded(1.0)
        state.set_listener_status(ListenerStatus.LISTENING)
        for _ in range(3):
            state.pass_failed()

        health = coordinator.health()

        assert health["checks"]["consecutive_failures"] is False
        assert any("3 consecutive sync failures" in issue for issue in health["issues"])

    def test_stale_sync(self, monkeypatch):
        coordinator, state, _ = _coordinator(interval_minutes=5)
        state.pass_succeeded(1.0)
        state.set_listener_status(ListenerStatus.LISTENING)
        monkeypatch.setattr(state, "seconds_since_last_sync", lambda: 16 * 60.0)

        health = coordinator.health()

        assert health["checks"]["recent_sync"] is False
        assert "16.0 minutes ago" in health["issues"][0]

    def test_listener_given_up(self):
        coordinator, state, _ = _coordinator()
        state.pass_succeeded(1.0)
        state.set_listener_status(ListenerStatus.GIVEN_UP)

        health = coordinator.health()

        assert health["healthy"] is False
        assert health["checks"]["realtime_listening"] is False
        assert "gave up" in health["issues"][0]

    def test_status_includes_state(self):
        coordinator, state, _ = _coordinator()
        state.record_synced(7)
        state.set_listener_status(ListenerStatus.LISTENING)

        status = coordinator.status()

        assert status["total_synced"] == 7
        assert status["is_realtime_active"] is True
        assert status["seconds_since_last_sync"] is None
        assert status["listener_status"] == "listening"

    def test_report_health_logs_each_issue(self, caplog):
        coordinator, state, _ = _coordinator()
        state.set_listener_status(ListenerStatus.GIVEN_UP)

        with caplog.at_level(logging.WARNING, logger="usersync.coordinator"):
            report = coordinator.report_health()

        assert report["healthy"] is False
        messages = [r.getMessage() for r in caplog.records]
        assert any("No successful sync yet" in m for m in messages)
        assert any("gave up reconnecting" in m for m in messages)

    def test_report_health_quiet_when_healthy(self, caplog):
        coordinator, state, _ = _coordinator()
        state.pass_succeeded(1.0)
        state.set_listener_status(ListenerStatus.LISTENING)

        with caplog.at_level(logging.WARNING, logger="usersync.coordinator"):
            assert coordinator.report_health()["healthy"] is True

        assert caplog.records == []

    @pytest.mark.asyncio
    async def test_scheduled_pass_reports_health(self, caplog):
        reconciler = MagicMock()
        reconciler.run_catch_up = AsyncMock(
            return_value=BatchResult(kind="catch-up", synced=0, failed=4)
        )
        coordinator, state, _ = _coordinator(reconciler, max_consecutive_failures=1)
        state.set_listener_status(ListenerStatus.LISTENING)

        with caplog.at_level(logging.WARNING, logger="usersync.coordinator"):
            assert coordinator.trigger_scheduled_pass() is True
            await _wait_for(
                lambda: any("Health check:" in r.getMessage() for r in caplog.records)
            )

        messages = [r.getMessage() for r in caplog.records]
        assert any("1 consecutive sync failures" in m for m in messages)

    @pytest.mark.asyncio
    async def test_status_reports_last_pass(self):
        reconciler = MagicMock()
        reconciler.run_full = AsyncMock(
            return_value=BatchResult(kind="full", synced=8, failed=2, pages=1)
        )
        coordinator, _, _ = _coordinator(reconciler)
        assert coordinator.status()["last_pass"] is None

        await coordinator.run_full_pass()

        last = coordinator.status()["last_pass"]
        assert last["kind"] == "full"
        assert (last["synced"], last["failed"], last["pages"]) == (8, 2, 1)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_setup_runs_full_pass_before_listener(self):
        order = []
        reconciler = MagicMock()
        reconciler.run_full = AsyncMock(
            side_effect=lambda: order.append("full") or BatchResult(kind="full", synced=1)
        )
        listener = MagicMock()
        listener.start = MagicMock(side_effect=lambda: order.append("listener"))
        coordinator, _, _ = _coordinator(reconciler, listener=listener)

        await coordinator.setup()

        assert order == ["full", "listener"]

    @pytest.mark.asyncio
    async def test_setup_continues_after_failed_full_pass(self):
        reconciler = MagicMock()
        reconciler.run_full = AsyncMock(side_effect=SyncPassError("count failed"))
        listener = MagicMock()
        coordinator, _, _ = _coordinator(reconciler, listener=listener)

        await coordinator.setup()

        listener.start.assert_called_once()

    @pytest.mark.asyncio
    async def test_shutdown_releases_everything(self):
        listener = MagicMock()
        listener.stop = AsyncMock()
        coordinator, _, error_log = _coordinator(listener=listener)

        await coordinator.shutdown()
        await coordinator.shutdown()

        listener.stop.assert_awaited_once()
        error_log.close.assert_awaited_once()
        coordinator.gateway.close.assert_awaited_once()
        assert coordinator.trigger_scheduled_pass() is False

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_in_flight_pass(self):
        release = asyncio.Event()
        finished = []

        async def slow_catch_up(since):
            await release.wait()
            finished.append(True)
            return BatchResult(kind="catch-up", synced=1)

        reconciler = MagicMock()
        reconciler.run_catch_up = AsyncMock(side_effect=slow_catch_up)
        coordinator, state, _ = _coordinator(reconciler, shutdown_timeout=1.0)

        coordinator.trigger_scheduled_pass()
        await _wait_for(lambda: state.batch_in_progress)
        asyncio.get_running_loop().call_soon(release.set)

        await coordinator.shutdown()

        assert finished == [True]
        coordinator.gateway.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pass_after_timeout(self):
        async def stuck(since):
            await asyncio.Event().wait()

        reconciler = MagicMock()
        reconciler.run_catch_up = AsyncMock(side_effect=stuck)
        coordinator, state, _ = _coordinator(reconciler, shutdown_timeout=0.05)

        coordinator.trigger_scheduled_pass()
        await _wait_for(lambda: state.batch_in_progress)

        await asyncio.wait_for(coordinator.shutdown(), timeout=1.0)

        assert state.batch_in_progress is False
        coordinator.gateway.close.assert_awaited_once()
