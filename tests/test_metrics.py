"""
Unit tests for usersync.metrics.
"""

from unittest.mock import patch

from usersync.metrics import build_registry, render_metrics, start_metrics_server
from usersync.state import EngineState, ListenerStatus


class TestEngineStateCollector:
    def test_exposes_state(self):
        state = EngineState()
        state.record_synced(12)
        state.record_errors(3)
        state.pass_succeeded(4.5)
        state.set_listener_status(ListenerStatus.LISTENING)
        registry = build_registry(state)

        assert registry.get_sample_value("user_sync_synced_total") == 12
        assert registry.get_sample_value("user_sync_errors_total") == 3
        assert registry.get_sample_value("user_sync_consecutive_failures") == 0
        assert registry.get_sample_value("user_sync_last_pass_duration_seconds") == 4.5
        assert registry.get_sample_value("user_sync_realtime_listening") == 1
        assert registry.get_sample_value("user_sync_batch_in_progress") == 0
        assert registry.get_sample_value("user_sync_last_success_timestamp_seconds") > 0

    def test_reads_live_values(self):
        state = EngineState()
        registry = build_registry(state)
        assert registry.get_sample_value("user_sync_synced_total") == 0

        state.record_synced(2)
        assert registry.get_sample_value("user_sync_synced_total") == 2

    def test_health_gauge(self):
        state = EngineState()
        registry = build_registry(state, health=lambda: {"healthy": True})
        assert registry.get_sample_value("user_sync_healthy") == 1

    def test_health_failure_reports_unhealthy(self):
        def broken():
            raise RuntimeError("boom")

        registry = build_registry(EngineState(), health=broken)
        assert registry.get_sample_value("user_sync_healthy") == 0

    def test_no_health_gauge_without_callable(self):
        registry = build_registry(EngineState())
        assert registry.get_sample_value("user_sync_healthy") is None

    def test_render_text_format(self):
        text = render_metrics(build_registry(EngineState()))
        assert "# TYPE user_sync_synced_total counter" in text
        assert "user_sync_reconnect_attempts 0.0" in text


class TestStartMetricsServer:
    def test_disabled_when_port_zero(self):
        with patch("usersync.metrics.start_http_server") as server:
            assert start_metrics_server(build_registry(EngineState()), 0) is False
        server.assert_not_called()

    def test_starts_server(self):
        registry = build_registry(EngineState())
        with patch("usersync.metrics.start_http_server") as server:
            assert start_metrics_server(registry, 9464, host="127.0.0.1") is True
        server.assert_called_once_with(9464, addr="127.0.0.1", registry=registry)
