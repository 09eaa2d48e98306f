"""Tests for ConnectionMonitor."""

import pytest

from imagevault.storage.base import ConnectionConfig, ConnectionStatus
from imagevault.storage.connection import ConnectionManager
from imagevault.storage.monitor import (
    ChangeType,
    ConnectionMonitor,
    ConnectionQuality,
    calculate_quality,
    determine_change_type,
)


@pytest.fixture
def manager(fake_driver):
    mgr = ConnectionManager(lambda: fake_driver, sleep=lambda d: None)
    mgr.connect(ConnectionConfig(path="fake.sqlite"))
    return mgr


@pytest.fixture
def monitor(manager):
    mon = ConnectionMonitor(manager, interval=5)
    yield mon
    mon.stop()


class TestQuality:
    @pytest.mark.parametrize(
        "latency, expected",
        [
            (10.0, ConnectionQuality.EXCELLENT),
            (49.9, ConnectionQuality.EXCELLENT),
            (50.0, ConnectionQuality.GOOD),
            (199.0, ConnectionQuality.GOOD),
            (200.0, ConnectionQuality.FAIR),
            (499.0, ConnectionQuality.FAIR),
            (500.0, ConnectionQuality.POOR),
            (999.0, ConnectionQuality.POOR),
            (1000.0, ConnectionQuality.VERY_POOR),
        ],
    )
    def test_thresholds(self, latency, expected):
        assert calculate_quality(ConnectionStatus(is_connected=True, latency_ms=latency)) == expected

    def test_disconnected_is_very_poor(self):
        assert calculate_quality(ConnectionStatus(is_connected=False, latency_ms=5.0)) == ConnectionQuality.VERY_POOR

    def test_error_is_very_poor(self):
        status = ConnectionStatus(is_connected=True, latency_ms=5.0, last_error="flaky")
        assert calculate_quality(status) == ConnectionQuality.VERY_POOR

    def test_unknown_latency_is_very_poor(self):
        assert calculate_quality(ConnectionStatus(is_connected=True)) == ConnectionQuality.VERY_POOR


class TestChangeType:
    def test_first_observation(self):
        assert determine_change_type(None, ConnectionStatus(is_connected=True)) == ChangeType.CONNECTED
        assert determine_change_type(None, ConnectionStatus()) == ChangeType.DISCONNECTED

    def test_error_transitions(self):
        ok = ConnectionStatus(is_connected=True)
        bad = ConnectionStatus(is_connected=True, last_error="boom")
        assert determine_change_type(ok, bad) == ChangeType.ERROR_OCCURRED
        assert determine_change_type(bad, ok) == ChangeType.ERROR_CLEARED

    def test_latency_only(self):
        before = ConnectionStatus(is_connected=True, latency_ms=1.0)
        after = ConnectionStatus(is_connected=True, latency_ms=400.0)
        assert determine_change_type(before, after) == ChangeType.QUALITY_CHANGED


class TestChecks:
    def test_first_check_is_a_change(self, monitor):
        event = monitor.check_now()
        assert event is not None
        assert event.change_type == ChangeType.CONNECTED
        assert event.quality == ConnectionQuality.EXCELLENT

    def test_steady_state_is_quiet(self, monitor):
        monitor.check_now()
        assert monitor.check_now() is None
        assert len(monitor.get_status_history()) == 1

    def test_disconnect_detected(self, monitor, manager):
        monitor.check_now()
        manager.disconnect()
        event = monitor.check_now()
        assert event.change_type == ChangeType.DISCONNECTED
        assert event.quality == ConnectionQuality.VERY_POOR
        assert event.previous_status.is_connected

    def test_ping_failure_detected(self, monitor, fake_driver):
        monitor.check_now()
        fake_driver.fail_ping = ConnectionError("server closed the connection")
        event = monitor.check_now()
        assert event.change_type == ChangeType.DISCONNECTED
        assert event.current_status.last_error == "server closed the connection"

    def test_listeners_notified_and_isolated(self, monitor):
        received = []

        def broken(event):
            raise RuntimeError("listener bug")

        monitor.add_listener(broken)
        monitor.subscribe(received.append)
        monitor.check_now()
        assert len(received) == 1

        monitor.unsubscribe(received.append)
        monitor.remove_listener(broken)
        assert monitor.get_monitoring_status()["listeners_count"] == 0

    def test_history_limit_keeps_recent(self, monitor, manager):
        monitor.check_now()
        manager.disconnect()
        monitor.check_now()
        recent = monitor.get_status_history(1)
        assert [e.change_type for e in recent] == [ChangeType.DISCONNECTED]
        monitor.clear_history()
        assert monitor.get_status_history() == []

    def test_trigger_connection_test(self, monitor):
        result = monitor.trigger_connection_test()
        assert result["success"] is True
        assert result["quality"] == ConnectionQuality.EXCELLENT.value
        assert result["changed"] is True
        assert monitor.trigger_connection_test()["changed"] is False

    def test_event_log_written(self, monitor, tmp_path):
        monitor.check_now()
        logs = list((tmp_path / "runtime" / "logs").glob("db-events-*.log"))
        assert logs
        assert "change=CONNECTED" in logs[0].read_text()


class TestStats:
    def test_counts_and_success_rate(self, monitor, manager):
        monitor.check_now()
        monitor.check_now()
        manager.disconnect()
        monitor.check_now()
        stats = monitor.get_quality_stats()
        assert stats.total_tests == 3
        assert stats.failed_tests == 1
        assert stats.success_rate == pytest.approx(200 / 3)
        assert stats.quality_trend[-1] == ConnectionQuality.VERY_POOR
        assert stats.peak_connections == 1
        assert stats.min_latency is not None

    def test_stats_are_a_copy(self, monitor):
        monitor.check_now()
        stats = monitor.get_quality_stats()
        stats.quality_trend.append(ConnectionQuality.POOR)
        assert len(monitor.get_quality_stats().quality_trend) == 1

    def test_reset(self, monitor):
        monitor.check_now()
        monitor.reset_quality_stats()
        assert monitor.get_quality_stats().total_tests == 0

    def test_to_dict(self, monitor):
        monitor.check_now()
        data = monitor.get_quality_stats().to_dict()
        assert data["quality_trend"] == ["EXCELLENT"]
        assert data["success_rate"] == 100.0

    def test_description(self, monitor):
        assert monitor.get_quality_description(ConnectionQuality.FAIR).startswith("Fair")


class TestLifecycle:
    def test_interval_floor(self, manager):
        with pytest.raises(ValueError):
            ConnectionMonitor(manager, interval=1)

    def test_set_interval_floor(self, monitor):
        with pytest.raises(ValueError):
            monitor.set_monitoring_interval(4.9)
        monitor.set_monitoring_interval(60)
        assert monitor.interval == 60

    def test_start_stop(self, monitor):
        monitor.start()
        assert monitor.is_running
        status = monitor.get_monitoring_status()
        assert status["is_monitoring"] is True
        assert status["interval"] == 5
        monitor.stop()
        assert not monitor.is_running
        monitor.stop()

    def test_start_is_idempotent(self, monitor):
        monitor.start()
        thread = monitor._thread
        monitor.start()
        assert monitor._thread is thread

    def test_stop_without_start(self, monitor):
        monitor.stop()
        assert monitor.get_monitoring_status()["uptime"] == 0.0
