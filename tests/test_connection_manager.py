"""Tests for ConnectionManager lifecycle and the retry loop."""

import sqlite3
import threading

import pytest

from imagevault.errors import DatabaseError, ErrorType, RetryCancelledError
from imagevault.storage.base import ConnectionConfig
from imagevault.storage.connection import ConnectionManager, RetryPhase, RetryPolicy

from conftest import FakeDriver

CONFIG = ConnectionConfig(path="fake.sqlite")


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def manager(fake_driver, sleeps):
    mgr = ConnectionManager(lambda: fake_driver, sleep=sleeps.append, rand=lambda: 1.0)
    mgr.connect(CONFIG)
    return mgr


def audit_rows(driver: FakeDriver, label: str):
    return [row for row in driver.log_rows() if row[0] == label]


def flaky(failures, error, result="ok"):
    """Operation failing ``failures`` times with ``error`` before succeeding."""
    calls = {"count": 0}

    def op():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise error
        return result

    return op, calls


class TestRetryPolicy:
    def test_exponential_backoff(self):
        policy = RetryPolicy()
        assert policy.delay_for(1, lambda: 1.0) == 1.0
        assert policy.delay_for(2, lambda: 1.0) == 2.0
        assert policy.delay_for(3, lambda: 1.0) == 4.0

    def test_jitter_range(self):
        policy = RetryPolicy()
        assert policy.delay_for(1, lambda: 0.0) == 0.5

    def test_capped(self):
        policy = RetryPolicy(max_delay=5.0)
        assert policy.delay_for(10, lambda: 1.0) == 5.0


class TestLifecycle:
    def test_connect_sets_status(self, manager, fake_driver):
        status = manager.get_status()
        assert status.is_connected
        assert status.last_connected is not None
        assert status.latency_ms is not None
        assert manager.is_alive()
        assert manager.config == CONFIG
        assert audit_rows(fake_driver, "CONNECT")

    def test_invalid_config_rejected(self, fake_driver):
        mgr = ConnectionManager(lambda: fake_driver)
        with pytest.raises(ValueError, match="host is required"):
            mgr.connect(ConnectionConfig(host="", database="d", username="u", password="p"))
        assert fake_driver.open_calls == 0

    def test_disabled_config_rejected(self, fake_driver):
        mgr = ConnectionManager(lambda: fake_driver)
        with pytest.raises(ValueError, match="disabled"):
            mgr.connect(ConnectionConfig(path="x.sqlite", enabled=False))

    def test_connect_failure_classified(self, fake_driver):
        fake_driver.fail_open = ConnectionRefusedError("refused")
        mgr = ConnectionManager(lambda: fake_driver)
        with pytest.raises(DatabaseError) as exc_info:
            mgr.connect(CONFIG)
        assert exc_info.value.type == ErrorType.CONNECTION
        status = mgr.get_status()
        assert not status.is_connected
        assert status.last_error == "refused"

    def test_disconnect(self, manager, fake_driver):
        manager.disconnect()
        assert not manager.is_alive()
        assert not manager.get_status().is_connected
        assert audit_rows(fake_driver, "DISCONNECT")

    def test_status_is_a_copy(self, manager):
        status = manager.get_status()
        status.is_connected = False
        assert manager.get_status().is_connected

    def test_test_connection_active(self, manager, fake_driver):
        assert manager.test_connection() is True
        fake_driver.fail_ping = ConnectionError("gone")
        assert manager.test_connection() is False
        status = manager.get_status()
        assert not status.is_connected
        assert status.last_error == "gone"

    def test_test_connection_candidate_leaves_active_alone(self, manager):
        candidate = manager.test_connection(ConnectionConfig(host="", database="", username="", password=""))
        assert candidate["success"] is False
        assert "host is required" in candidate["error"]
        assert manager.is_alive()

    def test_ensure_connected_without_config(self, fake_driver):
        mgr = ConnectionManager(lambda: fake_driver)
        with pytest.raises(DatabaseError) as exc_info:
            mgr.ensure_connected()
        assert exc_info.value.code == "NOT_CONNECTED"
        assert not exc_info.value.retryable

    def test_ensure_connected_reconnects(self, manager, fake_driver):
        fake_driver.close()
        manager.ensure_connected()
        assert fake_driver.open_calls == 2
        assert manager.is_alive()


class TestExecuteWithRetry:
    def test_success_writes_one_audit_row(self, manager, fake_driver):
        assert manager.execute_with_retry(lambda: 42, "SAVE", table_name="images", record_id="a") == 42
        rows = audit_rows(fake_driver, "SAVE")
        assert len(rows) == 1
        assert rows[0][1:5] == ("images", "a", "default", "SUCCESS")
        assert manager.last_retry_state.phase == RetryPhase.SUCCEEDED

    def test_no_audit_for_reads(self, manager, fake_driver):
        manager.execute_with_retry(lambda: 1, "GET_IMAGES", audit=False)
        assert audit_rows(fake_driver, "GET_IMAGES") == []

    def test_retryable_error_exhausts_attempts(self, manager, fake_driver, sleeps):
        op, calls = flaky(10, ConnectionError("connection reset"))
        with pytest.raises(DatabaseError) as exc_info:
            manager.execute_with_retry(op, "SAVE", table_name="images", record_id="a")
        assert calls["count"] == 3
        assert sleeps == [1.0, 2.0]
        assert exc_info.value.type == ErrorType.CONNECTION
        rows = audit_rows(fake_driver, "SAVE")
        assert len(rows) == 1
        assert rows[0][4] == "FAILED"
        assert rows[0][5] == "connection reset"

    def test_retry_then_success(self, manager, fake_driver, sleeps):
        op, calls = flaky(1, sqlite3.OperationalError("database is locked"))
        assert manager.execute_with_retry(op, "UPDATE", table_name="images") == "ok"
        assert calls["count"] == 2
        assert sleeps == [1.0]
        assert [row[4] for row in audit_rows(fake_driver, "UPDATE")] == ["SUCCESS"]

    def test_non_retryable_surfaces_immediately(self, manager, sleeps):
        op, calls = flaky(10, sqlite3.IntegrityError("UNIQUE constraint failed: images.id"))
        with pytest.raises(DatabaseError) as exc_info:
            manager.execute_with_retry(op, "SAVE", table_name="images")
        assert calls["count"] == 1
        assert sleeps == []
        assert exc_info.value.type == ErrorType.CONSTRAINT
        assert isinstance(exc_info.value.__cause__, sqlite3.IntegrityError)

    def test_database_error_reraised_as_is(self, manager):
        from imagevault.errors import RecordNotFoundError

        original = RecordNotFoundError("images", "x")

        def op():
            raise original

        with pytest.raises(RecordNotFoundError) as exc_info:
            manager.execute_with_retry(op, "UPDATE", table_name="images")
        assert exc_info.value is original

    def test_delay_cap(self, fake_driver, sleeps):
        mgr = ConnectionManager(
            lambda: fake_driver,
            policy=RetryPolicy(max_attempts=10, max_delay=5.0),
            sleep=sleeps.append,
            rand=lambda: 1.0,
        )
        mgr.connect(CONFIG)
        op, calls = flaky(100, TimeoutError("timed out"))
        with pytest.raises(DatabaseError):
            mgr.execute_with_retry(op, "SAVE", table_name="images")
        assert calls["count"] == 10
        assert len(sleeps) == 9
        assert max(sleeps) == 5.0
        assert sleeps[:3] == [1.0, 2.0, 4.0]

    def test_connection_error_triggers_reconnect(self, manager, fake_driver):
        op, calls = flaky(1, ConnectionError("connection lost"))
        manager.execute_with_retry(op, "SAVE", table_name="images")
        assert fake_driver.open_calls == 2
        assert manager.get_status().is_connected

    def test_cancel(self, manager, fake_driver):
        cancel = threading.Event()
        cancel.set()
        op, calls = flaky(10, ConnectionError("connection reset"))
        with pytest.raises(RetryCancelledError):
            manager.execute_with_retry(op, "SAVE", table_name="images", cancel=cancel)
        assert calls["count"] == 1
        assert manager.last_retry_state.phase == RetryPhase.CANCELLED
        rows = audit_rows(fake_driver, "SAVE")
        assert len(rows) == 1
        assert rows[0][4] == "FAILED"

    def test_errors_recorded_in_classifier(self, manager):
        op, _ = flaky(10, sqlite3.IntegrityError("UNIQUE constraint failed: images.id"))
        with pytest.raises(DatabaseError):
            manager.execute_with_retry(op, "SAVE", table_name="images")
        assert manager.classifier.get_error_stats()["by_type"] == {"CONSTRAINT": 1}

    def test_value_error_not_retried(self, manager, sleeps):
        op, calls = flaky(10, ValueError("connection settings rejected"))
        with pytest.raises(DatabaseError) as exc_info:
            manager.execute_with_retry(op, "SAVE", table_name="images")
        assert calls["count"] == 1
        assert sleeps == []
        assert exc_info.value.type == ErrorType.DATA
        assert not exc_info.value.retryable

    def test_failed_reconnect_recorded_once_per_attempt(self, manager, fake_driver, sleeps):
        fake_driver.close()
        fake_driver.fail_open = ConnectionError("connection refused")
        with pytest.raises(DatabaseError):
            manager.execute_with_retry(lambda: "ok", "SAVE", table_name="images")
        assert len(sleeps) == 2
        assert manager.classifier.get_error_stats()["total"] == 3


class TestOperationLog:
    def test_never_logs_its_own_table(self, manager, fake_driver):
        before = len(fake_driver.log_rows())
        manager.log_operation("CLEANUP", "operation_logs")
        assert len(fake_driver.log_rows()) == before

    def test_skipped_when_table_missing(self, sleeps):
        driver = FakeDriver(log_table=False)
        mgr = ConnectionManager(lambda: driver, sleep=sleeps.append)
        mgr.connect(CONFIG)
        mgr.execute_with_retry(lambda: None, "SAVE", table_name="images")
        assert driver.log_rows() == []

    def test_write_failure_swallowed(self, manager, fake_driver, monkeypatch):
        def broken(sql, params=None):
            raise sqlite3.OperationalError("disk is full")

        monkeypatch.setattr(fake_driver, "run", broken)
        manager.log_operation("SAVE", "images", "a")

    def test_error_message_truncated(self, manager, fake_driver):
        manager.log_operation("SAVE", "images", "a", error_message="x" * 5000)
        assert len(audit_rows(fake_driver, "SAVE")[0][5]) == 2000
