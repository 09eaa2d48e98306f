"""Tests for logging setup and the database event log."""

import logging

from imagevault.logging_config import (
    get_data_dir,
    log_connection_change,
    log_database_event,
    log_migration,
    setup_logging,
)


def test_data_dir_from_env(tmp_path):
    assert get_data_dir() == tmp_path / "runtime"


def test_setup_writes_daily_file(tmp_path):
    logger = setup_logging("INFO")
    logging.getLogger("imagevault.test").info("hello from the test")
    for handler in logger.handlers:
        handler.flush()
    files = list((tmp_path / "runtime" / "logs").glob("imagevault-*.log"))
    assert len(files) == 1
    assert "hello from the test" in files[0].read_text()


def test_setup_is_idempotent():
    logger = setup_logging("INFO")
    count = len(logger.handlers)
    setup_logging("WARNING")
    assert len(logger.handlers) == count
    assert logger.level == logging.WARNING


def test_debug_echoes_to_console(tmp_path):
    logger = setup_logging("DEBUG", log_dir=str(tmp_path / "custom"))
    assert any(type(h) is logging.StreamHandler for h in logger.handlers)
    assert list((tmp_path / "custom").glob("imagevault-*.log"))


def test_unknown_level_falls_back_to_info():
    assert setup_logging("chatty").level == logging.INFO


def test_event_lines(tmp_path):
    log_database_event("custom", "detail=1", backend="postgres")
    log_migration("sqlite", "UPGRADE", "1.1.0", True, 12)
    log_connection_change("sqlite", "DISCONNECTED")
    lines = next((tmp_path / "runtime" / "logs").glob("db-events-*.log")).read_text().splitlines()
    assert lines[0].endswith("| custom | backend=postgres | detail=1")
    assert "operation=UPGRADE, version=1.1.0, success=True, duration_ms=12" in lines[1]
    assert lines[2].endswith("change=DISCONNECTED, latency_ms=n/a")


def test_console_shows_warnings_by_default():
    logger = setup_logging("INFO")
    consoles = [h for h in logger.handlers if type(h) is logging.StreamHandler]
    assert len(consoles) == 1
    assert consoles[0].level == logging.WARNING
