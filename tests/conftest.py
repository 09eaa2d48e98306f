"""
Pytest fixtures and test configuration for imagevault tests.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Set

import pytest

from imagevault.config import get_settings
from imagevault.crypto import EncryptionService
from imagevault.storage.base import BackendKind, ConnectionConfig, ImageRecord
from imagevault.storage.driver import Driver, Session
from imagevault.storage.sqlite import SQLiteStorage

# Small KDF cost keeps the suite fast; production uses KDF_ITERATIONS
TEST_ITERATIONS = 1000


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Keep runtime files and settings out of the developer's environment."""
    monkeypatch.setenv("IMAGEVAULT_DATA_DIR", str(tmp_path / "runtime"))
    for name in ("ENCRYPTION_KEY", "DATABASE_MODE", "SQLITE_PATH", "DB_PASSWORD", "DB_BACKUP_DIR", "DB_BACKUP_INTERVAL"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    package_logger = logging.getLogger("imagevault")
    package_logger.handlers.clear()
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture
def encryption():
    return EncryptionService("test-passphrase", iterations=TEST_ITERATIONS)


@pytest.fixture
def sqlite_config(tmp_path):
    return ConnectionConfig(path=str(tmp_path / "db" / "test.sqlite"))


@pytest.fixture
def connected_storage(encryption, sqlite_config):
    """SQLite storage connected to a fresh file, no schema yet."""
    storage = SQLiteStorage(encryption, sleep=lambda delay: None)
    storage.connect(sqlite_config)
    yield storage
    storage.disconnect()


@pytest.fixture
def storage(connected_storage):
    """SQLite storage at the latest schema version."""
    connected_storage.initialize_schema()
    return connected_storage


@pytest.fixture
def make_image():
    """Factory for ImageRecords with sensible defaults."""

    def _make(image_id: str = "e1", **overrides) -> ImageRecord:
        fields: Dict[str, Any] = {
            "id": image_id,
            "url": f"https://cdn.example.com/{image_id}.png",
            "prompt": "a lighthouse at dusk",
            "model": "flux-pro",
            "tags": ["coast", "evening"],
        }
        fields.update(overrides)
        return ImageRecord(**fields)

    return _make


class FakeSession(Session):
    def __init__(self, driver: "FakeDriver"):
        self.driver = driver

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        self.driver.statements.append((sql, tuple(params or ())))
        return []

    def run(self, sql: str, params: Optional[Sequence[Any]] = None) -> int:
        self.driver.statements.append((sql, tuple(params or ())))
        return 1


class FakeDriver(Driver):
    """In-memory driver that records statements and can be told to fail."""

    backend = BackendKind.SQLITE

    def __init__(self, log_table: bool = True):
        self.opened = False
        self.open_calls = 0
        self.fail_open: Optional[BaseException] = None
        self.fail_ping: Optional[BaseException] = None
        self.log_table = log_table
        self.statements: List[Any] = []

    def open(self, config: ConnectionConfig) -> None:
        self.open_calls += 1
        if self.fail_open is not None:
            raise self.fail_open
        self.opened = True

    def close(self) -> None:
        self.opened = False

    @property
    def is_open(self) -> bool:
        return self.opened

    def ping(self) -> None:
        if self.fail_ping is not None:
            raise self.fail_ping

    def transaction(self):
        import contextlib

        @contextlib.contextmanager
        def _tx():
            yield FakeSession(self)

        return _tx()

    def table_exists(self, table: str) -> bool:
        return self.log_table

    def get_columns(self, table: str) -> Set[str]:
        return set()

    def get_indexes(self, table: str) -> Set[str]:
        return set()

    def log_rows(self) -> List[Any]:
        return [params for sql, params in self.statements if "INSERT INTO operation_logs" in sql]


@pytest.fixture
def fake_driver():
    return FakeDriver()
