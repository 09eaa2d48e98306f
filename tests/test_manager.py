"""Tests for the DatabaseManager facade."""

import pytest

from imagevault.config import Settings
from imagevault.manager import DatabaseManager, create_storage
from imagevault.storage.base import BackendKind, PaginationOptions
from imagevault.storage.sqlite import SQLiteStorage


@pytest.fixture
def settings(tmp_path):
    return Settings(sqlite_path=str(tmp_path / "db" / "vault.sqlite"), monitor_interval=5)


@pytest.fixture
def db(settings, encryption):
    manager = DatabaseManager(settings, encryption=encryption)
    manager.start(monitor=False)
    yield manager
    manager.shutdown()


class TestBackendSelection:
    def test_sqlite_by_default(self, settings, encryption):
        assert isinstance(create_storage(settings, encryption), SQLiteStorage)

    def test_postgres(self, encryption):
        from imagevault.storage.postgres import PostgresStorage

        settings = Settings(database_mode="postgres", db_pool_min_size=2, db_pool_max_size=4)
        storage = create_storage(settings, encryption)
        assert isinstance(storage, PostgresStorage)
        assert storage.driver.min_size == 2
        assert storage.driver.max_size == 4
        assert not storage.driver.is_open

    def test_backend_property(self, settings, encryption):
        assert DatabaseManager(settings, encryption=encryption).backend == BackendKind.SQLITE


class TestLifecycle:
    def test_start_initializes_schema(self, db):
        assert db.get_current_version() == "1.3.0"
        assert db.get_connection_status().is_connected
        assert not db.monitor.is_running

    def test_context_manager_runs_monitor(self, settings, encryption):
        with DatabaseManager(settings, encryption=encryption) as manager:
            assert manager.monitor.is_running
            assert manager.test_connection() is True
        assert not manager.monitor.is_running
        assert not manager.get_connection_status().is_connected

    def test_shutdown_twice(self, db):
        db.shutdown()
        db.shutdown()

    def test_disabled_networked_config(self, encryption):
        settings = Settings(database_mode="postgres", db_password="pw", db_enabled=False)
        manager = DatabaseManager(settings, encryption=encryption)
        with pytest.raises(ValueError, match="disabled"):
            manager.start(monitor=False)


class TestForwarding:
    def test_image_operations(self, db, make_image):
        db.save_image(make_image("e1"))
        db.save_image(make_image("e2"))
        assert db.get_image("e1").id == "e1"
        assert db.update_image("e1", {"favorite": True}).favorite
        db.soft_delete_image("e2")
        assert db.get_deleted_images().total == 1
        db.restore_image("e2")
        assert db.get_images(PaginationOptions(filters={"favorite": True})).total == 1
        assert db.delete_images(["e2"])["successful"] == ["e2"]
        db.delete_image("e1")
        assert db.get_images().total == 0

    def test_config_operations(self, db):
        db.save_secret_config("api", {"apiKey": "sk-1"})
        assert db.get_secret_config("api") == {"apiKey": "sk-1"}
        db.delete_secret_config("api")
        assert db.get_secret_config("api") is None

    def test_operational(self, db, make_image):
        db.save_image(make_image("e1"))
        assert db.get_statistics()["total_images"] == 1
        assert db.get_operation_logs().total >= 1
        assert db.cleanup_operation_logs(30) == 0
        assert db.cleanup_migration_logs(30) == 0
        assert db.validate_database_integrity()["valid"]
        assert len(db.get_migration_history()) == 4
        assert db.get_error_stats()["total"] == 0
        assert db.get_conflict_stats()["total"] == 0

    def test_migration_forwarding(self, db):
        assert db.rollback_to_version("1.2.0").success
        assert db.migrate_to_version().success
        assert db.initialize_schema().success

    def test_config_summary(self, db):
        summary = db.get_config_summary()
        assert summary["database_mode"] == "sqlite"
        assert summary["using_fallback_key"] is False

    def test_reconnect(self, db, settings):
        db.disconnect()
        assert db.connect()
        assert db.get_connection_status().is_connected


class TestBackups:
    def test_startup_snapshot(self, db):
        assert [info.reason for info in db.list_backups()] == ["startup"]
        assert db.backups.is_running
        assert db.get_backup_status()["count"] == 1

    def test_backup_and_restore(self, db, make_image):
        db.save_image(make_image("e1"))
        info = db.backup_database("before-cleanup")
        db.delete_image("e1")

        saved = db.restore_backup(info.name)

        assert db.get_image("e1") is not None
        assert saved.reason == "before-restore"

    def test_start_without_backups(self, settings, encryption):
        manager = DatabaseManager(settings, encryption=encryption)
        manager.start(monitor=False, backups=False)
        try:
            assert manager.list_backups() == []
            assert not manager.backups.is_running
        finally:
            manager.shutdown()

    def test_shutdown_stops_timer(self, db):
        db.shutdown()
        assert not db.backups.is_running

    def test_networked_backend_has_no_backups(self, encryption):
        manager = DatabaseManager(Settings(database_mode="postgres"), encryption=encryption)
        assert manager.backups is None
        with pytest.raises(ValueError, match="sqlite"):
            manager.backup_database()
