"""DatabaseManager - the persistence facade.

Picks exactly one backend at construction time from Settings and forwards
every call to it. Collaborators (route handlers, CLI commands) hold one
DatabaseManager, created at startup and torn down at shutdown:

    with DatabaseManager(get_settings()) as db:
        db.save_image({...})
"""

import logging
from typing import Any, Dict, List, Optional, Union

from imagevault.config import Settings, get_settings
from imagevault.crypto import EncryptionService
from imagevault.errors import DatabaseError, ErrorClassifier
from imagevault.storage.base import (
    BackendKind,
    ConnectionConfig,
    ConnectionStatus,
    ImageRecord,
    PaginatedResult,
    PaginationOptions,
)
from imagevault.storage.adapter import SQLStorage
from imagevault.storage.backup import BackupInfo, BackupService
from imagevault.storage.migrations import MigrationRecord, MigrationResult
from imagevault.storage.monitor import ConnectionMonitor
from imagevault.storage.sqlite import SQLiteStorage

logger = logging.getLogger(__name__)


def create_storage(
    settings: Settings,
    encryption: EncryptionService,
    classifier: Optional[ErrorClassifier] = None,
) -> SQLStorage:
    """Build the storage backend selected by ``settings.database_mode``."""
    if settings.database_mode == BackendKind.POSTGRES:
        # Embedded deployments never import the Postgres driver
        from imagevault.storage.postgres import PostgresStorage

        return PostgresStorage(
            encryption,
            classifier,
            driver_options={"min_size": settings.db_pool_min_size, "max_size": settings.db_pool_max_size},
        )
    return SQLiteStorage(encryption, classifier)


class DatabaseManager:
    """Single entry point to the persistence core.

    Holds one storage backend, the encryption service and the connection
    monitor. Never branches on backend type after construction.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        storage: Optional[SQLStorage] = None,
        encryption: Optional[EncryptionService] = None,
    ):
        self.settings = settings or get_settings()
        self.encryption = encryption or EncryptionService(self.settings.encryption_key)
        self.storage = storage or create_storage(self.settings, self.encryption)
        self.monitor = ConnectionMonitor(self.storage.manager, interval=self.settings.monitor_interval)
        self.backups: Optional[BackupService] = None
        if isinstance(self.storage, SQLiteStorage):
            self.backups = BackupService(
                self.storage,
                backup_dir=self.settings.db_backup_dir,
                max_backups=self.settings.db_backup_max_count,
                interval=self.settings.db_backup_interval,
            )
        self._started = False

    @property
    def backend(self) -> BackendKind:
        return self.storage.backend

    # === Lifecycle ===

    def start(self, initialize: bool = True, monitor: bool = True, backups: bool = True) -> "DatabaseManager":
        """Connect with the configured target, migrate and start monitoring.

        On the embedded backend ``backups`` also takes a startup snapshot
        before migrating and starts the automatic backup timer.
        """
        config = self.settings.connection_config()
        logger.info(f"Starting persistence on {config.describe()}")
        self.storage.connect(config)
        if backups and self.backups is not None:
            try:
                self.backups.backup("startup")
            except (DatabaseError, OSError) as e:
                logger.error(f"Startup backup failed: {e}")
            self.backups.start_auto_backup()
        if initialize:
            self.storage.initialize_schema()
        if monitor:
            self.monitor.start()
        self._started = True
        return self

    def shutdown(self) -> None:
        self.monitor.stop()
        if self.backups is not None:
            self.backups.stop_auto_backup()
        if self._started or self.storage.driver.is_open:
            self.storage.disconnect()
        self._started = False
        logger.info("Persistence shut down")

    def __enter__(self) -> "DatabaseManager":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # === Connection ===

    def connect(self, config: Optional[ConnectionConfig] = None) -> bool:
        return self.storage.connect(config or self.settings.connection_config())

    def disconnect(self) -> None:
        self.storage.disconnect()

    def test_connection(self, config: Optional[ConnectionConfig] = None) -> Any:
        return self.storage.test_connection(config)

    def get_connection_status(self) -> ConnectionStatus:
        return self.storage.get_connection_status()

    # === Images ===

    def save_image(self, image: Union[ImageRecord, Dict[str, Any]]) -> ImageRecord:
        return self.storage.save_image(image)

    def get_images(self, options: Optional[PaginationOptions] = None) -> PaginatedResult:
        return self.storage.get_images(options)

    def get_image(self, image_id: str) -> Optional[ImageRecord]:
        return self.storage.get_image(image_id)

    def update_image(self, image_id: str, updates: Dict[str, Any]) -> ImageRecord:
        return self.storage.update_image(image_id, updates)

    def delete_image(self, image_id: str) -> None:
        self.storage.delete_image(image_id)

    def delete_images(self, image_ids: List[str]) -> Dict[str, Any]:
        return self.storage.delete_images(image_ids)

    def soft_delete_image(self, image_id: str, deleted_by: Optional[str] = "default") -> ImageRecord:
        return self.storage.soft_delete_image(image_id, deleted_by)

    def restore_image(self, image_id: str) -> ImageRecord:
        return self.storage.restore_image(image_id)

    def get_deleted_images(self, options: Optional[PaginationOptions] = None) -> PaginatedResult:
        return self.storage.get_deleted_images(options)

    # === Configuration ===

    def save_secret_config(self, kind: str, config: Dict[str, Any]) -> None:
        self.storage.save_secret_config(kind, config)

    def get_secret_config(self, kind: str) -> Optional[Dict[str, Any]]:
        return self.storage.get_secret_config(kind)

    def delete_secret_config(self, kind: str) -> None:
        self.storage.delete_secret_config(kind)

    def get_config_summary(self) -> Dict[str, Any]:
        """Operator view of settings with credentials masked."""
        summary = self.settings.redacted()
        summary["using_fallback_key"] = self.encryption.using_fallback_key
        return summary

    # === Operational ===

    def initialize_schema(self) -> MigrationResult:
        return self.storage.initialize_schema()

    def get_statistics(self, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.storage.get_statistics(filters)

    def get_operation_logs(self, options: Optional[PaginationOptions] = None) -> PaginatedResult:
        return self.storage.get_operation_logs(options)

    def cleanup_operation_logs(self, days_to_keep: int = 30) -> int:
        return self.storage.cleanup_operation_logs(days_to_keep)

    def get_error_stats(self) -> Dict[str, Any]:
        return self.storage.classifier.get_error_stats()

    def get_conflict_stats(self) -> Dict[str, Any]:
        return self.storage.resolver.get_conflict_stats()

    # === Migration ===

    def migrate_to_version(self, version: Optional[str] = None) -> MigrationResult:
        return self.storage.migrate_to_version(version)

    def rollback_to_version(self, version: str) -> MigrationResult:
        return self.storage.rollback_to_version(version)

    def get_current_version(self) -> str:
        return self.storage.get_current_version()

    def get_migration_history(self, limit: int = 50) -> List[MigrationRecord]:
        return self.storage.get_migration_history(limit)

    def validate_database_integrity(self) -> Dict[str, Any]:
        return self.storage.validate_database_integrity()

    def cleanup_migration_logs(self, days_to_keep: int = 30) -> int:
        return self.storage.cleanup_migration_logs(days_to_keep)

    # === Backups ===

    def _require_backups(self) -> BackupService:
        if self.backups is None:
            raise ValueError(f"Backups are only available on the sqlite backend (active: {self.backend.value})")
        return self.backups

    def backup_database(self, reason: str = "manual") -> BackupInfo:
        return self._require_backups().backup(reason)

    def list_backups(self) -> List[BackupInfo]:
        return self._require_backups().list_backups()

    def restore_backup(self, name: str) -> BackupInfo:
        return self._require_backups().restore(name)

    def get_backup_status(self) -> Dict[str, Any]:
        return self._require_backups().get_status()
