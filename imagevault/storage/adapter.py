"""Shared SQL adapter behind both storage backends.

SQLStorage implements the Storage protocol once, in the Postgres dialect,
on top of a Driver. Backends only pick the driver class:

    class SQLiteStorage(SQLStorage):
        driver_class = SQLiteDriver

Every mutating call runs through ConnectionManager.execute_with_retry and
produces exactly one operation log row. Reads are retried but not audited.
Input problems raise ValueError before any database work.
"""

import logging
import threading
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar, Union

from imagevault.crypto import DecryptionError, EncryptionService
from imagevault.errors import DatabaseError, ErrorClassifier, RecordNotFoundError
from imagevault.utils import parse_datetime, utc_now

from . import configs_crud, images_crud, stats_ops
from .base import (
    DEFAULT_USER_ID,
    IMAGE_COLUMNS,
    UPDATABLE_IMAGE_FIELDS,
    BackendKind,
    ConnectionConfig,
    ConnectionStatus,
    ImageRecord,
    ImageStatus,
    OperationStatus,
    PaginatedResult,
    PaginationOptions,
    ResolutionStrategy,
    build_page,
    normalize_field_names,
    normalize_pagination,
)
from .conflicts import TIMESTAMP_FIELDS, ConflictResolver
from .connection import ConnectionManager, RetryPolicy
from .driver import Driver
from .migrations import MigrationRecord, MigrationResult, SchemaMigrator
from .schema import IMAGE_SORT_FIELDS, LOG_SORT_FIELDS

logger = logging.getLogger(__name__)

T = TypeVar("T")

REQUIRED_IMAGE_FIELDS = ("id", "url", "prompt", "model")


def coerce_image(data: Union[ImageRecord, Dict[str, Any]]) -> ImageRecord:
    """Accept an ImageRecord or a (camelCase or snake_case) mapping.

    Raises:
        ValueError: On unknown fields, missing required fields or a bad status
    """
    if isinstance(data, ImageRecord):
        image = data
    elif isinstance(data, dict):
        fields = normalize_field_names(data)
        unknown = set(fields) - set(IMAGE_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown image field(s): {', '.join(sorted(unknown))}")
        for key in ("created_at", "updated_at", "deleted_at"):
            if key in fields:
                fields[key] = parse_datetime(fields[key])
        image = ImageRecord(**{key: fields.get(key) for key in REQUIRED_IMAGE_FIELDS}, **{
            key: value for key, value in fields.items() if key not in REQUIRED_IMAGE_FIELDS and value is not None
        })
    else:
        raise ValueError(f"Cannot save image from {type(data).__name__}")

    missing = [key for key in REQUIRED_IMAGE_FIELDS if not getattr(image, key)]
    if missing:
        raise ValueError(f"Image is missing required field(s): {', '.join(missing)}")
    image.status = ImageStatus(image.status)
    return image


class SQLStorage:
    """Storage protocol implementation over any Driver."""

    backend: BackendKind
    driver_class: Type[Driver]

    def __init__(
        self,
        encryption: EncryptionService,
        classifier: Optional[ErrorClassifier] = None,
        *,
        driver_options: Optional[Dict[str, Any]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        resolver: Optional[ConflictResolver] = None,
        conflict_strategy: ResolutionStrategy = ResolutionStrategy.LATEST_WINS,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        options = dict(driver_options or {})
        self.encryption = encryption
        self.manager = ConnectionManager(
            lambda: self.driver_class(**options),
            classifier=classifier,
            policy=retry_policy,
            sleep=sleep,
        )
        self.resolver = resolver or ConflictResolver()
        self.conflict_strategy = conflict_strategy
        self.migrator = SchemaMigrator(self.manager)

    @property
    def driver(self) -> Driver:
        return self.manager.driver

    @property
    def classifier(self) -> ErrorClassifier:
        return self.manager.classifier

    def _read(self, operation: Callable[[], T], label: str, cancel: Optional[threading.Event] = None) -> T:
        return self.manager.execute_with_retry(operation, label, audit=False, cancel=cancel)

    def _write(
        self,
        operation: Callable[[], T],
        label: str,
        table_name: str,
        record_id: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> T:
        return self.manager.execute_with_retry(
            operation, label, table_name=table_name, record_id=record_id, cancel=cancel
        )

    # === Connection ===

    def connect(self, config: ConnectionConfig) -> bool:
        return self.manager.connect(config)

    def disconnect(self) -> None:
        self.manager.disconnect()

    def test_connection(self, config: Optional[ConnectionConfig] = None) -> Any:
        return self.manager.test_connection(config)

    def get_connection_status(self) -> ConnectionStatus:
        return self.manager.get_status()

    # === Conflicts ===

    def _check_conflict(
        self,
        record_id: str,
        table_name: str,
        changes: Dict[str, Any],
        current: Dict[str, Any],
        baseline,
    ) -> Optional[Dict[str, Any]]:
        """Final data for a stale write, or None to apply ``changes`` as given."""
        if baseline is None:
            logger.debug(f"No baseline timestamp for {table_name}/{record_id}; skipping conflict check")
            return None
        local = {**current, **changes, "updated_at": baseline}
        info = self.resolver.detect_conflict(local, current, record_id, table_name)
        if info is None:
            return None
        resolution = self.resolver.resolve_conflict(info, self.conflict_strategy)
        if not resolution.resolved:
            logger.warning(f"Unresolved conflict on {table_name}/{record_id}; applying the original write")
            return None
        return resolution.final_data

    # === Images ===

    def save_image(self, image: Union[ImageRecord, Dict[str, Any]]) -> ImageRecord:
        """Insert or overwrite an image; returns the stored record."""
        image = coerce_image(image)

        def op() -> ImageRecord:
            with self.driver.transaction() as session:
                images_crud.upsert_image(session, image, utc_now())
                return images_crud.row_to_image(images_crud.fetch_image(session, image.id))

        return self._write(op, "SAVE", "images", image.id)

    def get_image(self, image_id: str) -> Optional[ImageRecord]:
        """Fetch one image, including soft-deleted ones; None when absent."""

        def op() -> Optional[ImageRecord]:
            with self.driver.transaction() as session:
                row = images_crud.fetch_image(session, image_id)
                return images_crud.row_to_image(row) if row else None

        return self._read(op, "GET_IMAGE")

    def get_images(self, options: Optional[PaginationOptions] = None) -> PaginatedResult:
        return self._list_images(options, deleted_only=False, default_sort="created_at")

    def get_deleted_images(self, options: Optional[PaginationOptions] = None) -> PaginatedResult:
        """Trash listing: soft-deleted images, most recently deleted first by default."""
        return self._list_images(options, deleted_only=True, default_sort="deleted_at")

    def _list_images(
        self, options: Optional[PaginationOptions], deleted_only: bool, default_sort: str
    ) -> PaginatedResult:
        options = normalize_pagination(options, IMAGE_SORT_FIELDS, default_sort)
        where, params = images_crud.build_image_filters(options.filters, deleted_only=deleted_only)

        def op() -> PaginatedResult:
            with self.driver.transaction() as session:
                total = images_crud.count_images(session, where, params)
                items = images_crud.select_images(session, where, params, options)
            return build_page(items, total, options)

        return self._read(op, "GET_IMAGES")

    def update_image(self, image_id: str, updates: Dict[str, Any]) -> ImageRecord:
        """Apply a partial update.

        When ``updates`` carries the ``updated_at`` (or ``updatedAt``) the
        caller last read, a stored row newer than that baseline is a conflict
        and is settled with the configured strategy before writing.

        Raises:
            ValueError: On unknown fields or an empty update
            RecordNotFoundError: If the image does not exist
        """
        if not isinstance(updates, dict):
            raise ValueError("updates must be a mapping")
        changes = normalize_field_names(updates)
        baseline_raw = changes.pop("updated_at", None) or changes.pop("created_at", None)
        changes.pop("created_at", None)
        changes.pop("id", None)

        unknown = set(changes) - UPDATABLE_IMAGE_FIELDS
        if unknown:
            raise ValueError(f"Field(s) cannot be updated: {', '.join(sorted(unknown))}")
        if not changes:
            raise ValueError("No fields to update")
        if "status" in changes:
            changes["status"] = ImageStatus(changes["status"]).value
        baseline = parse_datetime(baseline_raw) if baseline_raw is not None else None
        if baseline_raw is not None and baseline is None:
            raise ValueError(f"Invalid baseline timestamp: {baseline_raw!r}")

        def op() -> ImageRecord:
            with self.driver.transaction() as session:
                row = images_crud.fetch_image(session, image_id, for_update=True)
                if row is None:
                    raise RecordNotFoundError("images", image_id)
                current = images_crud.row_to_comparable(row)
                to_write = dict(changes)
                final = self._check_conflict(image_id, "images", changes, current, baseline)
                if final is not None:
                    to_write = {
                        key: final[key] for key in changes if key in final and final[key] != current.get(key)
                    }
                    if not to_write:
                        logger.warning(f"Discarded stale update to images/{image_id}: stored row is newer")
                        return images_crud.row_to_image(row)
                images_crud.update_image_fields(session, image_id, to_write, utc_now())
                return images_crud.row_to_image(images_crud.fetch_image(session, image_id))

        return self._write(op, "UPDATE", "images", image_id)

    def delete_image(self, image_id: str) -> None:
        """Hard-delete an image.

        Raises:
            RecordNotFoundError: If the image does not exist
        """

        def op() -> Dict[str, Any]:
            with self.driver.transaction() as session:
                row = images_crud.fetch_image(session, image_id, for_update=True)
                if row is None:
                    raise RecordNotFoundError("images", image_id)
                images_crud.delete_image_row(session, image_id)
                return row

        row = self._write(op, "DELETE", "images", image_id)
        if row.get("oss_uploaded") and row.get("oss_key"):
            logger.info(f"Image {image_id} deleted; object storage key {row['oss_key']} is now orphaned")

    def delete_images(self, image_ids: List[str]) -> Dict[str, Any]:
        """Delete several images; one failure does not stop the rest.

        Returns ``{"successful": [ids], "failed": [{"id", "error"}]}`` and
        writes a single DELETE_MANY operation log row.
        """
        successful: List[str] = []
        failed: List[Dict[str, str]] = []
        if not image_ids:
            return {"successful": successful, "failed": failed}

        for image_id in image_ids:

            def op(image_id=image_id) -> None:
                with self.driver.transaction() as session:
                    if images_crud.delete_image_row(session, image_id) == 0:
                        raise RecordNotFoundError("images", image_id)

            try:
                self.manager.execute_with_retry(op, "DELETE", table_name="images", record_id=image_id, audit=False)
                successful.append(image_id)
            except DatabaseError as e:
                failed.append({"id": image_id, "error": e.user_message})

        self.manager.log_operation(
            "DELETE_MANY",
            "images",
            f"{len(successful)}/{len(image_ids)}",
            OperationStatus.FAILED if failed else OperationStatus.SUCCESS,
            error_message="; ".join(f"{f['id']}: {f['error']}" for f in failed) or None,
        )
        return {"successful": successful, "failed": failed}

    def soft_delete_image(self, image_id: str, deleted_by: Optional[str] = DEFAULT_USER_ID) -> ImageRecord:
        """Move an image to the trash."""

        def op() -> ImageRecord:
            with self.driver.transaction() as session:
                if images_crud.mark_deleted(session, image_id, deleted_by, utc_now()) == 0:
                    raise RecordNotFoundError("images", image_id)
                return images_crud.row_to_image(images_crud.fetch_image(session, image_id))

        return self._write(op, "SOFT_DELETE", "images", image_id)

    def restore_image(self, image_id: str) -> ImageRecord:
        def op() -> ImageRecord:
            with self.driver.transaction() as session:
                if images_crud.mark_restored(session, image_id, utc_now()) == 0:
                    raise RecordNotFoundError("images", image_id)
                return images_crud.row_to_image(images_crud.fetch_image(session, image_id))

        return self._write(op, "RESTORE", "images", image_id)

    # === Configuration ===

    def save_secret_config(self, kind: str, config: Dict[str, Any]) -> None:
        """Validate, clean, encrypt credential fields and store one config kind.

        Raises:
            ValueError: On an unknown kind or invalid fields
        """
        configs_crud.validate_config(kind, config)
        baseline_raw = next((config[k] for k in configs_crud.BASELINE_KEYS if config.get(k)), None)
        baseline = parse_datetime(baseline_raw) if baseline_raw is not None else None
        cleaned = configs_crud.clean_config(config)

        def op() -> None:
            with self.driver.transaction() as session:
                row = configs_crud.fetch_config_row(session, for_update=True)
                stored = configs_crud.read_config_blob(row, kind)
                blob = cleaned
                if baseline is not None and stored is not None:
                    try:
                        current = configs_crud.decrypt_fields(kind, stored, self.encryption)
                    except DecryptionError as e:
                        logger.warning(f"Stored {kind} config is unreadable ({e}); skipping conflict check")
                    else:
                        current["updated_at"] = row.get("updated_at")
                        final = self._check_conflict(kind, "user_configs", cleaned, current, baseline)
                        if final is not None:
                            blob = {k: v for k, v in final.items() if k not in TIMESTAMP_FIELDS}
                            if blob == {k: v for k, v in current.items() if k not in TIMESTAMP_FIELDS}:
                                logger.warning(f"Discarded stale {kind} config write: stored config is newer")
                                return
                configs_crud.write_config_blob(
                    session, kind, configs_crud.encrypt_fields(kind, blob, self.encryption), utc_now()
                )

        self._write(op, "UPSERT", "user_configs", kind)

    def get_secret_config(self, kind: str) -> Optional[Dict[str, Any]]:
        """Stored config with credential fields decrypted; None when unset.

        Raises:
            ValueError: On an unknown kind
            DecryptionError: If a stored credential cannot be decrypted with the active key
        """
        configs_crud.config_column(kind)

        def op() -> Optional[Dict[str, Any]]:
            with self.driver.transaction() as session:
                return configs_crud.read_config_blob(configs_crud.fetch_config_row(session), kind)

        stored = self._read(op, "GET_CONFIG")
        if stored is None:
            return None
        return configs_crud.decrypt_fields(kind, stored, self.encryption)

    def delete_secret_config(self, kind: str) -> None:
        configs_crud.config_column(kind)

        def op() -> int:
            with self.driver.transaction() as session:
                return configs_crud.clear_config_blob(session, kind, utc_now())

        self._write(op, "DELETE", "user_configs", kind)

    # === Operational ===

    def initialize_schema(self) -> MigrationResult:
        """Migrate to the latest catalog version.

        Raises:
            DatabaseError: If a migration step fails
        """
        self.manager.ensure_connected()
        result = self.migrator.migrate_to_version(self.migrator.get_latest_version())
        if not result.success:
            if isinstance(result.exception, DatabaseError):
                raise result.exception
            raise self.classifier.to_database_error(RuntimeError(result.error), "initialize_schema")
        return result

    def get_statistics(self, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        stats_ops.build_stats_filters(filters)

        def op() -> Dict[str, Any]:
            now = utc_now()
            with self.driver.transaction() as session:
                images = stats_ops.get_image_statistics(session, filters, now)
                operations = stats_ops.get_operation_statistics(session, filters, now)
            return {**images, "operations": operations}

        return self._read(op, "GET_STATISTICS")

    def get_operation_logs(self, options: Optional[PaginationOptions] = None) -> PaginatedResult:
        options = normalize_pagination(options, LOG_SORT_FIELDS, "created_at")
        where, params = stats_ops.build_log_filters(options.filters)

        def op() -> PaginatedResult:
            with self.driver.transaction() as session:
                total = stats_ops.count_operation_logs(session, where, params)
                items = stats_ops.select_operation_logs(session, where, params, options)
            return build_page(items, total, options)

        return self._read(op, "GET_OPERATION_LOGS")

    def cleanup_operation_logs(self, days_to_keep: int = 30) -> int:
        """Delete operation log rows older than ``days_to_keep`` days."""
        if days_to_keep < 0:
            raise ValueError("days_to_keep must be non-negative")
        cutoff = utc_now() - timedelta(days=days_to_keep)

        def op() -> int:
            with self.driver.transaction() as session:
                return stats_ops.delete_operation_logs_before(session, cutoff)

        removed = self._write(op, "CLEANUP", "operation_logs")
        logger.info(f"Removed {removed} operation log row(s) older than {days_to_keep} days")
        return removed

    # === Migration ===

    def migrate_to_version(self, version: Optional[str] = None) -> MigrationResult:
        self.manager.ensure_connected()
        return self.migrator.migrate_to_version(version)

    def rollback_to_version(self, version: str) -> MigrationResult:
        self.manager.ensure_connected()
        return self.migrator.rollback_to_version(version)

    def get_current_version(self) -> str:
        self.manager.ensure_connected()
        return self.migrator.get_current_version()

    def get_migration_history(self, limit: int = 50) -> List[MigrationRecord]:
        self.manager.ensure_connected()
        return self.migrator.get_migration_history(limit)

    def validate_database_integrity(self) -> Dict[str, Any]:
        return self.migrator.validate_database_integrity()

    def cleanup_migration_logs(self, days_to_keep: int = 30) -> int:
        self.manager.ensure_connected()
        return self.migrator.cleanup_migration_logs(days_to_keep)
