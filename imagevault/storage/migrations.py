"""Versioned schema migration with rollback and integrity validation.

Each catalog version is applied in its own transaction together with its
``schema_versions`` row, so a failure leaves every earlier version committed
and the operator can retry from the failing one. ``migration_logs`` keeps a
STARTED/SUCCESS/FAILED trail per attempt.
"""

import hashlib
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from imagevault.errors import DatabaseError
from imagevault.logging_config import log_migration
from imagevault.utils import parse_datetime, utc_now

from . import schema
from .base import OperationStatus
from .connection import ConnectionManager
from .dialect import split_statements

logger = logging.getLogger(__name__)

BASE_VERSION = "0.0.0"
DEFAULT_HISTORY_LIMIT = 50
DEFAULT_LOG_RETENTION_DAYS = 30


def parse_version(version: str) -> Tuple[int, ...]:
    try:
        return tuple(int(part) for part in version.split("."))
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid version: {version!r}")


def compare_versions(a: str, b: str) -> int:
    """Semver-style comparison: -1, 0 or 1."""
    left, right = parse_version(a), parse_version(b)
    width = max(len(left), len(right))
    left += (0,) * (width - len(left))
    right += (0,) * (width - len(right))
    return (left > right) - (left < right)


@dataclass
class MigrationScript:
    id: str
    name: str
    description: str
    sql: str
    execution_order: int = 0

    @property
    def statements(self) -> List[str]:
        return split_statements(self.sql)


@dataclass
class MigrationVersion:
    version: str
    description: str
    scripts: List[MigrationScript]
    rollback_scripts: List[MigrationScript] = field(default_factory=list)

    @property
    def checksum(self) -> str:
        digest = hashlib.sha256()
        for script in sorted(self.scripts, key=lambda s: s.execution_order):
            digest.update(script.sql.encode("utf-8"))
        return digest.hexdigest()

    @property
    def has_rollback(self) -> bool:
        return bool(self.rollback_scripts)


@dataclass
class MigrationRecord:
    """One applied version as stored in ``schema_versions``."""
    version: str
    description: Optional[str]
    applied_at: Optional[datetime]
    applied_by: Optional[str]
    checksum: Optional[str]
    execution_time: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "description": self.description,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
            "applied_by": self.applied_by,
            "checksum": self.checksum,
            "execution_time": self.execution_time,
        }


@dataclass
class MigrationResult:
    success: bool
    version: str
    executed_scripts: List[str] = field(default_factory=list)
    failed_script: Optional[str] = None
    error: Optional[str] = None
    duration: int = 0  # milliseconds
    rollback_available: bool = False
    exception: Optional[BaseException] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "version": self.version,
            "executed_scripts": list(self.executed_scripts),
            "failed_script": self.failed_script,
            "error": self.error,
            "duration": self.duration,
            "rollback_available": self.rollback_available,
        }


def _script(version: str, order: int, name: str, description: str, sql: str) -> MigrationScript:
    return MigrationScript(
        id=f"{version}_{order:03d}_{name}",
        name=name,
        description=description,
        sql=sql,
        execution_order=order,
    )


def default_catalog() -> List[MigrationVersion]:
    return [
        MigrationVersion(
            version="1.0.0",
            description="Base tables: images, user configs, operation logs",
            scripts=[
                _script("1.0.0", 1, "create_images", "Create images table", schema.IMAGES_TABLE),
                _script("1.0.0", 2, "create_user_configs", "Create user configs table", schema.USER_CONFIGS_TABLE),
                _script("1.0.0", 3, "create_operation_logs", "Create operation logs table", schema.OPERATION_LOGS_TABLE),
            ],
        ),
        MigrationVersion(
            version="1.1.0",
            description="Composite indexes for common queries",
            scripts=[_script("1.1.0", 1, "composite_indexes", "Add composite indexes", schema.COMPOSITE_INDEXES)],
            rollback_scripts=[
                _script("1.1.0", 1, "drop_composite_indexes", "Drop composite indexes", schema.DROP_COMPOSITE_INDEXES)
            ],
        ),
        MigrationVersion(
            version="1.2.0",
            description="User sessions and cache entries",
            scripts=[
                _script("1.2.0", 1, "create_user_sessions", "Create user sessions table", schema.USER_SESSIONS_TABLE),
                _script("1.2.0", 2, "create_cache_entries", "Create cache entries table", schema.CACHE_ENTRIES_TABLE),
            ],
            rollback_scripts=[
                _script("1.2.0", 1, "drop_session_cache", "Drop sessions and cache", schema.DROP_SESSION_CACHE_TABLES)
            ],
        ),
        MigrationVersion(
            version="1.3.0",
            description="Project, trash, canvas and generation status columns on images",
            scripts=[
                _script("1.3.0", 1, "image_lifecycle", "Add image lifecycle columns", schema.IMAGE_LIFECYCLE_COLUMNS)
            ],
            rollback_scripts=[
                _script("1.3.0", 1, "drop_image_lifecycle", "Drop image lifecycle columns", schema.DROP_IMAGE_LIFECYCLE_COLUMNS)
            ],
        ),
    ]


class SchemaMigrator:
    """Applies and rolls back catalog versions through a ConnectionManager."""

    def __init__(
        self,
        manager: ConnectionManager,
        catalog: Optional[Sequence[MigrationVersion]] = None,
        applied_by: str = "system",
    ):
        self.manager = manager
        self.catalog = sorted(
            catalog if catalog is not None else default_catalog(),
            key=lambda v: parse_version(v.version),
        )
        self.applied_by = applied_by

    @property
    def driver(self):
        return self.manager.driver

    # === Catalog ===

    def get_available_versions(self) -> List[str]:
        return [v.version for v in self.catalog]

    def get_latest_version(self) -> str:
        return self.catalog[-1].version if self.catalog else BASE_VERSION

    def _find(self, version: str) -> MigrationVersion:
        for entry in self.catalog:
            if entry.version == version:
                return entry
        raise ValueError(f"Unknown schema version: {version}")

    def is_rollback_available(self, version: str) -> bool:
        try:
            return self._find(version).has_rollback
        except ValueError:
            return False

    # === History ===

    def ensure_history_tables(self) -> None:
        with self.driver.transaction() as session:
            for statement in split_statements(schema.HISTORY_SCHEMA):
                session.run(statement)

    def get_applied_versions(self) -> List[str]:
        self.ensure_history_tables()
        rows = self.driver.query("SELECT version FROM schema_versions")
        versions = [row["version"] for row in rows]
        return sorted(versions, key=parse_version)

    def get_current_version(self) -> str:
        """Highest applied version, bootstrapping the history tables if needed."""
        applied = self.get_applied_versions()
        return applied[-1] if applied else BASE_VERSION

    def get_migration_history(self, limit: int = DEFAULT_HISTORY_LIMIT) -> List[MigrationRecord]:
        self.ensure_history_tables()
        rows = self.driver.query(
            """
            SELECT version, description, applied_at, applied_by, checksum, execution_time
            FROM schema_versions ORDER BY applied_at DESC, id DESC LIMIT %s
            """,
            (limit,),
        )
        return [
            MigrationRecord(
                version=row["version"],
                description=row.get("description"),
                applied_at=parse_datetime(row.get("applied_at")),
                applied_by=row.get("applied_by"),
                checksum=row.get("checksum"),
                execution_time=row.get("execution_time") or 0,
            )
            for row in rows
        ]

    def get_version_comparison(self, target: Optional[str] = None) -> Dict[str, Any]:
        target = target or self.get_latest_version()
        current = self.get_current_version()
        direction = compare_versions(target, current)
        if direction > 0:
            pending = [
                v.version
                for v in self.catalog
                if compare_versions(v.version, current) > 0 and compare_versions(v.version, target) <= 0
            ]
        elif direction < 0:
            pending = [
                v.version
                for v in reversed(self.catalog)
                if compare_versions(v.version, target) > 0 and compare_versions(v.version, current) <= 0
            ]
        else:
            pending = []
        return {
            "current": current,
            "target": target,
            "direction": {1: "upgrade", -1: "downgrade", 0: "none"}[direction],
            "versions": pending,
            "rollback_available": direction < 0 and all(self.is_rollback_available(v) for v in pending),
        }

    def _log_start(self, version: str, operation: str) -> str:
        migration_id = f"{version}_{operation.lower()}_{int(time.time() * 1000)}"
        try:
            self.driver.run(
                """
                INSERT INTO migration_logs (migration_id, version, operation, status, started_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (migration_id, version, operation, "STARTED", utc_now()),
            )
        except Exception as e:
            logger.warning(f"Failed to write migration log for {version}: {e}")
        return migration_id

    def _log_finish(self, migration_id: str, status: str, scripts: List[str], error: Optional[str] = None) -> None:
        try:
            self.driver.run(
                """
                UPDATE migration_logs SET status = %s, completed_at = %s, error_message = %s, executed_scripts = %s
                WHERE migration_id = %s
                """,
                (status, utc_now(), error, list(scripts), migration_id),
            )
        except Exception as e:
            logger.warning(f"Failed to update migration log {migration_id}: {e}")

    # === Upgrade ===

    def migrate_to_version(self, target: Optional[str] = None) -> MigrationResult:
        """Bring the schema to ``target`` (latest when omitted).

        A target below the current version delegates to rollback. Reapplying
        the current version is a no-op.

        Raises:
            ValueError: If the target is not in the catalog
        """
        target = target or self.get_latest_version()
        if target != BASE_VERSION:
            self._find(target)
        current = self.get_current_version()

        direction = compare_versions(target, current)
        if direction < 0:
            return self.rollback_to_version(target)
        if direction == 0:
            logger.info(f"Schema already at version {target}")
            return MigrationResult(success=True, version=target, rollback_available=self.is_rollback_available(target))

        result = self._upgrade(current, target)
        self.manager.log_operation(
            "MIGRATE",
            "schema_versions",
            target,
            OperationStatus.SUCCESS if result.success else OperationStatus.FAILED,
            error_message=result.error,
            duration=result.duration,
        )
        return result

    def _upgrade(self, current: str, target: str) -> MigrationResult:
        start = time.monotonic()
        applied = set(self.get_applied_versions())
        pending = [
            v
            for v in self.catalog
            if v.version not in applied
            and compare_versions(v.version, current) > 0
            and compare_versions(v.version, target) <= 0
        ]
        logger.info(f"Migrating schema {current} -> {target} ({len(pending)} version(s))")

        executed: List[str] = []
        for version in pending:
            version_start = time.monotonic()
            migration_id = self._log_start(version.version, "UPGRADE")
            version_scripts: List[str] = []
            try:
                self.manager.execute_with_retry(
                    lambda: self._apply_version(version, version_scripts, version_start),
                    f"MIGRATE_{version.version}",
                    table_name="schema_versions",
                    record_id=version.version,
                    audit=False,
                )
            except DatabaseError as e:
                failed_script = self._failed_script(version.scripts, version_scripts)
                elapsed = int((time.monotonic() - version_start) * 1000)
                self._log_finish(migration_id, "FAILED", version_scripts, e.original_message)
                log_migration(self.manager.backend.value, "UPGRADE", version.version, False, elapsed)
                logger.error(f"Migration to {version.version} failed at {failed_script}: {e.original_message}")
                return MigrationResult(
                    success=False,
                    version=version.version,
                    executed_scripts=executed,
                    failed_script=failed_script,
                    error=e.original_message,
                    duration=int((time.monotonic() - start) * 1000),
                    rollback_available=False,
                    exception=e,
                )

            elapsed = int((time.monotonic() - version_start) * 1000)
            executed.extend(version_scripts)
            self._log_finish(migration_id, "SUCCESS", version_scripts)
            log_migration(self.manager.backend.value, "UPGRADE", version.version, True, elapsed)
            logger.info(f"Applied schema version {version.version} in {elapsed}ms")

        return MigrationResult(
            success=True,
            version=target,
            executed_scripts=executed,
            duration=int((time.monotonic() - start) * 1000),
            rollback_available=self.is_rollback_available(target),
        )

    @staticmethod
    def _failed_script(scripts: List[MigrationScript], done: List[str]) -> Optional[str]:
        for script in sorted(scripts, key=lambda s: s.execution_order):
            if script.id not in done:
                return script.id
        return None

    def _apply_version(self, version: MigrationVersion, executed: List[str], started: float) -> None:
        # A retried attempt starts from a rolled-back transaction
        executed.clear()
        with self.driver.transaction() as session:
            for script in sorted(version.scripts, key=lambda s: s.execution_order):
                for statement in script.statements:
                    session.run(statement)
                executed.append(script.id)
            session.run(
                """
                INSERT INTO schema_versions (version, description, applied_at, applied_by, checksum, execution_time)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    version.version,
                    version.description,
                    utc_now(),
                    self.applied_by,
                    version.checksum,
                    int((time.monotonic() - started) * 1000),
                ),
            )

    # === Rollback ===

    def rollback_to_version(self, target: str) -> MigrationResult:
        """Undo applied versions above ``target``, newest first.

        Refuses up front (without touching the schema) when any version to be
        undone has no rollback scripts.

        Raises:
            ValueError: If ``target`` is not below the current version
        """
        if target != BASE_VERSION:
            self._find(target)
        current = self.get_current_version()
        if compare_versions(target, current) >= 0:
            raise ValueError(f"Rollback target {target} must be below current version {current}")

        result = self._downgrade(target)
        self.manager.log_operation(
            "ROLLBACK",
            "schema_versions",
            target,
            OperationStatus.SUCCESS if result.success else OperationStatus.FAILED,
            error_message=result.error,
            duration=result.duration,
        )
        return result

    def _downgrade(self, target: str) -> MigrationResult:
        start = time.monotonic()
        applied = set(self.get_applied_versions())
        to_undo = [
            v for v in reversed(self.catalog) if v.version in applied and compare_versions(v.version, target) > 0
        ]
        missing = [v.version for v in to_undo if not v.has_rollback]
        if missing:
            error = f"No rollback scripts for version(s): {', '.join(missing)}"
            logger.error(error)
            return MigrationResult(success=False, version=target, error=error, rollback_available=False)

        executed: List[str] = []
        for version in to_undo:
            version_start = time.monotonic()
            migration_id = self._log_start(version.version, "ROLLBACK")
            version_scripts: List[str] = []
            try:
                self.manager.execute_with_retry(
                    lambda: self._undo_version(version, version_scripts),
                    f"ROLLBACK_{version.version}",
                    table_name="schema_versions",
                    record_id=version.version,
                    audit=False,
                )
            except DatabaseError as e:
                elapsed = int((time.monotonic() - version_start) * 1000)
                self._log_finish(migration_id, "FAILED", version_scripts, e.original_message)
                log_migration(self.manager.backend.value, "ROLLBACK", version.version, False, elapsed)
                logger.error(f"Rollback of {version.version} failed: {e.original_message}")
                return MigrationResult(
                    success=False,
                    version=version.version,
                    executed_scripts=executed,
                    failed_script=self._failed_script(version.rollback_scripts, version_scripts),
                    error=e.original_message,
                    duration=int((time.monotonic() - start) * 1000),
                    exception=e,
                )

            elapsed = int((time.monotonic() - version_start) * 1000)
            executed.extend(version_scripts)
            self._log_finish(migration_id, "ROLLED_BACK", version_scripts)
            log_migration(self.manager.backend.value, "ROLLBACK", version.version, True, elapsed)
            logger.info(f"Rolled back schema version {version.version}")

        return MigrationResult(
            success=True,
            version=target,
            executed_scripts=executed,
            duration=int((time.monotonic() - start) * 1000),
            rollback_available=self.is_rollback_available(target),
        )

    def _undo_version(self, version: MigrationVersion, executed: List[str]) -> None:
        executed.clear()
        with self.driver.transaction() as session:
            for script in sorted(version.rollback_scripts, key=lambda s: s.execution_order):
                for statement in script.statements:
                    session.run(statement)
                executed.append(script.id)
            session.run("DELETE FROM schema_versions WHERE version = %s", (version.version,))

    # === Maintenance ===

    def validate_database_integrity(self) -> Dict[str, Any]:
        """Report missing tables, columns and indexes. Never raises."""
        issues: List[str] = []
        recommendations: List[str] = []
        current = None
        try:
            for table, columns in schema.REQUIRED_COLUMNS.items():
                if not self.driver.table_exists(table):
                    issues.append(f"Missing table: {table}")
                    continue
                existing = self.driver.get_columns(table)
                for column in columns:
                    if column not in existing:
                        issues.append(f"Missing column: {table}.{column}")

            for table, indexes in schema.REQUIRED_INDEXES.items():
                if not self.driver.table_exists(table):
                    continue
                existing = self.driver.get_indexes(table)
                for index in indexes:
                    if index not in existing:
                        issues.append(f"Missing index: {index} on {table}")

            current = self.get_current_version()
            latest = self.get_latest_version()
            if compare_versions(current, latest) < 0:
                issues.append(f"Schema version {current} is behind latest {latest}")
        except Exception as e:
            logger.error(f"Integrity validation failed: {e}")
            issues.append(f"Integrity check could not complete: {e}")
            recommendations.append("Check the database connection and retry validation")

        if issues:
            recommendations.append("Run pending migrations (imagevault migrate)")
        return {
            "valid": not issues,
            "issues": issues,
            "recommendations": recommendations,
            "current_version": current,
        }

    def cleanup_migration_logs(self, days_to_keep: int = DEFAULT_LOG_RETENTION_DAYS) -> int:
        """Delete migration log rows older than the retention window."""
        if days_to_keep < 0:
            raise ValueError("days_to_keep must be non-negative")
        self.ensure_history_tables()
        cutoff = utc_now() - timedelta(days=days_to_keep)
        removed = self.driver.run("DELETE FROM migration_logs WHERE started_at < %s", (cutoff,))
        logger.info(f"Removed {removed} migration log row(s) older than {days_to_keep} days")
        return removed
