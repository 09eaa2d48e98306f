"""imagevault storage backends.

This module provides the persistence core: one storage contract, two
backends (embedded SQLite, networked Postgres), and the connection,
conflict and migration machinery they share. The Postgres backend is
imported on demand so embedded deployments never load the driver.
"""

from .base import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    BackendKind,
    ConflictInfo,
    ConflictResolution,
    ConflictType,
    ConnectionConfig,
    ConnectionStatus,
    ImageRecord,
    ImageStatus,
    OperationLogEntry,
    OperationStatus,
    PaginatedResult,
    PaginationOptions,
    ResolutionStrategy,
    Storage,
)
from .adapter import SQLStorage
from .conflicts import ConflictResolver, TimestampComparator
from .connection import ConnectionManager, RetryPolicy, RetryState
from .migrations import MigrationRecord, MigrationResult, SchemaMigrator, compare_versions
from .monitor import ConnectionMonitor, ConnectionQuality, QualityStats, StatusChangeEvent
from .sqlite import SQLiteStorage

__all__ = [
    # Protocol and types
    "Storage",
    "BackendKind",
    "ConnectionConfig",
    "ConnectionStatus",
    "ImageRecord",
    "ImageStatus",
    "OperationLogEntry",
    "OperationStatus",
    "PaginationOptions",
    "PaginatedResult",
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    # Conflicts
    "ConflictInfo",
    "ConflictResolution",
    "ConflictResolver",
    "ConflictType",
    "ResolutionStrategy",
    "TimestampComparator",
    # Connection and monitoring
    "ConnectionManager",
    "ConnectionMonitor",
    "ConnectionQuality",
    "QualityStats",
    "RetryPolicy",
    "RetryState",
    "StatusChangeEvent",
    # Migrations
    "MigrationRecord",
    "MigrationResult",
    "SchemaMigrator",
    "compare_versions",
    # Implementations
    "SQLStorage",
    "SQLiteStorage",
]
