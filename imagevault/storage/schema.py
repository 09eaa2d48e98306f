"""Schema DDL and allow-lists for imagevault storage.

Contains:
- DDL constants in the Postgres dialect (translated for SQLite by the driver)
- Table and sort-field allow-lists (validate_table_name, validate_sort_field)
- The required-structure map used by integrity validation
"""

import logging

logger = logging.getLogger(__name__)

# Allowed table names for SQL queries (security: prevents SQL injection via table names)
ALLOWED_TABLES = frozenset(
    {
        "images",
        "user_configs",
        "operation_logs",
        "schema_versions",
        "migration_logs",
        "user_sessions",
        "cache_entries",
    }
)

IMAGE_SORT_FIELDS = frozenset(
    {"id", "created_at", "updated_at", "deleted_at", "model", "favorite", "oss_uploaded"}
)
LOG_SORT_FIELDS = frozenset({"id", "created_at", "operation", "status", "duration"})

IMAGE_FILTERS = frozenset(
    {
        "model",
        "favorite",
        "search",
        "user_id",
        "project_id",
        "oss_uploaded",
        "date_from",
        "date_to",
        "include_deleted",
    }
)
LOG_FILTERS = frozenset({"operation", "status", "table_name", "user_id", "date_from", "date_to"})


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection.

    Raises:
        ValueError: If table name is not in allowlist
    """
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


def validate_sort_field(field: str, allowed: frozenset) -> str:
    if field not in allowed:
        raise ValueError(f"Invalid sort field: {field}")
    return field


HISTORY_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_versions (
    id BIGSERIAL PRIMARY KEY,
    version VARCHAR(20) NOT NULL UNIQUE,
    description TEXT,
    applied_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    applied_by VARCHAR(100) DEFAULT 'system',
    checksum VARCHAR(64),
    execution_time INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS migration_logs (
    id BIGSERIAL PRIMARY KEY,
    migration_id VARCHAR(100) NOT NULL,
    version VARCHAR(20) NOT NULL,
    operation VARCHAR(20) NOT NULL,
    status VARCHAR(20) NOT NULL,
    started_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    completed_at TIMESTAMPTZ,
    error_message TEXT,
    executed_scripts JSONB
);

CREATE INDEX IF NOT EXISTS idx_migration_logs_version ON migration_logs (version);
CREATE INDEX IF NOT EXISTS idx_migration_logs_started ON migration_logs (started_at)
"""

# 1.0.0 ---------------------------------------------------------------------

IMAGES_TABLE = """
CREATE TABLE IF NOT EXISTS images (
    id VARCHAR(64) PRIMARY KEY,
    url TEXT NOT NULL,
    original_url TEXT,
    prompt TEXT NOT NULL,
    model VARCHAR(100) NOT NULL,
    aspect_ratio VARCHAR(20) DEFAULT 'auto',
    image_size VARCHAR(10) DEFAULT '1K',
    ref_images JSONB,
    tags JSONB,
    favorite BOOLEAN DEFAULT FALSE,
    oss_key TEXT,
    oss_uploaded BOOLEAN DEFAULT FALSE,
    user_id VARCHAR(64) DEFAULT 'default',
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_images_created_at ON images (created_at);
CREATE INDEX IF NOT EXISTS idx_images_model ON images (model);
CREATE INDEX IF NOT EXISTS idx_images_favorite ON images (favorite);
CREATE INDEX IF NOT EXISTS idx_images_user_id ON images (user_id);
CREATE INDEX IF NOT EXISTS idx_images_oss_uploaded ON images (oss_uploaded)
"""

USER_CONFIGS_TABLE = """
CREATE TABLE IF NOT EXISTS user_configs (
    user_id VARCHAR(64) PRIMARY KEY,
    api_config JSONB,
    oss_config JSONB,
    preferences JSONB,
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
);

INSERT INTO user_configs (user_id, preferences)
VALUES ('default', '{"autoSync": true, "syncInterval": 300, "maxLocalImages": 1000, "theme": "dark"}')
ON CONFLICT (user_id) DO NOTHING
"""

OPERATION_LOGS_TABLE = """
CREATE TABLE IF NOT EXISTS operation_logs (
    id BIGSERIAL PRIMARY KEY,
    operation VARCHAR(50) NOT NULL,
    table_name VARCHAR(64) NOT NULL,
    record_id VARCHAR(255),
    user_id VARCHAR(64) DEFAULT 'default',
    status VARCHAR(10) DEFAULT 'SUCCESS',
    error_message TEXT,
    duration INTEGER,
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_logs_created_at ON operation_logs (created_at);
CREATE INDEX IF NOT EXISTS idx_logs_operation ON operation_logs (operation);
CREATE INDEX IF NOT EXISTS idx_logs_status ON operation_logs (status)
"""

# 1.1.0 ---------------------------------------------------------------------

COMPOSITE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_images_user_favorite ON images (user_id, favorite);
CREATE INDEX IF NOT EXISTS idx_images_model_created ON images (model, created_at);
CREATE INDEX IF NOT EXISTS idx_images_oss_status ON images (oss_uploaded, created_at);
CREATE INDEX IF NOT EXISTS idx_logs_table_operation ON operation_logs (table_name, operation);
CREATE INDEX IF NOT EXISTS idx_logs_status_created ON operation_logs (status, created_at)
"""

DROP_COMPOSITE_INDEXES = """
DROP INDEX IF EXISTS idx_images_user_favorite;
DROP INDEX IF EXISTS idx_images_model_created;
DROP INDEX IF EXISTS idx_images_oss_status;
DROP INDEX IF EXISTS idx_logs_table_operation;
DROP INDEX IF EXISTS idx_logs_status_created
"""

# 1.2.0 ---------------------------------------------------------------------

USER_SESSIONS_TABLE = """
CREATE TABLE IF NOT EXISTS user_sessions (
    id VARCHAR(64) PRIMARY KEY,
    user_id VARCHAR(64) NOT NULL,
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    last_accessed TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    expires_at TIMESTAMPTZ NOT NULL,
    data JSONB
);

CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON user_sessions (user_id);
CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON user_sessions (expires_at)
"""

CACHE_ENTRIES_TABLE = """
CREATE TABLE IF NOT EXISTS cache_entries (
    cache_key VARCHAR(255) PRIMARY KEY,
    cache_value TEXT NOT NULL,
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    expires_at TIMESTAMPTZ NOT NULL,
    access_count INTEGER DEFAULT 0,
    last_accessed TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_cache_expires_at ON cache_entries (expires_at)
"""

DROP_SESSION_CACHE_TABLES = """
DROP TABLE IF EXISTS user_sessions;
DROP TABLE IF EXISTS cache_entries
"""

# 1.3.0 ---------------------------------------------------------------------

IMAGE_LIFECYCLE_COLUMNS = """
ALTER TABLE images ADD COLUMN project_id VARCHAR(64);
ALTER TABLE images ADD COLUMN is_deleted BOOLEAN DEFAULT FALSE;
ALTER TABLE images ADD COLUMN deleted_at TIMESTAMPTZ;
ALTER TABLE images ADD COLUMN deleted_by VARCHAR(64);
ALTER TABLE images ADD COLUMN canvas_x DOUBLE PRECISION;
ALTER TABLE images ADD COLUMN canvas_y DOUBLE PRECISION;
ALTER TABLE images ADD COLUMN thumbnail_url TEXT;
ALTER TABLE images ADD COLUMN width INTEGER;
ALTER TABLE images ADD COLUMN height INTEGER;
ALTER TABLE images ADD COLUMN status VARCHAR(16) DEFAULT 'success';
ALTER TABLE images ADD COLUMN failure_reason TEXT;
CREATE INDEX IF NOT EXISTS idx_images_project ON images (project_id);
CREATE INDEX IF NOT EXISTS idx_images_deleted ON images (is_deleted, deleted_at)
"""

DROP_IMAGE_LIFECYCLE_COLUMNS = """
DROP INDEX IF EXISTS idx_images_project;
DROP INDEX IF EXISTS idx_images_deleted;
ALTER TABLE images DROP COLUMN failure_reason;
ALTER TABLE images DROP COLUMN status;
ALTER TABLE images DROP COLUMN height;
ALTER TABLE images DROP COLUMN width;
ALTER TABLE images DROP COLUMN thumbnail_url;
ALTER TABLE images DROP COLUMN canvas_y;
ALTER TABLE images DROP COLUMN canvas_x;
ALTER TABLE images DROP COLUMN deleted_by;
ALTER TABLE images DROP COLUMN deleted_at;
ALTER TABLE images DROP COLUMN is_deleted;
ALTER TABLE images DROP COLUMN project_id
"""

# What the application needs at the latest schema version
REQUIRED_COLUMNS = {
    "images": (
        "id",
        "url",
        "original_url",
        "prompt",
        "model",
        "aspect_ratio",
        "image_size",
        "ref_images",
        "tags",
        "favorite",
        "oss_key",
        "oss_uploaded",
        "user_id",
        "project_id",
        "is_deleted",
        "deleted_at",
        "deleted_by",
        "canvas_x",
        "canvas_y",
        "thumbnail_url",
        "width",
        "height",
        "status",
        "failure_reason",
        "created_at",
        "updated_at",
    ),
    "user_configs": ("user_id", "api_config", "oss_config", "preferences", "created_at", "updated_at"),
    "operation_logs": (
        "id",
        "operation",
        "table_name",
        "record_id",
        "user_id",
        "status",
        "error_message",
        "duration",
        "created_at",
    ),
    "schema_versions": ("version", "description", "applied_at", "applied_by", "checksum", "execution_time"),
    "migration_logs": (
        "migration_id",
        "version",
        "operation",
        "status",
        "started_at",
        "completed_at",
        "error_message",
        "executed_scripts",
    ),
}

REQUIRED_INDEXES = {
    "images": (
        "idx_images_created_at",
        "idx_images_model",
        "idx_images_favorite",
        "idx_images_user_id",
        "idx_images_oss_uploaded",
        "idx_images_deleted",
    ),
    "operation_logs": ("idx_logs_created_at", "idx_logs_operation", "idx_logs_status"),
}
