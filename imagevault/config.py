"""Configuration settings for imagevault.

Read once from the environment (and an optional ``.env`` file) at startup.
Nothing in the API mutates these values; operators see them through
``Settings.redacted()`` with credentials masked.
"""

from functools import lru_cache
from typing import Any, Dict, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

from imagevault.storage.base import BackendKind, ConnectionConfig
from imagevault.utils import mask_secret


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Backend selection: "sqlite" (embedded) or "postgres" (networked)
    database_mode: BackendKind = BackendKind.SQLITE

    # Embedded backend
    sqlite_path: str = "./data/database.sqlite"

    # Networked backend
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "imagevault"
    db_user: str = "imagevault"
    db_password: Optional[str] = None
    db_ssl: bool = False
    db_enabled: bool = True
    db_pool_min_size: int = 1
    db_pool_max_size: int = 10
    db_connect_timeout: int = 10  # seconds

    # At-rest encryption for stored credentials
    encryption_key: Optional[str] = None

    # Monitoring
    monitor_interval: float = 30.0  # seconds

    # Embedded backups; interval 0 disables the timer
    db_backup_dir: Optional[str] = None  # default: <data dir>/database-backups
    db_backup_max_count: int = 10
    db_backup_interval: float = 3600.0  # seconds

    # Logging
    log_level: str = "INFO"
    log_dir: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model

    @field_validator("database_mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            # Older deployments called the networked backend "mysql"
            if value in ("mysql", "postgresql", "network", "networked"):
                return BackendKind.POSTGRES
        return value

    @field_validator("db_port")
    @classmethod
    def _check_port(cls, value: int) -> int:
        if not 1 <= value <= 65535:
            raise ValueError("db_port must be between 1 and 65535")
        return value

    @field_validator("db_backup_max_count")
    @classmethod
    def _check_backup_count(cls, value: int) -> int:
        if value < 1:
            raise ValueError("db_backup_max_count must be at least 1")
        return value

    @field_validator("db_backup_interval")
    @classmethod
    def _check_backup_interval(cls, value: float) -> float:
        if value < 0:
            raise ValueError("db_backup_interval cannot be negative")
        return value

    def connection_config(self) -> ConnectionConfig:
        """Build the connection target for the selected backend."""
        if self.database_mode == BackendKind.SQLITE:
            return ConnectionConfig(path=self.sqlite_path, enabled=True)
        return ConnectionConfig(
            host=self.db_host,
            port=self.db_port,
            database=self.db_name,
            username=self.db_user,
            password=self.db_password or "",
            ssl=self.db_ssl,
            enabled=self.db_enabled,
            connect_timeout=self.db_connect_timeout,
        )

    def redacted(self) -> Dict[str, Any]:
        """Operator view of the configuration with credentials masked."""
        return {
            "database_mode": self.database_mode.value,
            "sqlite_path": self.sqlite_path,
            "db_host": self.db_host,
            "db_port": self.db_port,
            "db_name": self.db_name,
            "db_user": self.db_user,
            "db_password": mask_secret(self.db_password),
            "db_ssl": self.db_ssl,
            "db_enabled": self.db_enabled,
            "db_pool_min_size": self.db_pool_min_size,
            "db_pool_max_size": self.db_pool_max_size,
            "encryption_key": mask_secret(self.encryption_key),
            "monitor_interval": self.monitor_interval,
            "db_backup_dir": self.db_backup_dir,
            "db_backup_max_count": self.db_backup_max_count,
            "db_backup_interval": self.db_backup_interval,
            "log_level": self.log_level,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
