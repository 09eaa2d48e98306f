"""Snapshot backups for the embedded SQLite database.

Backups are single files named ``database_YYYYMMDD_HHMMSS_ffffff_<reason>.sqlite``
in one directory. Only the newest ``max_backups`` are kept. A restore first
snapshots the current state as ``before-restore`` so it can be undone.
"""

import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from imagevault.logging_config import get_data_dir, log_database_event
from imagevault.utils import utc_now

from .sqlite import SQLiteStorage

logger = logging.getLogger(__name__)

BACKUP_DIR_NAME = "database-backups"
DEFAULT_MAX_BACKUPS = 10
DEFAULT_INTERVAL = 3600.0  # seconds

BACKUP_NAME = re.compile(r"^database_(\d{8}_\d{6}_\d{6})_([a-z0-9-]+)\.sqlite$")
STAMP_FORMAT = "%Y%m%d_%H%M%S_%f"
REASON_MAX_LENGTH = 32


def backup_reason(reason: Optional[str]) -> str:
    """Reduce a free-form reason to the ``[a-z0-9-]`` slug used in file names."""
    slug = re.sub(r"[^a-z0-9-]+", "-", (reason or "").strip().lower()).strip("-")
    return slug[:REASON_MAX_LENGTH].strip("-") or "manual"


@dataclass
class BackupInfo:
    name: str
    path: Path
    size: int
    created_at: datetime
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "path": str(self.path),
            "size": self.size,
            "created_at": self.created_at.isoformat(),
            "reason": self.reason,
        }


def parse_backup(path: Path) -> Optional[BackupInfo]:
    """BackupInfo for a file named like a backup, else None."""
    match = BACKUP_NAME.match(path.name)
    if not match:
        return None
    created_at = datetime.strptime(match.group(1), STAMP_FORMAT).replace(tzinfo=timezone.utc)
    return BackupInfo(
        name=path.name,
        path=path,
        size=path.stat().st_size,
        created_at=created_at,
        reason=match.group(2),
    )


class BackupService:
    """Backup, retention and restore for one SQLiteStorage."""

    def __init__(
        self,
        storage: SQLiteStorage,
        backup_dir: Optional[str] = None,
        max_backups: int = DEFAULT_MAX_BACKUPS,
        interval: float = DEFAULT_INTERVAL,
        clock: Callable[[], datetime] = utc_now,
    ):
        if max_backups < 1:
            raise ValueError("max_backups must be at least 1")
        if interval < 0:
            raise ValueError("Backup interval cannot be negative")
        self.storage = storage
        self.backup_dir = Path(backup_dir) if backup_dir else get_data_dir() / BACKUP_DIR_NAME
        self.max_backups = max_backups
        self.interval = interval
        self._clock = clock
        self.last_backup_at: Optional[datetime] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # === Backups ===

    def backup(self, reason: str = "manual", prune: bool = True) -> BackupInfo:
        """Snapshot the open database into the backup directory.

        Raises:
            DatabaseError: If the database is unreachable or the copy fails
        """
        slug = backup_reason(reason)
        now = self._clock()
        path = self.backup_dir / f"database_{now.strftime(STAMP_FORMAT)}_{slug}.sqlite"

        def op() -> BackupInfo:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            partial = path.with_name(path.name + ".partial")
            try:
                self.storage.driver.backup_to(partial)
                partial.replace(path)
            except Exception:
                partial.unlink(missing_ok=True)
                raise
            return parse_backup(path)

        info = self.storage.manager.execute_with_retry(op, "BACKUP", table_name="database", record_id=path.name)
        self.last_backup_at = now
        logger.info(f"Database backed up to {path} ({info.size} bytes)")
        log_database_event("backup", f"name={info.name}, reason={slug}, size={info.size}")
        if prune:
            self.prune()
        return info

    def list_backups(self) -> List[BackupInfo]:
        """Backups on disk, newest first."""
        if not self.backup_dir.is_dir():
            return []
        backups = [info for info in map(parse_backup, self.backup_dir.iterdir()) if info is not None]
        backups.sort(key=lambda info: (info.created_at, info.name), reverse=True)
        return backups

    def prune(self) -> List[str]:
        """Delete all but the newest ``max_backups`` backups. Returns removed names."""
        removed = []
        for info in self.list_backups()[self.max_backups:]:
            for path in (info.path, Path(f"{info.path}-wal"), Path(f"{info.path}-shm")):
                path.unlink(missing_ok=True)
            removed.append(info.name)
            logger.info(f"Removed old backup {info.name}")
        return removed

    def restore(self, name: str) -> BackupInfo:
        """Replace the database with backup ``name``.

        Returns the ``before-restore`` snapshot taken first.

        Raises:
            ValueError: If ``name`` is not a backup file name
            FileNotFoundError: If no such backup exists
            DatabaseError: If the snapshot or the restore fails
        """
        if not BACKUP_NAME.match(name or ""):
            raise ValueError(f"Invalid backup name: {name!r}")
        source = self.backup_dir / name
        if not source.is_file():
            raise FileNotFoundError(f"Backup not found: {name}")

        safety = self.backup("before-restore", prune=False)
        self.storage.manager.execute_with_retry(
            lambda: self.storage.driver.restore_from(source), "RESTORE_BACKUP", table_name="database", record_id=name
        )
        logger.info(f"Database restored from {name}; previous state saved as {safety.name}")
        log_database_event("restore", f"name={name}, saved_as={safety.name}")
        self.prune()
        return safety

    # === Auto backup ===

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start_auto_backup(self) -> None:
        if self.is_running:
            return
        if self.interval <= 0:
            logger.debug("Automatic backups disabled (interval=0)")
            return
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._stop_event,), name="imagevault-backup", daemon=True
        )
        self._thread.start()
        logger.info(f"Automatic backups every {self.interval}s into {self.backup_dir}")

    def stop_auto_backup(self) -> None:
        thread = self._thread
        self._stop_event.set()
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)
            logger.info("Automatic backups stopped")

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval):
            try:
                self.backup("auto")
            except Exception as e:
                logger.error(f"Automatic backup failed: {e}")

    def get_status(self) -> Dict[str, Any]:
        backups = self.list_backups()
        return {
            "backup_dir": str(self.backup_dir),
            "max_backups": self.max_backups,
            "interval": self.interval,
            "auto_backup": self.is_running,
            "last_backup_at": self.last_backup_at.isoformat() if self.last_backup_at else None,
            "count": len(backups),
            "latest": backups[0].name if backups else None,
        }
