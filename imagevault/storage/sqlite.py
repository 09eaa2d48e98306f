"""SQLite storage backend for imagevault.

Embedded, single-file storage:
- One long-lived connection guarded by a re-entrant lock, so the monitor
  thread can probe while request threads run statements
- WAL journal, busy timeout and foreign keys enabled on open
- Statements written in the Postgres dialect are translated on the way in
"""

import contextlib
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set

from .adapter import SQLStorage
from .base import BackendKind, ConnectionConfig
from .dialect import convert_params, translate_sql
from .driver import Driver, Session
from .schema import validate_table_name

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


class SQLiteSession(Session):
    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        cursor = self._conn.execute(translate_sql(sql), convert_params(params))
        return [dict(row) for row in cursor.fetchall()]

    def run(self, sql: str, params: Optional[Sequence[Any]] = None) -> int:
        cursor = self._conn.execute(translate_sql(sql), convert_params(params))
        return cursor.rowcount


class SQLiteDriver(Driver):
    """Driver for a single SQLite database file."""

    backend = BackendKind.SQLITE

    def __init__(self):
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._depth = 0
        self.db_path: Optional[str] = None

    def _resolve_path(self, path: str) -> str:
        if path == MEMORY_PATH:
            return path
        resolved = Path(path).expanduser().resolve()
        resolved.parent.mkdir(parents=True, exist_ok=True)
        return str(resolved)

    def open(self, config: ConnectionConfig) -> None:
        if not config.path:
            raise ValueError("SQLite backend requires a database path")
        db_path = self._resolve_path(config.path)
        conn = sqlite3.connect(
            db_path,
            timeout=config.connect_timeout,
            isolation_level=None,  # explicit BEGIN/COMMIT in transaction()
            check_same_thread=False,
        )
        try:
            conn.row_factory = sqlite3.Row
            if db_path != MEMORY_PATH:
                conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
            conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error:
            conn.close()
            raise
        with self._lock:
            self._conn = conn
            self._depth = 0
            self.db_path = db_path
        logger.debug(f"Opened SQLite database at {db_path}")

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                finally:
                    self._conn = None
                    self._depth = 0

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("Cannot operate on a closed database.")
        return self._conn

    def ping(self) -> None:
        with self._lock:
            self._require_conn().execute("SELECT 1").fetchone()

    @contextlib.contextmanager
    def transaction(self):
        """Context manager that handles BEGIN, COMMIT and ROLLBACK.

        Nested use joins the outer transaction.
        """
        with self._lock:
            conn = self._require_conn()
            if self._depth > 0:
                self._depth += 1
                try:
                    yield SQLiteSession(conn)
                finally:
                    self._depth -= 1
                return

            conn.execute("BEGIN")
            self._depth = 1
            try:
                yield SQLiteSession(conn)
                conn.execute("COMMIT")
            except Exception as e:
                logger.debug(f"Transaction failed, rolling back: {e}")
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                self._depth = 0

    def backup_to(self, dest: Path) -> None:
        """Write a consistent snapshot of the open database to ``dest``.

        Uses the online backup API, so committed WAL content is included and
        the copy is a single self-contained file.
        """
        with self._lock:
            conn = self._require_conn()
            target = sqlite3.connect(str(dest))
            try:
                conn.backup(target)
                target.execute("PRAGMA journal_mode=DELETE")
            finally:
                target.close()

    def restore_from(self, source: Path) -> None:
        """Replace the open database's contents with the snapshot at ``source``."""
        with self._lock:
            conn = self._require_conn()
            if self._depth > 0:
                raise sqlite3.OperationalError("cannot restore while a transaction is open")
            snapshot = sqlite3.connect(str(source))
            try:
                snapshot.backup(conn)
            finally:
                snapshot.close()
            if self.db_path != MEMORY_PATH:
                conn.execute("PRAGMA journal_mode=WAL")

    def table_exists(self, table: str) -> bool:
        row = self.query(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = %s", (table,)
        )
        return bool(row)

    def get_columns(self, table: str) -> Set[str]:
        rows = self.query(f"PRAGMA table_info({validate_table_name(table)})")
        return {row["name"] for row in rows}

    def get_indexes(self, table: str) -> Set[str]:
        rows = self.query(f"PRAGMA index_list({validate_table_name(table)})")
        return {row["name"] for row in rows}


class SQLiteStorage(SQLStorage):
    """Embedded backend: the shared SQL adapter over a SQLiteDriver."""

    backend = BackendKind.SQLITE
    driver_class = SQLiteDriver
