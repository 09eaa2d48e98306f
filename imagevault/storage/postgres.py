"""Postgres storage backend for imagevault.

Networked storage over a small psycopg connection pool. Statements are
already in the Postgres dialect; only parameters are adapted (JSON columns
are wrapped in ``Jsonb``, str enums are sent by value).
"""

import contextlib
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set

from psycopg.conninfo import make_conninfo
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from .adapter import SQLStorage
from .base import BackendKind, ConnectionConfig
from .driver import Driver, Session

logger = logging.getLogger(__name__)


def adapt_param(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return Jsonb(value)
    if isinstance(value, Enum):
        return value.value
    return value


class PostgresSession(Session):
    def __init__(self, conn):
        self._conn = conn

    def _execute(self, sql: str, params: Optional[Sequence[Any]]):
        if params:
            return self._conn.execute(sql, [adapt_param(p) for p in params])
        return self._conn.execute(sql)

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        cursor = self._execute(sql, params)
        if cursor.description is None:
            return []
        return list(cursor.fetchall())

    def run(self, sql: str, params: Optional[Sequence[Any]] = None) -> int:
        return self._execute(sql, params).rowcount


class PostgresDriver(Driver):
    """Driver holding a psycopg ConnectionPool for one server."""

    backend = BackendKind.POSTGRES

    def __init__(self, min_size: int = 1, max_size: int = 10):
        self.min_size = min_size
        self.max_size = max(max_size, min_size)
        self.pool: Optional[ConnectionPool] = None

    @staticmethod
    def build_conninfo(config: ConnectionConfig) -> str:
        return make_conninfo(
            host=config.host,
            port=config.port,
            dbname=config.database,
            user=config.username,
            password=config.password,
            sslmode="require" if config.ssl else "prefer",
            connect_timeout=config.connect_timeout,
            application_name="imagevault",
        )

    def open(self, config: ConnectionConfig) -> None:
        pool = ConnectionPool(
            self.build_conninfo(config),
            min_size=self.min_size,
            max_size=self.max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            name="imagevault",
            open=False,
        )
        try:
            pool.open(wait=True, timeout=float(config.connect_timeout))
        except Exception:
            pool.close()
            raise
        self.pool = pool
        logger.debug(f"Opened Postgres pool for {config.describe()}")

    def close(self) -> None:
        if self.pool is not None:
            try:
                self.pool.close()
            finally:
                self.pool = None

    @property
    def is_open(self) -> bool:
        return self.pool is not None and not self.pool.closed

    def _require_pool(self) -> ConnectionPool:
        if self.pool is None:
            raise ConnectionError("Postgres pool is not open")
        return self.pool

    def ping(self) -> None:
        with self._require_pool().connection() as conn:
            conn.execute("SELECT 1")

    @contextlib.contextmanager
    def transaction(self):
        with self._require_pool().connection() as conn:
            with conn.transaction():
                yield PostgresSession(conn)

    def table_exists(self, table: str) -> bool:
        row = self.query("SELECT to_regclass(%s) AS oid", (table,))
        return bool(row and row[0].get("oid"))

    def get_columns(self, table: str) -> Set[str]:
        rows = self.query(
            """
            SELECT column_name FROM information_schema.columns
            WHERE table_schema = current_schema() AND table_name = %s
            """,
            (table,),
        )
        return {row["column_name"] for row in rows}

    def get_indexes(self, table: str) -> Set[str]:
        rows = self.query(
            "SELECT indexname FROM pg_indexes WHERE schemaname = current_schema() AND tablename = %s",
            (table,),
        )
        return {row["indexname"] for row in rows}

    def connection_count(self) -> int:
        if not self.is_open:
            return 0
        stats = self.pool.get_stats()
        return max(stats.get("pool_size", 0) - stats.get("pool_available", 0), 0)


class PostgresStorage(SQLStorage):
    """Networked backend: the shared SQL adapter over a PostgresDriver."""

    backend = BackendKind.POSTGRES
    driver_class = PostgresDriver
