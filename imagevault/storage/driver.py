"""Driver interface: the raw engine handle behind a ConnectionManager.

A driver knows how to open one backend target, probe it, run statements in
a transaction and introspect the schema. It knows nothing about retries,
logging of operations or entities.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Any, Dict, List, Optional, Sequence, Set

from .base import BackendKind, ConnectionConfig


class Session(ABC):
    """Statement runner bound to one open transaction."""

    @abstractmethod
    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        """Run a statement and return all rows as dicts."""
        ...

    @abstractmethod
    def run(self, sql: str, params: Optional[Sequence[Any]] = None) -> int:
        """Run a statement and return the affected row count."""
        ...

    def query_one(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[Dict[str, Any]]:
        rows = self.query(sql, params)
        return rows[0] if rows else None


class Driver(ABC):
    backend: BackendKind

    @abstractmethod
    def open(self, config: ConnectionConfig) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    def ping(self) -> None:
        """Cheap round trip; raises on failure."""
        ...

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """Context manager yielding a Session; commits on success, rolls back on error."""
        ...

    @abstractmethod
    def table_exists(self, table: str) -> bool:
        ...

    @abstractmethod
    def get_columns(self, table: str) -> Set[str]:
        ...

    @abstractmethod
    def get_indexes(self, table: str) -> Set[str]:
        ...

    def connection_count(self) -> int:
        """Connections currently held open by this driver."""
        return 1 if self.is_open else 0

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        with self.transaction() as session:
            return session.query(sql, params)

    def run(self, sql: str, params: Optional[Sequence[Any]] = None) -> int:
        with self.transaction() as session:
            return session.run(sql, params)
