"""Small shared helpers: timestamps, masking, bounded logs."""

import json
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Generic, Iterator, List, Optional, TypeVar

from dateutil import parser as date_parser

T = TypeVar("T")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp into an aware UTC datetime.

    Accepts datetimes, ISO strings, SQLite ``YYYY-MM-DD HH:MM:SS`` strings and
    epoch numbers (seconds, or milliseconds when large). Returns None for
    empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        try:
            return ensure_utc(date_parser.isoparse(value))
        except ValueError:
            try:
                return ensure_utc(date_parser.parse(value))
            except (ValueError, OverflowError):
                return None
    return None


def to_json(data: Any) -> Optional[str]:
    """Convert to JSON string."""
    if data is None:
        return None
    return json.dumps(data, default=str)


def from_json(value: Any) -> Any:
    """Parse a JSON column; drivers that decode JSON natively pass through."""
    if value is None or value == "":
        return None
    if not isinstance(value, (str, bytes)):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return None


def mask_secret(value: Optional[str]) -> Optional[str]:
    """Partially mask a credential for display: ``ab****yz``."""
    if value is None:
        return None
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:2]}{'*' * 4}{value[-2:]}"


class RingBuffer(Generic[T]):
    """Fixed-capacity log; appending past capacity evicts the oldest item."""

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._items: Deque[T] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, item: T) -> None:
        with self._lock:
            self._items.append(item)

    def items(self) -> List[T]:
        """Snapshot, oldest first."""
        with self._lock:
            return list(self._items)

    def latest(self, limit: Optional[int] = None) -> List[T]:
        """Newest first, optionally truncated."""
        snapshot = self.items()
        snapshot.reverse()
        return snapshot if limit is None else snapshot[:limit]

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self.items())
