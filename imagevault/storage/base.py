"""Storage protocol and shared types for imagevault backends.

This defines the contract both backends implement:
- SQLiteStorage: embedded, file-backed
- PostgresStorage: networked, pooled
"""

import math
from abc import abstractmethod
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from imagevault.utils import utc_now

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
DEFAULT_USER_ID = "default"


class BackendKind(str, Enum):
    """Which storage engine a process runs against."""
    SQLITE = "sqlite"      # Embedded file-backed database
    POSTGRES = "postgres"  # Networked server with a connection pool


class OperationStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class ImageStatus(str, Enum):
    """Generation state of an image row."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class ConflictType(str, Enum):
    IMAGE_UPDATE = "IMAGE_UPDATE"                # images table
    CONFIG_UPDATE = "CONFIG_UPDATE"              # user_configs table
    CONCURRENT_OPERATION = "CONCURRENT_OPERATION"


class ResolutionStrategy(str, Enum):
    LATEST_WINS = "LATEST_WINS"    # Newer timestamp wins the whole record
    LOCAL_WINS = "LOCAL_WINS"      # Caller's write always wins
    REMOTE_WINS = "REMOTE_WINS"    # Stored row always wins
    MERGE_FIELDS = "MERGE_FIELDS"  # Per-field, newer side wins each conflicting field


@dataclass(frozen=True)
class ConnectionConfig:
    """One backend target. Replaced, never mutated, by a new connect()."""
    host: str = ""
    port: int = 5432
    database: str = ""
    username: str = ""
    password: str = ""
    path: str = ""           # Embedded backend file (or ":memory:")
    ssl: bool = False
    enabled: bool = True
    connect_timeout: int = 10  # seconds

    @property
    def is_embedded(self) -> bool:
        return bool(self.path)

    def validate(self) -> List[str]:
        """Return a list of problems; empty means valid."""
        if self.is_embedded:
            return []
        problems = []
        if not self.host or not self.host.strip():
            problems.append("host is required")
        if not self.database or not self.database.strip():
            problems.append("database is required")
        if not self.username or not self.username.strip():
            problems.append("username is required")
        if not self.password:
            problems.append("password is required")
        if not isinstance(self.port, int) or not 1 <= self.port <= 65535:
            problems.append("port must be between 1 and 65535")
        return problems

    def describe(self) -> str:
        """Target description without credentials."""
        if self.is_embedded:
            return f"sqlite:{self.path}"
        return f"postgres://{self.username}@{self.host}:{self.port}/{self.database}"


@dataclass
class ConnectionStatus:
    """Backend-agnostic connection state, owned by the ConnectionManager."""
    is_connected: bool = False
    last_connected: Optional[datetime] = None
    last_error: Optional[str] = None
    latency_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_connected": self.is_connected,
            "last_connected": self.last_connected.isoformat() if self.last_connected else None,
            "last_error": self.last_error,
            "latency_ms": self.latency_ms,
        }


@dataclass
class OperationLogEntry:
    """Append-only audit row written after each significant operation."""
    operation: str
    table_name: str
    record_id: Optional[str] = None
    status: OperationStatus = OperationStatus.SUCCESS
    error_message: Optional[str] = None
    duration: Optional[int] = None  # milliseconds
    user_id: str = DEFAULT_USER_ID
    created_at: datetime = field(default_factory=utc_now)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        return data


@dataclass
class ImageRecord:
    """A generated image and its storage metadata."""
    id: str
    url: str
    prompt: str
    model: str
    original_url: Optional[str] = None
    aspect_ratio: str = "auto"
    image_size: str = "1K"
    ref_images: Optional[List[Any]] = None
    tags: List[str] = field(default_factory=list)
    favorite: bool = False
    oss_key: Optional[str] = None
    oss_uploaded: bool = False
    user_id: str = DEFAULT_USER_ID
    project_id: Optional[str] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None
    canvas_x: Optional[float] = None
    canvas_y: Optional[float] = None
    thumbnail_url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    status: ImageStatus = ImageStatus.SUCCESS
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("created_at", "updated_at", "deleted_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


IMAGE_COLUMNS = tuple(f.name for f in fields(ImageRecord))

# Fields a caller may change through update(); identity and audit columns are excluded
UPDATABLE_IMAGE_FIELDS = frozenset(
    {
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
        "project_id",
        "canvas_x",
        "canvas_y",
        "thumbnail_url",
        "width",
        "height",
        "status",
        "failure_reason",
    }
)

# camelCase names used by HTTP collaborators
FIELD_ALIASES = {
    "originalUrl": "original_url",
    "aspectRatio": "aspect_ratio",
    "imageSize": "image_size",
    "refImages": "ref_images",
    "ossKey": "oss_key",
    "ossUploaded": "oss_uploaded",
    "userId": "user_id",
    "projectId": "project_id",
    "isDeleted": "is_deleted",
    "deletedAt": "deleted_at",
    "deletedBy": "deleted_by",
    "canvasX": "canvas_x",
    "canvasY": "canvas_y",
    "thumbnailUrl": "thumbnail_url",
    "failureReason": "failure_reason",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
}


def normalize_field_names(data: Dict[str, Any]) -> Dict[str, Any]:
    """Map camelCase keys onto column names; snake_case keys pass through."""
    return {FIELD_ALIASES.get(key, key): value for key, value in data.items()}


@dataclass
class PaginationOptions:
    """Page request. ``filters`` keys are checked against an allow-list."""
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    sort_by: Optional[str] = None
    sort_order: str = "DESC"
    filters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaginatedResult:
    data: List[Any]
    total: int
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    has_prev: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": [item.to_dict() if hasattr(item, "to_dict") else item for item in self.data],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
            "has_next": self.has_next,
            "has_prev": self.has_prev,
        }


def normalize_pagination(
    options: Optional[PaginationOptions],
    allowed_sort_fields: frozenset,
    default_sort: str = "created_at",
) -> PaginationOptions:
    """Validate a page request and fill defaults.

    Raises:
        ValueError: On a non-positive page, an out-of-range page size, a sort
            field outside the allow-list or an unknown sort order
    """
    options = options or PaginationOptions()
    if not isinstance(options.page, int) or options.page < 1:
        raise ValueError("page must be a positive integer")
    if not isinstance(options.page_size, int) or not 1 <= options.page_size <= MAX_PAGE_SIZE:
        raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
    sort_by = options.sort_by or default_sort
    if sort_by not in allowed_sort_fields:
        raise ValueError(f"Invalid sort field: {sort_by}")
    sort_order = (options.sort_order or "DESC").upper()
    if sort_order not in ("ASC", "DESC"):
        raise ValueError(f"Invalid sort order: {options.sort_order}")
    return PaginationOptions(
        page=options.page,
        page_size=options.page_size,
        sort_by=sort_by,
        sort_order=sort_order,
        filters=dict(options.filters or {}),
    )


def build_page(items: List[Any], total: int, options: PaginationOptions) -> PaginatedResult:
    total_pages = math.ceil(total / options.page_size) if total else 0
    return PaginatedResult(
        data=items,
        total=total,
        page=options.page,
        page_size=options.page_size,
        total_pages=total_pages,
        has_next=options.page < total_pages,
        has_prev=options.page > 1,
    )


@dataclass
class ConflictInfo:
    """A divergence between a caller's write and the stored row."""
    record_id: str
    table_name: str
    local_data: Dict[str, Any]
    remote_data: Dict[str, Any]
    local_timestamp: datetime
    remote_timestamp: datetime
    conflict_type: ConflictType
    conflicting_fields: List[str] = field(default_factory=list)
    detected_at: datetime = field(default_factory=utc_now)


@dataclass
class ConflictResolution:
    resolved: bool
    final_data: Dict[str, Any]
    strategy: ResolutionStrategy
    conflict_info: ConflictInfo
    message: str
    resolved_at: datetime = field(default_factory=utc_now)


@runtime_checkable
class Storage(Protocol):
    """Protocol defining the persistence contract.

    Both backends implement it; the DatabaseManager forwards to exactly one.
    """

    backend: BackendKind

    # === Connection ===

    @abstractmethod
    def connect(self, config: ConnectionConfig) -> bool:
        ...

    @abstractmethod
    def disconnect(self) -> None:
        ...

    @abstractmethod
    def test_connection(self, config: Optional[ConnectionConfig] = None) -> Any:
        """Bool for the active connection; ``{success, latency_ms, error}`` for a config."""
        ...

    @abstractmethod
    def get_connection_status(self) -> ConnectionStatus:
        ...

    # === Images ===

    @abstractmethod
    def save_image(self, image: ImageRecord) -> ImageRecord:
        ...

    @abstractmethod
    def get_images(self, options: Optional[PaginationOptions] = None) -> PaginatedResult:
        ...

    @abstractmethod
    def get_image(self, image_id: str) -> Optional[ImageRecord]:
        ...

    @abstractmethod
    def update_image(self, image_id: str, updates: Dict[str, Any]) -> ImageRecord:
        ...

    @abstractmethod
    def delete_image(self, image_id: str) -> None:
        ...

    @abstractmethod
    def delete_images(self, image_ids: List[str]) -> Dict[str, Any]:
        ...

    # === Configuration ===

    @abstractmethod
    def save_secret_config(self, kind: str, config: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def get_secret_config(self, kind: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def delete_secret_config(self, kind: str) -> None:
        ...

    # === Operational ===

    @abstractmethod
    def initialize_schema(self) -> Any:
        ...

    @abstractmethod
    def get_statistics(self, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        ...

    @abstractmethod
    def get_operation_logs(self, options: Optional[PaginationOptions] = None) -> PaginatedResult:
        ...
