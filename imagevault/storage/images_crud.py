"""Image CRUD statements shared by both backends.

All functions receive an open Session (one transaction) so the adapter
decides transaction scope and retry. SQL is written in the Postgres
dialect; the SQLite session translates it.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from imagevault.utils import from_json, parse_datetime

from .base import IMAGE_COLUMNS, ImageRecord, ImageStatus, PaginationOptions
from .driver import Session
from .schema import IMAGE_FILTERS, IMAGE_SORT_FIELDS, validate_sort_field

logger = logging.getLogger(__name__)

JSON_COLUMNS = ("ref_images", "tags")
BOOL_COLUMNS = ("favorite", "oss_uploaded", "is_deleted")
TIMESTAMP_COLUMNS = ("created_at", "updated_at", "deleted_at")

_COLUMN_LIST = ", ".join(IMAGE_COLUMNS)
_PLACEHOLDERS = ", ".join(["%s"] * len(IMAGE_COLUMNS))
_UPSERT_SET = ", ".join(
    f"{column} = EXCLUDED.{column}" for column in IMAGE_COLUMNS if column not in ("id", "created_at")
)


def row_to_image(row: Dict[str, Any]) -> ImageRecord:
    """Convert a database row (either backend) to an ImageRecord."""
    status = row.get("status") or ImageStatus.SUCCESS.value
    return ImageRecord(
        id=row["id"],
        url=row["url"],
        prompt=row["prompt"],
        model=row["model"],
        original_url=row.get("original_url"),
        aspect_ratio=row.get("aspect_ratio") or "auto",
        image_size=row.get("image_size") or "1K",
        ref_images=from_json(row.get("ref_images")),
        tags=from_json(row.get("tags")) or [],
        favorite=bool(row.get("favorite")),
        oss_key=row.get("oss_key"),
        oss_uploaded=bool(row.get("oss_uploaded")),
        user_id=row.get("user_id") or "default",
        project_id=row.get("project_id"),
        is_deleted=bool(row.get("is_deleted")),
        deleted_at=parse_datetime(row.get("deleted_at")),
        deleted_by=row.get("deleted_by"),
        canvas_x=row.get("canvas_x"),
        canvas_y=row.get("canvas_y"),
        thumbnail_url=row.get("thumbnail_url"),
        width=row.get("width"),
        height=row.get("height"),
        status=ImageStatus(status),
        failure_reason=row.get("failure_reason"),
        created_at=parse_datetime(row.get("created_at")),
        updated_at=parse_datetime(row.get("updated_at")),
    )


def row_to_comparable(row: Dict[str, Any]) -> Dict[str, Any]:
    """Normalized dict of a row, comparable with caller-supplied values."""
    data = dict(row)
    for column in JSON_COLUMNS:
        if column in data:
            data[column] = from_json(data[column])
    for column in BOOL_COLUMNS:
        if column in data and data[column] is not None:
            data[column] = bool(data[column])
    for column in TIMESTAMP_COLUMNS:
        if column in data:
            data[column] = parse_datetime(data[column])
    if isinstance(data.get("status"), ImageStatus):
        data["status"] = data["status"].value
    return data


def upsert_image(session: Session, image: ImageRecord, now: datetime) -> None:
    """Insert or overwrite an image row; ``created_at`` survives overwrites."""
    image.created_at = image.created_at or now
    image.updated_at = now
    values = [getattr(image, column) for column in IMAGE_COLUMNS]
    session.run(
        f"""
        INSERT INTO images ({_COLUMN_LIST})
        VALUES ({_PLACEHOLDERS})
        ON CONFLICT (id) DO UPDATE SET {_UPSERT_SET}
        """,
        values,
    )


def fetch_image(session: Session, image_id: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
    lock = " FOR UPDATE" if for_update else ""
    return session.query_one(f"SELECT * FROM images WHERE id = %s{lock}", (image_id,))


def build_image_filters(filters: Dict[str, Any], deleted_only: bool = False) -> Tuple[str, List[Any]]:
    """WHERE clause and params for an image listing.

    Raises:
        ValueError: On a filter key outside the allow-list
    """
    unknown = set(filters) - IMAGE_FILTERS
    if unknown:
        raise ValueError(f"Invalid filter(s): {', '.join(sorted(unknown))}")

    clauses: List[str] = []
    params: List[Any] = []

    if deleted_only:
        clauses.append("is_deleted = TRUE")
    elif not filters.get("include_deleted"):
        clauses.append("(is_deleted IS NULL OR is_deleted = FALSE)")

    for column in ("model", "user_id", "project_id"):
        if filters.get(column) is not None:
            clauses.append(f"{column} = %s")
            params.append(filters[column])

    for column in ("favorite", "oss_uploaded"):
        if filters.get(column) is not None:
            clauses.append(f"{column} = %s")
            params.append(bool(filters[column]))

    search = filters.get("search")
    if search:
        pattern = f"%{search}%"
        clauses.append("(prompt ILIKE %s OR CAST(tags AS TEXT) ILIKE %s)")
        params.extend([pattern, pattern])

    for key, operator in (("date_from", ">="), ("date_to", "<=")):
        if filters.get(key) is not None:
            bound = parse_datetime(filters[key])
            if bound is None:
                raise ValueError(f"Invalid {key}: {filters[key]!r}")
            clauses.append(f"created_at {operator} %s")
            params.append(bound)

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


def count_images(session: Session, where: str, params: List[Any]) -> int:
    row = session.query_one(f"SELECT COUNT(*) AS total FROM images {where}", params)
    return int(row["total"]) if row else 0


def select_images(
    session: Session, where: str, params: List[Any], options: PaginationOptions
) -> List[ImageRecord]:
    sort_by = validate_sort_field(options.sort_by, IMAGE_SORT_FIELDS)
    order = options.sort_order
    order_by = f"{sort_by} {order}" if sort_by == "id" else f"{sort_by} {order}, id {order}"
    rows = session.query(
        f"SELECT * FROM images {where} ORDER BY {order_by} LIMIT %s OFFSET %s",
        [*params, options.page_size, (options.page - 1) * options.page_size],
    )
    return [row_to_image(row) for row in rows]


def update_image_fields(session: Session, image_id: str, changes: Dict[str, Any], now: datetime) -> int:
    """Write ``changes`` plus a fresh ``updated_at``. Column names must be pre-validated."""
    assignments = ", ".join(f"{column} = %s" for column in changes)
    return session.run(
        f"UPDATE images SET {assignments}, updated_at = %s WHERE id = %s",
        [*changes.values(), now, image_id],
    )


def delete_image_row(session: Session, image_id: str) -> int:
    return session.run("DELETE FROM images WHERE id = %s", (image_id,))


def mark_deleted(session: Session, image_id: str, deleted_by: Optional[str], now: datetime) -> int:
    return session.run(
        """
        UPDATE images SET is_deleted = TRUE, deleted_at = %s, deleted_by = %s, updated_at = %s
        WHERE id = %s
        """,
        (now, deleted_by, now, image_id),
    )


def mark_restored(session: Session, image_id: str, now: datetime) -> int:
    return session.run(
        """
        UPDATE images SET is_deleted = FALSE, deleted_at = NULL, deleted_by = NULL, updated_at = %s
        WHERE id = %s
        """,
        (now, image_id),
    )
