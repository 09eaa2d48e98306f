"""Statistics and operation-log queries.

Read-only aggregates over ``images`` and ``operation_logs`` plus log
retention. All functions receive an open Session.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from imagevault.utils import parse_datetime

from .base import DEFAULT_USER_ID, OperationLogEntry, OperationStatus, PaginationOptions
from .driver import Session
from .schema import LOG_FILTERS, LOG_SORT_FIELDS, validate_sort_field

logger = logging.getLogger(__name__)

STATS_FILTERS = frozenset({"user_id", "date_from", "date_to"})


def _number(value: Any) -> Optional[float]:
    # Postgres returns Decimal for AVG/SUM
    return None if value is None else float(value)


def _count(value: Any) -> int:
    return int(value or 0)


def time_range_thresholds(now: datetime) -> Dict[str, datetime]:
    """Start of today, this week (Monday), this month and this year, in UTC."""
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return {
        "today": today,
        "this_week": today - timedelta(days=today.weekday()),
        "this_month": today.replace(day=1),
        "this_year": today.replace(month=1, day=1),
    }


def build_stats_filters(filters: Optional[Dict[str, Any]], user_column: str = "user_id") -> Tuple[List[str], List[Any]]:
    """Clauses and params shared by the image and operation aggregates.

    Raises:
        ValueError: On an unknown filter key or an unparseable date
    """
    filters = filters or {}
    unknown = set(filters) - STATS_FILTERS
    if unknown:
        raise ValueError(f"Invalid statistics filter(s): {', '.join(sorted(unknown))}")

    clauses: List[str] = []
    params: List[Any] = []
    if filters.get("user_id"):
        clauses.append(f"{user_column} = %s")
        params.append(filters["user_id"])
    for key, operator in (("date_from", ">="), ("date_to", "<=")):
        if filters.get(key) is not None:
            bound = parse_datetime(filters[key])
            if bound is None:
                raise ValueError(f"Invalid {key}: {filters[key]!r}")
            clauses.append(f"created_at {operator} %s")
            params.append(bound)
    return clauses, params


def _where(clauses: List[str]) -> str:
    return f"WHERE {' AND '.join(clauses)}" if clauses else ""


def get_image_statistics(
    session: Session, filters: Optional[Dict[str, Any]], now: datetime
) -> Dict[str, Any]:
    clauses, params = build_stats_filters(filters)
    clauses = ["(is_deleted IS NULL OR is_deleted = FALSE)", *clauses]
    where = _where(clauses)

    totals = session.query_one(
        f"""
        SELECT
            COUNT(*) AS total,
            SUM(CASE WHEN favorite = TRUE THEN 1 ELSE 0 END) AS favorites,
            SUM(CASE WHEN oss_uploaded = TRUE THEN 1 ELSE 0 END) AS uploaded
        FROM images {where}
        """,
        params,
    ) or {}

    by_model_rows = session.query(
        f"SELECT model, COUNT(*) AS count FROM images {where} GROUP BY model ORDER BY count DESC",
        params,
    )

    thresholds = time_range_thresholds(now)
    ranges = session.query_one(
        f"""
        SELECT
            SUM(CASE WHEN created_at >= %s THEN 1 ELSE 0 END) AS today,
            SUM(CASE WHEN created_at >= %s THEN 1 ELSE 0 END) AS this_week,
            SUM(CASE WHEN created_at >= %s THEN 1 ELSE 0 END) AS this_month,
            SUM(CASE WHEN created_at >= %s THEN 1 ELSE 0 END) AS this_year
        FROM images {where}
        """,
        [*thresholds.values(), *params],
    ) or {}

    total = _count(totals.get("total"))
    uploaded = _count(totals.get("uploaded"))
    return {
        "total_images": total,
        "favorite_images": _count(totals.get("favorites")),
        "uploaded_images": uploaded,
        "pending_uploads": total - uploaded,
        "by_model": {row["model"]: _count(row["count"]) for row in by_model_rows},
        "by_time_range": {key: _count(ranges.get(key)) for key in thresholds},
    }


def get_operation_statistics(
    session: Session, filters: Optional[Dict[str, Any]], now: datetime
) -> Dict[str, Any]:
    clauses, params = build_stats_filters(filters)
    where = _where(clauses)

    totals = session.query_one(
        f"""
        SELECT
            COUNT(*) AS total,
            SUM(CASE WHEN status = 'SUCCESS' THEN 1 ELSE 0 END) AS successful,
            SUM(CASE WHEN status = 'FAILED' THEN 1 ELSE 0 END) AS failed,
            SUM(CASE WHEN created_at >= %s THEN 1 ELSE 0 END) AS recent,
            AVG(duration) AS avg_duration,
            MAX(duration) AS max_duration,
            MIN(duration) AS min_duration
        FROM operation_logs {where}
        """,
        [now - timedelta(hours=24), *params],
    ) or {}

    by_operation_rows = session.query(
        f"SELECT operation, COUNT(*) AS count FROM operation_logs {where} GROUP BY operation",
        params,
    )

    average = _number(totals.get("avg_duration"))
    return {
        "total": _count(totals.get("total")),
        "successful": _count(totals.get("successful")),
        "failed": _count(totals.get("failed")),
        "recent_24h": _count(totals.get("recent")),
        "by_operation": {row["operation"]: _count(row["count"]) for row in by_operation_rows},
        "average_duration": round(average, 2) if average is not None else 0.0,
        "slowest_duration": _count(totals.get("max_duration")),
        "fastest_duration": _count(totals.get("min_duration")),
    }


def row_to_log_entry(row: Dict[str, Any]) -> OperationLogEntry:
    return OperationLogEntry(
        id=row.get("id"),
        operation=row["operation"],
        table_name=row["table_name"],
        record_id=row.get("record_id"),
        user_id=row.get("user_id") or DEFAULT_USER_ID,
        status=OperationStatus(row.get("status") or OperationStatus.SUCCESS.value),
        error_message=row.get("error_message"),
        duration=row.get("duration"),
        created_at=parse_datetime(row.get("created_at")),
    )


def build_log_filters(filters: Dict[str, Any]) -> Tuple[str, List[Any]]:
    unknown = set(filters) - LOG_FILTERS
    if unknown:
        raise ValueError(f"Invalid filter(s): {', '.join(sorted(unknown))}")
    clauses: List[str] = []
    params: List[Any] = []
    for column in ("operation", "status", "table_name", "user_id"):
        value = filters.get(column)
        if value is not None:
            clauses.append(f"{column} = %s")
            params.append(value.value if isinstance(value, OperationStatus) else value)
    for key, operator in (("date_from", ">="), ("date_to", "<=")):
        if filters.get(key) is not None:
            bound = parse_datetime(filters[key])
            if bound is None:
                raise ValueError(f"Invalid {key}: {filters[key]!r}")
            clauses.append(f"created_at {operator} %s")
            params.append(bound)
    return _where(clauses), params


def count_operation_logs(session: Session, where: str, params: List[Any]) -> int:
    row = session.query_one(f"SELECT COUNT(*) AS total FROM operation_logs {where}", params)
    return int(row["total"]) if row else 0


def select_operation_logs(
    session: Session, where: str, params: List[Any], options: PaginationOptions
) -> List[OperationLogEntry]:
    sort_by = validate_sort_field(options.sort_by, LOG_SORT_FIELDS)
    order = options.sort_order
    order_by = f"{sort_by} {order}" if sort_by == "id" else f"{sort_by} {order}, id {order}"
    rows = session.query(
        f"SELECT * FROM operation_logs {where} ORDER BY {order_by} LIMIT %s OFFSET %s",
        [*params, options.page_size, (options.page - 1) * options.page_size],
    )
    return [row_to_log_entry(row) for row in rows]


def delete_operation_logs_before(session: Session, cutoff: datetime) -> int:
    return session.run("DELETE FROM operation_logs WHERE created_at < %s", (cutoff,))
