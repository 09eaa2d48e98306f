"""Optimistic conflict detection and resolution for concurrent updates.

Detection compares the caller's baseline timestamp with the row just read
inside the update transaction. The comparison is pluggable so row versions
or vector clocks can replace timestamps without touching callers.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from imagevault.utils import EPOCH, RingBuffer, parse_datetime, utc_now

from .base import (
    ConflictInfo,
    ConflictResolution,
    ConflictType,
    ResolutionStrategy,
)

logger = logging.getLogger(__name__)

CONFLICT_LOG_CAPACITY = 100
RECENT_WINDOW = timedelta(hours=1)

TIMESTAMP_FIELDS = ("updated_at", "updatedAt", "created_at", "createdAt")
IGNORED_FIELDS = frozenset({"id", *TIMESTAMP_FIELDS})

CONFLICT_TYPES = {
    "images": ConflictType.IMAGE_UPDATE,
    "user_configs": ConflictType.CONFIG_UPDATE,
}


def extract_timestamp(data: Dict[str, Any]) -> datetime:
    """First parseable timestamp field of a record; the epoch when none."""
    for key in TIMESTAMP_FIELDS:
        parsed = parse_datetime(data.get(key))
        if parsed is not None:
            return parsed
    return EPOCH


def conflict_type_for(table_name: str) -> ConflictType:
    return CONFLICT_TYPES.get(table_name, ConflictType.CONCURRENT_OPERATION)


def find_conflicting_fields(local: Dict[str, Any], remote: Dict[str, Any]) -> List[str]:
    """Fields present on both sides whose values differ."""
    return sorted(
        key
        for key in set(local) & set(remote)
        if key not in IGNORED_FIELDS and local[key] != remote[key]
    )


class TimestampComparator:
    """Default comparator: the stored row wins detection when strictly newer."""

    def timestamp(self, data: Dict[str, Any]) -> datetime:
        return extract_timestamp(data)

    def is_stale(self, local: Dict[str, Any], remote: Dict[str, Any]) -> bool:
        return self.timestamp(remote) > self.timestamp(local)


class ConflictResolver:
    """Detects stale writes and picks a winner per strategy.

    Every detected conflict is kept in a bounded ring buffer for the stats
    and log views, whether or not it was resolved.
    """

    def __init__(self, comparator: Optional[TimestampComparator] = None, capacity: int = CONFLICT_LOG_CAPACITY):
        self.comparator = comparator or TimestampComparator()
        self._log: RingBuffer[ConflictInfo] = RingBuffer(capacity)

    def detect_conflict(
        self,
        local_data: Dict[str, Any],
        remote_data: Dict[str, Any],
        record_id: str,
        table_name: str,
    ) -> Optional[ConflictInfo]:
        """Return a ConflictInfo when the stored row is newer than the caller's baseline.

        A conflict is reported even when no field differs: the caller still
        wrote against an outdated view of the row.
        """
        if not remote_data:
            return None
        if not self.comparator.is_stale(local_data, remote_data):
            return None

        info = ConflictInfo(
            record_id=record_id,
            table_name=table_name,
            local_data=dict(local_data),
            remote_data=dict(remote_data),
            local_timestamp=self.comparator.timestamp(local_data),
            remote_timestamp=self.comparator.timestamp(remote_data),
            conflict_type=conflict_type_for(table_name),
            conflicting_fields=find_conflicting_fields(local_data, remote_data),
        )
        self._log.append(info)
        logger.warning(
            f"Conflict detected on {table_name}/{record_id}: "
            f"fields={info.conflicting_fields or '[]'}"
        )
        return info

    def resolve_conflict(
        self,
        info: ConflictInfo,
        strategy: ResolutionStrategy = ResolutionStrategy.LATEST_WINS,
    ) -> ConflictResolution:
        """Pick final data for a conflict. Never raises; failures come back unresolved."""
        try:
            final_data, message = self._apply(info, ResolutionStrategy(strategy))
            resolution = ConflictResolution(
                resolved=True, final_data=final_data, strategy=strategy, conflict_info=info, message=message
            )
            logger.info(f"Conflict on {info.table_name}/{info.record_id} resolved: {message}")
            return resolution
        except Exception as e:
            logger.error(f"Conflict resolution failed for {info.table_name}/{info.record_id}: {e}")
            return ConflictResolution(
                resolved=False,
                final_data=dict(info.local_data),
                strategy=strategy,
                conflict_info=info,
                message=f"Resolution failed: {e}",
            )

    def _apply(self, info: ConflictInfo, strategy: ResolutionStrategy):
        local_newer = info.local_timestamp > info.remote_timestamp

        if strategy == ResolutionStrategy.LATEST_WINS:
            if local_newer:
                return dict(info.local_data), "local data is newer; applied caller's write"
            return dict(info.remote_data), "stored data is newer; caller's write discarded"

        if strategy == ResolutionStrategy.LOCAL_WINS:
            return dict(info.local_data), "caller's write applied"

        if strategy == ResolutionStrategy.REMOTE_WINS:
            return dict(info.remote_data), "stored data kept; caller's write discarded"

        if strategy == ResolutionStrategy.MERGE_FIELDS:
            older, newer = (info.remote_data, info.local_data) if local_newer else (info.local_data, info.remote_data)
            merged = {**older}
            for key in info.conflicting_fields:
                if key in newer:
                    merged[key] = newer[key]
            for key, value in newer.items():
                merged.setdefault(key, value)
            return merged, f"merged {len(info.conflicting_fields)} conflicting field(s)"

        raise ValueError(f"Unsupported resolution strategy: {strategy}")

    def resolve_conflicts(
        self,
        conflicts: Iterable[ConflictInfo],
        strategy: ResolutionStrategy = ResolutionStrategy.LATEST_WINS,
    ) -> List[ConflictResolution]:
        results = []
        for info in conflicts:
            resolution = self.resolve_conflict(info, strategy)
            if not resolution.resolved:
                resolution.final_data = dict(info.remote_data)
            results.append(resolution)
        return results

    def get_conflict_logs(self, limit: Optional[int] = None) -> List[ConflictInfo]:
        """Newest first."""
        return self._log.latest(limit)

    def get_conflict_stats(self) -> Dict[str, Any]:
        conflicts = self._log.items()
        cutoff = utc_now() - RECENT_WINDOW
        return {
            "total": len(conflicts),
            "by_type": dict(Counter(c.conflict_type.value for c in conflicts)),
            "by_table": dict(Counter(c.table_name for c in conflicts)),
            "recent": sum(1 for c in conflicts if c.detected_at >= cutoff),
        }

    def clear_conflict_logs(self) -> None:
        self._log.clear()
        logger.info("Conflict log cleared")
