"""Background connection health monitoring.

A daemon thread probes the active backend every ``interval`` seconds, scores
the connection quality from latency, keeps a bounded history of status
transitions and pushes each transition to subscribed listeners.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from imagevault.logging_config import log_connection_change
from imagevault.utils import RingBuffer, utc_now

from .base import ConnectionStatus
from .connection import ConnectionManager

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 30.0  # seconds
MIN_INTERVAL = 5.0  # seconds
HISTORY_SIZE = 100
TREND_SIZE = 20
LATENCY_CHANGE_MS = 100.0
EMA_ALPHA = 0.1


class ConnectionQuality(str, Enum):
    EXCELLENT = "EXCELLENT"  # < 50ms
    GOOD = "GOOD"            # < 200ms
    FAIR = "FAIR"            # < 500ms
    POOR = "POOR"            # < 1000ms
    VERY_POOR = "VERY_POOR"  # slower, disconnected or erroring


QUALITY_DESCRIPTIONS = {
    ConnectionQuality.EXCELLENT: "Excellent - very low latency, fast responses",
    ConnectionQuality.GOOD: "Good - stable connection, normal responses",
    ConnectionQuality.FAIR: "Fair - usable, with some delay",
    ConnectionQuality.POOR: "Poor - high latency, noticeably slow",
    ConnectionQuality.VERY_POOR: "Very poor - unstable or disconnected",
}


class ChangeType(str, Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    QUALITY_CHANGED = "QUALITY_CHANGED"
    ERROR_OCCURRED = "ERROR_OCCURRED"
    ERROR_CLEARED = "ERROR_CLEARED"


@dataclass
class StatusChangeEvent:
    previous_status: ConnectionStatus
    current_status: ConnectionStatus
    quality: ConnectionQuality
    change_type: ChangeType
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class QualityStats:
    average_latency: float = 0.0
    min_latency: Optional[float] = None
    max_latency: float = 0.0
    success_rate: float = 100.0
    total_tests: int = 0
    failed_tests: int = 0
    last_test_time: Optional[datetime] = None
    quality_trend: List[ConnectionQuality] = field(default_factory=list)
    peak_connections: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "average_latency": round(self.average_latency, 2),
            "min_latency": self.min_latency,
            "max_latency": self.max_latency,
            "success_rate": round(self.success_rate, 2),
            "total_tests": self.total_tests,
            "failed_tests": self.failed_tests,
            "last_test_time": self.last_test_time.isoformat() if self.last_test_time else None,
            "quality_trend": [q.value for q in self.quality_trend],
            "peak_connections": self.peak_connections,
        }


StatusListener = Callable[[StatusChangeEvent], None]


def calculate_quality(status: ConnectionStatus) -> ConnectionQuality:
    if not status.is_connected or status.last_error or status.latency_ms is None:
        return ConnectionQuality.VERY_POOR
    latency = status.latency_ms
    if latency < 50:
        return ConnectionQuality.EXCELLENT
    if latency < 200:
        return ConnectionQuality.GOOD
    if latency < 500:
        return ConnectionQuality.FAIR
    if latency < 1000:
        return ConnectionQuality.POOR
    return ConnectionQuality.VERY_POOR


def determine_change_type(previous: Optional[ConnectionStatus], current: ConnectionStatus) -> ChangeType:
    if previous is None or previous.is_connected != current.is_connected:
        return ChangeType.CONNECTED if current.is_connected else ChangeType.DISCONNECTED
    if previous.last_error != current.last_error:
        return ChangeType.ERROR_OCCURRED if current.last_error else ChangeType.ERROR_CLEARED
    return ChangeType.QUALITY_CHANGED


class ConnectionMonitor:
    """Periodic prober for one ConnectionManager."""

    def __init__(self, manager: ConnectionManager, interval: float = DEFAULT_INTERVAL):
        if interval < MIN_INTERVAL:
            raise ValueError(f"Monitoring interval must be at least {MIN_INTERVAL} seconds")
        self.manager = manager
        self.interval = interval
        self._listeners: Set[StatusListener] = set()
        self._history: RingBuffer[StatusChangeEvent] = RingBuffer(HISTORY_SIZE)
        self._stats = QualityStats()
        self._last_status: Optional[ConnectionStatus] = None
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._started_at: Optional[datetime] = None

    # === Lifecycle ===

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._stop_event,), name="imagevault-monitor", daemon=True
        )
        self._started_at = utc_now()
        self._thread.start()
        logger.info(f"Connection monitor started (interval={self.interval}s)")

    def stop(self) -> None:
        """Stop the background thread. Safe to call repeatedly."""
        thread = self._thread
        self._stop_event.set()
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)
            logger.info("Connection monitor stopped")

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.check_now()
            except Exception as e:
                logger.error(f"Connection monitor check failed: {e}")
            if stop_event.wait(self.interval):
                break

    # === Probing ===

    def check_now(self) -> Optional[StatusChangeEvent]:
        """Run one probe cycle; returns the change event if the status changed."""
        self.manager.test_connection()
        status = self.manager.get_status()
        quality = calculate_quality(status)

        event = None
        with self._lock:
            if self._has_changed(status):
                event = StatusChangeEvent(
                    previous_status=self._last_status or ConnectionStatus(),
                    current_status=status,
                    quality=quality,
                    change_type=determine_change_type(self._last_status, status),
                )
                self._history.append(event)
            self._update_stats(status, quality)
            self._last_status = status

        if event is not None:
            logger.info(
                f"Connection status changed: {event.change_type.value} "
                f"(quality={quality.value}, latency={status.latency_ms})"
            )
            log_connection_change(self.manager.backend.value, event.change_type.value, status.latency_ms)
            self._notify(event)
        return event

    def _has_changed(self, current: ConnectionStatus) -> bool:
        previous = self._last_status
        if previous is None:
            return True
        return (
            previous.is_connected != current.is_connected
            or previous.last_error != current.last_error
            or abs((previous.latency_ms or 0) - (current.latency_ms or 0)) > LATENCY_CHANGE_MS
        )

    def _update_stats(self, status: ConnectionStatus, quality: ConnectionQuality) -> None:
        stats = self._stats
        stats.total_tests += 1
        stats.last_test_time = utc_now()
        if status.is_connected and status.latency_ms is not None:
            latency = status.latency_ms
            stats.min_latency = latency if stats.min_latency is None else min(stats.min_latency, latency)
            stats.max_latency = max(stats.max_latency, latency)
            if stats.average_latency == 0:
                stats.average_latency = latency
            else:
                stats.average_latency = EMA_ALPHA * latency + (1 - EMA_ALPHA) * stats.average_latency
        else:
            stats.failed_tests += 1
        stats.success_rate = (stats.total_tests - stats.failed_tests) / stats.total_tests * 100
        stats.quality_trend = (stats.quality_trend + [quality])[-TREND_SIZE:]
        stats.peak_connections = max(stats.peak_connections, self.manager.driver.connection_count())

    def _notify(self, event: StatusChangeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Connection status listener failed: {e}")

    def trigger_connection_test(self) -> Dict[str, Any]:
        """On-demand probe outside the timer cadence."""
        try:
            event = self.check_now()
        except Exception as e:
            return {"success": False, "latency_ms": None, "quality": ConnectionQuality.VERY_POOR.value, "error": str(e)}
        status = self.manager.get_status()
        return {
            "success": status.is_connected,
            "latency_ms": status.latency_ms,
            "quality": calculate_quality(status).value,
            "error": status.last_error,
            "changed": event is not None,
        }

    # === Listeners ===

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.add(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        self._listeners.discard(listener)

    subscribe = add_listener
    unsubscribe = remove_listener

    # === Introspection ===

    def get_status_history(self, limit: Optional[int] = None) -> List[StatusChangeEvent]:
        """Oldest first; ``limit`` keeps the most recent events."""
        history = self._history.items()
        return history[-limit:] if limit else history

    def clear_history(self) -> None:
        self._history.clear()

    def get_quality_stats(self) -> QualityStats:
        with self._lock:
            return QualityStats(**{**self._stats.__dict__, "quality_trend": list(self._stats.quality_trend)})

    def get_current_quality(self) -> ConnectionQuality:
        return calculate_quality(self.manager.get_status())

    def get_quality_description(self, quality: Optional[ConnectionQuality] = None) -> str:
        return QUALITY_DESCRIPTIONS[quality or self.get_current_quality()]

    def reset_quality_stats(self) -> None:
        with self._lock:
            self._stats = QualityStats()

    def set_monitoring_interval(self, interval: float) -> None:
        if interval < MIN_INTERVAL:
            raise ValueError(f"Monitoring interval must be at least {MIN_INTERVAL} seconds")
        self.interval = interval
        if self.is_running:
            self.stop()
            self.start()

    def get_monitoring_status(self) -> Dict[str, Any]:
        uptime = (utc_now() - self._started_at).total_seconds() if self.is_running and self._started_at else 0.0
        return {
            "is_monitoring": self.is_running,
            "interval": self.interval,
            "listeners_count": len(self._listeners),
            "history_size": len(self._history),
            "uptime": uptime,
        }
