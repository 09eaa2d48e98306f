"""Connection lifecycle and retry orchestration.

The ConnectionManager owns one driver (one SQLite connection or one Postgres
pool), the shared ConnectionStatus, and the retry loop every adapter call
runs through. Retries are modelled as an explicit state machine
(``RetryState``) so tests can inspect attempts and delays directly.
"""

import dataclasses
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

from imagevault.errors import (
    DatabaseError,
    ErrorClassifier,
    ErrorDetails,
    ErrorType,
    RetryCancelledError,
    SUGGESTIONS,
)
from imagevault.utils import utc_now

from .base import DEFAULT_USER_ID, ConnectionConfig, ConnectionStatus, OperationStatus
from .driver import Driver

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRY_COUNT = 3
BASE_RETRY_DELAY = 1.0  # seconds
MAX_RETRY_DELAY = 30.0  # seconds
OPERATION_LOG_TABLE = "operation_logs"


@dataclass
class RetryPolicy:
    max_attempts: int = MAX_RETRY_COUNT
    base_delay: float = BASE_RETRY_DELAY
    max_delay: float = MAX_RETRY_DELAY
    jitter_min: float = 0.5
    jitter_max: float = 1.0

    def delay_for(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Backoff before attempt ``attempt + 1``: base * 2^(attempt-1) * jitter, capped."""
        jitter = self.jitter_min + (self.jitter_max - self.jitter_min) * rand()
        return min(self.base_delay * (2 ** (attempt - 1)) * jitter, self.max_delay)


class RetryPhase(str, Enum):
    RUNNING = "RUNNING"
    WAITING = "WAITING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass
class RetryState:
    """Where one execute_with_retry call is in its attempt sequence."""

    label: str
    policy: RetryPolicy
    attempt: int = 0
    phase: RetryPhase = RetryPhase.RUNNING
    delays: List[float] = field(default_factory=list)
    last_error: Optional[DatabaseError] = None

    def begin_attempt(self) -> None:
        self.attempt += 1
        self.phase = RetryPhase.RUNNING

    def succeed(self) -> None:
        self.phase = RetryPhase.SUCCEEDED

    def fail(self, error: DatabaseError, rand: Callable[[], float] = random.random) -> Optional[float]:
        """Record a failed attempt. Returns the next delay, or None when terminal."""
        self.last_error = error
        if not error.retryable or self.attempt >= self.policy.max_attempts:
            self.phase = RetryPhase.FAILED
            return None
        delay = self.policy.delay_for(self.attempt, rand)
        self.delays.append(delay)
        self.phase = RetryPhase.WAITING
        return delay

    def cancel(self) -> None:
        self.phase = RetryPhase.CANCELLED

    @property
    def terminal(self) -> bool:
        return self.phase in (RetryPhase.SUCCEEDED, RetryPhase.FAILED, RetryPhase.CANCELLED)


def _not_connected_error() -> DatabaseError:
    return DatabaseError(
        ErrorDetails(
            type=ErrorType.CONNECTION,
            code="NOT_CONNECTED",
            user_message="The database is not connected.",
            retryable=False,
            suggestions=list(SUGGESTIONS[ErrorType.CONNECTION]),
            original_message="No connection has been established",
        )
    )


class ConnectionManager:
    """Owns the active driver, its status and the retry wrapper."""

    def __init__(
        self,
        driver_factory: Callable[[], Driver],
        classifier: Optional[ErrorClassifier] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Optional[Callable[[float], None]] = None,
        rand: Callable[[], float] = random.random,
    ):
        self.driver_factory = driver_factory
        self.driver = driver_factory()
        self.classifier = classifier or ErrorClassifier()
        self.policy = policy or RetryPolicy()
        self._sleep = sleep or time.sleep
        self._rand = rand
        self._config: Optional[ConnectionConfig] = None
        self._status = ConnectionStatus()
        self._lock = threading.RLock()
        self._connecting = False
        self._log_table_ready = False
        self.last_retry_state: Optional[RetryState] = None

    @property
    def backend(self):
        return self.driver.backend

    @property
    def config(self) -> Optional[ConnectionConfig]:
        return self._config

    @property
    def is_connecting(self) -> bool:
        return self._connecting

    def get_status(self) -> ConnectionStatus:
        with self._lock:
            return dataclasses.replace(self._status)

    def _set_status(self, **changes) -> None:
        with self._lock:
            self._status = dataclasses.replace(self._status, **changes)

    def is_alive(self) -> bool:
        """Cheap liveness check; no round trip."""
        return self.driver.is_open and self._status.is_connected

    # === Lifecycle ===

    def connect(self, config: ConnectionConfig) -> bool:
        """Open ``config`` as the active target, replacing any previous one.

        Returns False without doing anything if another connect is in flight.

        Raises:
            ValueError: If the config is invalid or disabled
            DatabaseError: If the backend cannot be reached
        """
        with self._lock:
            if self._connecting:
                logger.warning("Connection attempt already in progress; skipping")
                return False
            self._connecting = True

        start = time.monotonic()
        try:
            problems = config.validate()
            if problems:
                raise ValueError(f"Invalid connection config: {', '.join(problems)}")
            if not config.enabled:
                raise ValueError("Database connection is disabled in configuration")

            self._close_driver()
            try:
                self.driver.open(config)
                self.driver.ping()
            except Exception as e:
                self._close_driver()
                error = self.classifier.to_database_error(e, "connect")
                self._set_status(is_connected=False, last_error=error.original_message, latency_ms=None)
                logger.error(f"Connection to {config.describe()} failed: {error.original_message}")
                raise error from e

            latency = (time.monotonic() - start) * 1000
            with self._lock:
                self._config = config
                self._log_table_ready = False
                self._status = ConnectionStatus(
                    is_connected=True,
                    last_connected=utc_now(),
                    last_error=None,
                    latency_ms=round(latency, 2),
                )
            logger.info(f"Connected to {config.describe()} in {latency:.1f}ms")
            self.log_operation("CONNECT", "connection", config.describe(), OperationStatus.SUCCESS, duration=int(latency))
            return True
        finally:
            with self._lock:
                self._connecting = False

    def disconnect(self) -> None:
        if self.driver.is_open:
            self.log_operation("DISCONNECT", "connection", self._config.describe() if self._config else None)
        self._close_driver()
        self._set_status(is_connected=False, latency_ms=None)
        logger.info("Disconnected from database")

    def _close_driver(self) -> None:
        try:
            self.driver.close()
        except Exception as e:
            logger.warning(f"Error while closing database handle: {e}")

    def test_connection(self, config: Optional[ConnectionConfig] = None) -> Union[bool, Dict[str, Any]]:
        """Probe the active connection, or a candidate config.

        Without a config, returns a bool and updates the shared status. With a
        config, opens a throwaway driver and returns
        ``{success, latency_ms, error}`` without touching the active connection.
        """
        if config is not None:
            return self._test_candidate(config)

        if not self.driver.is_open:
            self._set_status(is_connected=False)
            return False
        start = time.monotonic()
        try:
            self.driver.ping()
        except Exception as e:
            details = self.classifier.classify(e, "test_connection")
            self._set_status(is_connected=False, last_error=details.original_message, latency_ms=None)
            logger.warning(f"Connection test failed: {details.original_message}")
            return False
        latency = round((time.monotonic() - start) * 1000, 2)
        with self._lock:
            last_connected = self._status.last_connected
            if not self._status.is_connected or last_connected is None:
                last_connected = utc_now()
            self._status = ConnectionStatus(
                is_connected=True, last_connected=last_connected, last_error=None, latency_ms=latency
            )
        return True

    def _test_candidate(self, config: ConnectionConfig) -> Dict[str, Any]:
        problems = config.validate()
        if problems:
            return {"success": False, "latency_ms": None, "error": ", ".join(problems)}
        driver = self.driver_factory()
        start = time.monotonic()
        try:
            driver.open(config)
            driver.ping()
            return {"success": True, "latency_ms": round((time.monotonic() - start) * 1000, 2), "error": None}
        except Exception as e:
            details = self.classifier.classify(e, "test_connection")
            return {"success": False, "latency_ms": None, "error": details.user_message}
        finally:
            try:
                driver.close()
            except Exception as e:
                logger.debug(f"Closing test connection failed: {e}")

    # === Retry ===

    def ensure_connected(self) -> None:
        """Reconnect with the last-known config if the connection is not live."""
        if self.is_alive():
            return
        if self._config is None:
            raise _not_connected_error()
        logger.info("Connection not live; reconnecting")
        if not self.connect(self._config):
            raise DatabaseError(
                self.classifier.classify(ConnectionError("connection attempt already in progress"), "reconnect")
            )

    def _wait(self, delay: float, cancel: Optional[threading.Event]) -> bool:
        """Sleep between attempts. Returns False if cancelled."""
        if cancel is not None:
            return not cancel.wait(delay)
        self._sleep(delay)
        return True

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        label: str,
        *,
        table_name: Optional[str] = None,
        record_id: Optional[str] = None,
        audit: bool = True,
        cancel: Optional[threading.Event] = None,
    ) -> T:
        """Run ``operation`` with reconnect and exponential backoff.

        Non-retryable errors surface on first occurrence. Retryable ones are
        retried up to the policy's attempt ceiling. With ``audit`` the terminal
        outcome is written as one operation log entry.

        Raises:
            DatabaseError: The classified error of the final attempt
            RetryCancelledError: If ``cancel`` is set while waiting to retry
        """
        state = RetryState(label=label, policy=self.policy)
        self.last_retry_state = state
        start = time.monotonic()

        while True:
            state.begin_attempt()
            try:
                self.ensure_connected()
                result = operation()
            except Exception as e:
                error = self.classifier.to_database_error(e, label)
                if error.type == ErrorType.CONNECTION:
                    self._set_status(is_connected=False, last_error=error.original_message)
                delay = state.fail(error, self._rand)
                if delay is None:
                    if audit:
                        self.log_operation(
                            label,
                            table_name or "unknown",
                            record_id,
                            OperationStatus.FAILED,
                            error_message=error.original_message,
                            duration=int((time.monotonic() - start) * 1000),
                        )
                    if error is e:
                        raise
                    raise error from e

                logger.warning(
                    f"{label} failed (attempt {state.attempt}/{self.policy.max_attempts}): "
                    f"{error.original_message}; retrying in {delay:.2f}s"
                )
                if not self._wait(delay, cancel):
                    state.cancel()
                    cancelled = RetryCancelledError(label, state.attempt)
                    if audit:
                        self.log_operation(
                            label,
                            table_name or "unknown",
                            record_id,
                            OperationStatus.FAILED,
                            error_message=cancelled.original_message,
                            duration=int((time.monotonic() - start) * 1000),
                        )
                    raise cancelled from e
                continue

            state.succeed()
            if audit:
                self.log_operation(
                    label,
                    table_name or "unknown",
                    record_id,
                    OperationStatus.SUCCESS,
                    duration=int((time.monotonic() - start) * 1000),
                )
            return result

    # === Operation log ===

    def log_operation(
        self,
        operation: str,
        table_name: str,
        record_id: Optional[str] = None,
        status: OperationStatus = OperationStatus.SUCCESS,
        error_message: Optional[str] = None,
        duration: Optional[int] = None,
        user_id: str = DEFAULT_USER_ID,
    ) -> None:
        """Append an operation log row. Never raises; never logs its own writes."""
        if table_name == OPERATION_LOG_TABLE:
            return
        if not self.driver.is_open:
            logger.debug(f"Skipping operation log for {operation} {table_name}: not connected")
            return
        try:
            if not self._log_table_ready:
                self._log_table_ready = self.driver.table_exists(OPERATION_LOG_TABLE)
                if not self._log_table_ready:
                    logger.debug("operation_logs table not created yet; skipping log entry")
                    return
            self.driver.run(
                """
                INSERT INTO operation_logs
                (operation, table_name, record_id, user_id, status, error_message, duration, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    operation,
                    table_name,
                    record_id,
                    user_id,
                    status.value,
                    error_message[:2000] if error_message else None,
                    duration,
                    utc_now(),
                ),
            )
        except Exception as e:
            self._log_table_ready = False
            logger.warning(f"Failed to write operation log ({operation} {table_name}): {e}")
