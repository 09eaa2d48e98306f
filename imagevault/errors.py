"""Database error taxonomy and classifier.

Every error leaving the persistence core is classified into one of the
``ErrorType`` values and raised as a ``DatabaseError`` that carries a
user-facing message, a retryability bit and remediation suggestions. The
raw driver error is chained, never shown to the user.
"""

import errno
import logging
import sqlite3
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from imagevault.utils import RingBuffer, utc_now

logger = logging.getLogger(__name__)

ERROR_LOG_CAPACITY = 1000
RECENT_WINDOW = timedelta(hours=1)


class ErrorType(str, Enum):
    CONNECTION = "CONNECTION"
    AUTHENTICATION = "AUTHENTICATION"
    PERMISSION = "PERMISSION"
    SYNTAX = "SYNTAX"
    CONSTRAINT = "CONSTRAINT"
    DATA = "DATA"
    TIMEOUT = "TIMEOUT"
    RESOURCE = "RESOURCE"
    UNKNOWN = "UNKNOWN"


RETRYABLE_TYPES = frozenset({ErrorType.CONNECTION, ErrorType.TIMEOUT, ErrorType.RESOURCE})

USER_MESSAGES: Dict[ErrorType, str] = {
    ErrorType.CONNECTION: "Cannot reach the database server. Check that it is running and reachable.",
    ErrorType.AUTHENTICATION: "Database authentication failed. Check the username and password.",
    ErrorType.PERMISSION: "The database user lacks permission for this operation, or the database does not exist.",
    ErrorType.SYNTAX: "The database schema does not match what the application expects.",
    ErrorType.CONSTRAINT: "The change conflicts with existing data (duplicate or related record).",
    ErrorType.DATA: "The data is invalid for the database (wrong type, missing value or too long).",
    ErrorType.TIMEOUT: "The database took too long to respond.",
    ErrorType.RESOURCE: "The database is busy or out of resources. Try again shortly.",
    ErrorType.UNKNOWN: "An unexpected database error occurred.",
}

SUGGESTIONS: Dict[ErrorType, List[str]] = {
    ErrorType.CONNECTION: [
        "Check that the database server is running",
        "Verify host and port settings",
        "Check network connectivity and firewall rules",
    ],
    ErrorType.AUTHENTICATION: [
        "Verify the database username and password",
        "Confirm the user is allowed to connect from this host",
    ],
    ErrorType.PERMISSION: [
        "Grant the database user the required privileges",
        "Confirm the database name is correct and the database exists",
    ],
    ErrorType.SYNTAX: [
        "Run the schema migrations (imagevault migrate)",
        "Validate database integrity (imagevault validate)",
    ],
    ErrorType.CONSTRAINT: [
        "Check for an existing record with the same id",
        "Make sure referenced records exist",
    ],
    ErrorType.DATA: [
        "Check required fields are present",
        "Check field lengths and value types",
    ],
    ErrorType.TIMEOUT: [
        "Retry the operation",
        "Check server load and long-running transactions",
        "Increase the connection timeout",
    ],
    ErrorType.RESOURCE: [
        "Retry the operation shortly",
        "Reduce concurrent connections or raise the server connection limit",
    ],
    ErrorType.UNKNOWN: [
        "Retry the operation",
        "Check the application logs for details",
    ],
}

# Legacy MySQL-style codes plus OS errno names
CODE_MAP: Dict[str, ErrorType] = {
    "ECONNREFUSED": ErrorType.CONNECTION,
    "ECONNRESET": ErrorType.CONNECTION,
    "EPIPE": ErrorType.CONNECTION,
    "ENOTFOUND": ErrorType.CONNECTION,
    "EHOSTUNREACH": ErrorType.CONNECTION,
    "ENETUNREACH": ErrorType.CONNECTION,
    "ETIMEDOUT": ErrorType.TIMEOUT,
    "ER_ACCESS_DENIED_ERROR": ErrorType.AUTHENTICATION,
    "ER_BAD_DB_ERROR": ErrorType.PERMISSION,
    "ER_DBACCESS_DENIED_ERROR": ErrorType.PERMISSION,
    "ER_TABLEACCESS_DENIED_ERROR": ErrorType.PERMISSION,
    "ER_DUP_ENTRY": ErrorType.CONSTRAINT,
    "ER_NO_REFERENCED_ROW_2": ErrorType.CONSTRAINT,
    "ER_NO_SUCH_TABLE": ErrorType.SYNTAX,
    "ER_BAD_FIELD_ERROR": ErrorType.SYNTAX,
    "ER_PARSE_ERROR": ErrorType.SYNTAX,
    "ER_CON_COUNT_ERROR": ErrorType.RESOURCE,
    "ER_LOCK_WAIT_TIMEOUT": ErrorType.TIMEOUT,
    "ER_LOCK_DEADLOCK": ErrorType.RESOURCE,
    "ER_TRUNCATED_WRONG_VALUE": ErrorType.DATA,
    "ER_BAD_NULL_ERROR": ErrorType.DATA,
    "ER_DATA_TOO_LONG": ErrorType.DATA,
    "POOL_TIMEOUT": ErrorType.TIMEOUT,
    "SQLITE_BUSY": ErrorType.TIMEOUT,
    "SQLITE_CANTOPEN": ErrorType.CONNECTION,
    "SQLITE_MISUSE": ErrorType.CONNECTION,
    "SQLITE_READONLY": ErrorType.PERMISSION,
    "SQLITE_ERROR": ErrorType.SYNTAX,
    "SQLITE_CONSTRAINT": ErrorType.CONSTRAINT,
    "SQLITE_CONSTRAINT_NOTNULL": ErrorType.DATA,
    "SQLITE_MISMATCH": ErrorType.DATA,
    "SQLITE_FULL": ErrorType.RESOURCE,
}

# Postgres SQLSTATE: exact codes first, then two-character classes
SQLSTATE_MAP: Dict[str, ErrorType] = {
    "57P01": ErrorType.CONNECTION,  # admin_shutdown
    "57P02": ErrorType.CONNECTION,  # crash_shutdown
    "57P03": ErrorType.CONNECTION,  # cannot_connect_now
    "42501": ErrorType.PERMISSION,  # insufficient_privilege
    "3D000": ErrorType.PERMISSION,  # invalid_catalog_name
    "23502": ErrorType.DATA,  # not_null_violation
    "55P03": ErrorType.TIMEOUT,  # lock_not_available
    "57014": ErrorType.TIMEOUT,  # query_canceled (statement_timeout)
    "40001": ErrorType.RESOURCE,  # serialization_failure
    "40P01": ErrorType.RESOURCE,  # deadlock_detected
}

SQLSTATE_CLASS_MAP: Dict[str, ErrorType] = {
    "08": ErrorType.CONNECTION,
    "28": ErrorType.AUTHENTICATION,
    "42": ErrorType.SYNTAX,
    "23": ErrorType.CONSTRAINT,
    "22": ErrorType.DATA,
    "53": ErrorType.RESOURCE,
}

# (substring, code) pairs for sqlite3 messages, checked in order
SQLITE_MESSAGE_CODES: Tuple[Tuple[str, str], ...] = (
    ("database is locked", "SQLITE_BUSY"),
    ("database table is locked", "SQLITE_BUSY"),
    ("busy", "SQLITE_BUSY"),
    ("unable to open database", "SQLITE_CANTOPEN"),
    ("closed database", "SQLITE_MISUSE"),
    ("readonly database", "SQLITE_READONLY"),
    ("not null constraint failed", "SQLITE_CONSTRAINT_NOTNULL"),
    ("constraint failed", "SQLITE_CONSTRAINT"),
    ("datatype mismatch", "SQLITE_MISMATCH"),
    ("disk is full", "SQLITE_FULL"),
    ("no such table", "SQLITE_ERROR"),
    ("no such column", "SQLITE_ERROR"),
    ("syntax error", "SQLITE_ERROR"),
    ("has no column named", "SQLITE_ERROR"),
)

RETRYABLE_KEYWORDS = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "temporary",
    "busy",
    "lock",
    "econnreset",
    "epipe",
    "enotfound",
)


@dataclass
class ErrorDetails:
    """Classification of one failure."""

    type: ErrorType
    code: Optional[str]
    user_message: str
    retryable: bool
    suggestions: List[str] = field(default_factory=list)
    original_message: str = ""
    context: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "code": self.code,
            "user_message": self.user_message,
            "retryable": self.retryable,
            "suggestions": list(self.suggestions),
            "original_message": self.original_message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }


class DatabaseError(Exception):
    """Classified persistence failure.

    ``str(err)`` is the user-facing message. Upstream layers pick status
    codes from ``type`` and ``retryable`` instead of parsing driver text.
    """

    def __init__(self, details: ErrorDetails):
        super().__init__(details.user_message)
        self.details = details

    @property
    def type(self) -> ErrorType:
        return self.details.type

    @property
    def code(self) -> Optional[str]:
        return self.details.code

    @property
    def retryable(self) -> bool:
        return self.details.retryable

    @property
    def user_message(self) -> str:
        return self.details.user_message

    @property
    def suggestions(self) -> List[str]:
        return self.details.suggestions

    @property
    def original_message(self) -> str:
        return self.details.original_message


class RecordNotFoundError(DatabaseError):
    """The addressed record does not exist."""

    def __init__(self, table: str, record_id: str):
        super().__init__(
            ErrorDetails(
                type=ErrorType.DATA,
                code="NOT_FOUND",
                user_message=f"Record not found: {table}/{record_id}",
                retryable=False,
                suggestions=["Refresh the list; the record may have been deleted"],
                original_message=f"{table} {record_id} does not exist",
            )
        )
        self.table = table
        self.record_id = record_id


class RetryCancelledError(DatabaseError):
    """A caller-supplied cancel signal stopped the retry loop."""

    def __init__(self, label: str, attempts: int):
        super().__init__(
            ErrorDetails(
                type=ErrorType.TIMEOUT,
                code="CANCELLED",
                user_message=f"Operation cancelled: {label}",
                retryable=False,
                suggestions=["Retry the operation when the service is less busy"],
                original_message=f"cancelled after {attempts} attempt(s)",
                context=label,
            )
        )


def extract_error_code(error: BaseException) -> Optional[str]:
    """Best-effort driver code for an exception."""
    sqlstate = getattr(error, "sqlstate", None)
    if sqlstate:
        return str(sqlstate)

    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code

    # psycopg_pool.PoolTimeout without importing the pool eagerly
    if type(error).__name__ == "PoolTimeout":
        return "POOL_TIMEOUT"

    if isinstance(error, sqlite3.Error):
        message = str(error).lower()
        for needle, sqlite_code in SQLITE_MESSAGE_CODES:
            if needle in message:
                return sqlite_code
        if isinstance(error, sqlite3.IntegrityError):
            return "SQLITE_CONSTRAINT"
        if isinstance(error, sqlite3.DataError):
            return "SQLITE_MISMATCH"
        return None

    if isinstance(error, OSError):
        if isinstance(error, TimeoutError):
            return "ETIMEDOUT"
        if type(error).__name__ == "gaierror":
            return "ENOTFOUND"
        if error.errno in errno.errorcode:
            return errno.errorcode[error.errno]
    return None


def type_for_code(code: Optional[str]) -> Optional[ErrorType]:
    if not code:
        return None
    if code in CODE_MAP:
        return CODE_MAP[code]
    if len(code) == 5 and code[:2].isalnum():
        if code in SQLSTATE_MAP:
            return SQLSTATE_MAP[code]
        return SQLSTATE_CLASS_MAP.get(code[:2])
    return None


def looks_retryable(message: str) -> bool:
    lowered = message.lower()
    return any(keyword in lowered for keyword in RETRYABLE_KEYWORDS)


class ErrorClassifier:
    """Maps raw driver errors to ``ErrorDetails`` and keeps a bounded log."""

    def __init__(self, capacity: int = ERROR_LOG_CAPACITY):
        self._log: RingBuffer[ErrorDetails] = RingBuffer(capacity)

    def classify(self, error: BaseException, context: Optional[str] = None) -> ErrorDetails:
        if isinstance(error, DatabaseError):
            details = error.details
            if context and not details.context:
                details.context = context
            # already-classified errors pass through here again on re-raise
            if not any(entry is details for entry in self._log):
                self._record(details)
            return details

        message = str(error) or type(error).__name__
        code = extract_error_code(error)
        error_type = type_for_code(code)

        if error_type is None:
            # Unknown code: keyword heuristic decides retryability
            if isinstance(error, (ConnectionError, TimeoutError)):
                error_type = ErrorType.CONNECTION if isinstance(error, ConnectionError) else ErrorType.TIMEOUT
                retryable = True
            elif isinstance(error, ValueError):
                # rejected input never succeeds on retry
                error_type = ErrorType.DATA
                retryable = False
            else:
                error_type = ErrorType.UNKNOWN
                retryable = looks_retryable(message)
        else:
            retryable = error_type in RETRYABLE_TYPES

        details = ErrorDetails(
            type=error_type,
            code=code,
            user_message=USER_MESSAGES[error_type],
            retryable=retryable,
            suggestions=list(SUGGESTIONS[error_type]),
            original_message=message,
            context=context,
        )
        self._record(details)
        return details

    def _record(self, details: ErrorDetails) -> None:
        self._log.append(details)
        logger.debug(
            f"Classified error: type={details.type.value}, code={details.code}, "
            f"retryable={details.retryable}, context={details.context}"
        )

    def to_database_error(self, error: BaseException, context: Optional[str] = None) -> DatabaseError:
        """Classify and wrap; callers ``raise ... from error``."""
        if isinstance(error, DatabaseError):
            self.classify(error, context)
            return error
        return DatabaseError(self.classify(error, context))

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, DatabaseError):
            return error.retryable
        error_type = type_for_code(extract_error_code(error))
        if error_type is not None:
            return error_type in RETRYABLE_TYPES
        if isinstance(error, ValueError):
            return False
        return looks_retryable(str(error))

    def get_suggestions(self, error: BaseException) -> List[str]:
        if isinstance(error, DatabaseError):
            return list(error.suggestions)
        error_type = type_for_code(extract_error_code(error)) or ErrorType.UNKNOWN
        return list(SUGGESTIONS[error_type])

    def format_user_message(self, error: BaseException) -> str:
        """User message followed by numbered suggestions."""
        if isinstance(error, DatabaseError):
            message, suggestions = error.user_message, error.suggestions
        else:
            error_type = type_for_code(extract_error_code(error)) or ErrorType.UNKNOWN
            message, suggestions = USER_MESSAGES[error_type], SUGGESTIONS[error_type]
        lines = [message]
        if suggestions:
            lines.append("Suggestions:")
            lines.extend(f"  {i}. {s}" for i, s in enumerate(suggestions, 1))
        return "\n".join(lines)

    def get_error_log(self, limit: Optional[int] = None) -> List[ErrorDetails]:
        """Newest first."""
        return self._log.latest(limit)

    def get_error_stats(self) -> Dict[str, Any]:
        entries = self._log.items()
        cutoff = utc_now() - RECENT_WINDOW
        return {
            "total": len(entries),
            "by_type": dict(Counter(e.type.value for e in entries)),
            "by_code": dict(Counter(e.code or "UNKNOWN" for e in entries)),
            "recent": sum(1 for e in entries if e.timestamp >= cutoff),
        }

    def clear_error_log(self) -> None:
        self._log.clear()
