"""Tests for the error taxonomy and classifier."""

import errno
import sqlite3

import pytest

from imagevault.errors import (
    DatabaseError,
    ErrorClassifier,
    ErrorType,
    RecordNotFoundError,
    RetryCancelledError,
    extract_error_code,
    type_for_code,
)


class FakeServerError(Exception):
    """Stands in for a driver error carrying a SQLSTATE."""

    def __init__(self, message, sqlstate=None, code=None):
        super().__init__(message)
        self.sqlstate = sqlstate
        self.code = code


class PoolTimeout(Exception):
    pass


@pytest.fixture
def classifier():
    return ErrorClassifier()


class TestSQLiteClassification:
    """sqlite3 errors carry no code; the message decides."""

    @pytest.mark.parametrize(
        "error, expected_type, retryable",
        [
            (sqlite3.OperationalError("database is locked"), ErrorType.TIMEOUT, True),
            (sqlite3.IntegrityError("UNIQUE constraint failed: images.id"), ErrorType.CONSTRAINT, False),
            (sqlite3.IntegrityError("NOT NULL constraint failed: images.url"), ErrorType.DATA, False),
            (sqlite3.OperationalError("no such table: images"), ErrorType.SYNTAX, False),
            (sqlite3.OperationalError('near "TABL": syntax error'), ErrorType.SYNTAX, False),
            (sqlite3.OperationalError("unable to open database file"), ErrorType.CONNECTION, True),
            (sqlite3.OperationalError("attempt to write a readonly database"), ErrorType.PERMISSION, False),
            (sqlite3.ProgrammingError("Cannot operate on a closed database."), ErrorType.CONNECTION, True),
        ],
    )
    def test_message_mapping(self, classifier, error, expected_type, retryable):
        details = classifier.classify(error)
        assert details.type == expected_type
        assert details.retryable is retryable

    def test_generic_integrity_error_is_constraint(self):
        assert extract_error_code(sqlite3.IntegrityError("FOREIGN KEY mismatch")) == "SQLITE_CONSTRAINT"


class TestServerCodes:
    @pytest.mark.parametrize(
        "sqlstate, expected_type",
        [
            ("28P01", ErrorType.AUTHENTICATION),
            ("23505", ErrorType.CONSTRAINT),
            ("23502", ErrorType.DATA),
            ("40P01", ErrorType.RESOURCE),
            ("08006", ErrorType.CONNECTION),
            ("42P01", ErrorType.SYNTAX),
            ("42501", ErrorType.PERMISSION),
            ("57014", ErrorType.TIMEOUT),
            ("53300", ErrorType.RESOURCE),
        ],
    )
    def test_sqlstate(self, classifier, sqlstate, expected_type):
        details = classifier.classify(FakeServerError("server said no", sqlstate=sqlstate))
        assert details.type == expected_type
        assert details.code == sqlstate

    def test_legacy_code(self, classifier):
        details = classifier.classify(FakeServerError("Duplicate entry", code="ER_DUP_ENTRY"))
        assert details.type == ErrorType.CONSTRAINT
        assert not details.retryable

    def test_pool_timeout_by_name(self, classifier):
        details = classifier.classify(PoolTimeout("couldn't get a connection after 30 sec"))
        assert details.type == ErrorType.TIMEOUT
        assert details.code == "POOL_TIMEOUT"
        assert details.retryable

    def test_unknown_five_char_code(self):
        assert type_for_code("ZZ999") is None


class TestNetworkErrors:
    def test_connection_refused_errno(self, classifier):
        details = classifier.classify(ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused"))
        assert details.type == ErrorType.CONNECTION
        assert details.code == "ECONNREFUSED"
        assert details.retryable

    def test_timeout(self, classifier):
        details = classifier.classify(TimeoutError("timed out"))
        assert details.type == ErrorType.TIMEOUT
        assert details.retryable

    def test_bare_connection_error(self, classifier):
        details = classifier.classify(ConnectionError("server went away"))
        assert details.type == ErrorType.CONNECTION
        assert details.retryable


class TestKeywordHeuristic:
    """Unknown codes fall back to message keywords for retryability."""

    @pytest.mark.parametrize("message", ["network unreachable", "temporary failure", "resource busy"])
    def test_retryable_keywords(self, classifier, message):
        details = classifier.classify(RuntimeError(message))
        assert details.type == ErrorType.UNKNOWN
        assert details.retryable

    def test_plain_failure_not_retryable(self, classifier):
        details = classifier.classify(RuntimeError("something odd"))
        assert details.type == ErrorType.UNKNOWN
        assert not details.retryable

    def test_empty_message_uses_class_name(self, classifier):
        assert classifier.classify(RuntimeError()).original_message == "RuntimeError"


class TestDatabaseError:
    def test_wraps_and_preserves(self, classifier):
        raw = sqlite3.IntegrityError("UNIQUE constraint failed: images.id")
        err = classifier.to_database_error(raw, "SAVE")
        assert isinstance(err, DatabaseError)
        assert str(err) == err.user_message
        assert "UNIQUE" in err.original_message
        assert err.details.context == "SAVE"
        assert err.suggestions

    def test_database_error_passes_through(self, classifier):
        err = RecordNotFoundError("images", "missing")
        assert classifier.to_database_error(err) is err
        assert classifier.is_retryable(err) is False

    def test_record_not_found(self):
        err = RecordNotFoundError("images", "abc")
        assert err.type == ErrorType.DATA
        assert err.code == "NOT_FOUND"
        assert "images/abc" in err.user_message

    def test_retry_cancelled(self):
        err = RetryCancelledError("SAVE", 2)
        assert err.code == "CANCELLED"
        assert not err.retryable

    def test_format_user_message(self, classifier):
        text = classifier.format_user_message(sqlite3.OperationalError("database is locked"))
        lines = text.splitlines()
        assert lines[0] == "The database took too long to respond."
        assert lines[1] == "Suggestions:"
        assert lines[2].startswith("  1. ")

    def test_get_suggestions(self, classifier):
        assert classifier.get_suggestions(FakeServerError("x", sqlstate="28P01"))[0].startswith("Verify")


class TestErrorLog:
    def test_newest_first(self, classifier):
        classifier.classify(RuntimeError("first"))
        classifier.classify(RuntimeError("second"))
        log = classifier.get_error_log()
        assert [d.original_message for d in log] == ["second", "first"]
        assert len(classifier.get_error_log(1)) == 1

    def test_bounded(self):
        classifier = ErrorClassifier(capacity=3)
        for i in range(5):
            classifier.classify(RuntimeError(f"e{i}"))
        assert [d.original_message for d in classifier.get_error_log()] == ["e4", "e3", "e2"]

    def test_stats(self, classifier):
        classifier.classify(sqlite3.OperationalError("database is locked"))
        classifier.classify(sqlite3.OperationalError("database is locked"))
        classifier.classify(RuntimeError("odd"))
        stats = classifier.get_error_stats()
        assert stats["total"] == 3
        assert stats["by_type"] == {"TIMEOUT": 2, "UNKNOWN": 1}
        assert stats["by_code"] == {"SQLITE_BUSY": 2, "UNKNOWN": 1}
        assert stats["recent"] == 3

    def test_reclassified_error_counted_once(self, classifier):
        error = classifier.to_database_error(ConnectionError("refused"), "connect")
        classifier.classify(error, "SAVE")
        classifier.to_database_error(error)
        assert classifier.get_error_stats()["total"] == 1

    def test_value_error_is_data(self, classifier):
        details = classifier.classify(ValueError("bad connection value"))
        assert details.type == ErrorType.DATA
        assert not details.retryable
        assert not classifier.is_retryable(ValueError("bad connection value"))

    def test_clear(self, classifier):
        classifier.classify(RuntimeError("x"))
        classifier.clear_error_log()
        assert classifier.get_error_stats()["total"] == 0

    def test_details_to_dict(self, classifier):
        data = classifier.classify(TimeoutError("slow"), "ping").to_dict()
        assert data["type"] == "TIMEOUT"
        assert data["context"] == "ping"
        assert isinstance(data["timestamp"], str)
