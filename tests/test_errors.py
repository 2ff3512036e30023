"""Tests for docstore.errors module."""

import pytest
from sqlalchemy import exc as sa_exc

from docstore.errors import (
    BatchItemError,
    ConflictError,
    DocumentStoreError,
    EntityNotFoundError,
    ErrorCategory,
    ErrorContext,
    UnavailableError,
    UnknownError,
    categorize_error,
    classify_error,
    is_retryable,
    is_unique_violation,
)


def _dbapi_error(cls, message="boom", connection_invalidated=False):
    return cls("SELECT 1", {}, Exception(message), connection_invalidated=connection_invalidated)


class TestErrorContext:
    """Test ErrorContext dataclass."""

    def test_create_empty_context(self):
        ctx = ErrorContext()
        assert ctx.table is None
        assert ctx.operation is None
        assert ctx.metadata == {}

    def test_to_dict_includes_set_fields(self):
        ctx = ErrorContext(table="users", entity_id=42, metadata={"index": 3})
        d = ctx.to_dict()
        assert d == {"table": "users", "entity_id": "42", "index": 3}
        assert "operation" not in d


class TestDocumentStoreError:
    """Test the base error and its subclasses."""

    def test_defaults_per_subclass(self):
        assert ConflictError("x").category == ErrorCategory.CONFLICT
        assert EntityNotFoundError("x").category == ErrorCategory.NOT_FOUND
        assert UnknownError("x").category == ErrorCategory.UNKNOWN
        assert UnavailableError("x").retryable is True
        assert ConflictError("x").retryable is False

    def test_cause_is_chained(self):
        cause = ValueError("inner")
        error = UnknownError("outer", cause=cause)
        assert error.cause is cause
        assert error.__cause__ is cause

    def test_with_context_is_fluent(self):
        error = ConflictError("stale").with_context(table="users", operation="update", attempt=2)
        assert error.context.table == "users"
        assert error.context.operation == "update"
        assert error.context.metadata["attempt"] == 2

    def test_to_dict(self):
        error = ConflictError("stale", cause=KeyError("k")).with_context(table="users")
        d = error.to_dict()
        assert d["error_type"] == "ConflictError"
        assert d["category"] == "CONFLICT"
        assert d["retryable"] is False
        assert d["context"] == {"table": "users"}
        assert "KeyError" in d["cause"]

    def test_batch_item_error_carries_item_and_index(self):
        error = BatchItemError("failed", item={"id": 1}, index=120)
        assert error.item == {"id": 1}
        assert error.index == 120
        assert error.category == ErrorCategory.BATCH
        assert error.to_dict()["index"] == 120

    def test_suppressed_starts_empty(self):
        assert UnknownError("x").suppressed == []


class TestClassifyError:
    """Test mapping of driver failures onto the taxonomy."""

    def test_store_errors_pass_through(self):
        conflict = ConflictError("stale")
        assert classify_error(conflict) is conflict

    def test_operational_error_on_statement_is_unknown(self):
        error = classify_error(_dbapi_error(sa_exc.OperationalError, "no such column: nope"))
        assert isinstance(error, UnknownError)
        assert error.retryable is False

    def test_disconnect_is_unavailable(self):
        raw = _dbapi_error(sa_exc.OperationalError, "server closed the connection", connection_invalidated=True)
        error = classify_error(raw)
        assert isinstance(error, UnavailableError)
        assert error.retryable is True

    def test_failure_while_connecting_is_unavailable(self):
        raw = sa_exc.OperationalError(None, None, Exception("could not connect to server"))
        assert isinstance(classify_error(raw), UnavailableError)

    def test_driver_socket_timeout_is_unavailable(self):
        raw = sa_exc.DatabaseError("SELECT 1", {}, TimeoutError("read timed out"))
        assert isinstance(classify_error(raw), UnavailableError)

    def test_closed_result_is_unknown(self):
        assert isinstance(classify_error(sa_exc.ResourceClosedError("closed")), UnknownError)

    def test_invalidated_connection_is_unavailable(self):
        raw = _dbapi_error(sa_exc.DatabaseError, connection_invalidated=True)
        assert isinstance(classify_error(raw), UnavailableError)

    def test_pool_timeout_is_unavailable(self):
        assert isinstance(classify_error(sa_exc.TimeoutError("pool exhausted")), UnavailableError)

    @pytest.mark.parametrize("raw", [ConnectionResetError("reset"), TimeoutError("slow")])
    def test_builtin_transport_errors_are_unavailable(self, raw):
        assert isinstance(classify_error(raw), UnavailableError)

    def test_integrity_error_is_unknown(self):
        raw = _dbapi_error(sa_exc.IntegrityError, "UNIQUE constraint failed")
        error = classify_error(raw)
        assert isinstance(error, UnknownError)
        assert error.cause is raw
        assert error.retryable is False

    def test_non_database_errors_are_unchanged(self):
        raw = ValueError("caller bug")
        assert classify_error(raw) is raw

    def test_batch_cause_is_unwrapped(self):
        class Wrapper(Exception):
            pass

        wrapper = Wrapper("Batch entry 0 was aborted")
        wrapper.batch_cause = _dbapi_error(sa_exc.OperationalError, connection_invalidated=True)
        error = classify_error(wrapper)
        assert isinstance(error, UnavailableError)
        assert error.cause is wrapper


class TestHelpers:
    def test_is_unique_violation_unwraps_store_error(self):
        raw = _dbapi_error(sa_exc.IntegrityError)
        assert is_unique_violation(raw)
        assert is_unique_violation(UnknownError("wrapped", cause=raw))
        assert not is_unique_violation(UnknownError("other"))

    def test_is_retryable(self):
        assert is_retryable(UnavailableError("down"))
        assert is_retryable(ConnectionRefusedError())
        assert not is_retryable(ConflictError("stale"))
        assert not is_retryable(ValueError())

    def test_categorize_error(self):
        invalidated = _dbapi_error(sa_exc.OperationalError, connection_invalidated=True)
        assert categorize_error(invalidated) == ErrorCategory.UNAVAILABLE
        assert categorize_error(_dbapi_error(sa_exc.OperationalError)) == ErrorCategory.UNKNOWN
        assert categorize_error(ConflictError("x")) == ErrorCategory.CONFLICT
        assert categorize_error(RuntimeError()) == ErrorCategory.UNKNOWN

    def test_repr(self):
        assert repr(ConflictError("stale")) == "ConflictError('stale', category=CONFLICT)"

    def test_base_class_catches_all(self):
        for error in (ConflictError("a"), EntityNotFoundError("b"), UnavailableError("c")):
            assert isinstance(error, DocumentStoreError)
