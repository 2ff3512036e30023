"""
Structured error types and failure classification for the document store.

Every failure that leaves a repository call is one of a small, stable set of
error kinds. Callers decide retry policy from the kind alone; they never have
to inspect SQLAlchemy or DB-API exceptions.

Manifesto:
    - **Stable taxonomy:** Conflict, not-found, unavailable, unknown, batch item
    - **Explicit retry semantics:** Only UnavailableError is retryable by default
    - **Classify once:** Driver errors are mapped where they surface, before
      any repository-specific remapping
    - **Error chaining:** The driver exception is kept as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────┐
        │                    DocumentStoreError                        │
        │        (category, retryable, context, cause)                 │
        ├─────────────────────────────────────────────────────────────┤
        │  ConflictError        optimistic-lock precondition failed    │
        │  EntityNotFoundError  get_or_throw found nothing             │
        │  UnavailableError     connection loss / timeout (retryable)  │
        │  UnknownError         any other database failure             │
        │  BatchItemError       one identified item failed a batch     │
        └─────────────────────────────────────────────────────────────┘

        classify_error(exc)
            DocumentStoreError          → unchanged
            invalidated connections,
            failures while connecting,
            pool / socket timeouts      → UnavailableError
            other SQLAlchemy/DB-API     → UnknownError   (bad SQL included)
            anything else (caller code) → unchanged

Examples:
    >>> error = classify_error(ConnectionResetError("peer reset"))
    >>> type(error).__name__, error.retryable
    ('UnavailableError', True)

    >>> ConflictError("stale").retryable
    False

Guardrails:
    ❌ DON'T: Reclassify a ConflictError raised by the repository
    ✅ DO: Let classify_error pass DocumentStoreError through untouched

    ❌ DON'T: Retry on ConflictError without re-reading the entity
    ✅ DO: Re-read, re-apply the change and update with the fresh version

Tags:
    error-handling, exception-hierarchy, retry-logic, classification,
    optimistic-locking, docstore

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

import builtins
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy import exc as sa_exc


class ErrorCategory(str, Enum):
    """Categories used for routing, alerting and retry decisions."""

    CONFLICT = "CONFLICT"          # Optimistic-lock violation
    NOT_FOUND = "NOT_FOUND"        # Explicit lookup miss
    UNAVAILABLE = "UNAVAILABLE"    # Connection loss, timeout
    BATCH = "BATCH"                # Identified batch item failure
    UNKNOWN = "UNKNOWN"            # Unclassified database failure


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error for logging.

    Attributes:
        table: Table the operation ran against
        operation: Repository operation name (create, batch_update, ...)
        entity_id: Identifier of the affected entity, if known
        metadata: Additional key-value pairs
    """

    table: str | None = None
    operation: str | None = None
    entity_id: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {}
        for key in ["table", "operation", "entity_id"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = str(value) if key == "entity_id" else value
        if self.metadata:
            result.update(self.metadata)
        return result


class DocumentStoreError(Exception):
    """
    Base exception for every failure raised by the document store.

    Subclasses set ``default_category`` and ``default_retryable``; both can be
    overridden per instance.
    """

    default_category: ErrorCategory = ErrorCategory.UNKNOWN
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause
        # Secondary failures (e.g. a failed rollback) that did not replace this one
        self.suppressed: list[BaseException] = []

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> DocumentStoreError:
        """
        Add context to this error (fluent API).

        Usage:
            raise ConflictError("stale").with_context(table="users", operation="update")
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = repr(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


class ConflictError(DocumentStoreError):
    """
    An optimistic-lock precondition failed.

    Raised by ``update``/``delete`` when no row matched ``(id, previous_version)``,
    by ``create`` when the identity already exists, and by batch operations when
    any item matched no row. A zero-row update does not tell us whether the row
    never existed or was modified concurrently, so both surface as this error.
    """

    default_category = ErrorCategory.CONFLICT


class EntityNotFoundError(DocumentStoreError):
    """Raised by ``get_or_throw`` when no entity has the given id."""

    default_category = ErrorCategory.NOT_FOUND


class UnavailableError(DocumentStoreError):
    """The database could not be reached, or the connection dropped mid-call."""

    default_category = ErrorCategory.UNAVAILABLE
    default_retryable = True


class UnknownError(DocumentStoreError):
    """A database failure that could not be classified."""

    default_category = ErrorCategory.UNKNOWN


class BatchItemError(DocumentStoreError):
    """A specific item was identified as the cause of a failed batch call.

    ``index`` is the item's position in the caller's input. The whole batch has
    been rolled back when this is raised.
    """

    default_category = ErrorCategory.BATCH

    def __init__(self, message: str, *, item: Any, index: int, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.item = item
        self.index = index

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["index"] = self.index
        return result


# =============================================================================
# CLASSIFICATION
# =============================================================================

_UNAVAILABLE_SA_ERRORS: tuple[type[BaseException], ...] = (
    sa_exc.DisconnectionError,
    sa_exc.TimeoutError,
)

_UNAVAILABLE_BUILTIN_ERRORS: tuple[type[BaseException], ...] = (
    builtins.ConnectionError,
    builtins.TimeoutError,
)


def is_unavailable(error: BaseException) -> bool:
    """True when *error* is a connection-level or timeout failure.

    ``OperationalError`` alone is not enough: drivers also raise it for
    unknown columns and syntax errors, which no retry will fix. It counts
    only when SQLAlchemy invalidated the connection (the dialect recognised
    a disconnect) or when it was raised while connecting, before any
    statement ran.
    """
    if isinstance(error, sa_exc.DBAPIError):
        if error.connection_invalidated:
            return True
        if isinstance(error, sa_exc.OperationalError) and error.statement is None:
            return True
        return isinstance(error.orig, _UNAVAILABLE_BUILTIN_ERRORS)
    return isinstance(error, _UNAVAILABLE_SA_ERRORS + _UNAVAILABLE_BUILTIN_ERRORS)


def is_database_error(error: BaseException) -> bool:
    """True when *error* was raised by SQLAlchemy or the DB-API driver."""
    return isinstance(error, sa_exc.SQLAlchemyError) or is_unavailable(error)


def classify_error(error: BaseException) -> BaseException:
    """Map a raw driver failure onto the store's error taxonomy.

    Errors that already belong to the taxonomy, and errors that did not come
    from the database layer, are returned as-is.
    """
    if isinstance(error, DocumentStoreError):
        return error

    # Errors raised by the batch engine's prepared batch wrap the driver error.
    underlying = getattr(error, "batch_cause", None) or error

    if is_unavailable(underlying):
        return UnavailableError(f"Database unavailable: {underlying}", cause=error)
    if is_database_error(underlying):
        return UnknownError(f"Database operation failed: {underlying}", cause=error)
    return error


def is_unique_violation(error: BaseException) -> bool:
    """True when *error* (or its cause) is an integrity violation from the driver."""
    if isinstance(error, DocumentStoreError):
        error = error.cause if error.cause is not None else error
    return isinstance(error, sa_exc.IntegrityError)


def is_retryable(error: BaseException) -> bool:
    """Check if an error is safe to retry."""
    if isinstance(error, DocumentStoreError):
        return error.retryable
    return is_unavailable(error)


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error, classifying raw driver errors first."""
    classified = classify_error(error)
    if isinstance(classified, DocumentStoreError):
        return classified.category
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "DocumentStoreError",
    "ConflictError",
    "EntityNotFoundError",
    "UnavailableError",
    "UnknownError",
    "BatchItemError",
    "classify_error",
    "is_unavailable",
    "is_database_error",
    "is_unique_violation",
    "is_retryable",
    "categorize_error",
]
