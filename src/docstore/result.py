"""
Result envelope for value-based failure handling.

Repository operations raise the errors from :mod:`docstore.errors`. Callers that
prefer failures visible in the return type wrap a call with :func:`try_result`
and pattern-match on ``Ok``/``Err``:

    >>> from docstore.result import Ok, Err, try_result
    >>> match try_result(lambda: repo.update(entity, version)):
    ...     case Ok(updated):
    ...         publish(updated)
    ...     case Err(ConflictError()):
    ...         reload_and_retry()
    ...     case Err(UnavailableError()):
    ...         schedule_retry()

Only :class:`~docstore.errors.DocumentStoreError` (and raw database errors,
which are classified first) become ``Err``; programming errors still raise.

Tags:
    result-pattern, error-handling, docstore
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from docstore.errors import DocumentStoreError, classify_error, is_database_error

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful result containing a value."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        """Get the value. Safe for Ok."""
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value

    def map(self, f: Callable[[T], U]) -> Result[U]:
        """Transform the value if Ok."""
        return Ok(f(self.value))

    def flat_map(self, f: Callable[[T], Result[U]]) -> Result[U]:
        """Chain to another Result-returning function."""
        return f(self.value)

    def to_dict(self) -> dict[str, Any]:
        return {"ok": True, "value": self.value}

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[T]):
    """Failed result carrying a classified store error."""

    error: DocumentStoreError

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> T:
        """Raise the contained error."""
        raise self.error

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, f: Callable[[T], U]) -> Result[U]:
        return Err(self.error)

    def flat_map(self, f: Callable[[T], Result[U]]) -> Result[U]:
        return Err(self.error)

    @property
    def retryable(self) -> bool:
        return self.error.retryable

    def to_dict(self) -> dict[str, Any]:
        return {"ok": False, "error": self.error.to_dict()}

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


Result = Ok[T] | Err[T]


def try_result(f: Callable[[], T]) -> Result[T]:
    """Run *f* and wrap its outcome.

    Store errors and raw database errors (classified on the way) become
    ``Err``; any other exception propagates.
    """
    try:
        return Ok(f())
    except DocumentStoreError as e:
        return Err(e)
    except Exception as e:
        if not is_database_error(e):
            raise
        return Err(classify_error(e))  # type: ignore[arg-type]


__all__ = ["Ok", "Err", "Result", "try_result"]
