"""
Batch execution engine: one statement applied to many items, chunk by chunk.

``execute_batch_operation`` binds every item to the same statement, groups
the bound parameter sets into chunks of at most ``batch_size`` and executes
each chunk as one :class:`PreparedBatch`, a single executemany round trip
through ``Connection.execute(statement, [params, ...])``. After each chunk the caller's
``handle_row_counts`` sees one affected-row count per item, so optimistic-lock
misses (a count of 0) stop the operation before the next chunk is sent.

Manifesto:
    - **All or nothing:** every chunk of one call runs in one transaction;
      any failure rolls the whole call back
    - **Bounded memory:** items are pulled lazily, one chunk at a time
    - **Same result from any source:** a list and a one-pass generator of the
      same items persist exactly the same rows
    - **Diagnose, never crash:** identifying the failing item is best-effort;
      when it fails, the original error is re-raised untouched

Architecture:
    ::

        items ──▶ chunk_items()
                   ├─ Sequence  → SequenceChunks  (zero-copy SequenceView ranges)
                   └─ Iterable  → IteratorChunks  (one reusable buffer, refilled)
                        │
                        ▼ Chunk(number, start_index, items)
        ┌───────────────────────────────────────────────────────────────┐
        │ autocommit_disabled(connection)   (scoped, whole operation)    │
        │ BEGIN unless the connection is already in a transaction        │
        │                                                                │
        │   for chunk:                                                   │
        │     PreparedBatch.add(bind_parameters(item)) for each item     │
        │     counts = PreparedBatch.execute()   (one executemany)       │
        │        ├─ rowcount == len(chunk) → [1, 1, …]                   │
        │        ├─ short → resolve_row_counts (one keyed SELECT)        │
        │        ├─ short, unattributable → ConflictError                │
        │        └─ driver error → BatchDiagnostics(driver error)        │
        │              ordinal found  → BatchItemError(item, index)      │
        │              not found      → original error                   │
        │     handle_row_counts(counts, chunk.start_index)               │
        │        └─ 0 in counts → ConflictError (raised by the handler)  │
        │                                                                │
        │ COMMIT (only if BEGIN was issued here)                         │
        └───────────────────────────────────────────────────────────────┘

Performance:
    - Default chunk size is 50. Larger chunks save little per item once the
      payloads are JSON documents, and cost memory for every bound document.
    - One round trip per chunk: 237 items at the default size are 5
      executemany calls. Statements with RETURNING go through SQLAlchemy's
      "insertmanyvalues" batching, still one statement per chunk.
    - Resolving per-item counts costs one extra SELECT, and only for a chunk
      whose aggregate count came up short (a conflict, about to roll back).

Guardrails:
    ❌ DON'T: Keep a reference to ``Chunk.items`` from an IteratorChunks
              provider after the next chunk is requested (the buffer is reused)
    ✅ DO: Copy what you need inside ``handle_row_counts``

    ❌ DON'T: Rely on BatchItemError for generator input errors that the
              diagnostics cannot parse
    ✅ DO: Treat BatchItemError as an optional refinement of the failure

Tags:
    batch, bulk, chunking, transactions, optimistic-locking, diagnostics,
    docstore

Doc-Types:
    - API Reference
    - Architecture Decision Record
"""

from __future__ import annotations

import itertools
import re
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar, overload, runtime_checkable

from sqlalchemy import Executable
from sqlalchemy.engine import Connection, Row
from sqlalchemy.exc import SQLAlchemyError

from docstore.errors import BatchItemError, ConflictError, classify_error, is_retryable
from docstore.logging import get_logger
from docstore.transactions import autocommit_disabled

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 50

BindParameters = Callable[[T], Mapping[str, Any]]
RowCountHandler = Callable[[list[int], int], None]
RowCountResolver = Callable[[Connection, Sequence[Mapping[str, Any]]], list[int]]
ReturnedRowsHandler = Callable[[Sequence[Row[Any]], int], None]


# =============================================================================
# CHUNK PROVIDERS
# =============================================================================


class SequenceView(Sequence[T]):
    """Read-only window ``[start, stop)`` over another sequence, without copying."""

    __slots__ = ("_source", "_start", "_stop")

    def __init__(self, source: Sequence[T], start: int, stop: int) -> None:
        self._source = source
        self._start = start
        self._stop = stop

    def __len__(self) -> int:
        return self._stop - self._start

    @overload
    def __getitem__(self, index: int) -> T: ...

    @overload
    def __getitem__(self, index: slice) -> Sequence[T]: ...

    def __getitem__(self, index: int | slice) -> T | Sequence[T]:
        if isinstance(index, slice):
            start, stop, step = index.indices(len(self))
            if step != 1:
                return [self[i] for i in range(start, stop, step)]
            return SequenceView(self._source, self._start + start, self._start + max(start, stop))
        if index < 0:
            index += len(self)
        if not 0 <= index < len(self):
            raise IndexError("SequenceView index out of range")
        return self._source[self._start + index]

    def __iter__(self) -> Iterator[T]:
        for i in range(self._start, self._stop):
            yield self._source[i]

    def __repr__(self) -> str:
        return f"SequenceView(start={self._start}, stop={self._stop})"


@dataclass(frozen=True, slots=True)
class Chunk(Generic[T]):
    """A group of items executed as one prepared batch.

    Attributes:
        number: 0-based position of the chunk in the operation
        start_index: Index of the chunk's first item in the whole input
        items: The items (a view or a reused buffer, see the providers)
    """

    number: int
    start_index: int
    items: Sequence[T]


@runtime_checkable
class ChunkProvider(Protocol[T]):
    """Produces the chunks of one batch operation, in input order."""

    def chunks(self) -> Iterator[Chunk[T]]: ...


class SequenceChunks(Generic[T]):
    """Chunks over an in-memory sequence as zero-copy :class:`SequenceView` ranges."""

    def __init__(self, items: Sequence[T], batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        self.items = items
        self.batch_size = batch_size

    def chunks(self) -> Iterator[Chunk[T]]:
        total = len(self.items)
        for number, start in enumerate(range(0, total, self.batch_size)):
            stop = min(start + self.batch_size, total)
            yield Chunk(number, start, SequenceView(self.items, start, stop))


class IteratorChunks(Generic[T]):
    """Chunks pulled from a one-pass iterable into a single reusable buffer.

    Memory stays bounded by ``batch_size`` whatever the number of items. The
    buffer is cleared and refilled for every chunk, so a chunk's ``items`` are
    only valid until the next chunk is requested.
    """

    def __init__(self, items: Iterable[T], batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        self.items = items
        self.batch_size = batch_size

    def chunks(self) -> Iterator[Chunk[T]]:
        iterator = iter(self.items)
        buffer: list[T] = []
        start_index = 0
        for number in itertools.count():
            buffer.clear()
            buffer.extend(itertools.islice(iterator, self.batch_size))
            if not buffer:
                return
            yield Chunk(number, start_index, buffer)
            start_index += len(buffer)


def chunk_items(items: Iterable[T], batch_size: int = DEFAULT_BATCH_SIZE) -> ChunkProvider[T]:
    """Pick the chunk provider for *items*: views for sequences, a buffer otherwise."""
    if isinstance(items, Sequence):
        return SequenceChunks(items, batch_size)
    return IteratorChunks(items, batch_size)


# =============================================================================
# PREPARED BATCH
# =============================================================================

# Per-item count for a parameter set that ran but whose own count is not known
ROW_COUNT_UNKNOWN = -2


class BatchExecutionError(Exception):
    """A prepared batch failed as a whole.

    ``batch_cause`` is the exception raised by the driver for the
    executemany call; :class:`BatchDiagnostics` implementations inspect it to
    recover the failing item.
    """

    def __init__(self, message: str, *, statement: str, batch_cause: BaseException):
        super().__init__(message)
        self.statement = statement
        self.batch_cause = batch_cause


class PreparedBatch:
    """Parameter sets bound to one statement, sent together in one executemany.

    Owned by the batch engine for the duration of one operation; cleared and
    refilled for every chunk.

    Each parameter set is expected to affect exactly one row. The driver
    reports one aggregate row count for the whole executemany; when it falls
    short, ``resolve_row_counts`` (if given) is asked which parameter sets
    missed. A shortfall that cannot be attributed to any item is raised as a
    ConflictError without an offender.
    """

    def __init__(
        self,
        connection: Connection,
        statement: Executable,
        resolve_row_counts: RowCountResolver | None = None,
    ) -> None:
        self.connection = connection
        self.statement = statement
        self.resolve_row_counts = resolve_row_counts
        self.returned_rows: list[Row[Any]] = []
        self._parameters: list[Mapping[str, Any]] = []

    def add(self, parameters: Mapping[str, Any]) -> None:
        self._parameters.append(parameters)

    def clear(self) -> None:
        self._parameters.clear()
        self.returned_rows = []

    def __len__(self) -> int:
        return len(self._parameters)

    def execute(self) -> list[int]:
        """Execute every bound parameter set; one affected-row count per set."""
        parameters = list(self._parameters)
        size = len(parameters)
        try:
            result = self.connection.execute(self.statement, parameters)
        except SQLAlchemyError as exc:
            reason = getattr(exc, "orig", None) or exc
            raise BatchExecutionError(
                f"Batch of {size} parameter sets for {self.statement} was aborted: {reason}",
                statement=str(self.statement),
                batch_cause=exc,
            ) from exc

        self.returned_rows = list(result.all()) if result.returns_rows else []
        if getattr(self.statement, "is_insert", False):
            # an INSERT either stores every row or raises
            return [1] * size

        affected = result.rowcount if self.connection.dialect.supports_sane_multi_rowcount else -1
        if affected == size:
            return [1] * size

        if self.resolve_row_counts is not None:
            counts = self.resolve_row_counts(self.connection, parameters)
        else:
            counts = [ROW_COUNT_UNKNOWN] * size

        missing = size - affected if 0 <= affected < size else 0
        if missing and 0 not in counts:
            raise ConflictError(
                f"{missing} of {size} items in the batch matched no row; "
                f"the items could not be identified"
            ).with_context(missing=missing)
        return counts


# =============================================================================
# DIAGNOSTICS
# =============================================================================


@runtime_checkable
class BatchDiagnostics(Protocol):
    """Recovers which item of a chunk made a prepared batch fail.

    Receives the driver's own exception for the failed executemany. The
    diagnostic format is driver- and version-specific, so it sits behind this
    port. Return ``None`` when the error does not identify an item.
    """

    def failed_item_ordinal(self, error: BaseException) -> int | None: ...


class OrdinalMessageDiagnostics:
    """Reads the failing ordinal from a ``Batch entry <n>`` error message.

    That is the shape used by drivers that report which entry of a batch
    aborted it (the PostgreSQL JDBC driver and bridges built on it).
    """

    DEFAULT_PATTERN = r"Batch entry (\d+)"

    def __init__(self, pattern: str = DEFAULT_PATTERN) -> None:
        self.pattern = re.compile(pattern)

    def failed_item_ordinal(self, error: BaseException) -> int | None:
        match = self.pattern.search(str(error))
        if match is None:
            return None
        return int(match.group(1))


class NoDiagnostics:
    """Never identifies an item; batch failures keep their original error."""

    def failed_item_ordinal(self, error: BaseException) -> int | None:
        return None


def diagnose_batch_failure(
    error: BatchExecutionError,
    chunk: Chunk[Any],
    diagnostics: BatchDiagnostics,
) -> BaseException:
    """Turn *error* into a :class:`BatchItemError` if the failing item can be found.

    Returns *error* itself when the diagnostics cannot name an item, or when
    they fail themselves.
    """
    cause = error.batch_cause
    try:
        ordinal = diagnostics.failed_item_ordinal(cause)
    except Exception as exc:
        logger.warning("batch_diagnostics_failed", diagnostics=type(diagnostics).__name__, error=repr(exc))
        return error

    if ordinal is None or not 0 <= ordinal < len(chunk.items):
        return error

    index = chunk.start_index + ordinal
    return BatchItemError(
        f"Batch item {index} failed, rolling back batch: {cause}",
        item=chunk.items[ordinal],
        index=index,
        cause=cause,
        retryable=is_retryable(classify_error(cause)),
    )


DEFAULT_DIAGNOSTICS: BatchDiagnostics = OrdinalMessageDiagnostics()


# =============================================================================
# ENGINE
# =============================================================================


@dataclass(frozen=True, slots=True)
class BatchSummary:
    """What one batch operation executed."""

    item_count: int
    chunk_count: int


@contextmanager
def _batch_scope(connection: Connection) -> Iterator[None]:
    """One transaction around the whole operation, joining an active one."""
    if connection.in_transaction():
        yield
        return
    with autocommit_disabled(connection), connection.begin():
        yield


def execute_batch_operation(
    connection: Connection,
    items: Iterable[T],
    statement: Executable,
    bind_parameters: BindParameters[T],
    handle_row_counts: RowCountHandler | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    diagnostics: BatchDiagnostics | None = None,
    *,
    resolve_row_counts: RowCountResolver | None = None,
    handle_returned_rows: ReturnedRowsHandler | None = None,
) -> BatchSummary:
    """Execute *statement* once per item, one executemany round trip per chunk.

    Atomicity comes from the connection's transaction. When *connection* is
    not in a transaction, one is begun here (with AUTOCOMMIT switched off for
    the duration) and committed at the end. When it already is, that
    transaction is joined as-is: the caller must have begun it on a
    connection that is not in AUTOCOMMIT mode, since a transaction begun
    under AUTOCOMMIT does not make the chunks atomic.

    Args:
        connection: Connection to run on
        items: A sequence, or any one-pass iterable
        statement: Statement with named bind parameters
        bind_parameters: Maps an item to the statement's parameters
        handle_row_counts: Called after every chunk with the per-item
            affected-row counts and the chunk's start index; raise from it to
            abort (and roll back) the operation
        batch_size: Maximum items per chunk
        diagnostics: Port used to identify the failing item of a failed chunk
        resolve_row_counts: Works out per-item counts when the chunk's
            aggregate row count falls short (see :class:`PreparedBatch`)
        handle_returned_rows: Called after every chunk with the rows returned
            by a statement with RETURNING, in parameter order, and the chunk's
            start index

    Returns:
        BatchSummary with the number of items and chunks executed

    Raises:
        BatchItemError: A chunk failed and the failing item was identified
        BatchExecutionError: A chunk failed and no item could be identified
        ConflictError: A chunk affected fewer rows than it had items and no
            item could be named
    """
    diagnostics = diagnostics if diagnostics is not None else DEFAULT_DIAGNOSTICS
    provider = chunk_items(items, batch_size)
    item_count = 0
    chunk_count = 0

    with _batch_scope(connection):
        batch = PreparedBatch(connection, statement, resolve_row_counts)
        for chunk in provider.chunks():
            batch.clear()
            for item in chunk.items:
                batch.add(bind_parameters(item))

            try:
                row_counts = batch.execute()
            except BatchExecutionError as exc:
                diagnosed = diagnose_batch_failure(exc, chunk, diagnostics)
                if diagnosed is exc:
                    raise
                raise diagnosed
            except ConflictError as exc:
                raise exc.with_context(chunk=chunk.number, start_index=chunk.start_index)

            item_count += len(chunk.items)
            chunk_count += 1
            logger.debug(
                "batch_chunk_executed",
                chunk=chunk.number,
                start_index=chunk.start_index,
                size=len(chunk.items),
            )

            if handle_returned_rows is not None:
                handle_returned_rows(batch.returned_rows, chunk.start_index)
            if handle_row_counts is not None:
                handle_row_counts(row_counts, chunk.start_index)

    return BatchSummary(item_count=item_count, chunk_count=chunk_count)


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "ROW_COUNT_UNKNOWN",
    "SequenceView",
    "Chunk",
    "ChunkProvider",
    "SequenceChunks",
    "IteratorChunks",
    "chunk_items",
    "BatchExecutionError",
    "PreparedBatch",
    "RowCountResolver",
    "BatchDiagnostics",
    "OrdinalMessageDiagnostics",
    "NoDiagnostics",
    "diagnose_batch_failure",
    "DEFAULT_DIAGNOSTICS",
    "BatchSummary",
    "execute_batch_operation",
]
