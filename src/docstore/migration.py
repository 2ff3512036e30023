"""
Rewrite every stored document of a table in place.

Documents written by older code may lack fields that newer code adds with a
default value. Decoding fills the defaults in; writing the result back makes
them visible to predicates too. ``migrate_documents`` does exactly that for a
whole table, optionally applying a transform to each entity on the way.

Manifesto:
    - **Streaming:** rows are read in keyset-paginated pages and written back
      through the batch engine, so the whole table is never held in memory
    - **One transaction:** the rewrite commits as a whole or not at all
    - **Idempotent:** running it twice with an idempotent transform yields the
      same documents (versions still move forward)

Architecture:
    ::

        stream_documents()                       batch engine
        ┌───────────────────────────────┐       ┌──────────────────────────────┐
        │ SELECT … WHERE id > :last      │       │ UPDATE … SET data, version+1 │
        │ ORDER BY id LIMIT n FOR UPDATE │──────▶│ WHERE id = ? AND version = ? │
        │ (page fully fetched, then      │ items │ chunks of migration_batch_size│
        │  yielded one by one)           │       │ 0 rows → ConflictError        │
        └───────────────────────────────┘       └──────────────────────────────┘

    Each page is fetched completely before any of its rows is yielded, so the
    batch updates never interleave with an open cursor on the connection.

Usage:
    Run it once per table (for example from a deployment migration step),
    not from every application instance on startup::

        with transactions.transaction() as uow:
            migrate_documents(uow.connection, users, UserAdapter(), add_display_name)

Tags:
    migration, rewrite, streaming, keyset-pagination, batch, docstore

Doc-Types:
    - API Reference
    - Operations Guide
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping, Sequence
from typing import Any

from sqlalchemy import BigInteger, Table, bindparam, select, update
from sqlalchemy.engine import Connection

from docstore.batch import BatchDiagnostics, RowCountResolver, execute_batch_operation
from docstore.codec import RowCodec
from docstore.entity import Versioned
from docstore.errors import ConflictError
from docstore.logging import LogContext, get_logger
from docstore.protocols import EntityT, SerializationAdapter
from docstore.schema import COLUMNS, DATA, ID, MODIFIED_AT, VERSION, has_generated_ids, utc_now

logger = get_logger(__name__)

MIGRATION_BATCH_SIZE = 100

Transform = Callable[[Versioned[EntityT]], EntityT]


def stream_documents(
    connection: Connection,
    table: Table,
    codec: RowCodec[EntityT],
    *,
    page_size: int = MIGRATION_BATCH_SIZE,
    for_update: bool = True,
) -> Iterator[Versioned[EntityT]]:
    """Yield every stored entity of *table* ordered by id, one page at a time."""
    id_column = table.c[ID]
    last_id: Any = None
    while True:
        statement = select(*[table.c[name] for name in COLUMNS]).order_by(id_column).limit(page_size)
        if last_id is not None:
            statement = statement.where(id_column > last_id)
        if for_update:
            statement = statement.with_for_update()

        rows: Sequence[Any] = connection.execute(statement).mappings().all()
        if not rows:
            return
        last_id = rows[-1][ID]
        for row in rows:
            yield codec.decode_row(row)
        if len(rows) < page_size:
            return


def rewrite_statement(table: Table) -> Any:
    """Versioned UPDATE of one document by id, shared with batch updates."""
    return (
        update(table)
        .where(
            table.c[ID] == bindparam("b_id", type_=table.c[ID].type),
            table.c[VERSION] == bindparam("b_previous_version", type_=BigInteger()),
        )
        .values(
            {
                DATA: bindparam("b_data", type_=table.c[DATA].type),
                VERSION: bindparam("b_next_version", type_=BigInteger()),
                MODIFIED_AT: bindparam("b_modified_at", type_=table.c[MODIFIED_AT].type),
            }
        )
    )


def rewrite_row_counts(table: Table) -> RowCountResolver:
    """Per-item counts for a chunk of :func:`rewrite_statement` updates.

    Used only when the chunk's aggregate row count fell short. A parameter
    set matched if its row now carries exactly the version and
    ``modified_at`` it wrote; :func:`~docstore.schema.utc_now` never hands
    out the same timestamp twice, so another writer cannot produce that pair.
    """
    id_column = table.c[ID]

    def resolve(connection: Connection, parameters: Sequence[Mapping[str, Any]]) -> list[int]:
        statement = select(id_column, table.c[VERSION], table.c[MODIFIED_AT]).where(
            id_column.in_([p["b_id"] for p in parameters])
        )
        current = {row[0]: (row[1], row[2]) for row in connection.execute(statement)}
        return [
            1 if current.get(p["b_id"]) == (p["b_next_version"], p["b_modified_at"]) else 0
            for p in parameters
        ]

    return resolve


def migrate_documents(
    connection: Connection,
    table: Table,
    adapter: SerializationAdapter[EntityT],
    transform: Transform[EntityT] | None = None,
    *,
    batch_size: int = MIGRATION_BATCH_SIZE,
    diagnostics: BatchDiagnostics | None = None,
) -> int:
    """Decode, optionally transform, re-encode and write back every document.

    Args:
        connection: Connection to run on; an open transaction is joined,
            otherwise the batch engine runs the rewrite in its own
        table: Document table to rewrite
        adapter: Serialization adapter of the table's entities
        transform: Maps each stored entity to the entity to write back
        batch_size: Rows per read page and per update chunk
        diagnostics: Batch diagnostics port passed to the batch engine

    Returns:
        Number of documents rewritten

    Raises:
        ConflictError: A row changed between being read and being rewritten
            (possible only on dialects without row locks)
    """
    codec = RowCodec(adapter, generated_ids=has_generated_ids(table))
    now = utc_now()

    def rewritten() -> Iterator[Versioned[EntityT]]:
        for stored in stream_documents(connection, table, codec, page_size=batch_size):
            yield stored if transform is None else stored.with_item(transform(stored))

    def bind(entity: Versioned[EntityT]) -> dict[str, Any]:
        return {
            "b_id": entity.item.id,  # type: ignore[attr-defined]
            "b_previous_version": entity.version.value,
            "b_data": codec.encode(entity.item),
            "b_next_version": entity.version.next().value,
            "b_modified_at": now,
        }

    def check(row_counts: list[int], start_index: int) -> None:
        for offset, count in enumerate(row_counts):
            if count == 0:
                raise ConflictError(
                    f"Document at position {start_index + offset} changed during rewrite of {table.name}"
                ).with_context(table=table.name, operation="rewrite_all")

    with LogContext(table=table.name, operation="rewrite_all"):
        summary = execute_batch_operation(
            connection,
            rewritten(),
            rewrite_statement(table),
            bind,
            handle_row_counts=check,
            batch_size=batch_size,
            diagnostics=diagnostics,
            resolve_row_counts=rewrite_row_counts(table),
        )
    logger.info(
        "documents_rewritten",
        table=table.name,
        documents=summary.item_count,
        chunks=summary.chunk_count,
    )
    return summary.item_count


__all__ = [
    "MIGRATION_BATCH_SIZE",
    "Transform",
    "stream_documents",
    "rewrite_statement",
    "rewrite_row_counts",
    "migrate_documents",
]
