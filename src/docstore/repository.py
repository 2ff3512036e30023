"""
Document repository: versioned CRUD, batch mutation and queries over one table.

:class:`DocumentRepository` stores entities as JSON documents in a table
declared with :func:`~docstore.schema.document_table`. Every row carries a
version used for optimistic locking: writers pass the version they read, and
the write only succeeds if nobody else wrote in between.

Manifesto:
    - **Optimistic by default:** ``update``/``delete`` are conditional on
      ``(id, previous_version)``; a miss is a ConflictError, never a silent no-op
    - **Atomic calls:** every mutating call either fully succeeds or raises,
      leaving stored data exactly as it was
    - **Transaction-aware:** calls join the transaction propagated by the
      :class:`~docstore.transactions.TransactionManager`, or run in their own
    - **Classified failures:** callers only ever see the error taxonomy from
      :mod:`docstore.errors`

Architecture:
    ::

        Absent ──create──▶ Active(v=1) ──update(v=1)──▶ Active(v=2) ──▶ …
                                 │                             │
                                 └───────── delete(v) ─────────┴──▶ Absent

        update(entity, previous_version=v)
            UPDATE t SET data=…, version=v+1, modified_at=now
            WHERE id=:id AND version=:v RETURNING created_at
              1 row → Versioned(entity, v+1, created_at, now)
              0 rows → ConflictError (never existed OR concurrently modified)

        batch_create / batch_update / batch_delete
            → execute_batch_operation (chunks of batch_size, one transaction)

Examples:
    >>> repo = DocumentRepository(engine, users, PydanticAdapter(User))
    >>> stored = repo.create(User(id=uuid4(), name="Ada"))
    >>> stored.version
    Version(value=1)
    >>> repo.update(stored.item.model_copy(update={"name": "Ada L."}), stored.version)

    >>> with repo.transaction():
    ...     current = repo.get_or_throw(user_id, for_update=True)
    ...     repo.update(change(current.item), current.version)

Guardrails:
    ❌ DON'T: Retry a ConflictError by re-sending the same version
    ✅ DO: Re-read the entity, re-apply the change, update with the new version

    ❌ DON'T: Format caller input into query predicates
    ✅ DO: Bind it through ``params``

Tags:
    repository, document-store, optimistic-locking, crud, batch, pagination,
    sqlalchemy, docstore

Doc-Types:
    - API Reference
    - Architecture Decision Record
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any, Generic, TypeVar

from sqlalchemy import BigInteger, Table, bindparam, delete, insert, select, update
from sqlalchemy.engine import Connection, Engine, Row

from docstore.batch import DEFAULT_BATCH_SIZE, BatchDiagnostics, RowCountHandler, execute_batch_operation
from docstore.codec import RowCodec
from docstore.entity import ListWithTotalCount, Version, Versioned
from docstore.errors import (
    ConflictError,
    DocumentStoreError,
    EntityNotFoundError,
    classify_error,
    is_unique_violation,
)
from docstore.logging import LogContext, get_logger
from docstore.migration import (
    MIGRATION_BATCH_SIZE,
    Transform,
    migrate_documents,
    rewrite_row_counts,
    rewrite_statement,
)
from docstore.protocols import EntityT, SerializationAdapter
from docstore.query import OrderBy, build_count_select, build_select
from docstore.schema import COLUMNS, CREATED_AT, DATA, ID, MODIFIED_AT, VERSION, has_generated_ids, utc_now
from docstore.settings import DocumentStoreSettings
from docstore.transactions import TransactionManager

logger = get_logger(__name__)

T = TypeVar("T")


def _as_version(version: Version | int) -> Version:
    return version if isinstance(version, Version) else Version(version)


class DocumentRepository(Generic[EntityT]):
    """Versioned document storage for one entity type in one table.

    Parameters:
        transactions: Engine, or a TransactionManager shared with other
            repositories on the same engine
        table: Table declared with :func:`~docstore.schema.document_table`
        adapter: Serialization adapter for the entity type
        batch_size: Items per chunk for ``batch_*`` operations
        migration_batch_size: Items per chunk for :meth:`rewrite_all`
        diagnostics: Batch diagnostics port (driver-specific)

    Tables declared with ``generated_id=True`` get their ids from the
    database: ``create`` and ``batch_create`` return the entities with the
    assigned ids, and the adapter must provide ``with_id``.
    """

    def __init__(
        self,
        transactions: Engine | TransactionManager,
        table: Table,
        adapter: SerializationAdapter[EntityT],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        migration_batch_size: int = MIGRATION_BATCH_SIZE,
        diagnostics: BatchDiagnostics | None = None,
    ) -> None:
        if isinstance(transactions, Engine):
            transactions = TransactionManager(transactions)
        self.transactions = transactions
        self.table = table
        self.adapter = adapter
        self.generated_ids = has_generated_ids(table)
        self.codec: RowCodec[EntityT] = RowCodec(adapter, generated_ids=self.generated_ids)
        self.batch_size = batch_size
        self.migration_batch_size = migration_batch_size
        self.diagnostics = diagnostics

        id_type = table.c[ID].type
        self._update_statement = rewrite_statement(table)
        self._delete_statement = delete(table).where(
            table.c[ID] == bindparam("b_id", type_=id_type),
            table.c[VERSION] == bindparam("b_previous_version", type_=BigInteger()),
        )

    @classmethod
    def from_settings(
        cls,
        transactions: Engine | TransactionManager,
        table: Table,
        adapter: SerializationAdapter[EntityT],
        settings: DocumentStoreSettings | None = None,
        *,
        diagnostics: BatchDiagnostics | None = None,
    ) -> DocumentRepository[EntityT]:
        """Repository with the chunk sizes from *settings* (read from the environment if omitted)."""
        settings = settings or DocumentStoreSettings()
        return cls(
            transactions,
            table,
            adapter,
            batch_size=settings.batch_size,
            migration_batch_size=settings.migration_batch_size,
            diagnostics=diagnostics,
        )

    @property
    def table_name(self) -> str:
        return self.table.name

    # -- Transactions --------------------------------------------------------

    def transaction(self) -> Any:
        """Context manager running the block in one (possibly joined) transaction."""
        return self.transactions.transaction()

    def transactional(self, block: Callable[[], T]) -> T:
        """Call *block* in a transaction; repository calls inside it join it."""
        return self.transactions.transactional(block)

    @contextmanager
    def _connection(self, operation: str, entity_id: Any = None) -> Iterator[Connection]:
        """Propagated connection; failures leave as classified store errors."""
        try:
            with self.transactions.use_connection() as connection:
                yield connection
        except Exception as exc:
            mapped = classify_error(exc)
            if isinstance(mapped, DocumentStoreError) and mapped.context.table is None:
                mapped.with_context(table=self.table_name, operation=operation)
                if entity_id is not None:
                    mapped.with_context(entity_id=entity_id)
            if mapped is exc:
                raise
            raise mapped from exc

    # -- Single-entity CRUD --------------------------------------------------

    def create(self, entity: EntityT) -> Versioned[EntityT]:
        """Store a new entity with version 1.

        For generated-id tables the entity's own id is ignored and the
        returned entity carries the id the database assigned.

        Raises:
            ConflictError: An entity with the same id already exists
        """
        entity_id = None if self.generated_ids else entity.id  # type: ignore[attr-defined]
        now = utc_now()
        version = Version.initial()
        parameters = self.codec.insert_parameters(entity, version, now)

        try:
            with self._connection("create", entity_id) as connection:
                if self.generated_ids:
                    statement = insert(self.table).returning(self.table.c[ID])
                    entity_id = connection.execute(statement, parameters).scalar_one()
                    entity = self.codec.with_id(entity, entity_id)
                else:
                    connection.execute(insert(self.table), parameters)
        except DocumentStoreError as exc:
            failure: BaseException = exc
            if is_unique_violation(exc) and not isinstance(exc, ConflictError):
                failure = ConflictError(
                    f"Entity {entity_id} already exists in {self.table_name}",
                    cause=exc.cause,
                ).with_context(table=self.table_name, operation="create", entity_id=entity_id)
            replacement = self.map_create_or_update_error(failure, entity)
            if replacement is exc:
                raise
            if replacement is failure:
                raise failure
            raise replacement from failure

        logger.debug("entity_created", table=self.table_name, entity_id=str(entity_id))
        return Versioned(item=entity, version=version, created_at=now, modified_at=now)

    def get(self, entity_id: Any, *, for_update: bool = False) -> Versioned[EntityT] | None:
        """The stored entity with *entity_id*, or ``None``.

        ``for_update=True`` locks the row until the active transaction ends
        and is only meaningful inside :meth:`transaction`.
        """
        if for_update and not self.transactions.in_transaction():
            raise ValueError("get(for_update=True) requires an active transaction")

        statement = select(*[self.table.c[name] for name in COLUMNS]).where(self.table.c[ID] == entity_id)
        if for_update:
            statement = statement.with_for_update()

        with self._connection("get", entity_id) as connection:
            row = connection.execute(statement).mappings().first()
        return None if row is None else self.codec.decode_row(row)

    def get_or_throw(self, entity_id: Any, *, for_update: bool = False) -> Versioned[EntityT]:
        """Like :meth:`get`, raising EntityNotFoundError when absent."""
        stored = self.get(entity_id, for_update=for_update)
        if stored is None:
            raise EntityNotFoundError(f"Entity {entity_id} not found in {self.table_name}").with_context(
                table=self.table_name, operation="get", entity_id=entity_id
            )
        return stored

    def update(self, entity: EntityT, previous_version: Version | int) -> Versioned[EntityT]:
        """Replace the stored document if its version is still *previous_version*.

        Raises:
            ConflictError: No row has ``(entity.id, previous_version)``; the
                entity either never existed or was modified concurrently
        """
        entity_id = entity.id  # type: ignore[attr-defined]
        previous = _as_version(previous_version)
        next_version = previous.next()
        now = utc_now()
        statement = (
            update(self.table)
            .where(self.table.c[ID] == entity_id, self.table.c[VERSION] == previous.value)
            .values({DATA: self.codec.encode(entity), VERSION: next_version.value, MODIFIED_AT: now})
            .returning(self.table.c[CREATED_AT])
        )

        try:
            with self._connection("update", entity_id) as connection:
                row = connection.execute(statement).first()
                if row is None:
                    raise ConflictError(
                        f"Entity {entity_id} was concurrently modified or does not exist "
                        f"(expected version {previous.value})"
                    ).with_context(table=self.table_name, operation="update", entity_id=entity_id)
        except DocumentStoreError as exc:
            failure = self.map_create_or_update_error(exc, entity)
            if failure is exc:
                raise
            raise failure from exc

        logger.debug(
            "entity_updated", table=self.table_name, entity_id=str(entity_id), version=next_version.value
        )
        return Versioned(item=entity, version=next_version, created_at=row[0], modified_at=now)

    def delete(self, entity_id: Any, previous_version: Version | int) -> None:
        """Delete the stored entity if its version is still *previous_version*.

        Raises:
            ConflictError: No row has ``(entity_id, previous_version)``
        """
        previous = _as_version(previous_version)
        statement = delete(self.table).where(
            self.table.c[ID] == entity_id, self.table.c[VERSION] == previous.value
        )
        with self._connection("delete", entity_id) as connection:
            result = connection.execute(statement)
            if result.rowcount == 0:
                raise ConflictError(
                    f"Entity {entity_id} was concurrently modified or does not exist "
                    f"(expected version {previous.value})"
                ).with_context(table=self.table_name, operation="delete", entity_id=entity_id)
        logger.debug("entity_deleted", table=self.table_name, entity_id=str(entity_id))

    def map_create_or_update_error(self, error: BaseException, entity: EntityT) -> BaseException:
        """Hook to replace the error raised by :meth:`create` or :meth:`update`.

        Called with the already classified error. Override to turn, for
        example, a unique-index violation on a document field into a
        domain-specific exception; return *error* unchanged to keep it.
        """
        return error

    # -- Listing and queries -------------------------------------------------

    def list_by_ids(self, ids: Iterable[Any]) -> list[Versioned[EntityT]]:
        """Stored entities among *ids*; missing ids are skipped."""
        ids = list(ids)
        if not ids:
            return []
        statement = build_select(self.table).where(self.table.c[ID].in_(ids))
        with self._connection("list_by_ids") as connection:
            rows = connection.execute(statement).mappings().all()
        return [self.codec.decode_row(row) for row in rows]

    def list_all(self) -> list[Versioned[EntityT]]:
        return self.query()

    def query(
        self,
        predicate: str | None = None,
        params: Mapping[str, Any] | None = None,
        *,
        limit: int | None = None,
        offset: int | None = None,
        order_by: OrderBy | None = None,
        order_desc: bool = False,
        for_update: bool = False,
    ) -> list[Versioned[EntityT]]:
        """Entities matching the SQL *predicate*, ordered by ``created_at`` unless told otherwise.

        Args:
            predicate: WHERE fragment with ``:name`` bind parameters; all rows
                when omitted
            params: Values for the bind parameters; lists and tuples expand
                for ``IN :name``
            limit: Maximum number of entities
            offset: Number of matching entities to skip
            order_by: Column name or SQL expression to order by
            order_desc: Descending order
            for_update: Lock the returned rows (inside a transaction)
        """
        statement = build_select(
            self.table,
            predicate,
            params,
            limit=limit,
            offset=offset,
            order_by=order_by,
            order_desc=order_desc,
            for_update=for_update,
        )
        with self._connection("query") as connection:
            rows = connection.execute(statement).mappings().all()
        return [self.codec.decode_row(row) for row in rows]

    def query_with_total_count(
        self,
        predicate: str | None = None,
        params: Mapping[str, Any] | None = None,
        *,
        limit: int | None = None,
        offset: int | None = None,
        order_by: OrderBy | None = None,
        order_desc: bool = False,
    ) -> ListWithTotalCount[Versioned[EntityT]]:
        """A page of matching entities and the count of all matches, in one query."""
        statement = build_count_select(
            self.table,
            predicate,
            params,
            limit=limit,
            offset=offset,
            order_by=order_by,
            order_desc=order_desc,
        )
        with self._connection("query_with_total_count") as connection:
            rows = connection.execute(statement).mappings().all()

        items: list[Versioned[EntityT]] = []
        total_count = 0
        for row in rows:
            entity, total_count = self.codec.decode_counted_row(row)
            if entity is not None:
                items.append(entity)
        return ListWithTotalCount(items=items, total_count=total_count)

    # -- Batch operations ----------------------------------------------------

    def batch_create(self, entities: Iterable[EntityT]) -> list[Versioned[EntityT]]:
        """Store many new entities with version 1, all or nothing.

        Returns the stored entities in input order; for generated-id tables
        they carry the ids the database assigned.

        Raises:
            BatchItemError: The failing entity could be identified (e.g. a duplicate id)
        """
        now = utc_now()
        version = Version.initial()
        created: list[Versioned[EntityT]] = []

        def bind(entity: EntityT) -> dict[str, Any]:
            created.append(Versioned(item=entity, version=version, created_at=now, modified_at=now))
            return self.codec.insert_parameters(entity, version, now)

        def assign_ids(rows: Sequence[Row[Any]], start_index: int) -> None:
            for index, row in enumerate(rows, start_index):
                created[index] = created[index].with_item(self.codec.with_id(created[index].item, row[0]))

        statement = insert(self.table)
        if self.generated_ids:
            statement = statement.returning(self.table.c[ID], sort_by_parameter_order=True)

        with (
            self._connection("batch_create") as connection,
            LogContext(table=self.table_name, operation="batch_create"),
        ):
            summary = execute_batch_operation(
                connection,
                entities,
                statement,
                bind,
                batch_size=self.batch_size,
                diagnostics=self.diagnostics,
                handle_returned_rows=assign_ids if self.generated_ids else None,
            )
            logger.info("batch_completed", items=summary.item_count, chunks=summary.chunk_count)
        return created

    def batch_update(self, entities: Iterable[Versioned[EntityT]]) -> list[Versioned[EntityT]]:
        """Update many entities, each conditional on the version it carries.

        Returns the updated entities in input order, with their new versions
        and ``modified_at``.

        Raises:
            ConflictError: Any entity matched no row; nothing is updated
        """
        now = utc_now()
        updated: list[Versioned[EntityT]] = []

        def bind(entity: Versioned[EntityT]) -> dict[str, Any]:
            next_version = entity.version.next()
            updated.append(
                Versioned(item=entity.item, version=next_version, created_at=entity.created_at, modified_at=now)
            )
            return {
                "b_id": entity.item.id,  # type: ignore[attr-defined]
                "b_previous_version": entity.version.value,
                "b_data": self.codec.encode(entity.item),
                "b_next_version": next_version.value,
                "b_modified_at": now,
            }

        with (
            self._connection("batch_update") as connection,
            LogContext(table=self.table_name, operation="batch_update"),
        ):
            summary = execute_batch_operation(
                connection,
                entities,
                self._update_statement,
                bind,
                handle_row_counts=self._conflict_check(entities, "update"),
                batch_size=self.batch_size,
                diagnostics=self.diagnostics,
                resolve_row_counts=rewrite_row_counts(self.table),
            )
            logger.info("batch_completed", items=summary.item_count, chunks=summary.chunk_count)
        return updated

    def batch_delete(self, entities: Iterable[Versioned[EntityT]]) -> None:
        """Delete many entities, each conditional on the version it carries.

        Raises:
            ConflictError: Any entity matched no row; nothing is deleted
        """
        with (
            self._connection("batch_delete") as connection,
            LogContext(table=self.table_name, operation="batch_delete"),
        ):
            summary = execute_batch_operation(
                connection,
                entities,
                self._delete_statement,
                lambda entity: {
                    "b_id": entity.item.id,  # type: ignore[attr-defined]
                    "b_previous_version": entity.version.value,
                },
                handle_row_counts=self._conflict_check(entities, "delete"),
                batch_size=self.batch_size,
                diagnostics=self.diagnostics,
                resolve_row_counts=self._deleted_row_counts,
            )
            logger.info("batch_completed", items=summary.item_count, chunks=summary.chunk_count)

    def _deleted_row_counts(self, connection: Connection, parameters: Sequence[Mapping[str, Any]]) -> list[int]:
        """Per-item counts for a delete chunk whose aggregate count fell short.

        A row still present after the chunk was not deleted by it. A row that
        is gone may have been deleted by this chunk or may never have matched,
        so an unexplained shortfall stays unattributed.
        """
        id_column = self.table.c[ID]
        statement = select(id_column).where(id_column.in_([p["b_id"] for p in parameters]))
        remaining = set(connection.execute(statement).scalars())
        return [0 if p["b_id"] in remaining else 1 for p in parameters]

    def _conflict_check(self, entities: Iterable[Versioned[EntityT]], operation: str) -> RowCountHandler:
        """Raise ConflictError for the first item of a chunk that matched no row.

        The offending entity is named only when *entities* is a sequence; a
        consumed iterator can no longer be indexed.
        """

        def check(row_counts: list[int], start_index: int) -> None:
            for offset, count in enumerate(row_counts):
                if count != 0:
                    continue
                index = start_index + offset
                message = (
                    f"Entity was concurrently modified between being retrieved and trying to "
                    f"{operation} it in batch {operation} (rolling back batch {operation})"
                )
                entity_id = None
                if isinstance(entities, Sequence) and index < len(entities):
                    offender = entities[index]
                    message += f" [Entity: {offender.item!r}]"
                    entity_id = offender.item.id  # type: ignore[attr-defined]
                raise ConflictError(message).with_context(
                    table=self.table_name, operation=f"batch_{operation}", entity_id=entity_id, index=index
                )

        return check

    # -- Rewrite -------------------------------------------------------------

    def rewrite_all(self, transform: Transform[EntityT] | None = None) -> int:
        """Re-serialize every stored document, optionally transforming it.

        Reads the table as a locked stream and writes it back through the
        batch engine in one transaction. Returns the number of rewritten
        documents.
        """
        with self._connection("rewrite_all") as connection:
            return migrate_documents(
                connection,
                self.table,
                self.adapter,
                transform,
                batch_size=self.migration_batch_size,
                diagnostics=self.diagnostics,
            )


__all__ = ["DocumentRepository"]
