"""SQLAlchemy Core table definition for document tables.

Every document table has the same five columns::

    id          <Uuid | Text | BigInteger>  PRIMARY KEY   (BIGSERIAL when generated)
    version     BIGINT                      NOT NULL
    data        JSON document               NOT NULL   (TEXT on SQLite, JSONB on PostgreSQL)
    created_at  TIMESTAMP WITH TIME ZONE    NOT NULL
    modified_at TIMESTAMP WITH TIME ZONE    NOT NULL

Usage::

    from sqlalchemy import MetaData, Text
    from docstore.schema import document_table

    metadata = MetaData()
    users = document_table("users", metadata)                    # uuid ids
    tags = document_table("tags", metadata, id_type=Text())      # string ids
    events = document_table("events", metadata, generated_id=True)  # database-assigned ids
    metadata.create_all(engine)

Tags:
    docstore, schema, sqlalchemy, table, json, timestamps
"""

from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, MetaData, Table, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.types import TypeDecorator, TypeEngine

# Column names, shared by the codec and the statement builders.
ID = "id"
DATA = "data"
VERSION = "version"
CREATED_AT = "created_at"
MODIFIED_AT = "modified_at"
COLUMNS = (ID, DATA, VERSION, CREATED_AT, MODIFIED_AT)

# Table.info key marking tables whose ids the database assigns.
GENERATED_ID = "docstore_generated_id"


class JsonDocument(TypeDecorator[str]):
    """Document text column.

    Python side is always the adapter's JSON text. PostgreSQL stores it as
    ``jsonb`` so predicates can use the JSON operators; other dialects store
    the text unchanged.
    """

    impl = Text
    cache_ok = True

    def load_dialect_impl(self, dialect: Dialect) -> TypeEngine[Any]:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB(none_as_null=True))
        return dialect.type_descriptor(Text())

    def process_bind_param(self, value: str | None, dialect: Dialect) -> Any:
        if value is None or dialect.name != "postgresql":
            return value
        # JSONB serializes Python values itself
        return json.loads(value)

    def process_result_value(self, value: Any, dialect: Dialect) -> str | None:
        if value is None or isinstance(value, str):
            return value
        return json.dumps(value)


class UtcDateTime(TypeDecorator[datetime]):
    """Timezone-aware UTC timestamps on every dialect.

    SQLite has no timezone support, so values are normalized to UTC before
    binding and re-tagged as UTC when read back.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed in document tables: {value!r}")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def document_table(
    name: str,
    metadata: MetaData,
    *,
    id_type: TypeEngine[Any] | None = None,
    generated_id: bool = False,
    schema: str | None = None,
) -> Table:
    """Declare a document table on *metadata*.

    Args:
        name: Table name
        metadata: MetaData the table is registered on
        id_type: Column type of ``id``; ``Uuid()`` when omitted
        generated_id: Let the database assign ``id`` from a sequence
            (``BIGSERIAL`` on PostgreSQL, ``INTEGER PRIMARY KEY`` on SQLite)
        schema: Optional database schema
    """
    if generated_id:
        if id_type is not None:
            raise ValueError("id_type cannot be combined with generated_id")
        # SQLite only auto-assigns rowid aliases, which must be spelled INTEGER
        id_column = Column(ID, BigInteger().with_variant(Integer(), "sqlite"), primary_key=True, autoincrement=True)
    else:
        id_column = Column(ID, id_type if id_type is not None else Uuid(), primary_key=True, autoincrement=False)

    return Table(
        name,
        metadata,
        id_column,
        Column(DATA, JsonDocument(), nullable=False),
        Column(VERSION, BigInteger(), nullable=False),
        Column(CREATED_AT, UtcDateTime(), nullable=False),
        Column(MODIFIED_AT, UtcDateTime(), nullable=False),
        Index(f"ix_{name}_created_at", CREATED_AT),
        schema=schema,
        info={GENERATED_ID: generated_id},
    )


def has_generated_ids(table: Table) -> bool:
    return bool(table.info.get(GENERATED_ID, False))


_clock_lock = threading.Lock()
_last_timestamp: datetime | None = None


def _wall_clock() -> datetime:
    return datetime.now(timezone.utc)


def utc_now() -> datetime:
    """Current time in UTC, microsecond precision.

    Never returns a value at or before one it returned earlier in this
    process: if the wall clock repeats a microsecond or steps backwards, the
    result is the previous value plus one microsecond. Successive writes
    therefore always see a strictly later ``modified_at``.
    """
    global _last_timestamp
    now = _wall_clock()
    with _clock_lock:
        if _last_timestamp is not None and now <= _last_timestamp:
            now = _last_timestamp + timedelta(microseconds=1)
        _last_timestamp = now
    return now


__all__ = [
    "ID",
    "DATA",
    "VERSION",
    "CREATED_AT",
    "MODIFIED_AT",
    "COLUMNS",
    "GENERATED_ID",
    "JsonDocument",
    "UtcDateTime",
    "document_table",
    "has_generated_ids",
    "utc_now",
]
