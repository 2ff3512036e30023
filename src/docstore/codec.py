"""Row codec: stored rows to :class:`~docstore.entity.Versioned` and back.

The codec is the only place that knows both the column layout from
:mod:`docstore.schema` and the serialization adapter. Rows are decoded by
column name with no reflection, so a row missing a column fails loudly with
``KeyError`` before the document is parsed.

For tables whose ids are generated by the database, the ``id`` column is
authoritative: the decoded entity gets it through the adapter's ``with_id``.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Generic

from docstore.entity import Version, Versioned
from docstore.protocols import EntityT, SerializationAdapter
from docstore.schema import CREATED_AT, DATA, ID, MODIFIED_AT, VERSION

TOTAL_COUNT = "total_count"


class RowCodec(Generic[EntityT]):
    """Maps rows of a document table to versioned entities."""

    def __init__(self, adapter: SerializationAdapter[EntityT], *, generated_ids: bool = False) -> None:
        if generated_ids and not callable(getattr(adapter, "with_id", None)):
            raise TypeError(f"{type(adapter).__name__} cannot assign generated ids (no with_id method)")
        self.adapter = adapter
        self.generated_ids = generated_ids

    def encode(self, entity: EntityT) -> str:
        return self.adapter.encode(entity)

    def with_id(self, entity: EntityT, entity_id: Any) -> EntityT:
        return self.adapter.with_id(entity, entity_id)  # type: ignore[attr-defined]

    def decode_row(self, row: Mapping[str, Any]) -> Versioned[EntityT]:
        version = Version(int(row[VERSION]))
        created_at = row[CREATED_AT]
        modified_at = row[MODIFIED_AT]
        item = self.adapter.decode(row[DATA])
        if self.generated_ids:
            item = self.with_id(item, row[ID])
        return Versioned(item=item, version=version, created_at=created_at, modified_at=modified_at)

    def decode_counted_row(self, row: Mapping[str, Any]) -> tuple[Versioned[EntityT] | None, int]:
        """Decode a row of the total-count query.

        When the page is empty the query still returns one row carrying the
        count, with every entity column NULL; the entity is then ``None``.
        """
        total = int(row[TOTAL_COUNT])
        if row[DATA] is None or row[VERSION] is None:
            return None, total
        return self.decode_row(row), total

    def insert_parameters(self, entity: Any, version: Version, now: datetime) -> dict[str, Any]:
        """Column values for an INSERT; ``id`` is left to the database for generated ids."""
        parameters = {
            DATA: self.encode(entity),
            VERSION: version.value,
            CREATED_AT: now,
            MODIFIED_AT: now,
        }
        if not self.generated_ids:
            parameters[ID] = entity.id
        return parameters


__all__ = ["RowCodec", "TOTAL_COUNT"]
