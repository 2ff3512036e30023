"""
Protocol definitions for the document store's collaborators.

All structural contracts live here so that callers can satisfy them without
inheriting from anything:

- :class:`Entity`: any object with an immutable ``id``
- :class:`SerializationAdapter`: turns an entity into document text and back

Manifesto:
    The store never looks inside a document. Whatever JSON library the
    application already uses for its domain model should be the one that
    produces the stored text, so the store only asks for ``encode``/``decode``.

Architecture:
    ::

        SerializationAdapter[T]:
        ┌────────────────────────────────────────────────────────┐
        │ encode(entity) → str     Entity to document text       │
        │ decode(text)   → T       Document text to entity       │
        │ with_id(e, id) → T       Generated-id tables only      │
        └────────────────────────────────────────────────────────┘

        Implementations:
        ┌────────────────────────────────────────────────────────┐
        │ PydanticAdapter(Model)  → model_dump_json / validate   │
        │ your own                → any JSON library             │
        └────────────────────────────────────────────────────────┘

Tags:
    protocol, serialization, entity, docstore, contracts
"""

from __future__ import annotations

from typing import Any, Protocol, TypeVar, runtime_checkable

EntityT = TypeVar("EntityT")


@runtime_checkable
class Entity(Protocol):
    """Anything stored by the document store. ``id`` must never change."""

    @property
    def id(self) -> Any: ...


@runtime_checkable
class SerializationAdapter(Protocol[EntityT]):
    """Converts entities to stored document text and back."""

    def encode(self, entity: EntityT) -> str:
        """Serialize *entity* to JSON text."""
        ...

    def decode(self, value: str) -> EntityT:
        """Parse stored JSON text back into an entity."""
        ...


@runtime_checkable
class GeneratedIdAdapter(SerializationAdapter[EntityT], Protocol[EntityT]):
    """Adapter for tables whose ids are assigned by the database."""

    def with_id(self, entity: EntityT, entity_id: Any) -> EntityT:
        """Copy of *entity* carrying the database-assigned *entity_id*."""
        ...


__all__ = ["Entity", "EntityT", "GeneratedIdAdapter", "SerializationAdapter"]
