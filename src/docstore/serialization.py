"""Serialization adapters.

:class:`PydanticAdapter` stores pydantic models as their JSON representation;
any object with ``encode``/``decode`` works in its place (see
:class:`docstore.protocols.SerializationAdapter`). Tables with generated ids
also need ``with_id`` (see :class:`docstore.protocols.GeneratedIdAdapter`);
both adapters here provide it.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, TypeAdapter

ModelT = TypeVar("ModelT", bound=BaseModel)
T = TypeVar("T")


class PydanticAdapter(Generic[ModelT]):
    """Serializes a pydantic model with ``model_dump_json``/``model_validate_json``."""

    def __init__(self, model: type[ModelT], *, by_alias: bool = True) -> None:
        self.model = model
        self.by_alias = by_alias

    def encode(self, entity: ModelT) -> str:
        return entity.model_dump_json(by_alias=self.by_alias)

    def decode(self, value: str) -> ModelT:
        return self.model.model_validate_json(value)

    def with_id(self, entity: ModelT, entity_id: Any) -> ModelT:
        return entity.model_copy(update={"id": entity_id})


class TypeAdapterSerialization(Generic[T]):
    """Serializes any type pydantic can validate (dataclasses, TypedDicts, ...)."""

    def __init__(self, type_: type[T]) -> None:
        self._adapter: TypeAdapter[T] = TypeAdapter(type_)

    def encode(self, entity: T) -> str:
        return self._adapter.dump_json(entity).decode("utf-8")

    def decode(self, value: str) -> T:
        return self._adapter.validate_json(value)

    def with_id(self, entity: T, entity_id: Any) -> T:
        if isinstance(entity, BaseModel):
            return entity.model_copy(update={"id": entity_id})  # type: ignore[return-value]
        if dataclasses.is_dataclass(entity) and not isinstance(entity, type):
            return dataclasses.replace(entity, id=entity_id)  # type: ignore[type-var]
        if isinstance(entity, dict):
            return {**entity, "id": entity_id}  # type: ignore[return-value]
        raise TypeError(f"Cannot assign an id to {type(entity).__name__}")


__all__ = ["PydanticAdapter", "TypeAdapterSerialization"]
