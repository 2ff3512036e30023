"""Versioned entity model.

A stored document is read back as :class:`Versioned`: the decoded entity plus
the bookkeeping columns the store maintains around it. :class:`Version` is the
optimistic-lock counter; it starts at 1 and each successful mutation moves it
forward by exactly one.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Generic, TypeVar

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True, order=True, slots=True)
class Version:
    """How many times an entity has been written, used for optimistic locking."""

    value: int

    def __post_init__(self) -> None:
        if self.value < 1:
            raise ValueError(f"Version must be positive, got {self.value}")

    @classmethod
    def initial(cls) -> Version:
        return cls(1)

    def next(self) -> Version:
        return Version(self.value + 1)

    def __int__(self) -> int:
        return self.value


@dataclass(frozen=True, slots=True)
class Versioned(Generic[T]):
    """An entity together with its stored version and timestamps."""

    item: T
    version: Version
    created_at: datetime
    modified_at: datetime

    def with_item(self, item: R) -> Versioned[R]:
        """Same version and timestamps, different item."""
        return replace(self, item=item)  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class ListWithTotalCount(Generic[T]):
    """A page of items and the total number of matches ignoring the page limit."""

    items: list[T]
    total_count: int

    def map(self, transform: Callable[[T], R]) -> ListWithTotalCount[R]:
        """Maps the items while keeping the same total count."""
        return ListWithTotalCount([transform(item) for item in self.items], self.total_count)

    def __len__(self) -> int:
        return len(self.items)


def map_entities(
    entities: Iterable[Versioned[T]], transform: Callable[[T], T]
) -> list[Versioned[T]]:
    """Transform each entity, keeping versions and timestamps."""
    return [entity.with_item(transform(entity.item)) for entity in entities]


def filter_entities(
    entities: Iterable[Versioned[T]], predicate: Callable[[T], bool]
) -> list[Versioned[T]]:
    """Keep the versioned entities whose item matches *predicate*."""
    return [entity for entity in entities if predicate(entity.item)]


__all__ = [
    "Version",
    "Versioned",
    "ListWithTotalCount",
    "map_entities",
    "filter_entities",
]
