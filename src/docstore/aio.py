"""
Async facade over :class:`~docstore.repository.DocumentRepository`.

Every repository operation is exposed as a coroutine. The blocking call runs
on a worker thread via ``asyncio.to_thread``, behind an ``asyncio.Semaphore``
sized to the connection pool, so the event loop never blocks and concurrent
tasks never wait on the pool from inside a thread.

Transactions opened with :meth:`AsyncDocumentRepository.transaction` are
bound to the calling task's context; ``asyncio.to_thread`` copies that context
into the worker thread, so calls awaited inside the block run on the
transaction's connection.

Example:
    >>> repo = AsyncDocumentRepository(DocumentRepository(engine, users, PydanticAdapter(User)))
    >>> async with repo.transaction():
    ...     current = await repo.get_or_throw(user_id, for_update=True)
    ...     await repo.update(rename(current.item), current.version)

Do not ``asyncio.gather`` calls inside one transaction: they would share one
connection concurrently.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any, Generic, TypeVar

from sqlalchemy.engine import Engine

from docstore.entity import ListWithTotalCount, Version, Versioned
from docstore.migration import Transform
from docstore.protocols import EntityT
from docstore.query import OrderBy
from docstore.repository import DocumentRepository
from docstore.settings import DocumentStoreSettings

T = TypeVar("T")

DEFAULT_MAX_CONCURRENCY = 10


def pool_capacity(engine: Engine) -> int:
    """Connections the engine's pool holds permanently, or the default for unsized pools."""
    size = getattr(engine.pool, "size", None)
    if callable(size):
        return max(int(size()), 1)
    return DEFAULT_MAX_CONCURRENCY


class AsyncDocumentRepository(Generic[EntityT]):
    """Coroutine versions of the repository operations.

    ``max_concurrency`` defaults to the size of the engine's connection pool,
    so no worker thread ever waits for a pooled connection.
    """

    def __init__(
        self,
        repository: DocumentRepository[EntityT],
        *,
        max_concurrency: int | None = None,
    ) -> None:
        self.repository = repository
        if max_concurrency is None:
            max_concurrency = pool_capacity(repository.transactions.engine)
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)

    @classmethod
    def from_settings(
        cls,
        repository: DocumentRepository[EntityT],
        settings: DocumentStoreSettings | None = None,
    ) -> AsyncDocumentRepository[EntityT]:
        """Facade limited to ``settings.max_concurrency`` calls (pool size when unset)."""
        settings = settings or DocumentStoreSettings()
        return cls(repository, max_concurrency=settings.max_concurrency)

    async def _run(self, func: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
        async with self._semaphore:
            return await asyncio.to_thread(func, *args, **kwargs)

    # -- Transactions --------------------------------------------------------

    def transaction(self) -> Any:
        """Async context manager; repository calls awaited inside join it."""
        return self.repository.transactions.atransaction()

    async def transactional(self, block: Callable[[], Awaitable[T]]) -> T:
        return await self.repository.transactions.atransactional(block)

    # -- Operations ----------------------------------------------------------

    async def create(self, entity: EntityT) -> Versioned[EntityT]:
        return await self._run(self.repository.create, entity)

    async def get(self, entity_id: Any, *, for_update: bool = False) -> Versioned[EntityT] | None:
        return await self._run(self.repository.get, entity_id, for_update=for_update)

    async def get_or_throw(self, entity_id: Any, *, for_update: bool = False) -> Versioned[EntityT]:
        return await self._run(self.repository.get_or_throw, entity_id, for_update=for_update)

    async def update(self, entity: EntityT, previous_version: Version | int) -> Versioned[EntityT]:
        return await self._run(self.repository.update, entity, previous_version)

    async def delete(self, entity_id: Any, previous_version: Version | int) -> None:
        await self._run(self.repository.delete, entity_id, previous_version)

    async def list_by_ids(self, ids: Iterable[Any]) -> list[Versioned[EntityT]]:
        return await self._run(self.repository.list_by_ids, list(ids))

    async def list_all(self) -> list[Versioned[EntityT]]:
        return await self._run(self.repository.list_all)

    async def query(
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
        return await self._run(
            self.repository.query,
            predicate,
            params,
            limit=limit,
            offset=offset,
            order_by=order_by,
            order_desc=order_desc,
            for_update=for_update,
        )

    async def query_with_total_count(
        self,
        predicate: str | None = None,
        params: Mapping[str, Any] | None = None,
        *,
        limit: int | None = None,
        offset: int | None = None,
        order_by: OrderBy | None = None,
        order_desc: bool = False,
    ) -> ListWithTotalCount[Versioned[EntityT]]:
        return await self._run(
            self.repository.query_with_total_count,
            predicate,
            params,
            limit=limit,
            offset=offset,
            order_by=order_by,
            order_desc=order_desc,
        )

    async def batch_create(self, entities: Iterable[EntityT]) -> list[Versioned[EntityT]]:
        return await self._run(self.repository.batch_create, entities)

    async def batch_update(self, entities: Iterable[Versioned[EntityT]]) -> list[Versioned[EntityT]]:
        return await self._run(self.repository.batch_update, entities)

    async def batch_delete(self, entities: Iterable[Versioned[EntityT]]) -> None:
        await self._run(self.repository.batch_delete, entities)

    async def rewrite_all(self, transform: Transform[EntityT] | None = None) -> int:
        return await self._run(self.repository.rewrite_all, transform)


__all__ = ["AsyncDocumentRepository", "DEFAULT_MAX_CONCURRENCY", "pool_capacity"]
