"""
Transaction propagation for synchronous and asynchronous call chains.

A :class:`UnitOfWork` wraps one SQLAlchemy ``Connection`` with an open
transaction. :class:`TransactionManager` keeps the active unit of work in a
:class:`contextvars.ContextVar`, so every repository call made inside
``transaction()`` (or ``atransaction()``) runs on the same connection without
the caller threading it through.

Manifesto:
    - **One handle per unit of work:** nested calls share the outer connection
    - **Flat nesting:** an inner ``transaction()`` is a no-op at the boundary;
      only the outermost starter begins and commits (no savepoints)
    - **Roll back on any error:** a failing rollback never hides the original
    - **Scoped association:** the context entry is removed on every exit path

Architecture:
    ::

        transaction()                      ┌──────────────────────────────┐
          ├─ current() is set? ──yes──────▶│ yield existing UnitOfWork    │
          │                                └──────────────────────────────┘
          └─ no
             connect → disable AUTOCOMMIT → BEGIN
             _active.set({engine: uow})
             ├─ block ok     → COMMIT
             └─ block raised → classify → ROLLBACK (failure noted) → raise
             _active.reset → restore AUTOCOMMIT → close

        Context propagation:
          threads         each thread has its own context
          asyncio tasks   each task runs in a copy of its creator's context;
                          the value survives ``await`` points
          to_thread()     the worker runs in a copy of the caller's context,
                          so it sees the caller's unit of work

Guardrails:
    ❌ DON'T: Hand a unit of work to concurrently running threads or tasks
    ✅ DO: Keep a transaction inside one logical flow of control. Concurrent
           statements on one connection are unsupported and not guarded
           against here.

    ❌ DON'T: Expect an inner transaction() to commit independently
    ✅ DO: Open separate transactions from separate flows of control

Tags:
    transactions, unit-of-work, contextvars, asyncio, sqlalchemy, docstore

Doc-Types:
    - API Reference
    - Concurrency Guide
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator, Mapping
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TypeVar

from sqlalchemy.engine import Connection, Engine, RootTransaction
from sqlalchemy.exc import SQLAlchemyError

from docstore.errors import DocumentStoreError, classify_error
from docstore.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

AUTOCOMMIT = "AUTOCOMMIT"

_active: ContextVar[Mapping[Engine, UnitOfWork]] = ContextVar(
    "docstore_active_units_of_work", default=MappingProxyType({})
)


@dataclass
class UnitOfWork:
    """The connection and transaction shared by one logical unit of work."""

    engine: Engine
    connection: Connection
    transaction: RootTransaction
    autocommit_was_enabled: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


# =============================================================================
# AUTO-COMMIT DISCIPLINE
# =============================================================================


def is_autocommit(connection: Connection) -> bool:
    """True when *connection* runs with the ``AUTOCOMMIT`` isolation level."""
    return connection.get_execution_options().get("isolation_level") == AUTOCOMMIT


def disable_autocommit(connection: Connection) -> bool:
    """Switch *connection* out of auto-commit; returns whether it was enabled.

    Only valid while no transaction has begun on the connection.
    """
    if not is_autocommit(connection) or connection.in_transaction():
        return False
    connection.execution_options(isolation_level=connection.default_isolation_level)
    return True


def restore_autocommit(connection: Connection) -> None:
    """Put *connection* back into auto-commit after a scoped batch or transaction."""
    try:
        connection.execution_options(isolation_level=AUTOCOMMIT)
    except SQLAlchemyError as exc:
        logger.warning("autocommit_restore_failed", error=repr(exc))


@contextmanager
def autocommit_disabled(connection: Connection) -> Iterator[Connection]:
    """Disable auto-commit for the duration of the block, then restore it."""
    was_enabled = disable_autocommit(connection)
    try:
        yield connection
    finally:
        if was_enabled:
            restore_autocommit(connection)


# =============================================================================
# TRANSACTION MANAGER
# =============================================================================


class TransactionManager:
    """Opens, propagates and finishes transactions on one engine.

    Parameters:
        engine: Engine that new units of work connect through.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def current(self) -> UnitOfWork | None:
        """The unit of work active in the current context, if any."""
        return _active.get().get(self.engine)

    def in_transaction(self) -> bool:
        return self.current() is not None

    # -- Synchronous ---------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[UnitOfWork]:
        """Run the block in a transaction, joining the active one if present."""
        existing = self.current()
        if existing is not None:
            yield existing
            return

        uow = self._open()
        token = self._bind(uow)
        try:
            yield uow
        except BaseException as exc:
            mapped = classify_error(exc)
            self._rollback(uow, mapped)
            if mapped is exc:
                raise
            raise mapped from exc
        else:
            self._commit(uow)
        finally:
            _active.reset(token)
            self._close(uow)

    def transactional(self, block: Callable[[], T]) -> T:
        """Call *block* inside :meth:`transaction` and return its result."""
        with self.transaction():
            return block()

    @contextmanager
    def use_connection(self) -> Iterator[Connection]:
        """Yield the propagated connection, or one in a single-call transaction."""
        existing = self.current()
        if existing is not None:
            yield existing.connection
            return
        with self.transaction() as uow:
            yield uow.connection

    # -- Asynchronous --------------------------------------------------------

    @asynccontextmanager
    async def atransaction(self) -> AsyncIterator[UnitOfWork]:
        """Async counterpart of :meth:`transaction`.

        Connecting, committing and rolling back run via ``asyncio.to_thread``;
        the unit of work is bound to the calling task's context and is seen by
        blocking calls the task later sends to worker threads.
        """
        existing = self.current()
        if existing is not None:
            yield existing
            return

        uow = await asyncio.to_thread(self._open)
        token = self._bind(uow)
        try:
            yield uow
        except BaseException as exc:
            mapped = classify_error(exc)
            await asyncio.to_thread(self._rollback, uow, mapped)
            if mapped is exc:
                raise
            raise mapped from exc
        else:
            await asyncio.to_thread(self._commit, uow)
        finally:
            _active.reset(token)
            await asyncio.to_thread(self._close, uow)

    async def atransactional(self, block: Callable[[], Awaitable[T]]) -> T:
        """Await *block* inside :meth:`atransaction` and return its result."""
        async with self.atransaction():
            return await block()

    # -- Internals -----------------------------------------------------------

    def _bind(self, uow: UnitOfWork) -> Token[Mapping[Engine, UnitOfWork]]:
        units = dict(_active.get())
        units[self.engine] = uow
        return _active.set(MappingProxyType(units))

    def _open(self) -> UnitOfWork:
        try:
            connection = self.engine.connect()
        except Exception as exc:
            mapped = classify_error(exc)
            if mapped is exc:
                raise
            raise mapped from exc

        try:
            was_autocommit = disable_autocommit(connection)
            transaction = connection.begin()
        except Exception as exc:
            connection.close()
            mapped = classify_error(exc)
            if mapped is exc:
                raise
            raise mapped from exc

        uow = UnitOfWork(
            engine=self.engine,
            connection=connection,
            transaction=transaction,
            autocommit_was_enabled=was_autocommit,
        )
        logger.debug("transaction_started", unit_of_work=uow.id)
        return uow

    def _commit(self, uow: UnitOfWork) -> None:
        try:
            uow.transaction.commit()
        except Exception as exc:
            mapped = classify_error(exc)
            if mapped is exc:
                raise
            raise mapped from exc
        logger.debug("transaction_committed", unit_of_work=uow.id)

    def _rollback(self, uow: UnitOfWork, error: BaseException) -> None:
        try:
            uow.transaction.rollback()
        except Exception as rollback_error:
            # The original error stays the one that propagates.
            error.add_note(f"Transaction rollback also failed: {rollback_error!r}")
            if isinstance(error, DocumentStoreError):
                error.suppressed.append(rollback_error)
            logger.error(
                "rollback_failed",
                unit_of_work=uow.id,
                error=type(error).__name__,
                rollback_error=repr(rollback_error),
            )
        else:
            logger.debug("transaction_rolled_back", unit_of_work=uow.id, error=type(error).__name__)

    def _close(self, uow: UnitOfWork) -> None:
        try:
            if uow.autocommit_was_enabled:
                restore_autocommit(uow.connection)
        finally:
            uow.connection.close()


__all__ = [
    "AUTOCOMMIT",
    "UnitOfWork",
    "TransactionManager",
    "autocommit_disabled",
    "disable_autocommit",
    "restore_autocommit",
    "is_autocommit",
]
