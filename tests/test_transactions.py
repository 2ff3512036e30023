"""Tests for transaction propagation and auto-commit handling."""

from __future__ import annotations

import asyncio
import threading

import pytest
from sqlalchemy import exc as sa_exc

from docstore.errors import ConflictError, UnavailableError
from docstore.repository import DocumentRepository
from docstore.serialization import PydanticAdapter
from docstore.transactions import (
    AUTOCOMMIT,
    TransactionManager,
    autocommit_disabled,
    is_autocommit,
)

from conftest import ExampleEntity


class FailingRollback:
    """Stands in for a transaction whose ROLLBACK fails at the driver."""

    def __init__(self, real):
        self.real = real

    def commit(self):
        self.real.commit()

    def rollback(self):
        self.real.rollback()
        raise sa_exc.OperationalError("ROLLBACK", {}, Exception("connection lost during rollback"))


class TestTransaction:
    """Commit, rollback and flat nesting."""

    def test_commit_on_success(self, transactions, repo, new_entity, count_rows):
        with transactions.transaction():
            repo.create(new_entity())
            repo.create(new_entity())
        assert count_rows() == 2

    def test_rollback_on_error(self, transactions, repo, new_entity, count_rows):
        with pytest.raises(ValueError, match="caller failure"):
            with transactions.transaction():
                repo.create(new_entity())
                raise ValueError("caller failure")
        assert count_rows() == 0

    def test_uncommitted_writes_are_invisible_outside(self, transactions, repo, new_entity, count_rows):
        with transactions.transaction():
            repo.create(new_entity())
            assert count_rows() == 0
        assert count_rows() == 1

    def test_nested_transaction_reuses_outer(self, transactions, repo, new_entity, count_rows):
        with transactions.transaction() as outer:
            with transactions.transaction() as inner:
                assert inner is outer
                repo.create(new_entity())
            # the inner block does not commit
            assert count_rows() == 0
        assert count_rows() == 1

    def test_inner_failure_rolls_back_everything(self, transactions, repo, new_entity, count_rows):
        with pytest.raises(ConflictError):
            with transactions.transaction():
                repo.create(new_entity())
                with transactions.transaction():
                    repo.delete(new_entity().id, 1)
        assert count_rows() == 0

    def test_context_cleared_on_exit(self, transactions):
        with transactions.transaction():
            assert transactions.in_transaction()
        assert transactions.current() is None

        with pytest.raises(RuntimeError):
            with transactions.transaction():
                raise RuntimeError("boom")
        assert transactions.current() is None

    def test_transactional_returns_block_result(self, transactions, repo, new_entity):
        entity = new_entity()
        stored = transactions.transactional(lambda: repo.create(entity))
        assert stored.item == entity
        assert repo.get(entity.id) is not None

    def test_repositories_on_same_engine_share_transaction(self, engine, table, transactions, new_entity, count_rows):
        first = DocumentRepository(transactions, table, PydanticAdapter(ExampleEntity))
        second = DocumentRepository(TransactionManager(engine), table, PydanticAdapter(ExampleEntity))
        with pytest.raises(ValueError):
            with transactions.transaction():
                first.create(new_entity())
                second.create(new_entity())
                raise ValueError("abort")
        assert count_rows() == 0

    def test_other_threads_do_not_see_transaction(self, transactions):
        seen = []
        with transactions.transaction():
            worker = threading.Thread(target=lambda: seen.append(transactions.current()))
            worker.start()
            worker.join()
        assert seen == [None]


class TestRollbackFailure:
    def test_original_error_propagates_with_note(self, transactions):
        with pytest.raises(ValueError, match="original") as info:
            with transactions.transaction() as uow:
                uow.transaction = FailingRollback(uow.transaction)
                raise ValueError("original")
        notes = getattr(info.value, "__notes__", [])
        assert any("rollback also failed" in note for note in notes)

    def test_store_error_records_suppressed(self, transactions):
        with pytest.raises(ConflictError) as info:
            with transactions.transaction() as uow:
                uow.transaction = FailingRollback(uow.transaction)
                raise ConflictError("stale")
        assert len(info.value.suppressed) == 1
        assert isinstance(info.value.suppressed[0], sa_exc.OperationalError)
        assert transactions.current() is None

    def test_driver_error_is_classified(self, transactions):
        with pytest.raises(UnavailableError) as info:
            with transactions.transaction():
                raise sa_exc.OperationalError(
                    "SELECT 1", {}, Exception("server closed the connection"), connection_invalidated=True
                )
        assert isinstance(info.value.cause, sa_exc.OperationalError)


class TestAutocommit:
    def test_disabled_and_restored(self, engine):
        with engine.connect() as connection:
            connection.execution_options(isolation_level=AUTOCOMMIT)
            with autocommit_disabled(connection):
                assert not is_autocommit(connection)
            assert is_autocommit(connection)

    def test_restored_after_failure(self, engine):
        with engine.connect() as connection:
            connection.execution_options(isolation_level=AUTOCOMMIT)
            with pytest.raises(RuntimeError):
                with autocommit_disabled(connection):
                    raise RuntimeError("boom")
            assert is_autocommit(connection)

    def test_untouched_when_not_autocommit(self, engine):
        with engine.connect() as connection:
            with autocommit_disabled(connection):
                assert not is_autocommit(connection)
            assert not is_autocommit(connection)

    def test_transaction_on_autocommit_engine_is_atomic(self, engine, table, new_entity, count_rows):
        autocommit_engine = engine.execution_options(isolation_level=AUTOCOMMIT)
        transactions = TransactionManager(autocommit_engine)
        repo = DocumentRepository(transactions, table, PydanticAdapter(ExampleEntity))
        with pytest.raises(ValueError):
            with transactions.transaction() as uow:
                assert uow.autocommit_was_enabled
                assert not is_autocommit(uow.connection)
                repo.create(new_entity())
                raise ValueError("abort")
        assert count_rows() == 0


class TestAsyncTransaction:
    @pytest.mark.asyncio
    async def test_worker_threads_see_task_transaction(self, transactions):
        async with transactions.atransaction() as uow:
            seen = await asyncio.to_thread(transactions.current)
            assert seen is uow
        assert transactions.current() is None

    @pytest.mark.asyncio
    async def test_concurrent_tasks_do_not_share(self, transactions):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def holder():
            async with transactions.atransaction():
                entered.set()
                await release.wait()

        async def observer():
            await entered.wait()
            current = transactions.current()
            release.set()
            return current

        _, seen = await asyncio.gather(holder(), observer())
        assert seen is None

    @pytest.mark.asyncio
    async def test_rollback_on_error(self, transactions, repo, new_entity, count_rows):
        with pytest.raises(ValueError):
            async with transactions.atransaction():
                await asyncio.to_thread(repo.create, new_entity())
                raise ValueError("abort")
        assert count_rows() == 0

    @pytest.mark.asyncio
    async def test_atransactional_commits(self, transactions, repo, new_entity, count_rows):
        async def block():
            await asyncio.to_thread(repo.create, new_entity())
            return "done"

        assert await transactions.atransactional(block) == "done"
        assert count_rows() == 1
