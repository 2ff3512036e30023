"""
Shared pytest fixtures for docstore tests.

This module provides:
- A file-backed SQLite engine per test (WAL, foreign keys)
- An ``example`` document table and a repository over it
- An example pydantic entity and a factory for it
- A table with database-generated ids and a repository over it

Usage:
    def test_create(repo, new_entity):
        stored = repo.create(new_entity(text="hello"))
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from pathlib import Path
from uuid import UUID, uuid4

import pytest
from pydantic import BaseModel, Field
from sqlalchemy import MetaData, Table, func, select
from sqlalchemy.engine import Engine

from docstore.engine import create_docstore_engine
from docstore.repository import DocumentRepository
from docstore.schema import document_table
from docstore.serialization import PydanticAdapter
from docstore.transactions import TransactionManager


class ExampleEntity(BaseModel):
    """Entity stored by the tests."""

    id: UUID = Field(default_factory=uuid4)
    text: str
    optional_text: str | None = None


class NumberedEntity(BaseModel):
    """Entity whose id the database assigns."""

    id: int | None = None
    text: str


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Tests using the database fixtures are integration tests, the rest unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if markers.intersection({"unit", "integration"}):
            continue
        if "engine" in getattr(item, "fixturenames", ()):
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'docstore.db'}"


@pytest.fixture
def engine(database_url: str) -> Generator[Engine, None, None]:
    """File-backed SQLite engine, disposed after the test."""
    eng = create_docstore_engine(database_url)
    yield eng
    eng.dispose()


@pytest.fixture
def table(engine: Engine) -> Table:
    """The ``example`` document table, created on the test database."""
    metadata = MetaData()
    example = document_table("example", metadata)
    metadata.create_all(engine)
    return example


@pytest.fixture
def transactions(engine: Engine) -> TransactionManager:
    return TransactionManager(engine)


@pytest.fixture
def repo(transactions: TransactionManager, table: Table) -> DocumentRepository[ExampleEntity]:
    return DocumentRepository(transactions, table, PydanticAdapter(ExampleEntity))


@pytest.fixture
def numbered_table(engine: Engine) -> Table:
    """A document table with database-generated ids."""
    metadata = MetaData()
    numbered = document_table("numbered", metadata, generated_id=True)
    metadata.create_all(engine)
    return numbered


@pytest.fixture
def numbered_repo(transactions: TransactionManager, numbered_table: Table) -> DocumentRepository[NumberedEntity]:
    return DocumentRepository(transactions, numbered_table, PydanticAdapter(NumberedEntity))


@pytest.fixture
def new_entity() -> Callable[..., ExampleEntity]:
    """Factory for example entities with a fresh id."""

    def factory(text: str = "test", **kwargs: object) -> ExampleEntity:
        return ExampleEntity(text=text, **kwargs)

    return factory


@pytest.fixture
def count_rows(engine: Engine, table: Table) -> Callable[[], int]:
    """Count the stored rows outside any repository transaction."""

    def counter() -> int:
        with engine.connect() as connection:
            return connection.execute(select(func.count()).select_from(table)).scalar_one()

    return counter
