"""SQLAlchemy engine factory.

``create_docstore_engine`` builds an engine with the settings the store
relies on; ``engine_from_settings`` does the same from
:class:`~docstore.settings.DocumentStoreSettings`.

SQLite engines are created with ``check_same_thread=False`` because the
async facade runs each blocking call on a worker thread, and a transaction's
connection may be used by several of them in turn.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

from docstore.settings import DocumentStoreSettings


def _is_in_memory(url: str) -> bool:
    return ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://")


def _pool_arguments(**candidates: int | None) -> dict[str, Any]:
    return {name: value for name, value in candidates.items() if value is not None}


def create_docstore_engine(
    url: str = "sqlite:///docstore.db",
    *,
    echo: bool = False,
    pool_size: int | None = None,
    max_overflow: int | None = None,
    pool_timeout: int | None = None,
    **kwargs: Any,
) -> Engine:
    """Build the engine a document repository runs on.

    Server databases get ``pool_pre_ping`` so a connection dropped while idle
    in the pool is replaced before a repository call uses it, plus whichever
    pool limits are given. SQLite keeps SQLAlchemy's own pool choice; every
    new SQLite connection turns on foreign keys, and file databases switch to
    WAL so readers are not blocked by an open batch.

    Args:
        url: Database URL, e.g. ``postgresql+psycopg2://user@host/db``
        echo: Emit every statement through SQLAlchemy's engine logger
        pool_size: Connections kept open (server databases only); also the
            default concurrency limit of the async facade
        max_overflow: Extra connections allowed above ``pool_size``
        pool_timeout: Seconds to wait for a free connection
        **kwargs: Passed to ``sqlalchemy.create_engine`` unchanged
    """
    if not url.startswith("sqlite"):
        limits = _pool_arguments(pool_size=pool_size, max_overflow=max_overflow, pool_timeout=pool_timeout)
        return create_engine(url, echo=echo, pool_pre_ping=True, **limits, **kwargs)

    kwargs.setdefault("connect_args", {"check_same_thread": False})
    engine = create_engine(url, echo=echo, **kwargs)
    use_wal = not _is_in_memory(url)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        try:
            if use_wal:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
        finally:
            cursor.close()

    return engine


def engine_from_settings(settings: DocumentStoreSettings | None = None) -> Engine:
    """Create the engine described by *settings* (read from the environment if omitted)."""
    settings = settings or DocumentStoreSettings()
    return create_docstore_engine(
        settings.database_url,
        echo=settings.echo,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout,
    )


__all__ = ["create_docstore_engine", "engine_from_settings"]
