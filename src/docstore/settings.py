"""Settings for document store deployments.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.
    Everything the store needs at startup is read from ``DOCSTORE_*``
    environment variables (or a ``.env`` file) and validated by pydantic
    before the first connection is opened.

Examples:
    >>> import os
    >>> os.environ["DOCSTORE_DATABASE_URL"] = "postgresql+psycopg2://app@db/app"
    >>> settings = DocumentStoreSettings()
    >>> settings.batch_size
    50

Tags:
    settings, configuration, pydantic, environment, docstore
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DocumentStoreSettings(BaseSettings):
    """Validated configuration for engines, batching and logging.

    Fields
    ──────
    database_url         : SQLAlchemy URL
    echo                 : Log every SQL statement
    pool_size            : Connection pool size (ignored for SQLite)
    max_overflow         : Extra connections above pool_size
    pool_timeout         : Seconds to wait for a pooled connection
    batch_size           : Items per batch chunk for batch_* operations
                           (DocumentRepository.from_settings)
    migration_batch_size : Items per batch chunk for rewrite_all
    max_concurrency      : Concurrent blocking calls from the async facade
                           (None = connection pool size)
    log_level            : structlog log level
    json_logs            : JSON log output (None = auto-detect from tty)

    Engine fields feed ``engine_from_settings``, logging fields feed
    ``configure_logging_from_settings``.
    """

    model_config = SettingsConfigDict(
        env_prefix="DOCSTORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Database ─────────────────────────────────────────────────
    database_url: str = "sqlite:///docstore.db"
    echo: bool = False
    pool_size: int | None = Field(default=None, ge=1)
    max_overflow: int | None = Field(default=None, ge=0)
    pool_timeout: int | None = Field(default=None, ge=1)

    # ── Batching ─────────────────────────────────────────────────
    batch_size: int = Field(default=50, ge=1)
    migration_batch_size: int = Field(default=100, ge=1)

    # ── Async facade ─────────────────────────────────────────────
    max_concurrency: int | None = Field(default=None, ge=1)

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool | None = None


__all__ = ["DocumentStoreSettings"]
