"""docstore -- JSON document storage on relational tables.

Manifesto:
    Application code wants document semantics: store an entity as one JSON
    payload, read it back whole, change it with an atomic read-modify-write.
    Operations want relational guarantees: transactions, row locks, indexes.
    ``docstore`` gives both, with optimistic versioning on every row.

    - **Optimistic concurrency:** every write names the version it read
    - **All-or-nothing batches:** chunked bulk writes in one transaction
    - **Propagated transactions:** contextvars carry the unit of work through
      sync calls, asyncio tasks and ``to_thread`` workers
    - **Classified failures:** conflict, not-found, unavailable, unknown

Architecture::

    Layer 1 -- Model & Errors
        entity.py          Version, Versioned, ListWithTotalCount
        errors.py          DocumentStoreError hierarchy + classify_error
        result.py          Ok / Err envelope (try_result)
        protocols.py       Entity, SerializationAdapter

    Layer 2 -- Storage
        schema.py          document_table() + column types
        codec.py           RowCodec (rows <-> Versioned)
        serialization.py   PydanticAdapter, TypeAdapterSerialization
        query.py           Filtered / paginated / total-count statements
        engine.py          create_docstore_engine()
        settings.py        DocumentStoreSettings (DOCSTORE_* env)

    Layer 3 -- Operations
        transactions.py    TransactionManager, UnitOfWork, auto-commit scope
        batch.py           execute_batch_operation + chunk providers
        repository.py      DocumentRepository
        migration.py       migrate_documents (rewrite_all)
        aio.py             AsyncDocumentRepository

    Cross-cutting
        logging.py         structlog configuration

Tags:
    document-store, repository, optimistic-locking, sqlalchemy, json
"""

from docstore.aio import AsyncDocumentRepository
from docstore.batch import (
    BatchDiagnostics,
    BatchExecutionError,
    IteratorChunks,
    OrdinalMessageDiagnostics,
    SequenceChunks,
    execute_batch_operation,
)
from docstore.engine import create_docstore_engine, engine_from_settings
from docstore.entity import ListWithTotalCount, Version, Versioned, filter_entities, map_entities
from docstore.errors import (
    BatchItemError,
    ConflictError,
    DocumentStoreError,
    EntityNotFoundError,
    ErrorCategory,
    UnavailableError,
    UnknownError,
    classify_error,
    is_retryable,
)
from docstore.logging import configure_logging, configure_logging_from_settings
from docstore.migration import migrate_documents
from docstore.protocols import Entity, GeneratedIdAdapter, SerializationAdapter
from docstore.repository import DocumentRepository
from docstore.result import Err, Ok, Result, try_result
from docstore.schema import document_table
from docstore.serialization import PydanticAdapter, TypeAdapterSerialization
from docstore.settings import DocumentStoreSettings
from docstore.transactions import TransactionManager, UnitOfWork

__version__ = "0.1.0"

__all__ = [
    "AsyncDocumentRepository",
    "BatchDiagnostics",
    "BatchExecutionError",
    "BatchItemError",
    "ConflictError",
    "DocumentRepository",
    "DocumentStoreError",
    "DocumentStoreSettings",
    "Entity",
    "EntityNotFoundError",
    "Err",
    "ErrorCategory",
    "GeneratedIdAdapter",
    "IteratorChunks",
    "ListWithTotalCount",
    "Ok",
    "OrdinalMessageDiagnostics",
    "PydanticAdapter",
    "Result",
    "SequenceChunks",
    "SerializationAdapter",
    "TransactionManager",
    "TypeAdapterSerialization",
    "UnavailableError",
    "UnitOfWork",
    "UnknownError",
    "Version",
    "Versioned",
    "classify_error",
    "configure_logging",
    "configure_logging_from_settings",
    "create_docstore_engine",
    "document_table",
    "engine_from_settings",
    "execute_batch_operation",
    "filter_entities",
    "is_retryable",
    "map_entities",
    "migrate_documents",
    "try_result",
]
