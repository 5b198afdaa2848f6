"""OmniBrain -- persistent, searchable memory for AI agents.

A small fact store over a document database.  Each user gets a namespace of
memories that can be tagged, pinned, linked, given a time-to-live and
searched lexically or, when an embedding API key is configured,
semantically.

Quick start::

    from omnibrain import MemoryEngine, SQLiteDocumentStore

    engine = MemoryEngine(SQLiteDocumentStore("memories.db", namespace="alice"))
    engine.add("The user prefers dark mode.", tags=["preferences"])
    results = engine.smart_search("dark mode")

Production deployments use Cloud Firestore; see :func:`open_engine` and
:mod:`omnibrain.config`.
"""

from __future__ import annotations

__version__ = "2.2.0"

from .cache import MemoryCache
from .config import Config, configure_logging, load_config
from .core import MemoryEngine, open_engine
from .embeddings import (
    CohereEmbedding,
    EmbeddingProvider,
    EmbeddingService,
    GeminiEmbedding,
    OpenAIEmbedding,
    create_embedding_provider,
    create_embedding_service,
)
from .errors import BackendError, ConfigError, MemoryNotFoundError, OmniBrainError
from .memory import BulkResult, Memory, MemoryStats, ScoredMemory
from .retry import with_retry
from .store import DocumentStore, SQLiteDocumentStore, WriteBatch

__all__ = [
    # Engine
    "MemoryEngine",
    "open_engine",
    # Data model
    "Memory",
    "ScoredMemory",
    "BulkResult",
    "MemoryStats",
    # Storage
    "DocumentStore",
    "SQLiteDocumentStore",
    "WriteBatch",
    "MemoryCache",
    # Embeddings
    "EmbeddingProvider",
    "EmbeddingService",
    "GeminiEmbedding",
    "OpenAIEmbedding",
    "CohereEmbedding",
    "create_embedding_provider",
    "create_embedding_service",
    # Configuration
    "Config",
    "load_config",
    "configure_logging",
    # Errors
    "OmniBrainError",
    "MemoryNotFoundError",
    "BackendError",
    "ConfigError",
    "with_retry",
    "__version__",
]
