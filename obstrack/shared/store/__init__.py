"""Document store for obstrack services.

Provides the store capability interface with real-time subscriptions,
an in-memory backend and a PostgreSQL backend with connection pooling.
"""

from .document_store import (
    Document,
    DocumentStore,
    Subscription,
    SnapshotHub,
    is_collection_path,
    parent_collection,
    doc_id_of,
)
from .memory_store import InMemoryDocumentStore
from .connection import DatabaseConfig, ConnectionManager
from .postgres_store import PostgresDocumentStore
from .paths import StorePaths

__all__ = [
    "Document",
    "DocumentStore",
    "Subscription",
    "SnapshotHub",
    "is_collection_path",
    "parent_collection",
    "doc_id_of",
    "InMemoryDocumentStore",
    "DatabaseConfig",
    "ConnectionManager",
    "PostgresDocumentStore",
    "StorePaths",
]
