"""
Backing document store abstraction for the FHIR resource store.

This module provides a pluggable store interface supporting:
- SQLite (single file, local or shared volume)
- In-memory (for testing)

Every resource write runs inside a store transaction. The store is the
only place where concurrent writers to the same resource are serialized.

Invariants:
    - Transactions are at least snapshot isolated
    - archive_current() is atomic with respect to concurrent writers
    - "No document" is reported as None, never as an exception

How to change safely:
    - New backends must implement the DocumentStore protocol
    - Run the store contract tests against every backend
"""

from .base import (
    CasMismatchError,
    DocumentExistsError,
    DocumentNotFoundError,
    DocumentStore,
    StoredDocument,
    StoreConnectionError,
    StoreError,
    StoreTimeoutError,
    StoreTransaction,
    TransactionClosedError,
    create_document_store,
    history_key,
    store_transaction,
)
from .memory import InMemoryDocumentStore
from .sqlite import SqliteDocumentStore

__all__ = [
    # Protocols and types
    "DocumentStore",
    "StoreTransaction",
    "StoredDocument",
    "history_key",
    "store_transaction",
    # Errors
    "StoreError",
    "StoreConnectionError",
    "StoreTimeoutError",
    "DocumentExistsError",
    "DocumentNotFoundError",
    "CasMismatchError",
    "TransactionClosedError",
    # Factory
    "create_document_store",
    # Implementations
    "InMemoryDocumentStore",
    "SqliteDocumentStore",
]
