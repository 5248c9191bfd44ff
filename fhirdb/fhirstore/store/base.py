"""
Base protocol and types for the backing document store.

This module defines the DocumentStore and StoreTransaction protocols that
every backend must implement, along with the stored document type and the
store-level errors.

Invariants:
    - At most one live document per (collection, key)
    - Writes made inside a transaction are invisible outside it until commit
    - archive_current() is a single atomic insert-from-read: two transactions
      can never both archive the same version of the same key
    - A rolled back transaction leaves no trace in any collection

How to change safely:
    - Protocol changes require updating every backend
    - Keep "no document" (None) distinguishable from failures (exceptions)
    - Run the store contract tests against every backend
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for store operations."""
    pass


class StoreConnectionError(StoreError):
    """Store is not connected or the connection failed."""
    pass


class StoreTimeoutError(StoreError):
    """A store operation or transaction did not finish in time."""
    pass


class DocumentExistsError(StoreError):
    """Insert target key already holds a document."""
    pass


class DocumentNotFoundError(StoreError):
    """Conditioned write target key holds no document."""
    pass


class CasMismatchError(StoreError):
    """Conditioned replace found a different version than expected."""
    pass


class TransactionClosedError(StoreError):
    """Operation attempted on a committed or rolled back transaction."""
    pass


@dataclass(frozen=True)
class StoredDocument:
    """A document as held by the store.

    Attributes:
        collection: Physical collection name
        key: Document key within the collection
        body: Serialized document body, stored and copied verbatim
        version_id: Recorded version of the document (None if unversioned)
    """

    collection: str
    key: str
    body: str
    version_id: Optional[int] = None


def history_key(key: str, version_id: int) -> str:
    """Key of the history entry archiving ``version_id`` of ``key``."""
    return f"{key}/{version_id}"


@runtime_checkable
class StoreTransaction(Protocol):
    """Protocol for an open store transaction.

    A transaction is a handle: whoever opened it owns commit() and
    rollback(). Code that merely borrows a handle must never call either.
    """

    @abstractmethod
    async def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        """Point lookup, seeing this transaction's own uncommitted writes."""
        ...

    @abstractmethod
    async def insert(
        self,
        collection: str,
        key: str,
        body: str,
        version_id: Optional[int] = None,
    ) -> StoredDocument:
        """Insert a new document.

        Raises:
            DocumentExistsError: If the key already holds a document
        """
        ...

    @abstractmethod
    async def replace(
        self,
        collection: str,
        key: str,
        body: str,
        expected_version: Optional[int],
        version_id: Optional[int] = None,
    ) -> StoredDocument:
        """Replace a document only if its recorded version is expected_version.

        Raises:
            DocumentNotFoundError: If the key holds no document
            CasMismatchError: If the stored version differs
        """
        ...

    @abstractmethod
    async def archive_current(
        self,
        source_collection: str,
        key: str,
        history_collection: str,
    ) -> Optional[int]:
        """Copy the document at key into history_collection, atomically.

        The copy is stored under ``history_key(key, version)`` where version
        is the source document's recorded version (1 when unversioned).

        Returns:
            The archived version, or None if no document exists at key

        Raises:
            DocumentExistsError: If that version was already archived
        """
        ...

    @abstractmethod
    async def commit(self) -> None:
        """Make every write of this transaction visible, atomically.

        If commit raises, the transaction stays active and its owner must
        roll it back.
        """
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """Discard every write of this transaction."""
        ...

    @property
    @abstractmethod
    def is_active(self) -> bool:
        """Whether the transaction is still open."""
        ...


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for backing store backends.

    Isolation contract:
        - Transactions are at least snapshot isolated
        - Writers to the same key serialize or fail with a conflict,
          never both commit

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.connect()
        >>> txn = await store.begin()
        >>> await txn.insert("Patient", "Patient/p1", '{"id": "p1"}', 1)
        >>> await txn.commit()
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the store.

        Raises:
            StoreConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release all resources held by the store."""
        ...

    @abstractmethod
    async def begin(self, timeout_s: Optional[float] = None) -> StoreTransaction:
        """Open a new transaction.

        Args:
            timeout_s: How long to wait for the store to admit the transaction

        Raises:
            StoreConnectionError: If not connected
            StoreTimeoutError: If the transaction could not be opened in time
        """
        ...

    @abstractmethod
    async def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        """Point lookup of committed state, outside any transaction."""
        ...

    @abstractmethod
    async def insert(
        self,
        collection: str,
        key: str,
        body: str,
        version_id: Optional[int] = None,
    ) -> StoredDocument:
        """Insert a single document atomically, outside any transaction.

        Raises:
            DocumentExistsError: If the key already holds a document
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the store."""
        ...


@asynccontextmanager
async def store_transaction(
    store: DocumentStore,
    timeout_s: Optional[float] = None,
) -> AsyncIterator[StoreTransaction]:
    """Open a transaction, commit on clean exit, roll back on error.

    This is the owner-side helper for callers such as bundle processing
    that run several writes in one unit of work.

    Example:
        >>> async with store_transaction(store) as txn:
        ...     await coordinator.create_nested(resource, txn)
    """
    txn = await store.begin(timeout_s)
    try:
        yield txn
        if txn.is_active:
            await txn.commit()
    except BaseException:
        # Also reached when commit itself fails
        if txn.is_active:
            await txn.rollback()
        raise


def create_document_store(config: "ServerConfig") -> DocumentStore:
    """Factory function to create a document store from configuration.

    Args:
        config: Server configuration

    Returns:
        Appropriate DocumentStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend
    from .memory import InMemoryDocumentStore
    from .sqlite import SqliteDocumentStore

    if config.storage.backend == StoreBackend.MEMORY:
        return InMemoryDocumentStore()
    elif config.storage.backend == StoreBackend.SQLITE:
        return SqliteDocumentStore(
            config.storage.db_path,
            wal_mode=config.storage.wal_mode,
            busy_timeout_ms=config.storage.busy_timeout_ms,
        )
    else:
        raise ValueError(f"Unsupported store backend: {config.storage.backend}")
