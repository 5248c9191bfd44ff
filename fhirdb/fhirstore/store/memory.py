"""
In-memory document store implementation for testing.

This module provides an in-memory backend for:
- Unit tests
- Integration tests
- Local development without a database file

Invariants:
    - All data is lost on process exit
    - Writers are admitted one at a time (store-wide lock held from
      begin() until commit()/rollback()), giving serializable isolation
    - Uncommitted writes live in the transaction's overlay only

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep behaviour identical to the SQLite backend for the store contract
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Tuple

from .base import (
    CasMismatchError,
    DocumentExistsError,
    DocumentNotFoundError,
    StoredDocument,
    StoreConnectionError,
    StoreTimeoutError,
    TransactionClosedError,
    history_key,
)

logger = logging.getLogger(__name__)

_Address = Tuple[str, str]


class InMemoryTransaction:
    """Transaction over an InMemoryDocumentStore.

    Reads see committed state overlaid with this transaction's own writes.
    Each operation yields to the event loop once, standing in for the
    round trip a remote store would cost.
    """

    def __init__(self, store: InMemoryDocumentStore) -> None:
        self._store = store
        self._writes: Dict[_Address, StoredDocument] = {}
        self._state = "active"

    @property
    def is_active(self) -> bool:
        return self._state == "active"

    @property
    def state(self) -> str:
        """One of active, committed, rolled_back (testing helper)."""
        return self._state

    def _check_active(self) -> None:
        if not self.is_active:
            raise TransactionClosedError(f"Transaction is {self._state}")

    def _lookup(self, collection: str, key: str) -> Optional[StoredDocument]:
        staged = self._writes.get((collection, key))
        if staged is not None:
            return staged
        return self._store._documents.get((collection, key))

    async def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        self._check_active()
        await asyncio.sleep(0)
        self._store._maybe_fail("get")
        return self._lookup(collection, key)

    async def insert(
        self,
        collection: str,
        key: str,
        body: str,
        version_id: Optional[int] = None,
    ) -> StoredDocument:
        self._check_active()
        await asyncio.sleep(0)
        self._store._maybe_fail("insert")
        if self._lookup(collection, key) is not None:
            raise DocumentExistsError(f"Document already exists: {collection}:{key}")
        doc = StoredDocument(collection, key, body, version_id)
        self._writes[(collection, key)] = doc
        return doc

    async def replace(
        self,
        collection: str,
        key: str,
        body: str,
        expected_version: Optional[int],
        version_id: Optional[int] = None,
    ) -> StoredDocument:
        self._check_active()
        await asyncio.sleep(0)
        self._store._maybe_fail("replace")
        current = self._lookup(collection, key)
        if current is None:
            raise DocumentNotFoundError(f"Document not found: {collection}:{key}")
        if current.version_id != expected_version:
            raise CasMismatchError(
                f"Version mismatch on {collection}:{key}: "
                f"expected {expected_version}, found {current.version_id}"
            )
        doc = StoredDocument(collection, key, body, version_id)
        self._writes[(collection, key)] = doc
        return doc

    async def archive_current(
        self,
        source_collection: str,
        key: str,
        history_collection: str,
    ) -> Optional[int]:
        self._check_active()
        await asyncio.sleep(0)
        self._store._maybe_fail("archive_current")
        current = self._lookup(source_collection, key)
        if current is None:
            return None
        version = current.version_id or 1
        target = history_key(key, version)
        if self._lookup(history_collection, target) is not None:
            raise DocumentExistsError(
                f"Version already archived: {history_collection}:{target}"
            )
        self._writes[(history_collection, target)] = StoredDocument(
            history_collection, target, current.body, version
        )
        return version

    async def commit(self) -> None:
        self._check_active()
        self._store._maybe_fail("commit")
        self._store._documents.update(self._writes)
        self._finish("committed")

    async def rollback(self) -> None:
        self._check_active()
        self._finish("rolled_back")

    def _finish(self, state: str) -> None:
        self._writes.clear()
        self._state = state
        self._store._commit_log.append(state)
        self._store._lock.release()


class InMemoryDocumentStore:
    """In-memory implementation of DocumentStore for testing.

    Attributes:
        documents: Committed documents keyed by (collection, key)

    Thread safety:
        Uses an asyncio lock to admit one writing transaction at a time.
        Safe to use from multiple coroutines on one event loop.

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.connect()
        >>> txn = await store.begin()
        >>> await txn.insert("Patient", "Patient/p1", "{}", 1)
        >>> await txn.commit()
    """

    def __init__(self) -> None:
        self._documents: Dict[_Address, StoredDocument] = {}
        self._connected = False
        self._lock = asyncio.Lock()
        self._failures: Dict[str, Exception] = {}
        self._commit_log: list[str] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryDocumentStore connected")

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self._documents.clear()
        self._failures.clear()
        logger.debug("InMemoryDocumentStore closed")

    async def begin(self, timeout_s: Optional[float] = None) -> InMemoryTransaction:
        if not self._connected:
            raise StoreConnectionError("Not connected")
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=timeout_s)
        except asyncio.TimeoutError as e:
            raise StoreTimeoutError(f"Timed out after {timeout_s}s waiting to begin") from e
        return InMemoryTransaction(self)

    async def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        if not self._connected:
            raise StoreConnectionError("Not connected")
        self._maybe_fail("get")
        return self._documents.get((collection, key))

    async def insert(
        self,
        collection: str,
        key: str,
        body: str,
        version_id: Optional[int] = None,
    ) -> StoredDocument:
        if not self._connected:
            raise StoreConnectionError("Not connected")
        async with self._lock:
            self._maybe_fail("insert")
            if (collection, key) in self._documents:
                raise DocumentExistsError(f"Document already exists: {collection}:{key}")
            doc = StoredDocument(collection, key, body, version_id)
            self._documents[(collection, key)] = doc
            return doc

    def _maybe_fail(self, operation: str) -> None:
        exc = self._failures.pop(operation, None)
        if exc is not None:
            raise exc

    # Testing helpers

    def inject_failure(self, operation: str, exception: Exception) -> None:
        """Make the next call of ``operation`` raise ``exception``.

        Operations: get, insert, replace, archive_current, commit.
        """
        self._failures[operation] = exception

    def snapshot(self) -> Dict[_Address, Tuple[str, Optional[int]]]:
        """Copy of the committed state as (body, version_id) per address."""
        return {
            address: (doc.body, doc.version_id)
            for address, doc in self._documents.items()
        }

    def keys(self, collection: str) -> list[str]:
        """Committed keys of a collection, sorted."""
        return sorted(key for (coll, key) in self._documents if coll == collection)

    @property
    def commit_log(self) -> list[str]:
        """Outcome of every finished transaction, in order."""
        return list(self._commit_log)
