"""
Transaction contexts for resource writes.

A write runs its inner sequence as a unit of work against a store
transaction. Who owns that transaction differs:

- StandaloneContext opens a new transaction, runs the unit of work,
  commits on success and rolls back on any failure or timeout.
- NestedContext borrows a transaction opened by an enclosing caller
  (bundle processing). It runs the unit of work against that handle and
  never commits or rolls it back; the caller owns the whole outcome.

The coordinator calls ``context.run(work)`` either way and never branches
on which variant it was given.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, TypeVar

from ..store.base import DocumentStore, StoreTimeoutError, StoreTransaction

logger = logging.getLogger(__name__)

T = TypeVar("T")

UnitOfWork = Callable[[StoreTransaction], Awaitable[T]]

DEFAULT_TIMEOUT_S = 15.0


class TransactionContext(ABC):
    """Where a write runs: target store, collection group and transaction.

    Attributes:
        store: Target document store
        collection_group: Group qualifying every collection name
    """

    def __init__(self, store: DocumentStore, collection_group: str) -> None:
        self.store = store
        self.collection_group = collection_group

    @property
    @abstractmethod
    def is_nested(self) -> bool:
        ...

    @property
    @abstractmethod
    def transaction_handle(self) -> Optional[StoreTransaction]:
        ...

    @abstractmethod
    async def run(self, work: UnitOfWork[T]) -> T:
        """Run work inside a transaction and return its result."""
        ...

    @classmethod
    def standalone(
        cls,
        store: DocumentStore,
        collection_group: str,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> StandaloneContext:
        return StandaloneContext(store, collection_group, timeout_s)

    @classmethod
    def nested(
        cls,
        txn: StoreTransaction,
        store: DocumentStore,
        collection_group: str,
    ) -> NestedContext:
        return NestedContext(txn, store, collection_group)


class StandaloneContext(TransactionContext):
    """Owns its transaction: begin, run, commit or roll back.

    The whole sequence, from waiting for admission to commit, is bounded by
    timeout_s. On timeout the transaction is rolled back and
    StoreTimeoutError is raised.
    """

    def __init__(
        self,
        store: DocumentStore,
        collection_group: str,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        super().__init__(store, collection_group)
        self.timeout_s = timeout_s

    @property
    def is_nested(self) -> bool:
        return False

    @property
    def transaction_handle(self) -> Optional[StoreTransaction]:
        return None

    async def run(self, work: UnitOfWork[T]) -> T:
        try:
            return await asyncio.wait_for(self._run_owned(work), timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            raise StoreTimeoutError(
                f"Transaction exceeded {self.timeout_s}s and was rolled back"
            ) from e

    async def _run_owned(self, work: UnitOfWork[T]) -> T:
        txn = await self.store.begin(self.timeout_s)
        try:
            result = await work(txn)
            await txn.commit()
        except BaseException:
            # Also reached on cancellation by the timeout
            if txn.is_active:
                await txn.rollback()
                logger.debug("Standalone transaction rolled back")
            raise
        logger.debug("Standalone transaction committed")
        return result


class NestedContext(TransactionContext):
    """Borrows a caller-owned transaction; never commits or rolls back."""

    def __init__(
        self,
        txn: StoreTransaction,
        store: DocumentStore,
        collection_group: str,
    ) -> None:
        super().__init__(store, collection_group)
        self._txn = txn

    @property
    def is_nested(self) -> bool:
        return True

    @property
    def transaction_handle(self) -> Optional[StoreTransaction]:
        return self._txn

    async def run(self, work: UnitOfWork[T]) -> T:
        return await work(self._txn)
