"""
Resource write coordinator.

Implements the two write operations of the FHIR REST API:

- create (POST): server-controlled id, always version 1, a single insert
  with no history interaction.
- update_or_create (PUT): client-controlled id; inside one transaction it
  checks the tombstone, archives the current version into history, stamps
  the next version and writes the new current document.

Invariants:
    - Committed versions of one (resourceType, id) are 1, 2, 3, ... with no
      gaps and no repeats
    - Every superseded version has exactly one history entry
    - A failure anywhere in the inner sequence leaves no trace: the whole
      transaction is rolled back (standalone) or left to the owner to roll
      back (nested)
    - The coordinator never commits or rolls back a transaction it did not
      open

How to change safely:
    - Keep the inner sequence order: tombstone, archive, stamp, write
    - Keep every step on the same transaction handle
    - Test standalone and nested contexts alike
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Optional

from ..errors import (
    FhirStoreError,
    StoreUnavailableError,
    VersionConflictError,
    WriteFailedError,
    WriteTimeoutError,
)
from ..store.base import (
    CasMismatchError,
    DocumentExistsError,
    DocumentNotFoundError,
    DocumentStore,
    StoreConnectionError,
    StoreTimeoutError,
    StoreTransaction,
    history_key,
)
from .context import DEFAULT_TIMEOUT_S, StandaloneContext, TransactionContext
from .history import VersionHistoryManager
from .identity import IdentityResolver
from .meta import (
    MetadataStamper,
    MetaStamper,
    OperationKind,
    Resource,
    ResourceCodec,
    document_key,
    resource_type_of,
)
from .routing import CollectionRouter
from .tombstone import TombstoneGuard

logger = logging.getLogger(__name__)


def as_write_error(exc: BaseException, key: Optional[str] = None) -> FhirStoreError:
    """Map any failure of a write onto the caller-facing error taxonomy."""
    if isinstance(exc, FhirStoreError):
        return exc
    if isinstance(exc, StoreTimeoutError):
        return WriteTimeoutError(f"Write of {key} timed out: {exc}")
    if isinstance(exc, StoreConnectionError):
        return StoreUnavailableError(f"Store unavailable while writing {key}: {exc}")
    if isinstance(exc, (DocumentExistsError, CasMismatchError, DocumentNotFoundError)):
        return VersionConflictError(
            f"Concurrent write to {key} detected: {exc}", document_key=key
        )
    return WriteFailedError(f"Write of {key} failed: {exc}", document_key=key)


class ResourceWriteCoordinator:
    """Orchestrates identity, tombstone, history and the final write.

    Attributes:
        router: Collection router shared by every step
        default_group: Collection group used when none is given

    Example:
        >>> coordinator = ResourceWriteCoordinator(CollectionRouter(RoutingTable()))
        >>> patient = await coordinator.create({"resourceType": "Patient"}, store)
        >>> patient["meta"]["versionId"]
        '1'
        >>> ctx = coordinator.standalone_context(store)
        >>> patient = await coordinator.update_or_create(patient, ctx)
        >>> patient["meta"]["versionId"]
        '2'
    """

    def __init__(
        self,
        router: CollectionRouter,
        identity: IdentityResolver | None = None,
        tombstones: TombstoneGuard | None = None,
        history: VersionHistoryManager | None = None,
        stamper: MetadataStamper | None = None,
        codec: ResourceCodec | None = None,
        default_group: str = "Resources",
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self.router = router
        self.default_group = default_group
        self.timeout_s = timeout_s
        self._identity = identity or IdentityResolver()
        self._tombstones = tombstones or TombstoneGuard(router)
        self._history = history or VersionHistoryManager(router)
        self._stamper = stamper or MetaStamper()
        self._codec = codec or ResourceCodec()

    def standalone_context(
        self, store: DocumentStore, group: Optional[str] = None
    ) -> StandaloneContext:
        """Context for a single PUT that owns its own transaction."""
        return TransactionContext.standalone(store, group or self.default_group, self.timeout_s)

    # ------------------------------------------------------------------
    # create (POST)
    # ------------------------------------------------------------------

    async def create(
        self,
        resource: Resource,
        store: DocumentStore,
        group: Optional[str] = None,
    ) -> Resource:
        """Create a resource with a server-controlled id as version 1.

        Returns:
            A copy of the resource carrying its id and version 1

        Raises:
            InvalidRequestError: If the resource has no resourceType
            VersionConflictError: If a pre-assigned id already exists
            StoreUnavailableError: If the store cannot be reached
            WriteFailedError: For any other failure
        """
        group = group or self.default_group
        resource, resource_type, key, collection, body = self._prepare_create(resource, group)

        try:
            await asyncio.wait_for(
                store.insert(collection, key, body, 1), timeout=self.timeout_s
            )
        except asyncio.TimeoutError as e:
            raise WriteTimeoutError(
                f"Create of {key} timed out", timeout_s=self.timeout_s
            ) from e
        except Exception as e:
            self._log_failure("POST", key, e, nested=False)
            error = as_write_error(e, key)
            if error is e:
                raise
            raise error from e

        logger.info(
            "Created resource",
            extra={"resource_type": resource_type, "document_key": key, "collection": collection},
        )
        return resource

    async def create_nested(
        self,
        resource: Resource,
        txn: StoreTransaction,
        store: DocumentStore,
        group: Optional[str] = None,
    ) -> Resource:
        """Create a resource inside a caller-owned transaction.

        The insert only becomes visible when the caller commits txn.
        """
        group = group or self.default_group
        resource, resource_type, key, collection, body = self._prepare_create(resource, group)

        try:
            await txn.insert(collection, key, body, 1)
        except Exception as e:
            self._log_failure("POST", key, e, nested=True)
            error = as_write_error(e, key)
            if error is e:
                raise
            raise error from e

        logger.info(
            "Created resource in transaction",
            extra={"resource_type": resource_type, "document_key": key, "collection": collection},
        )
        return resource

    def _prepare_create(
        self, resource: Resource, group: str
    ) -> tuple[Resource, str, str, str, str]:
        resource = copy.deepcopy(resource)
        resource_type = resource_type_of(resource)
        resource_id = self._identity.resolve_for_create(resource)
        self._stamper.apply(resource, 1, OperationKind.CREATE)
        key = document_key(resource_type, resource_id)
        collection = self.router.target_collection(resource_type, group)
        return resource, resource_type, key, collection, self._codec.encode(resource)

    # ------------------------------------------------------------------
    # update-or-create (PUT)
    # ------------------------------------------------------------------

    async def update_or_create(
        self, resource: Resource, context: TransactionContext
    ) -> Resource:
        """Create or update a resource under its client-supplied id.

        Args:
            resource: Resource carrying resourceType and id
            context: Standalone or nested transaction context

        Returns:
            A copy of the resource stamped with its new version

        Raises:
            InvalidRequestError: If the resource has no id (no store access)
            ResourceGoneError: If the id was deleted before
            VersionConflictError: If a concurrent writer collided
            StoreUnavailableError: If the store failed or timed out
            WriteFailedError: For any other failure
        """
        resource_type = resource_type_of(resource)
        resource_id = self._identity.resolve_for_update(resource)
        key = document_key(resource_type, resource_id)
        group = context.collection_group

        async def write_versioned(txn: StoreTransaction) -> Resource:
            # Stamped copy; the caller's dict is never modified
            working = copy.deepcopy(resource)
            return await self._write_versioned(txn, working, resource_type, resource_id, group)

        logger.debug(
            "Starting PUT",
            extra={"document_key": key, "nested": context.is_nested},
        )
        try:
            stored = await context.run(write_versioned)
        except Exception as e:
            self._log_failure("PUT", key, e, nested=context.is_nested)
            error = as_write_error(e, key)
            if error is e:
                raise
            raise error from e

        logger.info(
            "Stored resource",
            extra={
                "document_key": key,
                "version_id": stored["meta"]["versionId"],
                "nested": context.is_nested,
            },
        )
        return stored

    async def _write_versioned(
        self,
        txn: StoreTransaction,
        resource: Resource,
        resource_type: str,
        resource_id: str,
        group: str,
    ) -> Resource:
        """Inner sequence; every step joins the same transaction."""
        key = document_key(resource_type, resource_id)

        await self._tombstones.check_not_tombstoned(resource_type, resource_id, txn, group)

        step = await self._history.archive_current_and_compute_next_version(
            resource_type, resource_id, txn, group
        )

        kind = OperationKind.CREATE if step.is_create else OperationKind.UPDATE
        self._stamper.apply(resource, step.next_version, kind)
        body = self._codec.encode(resource)

        collection = self.router.target_collection(resource_type, group)
        if step.is_create:
            await txn.insert(collection, key, body, step.next_version)
        else:
            await txn.replace(
                collection,
                key,
                body,
                expected_version=step.previous_version,
                version_id=step.next_version,
            )
        return resource

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    async def read_current(
        self,
        store: DocumentStore,
        resource_type: str,
        resource_id: str,
        group: Optional[str] = None,
    ) -> Optional[Resource]:
        """Committed current version of a resource, or None."""
        doc = await store.get(
            self.router.target_collection(resource_type, group or self.default_group),
            document_key(resource_type, resource_id),
        )
        return self._codec.decode(doc.body) if doc else None

    async def read_version(
        self,
        store: DocumentStore,
        resource_type: str,
        resource_id: str,
        version_id: int,
        group: Optional[str] = None,
    ) -> Optional[Resource]:
        """Committed history entry ``Type/id/version_id``, or None."""
        doc = await store.get(
            self.router.versions_collection(group or self.default_group),
            history_key(document_key(resource_type, resource_id), version_id),
        )
        return self._codec.decode(doc.body) if doc else None

    def _log_failure(self, method: str, key: str, exc: BaseException, nested: bool) -> None:
        level = logging.WARNING if isinstance(exc, FhirStoreError) and not exc.retriable else logging.ERROR
        logger.log(
            level,
            f"{method} {key} failed: {exc}",
            extra={"document_key": key, "nested": nested, "error_type": type(exc).__name__},
        )
