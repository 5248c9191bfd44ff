"""
Tombstone guard: deleted identifiers are never reused.

A delete leaves a marker keyed ``Type/id`` in the tombstones collection.
Any later write to the same (resourceType, id) is vetoed.

Invariants:
    - The check runs inside the writer's transaction, never before it, so a
      racing delete either makes the write abort or applies after it
    - Markers are written by the delete path only (record_tombstone)
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from ..errors import ResourceGoneError
from ..store.base import StoreTransaction
from .meta import document_key
from .routing import CollectionRouter

logger = logging.getLogger(__name__)


class TombstoneGuard:
    """Vetoes writes to tombstoned identifiers."""

    def __init__(self, router: CollectionRouter) -> None:
        self._router = router

    async def is_tombstoned(
        self,
        resource_type: str,
        resource_id: str,
        txn: StoreTransaction,
        group: str,
    ) -> bool:
        marker = await txn.get(
            self._router.tombstones_collection(group),
            document_key(resource_type, resource_id),
        )
        return marker is not None

    async def check_not_tombstoned(
        self,
        resource_type: str,
        resource_id: str,
        txn: StoreTransaction,
        group: str,
    ) -> None:
        """Raise ResourceGoneError if the identifier was deleted.

        Raises:
            ResourceGoneError: If a deletion marker exists for the key
        """
        if await self.is_tombstoned(resource_type, resource_id, txn, group):
            logger.warning(
                "Rejected write to deleted id",
                extra={"resource_type": resource_type, "resource_id": resource_id},
            )
            raise ResourceGoneError(resource_type, resource_id)


async def record_tombstone(
    txn: StoreTransaction,
    router: CollectionRouter,
    group: str,
    resource_type: str,
    resource_id: str,
    deleted_version: Optional[int] = None,
) -> None:
    """Write the deletion marker for a resource.

    This is the side effect the delete operation leaves behind; the write
    path only ever reads it.
    """
    marker = {
        "resourceType": resource_type,
        "id": resource_id,
        "deletedAt": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
        "deletedVersion": deleted_version,
    }
    await txn.insert(
        router.tombstones_collection(group),
        document_key(resource_type, resource_id),
        json.dumps(marker, sort_keys=True),
        deleted_version,
    )
    logger.info(
        "Recorded tombstone",
        extra={"resource_type": resource_type, "resource_id": resource_id},
    )
