"""
Version history management.

Before a new version of a resource is written, the current version is
moved into the history (Versions) collection under ``Type/id/<versionId>``.
The version the store reports having archived is the only source of the
next version number: there is no separate counter.

Invariants:
    - Archiving is one atomic store-side insert-from-read, never a read
      followed by a write
    - Two writers cannot both archive the same version; the loser sees a
      VersionConflictError and its transaction must abort
    - Only "no current document" yields version 1; every other failure
      propagates, so a real conflict is never mistaken for a fresh resource
    - History entries are never mutated or deleted here
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..errors import VersionConflictError
from ..store.base import DocumentExistsError, StoreTransaction
from .meta import document_key
from .routing import CollectionRouter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VersionStep:
    """Outcome of archiving the current version.

    Attributes:
        previous_version: Version that was archived, None if there was no
            current document
    """

    previous_version: Optional[int]

    @property
    def next_version(self) -> int:
        return 1 if self.previous_version is None else self.previous_version + 1

    @property
    def is_create(self) -> bool:
        return self.previous_version is None


class VersionHistoryManager:
    """Moves the current version of a resource into history."""

    def __init__(self, router: CollectionRouter) -> None:
        self._router = router

    async def archive_current_and_compute_next_version(
        self,
        resource_type: str,
        resource_id: str,
        txn: StoreTransaction,
        group: str,
    ) -> VersionStep:
        """Archive the current document (if any) and derive the next version.

        Args:
            resource_type: FHIR resource type
            resource_id: Resource id
            txn: Active transaction the archive joins
            group: Collection group of the target store

        Returns:
            VersionStep carrying the archived and the next version

        Raises:
            VersionConflictError: If the current version was already archived
                by a concurrent writer
            StoreError: For any other store failure (propagated unchanged)
        """
        key = document_key(resource_type, resource_id)
        source = self._router.target_collection(resource_type, group)
        history = self._router.versions_collection(group)

        try:
            archived = await txn.archive_current(source, key, history)
        except DocumentExistsError as e:
            logger.warning(
                "Concurrent writer already archived current version",
                extra={"document_key": key, "collection": history},
            )
            raise VersionConflictError(
                f"Current version of {key} was already archived by a concurrent write",
                document_key=key,
            ) from e

        step = VersionStep(previous_version=archived)
        if step.is_create:
            logger.debug("No current document, using version 1", extra={"document_key": key})
        else:
            logger.debug(
                "Archived current version",
                extra={
                    "document_key": key,
                    "version_id": archived,
                    "next_version": step.next_version,
                },
            )
        return step
