"""
Resource metadata stamping and serialization.

Resources travel through the write path as plain JSON-like dicts
(``{"resourceType": "Patient", "id": "...", "meta": {...}, ...}``).
This module holds the two collaborators that touch them besides the
coordinator: the metadata stamper and the codec producing stored bodies.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Protocol

from ..errors import InvalidRequestError

logger = logging.getLogger(__name__)

Resource = Dict[str, Any]


class OperationKind(Enum):
    """Which metadata a stamp should populate."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"


def resource_type_of(resource: Resource) -> str:
    """Return the resourceType of a resource.

    Raises:
        InvalidRequestError: If resourceType is absent or blank
    """
    rtype = resource.get("resourceType")
    if not isinstance(rtype, str) or not rtype.strip():
        raise InvalidRequestError("Resource has no resourceType")
    return rtype


def document_key(resource_type: str, resource_id: str) -> str:
    """Key of the current version of a resource: ``Type/id``."""
    return f"{resource_type}/{resource_id}"


class MetadataStamper(Protocol):
    """Stamps version and audit metadata onto a resource in place."""

    def apply(self, resource: Resource, version_id: int, kind: OperationKind) -> None:
        ...


class MetaStamper:
    """Default stamper: meta.versionId and meta.lastUpdated.

    versionId is written as a string, as FHIR represents it.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def apply(self, resource: Resource, version_id: int, kind: OperationKind) -> None:
        meta = resource.get("meta")
        if not isinstance(meta, dict):
            meta = {}
        if kind is OperationKind.CREATE:
            # A created resource starts its history fresh
            meta.pop("versionId", None)
        meta["versionId"] = str(version_id)
        meta["lastUpdated"] = self._clock().isoformat(timespec="milliseconds")
        resource["meta"] = meta
        logger.debug(
            "Stamped metadata",
            extra={"version_id": version_id, "operation": kind.value},
        )


class ResourceCodec:
    """Serializes resources to stored document bodies and back.

    Keys are sorted so that the same resource always yields the same body,
    which keeps history snapshots byte-stable.
    """

    def encode(self, resource: Resource) -> str:
        return json.dumps(resource, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def decode(self, body: str) -> Resource:
        return json.loads(body)
