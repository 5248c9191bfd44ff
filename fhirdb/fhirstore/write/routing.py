"""
Collection routing for FHIR resource types.

Maps a resource type name to the physical collection that stores its
current versions. Frequently written types get a dedicated collection;
every other type shares the default collection. History entries and
deletion markers live in their own fixed collections.

Invariants:
    - The routing table is built once and is immutable afterwards
    - Routing is a pure function of (table, resource type)
    - Reserved collections (history, tombstones) never hold current versions

How to change safely:
    - Moving a type to another collection strands its existing documents;
      migrate data before changing the table
    - Load the YAML table with load_routing_table() and validate on startup

YAML routing table format:
    default: General
    versions: Versions
    tombstones: Tombstones
    collections:
      Patient: Patient
      Observation: Observation
      AllergyIntolerance: Clinical
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

from ..config import RoutingConfig

logger = logging.getLogger(__name__)


class RoutingTableError(ValueError):
    """Routing table is malformed."""
    pass


@dataclass(frozen=True)
class RoutingTable:
    """Immutable resource type -> collection table.

    Attributes:
        default_collection: Collection for unlisted resource types
        collections: Dedicated collection per resource type
        versions_collection: Collection holding history entries
        tombstones_collection: Collection holding deletion markers
    """

    default_collection: str = "General"
    collections: Mapping[str, str] = field(default_factory=dict)
    versions_collection: str = "Versions"
    tombstones_collection: str = "Tombstones"

    def __post_init__(self) -> None:
        object.__setattr__(self, "collections", MappingProxyType(dict(self.collections)))
        reserved = {self.versions_collection, self.tombstones_collection}
        clashes = sorted(
            rtype for rtype, coll in self.collections.items() if coll in reserved
        )
        if self.default_collection in reserved:
            clashes.append("<default>")
        if clashes:
            raise RoutingTableError(
                f"Resource types routed to a reserved collection: {', '.join(clashes)}"
            )

    @classmethod
    def from_config(cls, config: RoutingConfig) -> RoutingTable:
        """Build the table from configuration (YAML file takes precedence)."""
        if config.table_file:
            return load_routing_table(config.table_file)
        return cls(
            default_collection=config.default_collection,
            collections={rtype: rtype for rtype in config.dedicated_types},
            versions_collection=config.versions_collection,
            tombstones_collection=config.tombstones_collection,
        )


def parse_routing_table(data: Mapping[str, Any]) -> RoutingTable:
    """Build a RoutingTable from its dict form.

    Raises:
        RoutingTableError: If the structure is invalid
    """
    collections = data.get("collections") or {}
    if not isinstance(collections, Mapping):
        raise RoutingTableError("'collections' must be a mapping of resource type to collection")
    for rtype, coll in collections.items():
        if not isinstance(rtype, str) or not isinstance(coll, str) or not coll:
            raise RoutingTableError(f"Invalid routing entry: {rtype!r} -> {coll!r}")

    return RoutingTable(
        default_collection=str(data.get("default", "General")),
        collections=dict(collections),
        versions_collection=str(data.get("versions", "Versions")),
        tombstones_collection=str(data.get("tombstones", "Tombstones")),
    )


def load_routing_table(path: str) -> RoutingTable:
    """Load a routing table from a YAML file."""
    text = Path(path).read_text(encoding="utf-8")
    table = parse_routing_table(yaml.safe_load(text) or {})
    logger.info(
        "Loaded routing table",
        extra={"path": path, "dedicated_types": len(table.collections)},
    )
    return table


class CollectionRouter:
    """Resolves the physical collection names used by the write path.

    Physical names are qualified by a collection group (the bucket scope a
    transaction context targets), giving ``<group>.<collection>``.

    Example:
        >>> router = CollectionRouter(RoutingTable(collections={"Patient": "Patient"}))
        >>> router.target_collection("Patient", "Resources")
        'Resources.Patient'
        >>> router.target_collection("Basic", "Resources")
        'Resources.General'
    """

    def __init__(self, table: RoutingTable) -> None:
        self._table = table

    @property
    def table(self) -> RoutingTable:
        return self._table

    def collection_for(self, resource_type: str) -> str:
        """Unqualified collection holding current versions of resource_type."""
        return self._table.collections.get(resource_type, self._table.default_collection)

    def target_collection(self, resource_type: str, group: str) -> str:
        return qualify(group, self.collection_for(resource_type))

    def versions_collection(self, group: str) -> str:
        return qualify(group, self._table.versions_collection)

    def tombstones_collection(self, group: str) -> str:
        return qualify(group, self._table.tombstones_collection)


def qualify(group: str, collection: str) -> str:
    """Physical collection name within a collection group."""
    return f"{group}.{collection}" if group else collection
