"""
Write path for FHIR resources.

This module handles:
- Collection routing of resource types
- Identity resolution for POST and PUT
- Tombstone checks against deleted ids
- Version history (archive current, derive next version)
- Standalone and nested transaction contexts
- Transaction and batch bundle processing

Invariants:
    - Tombstone check, archive and final write share one transaction
    - Nested contexts never commit or roll back
    - Errors reaching callers are FhirStoreError subclasses

How to change safely:
    - Keep the coordinator free of branches on the context variant
    - Test failure injection between every pair of steps
"""

from .bundle import BundleProcessor, parse_bundle
from .context import NestedContext, StandaloneContext, TransactionContext
from .coordinator import ResourceWriteCoordinator, as_write_error
from .history import VersionHistoryManager, VersionStep
from .identity import IdentityResolver, generate_resource_id
from .meta import MetaStamper, OperationKind, ResourceCodec, document_key
from .routing import CollectionRouter, RoutingTable, RoutingTableError, load_routing_table
from .tombstone import TombstoneGuard, record_tombstone

__all__ = [
    "BundleProcessor",
    "parse_bundle",
    "TransactionContext",
    "StandaloneContext",
    "NestedContext",
    "ResourceWriteCoordinator",
    "as_write_error",
    "VersionHistoryManager",
    "VersionStep",
    "IdentityResolver",
    "generate_resource_id",
    "MetaStamper",
    "OperationKind",
    "ResourceCodec",
    "document_key",
    "CollectionRouter",
    "RoutingTable",
    "RoutingTableError",
    "load_routing_table",
    "TombstoneGuard",
    "record_tombstone",
]
