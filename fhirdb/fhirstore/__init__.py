"""
FHIR resource store - versioned write path for FHIR resources.

This package implements the write side of a FHIR REST server on top of a
transactional document store:
- create (POST) with server-controlled ids
- update-or-create (PUT) with client-controlled ids and version history
- transaction and batch bundles sharing one code path with single writes

Architecture:
    ┌─────────────┐     ┌──────────────────┐     ┌──────────────────┐
    │   Caller    │────▶│  BundleProcessor │────▶│ ResourceWrite    │
    │ (API / CLI) │     │  (owns bundle    │     │ Coordinator      │
    └─────────────┘     │   transaction)   │     └────────┬─────────┘
                        └──────────────────┘              │
                  ┌──────────────┬──────────────┬─────────┴────────┐
                  ▼              ▼              ▼                  ▼
            ┌──────────┐  ┌────────────┐  ┌───────────┐   ┌─────────────┐
            │ Identity │  │ Tombstone  │  │ Version   │   │ Collection  │
            │ Resolver │  │ Guard      │  │ History   │   │ Router      │
            └──────────┘  └─────┬──────┘  └─────┬─────┘   └─────────────┘
                                ▼               ▼
                        ┌─────────────────────────────────┐
                        │ DocumentStore (SQLite / memory) │
                        └─────────────────────────────────┘

Invariants:
    - Versions of one resource are 1, 2, 3, ... with no gaps or repeats
    - Every superseded version is kept in the Versions collection
    - Deleted ids are never reused
    - All serialization of concurrent writers happens in the store

How to change safely:
    - Keep every step of a write on one transaction handle
    - Never let code that borrowed a transaction commit or roll it back
    - Run the concurrency tests against every store backend

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
