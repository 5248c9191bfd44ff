"""
FHIR resource store test suite.

This package contains:
- unit/: Unit tests (in-memory store, no files)
- integration/: Integration tests (SQLite and in-memory stores, bundles, concurrency)
"""
