"""
Shared fixtures for the FHIR resource store tests.
"""

import sqlite3
import tempfile
from pathlib import Path

import pytest

from fhirdb.fhirstore.store import InMemoryDocumentStore, SqliteDocumentStore, StoreConnectionError
from fhirdb.fhirstore.write import CollectionRouter, ResourceWriteCoordinator, RoutingTable


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def router():
    """Router with a dedicated Patient collection; everything else in General."""
    return CollectionRouter(RoutingTable(collections={"Patient": "Patient"}))


@pytest.fixture
def coordinator(router):
    """Coordinator writing into the Resources group with a short timeout."""
    return ResourceWriteCoordinator(router, default_group="Resources", timeout_s=5.0)


@pytest.fixture
async def memory_store():
    """Connected in-memory store."""
    store = InMemoryDocumentStore()
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
async def sqlite_store(data_dir):
    """Connected SQLite store in a temporary directory."""
    store = SqliteDocumentStore(str(Path(data_dir) / "fhir.db"), wal_mode=False)
    await store.connect()
    yield store
    await store.close()


@pytest.fixture(params=["memory", "sqlite"])
async def store(request, data_dir):
    """Each store backend in turn."""
    if request.param == "memory":
        backend = InMemoryDocumentStore()
    else:
        backend = SqliteDocumentStore(str(Path(data_dir) / "fhir.db"), wal_mode=False)
    await backend.connect()
    yield backend
    await backend.close()


class FailingCommitConnection:
    """Wraps a sqlite3 connection so that COMMIT fails."""

    def __init__(self, conn):
        self._conn = conn

    def execute(self, sql, *args):
        if sql == "COMMIT":
            raise sqlite3.OperationalError("disk I/O error")
        return self._conn.execute(sql, *args)

    def __getattr__(self, name):
        return getattr(self._conn, name)


@pytest.fixture
def fail_next_commit(monkeypatch):
    """Make the commit of the next transaction begun on a store fail."""

    def arm(store):
        if isinstance(store, InMemoryDocumentStore):
            store.inject_failure("commit", StoreConnectionError("connection lost during commit"))
            return

        original = store.begin

        async def begin(timeout_s=None):
            monkeypatch.setattr(store, "begin", original)
            txn = await original(timeout_s)
            txn._conn = FailingCommitConnection(txn._conn)
            return txn

        monkeypatch.setattr(store, "begin", begin)

    return arm
