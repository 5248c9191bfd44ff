"""
SQLite document store for the FHIR resource store.

This module manages one SQLite database file holding every collection:
current resources, history entries (Versions) and deletion markers
(Tombstones) are rows of the same table, separated by collection name.

Invariants:
    - One row per (collection, doc_key)
    - Every transaction runs on its own connection under BEGIN IMMEDIATE
    - archive_current() is one INSERT ... SELECT ... RETURNING statement,
      so reading the current version and writing the history row cannot
      interleave with another writer
    - Conditioned replace is an UPDATE guarded by the expected version_id

How to change safely:
    - Schema migrations must be backward compatible
    - Keep archive_current() a single statement
    - Test with concurrent writers before production

Table schema:
    documents:
        - collection TEXT
        - doc_key TEXT
        - version_id INTEGER (NULL for unversioned documents)
        - body_json TEXT (serialized resource, copied verbatim to history)
        - updated_at INTEGER (Unix ms)
        - PRIMARY KEY (collection, doc_key)
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from .base import (
    CasMismatchError,
    DocumentExistsError,
    DocumentNotFoundError,
    StoredDocument,
    StoreConnectionError,
    StoreError,
    StoreTimeoutError,
    TransactionClosedError,
)

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _translate(exc: sqlite3.Error, what: str) -> StoreError:
    """Map a sqlite3 error onto the store error hierarchy."""
    message = str(exc).lower()
    if isinstance(exc, sqlite3.IntegrityError) and (
        "unique constraint" in message or "primary key" in message
    ):
        return DocumentExistsError(f"{what}: {exc}")
    if isinstance(exc, sqlite3.OperationalError) and ("locked" in message or "busy" in message):
        return StoreTimeoutError(f"{what}: {exc}")
    return StoreError(f"{what}: {exc}")


class SqliteTransaction:
    """Transaction bound to a dedicated SQLite connection.

    The connection is opened by SqliteDocumentStore.begin() with
    BEGIN IMMEDIATE already issued and is closed by commit()/rollback().
    """

    def __init__(self, store: SqliteDocumentStore, conn: sqlite3.Connection) -> None:
        self._store = store
        self._conn: Optional[sqlite3.Connection] = conn

    @property
    def is_active(self) -> bool:
        return self._conn is not None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise TransactionClosedError("Transaction already finished")
        return self._conn

    async def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        conn = self._connection()
        try:
            row = conn.execute(
                "SELECT * FROM documents WHERE collection = ? AND doc_key = ?",
                (collection, key),
            ).fetchone()
        except sqlite3.Error as e:
            raise _translate(e, f"get {collection}:{key}") from e
        return _row_to_document(row) if row else None

    async def insert(
        self,
        collection: str,
        key: str,
        body: str,
        version_id: Optional[int] = None,
    ) -> StoredDocument:
        conn = self._connection()
        try:
            conn.execute(
                """
                INSERT INTO documents (collection, doc_key, version_id, body_json, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (collection, key, version_id, body, _now_ms()),
            )
        except sqlite3.Error as e:
            raise _translate(e, f"insert {collection}:{key}") from e
        return StoredDocument(collection, key, body, version_id)

    async def replace(
        self,
        collection: str,
        key: str,
        body: str,
        expected_version: Optional[int],
        version_id: Optional[int] = None,
    ) -> StoredDocument:
        conn = self._connection()
        try:
            cursor = conn.execute(
                """
                UPDATE documents SET body_json = ?, version_id = ?, updated_at = ?
                WHERE collection = ? AND doc_key = ? AND version_id IS ?
                """,
                (body, version_id, _now_ms(), collection, key, expected_version),
            )
            if cursor.rowcount == 0:
                exists = conn.execute(
                    "SELECT version_id FROM documents WHERE collection = ? AND doc_key = ?",
                    (collection, key),
                ).fetchone()
                if exists is None:
                    raise DocumentNotFoundError(f"Document not found: {collection}:{key}")
                raise CasMismatchError(
                    f"Version mismatch on {collection}:{key}: "
                    f"expected {expected_version}, found {exists['version_id']}"
                )
        except sqlite3.Error as e:
            raise _translate(e, f"replace {collection}:{key}") from e
        return StoredDocument(collection, key, body, version_id)

    async def archive_current(
        self,
        source_collection: str,
        key: str,
        history_collection: str,
    ) -> Optional[int]:
        conn = self._connection()
        try:
            rows = conn.execute(
                """
                INSERT INTO documents (collection, doc_key, version_id, body_json, updated_at)
                SELECT ?, doc_key || '/' || IFNULL(version_id, 1), IFNULL(version_id, 1),
                       body_json, ?
                FROM documents
                WHERE collection = ? AND doc_key = ?
                RETURNING version_id
                """,
                (history_collection, _now_ms(), source_collection, key),
            ).fetchall()
        except sqlite3.Error as e:
            raise _translate(e, f"archive {source_collection}:{key}") from e
        if not rows:
            return None
        return int(rows[0]["version_id"])

    async def commit(self) -> None:
        conn = self._connection()
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise _translate(e, "commit") from e
        self._finish()

    async def rollback(self) -> None:
        conn = self._connection()
        try:
            # A failed COMMIT may already have ended the transaction
            if conn.in_transaction:
                conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            raise _translate(e, "rollback") from e
        finally:
            self._finish()

    def _finish(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            self._store._lock.release()


class SqliteDocumentStore:
    """SQLite-backed DocumentStore.

    Thread safety:
        Non-transactional operations open a connection per operation.
        Transactions are admitted one at a time per process through an
        asyncio lock; across processes SQLite's BEGIN IMMEDIATE and the
        busy timeout serialize writers.

    Example:
        >>> store = SqliteDocumentStore("/var/lib/fhirstore/fhir.db")
        >>> await store.connect()
        >>> txn = await store.begin()
        >>> version = await txn.archive_current("Patient", "Patient/p1", "Versions")
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: Path of the SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._connected = False
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        if self.wal_mode:
            conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        if not self._connected:
            raise StoreConnectionError("Not connected")
        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    async def connect(self) -> None:
        """Create the database file and schema if needed."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = self._open()
        except sqlite3.Error as e:
            raise StoreConnectionError(f"Cannot open {self.db_path}: {e}") from e
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    doc_key TEXT NOT NULL,
                    version_id INTEGER,
                    body_json TEXT NOT NULL,
                    updated_at INTEGER NOT NULL,
                    PRIMARY KEY (collection, doc_key)
                );

                INSERT OR IGNORE INTO schema_version (version, applied_at)
                VALUES (1, strftime('%s', 'now') * 1000);
            """)
        finally:
            conn.close()
        self._connected = True
        logger.info("Opened SQLite document store", extra={"db_path": str(self.db_path)})

    async def close(self) -> None:
        self._connected = False

    async def begin(self, timeout_s: Optional[float] = None) -> SqliteTransaction:
        if not self._connected:
            raise StoreConnectionError("Not connected")
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=timeout_s)
        except asyncio.TimeoutError as e:
            raise StoreTimeoutError(f"Timed out after {timeout_s}s waiting to begin") from e

        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self._open()
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            if conn is not None:
                conn.close()
            self._lock.release()
            raise _translate(e, "begin") from e
        return SqliteTransaction(self, conn)

    async def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE collection = ? AND doc_key = ?",
                (collection, key),
            ).fetchone()
            return _row_to_document(row) if row else None

    async def insert(
        self,
        collection: str,
        key: str,
        body: str,
        version_id: Optional[int] = None,
    ) -> StoredDocument:
        async with self._lock:
            with self._get_connection() as conn:
                try:
                    conn.execute(
                        """
                        INSERT INTO documents (collection, doc_key, version_id, body_json, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (collection, key, version_id, body, _now_ms()),
                    )
                except sqlite3.Error as e:
                    raise _translate(e, f"insert {collection}:{key}") from e
        return StoredDocument(collection, key, body, version_id)

    async def count(self, collection: str) -> int:
        """Number of documents in a collection."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT COUNT(*) FROM documents WHERE collection = ?", (collection,)
            )
            return cursor.fetchone()[0]


def _row_to_document(row: sqlite3.Row) -> StoredDocument:
    return StoredDocument(
        collection=row["collection"],
        key=row["doc_key"],
        body=row["body_json"],
        version_id=row["version_id"],
    )
