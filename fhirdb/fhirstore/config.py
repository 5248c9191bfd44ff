"""
Configuration management for the FHIR resource store.

All configuration is done via environment variables - no config files inside
containers, except for the optional collection routing table.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Configuration objects are frozen once loaded
    - The routing table is read once at startup and never mutated

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class StoreBackend(Enum):
    """Supported document store backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


def _split_list(raw: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class StorageConfig:
    """Document store configuration.

    Attributes:
        backend: Which store backend to use
        data_dir: Directory for the SQLite database file
        sqlite_file: SQLite database file name
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    backend: StoreBackend = StoreBackend.SQLITE
    data_dir: str = "/var/lib/fhirstore"
    sqlite_file: str = "fhir.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @property
    def db_path(self) -> str:
        return str(Path(self.data_dir) / self.sqlite_file)

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("STORE_BACKEND", "sqlite").lower()
        try:
            backend = StoreBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid STORE_BACKEND '{backend_str}'. Must be one of: memory, sqlite")

        return cls(
            backend=backend,
            data_dir=os.getenv("DATA_DIR", "/var/lib/fhirstore"),
            sqlite_file=os.getenv("SQLITE_FILE", "fhir.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class RoutingConfig:
    """Collection routing configuration.

    Attributes:
        default_collection: Collection for resource types without a dedicated one
        dedicated_types: Resource types stored in a collection named after the type
        table_file: Optional YAML routing table (overrides dedicated_types)
        versions_collection: Collection holding history entries
        tombstones_collection: Collection holding deletion markers
        collection_group: Default group prefixed to every collection name
    """

    default_collection: str = "General"
    dedicated_types: tuple[str, ...] = (
        "Patient",
        "Observation",
        "Encounter",
        "Condition",
        "DiagnosticReport",
        "MedicationRequest",
        "DocumentReference",
    )
    table_file: str | None = None
    versions_collection: str = "Versions"
    tombstones_collection: str = "Tombstones"
    collection_group: str = "Resources"

    @classmethod
    def from_env(cls) -> RoutingConfig:
        """Load configuration from environment variables."""
        defaults = cls()
        dedicated = os.getenv("ROUTING_DEDICATED_TYPES")
        return cls(
            default_collection=os.getenv("ROUTING_DEFAULT_COLLECTION", "General"),
            dedicated_types=_split_list(dedicated) if dedicated is not None else defaults.dedicated_types,
            table_file=os.getenv("ROUTING_TABLE_FILE"),
            versions_collection=os.getenv("VERSIONS_COLLECTION", "Versions"),
            tombstones_collection=os.getenv("TOMBSTONES_COLLECTION", "Tombstones"),
            collection_group=os.getenv("COLLECTION_GROUP", "Resources"),
        )


@dataclass(frozen=True)
class TransactionConfig:
    """Write transaction configuration.

    Attributes:
        timeout_seconds: Upper bound on one standalone write transaction,
            from admission to commit
    """

    timeout_seconds: float = 15.0

    @classmethod
    def from_env(cls) -> TransactionConfig:
        """Load configuration from environment variables."""
        return cls(
            timeout_seconds=float(os.getenv("TXN_TIMEOUT_SECONDS", "15")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete configuration.

    Attributes:
        storage: Document store configuration
        routing: Collection routing configuration
        transaction: Write transaction configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    transaction: TransactionConfig = field(default_factory=TransactionConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            routing=RoutingConfig.from_env(),
            transaction=TransactionConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.transaction.timeout_seconds <= 0:
            raise ValueError("TXN_TIMEOUT_SECONDS must be positive")

        if not self.routing.default_collection:
            raise ValueError("ROUTING_DEFAULT_COLLECTION must not be empty")

        reserved = {self.routing.versions_collection, self.routing.tombstones_collection}
        if len(reserved) != 2:
            raise ValueError("VERSIONS_COLLECTION and TOMBSTONES_COLLECTION must differ")
        if self.routing.default_collection in reserved:
            raise ValueError("ROUTING_DEFAULT_COLLECTION clashes with a reserved collection")

        if self.routing.table_file and not os.path.exists(self.routing.table_file):
            raise ValueError(f"ROUTING_TABLE_FILE not found: {self.routing.table_file}")

        if self.storage.backend == StoreBackend.SQLITE and not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on startup."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "store_backend": self.storage.backend.value,
                "db_path": self.storage.db_path
                if self.storage.backend == StoreBackend.SQLITE
                else None,
                "default_collection": self.routing.default_collection,
                "collection_group": self.routing.collection_group,
                "routing_table_file": self.routing.table_file,
                "txn_timeout_seconds": self.transaction.timeout_seconds,
                "log_level": self.observability.log_level,
            },
        )
