"""
FHIR resource store - service wiring and command line entry point.

This module builds the write path from configuration:
- Document store (SQLite or in-memory)
- Collection router from the routing table
- Resource write coordinator and bundle processor

Usage:
    python -m fhirdb.fhirstore.main post patient.json
    python -m fhirdb.fhirstore.main put patient.json
    python -m fhirdb.fhirstore.main bundle transaction.json

Configuration is entirely via environment variables.
See config.py for all available settings.

Exit codes:
    0 success, 1 configuration error, 2 write rejected (4xx), 3 write failed
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import json_log_formatter

from .config import ServerConfig
from .errors import FhirStoreError
from .store import DocumentStore, create_document_store
from .write import BundleProcessor, CollectionRouter, ResourceWriteCoordinator, RoutingTable

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


class FhirStoreService:
    """Owns the store lifecycle and the write components built on it.

    Attributes:
        config: Server configuration
        store: Document store (after start())
        coordinator: Resource write coordinator
        bundles: Bundle processor (after start())

    Example:
        >>> service = FhirStoreService(config)
        >>> await service.start()
        >>> await service.coordinator.create({"resourceType": "Patient"}, service.store)
        >>> await service.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig.from_env()
        self.router = CollectionRouter(RoutingTable.from_config(self.config.routing))
        self.coordinator = ResourceWriteCoordinator(
            self.router,
            default_group=self.config.routing.collection_group,
            timeout_s=self.config.transaction.timeout_seconds,
        )
        self.store: DocumentStore | None = None
        self.bundles: BundleProcessor | None = None
        self._running = False

    async def start(self) -> None:
        """Connect the store and build the bundle processor."""
        if self._running:
            logger.warning("Service already running")
            return

        logger.info("Starting FHIR resource store")
        self.config.log_config()

        try:
            self.store = create_document_store(self.config)
            await self.store.connect()
            self.bundles = BundleProcessor(self.coordinator, self.store)
            self._running = True
            logger.info("FHIR resource store started")
        except Exception as e:
            logger.error(f"Startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Close the store."""
        if self.store is not None:
            await self.store.close()
        self._running = False
        logger.info("FHIR resource store stopped")

    async def post(self, resource: dict[str, Any]) -> dict[str, Any]:
        return await self.coordinator.create(resource, self._require_store())

    async def put(self, resource: dict[str, Any]) -> dict[str, Any]:
        context = self.coordinator.standalone_context(self._require_store())
        return await self.coordinator.update_or_create(resource, context)

    async def bundle(self, data: dict[str, Any]) -> dict[str, Any]:
        if self.bundles is None:
            raise RuntimeError("FhirStoreService not started, call start() first")
        return await self.bundles.process(data)

    def _require_store(self) -> DocumentStore:
        if self.store is None:
            raise RuntimeError("FhirStoreService not started, call start() first")
        return self.store


async def run_command(service: FhirStoreService, command: str, path: str) -> dict[str, Any]:
    """Apply one JSON file with the given command and return the result."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    await service.start()
    try:
        if command == "post":
            return await service.post(data)
        if command == "put":
            return await service.put(data)
        return await service.bundle(data)
    finally:
        await service.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fhirstore",
        description="Write FHIR resources and bundles to the resource store",
    )
    parser.add_argument("command", choices=["post", "put", "bundle"])
    parser.add_argument("file", help="JSON file holding a resource or a Bundle")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = ServerConfig.from_env()
        setup_logging(config)
        service = FhirStoreService(config)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    try:
        result = asyncio.run(run_command(service, args.command, args.file))
    except FhirStoreError as e:
        print(json.dumps({"code": e.code, "message": e.message, "details": e.details}), file=sys.stderr)
        return 2 if 400 <= e.http_status < 500 else 3

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
