"""
Bundle processing on top of the write coordinator.

A ``transaction`` bundle runs every entry inside ONE store transaction that
this module owns: entries are written through nested contexts and the
bundle commits once at the end, or rolls back entirely on the first
failure. A ``batch`` bundle runs each entry as its own standalone write and
reports per-entry outcomes.

Before writing, POST entries whose fullUrl is a ``urn:uuid:`` placeholder
get a server id assigned up front, and every ``reference`` to such a
placeholder anywhere in the bundle is rewritten to ``Type/id``. The
coordinator then sees a pre-assigned id and keeps it.

Invariants:
    - Transaction bundles are all-or-nothing
    - Nested writes never commit or roll back; only this module does
    - Entries are applied in bundle order
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import FhirStoreError, InvalidRequestError, WriteTimeoutError
from ..store.base import DocumentStore, store_transaction
from .coordinator import ResourceWriteCoordinator, as_write_error
from .context import TransactionContext
from .identity import generate_resource_id
from .meta import Resource

logger = logging.getLogger(__name__)

UUID_PREFIX = "urn:uuid:"


# --- Request models ---


class BundleEntryRequest(BaseModel):
    """The request part of a bundle entry."""

    method: Literal["POST", "PUT"] = Field(..., description="HTTP verb of the entry")
    url: str = Field(..., description="Type for POST, Type/id for PUT")


class BundleEntry(BaseModel):
    """One entry of a transaction or batch bundle."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    full_url: Optional[str] = Field(None, alias="fullUrl")
    resource: dict[str, Any]
    request: BundleEntryRequest


class Bundle(BaseModel):
    """Incoming Bundle resource."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    resource_type: Literal["Bundle"] = Field(..., alias="resourceType")
    type: Literal["transaction", "batch"]
    entry: list[BundleEntry] = Field(default_factory=list)


def parse_bundle(data: dict[str, Any]) -> Bundle:
    """Validate a bundle dict.

    Raises:
        InvalidRequestError: If the bundle is malformed
    """
    try:
        return Bundle.model_validate(data)
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid bundle: {e}", resource_type="Bundle") from e


# --- Reference resolution ---


def _check_entry(entry: BundleEntry, index: int) -> str:
    """Validate an entry against its request url; returns the resource type."""
    resource = entry.resource
    rtype = resource.get("resourceType")
    url_parts = entry.request.url.strip("/").split("/")

    if not isinstance(rtype, str) or rtype != url_parts[0]:
        raise InvalidRequestError(
            f"Entry {index}: resourceType {rtype!r} does not match url {entry.request.url!r}",
            resource_type=rtype if isinstance(rtype, str) else None,
        )

    if entry.request.method == "PUT":
        if len(url_parts) != 2 or not url_parts[1]:
            raise InvalidRequestError(
                f"Entry {index}: PUT url must be Type/id, got {entry.request.url!r}",
                resource_type=rtype,
            )
        url_id = url_parts[1]
        if resource.get("id") in (None, ""):
            resource["id"] = url_id
        elif resource["id"] != url_id:
            raise InvalidRequestError(
                f"Entry {index}: resource id {resource['id']!r} does not match url id {url_id!r}",
                resource_type=rtype,
            )
    return rtype


def assign_placeholder_ids(bundle: Bundle) -> dict[str, str]:
    """Give urn:uuid POST entries a server id; map placeholder -> Type/id."""
    aliases: dict[str, str] = {}
    for index, entry in enumerate(bundle.entry):
        rtype = _check_entry(entry, index)
        if entry.request.method == "POST":
            # POST ids are server-controlled
            entry.resource["id"] = generate_resource_id()
        full_url = entry.full_url or ""
        if full_url.startswith(UUID_PREFIX):
            aliases[full_url] = f"{rtype}/{entry.resource['id']}"
    return aliases


def rewrite_references(node: Any, aliases: dict[str, str]) -> Any:
    """Replace placeholder references in place, recursing through the resource."""
    if isinstance(node, dict):
        for key, value in node.items():
            if key == "reference" and isinstance(value, str) and value in aliases:
                node[key] = aliases[value]
            else:
                rewrite_references(value, aliases)
    elif isinstance(node, list):
        for item in node:
            rewrite_references(item, aliases)
    return node


# --- Responses ---


def _entry_response(resource: Resource, method: str) -> dict[str, Any]:
    version = resource["meta"]["versionId"]
    created = method == "POST" or version == "1"
    return {
        "response": {
            "status": "201 Created" if created else "200 OK",
            "location": f"{resource['resourceType']}/{resource['id']}/_history/{version}",
            "etag": f'W/"{version}"',
            "lastModified": resource["meta"].get("lastUpdated"),
        }
    }


def _error_response(error: FhirStoreError) -> dict[str, Any]:
    return {
        "response": {
            "status": str(error.http_status),
            "outcome": {
                "resourceType": "OperationOutcome",
                "issue": [
                    {
                        "severity": "error",
                        "code": error.code.lower(),
                        "diagnostics": error.message,
                    }
                ],
            },
        }
    }


class BundleProcessor:
    """Applies transaction and batch bundles through the coordinator.

    Example:
        >>> processor = BundleProcessor(coordinator, store)
        >>> response = await processor.process(bundle_dict)
        >>> response["type"]
        'transaction-response'
    """

    def __init__(
        self,
        coordinator: ResourceWriteCoordinator,
        store: DocumentStore,
        group: Optional[str] = None,
    ) -> None:
        self.coordinator = coordinator
        self.store = store
        self.group = group or coordinator.default_group

    async def process(self, data: dict[str, Any]) -> dict[str, Any]:
        """Validate a bundle and dispatch on its type."""
        bundle = parse_bundle(data)
        if bundle.type == "transaction":
            return await self.process_transaction(bundle)
        return await self.process_batch(bundle)

    async def process_transaction(self, bundle: Bundle) -> dict[str, Any]:
        """Apply every entry in one transaction, all or nothing.

        Raises:
            FhirStoreError: The first entry failure; nothing was written
        """
        aliases = assign_placeholder_ids(bundle)
        for entry in bundle.entry:
            rewrite_references(entry.resource, aliases)

        timeout_s = self.coordinator.timeout_s
        try:
            entries = await asyncio.wait_for(self._apply_in_transaction(bundle), timeout=timeout_s)
        except asyncio.TimeoutError as e:
            raise WriteTimeoutError(
                f"Transaction bundle exceeded {timeout_s}s and was rolled back",
                timeout_s=timeout_s,
            ) from e
        except Exception as e:
            logger.error(
                f"Transaction bundle rolled back: {e}",
                extra={"entries": len(bundle.entry)},
            )
            error = as_write_error(e, "Bundle")
            if error is e:
                raise
            raise error from e

        logger.info("Transaction bundle committed", extra={"entries": len(entries)})
        return {"resourceType": "Bundle", "type": "transaction-response", "entry": entries}

    async def _apply_in_transaction(self, bundle: Bundle) -> list[dict[str, Any]]:
        entries = []
        async with store_transaction(self.store) as txn:
            context = TransactionContext.nested(txn, self.store, self.group)
            for entry in bundle.entry:
                if entry.request.method == "POST":
                    resource = await self.coordinator.create_nested(
                        entry.resource, txn, self.store, self.group
                    )
                else:
                    resource = await self.coordinator.update_or_create(entry.resource, context)
                entries.append(_entry_response(resource, entry.request.method))
        return entries

    async def process_batch(self, bundle: Bundle) -> dict[str, Any]:
        """Apply each entry independently; failures are reported per entry."""
        entries = []
        for index, entry in enumerate(bundle.entry):
            try:
                _check_entry(entry, index)
                if entry.request.method == "POST":
                    entry.resource.pop("id", None)
                    resource = await self.coordinator.create(entry.resource, self.store, self.group)
                else:
                    context = self.coordinator.standalone_context(self.store, self.group)
                    resource = await self.coordinator.update_or_create(entry.resource, context)
                entries.append(_entry_response(resource, entry.request.method))
            except FhirStoreError as e:
                logger.warning(
                    f"Batch entry {index} failed: {e}",
                    extra={"entry": index, "code": e.code},
                )
                entries.append(_error_response(e))
        return {"resourceType": "Bundle", "type": "batch-response", "entry": entries}
