"""
Integration tests for transaction and batch bundles.

Tests cover:
- All-or-nothing transaction bundles
- urn:uuid placeholder ids and reference rewriting
- Per-entry outcomes in batch bundles
- Bundle validation
"""

import pytest

from fhirdb.fhirstore.errors import FhirStoreError, InvalidRequestError, ResourceGoneError
from fhirdb.fhirstore.store import InMemoryDocumentStore, store_transaction
from fhirdb.fhirstore.write import BundleProcessor, record_tombstone
from fhirdb.fhirstore.write.bundle import rewrite_references


def transaction(*entries, kind="transaction"):
    return {"resourceType": "Bundle", "type": kind, "entry": list(entries)}


def post(resource, full_url=None):
    entry = {"resource": resource, "request": {"method": "POST", "url": resource["resourceType"]}}
    if full_url:
        entry["fullUrl"] = full_url
    return entry


def put(resource):
    return {
        "resource": resource,
        "request": {"method": "PUT", "url": f"{resource['resourceType']}/{resource['id']}"},
    }


class TestTransactionBundle:
    """Tests for transaction bundles."""

    @pytest.fixture
    def processor(self, coordinator, store):
        return BundleProcessor(coordinator, store)

    @pytest.mark.asyncio
    async def test_commits_all_entries(self, processor, coordinator, store):
        response = await processor.process(
            transaction(
                post({"resourceType": "Patient"}),
                put({"resourceType": "Observation", "id": "o1", "status": "final"}),
            )
        )

        assert response["type"] == "transaction-response"
        statuses = [entry["response"]["status"] for entry in response["entry"]]
        assert statuses == ["201 Created", "201 Created"]
        assert response["entry"][1]["response"]["location"] == "Observation/o1/_history/1"
        assert response["entry"][1]["response"]["etag"] == 'W/"1"'
        assert await coordinator.read_current(store, "Observation", "o1") is not None

    @pytest.mark.asyncio
    async def test_update_entry_reports_ok(self, processor, coordinator, store):
        await coordinator.update_or_create(
            {"resourceType": "Patient", "id": "p1"}, coordinator.standalone_context(store)
        )

        response = await processor.process(transaction(put({"resourceType": "Patient", "id": "p1"})))

        assert response["entry"][0]["response"]["status"] == "200 OK"
        assert response["entry"][0]["response"]["location"] == "Patient/p1/_history/2"

    @pytest.mark.asyncio
    async def test_failure_rolls_back_every_entry(self, processor, coordinator, store):
        """One failing entry discards the writes of all earlier entries."""
        async with store_transaction(store) as txn:
            await record_tombstone(txn, coordinator.router, "Resources", "Patient", "gone")

        with pytest.raises(ResourceGoneError):
            await processor.process(
                transaction(
                    put({"resourceType": "Observation", "id": "o1"}),
                    post({"resourceType": "Encounter"}),
                    put({"resourceType": "Patient", "id": "gone"}),
                )
            )

        assert await coordinator.read_current(store, "Observation", "o1") is None

    @pytest.mark.asyncio
    async def test_failed_commit_releases_store(self, processor, coordinator, store, fail_next_commit):
        """A bundle whose commit fails leaves nothing behind and blocks no later writer."""
        fail_next_commit(store)

        with pytest.raises(FhirStoreError):
            await processor.process(transaction(put({"resourceType": "Patient", "id": "p1"})))

        assert await coordinator.read_current(store, "Patient", "p1") is None

        coordinator.timeout_s = 1.0
        stored = await coordinator.update_or_create(
            {"resourceType": "Patient", "id": "p2"}, coordinator.standalone_context(store)
        )
        assert stored["meta"]["versionId"] == "1"

    @pytest.mark.asyncio
    async def test_placeholder_references(self, processor, coordinator, store):
        """urn:uuid references resolve to the ids assigned to POST entries."""
        response = await processor.process(
            transaction(
                post({"resourceType": "Patient"}, full_url="urn:uuid:patient-1"),
                put(
                    {
                        "resourceType": "Observation",
                        "id": "o1",
                        "subject": {"reference": "urn:uuid:patient-1"},
                        "performer": [{"reference": "urn:uuid:unknown"}],
                    }
                ),
            )
        )

        location = response["entry"][0]["response"]["location"]
        patient_id = location.split("/")[1]
        observation = await coordinator.read_current(store, "Observation", "o1")
        assert observation["subject"]["reference"] == f"Patient/{patient_id}"
        assert observation["performer"][0]["reference"] == "urn:uuid:unknown"
        assert await coordinator.read_current(store, "Patient", patient_id) is not None

    @pytest.mark.asyncio
    async def test_post_ids_are_server_assigned(self, processor, coordinator, store):
        response = await processor.process(
            transaction(post({"resourceType": "Patient", "id": "client-chosen"}))
        )

        assert not response["entry"][0]["response"]["location"].startswith("Patient/client-chosen/")
        assert await coordinator.read_current(store, "Patient", "client-chosen") is None

    @pytest.mark.asyncio
    async def test_put_takes_id_from_url(self, processor, coordinator, store):
        entry = {"resource": {"resourceType": "Patient"}, "request": {"method": "PUT", "url": "Patient/p7"}}

        await processor.process(transaction(entry))

        assert (await coordinator.read_current(store, "Patient", "p7"))["id"] == "p7"

    @pytest.mark.asyncio
    async def test_nested_writes_commit_once(self, coordinator, memory_store):
        processor = BundleProcessor(coordinator, memory_store)

        await processor.process(
            transaction(
                put({"resourceType": "Patient", "id": "p1"}),
                put({"resourceType": "Patient", "id": "p1"}),
                put({"resourceType": "Patient", "id": "p1"}),
            )
        )

        assert memory_store.commit_log == ["committed"]
        assert memory_store.keys("Resources.Versions") == ["Patient/p1/1", "Patient/p1/2"]


class TestBatchBundle:
    """Tests for batch bundles."""

    @pytest.mark.asyncio
    async def test_entries_are_independent(self, coordinator, store):
        processor = BundleProcessor(coordinator, store)
        async with store_transaction(store) as txn:
            await record_tombstone(txn, coordinator.router, "Resources", "Patient", "gone")

        response = await processor.process(
            transaction(
                put({"resourceType": "Patient", "id": "p1"}),
                put({"resourceType": "Patient", "id": "gone"}),
                post({"resourceType": "Basic"}),
                kind="batch",
            )
        )

        assert response["type"] == "batch-response"
        first, second, third = (entry["response"] for entry in response["entry"])
        assert first["status"] == "201 Created"
        assert second["status"] == "410"
        assert second["outcome"]["issue"][0]["code"] == "resource_gone"
        assert third["status"] == "201 Created"
        assert await coordinator.read_current(store, "Patient", "p1") is not None

    @pytest.mark.asyncio
    async def test_each_entry_commits_separately(self, coordinator, memory_store):
        processor = BundleProcessor(coordinator, memory_store)

        await processor.process(
            transaction(
                put({"resourceType": "Patient", "id": "a"}),
                put({"resourceType": "Patient", "id": "b"}),
                kind="batch",
            )
        )

        assert memory_store.commit_log == ["committed", "committed"]


class TestBundleValidation:
    """Tests for bundle validation and reference rewriting."""

    @pytest.fixture
    def processor(self, coordinator):
        return BundleProcessor(coordinator, InMemoryDocumentStore())

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "data",
        [
            {"resourceType": "Patient", "type": "transaction"},
            {"resourceType": "Bundle", "type": "collection"},
            transaction({"resource": {"resourceType": "Patient"}, "request": {"method": "DELETE", "url": "Patient/1"}}),
        ],
    )
    async def test_malformed_bundle(self, processor, data):
        with pytest.raises(InvalidRequestError):
            await processor.process(data)

    @pytest.mark.asyncio
    async def test_type_mismatch(self, processor):
        entry = {"resource": {"resourceType": "Patient", "id": "p1"}, "request": {"method": "PUT", "url": "Observation/p1"}}
        with pytest.raises(InvalidRequestError):
            await processor.process(transaction(entry))

    @pytest.mark.asyncio
    async def test_id_mismatch(self, processor):
        entry = {"resource": {"resourceType": "Patient", "id": "p1"}, "request": {"method": "PUT", "url": "Patient/p2"}}
        with pytest.raises(InvalidRequestError):
            await processor.process(transaction(entry))

    def test_rewrite_references_recurses(self):
        resource = {
            "contained": [{"subject": {"reference": "urn:uuid:a"}}],
            "focus": {"reference": "urn:uuid:a"},
            "note": "urn:uuid:a",
        }

        rewrite_references(resource, {"urn:uuid:a": "Patient/1"})

        assert resource["contained"][0]["subject"]["reference"] == "Patient/1"
        assert resource["focus"]["reference"] == "Patient/1"
        assert resource["note"] == "urn:uuid:a"
