"""
Integration tests for concurrent writers to one resource.

N concurrent PUTs to the same (resourceType, id), each in its own
standalone transaction, must commit versions 1..N exactly once each.
"""

import asyncio
import json

import pytest

from fhirdb.fhirstore.store import store_transaction
from fhirdb.fhirstore.write import TransactionContext


async def history_versions(store, coordinator, resource_type, resource_id, upto):
    found = []
    for version in range(1, upto + 1):
        if await coordinator.read_version(store, resource_type, resource_id, version):
            found.append(version)
    return found


class TestConcurrentWriters:
    """Concurrent update_or_create on one key."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("writers", [2, 10, 25])
    async def test_versions_are_contiguous(self, coordinator, store, writers):
        """N writers from nothing commit versions 1..N and N-1 history entries."""

        async def put(n):
            resource = {"resourceType": "Patient", "id": "shared", "extension": [{"valueInteger": n}]}
            context = coordinator.standalone_context(store)
            result = await coordinator.update_or_create(resource, context)
            return int(result["meta"]["versionId"])

        observed = await asyncio.gather(*(put(n) for n in range(writers)))

        assert sorted(observed) == list(range(1, writers + 1))

        current = await coordinator.read_current(store, "Patient", "shared")
        assert current["meta"]["versionId"] == str(writers)
        assert await history_versions(store, coordinator, "Patient", "shared", writers) == list(
            range(1, writers)
        )

    @pytest.mark.asyncio
    async def test_history_chain_is_consistent(self, coordinator, store):
        """Each history entry holds the document its successor replaced."""
        writers = 8

        async def put(n):
            context = coordinator.standalone_context(store)
            await coordinator.update_or_create({"resourceType": "Basic", "id": "b1", "code": {"text": str(n)}}, context)

        await asyncio.gather(*(put(n) for n in range(writers)))

        payloads = set()
        for version in range(1, writers):
            archived = await coordinator.read_version(store, "Basic", "b1", version)
            assert archived["meta"]["versionId"] == str(version)
            payloads.add(archived["code"]["text"])
        current = await coordinator.read_current(store, "Basic", "b1")
        payloads.add(current["code"]["text"])

        # Every writer's payload survives exactly once across history + current
        assert payloads == {str(n) for n in range(writers)}

    @pytest.mark.asyncio
    async def test_concurrent_bundle_and_standalone(self, coordinator, memory_store):
        """A nested writer and standalone writers still produce a gapless sequence."""

        async def standalone(n):
            context = coordinator.standalone_context(memory_store)
            await coordinator.update_or_create({"resourceType": "Patient", "id": "mix", "n": n}, context)

        async def nested():
            async with store_transaction(memory_store) as txn:
                context = TransactionContext.nested(txn, memory_store, "Resources")
                await coordinator.update_or_create({"resourceType": "Patient", "id": "mix", "n": "a"}, context)
                await coordinator.update_or_create({"resourceType": "Patient", "id": "mix", "n": "b"}, context)

        await asyncio.gather(standalone(0), nested(), standalone(1), standalone(2))

        versions = sorted(
            json.loads(memory_store.snapshot()[("Resources.Versions", key)][0])["meta"]["versionId"]
            for key in memory_store.keys("Resources.Versions")
        )
        assert versions == ["1", "2", "3", "4"]
        current = await coordinator.read_current(memory_store, "Patient", "mix")
        assert current["meta"]["versionId"] == "5"
