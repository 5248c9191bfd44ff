"""
Unit tests for identity resolution and metadata stamping.
"""

from datetime import datetime, timezone

import pytest

from fhirdb.fhirstore.errors import InvalidRequestError
from fhirdb.fhirstore.write.identity import IdentityResolver, generate_resource_id
from fhirdb.fhirstore.write.meta import MetaStamper, OperationKind, ResourceCodec


class TestIdentityResolver:
    """Tests for IdentityResolver."""

    @pytest.fixture
    def resolver(self):
        return IdentityResolver()

    def test_create_generates_id(self, resolver):
        """Resources without an id get a fresh one stamped on."""
        patient = {"resourceType": "Patient"}

        resource_id = resolver.resolve_for_create(patient)

        assert patient["id"] == resource_id
        assert len(resource_id) == 36

    def test_create_generates_distinct_ids(self, resolver):
        """Every generated id is new."""
        ids = {resolver.resolve_for_create({"resourceType": "Patient"}) for _ in range(200)}
        assert len(ids) == 200

    def test_create_keeps_preassigned_id(self, resolver):
        """An id set by bundle processing is kept unchanged."""
        patient = {"resourceType": "Patient", "id": "from-bundle"}

        assert resolver.resolve_for_create(patient) == "from-bundle"
        assert patient["id"] == "from-bundle"

    def test_create_replaces_blank_id(self):
        """A blank id counts as absent."""
        resolver = IdentityResolver(id_factory=lambda: "generated")
        patient = {"resourceType": "Patient", "id": "  "}

        assert resolver.resolve_for_create(patient) == "generated"

    def test_update_requires_id(self, resolver):
        """PUT without a client id is rejected."""
        with pytest.raises(InvalidRequestError) as exc_info:
            resolver.resolve_for_update({"resourceType": "Patient"})

        assert exc_info.value.resource_type == "Patient"
        assert exc_info.value.http_status == 400

    def test_update_rejects_blank_id(self, resolver):
        """PUT with a blank client id is rejected."""
        with pytest.raises(InvalidRequestError):
            resolver.resolve_for_update({"resourceType": "Patient", "id": ""})

    def test_update_returns_client_id(self, resolver):
        assert resolver.resolve_for_update({"resourceType": "Patient", "id": "p1"}) == "p1"

    def test_missing_resource_type(self, resolver):
        """Resources must name their type."""
        with pytest.raises(InvalidRequestError):
            resolver.resolve_for_create({"id": "x"})

    def test_generate_resource_id_is_uuid(self):
        assert generate_resource_id().count("-") == 4


class TestMetaStamper:
    """Tests for MetaStamper and ResourceCodec."""

    @pytest.fixture
    def stamper(self):
        fixed = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        return MetaStamper(clock=lambda: fixed)

    def test_stamp_create(self, stamper):
        """Create stamps version 1 as a string."""
        patient = {"resourceType": "Patient", "meta": {"versionId": "9", "source": "x"}}

        stamper.apply(patient, 1, OperationKind.CREATE)

        assert patient["meta"]["versionId"] == "1"
        assert patient["meta"]["lastUpdated"] == "2024-05-01T12:00:00.000+00:00"
        assert patient["meta"]["source"] == "x"

    def test_stamp_update(self, stamper):
        patient = {"resourceType": "Patient"}

        stamper.apply(patient, 4, OperationKind.UPDATE)

        assert patient["meta"]["versionId"] == "4"

    def test_codec_is_stable(self):
        """Equal resources encode to identical bodies."""
        codec = ResourceCodec()
        a = codec.encode({"b": 1, "a": {"y": 2, "x": 1}})
        b = codec.encode({"a": {"x": 1, "y": 2}, "b": 1})

        assert a == b
        assert codec.decode(a) == {"a": {"x": 1, "y": 2}, "b": 1}
