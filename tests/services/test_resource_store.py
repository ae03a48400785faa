"""Tests for the in-memory resource store and reference indexing."""

from datetime import timedelta
from typing import Any

import pytest

from fhirvault.exceptions import ResourceConflictError, ResourceNotFoundError
from fhirvault.models.resource import StoredResource
from fhirvault.services.resource_store import InMemoryResourceStore, index_references
from tests.conftest import TEST_NOW


def record(
    resource_type: str = "Patient", resource_id: str = "p1", **kwargs: Any
) -> StoredResource:
    return StoredResource(resource_type, resource_id, "{}", **kwargs)


class TestIndexReferences:
    def test_patient_indexes_itself(self) -> None:
        index = index_references(
            {
                "resourceType": "Patient",
                "id": "p1",
                "managingOrganization": {"reference": "Organization/o1"},
                "generalPractitioner": [{"reference": "Practitioner/pr1"}],
            }
        )
        assert index == {
            "patient_reference": "Patient/p1",
            "organization_reference": "Organization/o1",
            "practitioner_reference": "Practitioner/pr1",
        }

    def test_clinical_resource(self) -> None:
        index = index_references(
            {
                "resourceType": "Procedure",
                "subject": {"reference": "Patient/p1"},
                "performer": [{"actor": {"reference": "Practitioner/pr2"}}],
            }
        )
        assert index["patient_reference"] == "Patient/p1"
        assert index["practitioner_reference"] == "Practitioner/pr2"
        assert index["organization_reference"] is None

    def test_allergy_uses_patient_field(self) -> None:
        index = index_references(
            {"resourceType": "AllergyIntolerance", "patient": {"reference": "Patient/p3"}}
        )
        assert index["patient_reference"] == "Patient/p3"

    def test_unknown_type(self) -> None:
        assert index_references({"resourceType": "Basic"}) == {
            "patient_reference": None,
            "organization_reference": None,
            "practitioner_reference": None,
        }


class TestInMemoryResourceStore:
    @pytest.mark.anyio
    async def test_add_and_get(self, resource_store: InMemoryResourceStore) -> None:
        await resource_store.add(record())

        stored = await resource_store.get_by_identity("Patient", "p1")

        assert stored is not None
        assert stored.version_id == 1
        assert await resource_store.exists("Patient", "p1")
        assert not await resource_store.exists("Patient", "p2")

    @pytest.mark.anyio
    async def test_returned_records_are_copies(
        self, resource_store: InMemoryResourceStore
    ) -> None:
        await resource_store.add(record())
        stored = await resource_store.get_by_identity("Patient", "p1")
        assert stored is not None

        stored.resource_json = '{"changed":true}'

        again = await resource_store.get_by_identity("Patient", "p1")
        assert again is not None
        assert again.resource_json == "{}"

    @pytest.mark.anyio
    async def test_add_live_identity_conflicts(
        self, resource_store: InMemoryResourceStore
    ) -> None:
        await resource_store.add(record())
        with pytest.raises(ResourceConflictError):
            await resource_store.add(record())

    @pytest.mark.anyio
    async def test_add_over_deleted_must_advance_version(
        self, resource_store: InMemoryResourceStore
    ) -> None:
        stored = await resource_store.add(record())
        stored.mark_deleted("tester")
        await resource_store.update(stored)

        with pytest.raises(ResourceConflictError):
            await resource_store.add(record())
        await resource_store.add(record(version_id=2))

    @pytest.mark.anyio
    async def test_update_missing_identity(
        self, resource_store: InMemoryResourceStore
    ) -> None:
        with pytest.raises(ResourceNotFoundError):
            await resource_store.update(record())

    @pytest.mark.anyio
    async def test_history_and_versions(
        self, resource_store: InMemoryResourceStore
    ) -> None:
        stored = await resource_store.add(record())
        stored.mark_updated('{"v":2}', "tester")
        await resource_store.update(stored)
        stored.mark_deleted("tester")
        await resource_store.update(stored)

        history = await resource_store.get_history("Patient", "p1")

        assert [r.version_id for r in history] == [2, 1]
        assert history[0].is_deleted
        first = await resource_store.get_by_version("Patient", "p1", 1)
        assert first is not None and first.resource_json == "{}"
        assert await resource_store.get_by_version("Patient", "p1", 3) is None
        assert await resource_store.get_by_identity("Patient", "p1") is None

    @pytest.mark.anyio
    async def test_search_filters_and_paging(
        self, resource_store: InMemoryResourceStore
    ) -> None:
        for i in range(5):
            await resource_store.add(
                record(
                    "Observation",
                    f"o{i}",
                    patient_reference="Patient/p1" if i < 3 else "Patient/p2",
                    last_modified_at=TEST_NOW + timedelta(minutes=i),
                )
            )

        items, total = await resource_store.search(
            "Observation", {"patient": "Patient/p1"}, page=1, page_size=2
        )
        assert total == 3
        assert [r.id for r in items] == ["o2", "o1"]

        items, total = await resource_store.search(
            "Observation", {"patient": "Patient/p1"}, page=2, page_size=2
        )
        assert [r.id for r in items] == ["o0"]

        items, _ = await resource_store.get_by_patient_reference("Patient/p2")
        assert sorted(r.id for r in items) == ["o3", "o4"]

    @pytest.mark.anyio
    async def test_search_excludes_deleted_unless_asked(
        self, resource_store: InMemoryResourceStore
    ) -> None:
        await resource_store.add(record(resource_id="p1"))
        gone = await resource_store.add(record(resource_id="p2"))
        gone.mark_deleted("tester")
        await resource_store.update(gone)

        live, _ = await resource_store.search("Patient")
        everything, _ = await resource_store.search("Patient", include_deleted=True)
        deleted, _ = await resource_store.search("Patient", {"status": "deleted"})

        assert [r.id for r in live] == ["p1"]
        assert sorted(r.id for r in everything) == ["p1", "p2"]
        assert [r.id for r in deleted] == ["p2"]

    @pytest.mark.anyio
    async def test_count_by_type(self, resource_store: InMemoryResourceStore) -> None:
        await resource_store.add(record("Patient", "p1"))
        await resource_store.add(record("Observation", "o1"))
        gone = await resource_store.add(record("Observation", "o2"))
        gone.mark_deleted("tester")
        await resource_store.update(gone)

        assert await resource_store.count_by_type() == 2
        assert await resource_store.count_by_type("Observation") == 1
