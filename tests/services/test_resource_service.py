"""Tests for ResourceService."""

import json
from typing import Any

import pytest

from fhirvault.commands import (
    CreateResourceCommand,
    DeleteResourceCommand,
    ExportBundleQuery,
    GetResourceHistoryQuery,
    GetResourceQuery,
    ImportBundleCommand,
    SearchResourcesQuery,
    UpdateResourceCommand,
)
from fhirvault.core.auth import CallerContext
from fhirvault.exceptions import (
    ForbiddenError,
    ResourceConflictError,
    ResourceNotFoundError,
    UnauthenticatedError,
    ValidationError,
)
from fhirvault.models.access import AccessLevel
from fhirvault.models.resource import DomainEvent, EventKind
from fhirvault.schemas.import_schemas import ImportRequest, ImportStatus
from fhirvault.services.events import EventDispatcher
from fhirvault.services.patient_access_service import PatientAccessService
from fhirvault.services.resource_service import (
    ResourceService,
    patient_id_for,
    search_filters,
)
from tests.conftest import ADMIN_ID, PATIENT_ID, PROVIDER_ID, entry, make_bundle


def observation(obs_id: str = "o1", patient_id: str = PATIENT_ID, **extra: Any) -> str:
    return json.dumps(
        {
            "resourceType": "Observation",
            "id": obs_id,
            "status": "final",
            "subject": {"reference": f"Patient/{patient_id}"},
            **extra,
        }
    )


@pytest.fixture
def events(dispatcher: EventDispatcher) -> list[DomainEvent]:
    received: list[DomainEvent] = []

    async def handler(event: DomainEvent) -> None:
        received.append(event)

    dispatcher.subscribe(handler)
    return received


@pytest.fixture
async def provider_with_grant(
    access_service: PatientAccessService, provider_caller: CallerContext
) -> CallerContext:
    await access_service.grant_access(
        PATIENT_ID, PROVIDER_ID, AccessLevel.WRITE, granted_by=ADMIN_ID
    )
    return provider_caller


class TestHelpers:
    def test_patient_id_for(self) -> None:
        assert patient_id_for("Patient", "p1", None) == "p1"
        assert patient_id_for("Observation", "o1", "Patient/p1") == "p1"
        assert patient_id_for("Observation", "o1", "Patient/p1/_history/2") == "p1"
        assert patient_id_for("Observation", "o1", "Group/g1") is None
        assert patient_id_for("Organization", "org1", None) is None

    def test_search_filters(self) -> None:
        assert search_filters(
            {"patient": "p1", "organization": "Organization/o1", "status": "final"}
        ) == {
            "patient": "Patient/p1",
            "organization": "Organization/o1",
            "status": "final",
        }
        assert search_filters({"subject": "Patient/p2"}) == {"patient": "Patient/p2"}
        assert search_filters({"code": "1234-5"}) == {}


class TestCreate:
    @pytest.mark.anyio
    async def test_create_for_accessible_patient(
        self,
        resource_service: ResourceService,
        provider_with_grant: CallerContext,
        events: list[DomainEvent],
    ) -> None:
        record = await resource_service.create(
            provider_with_grant,
            CreateResourceCommand("Observation", observation()),
        )

        assert record.version_id == 1
        assert record.created_by == PROVIDER_ID
        assert record.patient_reference == f"Patient/{PATIENT_ID}"
        assert events == [DomainEvent(EventKind.CREATED, "Observation", "o1", 1)]

    @pytest.mark.anyio
    async def test_create_without_grant_forbidden(
        self,
        resource_service: ResourceService,
        provider_caller: CallerContext,
        events: list[DomainEvent],
    ) -> None:
        with pytest.raises(ForbiddenError):
            await resource_service.create(
                provider_caller, CreateResourceCommand("Observation", observation())
            )
        assert events == []

    @pytest.mark.anyio
    async def test_create_anonymous(self, resource_service: ResourceService) -> None:
        with pytest.raises(UnauthenticatedError):
            await resource_service.create(
                None, CreateResourceCommand("Observation", observation())
            )

    @pytest.mark.anyio
    async def test_create_type_mismatch(
        self, resource_service: ResourceService, admin_caller: CallerContext
    ) -> None:
        with pytest.raises(ValidationError):
            await resource_service.create(
                admin_caller, CreateResourceCommand("Condition", observation())
            )

    @pytest.mark.anyio
    async def test_create_twice_conflicts(
        self, resource_service: ResourceService, admin_caller: CallerContext
    ) -> None:
        command = CreateResourceCommand("Observation", observation())
        await resource_service.create(admin_caller, command)

        with pytest.raises(ResourceConflictError):
            await resource_service.create(admin_caller, command)

    @pytest.mark.anyio
    async def test_create_generates_id(
        self, resource_service: ResourceService, admin_caller: CallerContext
    ) -> None:
        record = await resource_service.create(
            admin_caller,
            CreateResourceCommand("Organization", '{"resourceType": "Organization"}'),
        )
        assert record.id
        assert json.loads(record.resource_json)["id"] == record.id

    @pytest.mark.anyio
    async def test_patient_creates_own_record(
        self, resource_service: ResourceService, patient_caller: CallerContext
    ) -> None:
        body = json.dumps({"resourceType": "Patient", "id": PATIENT_ID})

        record = await resource_service.create(
            patient_caller, CreateResourceCommand("Patient", body)
        )

        assert record.patient_reference == f"Patient/{PATIENT_ID}"


class TestUpdateAndDelete:
    @pytest.mark.anyio
    async def test_update_bumps_version(
        self,
        resource_service: ResourceService,
        provider_with_grant: CallerContext,
        events: list[DomainEvent],
    ) -> None:
        await resource_service.create(
            provider_with_grant, CreateResourceCommand("Observation", observation())
        )

        record = await resource_service.update(
            provider_with_grant,
            UpdateResourceCommand(
                "Observation", "o1", observation(status="amended")
            ),
        )

        assert record.version_id == 2
        assert '"amended"' in record.resource_json
        assert events[-1] == DomainEvent(EventKind.UPDATED, "Observation", "o1", 2)

    @pytest.mark.anyio
    async def test_update_id_mismatch(
        self, resource_service: ResourceService, admin_caller: CallerContext
    ) -> None:
        with pytest.raises(ValidationError):
            await resource_service.update(
                admin_caller, UpdateResourceCommand("Observation", "o2", observation())
            )

    @pytest.mark.anyio
    async def test_update_missing(
        self, resource_service: ResourceService, admin_caller: CallerContext
    ) -> None:
        with pytest.raises(ResourceNotFoundError):
            await resource_service.update(
                admin_caller, UpdateResourceCommand("Observation", "o1", observation())
            )

    @pytest.mark.anyio
    async def test_delete_then_get(
        self,
        resource_service: ResourceService,
        admin_caller: CallerContext,
        events: list[DomainEvent],
    ) -> None:
        await resource_service.create(
            admin_caller, CreateResourceCommand("Observation", observation())
        )

        deleted = await resource_service.delete(
            admin_caller, DeleteResourceCommand("Observation", "o1", reason="entered in error")
        )

        assert deleted is not None
        assert deleted.is_deleted
        assert deleted.deleted_by == ADMIN_ID
        assert events[-1].kind == EventKind.DELETED
        with pytest.raises(ResourceNotFoundError):
            await resource_service.get(admin_caller, GetResourceQuery("Observation", "o1"))
        old = await resource_service.get(
            admin_caller, GetResourceQuery("Observation", "o1", version_id=1)
        )
        assert old.version_id == 1

    @pytest.mark.anyio
    async def test_delete_absent(
        self, resource_service: ResourceService, admin_caller: CallerContext
    ) -> None:
        assert (
            await resource_service.delete(
                admin_caller, DeleteResourceCommand("Observation", "nope")
            )
            is None
        )

    @pytest.mark.anyio
    async def test_delete_checks_stored_patient(
        self,
        resource_service: ResourceService,
        admin_caller: CallerContext,
        provider_caller: CallerContext,
    ) -> None:
        await resource_service.create(
            admin_caller, CreateResourceCommand("Observation", observation())
        )

        with pytest.raises(ForbiddenError):
            await resource_service.delete(
                provider_caller, DeleteResourceCommand("Observation", "o1")
            )


class TestReads:
    @pytest.mark.anyio
    async def test_get_requires_patient_access(
        self,
        resource_service: ResourceService,
        admin_caller: CallerContext,
        provider_caller: CallerContext,
    ) -> None:
        await resource_service.create(
            admin_caller, CreateResourceCommand("Observation", observation())
        )

        with pytest.raises(ForbiddenError):
            await resource_service.get(
                provider_caller, GetResourceQuery("Observation", "o1")
            )

    @pytest.mark.anyio
    async def test_history_newest_first(
        self, resource_service: ResourceService, admin_caller: CallerContext
    ) -> None:
        await resource_service.create(
            admin_caller, CreateResourceCommand("Observation", observation())
        )
        for status in ("amended", "corrected"):
            await resource_service.update(
                admin_caller,
                UpdateResourceCommand("Observation", "o1", observation(status=status)),
            )

        versions, total = await resource_service.history(
            admin_caller, GetResourceHistoryQuery("Observation", "o1", page_size=2)
        )

        assert total == 3
        assert [v.version_id for v in versions] == [3, 2]

    @pytest.mark.anyio
    async def test_history_missing(
        self, resource_service: ResourceService, admin_caller: CallerContext
    ) -> None:
        with pytest.raises(ResourceNotFoundError):
            await resource_service.history(
                admin_caller, GetResourceHistoryQuery("Observation", "o1")
            )

    @pytest.mark.anyio
    async def test_search_by_patient(
        self,
        resource_service: ResourceService,
        admin_caller: CallerContext,
        provider_with_grant: CallerContext,
    ) -> None:
        await resource_service.create(
            admin_caller, CreateResourceCommand("Observation", observation("o1"))
        )
        await resource_service.create(
            admin_caller,
            CreateResourceCommand("Observation", observation("o2", "someone-else")),
        )

        records, total = await resource_service.search(
            provider_with_grant,
            SearchResourcesQuery("Observation", search_parameters={"patient": PATIENT_ID}),
        )

        assert total == 1
        assert records[0].id == "o1"
        with pytest.raises(ForbiddenError):
            await resource_service.search(
                provider_with_grant,
                SearchResourcesQuery(
                    "Observation", search_parameters={"patient": "someone-else"}
                ),
            )


class TestBundles:
    @pytest.mark.anyio
    async def test_import_requires_system_scope(
        self, resource_service: ResourceService, provider_caller: CallerContext
    ) -> None:
        command = ImportBundleCommand(ImportRequest(bundle=make_bundle()))
        with pytest.raises(ForbiddenError):
            await resource_service.import_bundle(provider_caller, command)

    @pytest.mark.anyio
    async def test_import_records_caller(
        self, resource_service: ResourceService, admin_caller: CallerContext
    ) -> None:
        bundle = make_bundle(entry({"resourceType": "Patient", "id": "p1"}))

        result = await resource_service.import_bundle(
            admin_caller, ImportBundleCommand(ImportRequest(bundle=bundle))
        )

        assert result.imported_resources[0].status == ImportStatus.CREATED
        record = await resource_service.get(
            admin_caller, GetResourceQuery("Patient", "p1")
        )
        assert record.created_by == ADMIN_ID

    @pytest.mark.anyio
    async def test_export_bundle(
        self, resource_service: ResourceService, admin_caller: CallerContext
    ) -> None:
        await resource_service.create(
            admin_caller, CreateResourceCommand("Observation", observation())
        )
        await resource_service.create(
            admin_caller,
            CreateResourceCommand("Patient", json.dumps({"resourceType": "Patient", "id": "p1"})),
        )

        bundle = await resource_service.export_bundle(
            admin_caller, ExportBundleQuery(resource_type="Observation")
        )

        assert bundle["resourceType"] == "Bundle"
        assert bundle["type"] == "collection"
        assert bundle["total"] == 1
        (item,) = bundle["entry"]
        assert item["fullUrl"] == "Observation/o1"
        assert item["resource"]["meta"]["versionId"] == "1"

    @pytest.mark.anyio
    async def test_export_requires_system_scope(
        self, resource_service: ResourceService, provider_caller: CallerContext
    ) -> None:
        with pytest.raises(ForbiddenError):
            await resource_service.export_bundle(provider_caller, ExportBundleQuery())
