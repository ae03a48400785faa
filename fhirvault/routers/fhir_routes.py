"""FHIR resource endpoints: bundle import/export and single-resource CRUD."""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Query, Request, status

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
from fhirvault.routers.deps import CallerDep, ResourceServiceDep
from fhirvault.schemas.fhir_schemas import (
    DeleteResponse,
    HistoryResponse,
    PagedResponse,
    ResourceResponse,
    SearchResponse,
)
from fhirvault.schemas.import_schemas import ImportRequest, ImportResult, ImportStrategy
from fhirvault.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/fhir", tags=["FHIR"])


@router.post("/$import-bundle", response_model=ImportResult)
async def import_bundle(
    request: Request,
    caller: CallerDep,
    service: ResourceServiceDep,
    validate_resources: bool = True,
    skip_existing: bool = False,
    update_existing: bool = True,
    strategy: ImportStrategy = ImportStrategy.CREATE_OR_UPDATE,
) -> ImportResult:
    """
    Import a FHIR Bundle.

    The request body is the raw Bundle JSON. Entries are ordered so that
    referenced resources are written first, references are checked against
    the bundle, and each entry is created, updated, skipped, deleted or
    failed according to the flags. Requires the ``system/*`` scope.

    A Bundle that cannot be parsed is reported as a single fatal error in the
    result; nothing is imported.
    """
    import_request = ImportRequest(
        bundle=await request.body(),
        validate_resources=validate_resources,
        skip_existing=skip_existing,
        update_existing=update_existing,
        strategy=strategy,
    )
    return await service.import_bundle(caller, ImportBundleCommand(import_request))


@router.get("/$export-bundle")
async def export_bundle(
    caller: CallerDep,
    service: ResourceServiceDep,
    resource_type: Annotated[str | None, Query(alias="_type")] = None,
    include_deleted: bool = False,
    page: Annotated[int, Query(ge=1)] = 1,
    count: Annotated[int | None, Query(alias="_count", ge=1)] = None,
) -> dict[str, Any]:
    """Export resources as a collection Bundle. Requires ``system/*``."""
    query = ExportBundleQuery(
        resource_type=resource_type,
        include_deleted=include_deleted,
        page=page,
        page_size=count or settings.max_page_size,
    )
    return await service.export_bundle(caller, query)


@router.get("/{resource_type}", response_model=SearchResponse)
async def search_resources(
    resource_type: str,
    caller: CallerDep,
    service: ResourceServiceDep,
    patient: str | None = None,
    subject: str | None = None,
    organization: str | None = None,
    practitioner: str | None = None,
    resource_status: Annotated[str | None, Query(alias="status")] = None,
    resource_id: Annotated[str | None, Query(alias="_id")] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    count: Annotated[int | None, Query(alias="_count", ge=1)] = None,
) -> SearchResponse:
    """Search resources of a type by patient, organization, practitioner or status."""
    parameters = {
        "patient": patient,
        "subject": subject,
        "organization": organization,
        "practitioner": practitioner,
        "status": resource_status,
        "_id": resource_id,
    }
    page_size = count or settings.default_page_size
    query = SearchResourcesQuery(
        resource_type=resource_type,
        search_parameters={k: v for k, v in parameters.items() if v},
        page=page,
        page_size=page_size,
    )
    records, total = await service.search(caller, query)
    return SearchResponse(
        resources=[ResourceResponse.from_record(r) for r in records],
        **PagedResponse.paging(total, page, min(page_size, settings.max_page_size)),
    )


@router.post(
    "/{resource_type}",
    response_model=ResourceResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_resource(
    resource_type: str,
    request: Request,
    caller: CallerDep,
    service: ResourceServiceDep,
) -> ResourceResponse:
    """Create a resource. An id is generated when the body has none."""
    command = CreateResourceCommand(
        resource_type=resource_type, resource_json=await request.body()
    )
    record = await service.create(caller, command)
    return ResourceResponse.from_record(record)


@router.get("/{resource_type}/{resource_id}", response_model=ResourceResponse)
async def read_resource(
    resource_type: str,
    resource_id: str,
    caller: CallerDep,
    service: ResourceServiceDep,
) -> ResourceResponse:
    record = await service.get(caller, GetResourceQuery(resource_type, resource_id))
    return ResourceResponse.from_record(record)


@router.put("/{resource_type}/{resource_id}", response_model=ResourceResponse)
async def update_resource(
    resource_type: str,
    resource_id: str,
    request: Request,
    caller: CallerDep,
    service: ResourceServiceDep,
) -> ResourceResponse:
    """Replace an existing resource; its version is bumped by one."""
    command = UpdateResourceCommand(
        resource_type=resource_type,
        resource_id=resource_id,
        resource_json=await request.body(),
    )
    record = await service.update(caller, command)
    return ResourceResponse.from_record(record)


@router.delete("/{resource_type}/{resource_id}", response_model=DeleteResponse)
async def delete_resource(
    resource_type: str,
    resource_id: str,
    caller: CallerDep,
    service: ResourceServiceDep,
    reason: str | None = None,
) -> DeleteResponse:
    """Soft delete a resource. Deleting an absent resource is not an error."""
    command = DeleteResourceCommand(resource_type, resource_id, reason=reason)
    record = await service.delete(caller, command)
    return DeleteResponse(
        resource_type=resource_type,
        id=resource_id,
        composite_key=f"{resource_type}/{resource_id}",
        deleted=record is not None,
        deleted_at=record.deleted_at if record else None,
        deleted_by=record.deleted_by if record else None,
    )


@router.get(
    "/{resource_type}/{resource_id}/_history", response_model=HistoryResponse
)
async def resource_history(
    resource_type: str,
    resource_id: str,
    caller: CallerDep,
    service: ResourceServiceDep,
    page: Annotated[int, Query(ge=1)] = 1,
    count: Annotated[int | None, Query(alias="_count", ge=1)] = None,
) -> HistoryResponse:
    """All versions of a resource, newest first."""
    page_size = count or settings.default_page_size
    query = GetResourceHistoryQuery(
        resource_type, resource_id, page=page, page_size=page_size
    )
    versions, total = await service.history(caller, query)
    return HistoryResponse(
        resource_type=resource_type,
        id=resource_id,
        composite_key=f"{resource_type}/{resource_id}",
        versions=[ResourceResponse.from_record(v) for v in versions],
        **PagedResponse.paging(total, page, min(page_size, settings.max_page_size)),
    )


@router.get(
    "/{resource_type}/{resource_id}/_history/{version_id}",
    response_model=ResourceResponse,
)
async def read_resource_version(
    resource_type: str,
    resource_id: str,
    version_id: int,
    caller: CallerDep,
    service: ResourceServiceDep,
) -> ResourceResponse:
    query = GetResourceQuery(resource_type, resource_id, version_id=version_id)
    record = await service.get(caller, query)
    return ResourceResponse.from_record(record)
