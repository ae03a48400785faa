"""Patient access grant endpoints."""

import logging

from fastapi import APIRouter, status

from fhirvault.commands import (
    AccessQuery,
    ChangeAccessCommand,
    CreateEmergencyAccessCommand,
    ExtendAccessCommand,
    GrantAccessCommand,
)
from fhirvault.core.auth import CallerContext
from fhirvault.exceptions import ForbiddenError, ResourceNotFoundError
from fhirvault.routers.deps import (
    AuthorizationGateDep,
    CallerDep,
    PatientAccessServiceDep,
    authorize,
)
from fhirvault.schemas.access_schemas import (
    AccessChangeRequest,
    AccessChangeResponse,
    AccessGrantResponse,
    AccessiblePatientsResponse,
    AccessLevelResponse,
    EmergencyAccessRequest,
    ExtendAccessRequest,
    GrantAccessRequest,
)
from fhirvault.services.patient_access_service import PatientAccessService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/access", tags=["Access"])


async def _require_grant_permission(
    access_service: PatientAccessService, caller: CallerContext, patient_id: str
) -> None:
    if not await access_service.can_grant_access(caller, patient_id):
        logger.warning(
            "User %s (%s) may not grant access to patient %s",
            caller.id,
            caller.role.value,
            patient_id,
        )
        raise ForbiddenError("Not allowed to grant access to this patient")


async def _require_pair_management(
    access_service: PatientAccessService,
    caller: CallerContext,
    patient_id: str,
    user_id: str,
) -> None:
    """Administrators, or the grantor of one of the pair's grants, may manage it."""
    grants = await access_service.grant_store.list_for_pair(user_id, patient_id)
    if not grants:
        raise ResourceNotFoundError(
            f"No access grants for user {user_id} on patient {patient_id}"
        )
    for grant in grants:
        if await access_service.can_revoke_access(caller, grant.id):
            return
    logger.warning(
        "User %s may not manage access of user %s to patient %s",
        caller.id,
        user_id,
        patient_id,
    )
    raise ForbiddenError("Not allowed to manage these access grants")


@router.post(
    "/grants",
    response_model=AccessGrantResponse,
    status_code=status.HTTP_201_CREATED,
)
async def grant_access(
    body: GrantAccessRequest,
    caller: CallerDep,
    gate: AuthorizationGateDep,
    access_service: PatientAccessServiceDep,
) -> AccessGrantResponse:
    """Grant a user access to a patient's data."""
    command = GrantAccessCommand(
        patient_id=body.patient_id,
        user_id=body.user_id,
        access_level=body.access_level,
        reason=body.reason,
        expires_at=body.expires_at,
    )
    caller = await authorize(gate, caller, command)
    await _require_grant_permission(access_service, caller, command.patient_id)

    grant = await access_service.grant_access(
        command.patient_id,
        command.user_id,
        command.access_level,
        granted_by=caller.id or "",
        reason=command.reason,
        expires_at=command.expires_at,
    )
    return AccessGrantResponse.from_grant(grant, access_service.clock())


@router.post(
    "/grants/emergency",
    response_model=AccessGrantResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_emergency_access(
    body: EmergencyAccessRequest,
    caller: CallerDep,
    gate: AuthorizationGateDep,
    access_service: PatientAccessServiceDep,
) -> AccessGrantResponse:
    """Create a justified, time-bounded emergency grant."""
    command = CreateEmergencyAccessCommand(
        patient_id=body.patient_id,
        user_id=body.user_id,
        justification=body.justification,
        expires_at=body.expires_at,
    )
    caller = await authorize(gate, caller, command)
    await _require_grant_permission(access_service, caller, command.patient_id)

    grant = await access_service.create_emergency_access(
        command.patient_id,
        command.user_id,
        granted_by=caller.id or "",
        justification=command.justification,
        expires_at=command.expires_at,
    )
    return AccessGrantResponse.from_grant(grant, access_service.clock())


@router.post("/revoke", response_model=AccessChangeResponse)
async def revoke_access(
    body: AccessChangeRequest,
    caller: CallerDep,
    gate: AuthorizationGateDep,
    access_service: PatientAccessServiceDep,
) -> AccessChangeResponse:
    """Disable every enabled grant of a user on a patient."""
    command = ChangeAccessCommand(body.patient_id, body.user_id, body.reason)
    caller = await authorize(gate, caller, command)
    await _require_pair_management(
        access_service, caller, command.patient_id, command.user_id
    )

    changed = await access_service.revoke_access(
        command.patient_id, command.user_id, caller.id or "", reason=command.reason
    )
    return AccessChangeResponse(
        patient_id=command.patient_id, user_id=command.user_id, changed=changed
    )


@router.post("/reenable", response_model=AccessChangeResponse)
async def reenable_access(
    body: AccessChangeRequest,
    caller: CallerDep,
    gate: AuthorizationGateDep,
    access_service: PatientAccessServiceDep,
) -> AccessChangeResponse:
    """Re-enable previously revoked grants of a user on a patient."""
    command = ChangeAccessCommand(body.patient_id, body.user_id, body.reason)
    caller = await authorize(gate, caller, command)
    await _require_pair_management(
        access_service, caller, command.patient_id, command.user_id
    )

    changed = await access_service.reenable_access(
        command.patient_id, command.user_id, caller.id or ""
    )
    return AccessChangeResponse(
        patient_id=command.patient_id, user_id=command.user_id, changed=changed
    )


@router.post("/extend", response_model=AccessChangeResponse)
async def extend_access(
    body: ExtendAccessRequest,
    caller: CallerDep,
    gate: AuthorizationGateDep,
    access_service: PatientAccessServiceDep,
) -> AccessChangeResponse:
    """Move the expiry of the most recent grant of a user on a patient."""
    command = ExtendAccessCommand(body.patient_id, body.user_id, body.expires_at)
    caller = await authorize(gate, caller, command)
    await _require_pair_management(
        access_service, caller, command.patient_id, command.user_id
    )

    changed = await access_service.extend_access(
        command.patient_id, command.user_id, command.expires_at, caller.id or ""
    )
    return AccessChangeResponse(
        patient_id=command.patient_id, user_id=command.user_id, changed=changed
    )


@router.get("/patients", response_model=AccessiblePatientsResponse)
async def accessible_patients(
    caller: CallerDep,
    gate: AuthorizationGateDep,
    access_service: PatientAccessServiceDep,
) -> AccessiblePatientsResponse:
    """Ids of every patient the caller can access."""
    caller = await authorize(gate, caller, AccessQuery())
    patient_ids = await access_service.get_accessible_patients(caller)
    return AccessiblePatientsResponse(patient_ids=patient_ids)


@router.get("/level/{patient_id}", response_model=AccessLevelResponse)
async def access_level(
    patient_id: str,
    caller: CallerDep,
    gate: AuthorizationGateDep,
    access_service: PatientAccessServiceDep,
) -> AccessLevelResponse:
    """The caller's own access level on a patient."""
    caller = await authorize(gate, caller, AccessQuery(patient_id))
    user_id = caller.id or ""
    level = await access_service.get_access_level(patient_id, user_id)
    return AccessLevelResponse(
        patient_id=patient_id,
        user_id=user_id,
        access_level=level.name if level is not None else None,
        is_expired=await access_service.is_access_expired(patient_id, user_id),
        has_emergency_access=await access_service.has_emergency_access(
            patient_id, user_id
        ),
    )


@router.get(
    "/grants/patient/{patient_id}", response_model=list[AccessGrantResponse]
)
async def grants_for_patient(
    patient_id: str,
    caller: CallerDep,
    gate: AuthorizationGateDep,
    access_service: PatientAccessServiceDep,
) -> list[AccessGrantResponse]:
    """All grants (active or not) on a patient."""
    caller = await authorize(gate, caller, AccessQuery(patient_id))
    if not await access_service.can_view_access_records(caller, patient_id):
        logger.warning(
            "User %s may not view access records of patient %s", caller.id, patient_id
        )
        raise ForbiddenError("Not allowed to view access records of this patient")

    now = access_service.clock()
    return [
        AccessGrantResponse.from_grant(grant, now)
        for grant in await access_service.get_grants_for_patient(patient_id)
    ]
