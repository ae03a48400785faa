"""Shared dependencies for routers."""

from typing import Annotated

from fastapi import Depends

from fhirvault.clients.services import (
    get_authorization_gate,
    get_patient_access_service,
    get_resource_service,
)
from fhirvault.clients.stores import get_resource_store
from fhirvault.core.auth import CallerContext, get_current_caller
from fhirvault.core.gate import AuthorizationGate
from fhirvault.exceptions import UnauthenticatedError
from fhirvault.services.patient_access_service import PatientAccessService
from fhirvault.services.resource_service import ResourceService
from fhirvault.services.resource_store import ResourceStore

# Typed dependency aliases for use in endpoint signatures
ResourceStoreDep = Annotated[ResourceStore, Depends(get_resource_store)]
ResourceServiceDep = Annotated[ResourceService, Depends(get_resource_service)]
PatientAccessServiceDep = Annotated[
    PatientAccessService, Depends(get_patient_access_service)
]
AuthorizationGateDep = Annotated[AuthorizationGate, Depends(get_authorization_gate)]
CallerDep = Annotated[CallerContext | None, Depends(get_current_caller)]


async def authorize(
    gate: AuthorizationGate, caller: CallerContext | None, command: object
) -> CallerContext:
    """Run the gate and hand back the caller it accepted."""
    await gate.authorize(caller, command)
    if caller is None or not caller.id:
        # Commands without capabilities still need an identified caller here
        raise UnauthenticatedError("Authentication required")
    return caller
