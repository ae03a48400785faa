"""Dependency providers for the access and resource services."""

from typing import Annotated

from fastapi import Depends

from fhirvault.clients.stores import (
    get_access_grant_store,
    get_event_dispatcher,
    get_resource_store,
)
from fhirvault.core.gate import AuthorizationGate
from fhirvault.services.access_grant_store import AccessGrantStore
from fhirvault.services.events import EventDispatcher
from fhirvault.services.patient_access_service import PatientAccessService
from fhirvault.services.resource_service import ResourceService
from fhirvault.services.resource_store import ResourceStore


def get_patient_access_service(
    grant_store: Annotated[AccessGrantStore, Depends(get_access_grant_store)],
    resource_store: Annotated[ResourceStore, Depends(get_resource_store)],
) -> PatientAccessService:
    return PatientAccessService(grant_store, resource_store)


def get_authorization_gate(
    access_service: Annotated[
        PatientAccessService, Depends(get_patient_access_service)
    ],
) -> AuthorizationGate:
    return AuthorizationGate(access_service)


def get_resource_service(
    store: Annotated[ResourceStore, Depends(get_resource_store)],
    gate: Annotated[AuthorizationGate, Depends(get_authorization_gate)],
    dispatcher: Annotated[EventDispatcher, Depends(get_event_dispatcher)],
) -> ResourceService:
    return ResourceService(store, gate, dispatcher)
