"""Test configuration and fixtures."""

import json
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Generator, Protocol

import pytest
from httpx import ASGITransport, AsyncClient

from fhirvault.clients.services import get_patient_access_service
from fhirvault.clients.stores import (
    get_access_grant_store,
    get_event_dispatcher,
    get_resource_store,
)
from fhirvault.core.auth import CallerContext, Permissions, create_service_token
from fhirvault.core.gate import AuthorizationGate
from fhirvault.main import app
from fhirvault.models.access import UserRole
from fhirvault.services.access_grant_store import InMemoryAccessGrantStore
from fhirvault.services.events import EventDispatcher
from fhirvault.services.patient_access_service import PatientAccessService
from fhirvault.services.resource_service import ResourceService
from fhirvault.services.resource_store import InMemoryResourceStore

# Fixed "now" used by the access service in tests
TEST_NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

ADMIN_ID = "admin-1"
PROVIDER_ID = "provider-1"
NURSE_ID = "nurse-1"
PATIENT_ID = "patient-1"
OTHER_PATIENT_ID = "patient-2"


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Configure pytest-anyio to use asyncio."""
    return "asyncio"


@pytest.fixture
def resource_store() -> InMemoryResourceStore:
    return InMemoryResourceStore()


@pytest.fixture
def grant_store() -> InMemoryAccessGrantStore:
    return InMemoryAccessGrantStore()


@pytest.fixture
def dispatcher() -> EventDispatcher:
    return EventDispatcher()


@pytest.fixture
def access_service(
    grant_store: InMemoryAccessGrantStore,
    resource_store: InMemoryResourceStore,
) -> PatientAccessService:
    return PatientAccessService(grant_store, resource_store, clock=lambda: TEST_NOW)


@pytest.fixture
def gate(access_service: PatientAccessService) -> AuthorizationGate:
    return AuthorizationGate(access_service)


@pytest.fixture
def resource_service(
    resource_store: InMemoryResourceStore,
    gate: AuthorizationGate,
    dispatcher: EventDispatcher,
) -> ResourceService:
    return ResourceService(resource_store, gate, dispatcher)


@pytest.fixture
def admin_caller() -> CallerContext:
    return CallerContext(
        id=ADMIN_ID,
        role=UserRole.ADMINISTRATOR,
        scopes=[Permissions.SYSTEM_ALL, Permissions.USER_ALL],
    )


@pytest.fixture
def provider_caller() -> CallerContext:
    return CallerContext(
        id=PROVIDER_ID,
        role=UserRole.HEALTHCARE_PROVIDER,
        scopes=[Permissions.USER_ALL],
    )


@pytest.fixture
def nurse_caller() -> CallerContext:
    return CallerContext(id=NURSE_ID, role=UserRole.NURSE, scopes=[Permissions.USER_ALL])


@pytest.fixture
def patient_caller() -> CallerContext:
    return CallerContext(
        id=PATIENT_ID, role=UserRole.PATIENT, scopes=[Permissions.USER_ALL]
    )


def make_bundle(*entries: dict[str, Any], bundle_type: str = "batch") -> str:
    """Serialize bundle entries into Bundle JSON text."""
    return json.dumps(
        {"resourceType": "Bundle", "type": bundle_type, "entry": list(entries)}
    )


def entry(
    resource: dict[str, Any] | None = None,
    method: str | None = None,
    url: str | None = None,
) -> dict[str, Any]:
    """Build a Bundle.entry, with a request only when a method is given."""
    result: dict[str, Any] = {}
    if resource is not None:
        result["resource"] = resource
    if method:
        result["request"] = {"method": method, "url": url or ""}
    return result


class HeaderFactory(Protocol):
    """Protocol for auth header fixture."""

    def __call__(
        self, subject: str, role: UserRole, scopes: list[str]
    ) -> dict[str, str]: ...


@pytest.fixture
def auth_headers() -> HeaderFactory:
    """Build Bearer headers carrying a signed service token."""

    def _headers(subject: str, role: UserRole, scopes: list[str]) -> dict[str, str]:
        token = create_service_token(subject, role=role, scopes=scopes)
        return {"Authorization": f"Bearer {token}"}

    return _headers


class ClientFactory(Protocol):
    """Protocol for client factory fixture."""

    def __call__(self) -> AsyncClient: ...


@pytest.fixture
def client_factory(
    resource_store: InMemoryResourceStore,
    grant_store: InMemoryAccessGrantStore,
    dispatcher: EventDispatcher,
    access_service: PatientAccessService,
) -> Generator[ClientFactory, None, None]:
    """Factory for creating test clients backed by fresh in-memory stores."""

    def _create_client() -> AsyncClient:
        app.dependency_overrides[get_resource_store] = lambda: resource_store
        app.dependency_overrides[get_access_grant_store] = lambda: grant_store
        app.dependency_overrides[get_event_dispatcher] = lambda: dispatcher
        app.dependency_overrides[get_patient_access_service] = lambda: access_service

        transport = ASGITransport(app=app)
        return AsyncClient(transport=transport, base_url="http://testserver")

    yield _create_client

    app.dependency_overrides.clear()


@pytest.fixture
async def client(
    client_factory: ClientFactory,
) -> AsyncGenerator[AsyncClient, None]:
    """Async client for testing endpoints."""
    async with client_factory() as c:
        yield c
