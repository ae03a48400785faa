"""Tests for the authorization gate."""

from unittest.mock import AsyncMock

import pytest

from fhirvault.commands import (
    CreateResourceCommand,
    ExportBundleQuery,
    GetResourceQuery,
    SearchResourcesQuery,
)
from fhirvault.core.auth import CallerContext, Permissions
from fhirvault.core.gate import (
    AuthorizationGate,
    CapabilityRequirement,
    patient_id_from_reference,
    resolve_patient_id,
)
from fhirvault.exceptions import ForbiddenError, UnauthenticatedError
from fhirvault.models.access import UserRole

PATIENT_REQUIREMENT = CapabilityRequirement(
    Permissions.USER_ALL, requires_patient_access=True, patient_id_field="patient_id"
)


class Unprotected:
    """A command without declared capabilities."""


@pytest.fixture
def evaluator() -> AsyncMock:
    mock = AsyncMock()
    mock.can_access.return_value = True
    return mock


@pytest.fixture
def user() -> CallerContext:
    return CallerContext(
        id="provider-1", role=UserRole.HEALTHCARE_PROVIDER, scopes=[Permissions.USER_ALL]
    )


class TestResolvePatientId:
    def test_named_field(self) -> None:
        command = GetResourceQuery("Observation", "o1", patient_id="p1")
        assert resolve_patient_id(command, PATIENT_REQUIREMENT) == "p1"

    def test_named_field_unset(self) -> None:
        command = GetResourceQuery("Observation", "o1")
        assert resolve_patient_id(command, PATIENT_REQUIREMENT) is None

    @pytest.mark.parametrize(
        ("parameters", "expected"),
        [
            ({"patient": "p1"}, "p1"),
            ({"patient": "Patient/p1"}, "p1"),
            ({"subject": "Patient/p2"}, "p2"),
            ({"patient": "Patient/p1/_history/2"}, "p1"),
            ({"subject": "Patient/p1/_history/2"}, "p1"),
            ({"subject": "Patient/"}, None),
            ({"patient": "p1", "subject": "Patient/p2"}, "p1"),
            ({"subject": "Group/g1"}, None),
            ({"status": "final"}, None),
            ({}, None),
        ],
    )
    def test_search_parameters(
        self, parameters: dict[str, str], expected: str | None
    ) -> None:
        query = SearchResourcesQuery("Observation", search_parameters=parameters)
        requirement = SearchResourcesQuery.capabilities[0]
        assert resolve_patient_id(query, requirement) == expected


@pytest.mark.parametrize(
    ("reference", "expected"),
    [
        ("Patient/p1", "p1"),
        ("Patient/p1/_history/2", "p1"),
        ("Patient/", None),
        ("Patient", None),
        ("Group/g1", None),
        ("p1", None),
    ],
)
def test_patient_id_from_reference(reference: str, expected: str | None) -> None:
    assert patient_id_from_reference(reference) == expected


class TestAuthorize:
    @pytest.mark.anyio
    async def test_no_capabilities_needs_no_caller(self, evaluator: AsyncMock) -> None:
        await AuthorizationGate(evaluator).authorize(None, Unprotected())
        evaluator.can_access.assert_not_called()

    @pytest.mark.anyio
    async def test_missing_caller_is_unauthenticated(self, evaluator: AsyncMock) -> None:
        with pytest.raises(UnauthenticatedError):
            await AuthorizationGate(evaluator).authorize(None, ExportBundleQuery())

    @pytest.mark.anyio
    async def test_caller_without_id_is_unauthenticated_before_scopes(
        self, evaluator: AsyncMock
    ) -> None:
        anonymous = CallerContext(scopes=[])
        with pytest.raises(UnauthenticatedError):
            await AuthorizationGate(evaluator).authorize(anonymous, ExportBundleQuery())

    @pytest.mark.anyio
    async def test_missing_scope_is_forbidden(
        self, evaluator: AsyncMock, user: CallerContext
    ) -> None:
        with pytest.raises(ForbiddenError, match="system/\\*"):
            await AuthorizationGate(evaluator).authorize(user, ExportBundleQuery())

    @pytest.mark.anyio
    async def test_scope_without_patient_skips_evaluator(
        self, evaluator: AsyncMock, user: CallerContext
    ) -> None:
        await AuthorizationGate(evaluator).authorize(
            user, SearchResourcesQuery("Observation")
        )
        evaluator.can_access.assert_not_called()

    @pytest.mark.anyio
    async def test_patient_access_checked(
        self, evaluator: AsyncMock, user: CallerContext
    ) -> None:
        command = CreateResourceCommand("Observation", "{}", patient_id="p1")

        await AuthorizationGate(evaluator).authorize(user, command)

        evaluator.can_access.assert_awaited_once_with(user, "p1", Permissions.USER_ALL)

    @pytest.mark.anyio
    async def test_patient_access_denied(
        self, evaluator: AsyncMock, user: CallerContext
    ) -> None:
        evaluator.can_access.return_value = False
        query = SearchResourcesQuery("Observation", search_parameters={"patient": "p9"})

        with pytest.raises(ForbiddenError, match="p9"):
            await AuthorizationGate(evaluator).authorize(user, query)

    @pytest.mark.anyio
    async def test_scope_checked_before_patient_access(
        self, evaluator: AsyncMock
    ) -> None:
        caller = CallerContext(id="x", scopes=["patient/*"])
        command = GetResourceQuery("Observation", "o1", patient_id="p1")

        with pytest.raises(ForbiddenError):
            await AuthorizationGate(evaluator).authorize(caller, command)
        evaluator.can_access.assert_not_called()


class TestAuthenticate:
    def test_protected_command_needs_caller(self, evaluator: AsyncMock) -> None:
        with pytest.raises(UnauthenticatedError):
            AuthorizationGate(evaluator).authenticate(
                None, CreateResourceCommand("Observation", b"\xff")
            )

    def test_identified_caller_passes(
        self, evaluator: AsyncMock, user: CallerContext
    ) -> None:
        AuthorizationGate(evaluator).authenticate(user, ExportBundleQuery())

    def test_unprotected_command_needs_no_caller(self, evaluator: AsyncMock) -> None:
        AuthorizationGate(evaluator).authenticate(None, Unprotected())
