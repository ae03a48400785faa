"""
Authorization gate for commands and queries.

Every command class declares the capabilities it needs as a static
``capabilities`` tuple. The gate checks the caller's scopes against each
requirement and, where a requirement names a patient, asks the patient
access evaluator as well.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from fhirvault.core.auth import CallerContext
from fhirvault.core.scopes import has_scope
from fhirvault.exceptions import ForbiddenError, UnauthenticatedError

logger = logging.getLogger(__name__)

PATIENT_REFERENCE_PREFIX = "Patient/"


@dataclass(frozen=True)
class CapabilityRequirement:
    """A permission a command needs, optionally tied to a patient."""

    required_permission: str
    requires_patient_access: bool = False
    # Attribute of the command holding the patient id
    patient_id_field: str | None = None


class PatientAccessEvaluator(Protocol):
    async def can_access(
        self, caller: CallerContext, patient_id: str, required_permission: str
    ) -> bool: ...


def patient_id_from_reference(reference: str) -> str | None:
    """
    The id segment of a ``Patient/<id>`` reference.

    Trailing segments such as ``/_history/2`` are ignored. Returns None for
    references to other resource types.
    """
    parts = reference.split("/")
    if len(parts) >= 2 and parts[0] == "Patient" and parts[1]:
        return parts[1]
    return None


def resolve_patient_id(command: Any, requirement: CapabilityRequirement) -> str | None:
    """
    Find the patient a command targets.

    The named field wins when it is set. Otherwise a ``search_parameters``
    mapping is consulted for ``patient`` (a bare id or a reference), then
    ``subject`` in the ``Patient/<id>`` form.
    """
    if requirement.patient_id_field:
        value = getattr(command, requirement.patient_id_field, None)
        if value:
            return str(value)

    search_parameters = getattr(command, "search_parameters", None)
    if isinstance(search_parameters, Mapping):
        patient = search_parameters.get("patient")
        if patient:
            patient = str(patient)
            if patient.startswith(PATIENT_REFERENCE_PREFIX):
                return patient_id_from_reference(patient)
            return patient
        subject = search_parameters.get("subject")
        if subject:
            return patient_id_from_reference(str(subject))
    return None


class AuthorizationGate:
    """Checks a caller against the capabilities a command declares."""

    def __init__(self, access_evaluator: PatientAccessEvaluator):
        self.access_evaluator = access_evaluator

    def authenticate(self, caller: CallerContext | None, command: Any) -> None:
        """Raise UnauthenticatedError if a protected command has no caller."""
        if not getattr(command, "capabilities", ()):
            return
        if caller is None or not caller.id:
            logger.warning("Unauthenticated request for %s", type(command).__name__)
            raise UnauthenticatedError("Authentication required")

    async def authorize(self, caller: CallerContext | None, command: Any) -> None:
        """
        Authorize a command for a caller.

        Raises:
            UnauthenticatedError: If the command needs capabilities and there
                is no identified caller
            ForbiddenError: If a scope is missing or patient access is denied
        """
        capabilities: tuple[CapabilityRequirement, ...] = getattr(
            command, "capabilities", ()
        )
        if not capabilities:
            return

        self.authenticate(caller, command)

        command_name = type(command).__name__
        for requirement in capabilities:
            permission = requirement.required_permission
            if not has_scope(caller.scopes, permission):
                logger.warning(
                    "User %s lacks permission %s for %s",
                    caller.id,
                    permission,
                    command_name,
                )
                raise ForbiddenError(f"Missing required permission: {permission}")

            if not requirement.requires_patient_access:
                continue

            patient_id = resolve_patient_id(command, requirement)
            if patient_id is None:
                continue

            if not await self.access_evaluator.can_access(
                caller, patient_id, permission
            ):
                logger.warning(
                    "User %s denied access to patient %s for %s",
                    caller.id,
                    patient_id,
                    command_name,
                )
                raise ForbiddenError(f"Access to patient {patient_id} denied")
