"""
Patient access evaluation and grant management.

can_access() decides whether a caller may act on a patient's data. Rules are
evaluated in order and the first match wins:

1. System administrators may access every patient
2. Any active grant for (caller, patient) allows access, whatever its level
3. Patients may access their own data
4. An active emergency grant allows access
5. Otherwise access is denied

The remaining methods create and maintain the grants those rules read.
Grants are never deleted: revoking disables them, re-enabling flips them back.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from fhirvault.core.auth import CallerContext, Permissions
from fhirvault.exceptions import ValidationError
from fhirvault.models.access import AccessGrant, AccessLevel, UserRole
from fhirvault.models.resource import utcnow
from fhirvault.services.access_grant_store import AccessGrantStore
from fhirvault.services.resource_store import ResourceStore
from fhirvault.settings import settings

logger = logging.getLogger(__name__)

# Roles allowed to hand out grants
GRANTING_ROLES = {
    UserRole.ADMINISTRATOR,
    UserRole.HEALTHCARE_PROVIDER,
    UserRole.NURSE,
}

EMERGENCY_ACCESS_REASON = "Emergency access"


class PatientAccessService:
    """Evaluates and manages patient access grants."""

    def __init__(
        self,
        grant_store: AccessGrantStore,
        resource_store: ResourceStore,
        clock: Callable[[], datetime] = utcnow,
        emergency_access_max_hours: int | None = None,
    ):
        self.grant_store = grant_store
        self.resource_store = resource_store
        self.clock = clock
        if emergency_access_max_hours is None:
            emergency_access_max_hours = settings.emergency_access_max_hours
        self.emergency_access_max_hours = emergency_access_max_hours

    async def can_access(
        self,
        caller: CallerContext,
        patient_id: str,
        required_permission: str,
    ) -> bool:
        """
        Check whether a caller may access a patient's data.

        Args:
            caller: The authenticated caller
            patient_id: Target patient id
            required_permission: Permission the operation needs, for logging

        Returns:
            True if access is allowed. Storage failures deny.
        """
        try:
            if caller.is_system_administrator:
                logger.debug(
                    "System administrator %s granted access to patient %s",
                    caller.id,
                    patient_id,
                )
                return True

            now = self.clock()
            grants = await self.grant_store.list_for_pair(caller.id or "", patient_id)
            active = [g for g in grants if g.is_active(now)]

            if active:
                logger.debug(
                    "User %s has access to patient %s with level %s",
                    caller.id,
                    patient_id,
                    max(g.access_level for g in active).name,
                )
                return True

            if caller.is_self_patient(patient_id):
                logger.debug("Patient %s accessing their own data", patient_id)
                return True

            if any(g.is_emergency_access for g in active):
                logger.debug(
                    "User %s has emergency access to patient %s",
                    caller.id,
                    patient_id,
                )
                return True

            logger.debug(
                "User %s denied %s access to patient %s",
                caller.id,
                required_permission,
                patient_id,
            )
            return False
        except Exception:
            logger.exception(
                "Error checking patient access for user %s and patient %s",
                caller.id,
                patient_id,
            )
            return False

    async def get_accessible_patients(self, caller: CallerContext) -> list[str]:
        """Ids of every patient the caller can access, without duplicates."""
        if caller.is_system_administrator:
            patient_ids: list[str] = []
            page = 1
            while True:
                records, total = await self.resource_store.search(
                    "Patient",
                    page=page,
                    page_size=settings.max_page_size,
                )
                patient_ids.extend(r.id for r in records if r.is_active)
                if not records or page * settings.max_page_size >= total:
                    break
                page += 1
            return list(dict.fromkeys(patient_ids))

        now = self.clock()
        grants = await self.grant_store.list_for_user(caller.id or "")
        patient_ids = [g.patient_id for g in grants if g.is_active(now)]
        if caller.is_patient and caller.id:
            patient_ids.append(caller.id)
        return list(dict.fromkeys(patient_ids))

    async def grant_access(
        self,
        patient_id: str,
        user_id: str,
        access_level: AccessLevel,
        granted_by: str,
        reason: str | None = None,
        expires_at: datetime | None = None,
        is_emergency_access: bool = False,
        emergency_justification: str | None = None,
    ) -> AccessGrant:
        """
        Grant a user access to a patient.

        Raises:
            ValidationError: If granted_by is missing, or an emergency grant
                has no justification
        """
        try:
            grant = AccessGrant(
                patient_id=patient_id,
                user_id=user_id,
                access_level=access_level,
                granted_by=granted_by,
                granted_at=self.clock(),
                expires_at=expires_at,
                reason=reason,
                is_emergency_access=is_emergency_access,
                emergency_justification=emergency_justification,
            )
        except ValueError as e:
            raise ValidationError(str(e)) from e

        grant = await self.grant_store.add(grant)
        logger.info(
            "Granted patient access: user %s to patient %s with level %s by %s",
            user_id,
            patient_id,
            access_level.name,
            granted_by,
        )
        return grant

    async def create_emergency_access(
        self,
        patient_id: str,
        user_id: str,
        granted_by: str,
        justification: str,
        expires_at: datetime,
    ) -> AccessGrant:
        """
        Create a justified, time-bounded EMERGENCY grant.

        Raises:
            ValidationError: If the expiry is not in the future or lies beyond
                the configured emergency window
        """
        now = self.clock()
        if expires_at <= now:
            raise ValidationError("Emergency access must expire in the future")
        if expires_at - now > timedelta(hours=self.emergency_access_max_hours):
            raise ValidationError(
                f"Emergency access may last at most "
                f"{self.emergency_access_max_hours} hours"
            )

        grant = await self.grant_access(
            patient_id,
            user_id,
            AccessLevel.EMERGENCY,
            granted_by,
            reason=EMERGENCY_ACCESS_REASON,
            expires_at=expires_at,
            is_emergency_access=True,
            emergency_justification=justification,
        )
        logger.warning(
            "Emergency access to patient %s granted to user %s by %s: %s",
            patient_id,
            user_id,
            granted_by,
            justification,
        )
        return grant

    async def revoke_access(
        self,
        patient_id: str,
        user_id: str,
        revoked_by: str,
        reason: str | None = None,
    ) -> bool:
        """Disable every enabled grant for the pair. False if there was none."""
        return await self._set_enabled(
            patient_id, user_id, enabled=False, modified_by=revoked_by, reason=reason
        )

    async def reenable_access(
        self,
        patient_id: str,
        user_id: str,
        modified_by: str,
    ) -> bool:
        """Enable every disabled grant for the pair. False if there was none."""
        return await self._set_enabled(
            patient_id, user_id, enabled=True, modified_by=modified_by
        )

    async def _set_enabled(
        self,
        patient_id: str,
        user_id: str,
        enabled: bool,
        modified_by: str,
        reason: str | None = None,
    ) -> bool:
        now = self.clock()
        changed = 0
        for grant in await self.grant_store.list_for_pair(user_id, patient_id):
            if grant.is_enabled == enabled:
                continue
            grant.is_enabled = enabled
            grant.last_modified_at = now
            grant.last_modified_by = modified_by
            await self.grant_store.update(grant)
            changed += 1

        if changed:
            logger.info(
                "%s patient access: user %s to patient %s by %s%s",
                "Re-enabled" if enabled else "Revoked",
                user_id,
                patient_id,
                modified_by,
                f" ({reason})" if reason else "",
            )
        return changed > 0

    async def extend_access(
        self,
        patient_id: str,
        user_id: str,
        new_expires_at: datetime,
        modified_by: str,
    ) -> bool:
        """Move the expiry of the most recent grant for the pair."""
        if new_expires_at <= self.clock():
            raise ValidationError("New expiry must be in the future")

        grant = await self._latest_grant(patient_id, user_id)
        if grant is None:
            return False

        grant.expires_at = new_expires_at
        grant.last_modified_at = self.clock()
        grant.last_modified_by = modified_by
        await self.grant_store.update(grant)
        logger.info(
            "Extended patient access: user %s to patient %s until %s by %s",
            user_id,
            patient_id,
            new_expires_at.isoformat(),
            modified_by,
        )
        return True

    async def get_access_level(
        self, patient_id: str, user_id: str
    ) -> AccessLevel | None:
        """Highest level among the active grants, or None."""
        now = self.clock()
        levels = [
            g.access_level
            for g in await self.grant_store.list_for_pair(user_id, patient_id)
            if g.is_active(now)
        ]
        return max(levels) if levels else None

    async def is_access_expired(self, patient_id: str, user_id: str) -> bool:
        """Whether the most recent grant has expired. No grant counts as expired."""
        grant = await self._latest_grant(patient_id, user_id)
        if grant is None:
            return True
        return grant.is_expired(self.clock())

    async def has_emergency_access(self, patient_id: str, user_id: str) -> bool:
        now = self.clock()
        return any(
            g.is_emergency_access and g.is_active(now)
            for g in await self.grant_store.list_for_pair(user_id, patient_id)
        )

    async def get_grants_for_user(self, user_id: str) -> list[AccessGrant]:
        return await self.grant_store.list_for_user(user_id)

    async def get_grants_for_patient(self, patient_id: str) -> list[AccessGrant]:
        return await self.grant_store.list_for_patient(patient_id)

    async def can_grant_access(self, caller: CallerContext, patient_id: str) -> bool:
        """Administrators, providers and nurses may grant access."""
        return caller.role in GRANTING_ROLES

    async def can_revoke_access(self, caller: CallerContext, grant_id: str) -> bool:
        """Administrators, or whoever issued the grant, may revoke it."""
        if caller.is_system_administrator:
            return True
        grant = await self.grant_store.get(grant_id)
        return grant is not None and bool(caller.id) and grant.granted_by == caller.id

    async def can_view_access_records(
        self, caller: CallerContext, patient_id: str | None
    ) -> bool:
        if caller.is_system_administrator:
            return True
        if patient_id and caller.is_self_patient(patient_id):
            return True
        if patient_id and caller.role in (
            UserRole.HEALTHCARE_PROVIDER,
            UserRole.NURSE,
        ):
            return await self.can_access(caller, patient_id, Permissions.USER_ALL)
        return False

    async def _latest_grant(self, patient_id: str, user_id: str) -> AccessGrant | None:
        grants = await self.grant_store.list_for_pair(user_id, patient_id)
        return grants[-1] if grants else None
