"""Storage for patient access grants."""

import asyncio
import copy
from collections.abc import Callable
from typing import Protocol

from fhirvault.exceptions import ResourceConflictError, ResourceNotFoundError
from fhirvault.models.access import AccessGrant


class AccessGrantStore(Protocol):
    """Storage contract for access grants. Grants are never deleted."""

    async def add(self, grant: AccessGrant) -> AccessGrant: ...

    async def update(self, grant: AccessGrant) -> AccessGrant: ...

    async def get(self, grant_id: str) -> AccessGrant | None: ...

    async def list_for_pair(self, user_id: str, patient_id: str) -> list[AccessGrant]: ...

    async def list_for_user(self, user_id: str) -> list[AccessGrant]: ...

    async def list_for_patient(self, patient_id: str) -> list[AccessGrant]: ...


class InMemoryAccessGrantStore:
    """Process-local AccessGrantStore. Listings are ordered oldest grant first."""

    def __init__(self) -> None:
        self._grants: dict[str, AccessGrant] = {}
        self._lock = asyncio.Lock()

    async def add(self, grant: AccessGrant) -> AccessGrant:
        async with self._lock:
            if grant.id in self._grants:
                raise ResourceConflictError(f"Access grant {grant.id} already exists")
            self._grants[grant.id] = copy.deepcopy(grant)
        return copy.deepcopy(grant)

    async def update(self, grant: AccessGrant) -> AccessGrant:
        async with self._lock:
            if grant.id not in self._grants:
                raise ResourceNotFoundError(f"Access grant {grant.id} not found")
            self._grants[grant.id] = copy.deepcopy(grant)
        return copy.deepcopy(grant)

    async def get(self, grant_id: str) -> AccessGrant | None:
        grant = self._grants.get(grant_id)
        return copy.deepcopy(grant) if grant else None

    async def list_for_pair(self, user_id: str, patient_id: str) -> list[AccessGrant]:
        return self._select(
            lambda g: g.user_id == user_id and g.patient_id == patient_id
        )

    async def list_for_user(self, user_id: str) -> list[AccessGrant]:
        return self._select(lambda g: g.user_id == user_id)

    async def list_for_patient(self, patient_id: str) -> list[AccessGrant]:
        return self._select(lambda g: g.patient_id == patient_id)

    def _select(self, predicate: Callable[[AccessGrant], bool]) -> list[AccessGrant]:
        grants = [copy.deepcopy(g) for g in self._grants.values() if predicate(g)]
        grants.sort(key=lambda g: g.granted_at)
        return grants
