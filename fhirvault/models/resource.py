"""Stored resource record and domain events."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import NamedTuple

DELETED_STATUS = "deleted"
ACTIVE_STATUS = "active"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


@dataclass
class StoredResource:
    """A persisted resource version, identified by (resource_type, id)."""

    resource_type: str
    id: str
    resource_json: str
    version_id: int = 1
    status: str = ACTIVE_STATUS
    created_at: datetime = field(default_factory=utcnow)
    last_modified_at: datetime = field(default_factory=utcnow)
    created_by: str = "system"
    last_modified_by: str = "system"
    is_deleted: bool = False
    deleted_at: datetime | None = None
    deleted_by: str | None = None

    # Reference index columns
    patient_reference: str | None = None
    organization_reference: str | None = None
    practitioner_reference: str | None = None

    @property
    def composite_key(self) -> str:
        return f"{self.resource_type}/{self.id}"

    @property
    def is_active(self) -> bool:
        return not self.is_deleted and self.status.lower() == ACTIVE_STATUS

    def mark_updated(self, resource_json: str, modified_by: str) -> None:
        """Overwrite the payload and advance to the next version."""
        now = utcnow()
        self.resource_json = resource_json
        self.version_id += 1
        self.status = ACTIVE_STATUS
        self.is_deleted = False
        self.deleted_at = None
        self.deleted_by = None
        self.last_modified_at = now
        self.last_modified_by = modified_by

    def mark_deleted(self, deleted_by: str) -> None:
        """Soft delete; history is kept by the store."""
        now = utcnow()
        self.status = DELETED_STATUS
        self.is_deleted = True
        self.deleted_at = now
        self.deleted_by = deleted_by
        self.last_modified_at = now
        self.last_modified_by = deleted_by


class EventKind(str, Enum):
    """Kinds of resource lifecycle events."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class DomainEvent(NamedTuple):
    """A resource lifecycle event, emitted after storage confirms the write."""

    kind: EventKind
    resource_type: str
    resource_id: str
    version_id: int
