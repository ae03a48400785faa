"""
Domain records shared by the import pipeline and the access engine.

- StoredResource: a persisted, versioned resource
- AccessGrant: a revocable grant of access to a patient's data
- DomainEvent: resource lifecycle events returned by the import executor
"""

from fhirvault.models.access import AccessGrant, AccessLevel, UserRole
from fhirvault.models.resource import DomainEvent, EventKind, StoredResource

__all__ = [
    "AccessGrant",
    "AccessLevel",
    "DomainEvent",
    "EventKind",
    "StoredResource",
    "UserRole",
]
