"""Dependency providers for storage and event dispatch."""

from functools import lru_cache

from fhirvault.services.access_grant_store import (
    AccessGrantStore,
    InMemoryAccessGrantStore,
)
from fhirvault.services.events import EventDispatcher
from fhirvault.services.resource_store import InMemoryResourceStore, ResourceStore


@lru_cache(maxsize=1)
def get_resource_store() -> ResourceStore:
    """Get singleton ResourceStore instance."""
    return InMemoryResourceStore()


@lru_cache(maxsize=1)
def get_access_grant_store() -> AccessGrantStore:
    """Get singleton AccessGrantStore instance."""
    return InMemoryAccessGrantStore()


@lru_cache(maxsize=1)
def get_event_dispatcher() -> EventDispatcher:
    """Get singleton EventDispatcher instance."""
    return EventDispatcher()
