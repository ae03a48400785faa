"""
Import ordering for bundle entries.

Entries are bucketed by declared resource type so that foundation resources
(Patient, Organization, ...) are written before the clinical resources that
point at them, and documents come last. The sort is stable: entries sharing
a priority keep their payload order.

This is a type heuristic. It never looks at the references an entry actually
holds, so two clinical resources of the same rank are not reordered relative
to each other, and reference cycles are not detected.
"""

from collections.abc import Mapping, Sequence
from typing import TypeVar

from fhirvault.import_.parser import BatchEntry

DEFAULT_PRIORITY = 100

# Lower number = imported earlier
DEFAULT_TYPE_PRIORITIES: Mapping[str, int] = {
    # Foundation resources
    "Patient": 1,
    "Organization": 2,
    "Practitioner": 3,
    "Location": 4,
    # Clinical resources
    "Encounter": 5,
    "Condition": 6,
    "Observation": 7,
    "Procedure": 8,
    "MedicationRequest": 9,
    "AllergyIntolerance": 10,
    # Documents
    "DocumentReference": 11,
    "Composition": 12,
}

EntryT = TypeVar("EntryT", bound=BatchEntry)


def entry_priority(
    entry: BatchEntry,
    priorities: Mapping[str, int] = DEFAULT_TYPE_PRIORITIES,
    default_priority: int = DEFAULT_PRIORITY,
) -> int:
    """Priority of an entry; unknown or missing types get the default."""
    if not entry.resource_type:
        return default_priority
    return priorities.get(entry.resource_type, default_priority)


def order_entries(
    entries: Sequence[EntryT],
    priorities: Mapping[str, int] = DEFAULT_TYPE_PRIORITIES,
    default_priority: int = DEFAULT_PRIORITY,
) -> list[EntryT]:
    """
    Stably sort entries by resource type priority.

    Args:
        entries: Batch entries in payload order
        priorities: Resource type → priority mapping (lower first)
        default_priority: Priority for types missing from the mapping

    Returns:
        A new list in processing order
    """
    return sorted(
        entries,
        key=lambda entry: entry_priority(entry, priorities, default_priority),
    )
