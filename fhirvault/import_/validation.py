"""Reference validation against the members of an import batch."""

from collections.abc import Iterable
from typing import Any

from fhirvault.import_.parser import BatchEntry
from fhirvault.import_.references import extract_references


def build_batch_keys(entries: Iterable[BatchEntry]) -> set[str]:
    """Collect ``type/id`` keys for every entry whose resource has an id."""
    keys: set[str] = set()
    for entry in entries:
        if entry.resource is None:
            continue
        resource_type = entry.resource.get("resourceType")
        resource_id = entry.resource.get("id")
        if resource_type and resource_id:
            keys.add(f"{resource_type}/{resource_id}")
    return keys


def find_invalid_references(
    resource: dict[str, Any],
    batch_keys: set[str],
) -> list[str]:
    """
    Return the references of a resource that do not resolve inside the batch.

    Local (``#id``) and absolute URI references are skipped, as are
    references without both a type and an id.

    Args:
        resource: The resource to check
        batch_keys: ``type/id`` keys of all resources in the batch

    Returns:
        The offending reference strings, in extraction order
    """
    invalid: list[str] = []
    for reference in extract_references(resource):
        if not reference.reference or reference.is_external:
            continue
        key = reference.key
        if key is None:
            continue
        if key not in batch_keys:
            invalid.append(reference.reference)
    return invalid
