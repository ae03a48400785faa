"""
Parsing and serialization of FHIR JSON payloads.

The bundle envelope (Bundle → entry → resource/request) is validated with
pydantic models; resource bodies stay plain dicts and are only checked for
the metadata the import pipeline relies on.
"""

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from fhirvault.exceptions import BundleParseError, ResourceParseError

# FHIR id datatype: 1-64 chars of letters, digits, '-' and '.'
FHIR_ID_PATTERN = re.compile(r"^[A-Za-z0-9\-\.]{1,64}$")
RESOURCE_TYPE_PATTERN = re.compile(r"^[A-Z][A-Za-z]{1,63}$")


class EntryOperation(str, Enum):
    """Operation requested for a bundle entry."""

    CREATE = "create"  # POST, or no request at all
    UPSERT = "upsert"  # PUT / PATCH
    DELETE = "delete"


_METHOD_TO_OPERATION = {
    "POST": EntryOperation.CREATE,
    "PUT": EntryOperation.UPSERT,
    "PATCH": EntryOperation.UPSERT,
    "DELETE": EntryOperation.DELETE,
}


class BundleEntryRequest(BaseModel):
    """Bundle.entry.request"""

    model_config = ConfigDict(extra="allow")

    method: str = "POST"
    url: str | None = None


class BundleEntryModel(BaseModel):
    """Bundle.entry"""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    full_url: str | None = Field(default=None, alias="fullUrl")
    # Kept loose so a malformed resource fails its entry, not the bundle
    resource: Any = None
    request: BundleEntryRequest | None = None


class BundleModel(BaseModel):
    """Envelope of a FHIR Bundle."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    resource_type: Literal["Bundle"] = Field(alias="resourceType")
    type: str | None = None
    id: str | None = None
    entry: list[BundleEntryModel] = Field(default_factory=list)


@dataclass
class BatchEntry:
    """One entry of an import batch, alive only for the duration of an import."""

    position: int
    operation: EntryOperation
    resource: dict[str, Any] | None
    resource_type: str | None
    raw_id: str | None
    full_url: str | None = None
    parse_error: str | None = None

    @property
    def key(self) -> str | None:
        if self.resource_type and self.raw_id:
            return f"{self.resource_type}/{self.raw_id}"
        return None


@dataclass
class ParsedBundle:
    """Result of parsing a bundle payload."""

    bundle_type: str | None
    entries: list[BatchEntry]


def _identity_from_url(url: str | None) -> tuple[str | None, str | None]:
    """Pull ``Type`` and ``id`` out of a request url such as ``Patient/123``."""
    if not url:
        return None, None
    path = url.split("?", 1)[0]
    parts = [p for p in path.split("/") if p]
    resource_type = parts[0] if parts else None
    resource_id = parts[1] if len(parts) > 1 else None
    return resource_type, resource_id


def _to_batch_entry(position: int, entry: BundleEntryModel) -> BatchEntry:
    method = (entry.request.method if entry.request else "POST").upper()
    operation = _METHOD_TO_OPERATION.get(method, EntryOperation.CREATE)
    url_type, url_id = _identity_from_url(entry.request.url if entry.request else None)

    resource: dict[str, Any] | None = None
    parse_error: str | None = None
    resource_type: Any = url_type
    raw_id: Any = url_id

    if isinstance(entry.resource, dict):
        resource = entry.resource
        resource_type = resource.get("resourceType") or url_type
        raw_id = resource.get("id") or url_id
    elif entry.resource is not None:
        parse_error = (
            f"Entry resource must be a JSON object, got "
            f"{type(entry.resource).__name__}"
        )

    return BatchEntry(
        position=position,
        operation=operation,
        resource=resource,
        resource_type=resource_type if isinstance(resource_type, str) else None,
        raw_id=str(raw_id) if raw_id is not None else None,
        full_url=entry.full_url,
        parse_error=parse_error,
    )


def _decode(payload: str | bytes) -> str:
    if isinstance(payload, str):
        return payload
    return payload.decode("utf-8")


def parse_bundle(payload: str | bytes) -> ParsedBundle:
    """
    Parse a FHIR Bundle payload into batch entries.

    Args:
        payload: Raw JSON of the Bundle, as text or UTF-8 encoded bytes

    Returns:
        ParsedBundle with one BatchEntry per Bundle.entry, in payload order

    Raises:
        BundleParseError: If the payload is not a UTF-8 JSON Bundle
    """
    try:
        text = _decode(payload)
    except UnicodeDecodeError as e:
        raise BundleParseError("Bundle payload is not UTF-8 encoded") from e
    if not text or not text.strip():
        raise BundleParseError("Bundle payload is empty")
    try:
        bundle = BundleModel.model_validate_json(text)
    except PydanticValidationError as e:
        raise BundleParseError(f"Invalid bundle: {_summarize(e)}") from e

    entries = [_to_batch_entry(i, entry) for i, entry in enumerate(bundle.entry)]
    return ParsedBundle(bundle_type=bundle.type, entries=entries)


def validate_resource(resource: dict[str, Any]) -> None:
    """
    Check the metadata the pipeline depends on.

    Raises:
        ResourceParseError: If resourceType or id are missing or malformed
    """
    resource_type = resource.get("resourceType")
    if not isinstance(resource_type, str) or not RESOURCE_TYPE_PATTERN.match(
        resource_type
    ):
        raise ResourceParseError(f"Invalid or missing resourceType: {resource_type!r}")

    resource_id = resource.get("id")
    if resource_id is not None and (
        not isinstance(resource_id, str) or not FHIR_ID_PATTERN.match(resource_id)
    ):
        raise ResourceParseError(
            "Resource id must contain only letters, numbers, hyphens, and dots "
            "(max 64 characters)"
        )


def parse_resource(payload: str | bytes) -> dict[str, Any]:
    """
    Parse a single FHIR resource payload.

    Raises:
        ResourceParseError: If the payload is not a UTF-8 JSON object with a
            valid resourceType
    """
    try:
        resource = json.loads(_decode(payload))
    except (TypeError, ValueError) as e:
        raise ResourceParseError(f"Resource is not valid JSON: {e}") from e
    if not isinstance(resource, dict):
        raise ResourceParseError("Resource must be a JSON object")
    validate_resource(resource)
    return resource


def serialize_resource(resource: dict[str, Any]) -> str:
    """Serialize a resource to compact JSON."""
    return json.dumps(resource, separators=(",", ":"), ensure_ascii=False)


def _summarize(error: PydanticValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid")
    return f"{location}: {message}" if location else message
