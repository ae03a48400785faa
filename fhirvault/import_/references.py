"""
Reference extraction for FHIR resources.

Every resource type that carries references to other resources registers an
extraction function in REFERENCE_EXTRACTORS. Contained resources and
extension-valued references are handled for every type, so an unknown
resource type simply yields whatever those generic passes find.
"""

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

# "http:", "https:", "urn:", "urn:uuid:" ... anything with a URI scheme
_URI_SCHEME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*:")


@dataclass(frozen=True)
class ResourceReference:
    """A pointer from one resource to another, e.g. ``Patient/123``."""

    reference: str
    display: str | None = None

    @property
    def _parts(self) -> list[str]:
        return [part for part in self.reference.split("/") if part]

    @property
    def resource_type(self) -> str | None:
        parts = self._parts
        return parts[0] if parts else None

    @property
    def resource_id(self) -> str | None:
        parts = self._parts
        return parts[1] if len(parts) > 1 else None

    @property
    def is_local(self) -> bool:
        """Reference to a contained resource (``#id``)."""
        return self.reference.startswith("#")

    @property
    def is_external(self) -> bool:
        """Local (``#``) or absolute URI references are never batch-checked."""
        return self.is_local or bool(_URI_SCHEME_PATTERN.match(self.reference))

    @property
    def key(self) -> str | None:
        """``type/id`` key used for batch membership, or None if malformed."""
        if self.resource_type and self.resource_id:
            return f"{self.resource_type}/{self.resource_id}"
        return None


ReferenceExtractor = Callable[[dict[str, Any]], list[ResourceReference]]


def _ref(value: Any) -> list[ResourceReference]:
    """Wrap a FHIR Reference element (or list of them) as ResourceReferences."""
    if isinstance(value, list):
        refs: list[ResourceReference] = []
        for item in value:
            refs.extend(_ref(item))
        return refs
    if isinstance(value, dict):
        reference = value.get("reference")
        if isinstance(reference, str) and reference:
            return [ResourceReference(reference, value.get("display"))]
    return []


def _fields(resource: dict[str, Any], *names: str) -> list[ResourceReference]:
    """Collect references held directly in the named top-level fields."""
    refs: list[ResourceReference] = []
    for name in names:
        refs.extend(_ref(resource.get(name)))
    return refs


def _nested(
    resource: dict[str, Any], container: str, field: str
) -> list[ResourceReference]:
    """Collect ``container[].field`` (or ``container.field``) references."""
    value = resource.get(container)
    items = value if isinstance(value, list) else [value]
    refs: list[ResourceReference] = []
    for item in items:
        if isinstance(item, dict):
            refs.extend(_ref(item.get(field)))
    return refs


def _patient_refs(resource: dict[str, Any]) -> list[ResourceReference]:
    return [
        *_fields(resource, "managingOrganization", "generalPractitioner"),
        *_nested(resource, "contact", "organization"),
    ]


def _encounter_refs(resource: dict[str, Any]) -> list[ResourceReference]:
    return [
        *_fields(resource, "subject", "serviceProvider"),
        *_nested(resource, "location", "location"),
        # R4 uses participant.individual, R5 uses participant.actor
        *_nested(resource, "participant", "individual"),
        *_nested(resource, "participant", "actor"),
    ]


def _observation_refs(resource: dict[str, Any]) -> list[ResourceReference]:
    return _fields(resource, "subject", "encounter", "performer", "specimen")


def _procedure_refs(resource: dict[str, Any]) -> list[ResourceReference]:
    return [
        *_fields(resource, "subject", "encounter"),
        *_nested(resource, "performer", "actor"),
    ]


def _condition_refs(resource: dict[str, Any]) -> list[ResourceReference]:
    return _fields(resource, "subject", "encounter", "asserter")


def _medication_request_refs(resource: dict[str, Any]) -> list[ResourceReference]:
    # The dispensing organization lives in dispenseRequest.performer
    return [
        *_fields(resource, "subject", "encounter", "requester"),
        *_nested(resource, "dispenseRequest", "performer"),
    ]


def _medication_statement_refs(resource: dict[str, Any]) -> list[ResourceReference]:
    return _fields(resource, "subject", "context", "informationSource")


def _diagnostic_report_refs(resource: dict[str, Any]) -> list[ResourceReference]:
    return _fields(resource, "subject", "encounter", "performer", "result")


def _immunization_refs(resource: dict[str, Any]) -> list[ResourceReference]:
    return [
        *_fields(resource, "patient", "encounter"),
        *_nested(resource, "performer", "actor"),
    ]


def _allergy_intolerance_refs(resource: dict[str, Any]) -> list[ResourceReference]:
    return _fields(resource, "patient", "encounter", "recorder", "asserter")


def _document_reference_refs(resource: dict[str, Any]) -> list[ResourceReference]:
    return [
        *_fields(resource, "subject", "author", "authenticator", "custodian"),
        *_nested(resource, "context", "encounter"),
    ]


def _composition_refs(resource: dict[str, Any]) -> list[ResourceReference]:
    return _fields(resource, "subject", "encounter", "author", "custodian")


def _organization_refs(resource: dict[str, Any]) -> list[ResourceReference]:
    return _fields(resource, "partOf")


def _location_refs(resource: dict[str, Any]) -> list[ResourceReference]:
    return _fields(resource, "managingOrganization", "partOf")


def _practitioner_role_refs(resource: dict[str, Any]) -> list[ResourceReference]:
    return _fields(resource, "practitioner", "organization", "location")


# Map resource types to their reference extractors
REFERENCE_EXTRACTORS: dict[str, ReferenceExtractor] = {
    "Patient": _patient_refs,
    "Encounter": _encounter_refs,
    "Observation": _observation_refs,
    "Procedure": _procedure_refs,
    "Condition": _condition_refs,
    "MedicationRequest": _medication_request_refs,
    "MedicationStatement": _medication_statement_refs,
    "DiagnosticReport": _diagnostic_report_refs,
    "Immunization": _immunization_refs,
    "AllergyIntolerance": _allergy_intolerance_refs,
    "DocumentReference": _document_reference_refs,
    "Composition": _composition_refs,
    "Organization": _organization_refs,
    "Location": _location_refs,
    "PractitionerRole": _practitioner_role_refs,
}


def _extension_refs(extensions: Any) -> list[ResourceReference]:
    """References held in extension values, including nested extensions."""
    if not isinstance(extensions, list):
        return []
    refs: list[ResourceReference] = []
    for extension in extensions:
        if not isinstance(extension, dict):
            continue
        refs.extend(_ref(extension.get("valueReference")))
        refs.extend(_extension_refs(extension.get("extension")))
    return refs


def extract_references(resource: dict[str, Any]) -> list[ResourceReference]:
    """
    Return every reference a resource holds to other resources.

    Args:
        resource: FHIR resource as a dict

    Returns:
        References from contained resources, extensions and the
        type-specific fields, in that order
    """
    references: list[ResourceReference] = []

    for contained in resource.get("contained") or []:
        if isinstance(contained, dict):
            references.extend(extract_references(contained))

    references.extend(_extension_refs(resource.get("extension")))

    extractor = REFERENCE_EXTRACTORS.get(resource.get("resourceType", ""))
    if extractor:
        references.extend(extractor(resource))

    return references


def get_resource_type_from_reference(reference: str) -> str | None:
    """Resource type of a ``Type/id`` reference string."""
    if not reference:
        return None
    return ResourceReference(reference).resource_type


def get_resource_id_from_reference(reference: str) -> str | None:
    """Resource id of a ``Type/id`` reference string."""
    if not reference:
        return None
    return ResourceReference(reference).resource_id


def is_valid_reference(reference: str) -> bool:
    """True when the string has at least a non-empty type and id."""
    if not reference:
        return False
    return ResourceReference(reference).key is not None


def get_unique_resource_types(references: Iterable[ResourceReference]) -> set[str]:
    return {ref.resource_type for ref in references if ref.resource_type}


def has_bundle_references(resource: dict[str, Any], bundle_keys: set[str]) -> bool:
    """True if the resource points at any other member of the bundle."""
    return any(
        ref.key in bundle_keys for ref in extract_references(resource) if ref.key
    )
