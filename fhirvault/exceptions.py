"""Custom exceptions for the fhirvault service."""


class FhirVaultError(Exception):
    """Base exception for fhirvault errors."""

    code = "FHIRVAULT_ERROR"


class ValidationError(FhirVaultError):
    """Error during input validation."""

    code = "VALIDATION_ERROR"


class ResourceParseError(ValidationError):
    """A single resource payload could not be parsed."""

    code = "INVALID_RESOURCE"


class BundleParseError(ValidationError):
    """The bundle payload as a whole could not be parsed."""

    code = "BUNDLE_PARSE_ERROR"


class InvalidReferenceError(ValidationError):
    """A resource references something that cannot be resolved."""

    code = "INVALID_REFERENCES"

    def __init__(self, message: str, references: list[str] | None = None):
        super().__init__(message)
        self.references = references or []


class ResourceConflictError(FhirVaultError):
    """The resource already exists and the operation may not overwrite it."""

    code = "RESOURCE_EXISTS"


class ResourceNotFoundError(FhirVaultError):
    """The target resource does not exist."""

    code = "RESOURCE_NOT_FOUND"


class UnauthenticatedError(FhirVaultError):
    """No authenticated caller is attached to the request."""

    code = "UNAUTHENTICATED"


class ForbiddenError(FhirVaultError):
    """The caller is authenticated but may not perform the operation."""

    code = "FORBIDDEN"


class StorageError(FhirVaultError):
    """Error during storage operations."""

    code = "STORAGE_ERROR"


class InvalidEntryError(ValidationError):
    """A bundle entry carries nothing that can be imported."""

    code = "INVALID_ENTRY"
