"""Schemas for bundle import."""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from fhirvault.models.resource import utcnow
from fhirvault.settings import settings


class ImportStrategy(str, Enum):
    """How existing resources are treated during an import."""

    CREATE_OR_UPDATE = "create_or_update"
    CREATE_ONLY = "create_only"
    UPDATE_ONLY = "update_only"
    SKIP_EXISTING = "skip_existing"


class ImportStatus(str, Enum):
    """Outcome of a single bundle entry."""

    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"
    DELETED = "deleted"


class ErrorSeverity(str, Enum):
    """Severity of an import error."""

    INFORMATION = "information"
    WARNING = "warning"
    ERROR = "error"
    FATAL = "fatal"


class ImportRequest(BaseModel):
    """Request to import a FHIR Bundle."""

    bundle: str | bytes = Field(
        description="Raw JSON of the Bundle, as text or UTF-8 encoded bytes"
    )
    validate_resources: bool = Field(
        default=True,
        description="Check resourceType and id of every resource before writing",
    )
    skip_existing: bool = Field(
        default=False,
        description="Leave resources that already exist untouched",
    )
    update_existing: bool = Field(
        default=True,
        description="Allow PUT/PATCH entries to overwrite existing resources",
    )
    strategy: ImportStrategy = Field(
        default=ImportStrategy.CREATE_OR_UPDATE,
        description="Conflict strategy for existing and missing resources",
    )

    @field_validator("bundle")
    @classmethod
    def validate_bundle_size(cls, v: str | bytes) -> str | bytes:
        """Validate that the bundle doesn't exceed the maximum size."""
        size = len(v) if isinstance(v, bytes) else len(v.encode("utf-8"))
        if size > settings.max_bundle_size_bytes:
            max_mb = settings.max_bundle_size_bytes / (1024 * 1024)
            raise ValueError(
                f"Bundle exceeds maximum size of {max_mb:.0f}MB. "
                "Please split it into smaller bundles."
            )
        return v

    @property
    def skips_existing(self) -> bool:
        return self.skip_existing or self.strategy == ImportStrategy.SKIP_EXISTING

    @property
    def allows_updates(self) -> bool:
        return self.update_existing and self.strategy in (
            ImportStrategy.CREATE_OR_UPDATE,
            ImportStrategy.UPDATE_ONLY,
        )

    @property
    def allows_creates(self) -> bool:
        return self.strategy != ImportStrategy.UPDATE_ONLY


class ImportedResource(BaseModel):
    """Outcome for one bundle entry."""

    resource_type: str
    id: str
    composite_key: str
    version_id: int = 0
    status: ImportStatus
    error_message: str | None = None


class ImportErrorDetail(BaseModel):
    """An error recorded while importing a bundle entry (or the bundle)."""

    resource_type: str
    original_id: str | None = None
    message: str
    code: str
    severity: ErrorSeverity = ErrorSeverity.ERROR


class ImportResult(BaseModel):
    """Aggregate result of a bundle import."""

    import_job_id: str = Field(default_factory=lambda: str(uuid4()))
    imported_at: datetime = Field(default_factory=utcnow)
    total_processed: int = 0
    successfully_imported: int = Field(
        default=0, description="Entries created or deleted"
    )
    failed_to_import: int = 0
    skipped: int = 0
    updated: int = 0
    cancelled: bool = False
    imported_resources: list[ImportedResource] = Field(default_factory=list)
    errors: list[ImportErrorDetail] = Field(default_factory=list)

    def record(self, outcome: ImportedResource) -> None:
        """Append an entry outcome and bump the matching counter."""
        self.imported_resources.append(outcome)
        self.total_processed += 1
        if outcome.status in (ImportStatus.CREATED, ImportStatus.DELETED):
            self.successfully_imported += 1
        elif outcome.status == ImportStatus.UPDATED:
            self.updated += 1
        elif outcome.status == ImportStatus.SKIPPED:
            self.skipped += 1
        else:
            self.failed_to_import += 1
