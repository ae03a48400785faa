"""
Application settings for the fhirvault service.

- Defaults are intended for development use.
- For testing, override via pyproject.toml [tool.pytest.ini_options] env or
  by constructing Settings directly.
- For production, set environment variables to override fields.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """fhirvault service configuration."""

    # Service token authentication
    service_auth_secret: str = Field(
        default="dev-only-service-auth-secret-change-me",
        description="HS256 secret used to sign and verify service tokens",
    )
    service_auth_issuer: str = Field(
        default="fhirvault-services",
        description="Expected 'iss' claim of service tokens",
    )
    service_auth_audience: str = Field(
        default="fhirvault",
        description="Expected 'aud' claim of service tokens",
    )

    # Search / export paging
    default_page_size: int = Field(
        default=100,
        description="Page size used when a search does not specify _count",
    )
    max_page_size: int = Field(
        default=1000,
        description="Upper bound for _count on searches and exports",
    )

    # Import limits
    max_bundle_size_bytes: int = Field(
        default=10 * 1024 * 1024,
        description="Maximum size of an import bundle body in bytes",
    )

    # Access grants
    emergency_access_max_hours: int = Field(
        default=72,
        description="Longest expiry allowed for an emergency access grant",
    )

    log_level: str = Field(default="INFO", description="Root logging level")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="FHIRVAULT_",
        extra="ignore",
    )


settings = Settings()
