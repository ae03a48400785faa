"""
Service JWT authentication.

Callers present an HS256 service token as a Bearer token (or in the
X-Service-Token header). The verified claims become a CallerContext that the
authorization gate and the access endpoints consume read-only.

Usage:
    from fhirvault.core.auth import CallerDep

    @router.get("/endpoint")
    async def endpoint(caller: CallerDep):
        # caller is None when no token was presented
        pass
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Annotated

import jwt
from fastapi import Depends, Request
from pydantic import BaseModel, Field

from fhirvault.exceptions import UnauthenticatedError
from fhirvault.models.access import UserRole
from fhirvault.settings import settings

logger = logging.getLogger(__name__)


class ServiceTokenPayload(BaseModel):
    """Service authentication token payload."""

    iss: str  # issuer
    sub: str  # subject (caller id)
    aud: str  # audience
    iat: int  # issued at
    exp: int  # expires at
    role: str | None = None
    scope: str | None = None  # space-delimited
    permissions: list[str] = []

    @property
    def scopes(self) -> list[str]:
        if self.scope:
            return self.scope.split()
        return list(self.permissions)


class CallerContext(BaseModel):
    """The authenticated caller of a request."""

    id: str | None = None
    role: UserRole = UserRole.GUEST
    scopes: list[str] = Field(default_factory=list)

    @property
    def is_system_administrator(self) -> bool:
        return self.role == UserRole.ADMINISTRATOR

    @property
    def is_patient(self) -> bool:
        return self.role == UserRole.PATIENT

    def is_self_patient(self, patient_id: str) -> bool:
        """True when the caller is a patient acting on their own record."""
        return self.is_patient and bool(self.id) and self.id == patient_id


# Common permissions
class Permissions:
    """Common permission constants."""

    SYSTEM_ALL = "system/*"
    USER_ALL = "user/*"
    PATIENT_ALL = "patient/*"
    USER_READ = "user/*.read"
    USER_WRITE = "user/*.write"


def verify_service_token(token: str) -> ServiceTokenPayload:
    """Verify a service JWT token.

    Args:
        token: The JWT token to verify

    Returns:
        The decoded token payload

    Raises:
        UnauthenticatedError: If the token is invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            settings.service_auth_secret,
            algorithms=["HS256"],
            audience=settings.service_auth_audience,
            issuer=settings.service_auth_issuer,
            options={"verify_exp": True},
        )
        return ServiceTokenPayload(**payload)
    except jwt.ExpiredSignatureError as e:
        raise UnauthenticatedError("Service token has expired") from e
    except jwt.InvalidTokenError as e:
        raise UnauthenticatedError(f"Invalid service token: {e}") from e


def create_service_token(
    subject: str,
    role: UserRole | str = UserRole.GUEST,
    scopes: list[str] | None = None,
    expires_hours: int = 24,
) -> str:
    """Create a service JWT token.

    Args:
        subject: Caller id placed in ``sub``
        role: Role claim
        scopes: Permission strings, joined into the ``scope`` claim
        expires_hours: Token validity in hours

    Returns:
        The signed JWT token
    """
    now = datetime.now(timezone.utc)
    expires = now + timedelta(hours=expires_hours)

    payload = {
        "iss": settings.service_auth_issuer,
        "sub": subject,
        "aud": settings.service_auth_audience,
        "iat": int(now.timestamp()),
        "exp": int(expires.timestamp()),
        "role": role.value if isinstance(role, UserRole) else role,
        "scope": " ".join(scopes or []),
    }

    return jwt.encode(payload, settings.service_auth_secret, algorithm="HS256")


def caller_from_payload(payload: ServiceTokenPayload) -> CallerContext:
    return CallerContext(
        id=payload.sub,
        role=UserRole.parse(payload.role),
        scopes=payload.scopes,
    )


def _get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header."""
    auth_header = request.headers.get("authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None


async def get_current_caller(request: Request) -> CallerContext | None:
    """Get the caller of the current request.

    Returns:
        CallerContext, or None when no token was presented

    Raises:
        UnauthenticatedError: If a token was presented but is not valid
    """
    token = _get_bearer_token(request) or request.headers.get("X-Service-Token")
    if not token:
        return None
    try:
        return caller_from_payload(verify_service_token(token))
    except UnauthenticatedError:
        logger.warning("Rejected service token on %s", request.url.path)
        raise


# Type alias for dependency injection
CallerDep = Annotated[CallerContext | None, Depends(get_current_caller)]
