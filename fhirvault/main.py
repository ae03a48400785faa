"""fhirvault - FHIR bundle import and patient access service."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from fhirvault.exceptions import (
    ForbiddenError,
    ResourceConflictError,
    ResourceNotFoundError,
    UnauthenticatedError,
    ValidationError,
)
from fhirvault.routers import access_routes, fhir_routes, health
from fhirvault.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan management."""
    # Startup
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    yield
    # Shutdown - cleanup resources if needed


app = FastAPI(
    title="fhirvault",
    description="FHIR bundle import and patient access control service",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware - localhost only for development
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^http://(localhost|127\.0\.0\.1)(:\d+)?$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(
    status_code: int, exc: Exception, headers: dict[str, str] | None = None
) -> JSONResponse:
    code = getattr(exc, "code", type(exc).__name__)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "code": code},
        headers=headers,
    )


@app.exception_handler(UnauthenticatedError)
async def handle_unauthenticated(
    request: Request, exc: UnauthenticatedError
) -> JSONResponse:
    return _error(
        status.HTTP_401_UNAUTHORIZED, exc, headers={"WWW-Authenticate": "Bearer"}
    )


@app.exception_handler(ForbiddenError)
async def handle_forbidden(request: Request, exc: ForbiddenError) -> JSONResponse:
    return _error(status.HTTP_403_FORBIDDEN, exc)


@app.exception_handler(ResourceNotFoundError)
async def handle_not_found(
    request: Request, exc: ResourceNotFoundError
) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(ResourceConflictError)
async def handle_conflict(request: Request, exc: ResourceConflictError) -> JSONResponse:
    return _error(status.HTTP_409_CONFLICT, exc)


@app.exception_handler(ValidationError)
async def handle_invalid_input(request: Request, exc: ValidationError) -> JSONResponse:
    """Handle input and parse errors (including ResourceParseError) with 400."""
    return _error(status.HTTP_400_BAD_REQUEST, exc)


@app.exception_handler(PydanticValidationError)
async def handle_validation_error(
    request: Request, exc: PydanticValidationError
) -> JSONResponse:
    """Handle Pydantic ValidationError and return 422."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": exc.errors(include_url=False, include_context=False)},
    )


@app.exception_handler(Exception)
async def handle_unhandled_exceptions(request: Request, exc: Exception) -> JSONResponse:
    """Catch and log all unhandled exceptions."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# Register routers
app.include_router(health.router)
app.include_router(fhir_routes.router)
app.include_router(access_routes.router)


@app.get("/")
def root() -> dict[str, str]:
    """Root endpoint."""
    return {"service": "fhirvault", "version": "0.1.0"}
