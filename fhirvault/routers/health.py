"""Health check endpoint."""

from fastapi import APIRouter

from fhirvault.routers.deps import ResourceStoreDep
from fhirvault.schemas.health import HealthResponse

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(store: ResourceStoreDep) -> HealthResponse:
    """Check service health and report how many live resources are stored."""
    return HealthResponse(
        status="healthy",
        resource_count=await store.count_by_type(),
    )
