"""Health-check endpoint for Cloud Run."""

from fastapi import APIRouter

from api.models.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(service="review-worker")
