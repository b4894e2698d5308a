"""
Service routes of the API.
Contains the health endpoint.
"""

from datetime import datetime, timezone

from fastapi import APIRouter

from config import ServiceConfig
from core.concurrency import get_concurrency_stats
from .analytics_models import HealthResponse


# ============================================================================
# ROUTER
# ============================================================================
router = APIRouter()


# ============================================================================
# ENDPOINT: GET /health
# ============================================================================
@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Service health endpoint."""
    return HealthResponse(
        status="healthy",
        service=ServiceConfig.SERVICE_NAME,
        version=ServiceConfig.APP_VERSION,
        timestamp=datetime.now(timezone.utc).isoformat(),
        concurrency=get_concurrency_stats(),
    )
