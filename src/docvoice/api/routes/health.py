"""Health check endpoints."""

from fastapi import APIRouter, Request
from fastapi.responses import ORJSONResponse

from docvoice import __version__
from docvoice.config import settings

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Basic health check."""
    return {
        "status": "healthy",
        "version": __version__,
    }


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness probe. Session minting needs an OpenAI key."""
    if not settings.openai_api_key:
        return ORJSONResponse({"status": "not_ready", "reason": "OpenAI API key not configured"}, status_code=503)

    registry = request.app.state.registry
    return {"status": "ready", "sessions": registry.get_stats()}


@router.get("/health/live")
async def liveness_check() -> dict:
    """Liveness probe."""
    return {"status": "alive"}
