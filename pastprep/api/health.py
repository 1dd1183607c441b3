"""Health check endpoints."""

from fastapi import APIRouter, Depends

from pastprep.services.essay_client import EssayGradingClient
from pastprep.services.session_manager import ExamSessionManager, get_session_manager

router = APIRouter()


@router.get("/health")
async def health():
    return {"status": "healthy", "service": "pastprep-backend"}


@router.get("/health/grading")
async def grading_health(manager: ExamSessionManager = Depends(get_session_manager)):
    """Report whether external essay grading is configured and reachable."""
    config = manager.grading_config
    endpoint_healthy = None
    if config.endpoint_configured:
        async with EssayGradingClient(config) as client:
            endpoint_healthy = await client.healthy()
    return {
        "external_configured": config.external_configured,
        "endpoint_configured": config.endpoint_configured,
        "endpoint_healthy": endpoint_healthy,
        "llm_fallback_configured": bool(config.gemini_api_key),
    }
