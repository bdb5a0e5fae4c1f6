"""Health check endpoint."""
import logging

from fastapi import APIRouter

from octdx.config import settings

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health")
async def health_check():
    return {"status": "ok", "service": settings.app_name}


@router.get("/api/health/config")
async def config_check():
    """Diagnostic endpoint: shows whether critical env vars are configured (no secrets)."""
    return {
        "gemini_api_key_set": bool(settings.gemini_api_key),
        "classification_model": settings.classification_model,
        "image_model": settings.image_model,
        "confidence_threshold": settings.confidence_threshold,
        "gateway_timeout_seconds": settings.gateway_timeout_seconds,
    }
