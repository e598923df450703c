"""
Health check endpoint
"""

from fastapi import APIRouter
from app.core.config import settings

router = APIRouter()


@router.get("")
async def health():
    """
    Health check endpoint.
    """
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "provider": settings.AI_PROVIDER,
        "models": settings.EVAL_MODELS,
        "provider_configured": bool(settings.EVAL_MODELS),
        "database_configured": bool(settings.DATABASE_URL),
        "storage_configured": bool(settings.STORAGE_PUBLIC_URL),
    }
