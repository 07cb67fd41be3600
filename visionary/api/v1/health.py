"""Health check endpoint."""

import platform
import sys

from fastapi import APIRouter

from visionary.config import settings
from visionary.jobs import catalog

router = APIRouter()


@router.get("/health")
async def health_check():
    """Service liveness and a configuration summary."""
    return {
        "status": "healthy",
        "replicate_configured": bool(settings.replicate_api_token),
        "supabase_configured": bool(settings.supabase_url and settings.supabase_service_role_key),
        "prompt_enhancer_enabled": bool(settings.openai_api_key),
        "models": {
            kind.value: sorted(models) for kind, models in catalog.SUPPORTED_MODELS.items()
        },
        "python_version": sys.version,
        "platform": platform.platform(),
    }
