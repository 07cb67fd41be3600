"""Aggregate all v1 API routers."""

from fastapi import APIRouter
from visionary.api.v1.health import router as health_router
from visionary.api.v1.prompts import router as prompts_router
from visionary.api.v1.visualizations import router as visualizations_router
from visionary.api.v1.visualizations import compat_router as visualizations_compat

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(visualizations_router, tags=["visualizations"])
v1_router.include_router(prompts_router, tags=["prompts"])

# Compatibility shim: /visualize-dream, /check-visualization-status, /enhance-prompt at root
compat_router = APIRouter()
compat_router.include_router(visualizations_compat, tags=["visualizations"])
compat_router.include_router(prompts_router, tags=["prompts"])
