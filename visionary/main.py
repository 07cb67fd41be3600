"""Visionary visualization backend - FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from visionary.config import settings
from visionary.context import AppContext
from visionary.errors import VisionaryError
from visionary.logging_config import setup_logging
from visionary.api.v1.router import v1_router, compat_router
from visionary.api.v1.health import router as health_root_router
from visionary.api.v1 import prompts as prompts_api
from visionary.api.v1 import visualizations as visualizations_api

logger = logging.getLogger(__name__)


def wire(context: AppContext) -> None:
    """Hand the context's components to the API modules."""
    visualizations_api.set_context(context)
    prompts_api.set_enhancer(context.enhancer)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    setup_logging(settings)
    logger.info("Starting Visionary backend")
    logger.info("Replicate API: %s", settings.replicate_base_url)
    logger.info("History table: %s, generated bucket: %s",
                settings.history_table, settings.generated_bucket)

    context = AppContext.build(settings)
    wire(context)
    app.state.context = context

    yield

    logger.info("Shutting down Visionary backend, stopping %d background poller(s)",
                len(context.pollers))
    await context.aclose()


app = FastAPI(
    title="Visionary Visualization Service",
    description="Orchestrates AI image and video generation with optional face swap",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(VisionaryError)
async def visionary_error_handler(request: Request, exc: VisionaryError):
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message},
    )


# CORS - allow frontend dev servers and any configured origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints
app.include_router(compat_router)  # /visualize-dream, /check-visualization-status, /enhance-prompt
