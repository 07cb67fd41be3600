"""Visualization API: start a visualization, poll it, read its history row."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from visionary.auth.supabase_auth import optional_user_id
from visionary.history.recorder import HistoryKey
from visionary.jobs.models import VisualizationRequest
from visionary.orchestration.schemas import PollRequest, PollResponse, StartResponse

router = APIRouter()

# Set by main.py during lifespan
_context = None


def set_context(context):
    global _context
    _context = context


def _require_context():
    if _context is None:
        raise HTTPException(status_code=503, detail="Visualization service not initialized")
    return _context


async def start_visualization(
    request: VisualizationRequest,
    user_id: Optional[str] = Depends(optional_user_id),
) -> StartResponse:
    """Submit the base generation job and create its history record."""
    context = _require_context()
    response = await context.orchestrator.start(request, user_id=user_id)
    if request.background:
        context.spawn_poller(PollRequest(
            prediction_id=response.prediction_id,
            history_id=response.history_id,
            needs_face_swap=response.needs_face_swap,
            face_swap_input_image=response.face_swap_input_image,
        ))
    return response


async def check_visualization_status(request: PollRequest) -> PollResponse:
    """One poll cycle for the active prediction."""
    context = _require_context()
    return await context.orchestrator.check_status(request)


router.add_api_route(
    "/visualizations",
    start_visualization,
    methods=["POST"],
    response_model=StartResponse,
    response_model_by_alias=True,
)
router.add_api_route(
    "/visualizations/status",
    check_visualization_status,
    methods=["POST"],
    response_model=PollResponse,
    response_model_by_alias=True,
)


@router.get("/visualizations/{history_id}")
async def get_visualization(history_id: str):
    """Current history record of a visualization."""
    context = _require_context()
    record = await context.recorder.get(HistoryKey(id=history_id))
    if record is None:
        raise HTTPException(status_code=404, detail="Visualization not found")
    return record.model_dump(mode="json")


# Root-level paths kept for existing frontends
compat_router = APIRouter()
compat_router.add_api_route(
    "/visualize-dream",
    start_visualization,
    methods=["POST"],
    response_model=StartResponse,
    response_model_by_alias=True,
)
compat_router.add_api_route(
    "/check-visualization-status",
    check_visualization_status,
    methods=["POST"],
    response_model=PollResponse,
    response_model_by_alias=True,
)
