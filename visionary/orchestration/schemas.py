"""Client-facing request/response shapes for the start and poll calls.

Field names on the wire are camelCase (``predictionId``, ``historyId``,
``needsFaceSwap``...); the frontend depends on them.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from visionary.orchestration.state import TERMINAL_STAGES

TRANSITIONING_TO_FACE_SWAP = "transitioning_to_face_swap"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, protected_namespaces=()
    )


class StartResponse(_CamelModel):
    success: bool = True
    prediction_id: str
    history_id: Optional[str] = None
    needs_face_swap: bool = False
    face_swap_input_image: Optional[str] = None
    generation_type: str
    model_id: str
    enhanced_prompt: Optional[str] = None
    status: str = "starting"
    progress: int = 0
    message: str = ""


class PollRequest(_CamelModel):
    prediction_id: Optional[str] = None
    history_id: Optional[str] = None
    needs_face_swap: bool = False
    face_swap_input_image: Optional[str] = None
    is_face_swap_prediction: bool = False


class PollResponse(_CamelModel):
    success: bool = True
    prediction_id: str
    history_id: Optional[str] = None
    status: str
    stage: Optional[str] = None
    is_face_swap_prediction: bool = False
    needs_face_swap: bool = False
    progress: Optional[int] = None
    message: Optional[str] = None
    output_url: Optional[str] = None
    base_image_url: Optional[str] = None
    final_result_url: Optional[str] = None
    next_prediction_id: Optional[str] = None
    error: Optional[str] = None
    is_likely_stuck: Optional[bool] = None
    elapsed_minutes: Optional[float] = None
    face_swap_restarted: Optional[bool] = None
    new_prediction_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.stage in {s.value for s in TERMINAL_STAGES}
