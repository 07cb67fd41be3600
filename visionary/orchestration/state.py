"""Visualization state machine.

One ``OrchestrationState`` describes where a single visualization stands:
which stage, which prediction is the active polling key, and the progress
shown to the user. States are immutable; ``transition`` validates the move
and returns the next state, so an in-flight poll result and a stuck-job
restart can never interleave half-applied changes.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, FrozenSet, Optional

from visionary.history.models import HistoryRecord, HistoryStatus
from visionary.jobs.models import JobKind, JobStatus


class Stage(str, Enum):
    PREPARING = "preparing"
    BASE_STARTING = "base_starting"
    BASE_PROCESSING = "base_processing"
    BASE_SUCCEEDED = "base_succeeded"
    FACE_SWAP_STARTING = "face_swap_starting"
    FACE_SWAP_PROCESSING = "face_swap_processing"
    FACE_SWAP_SUCCEEDED = "face_swap_succeeded"
    COMPLETED = "completed"
    COMPLETED_WITH_ERROR = "completed_with_error"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STAGES: FrozenSet[Stage] = frozenset(
    {Stage.COMPLETED, Stage.COMPLETED_WITH_ERROR, Stage.FAILED, Stage.CANCELED}
)

_FAILURE_EXITS = {Stage.FAILED, Stage.CANCELED, Stage.COMPLETED_WITH_ERROR}

# A restarted job re-enters its stage at the starting state
ALLOWED_TRANSITIONS: Dict[Stage, FrozenSet[Stage]] = {
    Stage.PREPARING: frozenset({Stage.BASE_STARTING, Stage.FAILED}),
    Stage.BASE_STARTING: frozenset(
        {Stage.BASE_STARTING, Stage.BASE_PROCESSING, Stage.BASE_SUCCEEDED} | _FAILURE_EXITS
    ),
    Stage.BASE_PROCESSING: frozenset(
        {Stage.BASE_STARTING, Stage.BASE_PROCESSING, Stage.BASE_SUCCEEDED} | _FAILURE_EXITS
    ),
    Stage.BASE_SUCCEEDED: frozenset(
        {Stage.FACE_SWAP_STARTING, Stage.COMPLETED} | _FAILURE_EXITS
    ),
    Stage.FACE_SWAP_STARTING: frozenset(
        {Stage.FACE_SWAP_STARTING, Stage.FACE_SWAP_PROCESSING, Stage.FACE_SWAP_SUCCEEDED}
        | _FAILURE_EXITS
    ),
    Stage.FACE_SWAP_PROCESSING: frozenset(
        {Stage.FACE_SWAP_STARTING, Stage.FACE_SWAP_PROCESSING, Stage.FACE_SWAP_SUCCEEDED}
        | _FAILURE_EXITS
    ),
    Stage.FACE_SWAP_SUCCEEDED: frozenset({Stage.COMPLETED} | _FAILURE_EXITS),
    # Duplicate polls of a finished job replay the terminal transition
    Stage.COMPLETED: frozenset({Stage.COMPLETED}),
    Stage.COMPLETED_WITH_ERROR: frozenset({Stage.COMPLETED, Stage.COMPLETED_WITH_ERROR}),
    Stage.FAILED: frozenset({Stage.FAILED}),
    Stage.CANCELED: frozenset({Stage.CANCELED}),
}

# Progress milestones (percent)
BASE_STARTING_PROGRESS = 15
BASE_PROCESSING_PROGRESS = 30
BASE_CEILING = 95
BASE_CEILING_BEFORE_FACE_SWAP = 45
FACE_SWAP_STARTED_PROGRESS = 50
FACE_SWAP_PROCESSING_PROGRESS = 60
FACE_SWAP_CEILING = 95
COMPLETE = 100

MESSAGES = {
    (JobKind.BASE_GENERATION, JobStatus.STARTING): "Starting dream generation...",
    (JobKind.BASE_GENERATION, JobStatus.PROCESSING): "Generating your dream...",
    (JobKind.FACE_SWAP, JobStatus.STARTING): "Starting face swap...",
    (JobKind.FACE_SWAP, JobStatus.PROCESSING): "Processing face swap...",
}


class InvalidTransition(Exception):
    pass


def estimate_progress(
    previous: int,
    kind: JobKind,
    status: str,
    needs_face_swap: bool = False,
) -> int:
    """Progress for a non-terminal poll. Never decreases, never reaches 100."""
    if kind == JobKind.FACE_SWAP:
        if status == JobStatus.STARTING:
            estimate = FACE_SWAP_STARTED_PROGRESS
        elif previous < FACE_SWAP_PROCESSING_PROGRESS:
            estimate = FACE_SWAP_PROCESSING_PROGRESS
        else:
            estimate = previous + (1.5 if previous < 85 else 0.8)
        ceiling = FACE_SWAP_CEILING
    else:
        if status == JobStatus.STARTING:
            estimate = BASE_STARTING_PROGRESS
        elif previous < BASE_PROCESSING_PROGRESS:
            estimate = BASE_PROCESSING_PROGRESS
        else:
            estimate = previous + 5
        ceiling = BASE_CEILING_BEFORE_FACE_SWAP if needs_face_swap else BASE_CEILING
    return int(max(previous, min(estimate, ceiling)))


@dataclass(frozen=True)
class OrchestrationState:
    stage: Stage
    active_prediction_id: Optional[str] = None
    active_kind: JobKind = JobKind.BASE_GENERATION
    progress: int = 0
    message: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def transition(
        self,
        stage: Stage,
        *,
        prediction_id: Optional[str] = None,
        kind: Optional[JobKind] = None,
        progress: Optional[int] = None,
        message: Optional[str] = None,
        reset_progress: bool = False,
    ) -> "OrchestrationState":
        """Return the state after moving to ``stage``.

        Progress only moves forward unless ``reset_progress`` is given (a
        restarted job starts its stage over).
        """
        if stage not in ALLOWED_TRANSITIONS[self.stage]:
            raise InvalidTransition(f"{self.stage.value} -> {stage.value}")
        new_progress = self.progress
        if progress is not None:
            new_progress = progress if reset_progress else max(self.progress, progress)
        return replace(
            self,
            stage=stage,
            active_prediction_id=prediction_id or self.active_prediction_id,
            active_kind=kind or self.active_kind,
            progress=new_progress,
            message=message if message is not None else self.message,
        )


_STAGE_BY_HISTORY_STATUS = {
    HistoryStatus.FACE_SWAP_STARTED.value: Stage.FACE_SWAP_STARTING,
    HistoryStatus.FACE_SWAP_STARTING.value: Stage.FACE_SWAP_STARTING,
    HistoryStatus.FACE_SWAP_PROCESSING.value: Stage.FACE_SWAP_PROCESSING,
    HistoryStatus.COMPLETED.value: Stage.COMPLETED,
    HistoryStatus.COMPLETED_WITH_ERROR.value: Stage.COMPLETED_WITH_ERROR,
    HistoryStatus.FACE_SWAP_FAILED.value: Stage.COMPLETED_WITH_ERROR,
    HistoryStatus.FAILED.value: Stage.FAILED,
    HistoryStatus.CANCELED.value: Stage.CANCELED,
}


def state_for_poll(
    prediction_id: str,
    kind: JobKind,
    record: Optional[HistoryRecord] = None,
) -> OrchestrationState:
    """Rebuild the state a poll starts from.

    The history row supplies the last known stage and progress. A row that
    still points at an earlier stage than the polled job (a missed write) is
    read as the first state of the polled job's stage.
    """
    progress = record.progress if record else 0
    message = (record.status_message or "") if record else ""

    stage = Stage.BASE_STARTING
    if record is not None:
        stage = _STAGE_BY_HISTORY_STATUS.get(record.status, Stage.BASE_STARTING)
    if kind == JobKind.FACE_SWAP and stage in (Stage.BASE_STARTING, Stage.BASE_PROCESSING):
        stage = Stage.FACE_SWAP_STARTING
    if (
        kind == JobKind.BASE_GENERATION
        and stage in (Stage.FACE_SWAP_STARTING, Stage.FACE_SWAP_PROCESSING)
    ):
        # The base job is polled again after its face swap already started
        stage = Stage.BASE_SUCCEEDED

    return OrchestrationState(
        stage=stage,
        active_prediction_id=prediction_id,
        active_kind=kind,
        progress=progress,
        message=message,
    )
