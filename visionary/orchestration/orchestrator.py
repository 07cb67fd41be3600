"""Visualization orchestrator.

Advances a visualization from the base generation job to an optional face
swap job and on to a stored result. Each ``check_status`` call is one poll:
it reads the active job from the provider, moves the state machine one step
and writes the outcome to the history table.

Persistence side effects are best effort. A failed history write is logged
and the poll still answers; a failed media upload degrades to the
provider's transient URL. Only a succeeded job with no extractable URL is a
hard error for its stage.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from visionary.config import Settings
from visionary.errors import (
    CancellationFailed,
    EnhancementFailed,
    ExtractionFailed,
    PersistenceFailed,
    StuckJob,
    SubmissionFailed,
    ValidationError,
)
from visionary.history.metadata import ProcessingMetadataStore
from visionary.history.models import (
    PENDING_MEDIA_URL,
    HistoryRecord,
    HistoryStatus,
    prediction_column,
    saved_flag_column,
)
from visionary.history.recorder import HistoryKey, HistoryRecorder
from visionary.jobs.dispatcher import InferenceBackend
from visionary.jobs.extractor import extract_output_url
from visionary.jobs.models import (
    GenerationType,
    Job,
    JobKind,
    JobStatus,
    VisualizationRequest,
)
from visionary.jobs.submitter import (
    BasePlan,
    JobSubmitter,
    plan_base_generation,
    validate_request,
)
from visionary.orchestration.schemas import (
    TRANSITIONING_TO_FACE_SWAP,
    PollRequest,
    PollResponse,
    StartResponse,
)
from visionary.orchestration.state import (
    BASE_STARTING_PROGRESS,
    COMPLETE,
    FACE_SWAP_STARTED_PROGRESS,
    MESSAGES,
    InvalidTransition,
    OrchestrationState,
    Stage,
    estimate_progress,
    state_for_poll,
)
from visionary.prompts.enhancer import PromptEnhancer, compose_prompt
from visionary.storage.media_store import MediaStore

logger = logging.getLogger(__name__)

_PROGRESS_STAGES = {
    (JobKind.BASE_GENERATION, JobStatus.STARTING): Stage.BASE_STARTING,
    (JobKind.BASE_GENERATION, JobStatus.PROCESSING): Stage.BASE_PROCESSING,
    (JobKind.FACE_SWAP, JobStatus.STARTING): Stage.FACE_SWAP_STARTING,
    (JobKind.FACE_SWAP, JobStatus.PROCESSING): Stage.FACE_SWAP_PROCESSING,
}

_PROGRESS_HISTORY_STATUS = {
    JobKind.BASE_GENERATION: {
        JobStatus.STARTING: HistoryStatus.PROCESSING,
        JobStatus.PROCESSING: HistoryStatus.PROCESSING,
    },
    JobKind.FACE_SWAP: {
        JobStatus.STARTING: HistoryStatus.FACE_SWAP_STARTING,
        JobStatus.PROCESSING: HistoryStatus.FACE_SWAP_PROCESSING,
    },
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enter(state: OrchestrationState, stage: Stage) -> OrchestrationState:
    """Move to ``stage`` unless a repeated poll already put us there."""
    if state.stage == stage:
        return state
    return state.transition(stage)


@dataclass
class _Poll:
    """Everything one poll cycle knows about its visualization."""
    job: Job
    kind: JobKind
    record: Optional[HistoryRecord]
    history_id: Optional[str]
    needs_face_swap: bool
    portrait_url: Optional[str]

    @property
    def key(self) -> HistoryKey:
        if self.history_id:
            return HistoryKey(id=self.history_id)
        return HistoryKey(prediction_id=self.job.id, kind=self.kind)

    @property
    def is_face_swap(self) -> bool:
        return self.kind == JobKind.FACE_SWAP

    def ids(self) -> str:
        return f"prediction={self.job.id} history={self.history_id}"


class VisualizationOrchestrator:
    def __init__(
        self,
        backend: InferenceBackend,
        submitter: JobSubmitter,
        recorder: HistoryRecorder,
        metadata: ProcessingMetadataStore,
        media_store: MediaStore,
        enhancer: PromptEnhancer,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._backend = backend
        self._submitter = submitter
        self._recorder = recorder
        self._metadata = metadata
        self._media = media_store
        self._enhancer = enhancer
        self._settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Start call
    # ------------------------------------------------------------------

    async def start(
        self, request: VisualizationRequest, user_id: Optional[str] = None
    ) -> StartResponse:
        """Validate the request, submit the base job and create its history row."""
        generation_type = validate_request(request)
        prompt = await self._prepare_prompt(request)
        plan = plan_base_generation(request, generation_type, prompt)

        handle = await self._submitter.submit_base(plan)
        state = OrchestrationState(stage=Stage.PREPARING).transition(
            Stage.BASE_STARTING,
            prediction_id=handle.id,
            kind=JobKind.BASE_GENERATION,
            progress=BASE_STARTING_PROGRESS,
            message=MESSAGES[(JobKind.BASE_GENERATION, JobStatus.STARTING)],
        )

        needs_face_swap = request.enable_face_swap
        # A face swap always produces an image
        media_type = GenerationType.IMAGE if needs_face_swap else plan.media_type
        created = await self._recorder.create(
            HistoryRecord(
                user_id=user_id,
                original_prompt=request.prompt,
                enhanced_prompt=prompt,
                model_id=plan.model_id,
                generation_type=plan.media_type.value,
                media_type=media_type.value,
                base_model_ref=plan.model_ref,
                base_input=plan.input,
                status=HistoryStatus.PROCESSING.value,
                status_message=state.message,
                progress=state.progress,
                media_url=PENDING_MEDIA_URL,
                replicate_prediction_id=handle.id,
                face_swap_input_image=request.image_path if needs_face_swap else None,
            )
        )
        history_id = created.id if created else None
        logger.info("Visualization started prediction=%s history=%s face_swap=%s",
                    handle.id, history_id, needs_face_swap)

        return StartResponse(
            prediction_id=handle.id,
            history_id=history_id,
            needs_face_swap=needs_face_swap,
            face_swap_input_image=request.image_path if needs_face_swap else None,
            generation_type=media_type.value,
            model_id=request.model_id,
            enhanced_prompt=prompt,
            status=handle.status,
            progress=state.progress,
            message=state.message,
        )

    async def _prepare_prompt(self, request: VisualizationRequest) -> str:
        composed = compose_prompt(request.prompt, request.style, request.mood)
        if not request.enhance_prompt:
            return composed
        try:
            return await self._enhancer.enhance(request.prompt, request.style, request.mood)
        except EnhancementFailed as e:
            logger.warning("Prompt enhancement failed, using composed prompt: %s", e)
            return composed

    # ------------------------------------------------------------------
    # Poll call
    # ------------------------------------------------------------------

    async def check_status(self, request: PollRequest) -> PollResponse:
        """Run one poll cycle for the active prediction.

        Raises:
            ValidationError: no prediction id in the request.
            PollingTransportError: the provider could not be reached.
        """
        if not request.prediction_id:
            raise ValidationError("Missing 'predictionId' in request")

        kind = JobKind.FACE_SWAP if request.is_face_swap_prediction else JobKind.BASE_GENERATION
        job = await self._backend.get_job(request.prediction_id, kind)

        if request.history_id:
            record = await self._recorder.get(HistoryKey(id=request.history_id))
        else:
            record = await self._recorder.get(HistoryKey(prediction_id=job.id, kind=kind))

        poll = _Poll(
            job=job,
            kind=kind,
            record=record,
            history_id=request.history_id or (record.id if record else None),
            needs_face_swap=request.needs_face_swap,
            portrait_url=request.face_swap_input_image
            or (record.face_swap_input_image if record else None),
        )
        logger.info("Checking %s status=%s (%s)", poll.ids(), job.status, kind.value)

        response = PollResponse(
            prediction_id=job.id,
            history_id=poll.history_id,
            status=job.status,
            is_face_swap_prediction=request.is_face_swap_prediction,
            needs_face_swap=request.needs_face_swap,
        )
        state = state_for_poll(job.id, kind, record)

        # A restarted job leaves its old prediction behind; only the key the
        # row currently points at may drive writes.
        current_key = getattr(record, prediction_column(kind)) if record else None
        if current_key and current_key != job.id:
            logger.warning("Prediction %s was superseded by %s, not advancing %s",
                           job.id, current_key, poll.ids())
            response.next_prediction_id = current_key
            return self._replay_recorded(poll, state, response)

        try:
            # Only a job still in ``starting`` can be stuck; a finished job
            # always takes its next-stage transition instead.
            if job.status == JobStatus.STARTING:
                restarted = await self._check_stuck(poll, state, response)
                if restarted is not None:
                    return restarted
            return await self._advance(poll, state, response)
        except InvalidTransition as e:
            logger.warning("Ignoring out-of-order poll %s: %s", poll.ids(), e)
            return self._replay_recorded(poll, state, response)

    async def _advance(
        self, poll: _Poll, state: OrchestrationState, response: PollResponse
    ) -> PollResponse:
        status = poll.job.status
        if status in (JobStatus.STARTING, JobStatus.PROCESSING):
            return await self._on_progress(poll, state, response)
        if status == JobStatus.SUCCEEDED:
            return await self._on_succeeded(poll, state, response)
        if status in (JobStatus.FAILED, JobStatus.CANCELED):
            return await self._on_failed(poll, state, response)

        logger.warning("Unexpected status %r for %s", status, poll.ids())
        response.message = f"Unexpected status: {status}"
        response.stage = state.stage.value
        response.progress = state.progress
        return response

    async def _record(self, poll: _Poll, fields: Dict[str, Any], completed: bool = False) -> None:
        await self._recorder.upsert(poll.key, fields, completed=completed)

    # ------------------------------------------------------------------
    # Non-terminal polls
    # ------------------------------------------------------------------

    async def _on_progress(
        self, poll: _Poll, state: OrchestrationState, response: PollResponse
    ) -> PollResponse:
        status = JobStatus(poll.job.status)
        progress = estimate_progress(state.progress, poll.kind, status, poll.needs_face_swap)
        message = MESSAGES[(poll.kind, status)]
        state = state.transition(
            _PROGRESS_STAGES[(poll.kind, status)], progress=progress, message=message
        )

        response.stage = state.stage.value
        response.progress = state.progress
        if not response.is_likely_stuck:
            response.message = message

        await self._record(poll, {
            "status": _PROGRESS_HISTORY_STATUS[poll.kind][status].value,
            "status_message": response.message,
            "progress": state.progress,
        })
        return response

    # ------------------------------------------------------------------
    # Success
    # ------------------------------------------------------------------

    async def _on_succeeded(
        self, poll: _Poll, state: OrchestrationState, response: PollResponse
    ) -> PollResponse:
        try:
            output_url = extract_output_url(poll.job.output)
        except ExtractionFailed as e:
            logger.error("No output URL for %s: %s", poll.ids(), e)
            stage_label = "Face swap" if poll.is_face_swap else "Dream generation"
            state = state.transition(
                Stage.COMPLETED_WITH_ERROR,
                message=f"{stage_label} finished but returned no usable result",
            )
            response.success = False
            response.stage = state.stage.value
            response.progress = state.progress
            response.message = state.message
            response.error = e.message
            await self._record(poll, {
                "status": HistoryStatus.COMPLETED_WITH_ERROR.value,
                "status_message": state.message,
                "progress": state.progress,
                "error_message": e.message,
            }, completed=True)
            return response

        response.output_url = output_url

        if not poll.is_face_swap and poll.needs_face_swap:
            if poll.portrait_url:
                return await self._start_face_swap(poll, state, response, output_url)
            logger.warning("Face swap requested without a portrait for %s, finishing with base result",
                           poll.ids())

        return await self._finish(poll, state, response, output_url)

    async def _start_face_swap(
        self,
        poll: _Poll,
        state: OrchestrationState,
        response: PollResponse,
        base_url: str,
    ) -> PollResponse:
        # The base image is an intermediate: it is handed to the face swap
        # as-is and never copied to storage.
        state = _enter(state, Stage.BASE_SUCCEEDED)
        response.base_image_url = base_url

        existing = poll.record.face_swap_prediction_id if poll.record else None
        if existing:
            logger.info("Face swap already started for %s, reusing prediction=%s",
                        poll.ids(), existing)
            state = state.transition(
                Stage.FACE_SWAP_STARTING,
                prediction_id=existing,
                kind=JobKind.FACE_SWAP,
                progress=FACE_SWAP_STARTED_PROGRESS,
            )
            response.status = TRANSITIONING_TO_FACE_SWAP
            response.stage = state.stage.value
            response.next_prediction_id = existing
            response.progress = state.progress
            response.message = "Base image generated, starting face swap..."
            return response

        try:
            handle = await self._submitter.submit_face_swap(base_url, poll.portrait_url)
        except SubmissionFailed as e:
            logger.error("Face swap failed to start for %s: %s", poll.ids(), e)
            state = state.transition(
                Stage.COMPLETED_WITH_ERROR,
                message="Base image generated but face swap failed to start",
            )
            response.stage = state.stage.value
            response.progress = state.progress
            response.message = state.message
            response.error = f"Failed to start face swap: {e.message}"
            response.final_result_url = base_url
            await self._record(poll, {
                "status": HistoryStatus.FACE_SWAP_FAILED.value,
                "status_message": state.message,
                "progress": state.progress,
                "media_url": base_url,
                "original_url": base_url,
                "error_message": response.error,
            }, completed=True)
            return response

        state = state.transition(
            Stage.FACE_SWAP_STARTING,
            prediction_id=handle.id,
            kind=JobKind.FACE_SWAP,
            progress=FACE_SWAP_STARTED_PROGRESS,
            message="Base image generated, starting face swap...",
        )
        response.status = TRANSITIONING_TO_FACE_SWAP
        response.stage = state.stage.value
        response.next_prediction_id = handle.id
        response.progress = state.progress
        response.message = state.message

        # original_url holds the base image until the face swap finishes;
        # a stuck face swap is restarted from it.
        await self._record(poll, {
            "status": HistoryStatus.FACE_SWAP_STARTED.value,
            "status_message": "Face swap process started",
            "progress": state.progress,
            "face_swap_prediction_id": handle.id,
            "original_url": base_url,
        })
        logger.info("Face swap started %s next=%s", poll.ids(), handle.id)
        return response

    async def _finish(
        self,
        poll: _Poll,
        state: OrchestrationState,
        response: PollResponse,
        output_url: str,
    ) -> PollResponse:
        if not state.is_terminal:
            state = _enter(
                state, Stage.FACE_SWAP_SUCCEEDED if poll.is_face_swap else Stage.BASE_SUCCEEDED
            )
        done_message = (
            "Dream created successfully with face swap"
            if poll.is_face_swap
            else "Dream created successfully"
        )

        # Re-read right before the check so a concurrent poll's save is seen
        current = await self._recorder.get(poll.key)
        saved_now = False
        if current is not None and current.has_saved_media(poll.kind):
            final_url = current.media_url
            logger.info("Result already saved for %s, using existing URL", poll.ids())
        else:
            if current is None:
                logger.warning("No history record for %s, saving without the duplicate guard",
                               poll.ids())
            try:
                final_url = await self._media.persist(output_url, poll.job.id)
                saved_now = True
            except PersistenceFailed as e:
                logger.error("Failed to save result for %s: %s", poll.ids(), e)
                state = state.transition(
                    Stage.COMPLETED_WITH_ERROR,
                    progress=COMPLETE,
                    message="Dream generated but failed to save result",
                )
                response.stage = state.stage.value
                response.progress = state.progress
                response.message = state.message
                response.error = f"Failed to save result: {e.message}"
                response.final_result_url = output_url
                await self._record(poll, {
                    "status": HistoryStatus.COMPLETED_WITH_ERROR.value,
                    "status_message": state.message,
                    "progress": state.progress,
                    "original_url": output_url,
                    "error_message": response.error,
                }, completed=True)
                return response

        state = state.transition(Stage.COMPLETED, progress=COMPLETE, message=done_message)
        response.stage = state.stage.value
        response.progress = state.progress
        response.message = state.message
        response.final_result_url = final_url

        fields: Dict[str, Any] = {
            "status": HistoryStatus.COMPLETED.value,
            "status_message": done_message,
            "progress": COMPLETE,
            "media_url": final_url,
            "original_url": output_url,
            "error_message": None,
        }
        if saved_now:
            fields[saved_flag_column(poll.kind)] = True
        await self._record(poll, fields, completed=True)
        logger.info("Visualization completed %s", poll.ids())
        return response

    # ------------------------------------------------------------------
    # Failure
    # ------------------------------------------------------------------

    async def _on_failed(
        self, poll: _Poll, state: OrchestrationState, response: PollResponse
    ) -> PollResponse:
        subject = "Face swap" if poll.is_face_swap else "Dream generation"
        if poll.job.status == JobStatus.FAILED:
            stage, verb = Stage.FAILED, "failed"
            error = poll.job.error or "Unknown error"
            logger.error("Prediction failed %s: %s", poll.ids(), error)
        else:
            stage, verb = Stage.CANCELED, "was canceled"
            error = poll.job.error
            logger.warning("Prediction canceled %s", poll.ids())

        # Progress stays where it was
        state = state.transition(stage, message=f"{subject} {verb}")
        response.success = False
        response.stage = state.stage.value
        response.progress = state.progress
        response.message = state.message
        response.error = error

        fields: Dict[str, Any] = {
            "status": stage.value,
            "status_message": state.message,
            "progress": state.progress,
        }
        if error:
            fields["error_message"] = error
        await self._record(poll, fields, completed=True)
        return response

    def _replay_recorded(
        self, poll: _Poll, state: OrchestrationState, response: PollResponse
    ) -> PollResponse:
        """Answer from the history row without side effects."""
        response.stage = state.stage.value
        response.progress = state.progress
        response.message = state.message or None
        record = poll.record
        if record is not None:
            if record.media_url and record.media_url != PENDING_MEDIA_URL:
                response.final_result_url = record.media_url
            response.error = record.error_message
        return response

    # ------------------------------------------------------------------
    # Stuck jobs
    # ------------------------------------------------------------------

    async def _check_stuck(
        self, poll: _Poll, state: OrchestrationState, response: PollResponse
    ) -> Optional[PollResponse]:
        """Cancel and resubmit a job stuck in ``starting``.

        Returns the poll response when the job was restarted, None when the
        poll should carry on as a normal ``starting`` poll.
        """
        elapsed = poll.job.elapsed_seconds(self._clock())
        if elapsed is None:
            return None

        metadata = await self._metadata.ensure(poll.job.id, poll.history_id)
        if elapsed <= self._settings.stuck_threshold_seconds:
            return None

        elapsed_minutes = round(elapsed / 60, 1)
        response.is_likely_stuck = True
        response.elapsed_minutes = elapsed_minutes
        response.message = (
            "Face swap appears to be stuck in the starting phase. This may indicate image access issues."
            if poll.is_face_swap
            else "Generation appears to be stuck in the starting phase."
        )
        if metadata.cancellation_attempted:
            logger.warning("%s still starting after %.1f min, cancellation already attempted",
                           poll.ids(), elapsed_minutes)
            return None

        logger.warning("%s has been starting for %.1f min, attempting restart",
                       poll.ids(), elapsed_minutes)
        try:
            return await self._restart(poll, state, response)
        except StuckJob as e:
            logger.error("Restart failed for %s: %s", poll.ids(), e)
            return None

    async def _restart(
        self, poll: _Poll, state: OrchestrationState, response: PollResponse
    ) -> PollResponse:
        try:
            await self._backend.cancel_job(poll.job.id)
        except CancellationFailed as e:
            raise StuckJob(f"Could not cancel stuck prediction: {e.message}") from e
        await self._metadata.mark_cancellation_attempted(poll.job.id, poll.history_id)

        try:
            if poll.is_face_swap:
                base_url = poll.record.original_url if poll.record else None
                if not base_url or not poll.portrait_url:
                    raise StuckJob("Missing base URL or face URL for restart")
                handle = await self._submitter.submit_face_swap(base_url, poll.portrait_url)
            else:
                plan = self._plan_from_record(poll.record)
                handle = await self._submitter.submit_base(plan)
        except SubmissionFailed as e:
            raise StuckJob(f"Resubmission failed: {e.message}") from e

        if poll.is_face_swap:
            stage, progress = Stage.FACE_SWAP_STARTING, FACE_SWAP_STARTED_PROGRESS
            message = "Face swap was stuck in starting state and has been automatically restarted."
            history_status = HistoryStatus.FACE_SWAP_STARTED
            response.status = TRANSITIONING_TO_FACE_SWAP
        else:
            stage, progress = Stage.BASE_STARTING, BASE_STARTING_PROGRESS
            message = "Generation was stuck in starting state and has been automatically restarted."
            history_status = HistoryStatus.PROCESSING
            response.status = handle.status

        state = state.transition(
            stage,
            prediction_id=handle.id,
            progress=progress,
            message=message,
            reset_progress=True,
        )
        response.stage = state.stage.value
        response.progress = state.progress
        response.message = message
        response.next_prediction_id = handle.id
        response.new_prediction_id = handle.id
        response.face_swap_restarted = True

        await self._record(poll, {
            prediction_column(poll.kind): handle.id,
            "status": history_status.value,
            "status_message": message,
            "progress": state.progress,
            "face_swap_restarted": True,
        })
        logger.info("Restarted %s as prediction=%s", poll.ids(), handle.id)
        return response

    def _plan_from_record(self, record: Optional[HistoryRecord]) -> BasePlan:
        """Rebuild the base job exactly as it was first submitted.

        Rows written before base_input existed fall back to the prompt and
        model columns, which lose any generation parameters.
        """
        if record is None or not record.model_id or not record.generation_type:
            raise StuckJob("Missing generation inputs for restart")
        try:
            media_type = GenerationType(record.generation_type)
            if record.base_input and record.base_model_ref:
                return BasePlan(
                    model_id=record.model_id,
                    model_ref=record.base_model_ref,
                    media_type=media_type,
                    input=dict(record.base_input),
                )
            request = VisualizationRequest(
                generation_type=record.generation_type,
                model_id=record.model_id,
                prompt=record.enhanced_prompt or record.original_prompt,
                enable_face_swap=bool(record.face_swap_input_image),
                image_path=record.face_swap_input_image,
            )
            return plan_base_generation(request, media_type, request.prompt or "")
        except (ValidationError, ValueError) as e:
            raise StuckJob(f"Cannot rebuild generation inputs: {e}") from e
