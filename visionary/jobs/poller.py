"""Status poller: drives one visualization to a terminal state.

Calls the orchestrator's poll cycle every ``poll_interval_seconds`` from a
single asyncio task. When a poll hands over a new prediction (face swap
started, stuck job restarted) the poller stops polling the old key, waits
``poll_switch_delay_seconds`` and continues with the new one, so exactly
one key is ever polled at a time.
"""

import asyncio
import logging
from typing import Optional

from visionary.config import Settings
from visionary.errors import PollingTransportError
from visionary.orchestration.orchestrator import VisualizationOrchestrator
from visionary.orchestration.schemas import TRANSITIONING_TO_FACE_SWAP, PollRequest, PollResponse

logger = logging.getLogger(__name__)


class StatusPoller:
    """Polls until the visualization finishes. Await ``wait()`` for the result."""

    def __init__(
        self,
        orchestrator: VisualizationOrchestrator,
        request: PollRequest,
        settings: Settings,
    ):
        self._orchestrator = orchestrator
        self._request = request
        self._interval = settings.poll_interval_seconds
        self._switch_delay = settings.poll_switch_delay_seconds
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def prediction_id(self) -> Optional[str]:
        """The key currently being polled."""
        return self._request.prediction_id

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._running = True
            self._task = asyncio.create_task(self._poll_loop())
        return self._task

    async def stop(self) -> None:
        """Stop polling. The remote job keeps running."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def wait(self) -> PollResponse:
        """The terminal poll response.

        Raises:
            PollingTransportError: the provider stayed unreachable.
        """
        return await self.start()

    async def _poll_loop(self) -> PollResponse:
        while self._running:
            try:
                response = await self._orchestrator.check_status(self._request)
            except PollingTransportError as e:
                logger.error("Polling stopped for prediction=%s history=%s: %s",
                             self._request.prediction_id, self._request.history_id, e)
                raise

            if response.is_terminal:
                logger.info("Polling finished prediction=%s history=%s stage=%s",
                            response.prediction_id, response.history_id, response.stage)
                return response

            if response.next_prediction_id and response.next_prediction_id != self._request.prediction_id:
                await self._switch(response)
                continue

            await asyncio.sleep(self._interval)

        raise asyncio.CancelledError()

    async def _switch(self, response: PollResponse) -> None:
        is_face_swap = (
            self._request.is_face_swap_prediction
            or response.status == TRANSITIONING_TO_FACE_SWAP
        )
        logger.info("Switching poll from prediction=%s to prediction=%s (face_swap=%s)",
                    self._request.prediction_id, response.next_prediction_id, is_face_swap)
        self._request = self._request.model_copy(update={
            "prediction_id": response.next_prediction_id,
            "history_id": self._request.history_id or response.history_id,
            "is_face_swap_prediction": is_face_swap,
        })
        await asyncio.sleep(self._switch_delay)
