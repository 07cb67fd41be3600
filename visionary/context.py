"""Application context built once per process in the FastAPI lifespan."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Set

import httpx

from visionary.config import Settings
from visionary.db.supabase_client import create_supabase
from visionary.history.metadata import ProcessingMetadataStore
from visionary.history.recorder import HistoryRecorder
from visionary.jobs.dispatcher import InferenceBackend
from visionary.jobs.poller import StatusPoller
from visionary.jobs.replicate_client import ReplicateClient
from visionary.jobs.submitter import JobSubmitter
from visionary.orchestration.orchestrator import VisualizationOrchestrator
from visionary.orchestration.schemas import PollRequest
from visionary.prompts.enhancer import PromptEnhancer
from visionary.storage.access_urls import AccessUrlResolver
from visionary.storage.media_store import MediaStore

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    supabase: object
    http: httpx.AsyncClient
    inference: InferenceBackend
    pollers: Set[StatusPoller] = field(default_factory=set)
    _orchestrator: Optional[VisualizationOrchestrator] = None
    _enhancer: Optional[PromptEnhancer] = None
    _recorder: Optional[HistoryRecorder] = None

    @classmethod
    def build(cls, settings: Settings) -> "AppContext":
        http = httpx.AsyncClient(timeout=settings.fetch_timeout_seconds)
        return cls(
            settings=settings,
            supabase=create_supabase(settings),
            http=http,
            inference=ReplicateClient(settings),
        )

    @property
    def enhancer(self) -> PromptEnhancer:
        if self._enhancer is None:
            self._enhancer = PromptEnhancer(self.http, self.settings)
        return self._enhancer

    @property
    def recorder(self) -> HistoryRecorder:
        if self._recorder is None:
            self._recorder = HistoryRecorder(self.supabase, self.settings)
        return self._recorder

    @property
    def orchestrator(self) -> VisualizationOrchestrator:
        if self._orchestrator is None:
            resolver = AccessUrlResolver(self.supabase, self.http, self.settings)
            self._orchestrator = VisualizationOrchestrator(
                backend=self.inference,
                submitter=JobSubmitter(self.inference, resolver, self.http, self.settings),
                recorder=self.recorder,
                metadata=ProcessingMetadataStore(self.supabase, self.settings),
                media_store=MediaStore(self.supabase, self.http, self.settings),
                enhancer=self.enhancer,
                settings=self.settings,
            )
        return self._orchestrator

    def spawn_poller(self, request: PollRequest) -> StatusPoller:
        """Poll a visualization to completion in the background."""
        poller = StatusPoller(self.orchestrator, request, self.settings)
        self.pollers.add(poller)
        poller.start().add_done_callback(lambda task: self._poller_done(poller, task))
        logger.info("Background polling started prediction=%s history=%s",
                    request.prediction_id, request.history_id)
        return poller

    def _poller_done(self, poller: StatusPoller, task: asyncio.Task) -> None:
        self.pollers.discard(poller)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background polling failed prediction=%s: %s", poller.prediction_id, error)

    async def aclose(self) -> None:
        # Remote jobs keep running; only local polling stops
        for poller in list(self.pollers):
            await poller.stop()
        await self.inference.aclose()
        await self.http.aclose()
