"""Inference backend interface (Replicate in production, fakes in tests)."""

from abc import ABC, abstractmethod
from typing import Any, Dict

from visionary.jobs.models import Job, JobHandle, JobKind


class InferenceBackend(ABC):
    """Abstract interface to a hosted inference provider."""

    @abstractmethod
    async def create_job(
        self, kind: JobKind, model: str, input: Dict[str, Any]
    ) -> JobHandle:
        """Submit a job. Raises SubmissionFailed."""
        ...

    @abstractmethod
    async def get_job(self, job_id: str, kind: JobKind) -> Job:
        """Fetch the current state of a job. Raises PollingTransportError."""
        ...

    @abstractmethod
    async def cancel_job(self, job_id: str) -> None:
        """Ask the provider to cancel a job. Raises CancellationFailed."""
        ...

    async def aclose(self) -> None:
        """Release transport resources."""
        return None
