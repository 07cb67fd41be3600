"""Replicate predictions API client."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from visionary.config import Settings
from visionary.errors import CancellationFailed, PollingTransportError, SubmissionFailed
from visionary.jobs.dispatcher import InferenceBackend
from visionary.jobs.models import Job, JobHandle, JobKind

logger = logging.getLogger(__name__)


class _RetryableStatus(Exception):
    """Provider answered 5xx or 429; worth another attempt."""


def _split_reference(model: str) -> tuple[str, Optional[str]]:
    """Split ``owner/name:version`` into ``(owner/name, version)``."""
    if ":" in model:
        name, version = model.split(":", 1)
        return name, version
    return model, None


class ReplicateClient(InferenceBackend):
    """Submit, poll and cancel predictions over the Replicate HTTP API."""

    def __init__(self, settings: Settings, http: Optional[httpx.AsyncClient] = None):
        self.base = settings.replicate_base_url.rstrip("/")
        self._token = settings.replicate_api_token
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=settings.replicate_timeout_seconds)

    def _headers(self) -> Dict[str, str]:
        if not self._token:
            raise SubmissionFailed("Server configuration error: Replicate API token missing")
        return {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def create_job(
        self, kind: JobKind, model: str, input: Dict[str, Any]
    ) -> JobHandle:
        name, version = _split_reference(model)
        if version:
            url = f"{self.base}/predictions"
            payload: Dict[str, Any] = {"version": version, "input": input}
        else:
            url = f"{self.base}/models/{name}/predictions"
            payload = {"input": input}

        logger.info("Submitting %s job to %s", kind.value, model)
        try:
            r = await self._http.post(url, headers=self._headers(), json=payload)
        except httpx.HTTPError as e:
            raise SubmissionFailed(f"Replicate submit failed for {model}: {e}") from e

        if r.status_code >= 400:
            raise SubmissionFailed(
                f"Replicate submit failed {r.status_code} for {model}: {r.text[:300]}"
            )

        try:
            data = r.json()
        except ValueError as e:
            raise SubmissionFailed(
                f"Replicate submit for {model} returned non-JSON: {r.text[:300]}"
            ) from e
        job_id = data.get("id") if isinstance(data, dict) else None
        if not job_id:
            raise SubmissionFailed(f"Replicate submit returned no prediction id: {data}")

        logger.info("Submitted %s job prediction=%s", kind.value, job_id)
        return JobHandle(id=str(job_id), kind=kind, status=data.get("status") or "starting")

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4.0),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError, _RetryableStatus)),
    )
    async def _fetch_prediction(self, job_id: str) -> Dict[str, Any]:
        r = await self._http.get(f"{self.base}/predictions/{job_id}", headers=self._headers())
        if r.status_code == 429 or r.status_code >= 500:
            raise _RetryableStatus(f"{r.status_code}: {r.text[:200]}")
        if r.status_code >= 400:
            raise PollingTransportError(
                f"Replicate status check failed {r.status_code} for {job_id}: {r.text[:300]}"
            )
        try:
            return r.json()
        except ValueError as e:
            raise PollingTransportError(
                f"Replicate status check for {job_id} returned non-JSON: {r.text[:200]}"
            ) from e

    async def get_job(self, job_id: str, kind: JobKind) -> Job:
        try:
            data = await self._fetch_prediction(job_id)
        except PollingTransportError:
            raise
        except (httpx.HTTPError, _RetryableStatus, SubmissionFailed) as e:
            raise PollingTransportError(f"Could not reach Replicate for {job_id}: {e}") from e

        try:
            error = data.get("error")
            return Job(
                id=str(data.get("id") or job_id),
                kind=kind,
                status=str(data.get("status") or ""),
                created_at=data.get("created_at"),
                output=data.get("output"),
                error=str(error) if error else None,
            )
        except (AttributeError, ValueError) as e:
            raise PollingTransportError(
                f"Unreadable Replicate status for {job_id}: {e}"
            ) from e

    async def cancel_job(self, job_id: str) -> None:
        try:
            r = await self._http.post(
                f"{self.base}/predictions/{job_id}/cancel", headers=self._headers()
            )
        except (httpx.HTTPError, SubmissionFailed) as e:
            raise CancellationFailed(f"Replicate cancel failed for {job_id}: {e}") from e
        if r.status_code >= 400:
            raise CancellationFailed(
                f"Replicate cancel failed {r.status_code} for {job_id}: {r.text[:300]}"
            )
        logger.info("Canceled prediction=%s", job_id)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
