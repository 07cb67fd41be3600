import json

import httpx
import pytest

from visionary.errors import CancellationFailed, PollingTransportError, SubmissionFailed
from visionary.jobs.models import JobKind
from visionary.jobs.replicate_client import ReplicateClient

BASE = "https://api.replicate.com/v1"


def client_for(settings, handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ReplicateClient(settings, http=http)


@pytest.mark.asyncio
async def test_versioned_model_posts_to_predictions(settings):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201, json={"id": "p1", "status": "starting"})

    client = client_for(settings, handler)
    handle = await client.create_job(JobKind.FACE_SWAP, "cdingram/face-swap:abc123", {"a": 1})

    assert handle.id == "p1"
    assert str(seen[0].url) == f"{BASE}/predictions"
    assert json.loads(seen[0].content) == {"version": "abc123", "input": {"a": 1}}
    assert seen[0].headers["Authorization"] == "Bearer r8-token"


@pytest.mark.asyncio
async def test_unversioned_model_posts_to_model_endpoint(settings):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201, json={"id": "p2", "status": "starting"})

    client = client_for(settings, handler)
    await client.create_job(JobKind.BASE_GENERATION, "black-forest-labs/flux-schnell", {"prompt": "x"})

    assert str(seen[0].url) == f"{BASE}/models/black-forest-labs/flux-schnell/predictions"
    assert json.loads(seen[0].content) == {"input": {"prompt": "x"}}


@pytest.mark.asyncio
async def test_rejected_submission(settings):
    client = client_for(settings, lambda r: httpx.Response(422, json={"detail": "bad input"}))
    with pytest.raises(SubmissionFailed, match="422"):
        await client.create_job(JobKind.BASE_GENERATION, "owner/model", {})


@pytest.mark.asyncio
async def test_submission_without_id(settings):
    client = client_for(settings, lambda r: httpx.Response(201, json={"status": "starting"}))
    with pytest.raises(SubmissionFailed):
        await client.create_job(JobKind.BASE_GENERATION, "owner/model", {})


@pytest.mark.asyncio
async def test_missing_token_fails_submission(settings):
    settings.replicate_api_token = ""
    client = client_for(settings, lambda r: httpx.Response(201, json={"id": "p1"}))
    with pytest.raises(SubmissionFailed, match="token"):
        await client.create_job(JobKind.BASE_GENERATION, "owner/model", {})


@pytest.mark.asyncio
async def test_get_job_maps_prediction(settings):
    body = {
        "id": "p1",
        "status": "succeeded",
        "created_at": "2025-03-01T12:00:00.000000Z",
        "output": ["https://replicate.delivery/out.png"],
        "error": None,
    }
    client = client_for(settings, lambda r: httpx.Response(200, json=body))

    job = await client.get_job("p1", JobKind.BASE_GENERATION)

    assert job.status == "succeeded"
    assert job.output == ["https://replicate.delivery/out.png"]
    assert job.created_at is not None


@pytest.mark.asyncio
async def test_get_job_retries_transient_errors(settings):
    answers = iter([
        httpx.Response(503, text="busy"),
        httpx.Response(200, json={"id": "p1", "status": "processing"}),
    ])
    client = client_for(settings, lambda r: next(answers))

    job = await client.get_job("p1", JobKind.BASE_GENERATION)
    assert job.status == "processing"


@pytest.mark.asyncio
async def test_get_job_transport_failure(settings):
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    client = client_for(settings, handler)
    with pytest.raises(PollingTransportError):
        await client.get_job("p1", JobKind.BASE_GENERATION)


@pytest.mark.asyncio
async def test_get_job_html_reply_is_transport_error(settings):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, text="<html>gateway</html>", headers={"content-type": "text/html"})

    client = client_for(settings, handler)
    with pytest.raises(PollingTransportError):
        await client.get_job("p1", JobKind.BASE_GENERATION)
    assert len(calls) == 1


@pytest.mark.parametrize("body", [
    {"id": "p1", "status": "processing", "created_at": "yesterday-ish"},
    ["not", "an", "object"],
])
@pytest.mark.asyncio
async def test_get_job_malformed_prediction_is_transport_error(settings, body):
    client = client_for(settings, lambda r: httpx.Response(200, json=body))

    with pytest.raises(PollingTransportError):
        await client.get_job("p1", JobKind.BASE_GENERATION)


@pytest.mark.asyncio
async def test_submission_html_reply(settings):
    client = client_for(settings, lambda r: httpx.Response(201, text="<html></html>"))

    with pytest.raises(SubmissionFailed):
        await client.create_job(JobKind.BASE_GENERATION, "owner/model", {"prompt": "x"})


@pytest.mark.asyncio
async def test_cancel(settings):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"id": "p1", "status": "canceled"})

    client = client_for(settings, handler)
    await client.cancel_job("p1")
    assert str(seen[0].url) == f"{BASE}/predictions/p1/cancel"

    failing = client_for(settings, lambda r: httpx.Response(404, text="not found"))
    with pytest.raises(CancellationFailed):
        await failing.cancel_job("p1")
