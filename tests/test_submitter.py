import pytest

from visionary.errors import SubmissionFailed, ValidationError
from visionary.jobs.models import GenerationType, JobKind, VisualizationRequest
from visionary.jobs.submitter import (
    FACE_SWAP_NEGATIVE_PROMPT,
    JobSubmitter,
    plan_base_generation,
    validate_request,
)
from visionary.storage.access_urls import AccessUrlResolver

PORTRAIT = "https://example.com/me.jpg"


def request(**fields):
    base = dict(generation_type="image", model_id="flux-dev", prompt="a lighthouse")
    base.update(fields)
    return VisualizationRequest(**base)


@pytest.mark.parametrize(
    "fields, message",
    [
        ({"generation_type": None}, "generationType is required"),
        ({"generation_type": "audio"}, "must be 'image' or 'video'"),
        ({"model_id": None}, "modelId is required"),
        ({"prompt": "   "}, "prompt is required"),
        ({"enable_face_swap": True}, "imagePath"),
        ({"enable_face_swap": True, "image_path": "not a url"}, "valid URL"),
        ({"model_id": "minimax-video-01"}, "Available models"),
    ],
)
def test_validate_request_rejects(fields, message):
    with pytest.raises(ValidationError, match=message):
        validate_request(request(**fields))


def test_plain_plan_passes_parameters_through():
    plan = plan_base_generation(
        request(parameters={"aspect_ratio": "16:9"}), GenerationType.IMAGE, "a lighthouse"
    )
    assert plan.model_ref == "black-forest-labs/flux-dev"
    assert plan.input == {"prompt": "a lighthouse", "aspect_ratio": "16:9"}


def test_face_swap_plan_asks_for_visible_face():
    plan = plan_base_generation(
        request(
            enable_face_swap=True,
            image_path=PORTRAIT,
            parameters={"imageGeneration": {"num_outputs": 1}},
        ),
        GenerationType.IMAGE,
        "a lighthouse",
    )
    assert plan.input["prompt"].startswith("a lighthouse, front facing portrait")
    assert plan.input["negative_prompt"] == FACE_SWAP_NEGATIVE_PROMPT
    assert plan.input["num_outputs"] == 1


def test_face_swap_plan_uses_default_model_for_other_target():
    plan = plan_base_generation(
        request(enable_face_swap=True, image_path=PORTRAIT, face_swap_target_type="video"),
        GenerationType.IMAGE,
        "a lighthouse",
    )
    assert plan.media_type == GenerationType.VIDEO
    assert plan.model_id == "zeroscope-v2-xl"


@pytest.mark.asyncio
async def test_submit_face_swap_resolves_and_probes_inputs(backend, supabase, http, settings, media_server):
    submitter = JobSubmitter(backend, AccessUrlResolver(supabase, http, settings), http, settings)

    handle = await submitter.submit_face_swap("https://replicate.delivery/base.png", PORTRAIT)

    assert handle.kind == JobKind.FACE_SWAP
    _, model, payload = backend.created[0]
    assert model == settings.face_swap_model
    assert payload == {"input_image": "https://replicate.delivery/base.png", "swap_image": PORTRAIT}
    assert set(media_server.gets()) == {"https://replicate.delivery/base.png", PORTRAIT}


@pytest.mark.asyncio
async def test_unreachable_input_does_not_block_submission(backend, supabase, http, settings, media_server):
    media_server.fail_get = True
    submitter = JobSubmitter(backend, AccessUrlResolver(supabase, http, settings), http, settings)

    handle = await submitter.submit_face_swap("https://replicate.delivery/base.png", PORTRAIT)
    assert handle.id == "fs-1"


@pytest.mark.asyncio
async def test_submit_wraps_backend_errors(supabase, http, settings, backend):
    class Broken(type(backend)):
        async def create_job(self, kind, model, input):
            raise RuntimeError("boom")

    submitter = JobSubmitter(Broken(), AccessUrlResolver(supabase, http, settings), http, settings)
    with pytest.raises(SubmissionFailed, match="boom"):
        await submitter.submit(JobKind.BASE_GENERATION, "owner/model", {})
