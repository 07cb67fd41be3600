"""Job submitter: builds provider inputs and starts base and face-swap jobs."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict
from urllib.parse import urlsplit

import httpx

from visionary.config import Settings
from visionary.errors import SubmissionFailed, ValidationError
from visionary.io.media_reader import fetch_media
from visionary.jobs import catalog
from visionary.jobs.dispatcher import InferenceBackend
from visionary.jobs.models import GenerationType, JobHandle, JobKind, VisualizationRequest
from visionary.storage.access_urls import AccessUrlResolver

logger = logging.getLogger(__name__)

FACE_SWAP_IMAGE_SUFFIX = (
    "front facing portrait, face completely visible and unobstructed, no eyewear, "
    "no sunglasses, no glasses, clear eyes visible, natural lighting on face, "
    "professional photography, 4k, highly detailed"
)
FACE_SWAP_NEGATIVE_PROMPT = (
    "sunglasses, glasses, eyewear, dark glasses, shades, obscured eyes, "
    "covered eyes, hidden eyes"
)
FACE_SWAP_VIDEO_SUFFIX = "cinematic video, high quality, face visible"


@dataclass
class BasePlan:
    """Everything needed to (re)submit the base generation job."""
    model_id: str
    model_ref: str
    media_type: GenerationType
    input: Dict[str, Any] = field(default_factory=dict)


def validate_request(request: VisualizationRequest) -> GenerationType:
    """Check the start call and return its generation type."""
    if not request.generation_type:
        raise ValidationError(
            "generationType is required in the request body. Must be 'image' or 'video'."
        )
    try:
        generation_type = GenerationType(request.generation_type)
    except ValueError:
        raise ValidationError("generationType must be 'image' or 'video'.")
    if not request.model_id:
        raise ValidationError("modelId is required in the request body.")
    if not request.prompt or not request.prompt.strip():
        raise ValidationError("prompt is required in the request body.")
    if request.enable_face_swap:
        if not request.image_path:
            raise ValidationError(
                "imagePath (URL to user's face image) is required when enableFaceSwap is true."
            )
        parts = urlsplit(request.image_path)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValidationError(
                "Invalid imagePath provided for face swap. It must be a valid URL."
            )
    catalog.resolve_model(generation_type, request.model_id)
    return generation_type


def plan_base_generation(
    request: VisualizationRequest,
    generation_type: GenerationType,
    prompt: str,
) -> BasePlan:
    """Build the provider input for the first stage."""
    parameters = dict(request.parameters or {})
    model_id = request.model_id

    if not request.enable_face_swap:
        return BasePlan(
            model_id=model_id,
            model_ref=catalog.resolve_model(generation_type, model_id),
            media_type=generation_type,
            input={"prompt": prompt, **parameters},
        )

    target = (
        GenerationType.VIDEO
        if (request.face_swap_target_type or generation_type.value) == GenerationType.VIDEO.value
        else GenerationType.IMAGE
    )
    if generation_type != target:
        logger.warning(
            "Model %s is not a %s model, using default %s model for the face swap base",
            model_id, target.value, target.value,
        )
        model_id = catalog.DEFAULT_MODELS[target]

    if target == GenerationType.IMAGE:
        base_input = {
            "prompt": f"{prompt}, {FACE_SWAP_IMAGE_SUFFIX}",
            "negative_prompt": FACE_SWAP_NEGATIVE_PROMPT,
            **(parameters.get("imageGeneration") or {}),
        }
    else:
        base_input = {
            "prompt": f"{prompt}, {FACE_SWAP_VIDEO_SUFFIX}",
            **(parameters.get("videoGeneration") or {}),
        }

    return BasePlan(
        model_id=model_id,
        model_ref=catalog.resolve_model(target, model_id),
        media_type=target,
        input=base_input,
    )


class JobSubmitter:
    def __init__(
        self,
        backend: InferenceBackend,
        resolver: AccessUrlResolver,
        http: httpx.AsyncClient,
        settings: Settings,
    ):
        self._backend = backend
        self._resolver = resolver
        self._http = http
        self._settings = settings

    async def submit(self, kind: JobKind, model: str, input: Dict[str, Any]) -> JobHandle:
        try:
            handle = await self._backend.create_job(kind, model, input)
        except SubmissionFailed:
            raise
        except Exception as e:
            raise SubmissionFailed(f"Failed to start {kind.value} job: {e}") from e
        if not handle.id:
            raise SubmissionFailed(f"Provider returned no job id for {kind.value} job")
        return handle

    async def submit_base(self, plan: BasePlan) -> JobHandle:
        logger.info("Starting base %s generation with %s", plan.media_type.value, plan.model_ref)
        return await self.submit(JobKind.BASE_GENERATION, plan.model_ref, plan.input)

    async def submit_face_swap(
        self,
        base_image_url: str,
        portrait_url: str,
    ) -> JobHandle:
        """Start a face swap of ``portrait_url`` onto ``base_image_url``.

        Both images go through the access-URL resolver and are then fetched
        once to confirm the provider will be able to read them. An unreachable
        image is logged but does not block the submission.
        """
        accessible_base = await self._resolver.resolve(base_image_url)
        accessible_portrait = await self._resolver.resolve(portrait_url)

        if not await self._probe_content(accessible_base, "base image"):
            logger.warning("Base image may not be accessible to the provider")
        if not await self._probe_content(accessible_portrait, "portrait"):
            logger.warning("Portrait image may not be accessible to the provider")

        face_swap_input = {
            "input_image": accessible_base,
            "swap_image": accessible_portrait,
        }
        return await self.submit(JobKind.FACE_SWAP, self._settings.face_swap_model, face_swap_input)

    async def _probe_content(self, url: str, label: str) -> bool:
        """Full GET of ``url``; True when it returns a non-empty body."""
        if url.startswith("data:"):
            return len(url.split(",", 1)[-1]) > 0
        try:
            media = await fetch_media(self._http, url, self._settings.fetch_timeout_seconds)
        except httpx.HTTPError as e:
            logger.error("%s not accessible: %s", label.capitalize(), e)
            return False
        logger.info("%s accessibility OK, size=%d bytes, type=%s",
                    label.capitalize(), media.size, media.content_type)
        return media.size > 0
