"""User-facing model ids mapped to Replicate model references."""

from typing import Dict

from visionary.errors import ValidationError
from visionary.jobs.models import GenerationType

SUPPORTED_MODELS: Dict[GenerationType, Dict[str, str]] = {
    GenerationType.IMAGE: {
        "flux-1.1-pro": "black-forest-labs/flux-1.1-pro",
        "flux-schnell": "black-forest-labs/flux-schnell",
        "flux-dev": "black-forest-labs/flux-dev",
        "ideogram-v2": "ideogram-ai/ideogram-v2",
        "recraft-v3": "recraft-ai/recraft-v3",
        "stable-diffusion-xl": "stability-ai/stable-diffusion-xl-base-1.0",
    },
    GenerationType.VIDEO: {
        "minimax-video-01": "minimax/video-01",
        "zeroscope-v2-xl": "anotherjesse/zeroscope-v2-xl",
        "stable-video-diffusion": "stability-ai/stable-video-diffusion",
        "tencent-hunyuan-video": "tencent/hunyuan-video",
        "wan-2.1-t2v": "wavespeedai/wan-2.1-t2v-480p",
    },
}

# Used when a face swap targets a media type the selected model cannot produce
DEFAULT_MODELS = {
    GenerationType.IMAGE: "flux-1.1-pro",
    GenerationType.VIDEO: "zeroscope-v2-xl",
}


def resolve_model(generation_type: GenerationType, model_id: str) -> str:
    """Return the provider reference for ``model_id`` or raise ValidationError."""
    models = SUPPORTED_MODELS[generation_type]
    if model_id not in models:
        raise ValidationError(
            f"Unsupported model ID '{model_id}' for {generation_type.value} generation. "
            f"Available models: {', '.join(models)}"
        )
    return models[model_id]
