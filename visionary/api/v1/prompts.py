"""Prompt enhancement endpoint."""

from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from visionary.errors import ValidationError

router = APIRouter()

# Set by main.py during lifespan
_enhancer = None


def set_enhancer(enhancer):
    global _enhancer
    _enhancer = enhancer


class EnhancePromptRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    prompt: Optional[str] = None
    style: Optional[str] = None
    mood: Optional[str] = None


class EnhancePromptResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    original_prompt: str
    enhanced_prompt: str


@router.post("/enhance-prompt", response_model=EnhancePromptResponse, response_model_by_alias=True)
async def enhance_prompt(request: EnhancePromptRequest):
    """Rewrite a short prompt into a detailed generation prompt."""
    if _enhancer is None:
        raise HTTPException(status_code=503, detail="Prompt enhancer not initialized")
    if not request.prompt or not request.prompt.strip():
        raise ValidationError("prompt is required in the request body.")

    enhanced = await _enhancer.enhance(request.prompt, request.style, request.mood)
    return EnhancePromptResponse(original_prompt=request.prompt, enhanced_prompt=enhanced)
