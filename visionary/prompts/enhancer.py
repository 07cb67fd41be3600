"""Prompt composition and LLM prompt enhancement."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from visionary.config import Settings
from visionary.errors import EnhancementFailed

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You rewrite short personal goals into vivid, concrete prompts for an image "
    "or video generation model. Describe the scene, subject, lighting and camera "
    "in one paragraph of at most 80 words. Keep the person as the main subject. "
    "Reply with the prompt only."
)


def compose_prompt(prompt: str, style: Optional[str] = None, mood: Optional[str] = None) -> str:
    """Fold style and mood selections into the prompt text."""
    parts = [prompt.strip()]
    if style:
        parts.append(f"{style} style")
    if mood:
        parts.append(f"{mood} mood")
    return ", ".join(parts)


class PromptEnhancer:
    def __init__(self, http: httpx.AsyncClient, settings: Settings):
        self._http = http
        self._settings = settings

    @property
    def enabled(self) -> bool:
        return bool(self._settings.openai_api_key)

    async def enhance(
        self,
        prompt: str,
        style: Optional[str] = None,
        mood: Optional[str] = None,
    ) -> str:
        if not self.enabled:
            raise EnhancementFailed("Prompt enhancement is not configured")

        request = prompt.strip()
        if style:
            request += f"\nStyle: {style}"
        if mood:
            request += f"\nMood: {mood}"

        payload: Dict[str, Any] = {
            "model": self._settings.prompt_enhancer_model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": request},
            ],
            "temperature": 0.7,
            "max_tokens": 300,
        }
        url = f"{self._settings.openai_base_url.rstrip('/')}/chat/completions"
        try:
            r = await self._http.post(
                url,
                headers={
                    "Authorization": f"Bearer {self._settings.openai_api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
                timeout=60.0,
            )
            r.raise_for_status()
            out = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise EnhancementFailed(f"Prompt enhancement failed: {e}") from e

        content = (
            (((out.get("choices") or [{}])[0]).get("message") or {}).get("content")
            or ""
        ).strip()
        if not content:
            raise EnhancementFailed("No enhanced prompt received")
        return content
