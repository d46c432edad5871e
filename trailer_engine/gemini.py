"""
Gemini integration for trailer planning and keyframes.

- Anchor + scene scripts: Gemini Flash via REST, JSON responses
- Keyframes: Gemini image generation via REST, inline image data
"""

import os
import json
import base64
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from .pipeline.errors import ProviderError, ScriptValidationError, raise_for_provider_status
from .pipeline.models import (
    SCENE_DURATION_SECONDS,
    ROLE_SCENE_TYPES,
    SCENE_ROLES,
    SceneRole,
    SceneScript,
    StyleAnchor,
)

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY", "")
API_BASE = "https://generativelanguage.googleapis.com/v1beta"

TEXT_MODEL = os.getenv("GEMINI_TEXT_MODEL", "gemini-2.0-flash")
IMAGE_MODEL = os.getenv("GEMINI_IMAGE_MODEL", "gemini-2.0-flash-preview-image-generation")

TEXT_TIMEOUT = 60
IMAGE_TIMEOUT = 120

_SCENE_NUMBERS = {role: number for number, role in SCENE_ROLES.items()}


def _parse_json_response(text: str) -> dict:
    """Parse JSON from a Gemini response, handling markdown code blocks."""
    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        if "```" in text:
            json_block = text.split("```")[1]
            if json_block.startswith("json"):
                json_block = json_block[4:]
            try:
                return json.loads(json_block.strip())
            except json.JSONDecodeError:
                pass
        raise ScriptValidationError(f"Gemini returned invalid JSON: {text[:200]}")


def _first_text(result: dict) -> str:
    candidates = result.get("candidates") or []
    if not candidates:
        raise ScriptValidationError("Gemini returned no candidates")
    for part in candidates[0].get("content", {}).get("parts", []):
        if "text" in part:
            return part["text"]
    raise ScriptValidationError("Gemini response contained no text part")


# ── Prompts ──────────────────────────────────────────────────────────────────

ANCHOR_PROMPT = """You are the art director for a 24-second children's book trailer
made of three 8-second scenes (intro, body, outro).

Book title: {title}
Subtitle language: {language}

Return ONLY a JSON object with this structure:
{{
  "style_signature": {{"visual_style": "...", "color_palette": ["..."], "mood": "...",
                       "camera_language": "...", "genre": "..."}},
  "typography_plan": {{"subtitle_region": {{"zone": "bottom", "safe_area_percent": 90,
                       "font_size": 32, "max_lines": 2}}, "contrast": 4.5}},
  "storyboard": [{{"scene_number": 1, "subtitle_text": "..."}}, ...3 scenes],
  "safety_constraints": {{"forbidden_words": [], "forbidden_themes": [],
                          "required_tone": "...", "target_audience": "..."}}
}}

Subtitles must be short (max 20 Korean or 42 English characters per line)."""

SCENE_PROMPT = """Write scene {scene_number} ({scene_type}, role: {role}) of the trailer
for "{title}". Duration: {duration} seconds.

Visual style (mention it explicitly in every prompt): {visual_style}
Color palette: {palette}
Mood: {mood}
Camera: {camera}
Tone: {tone}. Audience: {audience}.
Never use: {forbidden}

Return ONLY a JSON object:
{{"narration": "...", "character_dialogue": null, "visual_description": "...",
  "keyframe_prompt": "...", "video_prompt": "..."}}"""


class GeminiClient:
    """
    REST client for the Gemini generateContent endpoint.

    Non-2xx responses raise ProviderError with the status code; unparseable
    output raises ScriptValidationError.
    """

    def __init__(
        self,
        api_key: str = GEMINI_API_KEY,
        text_model: str = TEXT_MODEL,
        image_model: str = IMAGE_MODEL,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.text_model = text_model
        self.image_model = image_model
        self._client = http_client

    @classmethod
    def from_env(cls) -> "GeminiClient":
        return cls()

    async def _generate_content(self, model: str, parts: list, config: dict, timeout: int) -> dict:
        if not self.api_key:
            raise ProviderError("GEMINI_API_KEY not set", provider="gemini")

        body = {"contents": [{"parts": parts}], "generationConfig": config}
        url = f"{API_BASE}/models/{model}:generateContent"

        if self._client is not None:
            response = await self._client.post(url, params={"key": self.api_key}, json=body, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(url, params={"key": self.api_key}, json=body)

        raise_for_provider_status(response, "gemini")
        return response.json()

    async def _generate_json(self, prompt: str) -> dict:
        result = await self._generate_content(
            self.text_model,
            [{"text": prompt}],
            {"temperature": 0.7, "responseMimeType": "application/json"},
            TEXT_TIMEOUT,
        )
        return _parse_json_response(_first_text(result))

    async def generate_anchor(self, title: str, language: str) -> StyleAnchor:
        data = await self._generate_json(ANCHOR_PROMPT.format(title=title, language=language))
        try:
            anchor = StyleAnchor.model_validate({**data, "title": title, "language": language})
        except ValidationError as e:
            raise ScriptValidationError(f"Invalid style anchor: {e}") from e

        logger.info(f"Style anchor generated for '{title}': {anchor.style_signature.visual_style}")
        return anchor

    async def generate_scene_script(self, anchor: StyleAnchor, role: SceneRole) -> SceneScript:
        scene_number = _SCENE_NUMBERS[role]
        signature = anchor.style_signature
        safety = anchor.safety_constraints
        prompt = SCENE_PROMPT.format(
            scene_number=scene_number,
            scene_type=ROLE_SCENE_TYPES[role],
            role=role.value,
            title=anchor.title,
            duration=SCENE_DURATION_SECONDS,
            visual_style=signature.visual_style,
            palette=", ".join(signature.color_palette),
            mood=signature.mood,
            camera=signature.camera_language,
            tone=safety.required_tone,
            audience=safety.target_audience,
            forbidden=", ".join(safety.forbidden_words + safety.forbidden_themes) or "-",
        )
        data = await self._generate_json(prompt)
        try:
            return SceneScript.model_validate({
                **data,
                "scene_number": scene_number,
                "role": role,
                "duration": SCENE_DURATION_SECONDS,
            })
        except ValidationError as e:
            raise ScriptValidationError(f"Invalid script for scene {scene_number}: {e}") from e

    async def generate_keyframe(self, prompt: str) -> bytes:
        result = await self._generate_content(
            self.image_model,
            [{"text": f"Vertical 9:16 keyframe. {prompt}"}],
            {"responseModalities": ["TEXT", "IMAGE"], "temperature": 0.7},
            IMAGE_TIMEOUT,
        )

        candidates = result.get("candidates", [])
        if not candidates:
            raise ProviderError("Gemini returned no candidates for keyframe", provider="gemini")

        for part in candidates[0].get("content", {}).get("parts", []):
            if "inlineData" in part:
                return base64.b64decode(part["inlineData"]["data"])

        raise ProviderError("Gemini response contained no image data", provider="gemini")
