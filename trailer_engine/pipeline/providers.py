"""
Collaborator interfaces the engine is written against.

  ContentProvider  anchor, scene script, keyframe and video generation
  Assembler        muxes scene clips + subtitles into the final trailer
  MediaProbe       reads technical metadata of a stored clip

TrailerContentProvider composes the Gemini and Kie.ai clients into one
ContentProvider. Kie.ai only accepts image URLs, so keyframe bytes are
hosted through the storage provider before each video request.
"""

import hashlib
import logging
from typing import Optional, Protocol, Sequence

from .models import SCENE_DURATION_SECONDS, SceneRole, SceneScript, StyleAnchor, VideoMetadata
from .storage import StorageProvider, download_bytes

logger = logging.getLogger(__name__)


class ContentProvider(Protocol):
    async def generate_anchor(self, title: str, language: str) -> StyleAnchor: ...
    async def generate_scene_script(self, anchor: StyleAnchor, role: SceneRole) -> SceneScript: ...
    async def generate_keyframe(self, prompt: str) -> bytes: ...
    async def generate_video(
        self, keyframe: bytes, prompt: str, duration: int = SCENE_DURATION_SECONDS,
    ) -> bytes: ...


class Assembler(Protocol):
    async def assemble(
        self, job_id: str, scene_urls: Sequence[str], subtitle_url: Optional[str],
    ) -> bytes: ...


class MediaProbe(Protocol):
    async def probe(self, url: str) -> VideoMetadata: ...


class TrailerContentProvider:
    """Gemini for text and keyframes, Veo (Kie.ai) for video."""

    def __init__(self, text_and_image, video, storage: StorageProvider):
        self._gemini = text_and_image
        self._kie = video
        self._storage = storage

    async def generate_anchor(self, title: str, language: str) -> StyleAnchor:
        return await self._gemini.generate_anchor(title, language)

    async def generate_scene_script(self, anchor: StyleAnchor, role: SceneRole) -> SceneScript:
        return await self._gemini.generate_scene_script(anchor, role)

    async def generate_keyframe(self, prompt: str) -> bytes:
        return await self._gemini.generate_keyframe(prompt)

    async def generate_video(
        self, keyframe: bytes, prompt: str, duration: int = SCENE_DURATION_SECONDS,
    ) -> bytes:
        digest = hashlib.sha256(keyframe).hexdigest()[:16]
        key = f"trailers/refs/{digest}.png"
        if not await self._storage.exists(key):
            await self._storage.save(key, keyframe, {"content_type": "image/png"})
        image_url = self._storage.get_url(key)

        video_url = await self._kie.generate(image_url, prompt, duration)
        logger.info(f"Video generated from keyframe {digest}: {video_url}")
        return await download_bytes(video_url)
