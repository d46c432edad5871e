"""
Veo 3.1 image-to-video via Kie.ai.

Submit a generation task with the hosted keyframe as reference, then poll
`veo/record-info` until the task settles.
"""

import os
import asyncio
import logging
from typing import Optional

import httpx

from .pipeline.backoff import call_with_backoff
from .pipeline.errors import ProviderError, RateLimitError, raise_for_provider_status

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

KIE_API_KEY = os.getenv("KIE_API_KEY", "")
KIE_API_BASE = "https://api.kie.ai/api/v1"
KIE_MODEL = os.getenv("KIE_VIDEO_MODEL", "veo3_fast")

POLL_INTERVAL = 10  # seconds
MAX_POLL_ATTEMPTS = 90  # 15 minutes max


def _extract_video_url(record: dict) -> Optional[str]:
    url = record.get("video_url") or record.get("videoUrl") or record.get("resultUrl")
    if url:
        return url

    response = record.get("response") or {}
    urls = response.get("resultUrls") or []
    if urls:
        return urls[0]

    works = record.get("works", [])
    if works and isinstance(works, list):
        return works[0].get("resource", {}).get("resource")
    return None


class KieVideoClient:
    def __init__(
        self,
        api_key: str = KIE_API_KEY,
        model: str = KIE_MODEL,
        poll_interval: float = POLL_INTERVAL,
        max_poll_attempts: int = MAX_POLL_ATTEMPTS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self._client = http_client

    @classmethod
    def from_env(cls) -> "KieVideoClient":
        return cls()

    @property
    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, timeout: int, **kwargs) -> dict:
        url = f"{KIE_API_BASE}/{path}"
        if self._client is not None:
            response = await self._client.request(method, url, headers=self._headers, timeout=timeout, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.request(method, url, headers=self._headers, **kwargs)

        raise_for_provider_status(response, "kie")
        data = response.json()

        # Kie.ai reports some failures as 200 with an error code in the body
        code = data.get("code")
        if code == 429:
            raise RateLimitError(data.get("msg") or "Kie.ai rate limited", provider="kie")
        if isinstance(code, int) and code >= 400:
            raise ProviderError(f"Kie.ai error {code}: {data.get('msg')}", code, provider="kie")
        return data

    async def submit(self, image_url: str, prompt: str, duration: int = 8) -> str:
        payload = {
            "prompt": prompt,
            "model": self.model,
            "aspectRatio": "9:16",
            "imageUrls": [image_url],
            "duration": duration,
        }
        data = await self._request("POST", "veo/generate", 30, json=payload)

        task_id = (data.get("data") or {}).get("taskId") or (data.get("data") or {}).get("task_id") or data.get("task_id")
        if not task_id:
            raise ProviderError(f"Kie.ai submit failed, no task_id: {data}", provider="kie")

        logger.info(f"Veo 3.1 generation submitted: task_id={task_id}")
        return task_id

    async def poll(self, task_id: str) -> str:
        """Wait for the task to settle and return the hosted video URL."""
        for attempt in range(self.max_poll_attempts):
            await asyncio.sleep(self.poll_interval)

            # A flaky status read should not throw away a paid generation
            status_data = await call_with_backoff(
                self._request, "GET", "veo/record-info", 15,
                params={"taskId": task_id},
                attempts=3,
                label="kie.poll",
            )
            record = status_data.get("data") or status_data
            status = str(record.get("status", "")).lower()
            flag = record.get("successFlag")

            logger.info(f"Veo poll #{attempt + 1}: status={status or flag}")

            if flag == 1 or status in ("success", "completed"):
                video_url = _extract_video_url(record)
                if not video_url:
                    raise ProviderError(f"Veo completed but no video URL in response: {record}", provider="kie")
                return video_url

            if flag in (2, 3) or status in ("failed", "error"):
                message = record.get("errorMessage") or record.get("message") or "Unknown Veo error"
                raise ProviderError(f"Veo generation failed: {message}", provider="kie")

        raise TimeoutError(f"Veo generation timed out after {self.max_poll_attempts * self.poll_interval}s")

    async def generate(self, image_url: str, prompt: str, duration: int = 8) -> str:
        task_id = await self.submit(image_url, prompt, duration)
        return await self.poll(task_id)
