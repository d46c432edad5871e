"""
Artifact storage for the pipeline.

All job artifacts are stored under:
  trailers/{job_id}/keyframe_{n}.png
  trailers/{job_id}/scene_{n}.mp4
  trailers/{job_id}/subtitles.vtt
  trailers/{job_id}/trailer.mp4 | trailer.json

Two backends share the StorageProvider protocol:
  LocalStorageProvider: files under a root directory (dev / tests)
  S3StorageProvider:    boto3 against the R2 S3-compatible endpoint
"""

import os
import logging
from pathlib import Path
from typing import Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local")
STORAGE_LOCAL_ROOT = os.getenv("STORAGE_LOCAL_ROOT", "./data/artifacts")
STORAGE_PUBLIC_URL = os.getenv("STORAGE_PUBLIC_URL", "")

R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "assets")


# ── Keys ─────────────────────────────────────────────────────────────────────

def keyframe_key(job_id: str, scene_number: int) -> str:
    return f"trailers/{job_id}/keyframe_{scene_number}.png"


def scene_video_key(job_id: str, scene_number: int) -> str:
    return f"trailers/{job_id}/scene_{scene_number}.mp4"


def subtitle_key(job_id: str) -> str:
    return f"trailers/{job_id}/subtitles.vtt"


def trailer_key(job_id: str, extension: str = "mp4") -> str:
    return f"trailers/{job_id}/trailer.{extension}"


class StorageProvider(Protocol):
    async def save(self, key: str, data: bytes, metadata: Optional[dict] = None) -> str: ...
    async def load(self, key: str) -> bytes: ...
    async def exists(self, key: str) -> bool: ...
    def get_url(self, key: str) -> str: ...


# ── Local ────────────────────────────────────────────────────────────────────

class LocalStorageProvider:
    """Stores artifacts on disk. Locators are file:// URLs unless a public base URL is set."""

    def __init__(self, root: str = STORAGE_LOCAL_ROOT, public_url: str = STORAGE_PUBLIC_URL):
        self.root = Path(root).resolve()
        self.public_url = public_url.rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise ValueError(f"Storage key escapes root: {key}")
        return path

    async def save(self, key: str, data: bytes, metadata: Optional[dict] = None) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info(f"Saved {len(data)} bytes to {path}")
        return self.get_url(key)

    async def load(self, key: str) -> bytes:
        return self._path(key).read_bytes()

    async def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def get_url(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{key}"
        return self._path(key).as_uri()


# ── S3 / R2 ──────────────────────────────────────────────────────────────────

class S3StorageProvider:
    """
    S3-compatible storage (Cloudflare R2 by default).

    Usage:
        storage = S3StorageProvider.from_env()
        url = await storage.save("trailers/abc/scene_1.mp4", data, {"content_type": "video/mp4"})
    """

    def __init__(self, client, bucket: str = R2_BUCKET_NAME, public_url: str = R2_PUBLIC_URL):
        self._s3 = client
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")

    @classmethod
    def from_env(cls) -> "S3StorageProvider":
        import boto3
        from botocore.config import Config as BotoConfig

        s3 = boto3.client(
            "s3",
            endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
            aws_access_key_id=R2_ACCESS_KEY_ID,
            aws_secret_access_key=R2_SECRET_ACCESS_KEY,
            config=BotoConfig(signature_version="s3v4"),
            region_name="auto",
        )
        return cls(s3)

    async def save(self, key: str, data: bytes, metadata: Optional[dict] = None) -> str:
        metadata = metadata or {}
        try:
            self._s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=metadata.get("content_type", "application/octet-stream"),
            )
        except Exception as e:
            logger.error(f"R2 upload failed for key={key}: {e}")
            raise

        url = self.get_url(key)
        logger.info(f"Uploaded to R2: {url}")
        return url

    async def load(self, key: str) -> bytes:
        obj = self._s3.get_object(Bucket=self.bucket, Key=key)
        return obj["Body"].read()

    async def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            self._s3.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise

    def get_url(self, key: str) -> str:
        return f"{self.public_url}/{key}"


def build_storage_provider(backend: str = STORAGE_BACKEND) -> StorageProvider:
    if backend in ("r2", "s3"):
        return S3StorageProvider.from_env()
    return LocalStorageProvider()


async def download_bytes(url: str) -> bytes:
    """Download a provider-hosted artifact and return raw bytes."""
    async with httpx.AsyncClient(timeout=60) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.content
