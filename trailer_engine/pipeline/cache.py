"""
Content-addressed result cache.

Keys are the SHA-256 of the normalized book identity:

    sha256("{title}")              when no author is given
    sha256("{title}::{author}")    otherwise

Entries live for a fixed TTL (90 days by default) and are evicted lazily on
lookup or in bulk via `clean_expired()`. The storage backend is injected:

  InMemoryCacheBackend   dict, process lifetime
  RedisCacheBackend      JSON values under `trailercache:{key}`

There is no single-flight: two concurrent misses for the same title both
generate, and the later `set` wins.
"""

import re
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, Optional, Protocol

from .config import CacheSettings
from .models import CacheEntry, CostReport, GenerationMode, QCReport

logger = logging.getLogger(__name__)

KEY_SEPARATOR = "::"

_PUNCTUATION = re.compile(r"[^\w\s]|_")
_WHITESPACE = re.compile(r"\s+")


# ── Key Derivation ───────────────────────────────────────────────────────────

def normalize_title(text: str) -> str:
    """
    Trim, lowercase, strip punctuation and collapse whitespace.

    Letters and digits of any script (Hangul included) are kept.
    Idempotent: normalize_title(normalize_title(x)) == normalize_title(x).
    """
    lowered = (text or "").strip().lower()
    stripped = _PUNCTUATION.sub("", lowered)
    return _WHITESPACE.sub(" ", stripped).strip()


def generate_cache_key(title: str, author: Optional[str] = None) -> str:
    identity = normalize_title(title)
    if author and normalize_title(author):
        identity = f"{identity}{KEY_SEPARATOR}{normalize_title(author)}"
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Backends ─────────────────────────────────────────────────────────────────

class CacheBackend(Protocol):
    def load(self, key: str) -> Optional[CacheEntry]: ...
    def store(self, entry: CacheEntry) -> None: ...
    def remove(self, key: str) -> bool: ...
    def entries(self) -> Iterator[CacheEntry]: ...
    def clear(self) -> int: ...
    def close(self) -> None: ...


class InMemoryCacheBackend:
    def __init__(self):
        self._entries: dict[str, CacheEntry] = {}

    def load(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def store(self, entry: CacheEntry) -> None:
        self._entries[entry.cache_key] = entry

    def remove(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def entries(self) -> Iterator[CacheEntry]:
        return iter(list(self._entries.values()))

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def close(self) -> None:
        self._entries.clear()


class RedisCacheBackend:
    """
    Redis-backed entries, one JSON string per key.

    Redis' own expiry is set to the entry's `expires_at` as a backstop;
    the cache still checks `expires_at` itself on every read.
    """

    def __init__(self, redis_client, prefix: str = "trailercache:"):
        self._redis = redis_client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "trailercache:") -> "RedisCacheBackend":
        import redis

        client = redis.from_url(url, decode_responses=False)
        client.ping()
        logger.info(f"Result cache connected to Redis: {url[:30]}...")
        return cls(client, prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def load(self, key: str) -> Optional[CacheEntry]:
        raw = self._redis.get(self._key(key))
        if raw is None:
            return None
        return CacheEntry.model_validate_json(raw)

    def store(self, entry: CacheEntry) -> None:
        ttl = int((_parse_ts(entry.expires_at) - _utcnow()).total_seconds())
        self._redis.set(self._key(entry.cache_key), entry.model_dump_json(), ex=max(1, ttl))

    def remove(self, key: str) -> bool:
        return bool(self._redis.delete(self._key(key)))

    def entries(self) -> Iterator[CacheEntry]:
        for redis_key in self._redis.scan_iter(match=f"{self._prefix}*"):
            raw = self._redis.get(redis_key)
            if raw is not None:
                yield CacheEntry.model_validate_json(raw)

    def clear(self) -> int:
        keys = list(self._redis.scan_iter(match=f"{self._prefix}*"))
        if not keys:
            return 0
        return int(self._redis.delete(*keys))

    def close(self) -> None:
        self._redis.close()


def build_cache_backend(settings: CacheSettings) -> CacheBackend:
    if settings.redis_url:
        try:
            return RedisCacheBackend.from_url(settings.redis_url, settings.key_prefix)
        except Exception as e:
            logger.warning(f"Redis unavailable for result cache ({e}), using in-memory cache")
    return InMemoryCacheBackend()


# ── Result Cache ─────────────────────────────────────────────────────────────

class ResultCache:
    """
    Usage:
        cache = ResultCache(InMemoryCacheBackend())
        if cache.has(title, author):
            entry = cache.get(title, author)
        ...
        cache.close()
    """

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        ttl_days: int = 90,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._backend = backend or InMemoryCacheBackend()
        self.ttl = timedelta(days=ttl_days)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> "ResultCache":
        return cls(build_cache_backend(settings), ttl_days=settings.ttl_days)

    def _is_expired(self, entry: CacheEntry) -> bool:
        return self._clock() >= _parse_ts(entry.expires_at)

    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._backend.load(key)
        if entry is None:
            return None
        if self._is_expired(entry):
            self._backend.remove(key)
            logger.info(f"Cache entry expired and evicted: {key[:12]}")
            return None
        return entry

    def has(self, title: str, author: Optional[str] = None) -> bool:
        return self._live_entry(generate_cache_key(title, author)) is not None

    def get(self, title: str, author: Optional[str] = None) -> Optional[CacheEntry]:
        """Return the live entry and bump its request counter."""
        key = generate_cache_key(title, author)
        entry = self._live_entry(key)
        if entry is None:
            return None

        entry = entry.model_copy(update={"request_count": entry.request_count + 1})
        self._backend.store(entry)
        logger.info(f"Cache hit: '{title}' ({entry.request_count} requests)")
        return entry

    def set(
        self,
        title: str,
        author: Optional[str],
        *,
        job_id: str,
        video_url: str,
        subtitle_url: str,
        qc_report: QCReport,
        cost_report: CostReport,
        mode: GenerationMode = GenerationMode.PARALLEL,
    ) -> CacheEntry:
        now = self._clock()
        entry = CacheEntry(
            cache_key=generate_cache_key(title, author),
            job_id=job_id,
            video_url=video_url,
            subtitle_url=subtitle_url,
            qc_report=qc_report,
            cost_report=cost_report,
            mode=mode,
            request_count=1,
            created_at=now.isoformat(),
            expires_at=(now + self.ttl).isoformat(),
        )
        self._backend.store(entry)
        logger.info(f"[{job_id}] Cached result for '{title}' until {entry.expires_at}")
        return entry

    def delete(self, title: str, author: Optional[str] = None) -> bool:
        return self._backend.remove(generate_cache_key(title, author))

    def clear(self) -> int:
        count = self._backend.clear()
        logger.info(f"Cache cleared: {count} entries")
        return count

    def clean_expired(self) -> int:
        expired = [e.cache_key for e in self._backend.entries() if self._is_expired(e)]
        for key in expired:
            self._backend.remove(key)
        if expired:
            logger.info(f"Cleaned {len(expired)} expired cache entries")
        return len(expired)

    def stats(self) -> dict:
        entries = list(self._backend.entries())
        total_requests = sum(e.request_count for e in entries)
        return {
            "total_entries": len(entries),
            "total_requests": total_requests,
            "average_requests_per_entry": (
                total_requests / len(entries) if entries else 0
            ),
        }

    def close(self) -> None:
        self._backend.close()
