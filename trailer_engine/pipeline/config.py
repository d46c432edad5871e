"""
Runtime configuration for the trailer pipeline.

Every tunable has a code default and an environment override. Values are
read when the `from_env()` constructors are called (at app startup), so
`load_dotenv()` must run before the service is built.
"""

import os
import logging

from pydantic import BaseModel, ConfigDict, Field

from .models import RetryLimits, Stage

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw.strip())
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# ── Pricing ──────────────────────────────────────────────────────────────────

class PricingTable(BaseModel):
    """Per-call unit prices in USD."""
    model_config = ConfigDict(frozen=True)

    script: float = 0.01     # text model, per scene script
    keyframe: float = 0.05   # image model, per keyframe
    video: float = 0.90      # video model, per 8-second clip
    anchor: float = 0.01     # text model, per style anchor

    def unit_price(self, stage: Stage) -> float:
        return getattr(self, stage.value)

    @property
    def per_attempt(self) -> float:
        return self.script + self.keyframe + self.video

    @classmethod
    def from_env(cls) -> "PricingTable":
        return cls(
            script=_env_float("PRICE_SCRIPT", 0.01),
            keyframe=_env_float("PRICE_KEYFRAME", 0.05),
            video=_env_float("PRICE_VIDEO", 0.90),
            anchor=_env_float("PRICE_ANCHOR", 0.01),
        )


# ── Retry ────────────────────────────────────────────────────────────────────

def retry_limits_from_env() -> RetryLimits:
    return RetryLimits(
        script=_env_int("RETRY_SCRIPT_LIMIT", 3),
        keyframe=_env_int("RETRY_KEYFRAME_LIMIT", 3),
        video=_env_int("RETRY_VIDEO_LIMIT", 2),
    )


class RetryPolicy(BaseModel):
    """
    Delays and round limits shared by the scene orchestrator and the
    job driver.

    Stage-level backoff is `stage_backoff_base * 2 ** (failures - 1)`,
    capped at `stage_backoff_max`.
    """
    model_config = ConfigDict(frozen=True)

    limits: RetryLimits = Field(default_factory=RetryLimits)
    max_total_attempts: int = 0            # 0 → derived from limits
    inter_scene_delay: float = 2.0
    inter_retry_delay: float = 3.0
    stage_backoff_base: float = 2.0
    stage_backoff_max: float = 30.0
    max_retry_rounds: int = 3
    max_scene_retries: int = 3
    max_qc_regenerations: int = 1
    anchor_attempts: int = 3
    discard_batch_on_rate_limit: bool = True

    @property
    def job_attempt_ceiling(self) -> int:
        return self.max_total_attempts or self.limits.default_max_total_attempts()

    def stage_backoff(self, failures: int) -> float:
        if failures <= 0 or self.stage_backoff_base <= 0:
            return 0.0
        return min(self.stage_backoff_max, self.stage_backoff_base * (2 ** (failures - 1)))

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        return cls(
            limits=retry_limits_from_env(),
            max_total_attempts=_env_int("RETRY_MAX_TOTAL_ATTEMPTS", 0),
            inter_scene_delay=_env_float("SCENE_DELAY_SECONDS", 2.0),
            inter_retry_delay=_env_float("RETRY_DELAY_SECONDS", 3.0),
            stage_backoff_base=_env_float("RETRY_BACKOFF_BASE_SECONDS", 2.0),
            stage_backoff_max=_env_float("RETRY_BACKOFF_MAX_SECONDS", 30.0),
            max_retry_rounds=_env_int("RETRY_MAX_ROUNDS", 3),
            max_scene_retries=_env_int("RETRY_MAX_PER_SCENE", 3),
            max_qc_regenerations=_env_int("QC_MAX_REGENERATIONS", 1),
            anchor_attempts=_env_int("ANCHOR_MAX_ATTEMPTS", 3),
            discard_batch_on_rate_limit=_env_bool("DISCARD_BATCH_ON_RATE_LIMIT", True),
        )


# ── Quality Gate ─────────────────────────────────────────────────────────────

class ComponentWeights(BaseModel):
    model_config = ConfigDict(frozen=True)

    typography: float = 0.25
    consistency: float = 0.30
    safety: float = 0.30
    technical: float = 0.15


class ComponentCutoffs(BaseModel):
    model_config = ConfigDict(frozen=True)

    typography: float
    consistency: float
    safety: float
    technical: float


class TypographyRules(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_chars: dict[str, int] = Field(default_factory=lambda: {"ko": 20, "en": 42})
    max_lines: int = 2
    safe_zone: str = "bottom"
    min_safe_area_percent: float = 90
    min_font_size: int = 24
    min_contrast: float = 4.5

    def max_chars_for(self, language: str) -> int:
        return self.max_chars.get(language, self.max_chars.get("en", 42))


class ConsistencyRules(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_anchor_match: float = 0.75
    min_scene_to_scene: float = 0.80
    max_palette_drift: float = 0.20


class TechnicalRules(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_width: int = 720
    min_height: int = 1280
    min_duration: float = 7.5
    max_duration: float = 8.5
    min_fps: float = 24
    resolution_penalty: float = 0.3
    duration_penalty: float = 0.2
    fps_penalty: float = 0.1


class QCThresholds(BaseModel):
    model_config = ConfigDict(frozen=True)

    weights: ComponentWeights = Field(default_factory=ComponentWeights)
    min_score: float = 0.75
    pass_cutoffs: ComponentCutoffs = Field(
        default_factory=lambda: ComponentCutoffs(
            typography=0.8, consistency=0.7, safety=1.0, technical=0.7,
        )
    )
    # More lenient than the pass cutoffs: below these a retry is worth it
    retry_triggers: ComponentCutoffs = Field(
        default_factory=lambda: ComponentCutoffs(
            typography=0.6, consistency=0.5, safety=1.0, technical=0.5,
        )
    )
    min_tone_score: float = 0.7
    typography: TypographyRules = Field(default_factory=TypographyRules)
    consistency: ConsistencyRules = Field(default_factory=ConsistencyRules)
    technical: TechnicalRules = Field(default_factory=TechnicalRules)

    @classmethod
    def from_env(cls) -> "QCThresholds":
        return cls(min_score=_env_float("QC_MIN_SCORE", 0.75))


# ── Cache ────────────────────────────────────────────────────────────────────

class CacheSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    ttl_days: int = 90
    redis_url: str = ""
    key_prefix: str = "trailercache:"

    @classmethod
    def from_env(cls) -> "CacheSettings":
        return cls(
            ttl_days=_env_int("CACHE_TTL_DAYS", 90),
            redis_url=os.getenv("REDIS_URL", ""),
            key_prefix=os.getenv("CACHE_KEY_PREFIX", "trailercache:"),
        )
