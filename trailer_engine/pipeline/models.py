"""
Pydantic models and enums for the book trailer generation pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


SCENE_COUNT = 3
SCENE_DURATION_SECONDS = 8


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Status Enums ─────────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SceneStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class GenerationMode(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class Stage(str, Enum):
    SCRIPT = "script"
    KEYFRAME = "keyframe"
    VIDEO = "video"


STAGE_ORDER = [Stage.SCRIPT, Stage.KEYFRAME, Stage.VIDEO]


class QCStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"


class FailureKind(str, Enum):
    PROVIDER = "provider_failure"
    QC = "qc_failure"


# ── Scene Roles ──────────────────────────────────────────────────────────────

class SceneRole(str, Enum):
    HOOK = "hook"
    JOURNEY = "journey"
    PROMISE = "promise"


# Role the provider sees for each scene position
SCENE_ROLES = {
    1: SceneRole.HOOK,
    2: SceneRole.JOURNEY,
    3: SceneRole.PROMISE,
}

ROLE_SCENE_TYPES = {
    SceneRole.HOOK: "intro",
    SceneRole.JOURNEY: "body",
    SceneRole.PROMISE: "outro",
}


# ── Style Anchor ─────────────────────────────────────────────────────────────

class StyleSignature(BaseModel):
    visual_style: str = ""           # e.g. "soft 2D watercolor animation"
    color_palette: list[str] = Field(default_factory=list)
    mood: str = ""
    camera_language: str = ""
    genre: str = ""
    consistency_hash: str = ""


class SubtitleRegion(BaseModel):
    zone: str = "bottom"
    safe_area_percent: float = 90
    font_size: int = 32
    max_lines: int = 2


class TypographyPlan(BaseModel):
    subtitle_region: SubtitleRegion = Field(default_factory=SubtitleRegion)
    font_family: str = "Noto Sans"
    text_color: str = "#FFFFFF"
    background_color: str = "#000000"
    contrast: float = 4.5


class SafetyConstraints(BaseModel):
    forbidden_words: list[str] = Field(default_factory=list)
    forbidden_themes: list[str] = Field(default_factory=list)
    required_tone: str = "positive, uplifting"
    target_audience: str = "children ages 5-12"


class StoryboardScene(BaseModel):
    scene_number: int
    subtitle_text: str = ""


class StyleAnchor(BaseModel):
    """Job-level visual/tone constraints every scene must conform to."""
    job_id: str = ""
    title: str
    language: str = "ko"
    style_signature: StyleSignature = Field(default_factory=StyleSignature)
    typography_plan: TypographyPlan = Field(default_factory=TypographyPlan)
    storyboard: list[StoryboardScene] = Field(default_factory=list)
    safety_constraints: SafetyConstraints = Field(default_factory=SafetyConstraints)
    created_at: str = Field(default_factory=now_iso)

    def subtitle_for(self, scene_number: int) -> Optional[str]:
        for scene in self.storyboard:
            if scene.scene_number == scene_number:
                return scene.subtitle_text
        return None


# ── Scene Script ─────────────────────────────────────────────────────────────

class SceneScript(BaseModel):
    scene_number: int
    role: SceneRole
    narration: str
    character_dialogue: Optional[str] = None
    visual_description: str = ""
    keyframe_prompt: str
    video_prompt: str
    duration: int = SCENE_DURATION_SECONDS

    def style_text(self) -> str:
        """Lower-cased visual text used by the consistency checks."""
        return " ".join(
            [self.visual_description, self.keyframe_prompt, self.video_prompt]
        ).lower()


# ── Scene / Stage State ──────────────────────────────────────────────────────

class StageAttempt(BaseModel):
    stage: Stage
    provider_call: str
    succeeded: bool
    artifact: Optional[str] = None
    error: Optional[str] = None
    attempted_at: str = Field(default_factory=now_iso)


class SceneUnit(BaseModel):
    scene_number: int
    role: SceneRole
    status: SceneStatus = SceneStatus.PENDING
    script: Optional[SceneScript] = None
    keyframe_url: Optional[str] = None
    video_url: Optional[str] = None
    retry_count: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    attempts: list[StageAttempt] = Field(default_factory=list)
    generated_at: Optional[str] = None

    @property
    def scene_type(self) -> str:
        return ROLE_SCENE_TYPES[self.role]


def initialize_scenes() -> list[SceneUnit]:
    """Fresh pending scene units, one per fixed role."""
    return [
        SceneUnit(scene_number=number, role=role)
        for number, role in SCENE_ROLES.items()
    ]


class VideoMetadata(BaseModel):
    width: int
    height: int
    duration: float
    fps: Optional[float] = None
    codec: Optional[str] = None


# ── QC Results ───────────────────────────────────────────────────────────────

class TypographyCheck(BaseModel):
    scene: int
    check_name: str
    passed: bool
    expected: str
    actual: str
    message: Optional[str] = None


class TypographyResult(BaseModel):
    status: QCStatus
    score: float
    checks: list[TypographyCheck] = Field(default_factory=list)
    violations: list[str] = Field(default_factory=list)


class ConsistencyResult(BaseModel):
    status: QCStatus
    score: float
    anchor_match: float = 0.0
    scene_to_scene: float = 0.0
    color_palette_drift: float = 0.0
    style_signature_match: bool = False
    violations: list[str] = Field(default_factory=list)


class SafetyResult(BaseModel):
    status: QCStatus
    score: float
    forbidden_words_found: list[str] = Field(default_factory=list)
    theme_violations: list[str] = Field(default_factory=list)
    tone_score: float = 0.0
    violations: list[str] = Field(default_factory=list)


class TechnicalResult(BaseModel):
    status: QCStatus
    score: float
    violations: list[str] = Field(default_factory=list)


class ComponentScores(BaseModel):
    typography: float
    consistency: float
    safety: float
    technical: float


class QCReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    overall: QCStatus
    overall_score: float
    passed_threshold: bool
    component_scores: ComponentScores
    typography: TypographyResult
    consistency: ConsistencyResult
    safety: SafetyResult
    technical: TechnicalResult
    timestamp: str = Field(default_factory=now_iso)


class RetrySignal(BaseModel):
    should_retry: bool
    components: list[str] = Field(default_factory=list)
    reason: str = ""


# ── Cost ─────────────────────────────────────────────────────────────────────

class CostBreakdown(BaseModel):
    anchor_generation: float = 0.0
    script_generation: float = 0.0
    keyframe_generation: float = 0.0
    video_generation: float = 0.0
    retries: float = 0.0
    total: float = 0.0


class ApiCallCounts(BaseModel):
    script: int = 0
    keyframe: int = 0
    video: int = 0


class CostReport(BaseModel):
    job_id: str
    breakdown: CostBreakdown = Field(default_factory=CostBreakdown)
    api_calls: ApiCallCounts = Field(default_factory=ApiCallCounts)
    retry_breakdown: dict[int, int] = Field(default_factory=dict)
    elapsed_ms: int = 0
    cache_hit: bool = False
    timestamp: str = Field(default_factory=now_iso)


# ── Job / Result ─────────────────────────────────────────────────────────────

class TrailerRequest(BaseModel):
    title: str = Field(..., min_length=1)
    author: Optional[str] = None
    language: str = Field("ko", pattern="^(ko|en)$")
    force_sequential: bool = False


class TrailerResult(BaseModel):
    job_id: str
    status: JobStatus
    current_step: str = ""
    progress_pct: int = 0
    video_url: Optional[str] = None
    subtitle_url: Optional[str] = None
    scene_urls: list[str] = Field(default_factory=list)
    scenes_succeeded: int = 0
    qc_report: Optional[QCReport] = None
    cost_report: Optional[CostReport] = None
    cache_hit: bool = False
    mode: GenerationMode = GenerationMode.PARALLEL
    error: Optional[str] = None
    error_kind: Optional[FailureKind] = None
    created_at: str = Field(default_factory=now_iso)
    completed_at: Optional[str] = None


class CacheEntry(BaseModel):
    cache_key: str
    job_id: str
    video_url: str
    subtitle_url: str
    qc_report: QCReport
    cost_report: CostReport
    mode: GenerationMode = GenerationMode.PARALLEL
    request_count: int = 1
    created_at: str
    expires_at: str


# ── Retry State ──────────────────────────────────────────────────────────────

class RetryStage(str, Enum):
    SCRIPT = "script"
    KEYFRAME = "keyframe"
    VIDEO = "video"
    DONE = "done"
    FAILED = "failed"


class RetryLimits(BaseModel):
    """Max failures tolerated per stage before the scene is failed."""
    model_config = ConfigDict(frozen=True)

    script: int = 3
    keyframe: int = 3
    video: int = 2  # video generation is the expensive call

    def for_stage(self, stage: Stage) -> int:
        return getattr(self, stage.value)

    def default_max_total_attempts(self) -> int:
        # Every scene gets one attempt per stage plus its full retry budget
        return SCENE_COUNT * (len(STAGE_ORDER) + self.script + self.keyframe + self.video)


class SceneRetryState(BaseModel):
    model_config = ConfigDict(frozen=True)

    scene_number: int
    current_stage: RetryStage = RetryStage.SCRIPT
    script_retries: int = 0
    keyframe_retries: int = 0
    video_retries: int = 0
    last_error: Optional[str] = None
    script: Optional[SceneScript] = None
    keyframe: Optional[bytes] = None
    keyframe_url: Optional[str] = None

    def retries_for(self, stage: Stage) -> int:
        return getattr(self, f"{stage.value}_retries")


class JobRetryState(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    scenes: tuple[SceneRetryState, ...]
    limits: RetryLimits = Field(default_factory=RetryLimits)
    total_attempts: int = 0
    max_total_attempts: int

    def scene(self, scene_number: int) -> SceneRetryState:
        return self.scenes[scene_number - 1]


class GenerationJob(BaseModel):
    """Mutable per-job state owned by the orchestrator for the job's lifetime."""
    job_id: str
    request: TrailerRequest
    mode: GenerationMode = GenerationMode.PARALLEL
    status: JobStatus = JobStatus.PENDING
    anchor: Optional[StyleAnchor] = None
    scenes: list[SceneUnit] = Field(default_factory=initialize_scenes)
    retry_state: Optional[JobRetryState] = None
    retry_rounds: int = 0
    created_at: str = Field(default_factory=now_iso)
    completed_at: Optional[str] = None
    error: Optional[str] = None
