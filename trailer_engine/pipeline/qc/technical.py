"""Technical media check: resolution, clip duration and frame rate."""

from typing import Optional, Sequence

from ..config import TechnicalRules
from ..models import QCStatus, TechnicalResult, VideoMetadata


def score_clip(metadata: VideoMetadata, rules: TechnicalRules) -> tuple[float, list[str]]:
    score = 1.0
    violations = []

    if metadata.width < rules.min_width or metadata.height < rules.min_height:
        score -= rules.resolution_penalty
        violations.append(
            f"Resolution {metadata.width}x{metadata.height} below "
            f"{rules.min_width}x{rules.min_height}"
        )
    if not rules.min_duration <= metadata.duration <= rules.max_duration:
        score -= rules.duration_penalty
        violations.append(
            f"Duration {metadata.duration:g}s outside "
            f"{rules.min_duration:g}-{rules.max_duration:g}s"
        )
    # Unknown frame rate is not penalised
    if metadata.fps is not None and metadata.fps < rules.min_fps:
        score -= rules.fps_penalty
        violations.append(f"Frame rate {metadata.fps:g} below {rules.min_fps:g}")

    return max(0.0, score), violations


def check_technical(
    clips: Optional[Sequence[VideoMetadata]],
    rules: TechnicalRules,
    pass_cutoff: float = 0.7,
) -> TechnicalResult:
    """Mean of per-clip scores; 1.0 when no metadata is available."""
    if not clips:
        return TechnicalResult(status=QCStatus.PASS, score=1.0)

    scores = []
    violations = []
    for index, clip in enumerate(clips, start=1):
        score, clip_violations = score_clip(clip, rules)
        scores.append(score)
        violations.extend(f"Scene {index}: {v}" for v in clip_violations)

    score = sum(scores) / len(scores)
    return TechnicalResult(
        status=QCStatus.PASS if score >= pass_cutoff else QCStatus.FAIL,
        score=score,
        violations=violations,
    )
