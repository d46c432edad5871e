"""
QualityGate: aggregates the four component checks into one verdict.

    overall_score    = Σ component_score × weight
    passed_threshold = overall_score >= min_score
    PASS             = passed_threshold and safety, typography and consistency all PASS

Technical can lower the score but is never a hard gate on its own.
The retry signal is separate from the verdict and uses the more lenient
retry-trigger cutoffs.
"""

import logging
from typing import Optional, Sequence

from ..config import QCThresholds
from ..models import (
    ComponentScores,
    QCReport,
    QCStatus,
    RetrySignal,
    SceneUnit,
    StyleAnchor,
    VideoMetadata,
)
from .consistency import check_consistency
from .safety import check_safety
from .technical import check_technical
from .typography import check_typography

logger = logging.getLogger(__name__)

HARD_GATES = ("safety", "typography", "consistency")


class QualityGate:
    def __init__(self, thresholds: Optional[QCThresholds] = None):
        self.thresholds = thresholds or QCThresholds()

    def evaluate(
        self,
        job_id: str,
        anchor: StyleAnchor,
        scenes: Sequence[SceneUnit],
        clips: Optional[Sequence[VideoMetadata]] = None,
    ) -> QCReport:
        """
        Run every check and build the report.

        All four checks always run, so a safety failure still comes back
        with typography/consistency/technical detail attached.
        """
        t = self.thresholds
        scripts = [s.script for s in scenes if s.script is not None]

        typography = check_typography(anchor, scenes, t.typography)
        consistency = check_consistency(scripts, anchor, t.consistency)
        safety = check_safety(scripts, anchor.safety_constraints, t.min_tone_score)
        technical = check_technical(clips, t.technical, t.pass_cutoffs.technical)

        # Component cutoffs tighten the checkers' own verdicts
        if typography.score < t.pass_cutoffs.typography:
            typography = typography.model_copy(update={"status": QCStatus.FAIL})
        if consistency.score < t.pass_cutoffs.consistency:
            consistency = consistency.model_copy(update={"status": QCStatus.FAIL})
        if safety.score < t.pass_cutoffs.safety:
            safety = safety.model_copy(update={"status": QCStatus.FAIL})

        scores = ComponentScores(
            typography=typography.score,
            consistency=consistency.score,
            safety=safety.score,
            technical=technical.score,
        )
        w = t.weights
        overall_score = (
            scores.typography * w.typography
            + scores.consistency * w.consistency
            + scores.safety * w.safety
            + scores.technical * w.technical
        )
        passed_threshold = overall_score >= t.min_score

        overall = QCStatus.PASS
        if not passed_threshold:
            overall = QCStatus.FAIL
        for result in (safety, typography, consistency):
            if result.status == QCStatus.FAIL:
                overall = QCStatus.FAIL

        report = QCReport(
            job_id=job_id,
            overall=overall,
            overall_score=overall_score,
            passed_threshold=passed_threshold,
            component_scores=scores,
            typography=typography,
            consistency=consistency,
            safety=safety,
            technical=technical,
        )
        logger.info(
            f"[{job_id}] QC {overall.value}: score={overall_score:.2f} "
            f"(typo={scores.typography:.2f} cons={scores.consistency:.2f} "
            f"safety={scores.safety:.2f} tech={scores.technical:.2f})"
        )
        return report

    def retry_signal(
        self,
        report: QCReport,
        retry_count: int = 0,
        max_retries: int = 1,
    ) -> RetrySignal:
        """Whether a regeneration is worth it, and why."""
        if retry_count >= max_retries:
            return RetrySignal(should_retry=False, reason="Retry budget exhausted")

        triggers = self.thresholds.retry_triggers
        scores = report.component_scores
        violations = {
            "safety": report.safety.violations,
            "typography": report.typography.violations,
            "consistency": report.consistency.violations,
            "technical": report.technical.violations,
        }

        components = [
            name for name in ("safety", "typography", "consistency", "technical")
            if getattr(scores, name) < getattr(triggers, name)
        ]
        if not components:
            return RetrySignal(should_retry=False)

        reasons = []
        for name in components:
            worst = "; ".join(violations[name][:3]) or "below retry threshold"
            reasons.append(f"{name.capitalize()} ({getattr(scores, name):.2f}): {worst}")

        return RetrySignal(
            should_retry=True,
            components=components,
            reason=" | ".join(reasons),
        )
