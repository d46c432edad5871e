"""
CostAccountant: prices a finished job's provider usage.

Accounting is deliberately coarse: every retry is assumed to have re-run
all three stages, so `retries = Σ retry_count × (script + keyframe + video)`
and each call type is counted once per scene attempt. This overstates
retry cost when only one stage was reissued.
"""

import logging
from typing import Optional, Sequence

from .config import PricingTable
from .models import (
    SCENE_COUNT,
    ApiCallCounts,
    CostBreakdown,
    CostReport,
    SceneStatus,
    SceneUnit,
)

logger = logging.getLogger(__name__)


class CostAccountant:
    def __init__(self, pricing: Optional[PricingTable] = None):
        self.pricing = pricing or PricingTable()

    def generate_report(
        self,
        job_id: str,
        scenes: Sequence[SceneUnit],
        anchor_cost: float = 0.0,
        elapsed_ms: int = 0,
        cache_hit: bool = False,
    ) -> CostReport:
        if cache_hit:
            return CostReport(
                job_id=job_id,
                retry_breakdown={n: 0 for n in range(1, SCENE_COUNT + 1)},
                elapsed_ms=elapsed_ms,
                cache_hit=True,
            )

        p = self.pricing
        succeeded = sum(1 for s in scenes if s.status == SceneStatus.SUCCESS)
        total_retries = sum(s.retry_count for s in scenes)

        script_cost = succeeded * p.script
        keyframe_cost = succeeded * p.keyframe
        video_cost = succeeded * p.video
        retry_cost = total_retries * p.per_attempt

        # One call per type per scene attempt; a failed scene's final attempt
        # is already inside its retry count
        attempts = sum(
            s.retry_count + 1 if s.status == SceneStatus.SUCCESS else s.retry_count
            for s in scenes
        )

        breakdown = CostBreakdown(
            anchor_generation=anchor_cost,
            script_generation=script_cost,
            keyframe_generation=keyframe_cost,
            video_generation=video_cost,
            retries=retry_cost,
            total=anchor_cost + script_cost + keyframe_cost + video_cost + retry_cost,
        )
        report = CostReport(
            job_id=job_id,
            breakdown=breakdown,
            api_calls=ApiCallCounts(script=attempts, keyframe=attempts, video=attempts),
            retry_breakdown={s.scene_number: s.retry_count for s in scenes},
            elapsed_ms=elapsed_ms,
        )
        logger.info(f"[{job_id}] Cost ${breakdown.total:.2f} ({total_retries} retries)")
        return report

    def estimate(self, scene_count: int = SCENE_COUNT) -> CostBreakdown:
        """Pre-run estimate: one anchor plus one clean pass per scene, no retries."""
        p = self.pricing
        return CostBreakdown(
            anchor_generation=p.anchor,
            script_generation=p.script * scene_count,
            keyframe_generation=p.keyframe * scene_count,
            video_generation=p.video * scene_count,
            retries=0.0,
            total=p.anchor + p.per_attempt * scene_count,
        )

    @staticmethod
    def format_report(report: CostReport) -> str:
        b = report.breakdown
        lines = [
            f"Cost Report for Job {report.job_id}",
            "=" * 50,
            f"Cache Hit: {'YES (no cost)' if report.cache_hit else 'NO'}",
            "",
            "Breakdown:",
            f"  Anchor Generation:    ${b.anchor_generation:.2f}",
            f"  Script Generation:    ${b.script_generation:.2f}",
            f"  Keyframe Generation:  ${b.keyframe_generation:.2f}",
            f"  Video Generation:     ${b.video_generation:.2f}",
            f"  Retries:              ${b.retries:.2f}",
            "  " + "-" * 30,
            f"  Total:                ${b.total:.2f}",
            "",
            "API Calls:",
            f"  Script:    {report.api_calls.script}",
            f"  Keyframe:  {report.api_calls.keyframe}",
            f"  Video:     {report.api_calls.video}",
            "",
            "Retries per Scene:",
        ]
        lines.extend(
            f"  Scene {n}: {count}" for n, count in sorted(report.retry_breakdown.items())
        )
        lines.extend(["", f"Elapsed: {report.elapsed_ms / 1000:.1f}s"])
        return "\n".join(lines)
