"""
Typography & layout check.

Five sub-checks per scene subtitle, each worth the same share of the score:
line length, line count, safe-area placement, font size and contrast.
Any failed sub-check fails the component.
"""

from typing import Sequence

from ..config import TypographyRules
from ..models import QCStatus, SceneUnit, StyleAnchor, TypographyCheck, TypographyResult


def check_typography(
    anchor: StyleAnchor,
    scenes: Sequence[SceneUnit],
    rules: TypographyRules,
) -> TypographyResult:
    plan = anchor.typography_plan
    region = plan.subtitle_region
    max_chars = rules.max_chars_for(anchor.language)
    checks: list[TypographyCheck] = []

    for scene in scenes:
        n = scene.scene_number
        text = anchor.subtitle_for(n) or ""
        lines = text.split("\n")
        longest = max(len(line) for line in lines)

        checks.append(TypographyCheck(
            scene=n,
            check_name="subtitle_line_length",
            passed=longest <= max_chars,
            expected=f"<= {max_chars} chars",
            actual=f"{longest} chars",
            message=None if longest <= max_chars else "Subtitle exceeds max line length",
        ))

        checks.append(TypographyCheck(
            scene=n,
            check_name="subtitle_max_lines",
            passed=len(lines) <= rules.max_lines,
            expected=f"<= {rules.max_lines} lines",
            actual=f"{len(lines)} lines",
            message=None if len(lines) <= rules.max_lines else "Too many subtitle lines",
        ))

        in_safe_area = (
            region.zone == rules.safe_zone
            and region.safe_area_percent >= rules.min_safe_area_percent
        )
        checks.append(TypographyCheck(
            scene=n,
            check_name="subtitle_safe_area",
            passed=in_safe_area,
            expected=f"{rules.safe_zone} {rules.min_safe_area_percent:g}%",
            actual=f"{region.zone} {region.safe_area_percent:g}%",
            message=None if in_safe_area else "Subtitle region outside the safe area",
        ))

        checks.append(TypographyCheck(
            scene=n,
            check_name="subtitle_font_size",
            passed=region.font_size >= rules.min_font_size,
            expected=f">= {rules.min_font_size}px",
            actual=f"{region.font_size}px",
            message=None if region.font_size >= rules.min_font_size else "Font size too small",
        ))

        checks.append(TypographyCheck(
            scene=n,
            check_name="subtitle_contrast",
            passed=plan.contrast >= rules.min_contrast,
            expected=f">= {rules.min_contrast:g}:1",
            actual=f"{plan.contrast:g}:1",
            message=None if plan.contrast >= rules.min_contrast else "Contrast ratio too low",
        ))

    score = sum(1 for c in checks if c.passed) / len(checks) if checks else 0.0
    violations = [
        f"Scene {c.scene}: {c.check_name} ({c.actual}, expected {c.expected})"
        for c in checks if not c.passed
    ]
    return TypographyResult(
        status=QCStatus.PASS if checks and not violations else QCStatus.FAIL,
        score=score,
        checks=checks,
        violations=violations,
    )
