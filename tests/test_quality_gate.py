import pytest

from conftest import make_anchor, make_script
from trailer_engine.pipeline.config import QCThresholds, TechnicalRules
from trailer_engine.pipeline.models import (
    QCStatus,
    SafetyConstraints,
    SceneRole,
    SceneStatus,
    StoryboardScene,
    SubtitleRegion,
    TypographyPlan,
    VideoMetadata,
    initialize_scenes,
)
from trailer_engine.pipeline.qc import QualityGate
from trailer_engine.pipeline.qc.consistency import jaccard, palette_drift
from trailer_engine.pipeline.qc.safety import check_safety, tone_score
from trailer_engine.pipeline.qc.technical import check_technical, score_clip
from trailer_engine.pipeline.qc.typography import check_typography


def _scenes(overrides=None):
    """Three finished scenes; `overrides` maps a role to replacement script fields."""
    overrides = overrides or {}
    scenes = initialize_scenes()
    for scene in scenes:
        script = make_script(scene.role)
        if scene.role in overrides:
            script = script.model_copy(update=overrides[scene.role])
        scene.script = script
        scene.status = SceneStatus.SUCCESS
        scene.video_url = f"https://cdn.test/scene_{scene.scene_number}.mp4"
    return scenes


# ── Gate ─────────────────────────────────────────────────────────────────────

def test_clean_job_passes():
    report = QualityGate().evaluate("job-1", make_anchor(), _scenes())

    assert report.overall == QCStatus.PASS
    assert report.passed_threshold
    assert report.overall_score == pytest.approx(1.0)
    assert report.typography.score == 1.0
    assert len(report.typography.checks) == 15
    assert report.consistency.anchor_match == 1.0
    assert report.consistency.scene_to_scene == 1.0
    assert report.consistency.color_palette_drift == 0.0
    assert report.safety.tone_score >= 0.7
    assert report.technical.score == 1.0


def test_safety_violation_fails_despite_high_score():
    scenes = _scenes({
        SceneRole.JOURNEY: {"narration": "The hero draws a gun and finds an adventure full of hope."},
    })
    gate = QualityGate()
    report = gate.evaluate("job-1", make_anchor(), scenes)

    assert report.safety.status == QCStatus.FAIL
    assert report.safety.score == 0.0
    assert report.safety.forbidden_words_found == ["gun"]
    # typo 1.0 * .25 + cons 1.0 * .30 + safety 0 + tech 1.0 * .15
    assert report.overall_score == pytest.approx(0.70)
    assert report.overall == QCStatus.FAIL

    signal = gate.retry_signal(report)
    assert signal.should_retry
    assert signal.components == ["safety"]
    assert signal.reason.startswith('Safety (0.00): Scene 2: forbidden word "gun"')


def test_retry_signal_respects_budget():
    gate = QualityGate()
    scenes = _scenes({SceneRole.HOOK: {"narration": "Blood on the floor, happy friend."}})
    report = gate.evaluate("job-1", make_anchor(), scenes)

    assert gate.retry_signal(report, retry_count=1, max_retries=1).should_retry is False
    assert gate.retry_signal(report, retry_count=0, max_retries=1).should_retry is True


def test_passing_report_gives_no_retry_signal():
    gate = QualityGate()
    report = gate.evaluate("job-1", make_anchor(), _scenes())
    assert gate.retry_signal(report).should_retry is False


def test_score_threshold_alone_can_fail():
    # Bad technical metadata drags the score but never hard-fails on its own
    clips = [VideoMetadata(width=480, height=640, duration=5.0, fps=12)] * 3
    thresholds = QCThresholds(min_score=0.95)
    report = QualityGate(thresholds).evaluate("job-1", make_anchor(), _scenes(), clips)

    assert report.technical.status == QCStatus.FAIL
    assert report.technical.score == pytest.approx(0.4)
    assert report.overall_score == pytest.approx(0.85 + 0.4 * 0.15)
    assert not report.passed_threshold
    assert report.overall == QCStatus.FAIL


def test_minor_technical_penalty_still_passes():
    clips = [VideoMetadata(width=720, height=1280, duration=8.0, fps=20)] * 3
    report = QualityGate().evaluate("job-1", make_anchor(), _scenes(), clips)
    assert report.technical.status == QCStatus.PASS
    assert report.technical.score == pytest.approx(0.9)
    assert report.overall == QCStatus.PASS


# ── Typography ───────────────────────────────────────────────────────────────

def test_typography_flags_long_korean_subtitle_and_small_font():
    anchor = make_anchor(language="ko").model_copy(update={
        "storyboard": [
            StoryboardScene(scene_number=1, subtitle_text="여우가 친구를 만나요"),
            StoryboardScene(scene_number=2, subtitle_text="둘이 함께 숲속 깊은 곳까지 신나는 모험을 떠나요"),
            StoryboardScene(scene_number=3, subtitle_text="오늘 밤 읽어 보세요"),
        ],
        "typography_plan": TypographyPlan(subtitle_region=SubtitleRegion(font_size=18)),
    })
    result = check_typography(anchor, _scenes(), QCThresholds().typography)

    failed = {(c.scene, c.check_name) for c in result.checks if not c.passed}
    assert (2, "subtitle_line_length") in failed
    assert {(n, "subtitle_font_size") for n in (1, 2, 3)} <= failed
    assert len(failed) == 4
    assert result.score == pytest.approx(11 / 15)
    assert result.status == QCStatus.FAIL


def test_typography_counts_lines():
    anchor = make_anchor().model_copy(update={
        "storyboard": [StoryboardScene(scene_number=1, subtitle_text="one\ntwo\nthree")],
    })
    result = check_typography(anchor, _scenes()[:1], QCThresholds().typography)
    assert [c.check_name for c in result.checks if not c.passed] == ["subtitle_max_lines"]


# ── Consistency ──────────────────────────────────────────────────────────────

def test_consistency_detects_palette_drift():
    off_palette = "soft 2d animation, warm light, red and purple neon"
    scenes = _scenes({
        SceneRole.PROMISE: {
            "visual_description": off_palette,
            "keyframe_prompt": off_palette,
            "video_prompt": off_palette,
        },
    })
    scripts = [s.script for s in scenes]
    drift = palette_drift(scripts, make_anchor())
    # 4 on-palette mentions (yellow, blue x2 scenes), 2 off-palette (red, purple)
    assert drift == pytest.approx(2 / 6)

    report = QualityGate().evaluate("job-1", make_anchor(), scenes)
    assert report.consistency.status == QCStatus.FAIL
    assert any("palette drift" in v for v in report.consistency.violations)


def test_jaccard_of_empty_sets_is_zero():
    assert jaccard(set(), set()) == 0.0
    assert jaccard({"soft", "2d"}, {"soft"}) == 0.5


# ── Safety ───────────────────────────────────────────────────────────────────

def test_tone_score_weights():
    neutral = make_script(SceneRole.HOOK).model_copy(update={"narration": "A fox walks.", "visual_description": ""})
    assert tone_score([neutral]) == pytest.approx(0.5)

    mixed = neutral.model_copy(update={"narration": "A happy fox with a friend feels sad."})
    assert tone_score([mixed]) == pytest.approx(0.5)


def test_safety_uses_whole_words_and_anchor_constraints():
    script = make_script(SceneRole.HOOK).model_copy(update={
        "narration": "A happy friend shows great skill with a dragon kite and hope.",
    })
    assert check_safety([script], SafetyConstraints()).status == QCStatus.PASS

    result = check_safety([script], SafetyConstraints(forbidden_words=["dragon"]))
    assert result.status == QCStatus.FAIL
    assert result.forbidden_words_found == ["dragon"]


def test_korean_words_sharing_a_syllable_with_forbidden_terms_pass():
    clever = make_script(SceneRole.HOOK).model_copy(update={
        "narration": "총명한 여우가 친구를 만나 행복한 모험을 떠나요.",
    })
    result = check_safety([clever], SafetyConstraints())
    assert result.forbidden_words_found == []
    assert not any("forbidden" in v for v in result.violations)

    shooting = clever.model_copy(update={"narration": "여우가 총격 소리에 놀라요."})
    assert check_safety([shooting], SafetyConstraints()).forbidden_words_found == ["총격"]


def test_flat_tone_fails_safety():
    script = make_script(SceneRole.HOOK).model_copy(update={
        "narration": "A fox walks home.", "visual_description": "a path",
    })
    result = check_safety([script], SafetyConstraints(), min_tone=0.7)
    assert result.status == QCStatus.FAIL
    assert result.tone_score == pytest.approx(0.5)
    assert result.violations == ["Tone not positive enough: 0.50 (min 0.70)"]


# ── Technical ────────────────────────────────────────────────────────────────

def test_score_clip_penalties():
    rules = TechnicalRules()
    assert score_clip(VideoMetadata(width=720, height=1280, duration=8.0, fps=24), rules) == (1.0, [])

    score, violations = score_clip(VideoMetadata(width=720, height=1280, duration=9.0), rules)
    assert score == pytest.approx(0.8)
    assert len(violations) == 1


def test_technical_without_metadata_passes():
    result = check_technical(None, TechnicalRules())
    assert result.status == QCStatus.PASS
    assert result.score == 1.0
