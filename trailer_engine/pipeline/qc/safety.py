"""
Content safety gate for children's trailers.

Zero tolerance: a single forbidden word or theme fails the component, and
the score is 1.0 only when nothing was found and the tone score reaches
the configured minimum.
"""

import re
from typing import Sequence

from ..models import QCStatus, SafetyConstraints, SafetyResult, SceneScript

FORBIDDEN_WORDS_EN = [
    "kill", "blood", "gun", "weapon", "murder", "corpse", "drugs", "gore",
]
# Multi-syllable forms only: Hangul terms match as substrings
FORBIDDEN_WORDS_KO = ["죽여", "피투성이", "총격", "총을 쏘", "권총", "살인", "시체", "마약"]
FORBIDDEN_THEMES = ["violence", "horror", "self-harm", "abuse", "war crime"]

POSITIVE_WORDS = [
    "happy", "joy", "friend", "love", "hope", "smile", "wonder", "adventure",
    "kind", "laugh", "행복", "친구", "사랑", "희망", "웃음", "모험",
]
NEGATIVE_WORDS = ["sad", "cry", "angry", "scary", "dark", "슬픈", "무서운"]


def _mentions(text: str, word: str) -> bool:
    """Whole-word match for ASCII terms, substring match otherwise (Hangul particles attach)."""
    if word.isascii():
        return re.search(rf"\b{re.escape(word)}\b", text) is not None
    return word in text


def _script_text(script: SceneScript) -> str:
    return " ".join([
        script.narration,
        script.character_dialogue or "",
        script.visual_description,
        script.keyframe_prompt,
        script.video_prompt,
    ]).lower()


def tone_score(scripts: Sequence[SceneScript]) -> float:
    text = " ".join(
        " ".join([s.narration, s.character_dialogue or "", s.visual_description])
        for s in scripts
    ).lower()
    positives = sum(1 for w in POSITIVE_WORDS if _mentions(text, w))
    negatives = sum(1 for w in NEGATIVE_WORDS if _mentions(text, w))
    # 0.5 baseline, +0.1 per positive word, -0.2 per negative word
    return max(0.0, min(1.0, (5 + positives - 2 * negatives) / 10))


def check_safety(
    scripts: Sequence[SceneScript],
    constraints: SafetyConstraints,
    min_tone: float = 0.7,
) -> SafetyResult:
    words = [w.lower() for w in [*FORBIDDEN_WORDS_EN, *FORBIDDEN_WORDS_KO, *constraints.forbidden_words] if w]
    themes = [t.lower() for t in [*FORBIDDEN_THEMES, *constraints.forbidden_themes] if t]

    violations: list[str] = []
    words_found: list[str] = []
    themes_found: list[str] = []

    for script in scripts:
        text = _script_text(script)
        for word in words:
            if _mentions(text, word):
                words_found.append(word)
                violations.append(f'Scene {script.scene_number}: forbidden word "{word}"')
        for theme in themes:
            if _mentions(text, theme):
                themes_found.append(theme)
                violations.append(f'Scene {script.scene_number}: forbidden theme "{theme}"')

    tone = tone_score(scripts)
    if tone < min_tone:
        violations.append(f"Tone not positive enough: {tone:.2f} (min {min_tone:.2f})")

    score = 1.0 if not violations else 0.0
    return SafetyResult(
        status=QCStatus.PASS if score == 1.0 else QCStatus.FAIL,
        score=score,
        forbidden_words_found=list(dict.fromkeys(words_found)),
        theme_violations=list(dict.fromkeys(themes_found)),
        tone_score=tone,
        violations=violations,
    )
