"""WebVTT subtitles for the assembled trailer, one cue per scene."""

from typing import Optional, Sequence

from pydantic import BaseModel

from .models import SCENE_DURATION_SECONDS, SceneUnit, StyleAnchor


class SubtitleCue(BaseModel):
    index: int
    start: float
    end: float
    text: str


def format_timestamp(seconds: float) -> str:
    """HH:MM:SS.mmm"""
    total_ms = int(round(seconds * 1000))
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, ms = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{ms:03d}"


def build_cues(
    scenes: Sequence[SceneUnit],
    anchor: Optional[StyleAnchor] = None,
) -> list[SubtitleCue]:
    """Storyboard subtitle when the anchor has one, otherwise the scene narration."""
    cues = []
    for index, scene in enumerate(sorted(scenes, key=lambda s: s.scene_number), start=1):
        duration = scene.script.duration if scene.script else SCENE_DURATION_SECONDS
        text = (anchor.subtitle_for(scene.scene_number) if anchor else None) or (
            scene.script.narration if scene.script else ""
        )
        if not text:
            continue
        start = (scene.scene_number - 1) * duration
        cues.append(SubtitleCue(index=index, start=start, end=start + duration, text=text))
    return cues


def to_webvtt(cues: Sequence[SubtitleCue]) -> str:
    parts = ["WEBVTT", ""]
    for cue in cues:
        parts.extend([
            str(cue.index),
            f"{format_timestamp(cue.start)} --> {format_timestamp(cue.end)}",
            cue.text,
            "",
        ])
    return "\n".join(parts)
