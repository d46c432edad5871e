"""
Visual consistency check.

Compares each scene script's visual text against the style anchor and
against its neighbour:

  anchor_match      share of anchor style keywords mentioned per scene
  scene_to_scene    mean Jaccard similarity of style descriptors, consecutive scenes
  palette_drift     share of colour mentions that are not in the anchor palette
  style_signature   every scene mentions some word of the anchor's visual style

score = (anchor_match + scene_to_scene + (1 - palette_drift)) / 3
"""

from typing import Sequence

from ..config import ConsistencyRules
from ..models import ConsistencyResult, QCStatus, SceneScript, StyleAnchor

STYLE_DESCRIPTORS = [
    "animation", "3d", "2d", "cute", "colorful", "warm", "bright",
    "smooth", "gentle", "magical", "friendly", "soft", "vibrant",
    "pixar", "ghibli", "disney", "cartoon",
]

COLOR_WORDS = ["red", "blue", "green", "yellow", "orange", "purple", "pink", "white", "black"]


def anchor_match(scripts: Sequence[SceneScript], anchor: StyleAnchor) -> float:
    signature = anchor.style_signature
    keywords = [
        k.lower() for k in
        [signature.visual_style, signature.mood, signature.camera_language, *signature.color_palette]
        if k and k.strip()
    ]
    if not scripts or not keywords:
        return 1.0

    matches = sum(
        1
        for script in scripts
        for keyword in keywords
        if keyword in script.style_text()
    )
    return matches / (len(scripts) * len(keywords))


def style_descriptors(script: SceneScript) -> set[str]:
    text = script.style_text()
    return {word for word in STYLE_DESCRIPTORS if word in text}


def jaccard(a: set[str], b: set[str]) -> float:
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def scene_to_scene(scripts: Sequence[SceneScript]) -> float:
    if len(scripts) < 2:
        return 1.0
    descriptors = [style_descriptors(s) for s in scripts]
    pairs = list(zip(descriptors, descriptors[1:]))
    return sum(jaccard(a, b) for a, b in pairs) / len(pairs)


def palette_drift(scripts: Sequence[SceneScript], anchor: StyleAnchor) -> float:
    palette = [c.lower() for c in anchor.style_signature.color_palette]
    mentions = 0
    on_palette = 0
    for script in scripts:
        text = script.style_text()
        for color in COLOR_WORDS:
            if color in text:
                mentions += 1
                if any(color in entry for entry in palette):
                    on_palette += 1

    # No colour mentions at all counts as no drift
    if mentions == 0:
        return 0.0
    return 1 - on_palette / mentions


def style_signature_match(scripts: Sequence[SceneScript], anchor: StyleAnchor) -> bool:
    indicators = anchor.style_signature.visual_style.lower().split()
    if not indicators:
        return True
    return all(
        any(word in script.style_text() for word in indicators)
        for script in scripts
    )


def check_consistency(
    scripts: Sequence[SceneScript],
    anchor: StyleAnchor,
    rules: ConsistencyRules,
) -> ConsistencyResult:
    match = anchor_match(scripts, anchor)
    neighbour = scene_to_scene(scripts)
    drift = palette_drift(scripts, anchor)
    signature_ok = style_signature_match(scripts, anchor)

    violations = []
    if match < rules.min_anchor_match:
        violations.append(f"Anchor match too low: {match:.2f} (min {rules.min_anchor_match:.2f})")
    if neighbour < rules.min_scene_to_scene:
        violations.append(
            f"Scene-to-scene consistency too low: {neighbour:.2f} (min {rules.min_scene_to_scene:.2f})"
        )
    if drift > rules.max_palette_drift:
        violations.append(f"Color palette drift too high: {drift:.2f} (max {rules.max_palette_drift:.2f})")
    if not signature_ok:
        violations.append("Style signature does not match across all scenes")

    return ConsistencyResult(
        status=QCStatus.FAIL if violations else QCStatus.PASS,
        score=(match + neighbour + (1 - drift)) / 3,
        anchor_match=match,
        scene_to_scene=neighbour,
        color_palette_drift=drift,
        style_signature_match=signature_ok,
        violations=violations,
    )
