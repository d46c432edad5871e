from unittest.mock import AsyncMock

import pytest

from trailer_engine import metrics
from trailer_engine.pipeline.cache import ResultCache
from trailer_engine.pipeline.config import RetryPolicy
from trailer_engine.pipeline.models import (
    SCENE_ROLES,
    SceneRole,
    SceneScript,
    StoryboardScene,
    StyleAnchor,
    StyleSignature,
)
from trailer_engine.pipeline.storage import LocalStorageProvider

_SCENE_NUMBERS = {role: number for number, role in SCENE_ROLES.items()}

NARRATION = {
    SceneRole.HOOK: "A happy little fox meets a new friend in the meadow.",
    SceneRole.JOURNEY: "Together they share an adventure full of hope and joy.",
    SceneRole.PROMISE: "Every smile shows that love and friendship make us happy.",
}


# Force anyio to use asyncio
@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


def make_anchor(title: str = "The Little Fox", language: str = "en") -> StyleAnchor:
    return StyleAnchor(
        title=title,
        language=language,
        style_signature=StyleSignature(
            visual_style="soft 2d animation",
            color_palette=["yellow", "sky blue"],
            mood="warm",
        ),
        storyboard=[
            StoryboardScene(scene_number=1, subtitle_text="A fox finds a friend"),
            StoryboardScene(scene_number=2, subtitle_text="They explore together"),
            StoryboardScene(scene_number=3, subtitle_text="Read it tonight!"),
        ],
    )


def make_script(role: SceneRole) -> SceneScript:
    """A script that clears every quality check against make_anchor()."""
    visual = "soft 2d animation, warm light, yellow flowers under a sky blue sky"
    return SceneScript(
        scene_number=_SCENE_NUMBERS[role],
        role=role,
        narration=NARRATION[role],
        visual_description=visual,
        keyframe_prompt=f"Keyframe: {visual}",
        video_prompt=f"Gentle camera pan, {visual}",
    )


def make_provider() -> AsyncMock:
    provider = AsyncMock()
    provider.generate_anchor.return_value = make_anchor()
    provider.generate_scene_script.side_effect = lambda anchor, role: make_script(role)
    provider.generate_keyframe.return_value = b"\x89PNG keyframe"
    provider.generate_video.return_value = b"\x00\x00\x00\x18ftypmp42 video"
    return provider


@pytest.fixture
def provider():
    return make_provider()


@pytest.fixture
def storage(tmp_path):
    return LocalStorageProvider(root=str(tmp_path / "artifacts"), public_url="https://cdn.test")


@pytest.fixture
def policy():
    """Production limits without the waiting."""
    return RetryPolicy(
        inter_scene_delay=0,
        inter_retry_delay=0,
        stage_backoff_base=0,
    )


@pytest.fixture
def cache():
    return ResultCache()
