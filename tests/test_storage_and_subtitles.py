import pytest

from conftest import make_anchor, make_script
from trailer_engine.pipeline.models import StoryboardScene, initialize_scenes
from trailer_engine.pipeline.storage import LocalStorageProvider, keyframe_key, trailer_key
from trailer_engine.pipeline.subtitles import build_cues, format_timestamp, to_webvtt


# ── Storage ──────────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_local_storage_round_trip(storage):
    key = keyframe_key("job-1", 2)
    assert key == "trailers/job-1/keyframe_2.png"
    assert not await storage.exists(key)

    url = await storage.save(key, b"png-bytes", {"content_type": "image/png"})
    assert url == "https://cdn.test/trailers/job-1/keyframe_2.png"
    assert await storage.exists(key)
    assert await storage.load(key) == b"png-bytes"


@pytest.mark.anyio
async def test_local_storage_file_urls_without_public_base(tmp_path):
    storage = LocalStorageProvider(root=str(tmp_path), public_url="")
    url = await storage.save(trailer_key("job-1", "json"), b"{}")
    assert url.startswith("file://")
    assert url.endswith("/trailers/job-1/trailer.json")


@pytest.mark.anyio
async def test_local_storage_rejects_escaping_keys(storage):
    with pytest.raises(ValueError):
        await storage.save("../outside.txt", b"nope")


# ── Subtitles ────────────────────────────────────────────────────────────────

def test_format_timestamp():
    assert format_timestamp(0) == "00:00:00.000"
    assert format_timestamp(16) == "00:00:16.000"
    assert format_timestamp(3723.5) == "01:02:03.500"


def test_cues_prefer_storyboard_then_narration():
    scenes = initialize_scenes()
    for scene in scenes:
        scene.script = make_script(scene.role)

    anchor = make_anchor().model_copy(update={
        "storyboard": [StoryboardScene(scene_number=1, subtitle_text="A fox finds a friend")],
    })
    cues = build_cues(scenes, anchor)

    assert [c.text for c in cues] == [
        "A fox finds a friend",
        scenes[1].script.narration,
        scenes[2].script.narration,
    ]
    assert [(c.start, c.end) for c in cues] == [(0, 8), (8, 16), (16, 24)]


def test_webvtt_output():
    scenes = initialize_scenes()
    for scene in scenes:
        scene.script = make_script(scene.role)

    vtt = to_webvtt(build_cues(scenes, make_anchor()))
    lines = vtt.split("\n")
    assert lines[0] == "WEBVTT"
    assert lines[2:5] == ["1", "00:00:00.000 --> 00:00:08.000", "A fox finds a friend"]
    assert "00:00:16.000 --> 00:00:24.000" in vtt
