import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from conftest import make_anchor, make_script
from trailer_engine import metrics
from trailer_engine.pipeline import TrailerGenerationService
from trailer_engine.pipeline.config import RetryPolicy
from trailer_engine.pipeline.errors import ProviderError, RateLimitError
from trailer_engine.pipeline.models import (
    FailureKind,
    GenerationMode,
    JobStatus,
    QCStatus,
    TrailerRequest,
    VideoMetadata,
)
from trailer_engine.pipeline.storage import subtitle_key, trailer_key


def _service(provider, storage, cache, policy, **kwargs) -> TrailerGenerationService:
    return TrailerGenerationService(provider, storage, cache, policy=policy, **kwargs)


def _unsafe_script(anchor, role):
    return make_script(role).model_copy(update={
        "narration": "A happy friend finds a gun on an adventure full of hope.",
    })


@pytest.mark.anyio
async def test_end_to_end_success(provider, storage, cache, policy):
    service = _service(provider, storage, cache, policy)
    result = await service.run_pipeline(TrailerRequest(title="The Little Fox", language="en"))

    assert result.status == JobStatus.COMPLETED
    assert result.error is None
    assert result.mode == GenerationMode.PARALLEL
    assert result.scenes_succeeded == 3
    assert len(result.scene_urls) == 3
    assert result.qc_report.overall == QCStatus.PASS
    assert result.cost_report.breakdown.total == pytest.approx(2.89)
    assert not result.cache_hit
    assert service.get_status(result.job_id) == result

    # No assembler configured: a JSON manifest stands in for the muxed trailer
    assert result.video_url == f"https://cdn.test/{trailer_key(result.job_id, 'json')}"
    manifest = json.loads(await storage.load(trailer_key(result.job_id, "json")))
    assert [s["scene_number"] for s in manifest["scenes"]] == [1, 2, 3]
    assert manifest["subtitle_url"] == result.subtitle_url

    vtt = (await storage.load(subtitle_key(result.job_id))).decode("utf-8")
    assert vtt.startswith("WEBVTT")
    assert "A fox finds a friend" in vtt

    assert cache.has("the little fox")
    counters = metrics.get_snapshot()["counters"]
    assert counters["cache.miss"] == 1
    assert counters["jobs.completed"] == 1
    assert metrics.get_snapshot()["gauges"]["jobs.active"] == 0


@pytest.mark.anyio
async def test_second_request_is_served_from_cache(provider, storage, cache, policy):
    service = _service(provider, storage, cache, policy)
    first = await service.run_pipeline(TrailerRequest(title="The Little Fox"))
    second = await service.run_pipeline(TrailerRequest(title="  the LITTLE fox! "))

    assert second.cache_hit
    assert second.status == JobStatus.COMPLETED
    assert second.job_id != first.job_id
    assert second.video_url == first.video_url
    assert second.cost_report.breakdown.total == 0
    assert second.cost_report.cache_hit
    assert provider.generate_anchor.await_count == 1
    assert provider.generate_video.await_count == 3
    assert metrics.get_snapshot()["cache_hit_rate"] == 0.5

    # A different author is a different book
    third = await service.run_pipeline(TrailerRequest(title="The Little Fox", author="Someone Else"))
    assert not third.cache_hit


@pytest.mark.anyio
async def test_provider_failure_returns_partial_result(provider, storage, cache, policy):
    provider.generate_video.side_effect = ProviderError("veo unavailable", 503)
    service = _service(provider, storage, cache, policy)

    result = await service.run_pipeline(TrailerRequest(title="Broken Book"))

    assert result.status == JobStatus.FAILED
    assert result.error_kind == FailureKind.PROVIDER
    assert result.video_url is None
    assert result.scenes_succeeded == 0
    assert "0/3 scenes succeeded" in result.error
    assert result.cost_report is not None
    assert result.cost_report.breakdown.anchor_generation == pytest.approx(0.01)
    assert not cache.has("Broken Book")
    # One retry round per scene, then the per-scene cap stops further rounds
    assert all(n == 3 for n in result.cost_report.retry_breakdown.values())
    assert metrics.get_snapshot()["counters"]["jobs.failed.provider_failure"] == 1


@pytest.mark.anyio
async def test_transient_scene_failure_recovers_in_retry_round(provider, storage, cache, policy):
    provider.generate_video.side_effect = [
        ProviderError("veo timed out", 504),
        ProviderError("veo timed out", 504),
        b"video-2", b"video-3",
        b"video-1",
    ]
    service = _service(provider, storage, cache, policy)

    result = await service.run_pipeline(TrailerRequest(title="Slow Start", force_sequential=True))

    assert result.status == JobStatus.COMPLETED
    assert result.mode == GenerationMode.SEQUENTIAL
    assert result.cost_report.retry_breakdown == {1: 2, 2: 0, 3: 0}
    assert result.cost_report.breakdown.retries == pytest.approx(2 * 0.96)


@pytest.mark.anyio
async def test_qc_failure_after_one_regeneration(provider, storage, cache, policy):
    provider.generate_scene_script.side_effect = _unsafe_script
    service = _service(provider, storage, cache, policy)

    result = await service.run_pipeline(TrailerRequest(title="Risky Book"))

    assert result.status == JobStatus.FAILED
    assert result.error_kind == FailureKind.QC
    assert result.error.startswith("Quality gate failed: Safety (0.00)")
    assert result.qc_report.safety.forbidden_words_found == ["gun"]
    assert result.video_url is None
    # Original pass plus exactly one regeneration
    assert provider.generate_scene_script.await_count == 6
    assert metrics.get_snapshot()["counters"]["qc.regenerations"] == 1
    assert not cache.has("Risky Book")


@pytest.mark.anyio
async def test_qc_regeneration_can_rescue_job(provider, storage, cache, policy):
    calls = {"n": 0}

    def scripts(anchor, role):
        calls["n"] += 1
        if calls["n"] <= 3:
            return _unsafe_script(anchor, role)
        return make_script(role)

    provider.generate_scene_script.side_effect = scripts
    service = _service(provider, storage, cache, policy)

    result = await service.run_pipeline(TrailerRequest(title="Second Chance"))

    assert result.status == JobStatus.COMPLETED
    assert result.qc_report.overall == QCStatus.PASS
    assert result.mode == GenerationMode.SEQUENTIAL
    assert result.cost_report.retry_breakdown == {1: 1, 2: 1, 3: 1}


@pytest.mark.anyio
async def test_anchor_retries_transient_errors(provider, storage, cache, policy):
    provider.generate_anchor.side_effect = [RateLimitError(), make_anchor()]
    service = _service(provider, storage, cache, policy)

    result = await service.run_pipeline(TrailerRequest(title="The Little Fox"))

    assert result.status == JobStatus.COMPLETED
    assert provider.generate_anchor.await_count == 2


@pytest.mark.anyio
async def test_anchor_fatal_error_fails_job(provider, storage, cache, policy):
    provider.generate_anchor.side_effect = ProviderError("API key invalid", 403)
    service = _service(provider, storage, cache, policy)

    result = await service.run_pipeline(TrailerRequest(title="No Key"))

    assert result.status == JobStatus.FAILED
    assert result.error_kind == FailureKind.PROVIDER
    assert "API key invalid" in result.error
    assert provider.generate_anchor.await_count == 1
    assert provider.generate_scene_script.await_count == 0
    assert result.cost_report.breakdown.total == 0


@pytest.mark.anyio
async def test_assembler_and_media_probe(provider, storage, cache, policy):
    assembler = AsyncMock()
    assembler.assemble.return_value = b"muxed-mp4"
    probe = AsyncMock()
    probe.probe.return_value = VideoMetadata(width=720, height=1280, duration=8.0, fps=24)
    service = _service(provider, storage, cache, policy, assembler=assembler, media_probe=probe)

    result = await service.run_pipeline(TrailerRequest(title="Full Trailer"))

    assert result.status == JobStatus.COMPLETED
    assert result.video_url == f"https://cdn.test/{trailer_key(result.job_id)}"
    assert await storage.load(trailer_key(result.job_id)) == b"muxed-mp4"
    assembler.assemble.assert_awaited_once_with(result.job_id, result.scene_urls, result.subtitle_url)
    assert probe.probe.await_count == 3
    assert result.qc_report.technical.score == 1.0


@pytest.mark.anyio
async def test_background_job_is_pollable(provider, storage, cache, policy):
    service = _service(provider, storage, cache, policy)

    job_id = service.run_pipeline_background(TrailerRequest(title="Background Book"))
    assert service.get_status(job_id).status == JobStatus.PENDING

    await asyncio.gather(*list(service._tasks))

    final = service.get_status(job_id)
    assert final.status == JobStatus.COMPLETED
    assert final.progress_pct == 100
    assert service.get_status("unknown-job") is None


@pytest.mark.anyio
async def test_qc_regeneration_skipped_without_attempts_for_a_full_pass(provider, storage, cache):
    policy = RetryPolicy(
        max_total_attempts=17, inter_scene_delay=0, inter_retry_delay=0, stage_backoff_base=0,
    )
    provider.generate_scene_script.side_effect = _unsafe_script
    service = _service(provider, storage, cache, policy)

    result = await service.run_pipeline(TrailerRequest(title="Risky Book"))

    assert result.status == JobStatus.FAILED
    assert result.error_kind == FailureKind.QC
    assert provider.generate_scene_script.await_count == 3
    assert "qc.regenerations" not in metrics.get_snapshot()["counters"]


@pytest.mark.anyio
async def test_retry_round_stays_within_job_attempt_ceiling(provider, storage, cache):
    policy = RetryPolicy(
        max_total_attempts=11, inter_scene_delay=0, inter_retry_delay=0, stage_backoff_base=0,
    )
    provider.generate_keyframe.side_effect = [
        ProviderError("image backend 503", 503),
        ProviderError("image backend 503", 503),
        ProviderError("image backend 503", 503),
        b"png-2", b"png-3",
    ]
    service = _service(provider, storage, cache, policy)

    result = await service.run_pipeline(TrailerRequest(title="Tight Budget", force_sequential=True))

    assert result.status == JobStatus.FAILED
    assert result.error_kind == FailureKind.PROVIDER
    assert "2/3 scenes succeeded" in result.error
    assert "job attempt ceiling reached" in result.error
    # Scene 1 needs keyframe + video to recover but only one attempt is left
    calls = sum(
        mock.await_count
        for mock in (provider.generate_scene_script, provider.generate_keyframe, provider.generate_video)
    )
    assert calls == 10
    assert provider.generate_video.await_count == 2
