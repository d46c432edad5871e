"""
TrailerGenerationService: main job driver.

Chains every step of a trailer job with status tracking:
  Step 0: Cache lookup (hit → cached result, zero cost)
  Step 1: Style anchor (Gemini)
  Step 2: Scene generation (script → keyframe → video, parallel or sequential)
  Step 3: Scene retry rounds for failed scenes (sequential)
  Step 4: Quality gate, with one optional regeneration on a retry signal
  Step 5: Subtitles (WebVTT) + final assembly
  Step 6: Cost report + cache store
"""

import json
import time
import uuid
import asyncio
import logging
from typing import Optional

from .. import metrics
from .backoff import call_with_backoff
from .cache import ResultCache
from .config import PricingTable, QCThresholds, RetryPolicy
from .cost import CostAccountant
from .models import (
    FailureKind,
    GenerationJob,
    JobStatus,
    QCReport,
    QCStatus,
    SceneStatus,
    TrailerRequest,
    TrailerResult,
    VideoMetadata,
    now_iso,
)
from .providers import Assembler, ContentProvider, MediaProbe
from .qc import QualityGate
from .retry_tracker import attempts_remaining, create_retry_state, summarize
from .scene_orchestrator import SceneOrchestrator
from .storage import StorageProvider, subtitle_key, trailer_key
from .subtitles import build_cues, to_webvtt

logger = logging.getLogger(__name__)


class TrailerGenerationService:
    """
    Production pipeline orchestrator.

    Usage:
        service = TrailerGenerationService(provider, storage, ResultCache())

        result = await service.run_pipeline(TrailerRequest(title="어린 왕자"))
        # or fire-and-forget, then poll
        job_id = service.run_pipeline_background(request)
        service.get_status(job_id)
    """

    def __init__(
        self,
        provider: ContentProvider,
        storage: StorageProvider,
        cache: ResultCache,
        *,
        policy: Optional[RetryPolicy] = None,
        thresholds: Optional[QCThresholds] = None,
        pricing: Optional[PricingTable] = None,
        assembler: Optional[Assembler] = None,
        media_probe: Optional[MediaProbe] = None,
    ):
        self.provider = provider
        self.storage = storage
        self.cache = cache
        self.policy = policy or RetryPolicy()
        self.gate = QualityGate(thresholds)
        self.accountant = CostAccountant(pricing)
        self.scenes = SceneOrchestrator(provider, storage, self.policy)
        self.assembler = assembler
        self.media_probe = media_probe
        self._jobs: dict[str, TrailerResult] = {}
        self._tasks: set[asyncio.Task] = set()

    def get_status(self, job_id: str) -> Optional[TrailerResult]:
        """Current status of a job, or None if this process never saw it."""
        return self._jobs.get(job_id)

    def _update_status(
        self,
        job: GenerationJob,
        status: JobStatus,
        step: str = "",
        progress: int = 0,
    ):
        self._jobs[job.job_id] = TrailerResult(
            job_id=job.job_id,
            status=status,
            current_step=step,
            progress_pct=progress,
            mode=job.mode,
            scenes_succeeded=self._succeeded(job),
            created_at=job.created_at,
        )
        logger.info(f"[{job.job_id}] {status.value} → {step} ({progress}%)")

    @staticmethod
    def _succeeded(job: GenerationJob) -> int:
        return sum(1 for s in job.scenes if s.status == SceneStatus.SUCCESS)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    # ── Entry Points ─────────────────────────────────────────────────────

    async def run_pipeline(
        self,
        request: TrailerRequest,
        job_id: Optional[str] = None,
    ) -> TrailerResult:
        """
        Run a full trailer job and return its final result.

        Never raises for provider or QC failures: those come back as a
        FAILED result with `error_kind` set.
        """
        job_id = job_id or str(uuid.uuid4())
        started = time.monotonic()

        # ── Step 0: Cache ────────────────────────────────────────────
        entry = self.cache.get(request.title, request.author)
        if entry is not None:
            metrics.inc_counter("cache.hit")
            result = TrailerResult(
                job_id=job_id,
                status=JobStatus.COMPLETED,
                current_step="Served from cache",
                progress_pct=100,
                video_url=entry.video_url,
                subtitle_url=entry.subtitle_url,
                scenes_succeeded=3,
                qc_report=entry.qc_report,
                cost_report=self.accountant.generate_report(
                    job_id, [], elapsed_ms=self._elapsed_ms(started), cache_hit=True,
                ),
                cache_hit=True,
                mode=entry.mode,
                completed_at=now_iso(),
            )
            self._jobs[job_id] = result
            logger.info(f"[{job_id}] Cache hit for '{request.title}' (origin job {entry.job_id})")
            return result

        metrics.inc_counter("cache.miss")
        job = GenerationJob(job_id=job_id, request=request, status=JobStatus.PROCESSING)
        job.retry_state = create_retry_state(
            job_id, self.policy.limits, self.policy.job_attempt_ceiling,
        )

        metrics.inc_counter("jobs.started")
        metrics.add_gauge("jobs.active", 1)
        try:
            result = await self._run_job(job, started)
        except Exception as e:
            logger.error(f"Pipeline failed for job {job_id}: {e}", exc_info=True)
            result = self._failed_result(job, str(e), FailureKind.PROVIDER, started)
        finally:
            metrics.add_gauge("jobs.active", -1)
            metrics.record_latency("job", self._elapsed_ms(started))

        self._jobs[job_id] = result
        return result

    def run_pipeline_background(
        self,
        request: TrailerRequest,
        job_id: Optional[str] = None,
    ) -> str:
        """Fire-and-forget wrapper for run_pipeline. Returns the job id to poll."""
        job_id = job_id or str(uuid.uuid4())
        self._jobs[job_id] = TrailerResult(job_id=job_id, status=JobStatus.PENDING)

        task = asyncio.create_task(self.run_pipeline(request, job_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job_id

    # ── Job Steps ────────────────────────────────────────────────────────

    async def _run_job(self, job: GenerationJob, started: float) -> TrailerResult:
        request = job.request

        # ── Step 1: Style Anchor ─────────────────────────────────────
        self._update_status(job, JobStatus.PROCESSING, "Generating style anchor...", 5)
        anchor = await call_with_backoff(
            self.provider.generate_anchor,
            request.title,
            request.language,
            attempts=self.policy.anchor_attempts,
            base_delay=self.policy.stage_backoff_base,
            max_delay=self.policy.stage_backoff_max,
            label=f"[{job.job_id}] anchor",
        )
        job.anchor = anchor.model_copy(update={"job_id": job.job_id})

        # ── Step 2: Scenes ───────────────────────────────────────────
        self._update_status(job, JobStatus.PROCESSING, "Generating scenes...", 15)
        _, mode = await self.scenes.generate_scenes(job, request.force_sequential)
        logger.info(f"[{job.job_id}] Scenes generated in {mode.value} mode")

        # ── Step 3: Retry Rounds ─────────────────────────────────────
        await self._retry_rounds(job)
        if self._succeeded(job) < len(job.scenes):
            return self._provider_failure(job, started)

        # ── Step 4: Quality Gate ─────────────────────────────────────
        self._update_status(job, JobStatus.PROCESSING, "Running quality gate...", 75)
        report = await self._evaluate(job)

        regenerations = 0
        while report.overall == QCStatus.FAIL:
            signal = self.gate.retry_signal(
                report, regenerations, self.policy.max_qc_regenerations,
            )
            if not signal.should_retry:
                break
            if not self.scenes.can_regenerate(job):
                logger.warning(
                    f"[{job.job_id}] QC retry skipped, job attempt ceiling: {summarize(job.retry_state)}"
                )
                break

            regenerations += 1
            metrics.inc_counter("qc.regenerations")
            logger.warning(f"[{job.job_id}] QC retry {regenerations}: {signal.reason}")
            self._update_status(job, JobStatus.PROCESSING, "Regenerating scenes after QC...", 50)

            await self.scenes.regenerate_scenes(job)
            await self._retry_rounds(job)
            if self._succeeded(job) < len(job.scenes):
                return self._provider_failure(job, started)
            report = await self._evaluate(job)

        if report.overall == QCStatus.FAIL:
            reason = self.gate.retry_signal(report).reason or "Overall score below threshold"
            metrics.record_error("qc", "qc_failure", reason, job.job_id)
            return self._failed_result(
                job, f"Quality gate failed: {reason}", FailureKind.QC, started, report,
            )

        # ── Step 5: Subtitles + Assembly ─────────────────────────────
        self._update_status(job, JobStatus.PROCESSING, "Assembling trailer...", 90)
        vtt = to_webvtt(build_cues(job.scenes, job.anchor))
        subtitle_url = await self.storage.save(
            subtitle_key(job.job_id), vtt.encode("utf-8"), {"content_type": "text/vtt"},
        )
        video_url = await self._assemble(job, subtitle_url)

        # ── Step 6: Cost + Cache ─────────────────────────────────────
        cost = self.accountant.generate_report(
            job.job_id,
            job.scenes,
            anchor_cost=self.accountant.pricing.anchor,
            elapsed_ms=self._elapsed_ms(started),
        )
        self.cache.set(
            request.title,
            request.author,
            job_id=job.job_id,
            video_url=video_url,
            subtitle_url=subtitle_url,
            qc_report=report,
            cost_report=cost,
            mode=job.mode,
        )

        job.status = JobStatus.COMPLETED
        job.completed_at = now_iso()
        metrics.inc_counter("jobs.completed")
        logger.info(f"[{job.job_id}] Trailer complete: {video_url}")

        return TrailerResult(
            job_id=job.job_id,
            status=JobStatus.COMPLETED,
            current_step="Pipeline complete!",
            progress_pct=100,
            video_url=video_url,
            subtitle_url=subtitle_url,
            scene_urls=[s.video_url for s in job.scenes],
            scenes_succeeded=len(job.scenes),
            qc_report=report,
            cost_report=cost,
            mode=job.mode,
            created_at=job.created_at,
            completed_at=job.completed_at,
        )

    async def _retry_rounds(self, job: GenerationJob) -> None:
        while job.retry_rounds < self.policy.max_retry_rounds:
            pending = [s for s in job.scenes if self.scenes.is_retryable(s)]
            if not pending:
                return
            if attempts_remaining(job.retry_state) == 0:
                logger.warning(f"[{job.job_id}] Job attempt ceiling reached: {summarize(job.retry_state)}")
                return

            job.retry_rounds += 1
            self._update_status(
                job, JobStatus.PROCESSING,
                f"Retry round {job.retry_rounds}: scenes {[s.scene_number for s in pending]}", 50,
            )
            await self.scenes.retry_failed_scenes(job, job.scenes, force_sequential=True)

    async def _evaluate(self, job: GenerationJob) -> QCReport:
        clips: Optional[list[VideoMetadata]] = None
        if self.media_probe is not None:
            clips = [await self.media_probe.probe(s.video_url) for s in job.scenes]
        return self.gate.evaluate(job.job_id, job.anchor, job.scenes, clips)

    async def _assemble(self, job: GenerationJob, subtitle_url: str) -> str:
        scene_urls = [s.video_url for s in job.scenes]

        if self.assembler is not None:
            data = await self.assembler.assemble(job.job_id, scene_urls, subtitle_url)
            return await self.storage.save(
                trailer_key(job.job_id), data, {"content_type": "video/mp4"},
            )

        # No muxer configured: publish a manifest a player can stitch client-side
        manifest = {
            "job_id": job.job_id,
            "title": job.request.title,
            "mode": job.mode.value,
            "subtitle_url": subtitle_url,
            "scenes": [
                {
                    "scene_number": s.scene_number,
                    "role": s.role.value,
                    "scene_type": s.scene_type,
                    "video_url": s.video_url,
                    "duration": s.script.duration if s.script else None,
                }
                for s in job.scenes
            ],
        }
        return await self.storage.save(
            trailer_key(job.job_id, "json"),
            json.dumps(manifest, ensure_ascii=False, indent=2).encode("utf-8"),
            {"content_type": "application/json"},
        )

    # ── Failure Results ──────────────────────────────────────────────────

    def _provider_failure(self, job: GenerationJob, started: float) -> TrailerResult:
        failed = [s for s in job.scenes if s.status != SceneStatus.SUCCESS]
        detail = "; ".join(f"scene {s.scene_number}: {s.error}" for s in failed)
        message = f"{self._succeeded(job)}/{len(job.scenes)} scenes succeeded ({detail})"
        return self._failed_result(job, message, FailureKind.PROVIDER, started)

    def _failed_result(
        self,
        job: GenerationJob,
        error: str,
        kind: FailureKind,
        started: float,
        report: Optional[QCReport] = None,
    ) -> TrailerResult:
        job.status = JobStatus.FAILED
        job.completed_at = now_iso()
        job.error = error
        metrics.inc_counter(f"jobs.failed.{kind.value}")
        logger.error(f"[{job.job_id}] Job failed ({kind.value}): {error}")

        anchor_cost = self.accountant.pricing.anchor if job.anchor is not None else 0.0
        return TrailerResult(
            job_id=job.job_id,
            status=JobStatus.FAILED,
            current_step="Failed",
            video_url=None,
            scene_urls=[s.video_url for s in job.scenes if s.status == SceneStatus.SUCCESS],
            scenes_succeeded=self._succeeded(job),
            qc_report=report,
            cost_report=self.accountant.generate_report(
                job.job_id, job.scenes, anchor_cost, self._elapsed_ms(started),
            ),
            mode=job.mode,
            error=error,
            error_kind=kind,
            created_at=job.created_at,
            completed_at=job.completed_at,
        )
