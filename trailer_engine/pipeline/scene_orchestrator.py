"""
SceneOrchestrator: drives the three scene pipelines of a job.

Each scene runs script → keyframe → video. Stage failures go through the
hierarchical retry tracker, which decides whether the same stage is
reissued (reusing earlier accepted artifacts) or the scene is failed.

Execution modes:
  parallel    all scenes concurrently; any rate-limit failure voids the
              whole batch (successes included) and the job restarts
              sequentially from scratch
  sequential  ascending scene order with a fixed delay between scenes

Scene-level retries of failed scenes are always sequential.
"""

import asyncio
import logging
from typing import Optional, Sequence

from .. import metrics
from .config import RetryPolicy
from .errors import (
    ERROR_KIND_FATAL,
    ERROR_KIND_JOB_CEILING,
    ERROR_KIND_RATE_LIMIT,
    PipelineError,
    StageExhaustedError,
    classify_error,
    is_rate_limit_error,
    is_retryable_kind,
)
from .models import (
    SCENE_DURATION_SECONDS,
    GenerationJob,
    GenerationMode,
    RetryStage,
    SceneRetryState,
    SceneStatus,
    SceneUnit,
    Stage,
    StageAttempt,
    initialize_scenes,
    now_iso,
)
from .providers import ContentProvider
from .retry_tracker import (
    FULL_PASS_ATTEMPTS,
    RetryDirective,
    attempts_needed,
    attempts_remaining,
    create_retry_state,
    mark_scene_failed,
    record_attempt,
    record_failure,
    record_success,
    reopen_scene,
    restart_scenes,
)
from .storage import StorageProvider, keyframe_key, scene_video_key

logger = logging.getLogger(__name__)

PROVIDER_CALLS = {
    Stage.SCRIPT: "generate_scene_script",
    Stage.KEYFRAME: "generate_keyframe",
    Stage.VIDEO: "generate_video",
}


class SceneOrchestrator:
    def __init__(
        self,
        provider: ContentProvider,
        storage: StorageProvider,
        policy: Optional[RetryPolicy] = None,
    ):
        self.provider = provider
        self.storage = storage
        self.policy = policy or RetryPolicy()

    def _ensure_retry_state(self, job: GenerationJob) -> None:
        if job.retry_state is None:
            job.retry_state = create_retry_state(
                job.job_id, self.policy.limits, self.policy.job_attempt_ceiling,
            )

    # ── Batch ────────────────────────────────────────────────────────────

    async def generate_scenes(
        self,
        job: GenerationJob,
        force_sequential: bool = False,
    ) -> tuple[list[SceneUnit], GenerationMode]:
        """
        Run every scene of the job once (stage retries included).

        Returns the scene units and the mode that produced them. Failed
        scenes come back with status FAILED and their error recorded.
        """
        self._ensure_retry_state(job)

        if not force_sequential:
            logger.info(f"[{job.job_id}] Generating {len(job.scenes)} scenes in parallel")
            results = await asyncio.gather(
                *(self.generate_single_scene(job, scene, concurrent=True) for scene in job.scenes),
                return_exceptions=True,
            )
            failures = [
                (scene, result)
                for scene, result in zip(job.scenes, results)
                if isinstance(result, BaseException)
            ]
            for _, exc in failures:
                if isinstance(exc, asyncio.CancelledError):
                    raise exc

            rate_limited = any(is_rate_limit_error(exc) for _, exc in failures)
            if not rate_limited or not self.policy.discard_batch_on_rate_limit:
                for scene, exc in failures:
                    self._mark_failed(job, scene, exc)
                job.mode = GenerationMode.PARALLEL
                return job.scenes, GenerationMode.PARALLEL

            logger.warning(
                f"[{job.job_id}] Rate limit during parallel generation, "
                f"discarding batch and falling back to sequential"
            )
            metrics.inc_counter("scenes.mode_fallback")
            self._discard_batch(job)

        job.mode = GenerationMode.SEQUENTIAL
        await self._generate_sequential(job)
        return job.scenes, GenerationMode.SEQUENTIAL

    async def _generate_sequential(self, job: GenerationJob) -> None:
        logger.info(f"[{job.job_id}] Generating {len(job.scenes)} scenes sequentially")
        for i, scene in enumerate(sorted(job.scenes, key=lambda s: s.scene_number)):
            if i > 0:
                await asyncio.sleep(self.policy.inter_scene_delay)
            try:
                await self.generate_single_scene(job, scene)
            except Exception as e:
                self._mark_failed(job, scene, e)

    def _discard_batch(self, job: GenerationJob) -> None:
        """Fresh scenes and per-scene retry state; attempts already made still count."""
        job.scenes = initialize_scenes()
        job.retry_state = restart_scenes(job.retry_state)

    async def regenerate_scenes(self, job: GenerationJob) -> list[SceneUnit]:
        """
        Redo every scene from the script stage, sequentially.

        Used after a quality-gate rejection. Each scene's retry count carries
        over plus one for the regeneration. Nothing is regenerated when the
        job has fewer attempts left than a full pass needs.
        """
        self._ensure_retry_state(job)
        if not self.can_regenerate(job):
            logger.warning(
                f"[{job.job_id}] Not regenerating: {attempts_remaining(job.retry_state)} "
                f"attempt(s) left, a full pass needs {FULL_PASS_ATTEMPTS}"
            )
            return job.scenes

        previous = {s.scene_number: s.retry_count for s in job.scenes}
        job.scenes = initialize_scenes()
        for scene in job.scenes:
            scene.retry_count = previous.get(scene.scene_number, 0) + 1
        job.retry_state = restart_scenes(job.retry_state)

        scenes, _ = await self.generate_scenes(job, force_sequential=True)
        return scenes

    def can_regenerate(self, job: GenerationJob) -> bool:
        self._ensure_retry_state(job)
        return attempts_remaining(job.retry_state) >= FULL_PASS_ATTEMPTS

    def _mark_failed(self, job: GenerationJob, scene: SceneUnit, exc: BaseException) -> None:
        if getattr(exc, "job_ceiling", False):
            kind = ERROR_KIND_JOB_CEILING
        else:
            kind = classify_error(exc)
        scene.status = SceneStatus.FAILED
        scene.error = str(exc)
        scene.error_kind = kind
        job.retry_state = mark_scene_failed(job.retry_state, scene.scene_number, str(exc))

        logger.warning(f"[{job.job_id}] Scene {scene.scene_number} failed ({kind}): {exc}")
        metrics.inc_counter("scenes.failed")
        metrics.record_error("scene", kind, str(exc), job.job_id)

    # ── Retries ──────────────────────────────────────────────────────────

    def is_retryable(self, scene: SceneUnit) -> bool:
        return (
            scene.status != SceneStatus.SUCCESS
            and scene.error_kind not in (ERROR_KIND_FATAL, ERROR_KIND_JOB_CEILING)
            and scene.retry_count < self.policy.max_scene_retries
        )

    async def retry_failed_scenes(
        self,
        job: GenerationJob,
        scenes: Sequence[SceneUnit],
        force_sequential: bool = True,
    ) -> list[SceneUnit]:
        """
        Re-drive failed scenes one at a time.

        Retries never run concurrently regardless of `force_sequential`: the
        scenes most likely failed on a shared provider quota. Each scene
        resumes at the stage it died on with a fresh stage budget, but only
        when the job has attempts left for every stage it still has to run.
        """
        self._ensure_retry_state(job)
        targets = [s for s in scenes if self.is_retryable(s)]
        if not targets:
            return list(scenes)

        logger.info(
            f"[{job.job_id}] Retrying scenes {[s.scene_number for s in targets]} sequentially"
        )
        for scene in targets:
            remaining = attempts_remaining(job.retry_state)
            needed = attempts_needed(job.retry_state, scene.scene_number)
            if remaining < needed:
                logger.warning(
                    f"[{job.job_id}] Not retrying scene {scene.scene_number}: "
                    f"needs {needed} attempt(s), {remaining} left"
                )
                scene.error = str(StageExhaustedError(
                    scene.scene_number, "scene", 0, scene.error or "scene failed", job_ceiling=True,
                ))
                scene.error_kind = ERROR_KIND_JOB_CEILING
                continue

            await asyncio.sleep(self.policy.inter_retry_delay)

            scene.retry_count += 1
            scene.status = SceneStatus.PENDING
            scene.error = None
            scene.error_kind = None
            job.retry_state = reopen_scene(job.retry_state, scene.scene_number)
            logger.info(
                f"[{job.job_id}] Retrying scene {scene.scene_number} (attempt {scene.retry_count + 1})"
            )

            try:
                await self.generate_single_scene(job, scene, redrive=True)
            except Exception as e:
                self._mark_failed(job, scene, e)

        return list(scenes)

    # ── Single Scene ─────────────────────────────────────────────────────

    async def generate_single_scene(
        self,
        job: GenerationJob,
        scene: SceneUnit,
        concurrent: bool = False,
        redrive: bool = False,
    ) -> SceneUnit:
        """
        Walk one scene through its remaining stages.

        Rate-limit errors inside a concurrent batch are re-raised at once so
        the batch can be voided. Fatal errors are raised without retry.
        Anything else is retried at the same stage until the tracker says
        the budget is spent, which raises StageExhaustedError. A re-driven
        scene's first attempt counts as a retry against the job ceiling.
        """
        self._ensure_retry_state(job)
        n = scene.scene_number

        while True:
            retry = job.retry_state.scene(n)
            if retry.current_stage == RetryStage.DONE:
                break
            if retry.current_stage == RetryStage.FAILED:
                raise StageExhaustedError(
                    n, "scene", 0, retry.last_error or "scene already failed",
                )

            stage = Stage(retry.current_stage.value)
            job.retry_state = record_attempt(job.retry_state, n, retry=redrive)
            redrive = False

            try:
                await self._run_stage(job, scene, stage, retry)
            except Exception as e:
                kind = classify_error(e)
                scene.attempts.append(StageAttempt(
                    stage=stage,
                    provider_call=PROVIDER_CALLS[stage],
                    succeeded=False,
                    error=str(e),
                ))
                metrics.inc_counter(f"stages.{stage.value}.failed")

                if concurrent and kind == ERROR_KIND_RATE_LIMIT:
                    raise

                job.retry_state, directive = record_failure(
                    job.retry_state, n, stage, str(e), retryable=is_retryable_kind(kind),
                )
                failures = job.retry_state.scene(n).retries_for(stage)

                if directive == RetryDirective.RETRY_SAME_STAGE:
                    scene.retry_count += 1
                    delay = self.policy.stage_backoff(failures)
                    logger.warning(
                        f"[{job.job_id}] Scene {n} {stage.value} failed ({kind}), "
                        f"retry {failures} in {delay:.1f}s: {e}"
                    )
                    await asyncio.sleep(delay)
                    continue

                if kind == ERROR_KIND_FATAL:
                    raise

                raise StageExhaustedError(
                    n,
                    stage.value,
                    failures,
                    str(e),
                    error_kind=kind,
                    job_ceiling=directive == RetryDirective.JOB_ATTEMPTS_EXHAUSTED,
                ) from e

        scene.status = SceneStatus.SUCCESS
        scene.error = None
        scene.error_kind = None
        scene.generated_at = now_iso()
        logger.info(f"[{job.job_id}] Scene {n} complete: {scene.video_url}")
        return scene

    async def _run_stage(
        self,
        job: GenerationJob,
        scene: SceneUnit,
        stage: Stage,
        retry: SceneRetryState,
    ) -> None:
        n = scene.scene_number

        if stage == Stage.SCRIPT:
            if job.anchor is None:
                raise PipelineError(f"Scene {n} has no style anchor to write against")
            script = await self.provider.generate_scene_script(job.anchor, scene.role)
            if script.scene_number != n or script.role != scene.role:
                script = script.model_copy(update={"scene_number": n, "role": scene.role})
            job.retry_state, _ = record_success(job.retry_state, n, stage, script=script)
            scene.script = script
            artifact = f"{len(script.narration)} chars narration"

        elif stage == Stage.KEYFRAME:
            image = await self.provider.generate_keyframe(retry.script.keyframe_prompt)
            url = await self.storage.save(
                keyframe_key(job.job_id, n), image, {"content_type": "image/png"},
            )
            job.retry_state, _ = record_success(
                job.retry_state, n, stage, keyframe=image, keyframe_url=url,
            )
            scene.keyframe_url = url
            artifact = url

        else:
            keyframe = retry.keyframe
            if keyframe is None:
                keyframe = await self.storage.load(keyframe_key(job.job_id, n))
            video = await self.provider.generate_video(
                keyframe, retry.script.video_prompt, SCENE_DURATION_SECONDS,
            )
            url = await self.storage.save(
                scene_video_key(job.job_id, n), video, {"content_type": "video/mp4"},
            )
            job.retry_state, _ = record_success(job.retry_state, n, stage)
            scene.video_url = url
            artifact = url

        scene.attempts.append(StageAttempt(
            stage=stage,
            provider_call=PROVIDER_CALLS[stage],
            succeeded=True,
            artifact=artifact,
        ))
        logger.info(f"[{job.job_id}] Scene {n} {stage.value} accepted")
