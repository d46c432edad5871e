"""
Hierarchical retry tracker.

Per-scene state machine:

    script → keyframe → video → done
         ↘        ↘         ↘
                 failed

Each stage has its own failure budget (RetryLimits). On top of that the
whole job carries a running attempt total capped by `max_total_attempts`,
so compounding per-scene retries cannot run up cost without bound.

Every function here is a pure transformation: it takes a JobRetryState and
returns a new one (plus a directive where a decision is made). No I/O.
"""

from enum import Enum
from typing import Optional

from .models import (
    SCENE_COUNT,
    STAGE_ORDER,
    JobRetryState,
    RetryLimits,
    RetryStage,
    SceneRetryState,
    SceneScript,
    Stage,
)


class RetryDirective(str, Enum):
    RETRY_SAME_STAGE = "retry_same_stage"
    ADVANCE_STAGE = "advance_stage"
    SCENE_FAILED = "scene_failed"
    JOB_ATTEMPTS_EXHAUSTED = "job_attempts_exhausted"


_NEXT_STAGE = {
    Stage.SCRIPT: RetryStage.KEYFRAME,
    Stage.KEYFRAME: RetryStage.VIDEO,
    Stage.VIDEO: RetryStage.DONE,
}


def create_retry_state(
    job_id: str,
    limits: Optional[RetryLimits] = None,
    max_total_attempts: int = 0,
) -> JobRetryState:
    limits = limits or RetryLimits()
    return JobRetryState(
        job_id=job_id,
        scenes=tuple(SceneRetryState(scene_number=n) for n in range(1, SCENE_COUNT + 1)),
        limits=limits,
        max_total_attempts=max_total_attempts or limits.default_max_total_attempts(),
    )


def _replace_scene(state: JobRetryState, scene: SceneRetryState, **changes) -> JobRetryState:
    scenes = list(state.scenes)
    scenes[scene.scene_number - 1] = scene
    return state.model_copy(update={"scenes": tuple(scenes), **changes})


def _require_stage(scene: SceneRetryState, stage: Stage) -> None:
    if scene.current_stage.value != stage.value:
        raise ValueError(
            f"Scene {scene.scene_number} is at {scene.current_stage.value}, "
            f"cannot record {stage.value}"
        )


def current_stage(state: JobRetryState, scene_number: int) -> Optional[Stage]:
    """The stage the scene should attempt next, or None once done/failed."""
    retry_stage = state.scene(scene_number).current_stage
    if retry_stage in (RetryStage.DONE, RetryStage.FAILED):
        return None
    return Stage(retry_stage.value)


FULL_PASS_ATTEMPTS = SCENE_COUNT * len(STAGE_ORDER)


def attempts_remaining(state: JobRetryState) -> int:
    return max(0, state.max_total_attempts - state.total_attempts)


def attempts_needed(state: JobRetryState, scene_number: int) -> int:
    """Stage attempts a scene needs to finish from where it stands, without failures."""
    scene = state.scene(scene_number)
    if scene.current_stage == RetryStage.DONE:
        return 0
    if scene.current_stage == RetryStage.FAILED:
        stage = failed_stage(scene)
    else:
        stage = Stage(scene.current_stage.value)
    return len(STAGE_ORDER) - STAGE_ORDER.index(stage)


def record_attempt(state: JobRetryState, scene_number: int, *, retry: bool = False) -> JobRetryState:
    """
    Count one stage attempt against the job-wide total.

    A retry (a re-driven scene resuming its failed stage) is refused once
    the ceiling is reached.
    """
    if current_stage(state, scene_number) is None:
        raise ValueError(f"Scene {scene_number} has no stage left to attempt")
    if retry and attempts_remaining(state) == 0:
        raise ValueError(
            f"Scene {scene_number} cannot retry: job attempt ceiling "
            f"({state.max_total_attempts}) reached"
        )
    return state.model_copy(update={"total_attempts": state.total_attempts + 1})


def record_success(
    state: JobRetryState,
    scene_number: int,
    stage: Stage,
    *,
    script: Optional[SceneScript] = None,
    keyframe: Optional[bytes] = None,
    keyframe_url: Optional[str] = None,
) -> tuple[JobRetryState, RetryDirective]:
    """Accept a stage's artifact and move the scene to the next stage."""
    scene = state.scene(scene_number)
    _require_stage(scene, stage)

    changes: dict = {"current_stage": _NEXT_STAGE[stage], "last_error": None}
    if stage == Stage.SCRIPT:
        changes["script"] = script
    elif stage == Stage.KEYFRAME:
        changes["keyframe"] = keyframe
        changes["keyframe_url"] = keyframe_url

    return _replace_scene(state, scene.model_copy(update=changes)), RetryDirective.ADVANCE_STAGE


def record_failure(
    state: JobRetryState,
    scene_number: int,
    stage: Stage,
    error: str,
    *,
    retryable: bool = True,
) -> tuple[JobRetryState, RetryDirective]:
    """
    Count a stage failure and decide what happens next.

    The job-wide ceiling is checked first: once the running total has
    reached it, no scene may retry even with stage budget left. Otherwise
    the stage counter is bumped and the scene fails when it reaches the
    stage limit. Accepted artifacts from earlier stages stay recorded.
    """
    scene = state.scene(scene_number)
    _require_stage(scene, stage)

    counter = f"{stage.value}_retries"
    failures = getattr(scene, counter) + 1
    failed = {counter: failures, "last_error": error, "current_stage": RetryStage.FAILED}

    if state.total_attempts >= state.max_total_attempts:
        return (
            _replace_scene(state, scene.model_copy(update=failed)),
            RetryDirective.JOB_ATTEMPTS_EXHAUSTED,
        )

    if not retryable or failures >= state.limits.for_stage(stage):
        return (
            _replace_scene(state, scene.model_copy(update=failed)),
            RetryDirective.SCENE_FAILED,
        )

    retry = {counter: failures, "last_error": error}
    return (
        _replace_scene(state, scene.model_copy(update=retry)),
        RetryDirective.RETRY_SAME_STAGE,
    )


def mark_scene_failed(state: JobRetryState, scene_number: int, error: str) -> JobRetryState:
    """Fail a scene from outside a stage decision (e.g. an abandoned concurrent attempt)."""
    scene = state.scene(scene_number)
    if scene.current_stage in (RetryStage.DONE, RetryStage.FAILED):
        return state
    return _replace_scene(
        state,
        scene.model_copy(update={"current_stage": RetryStage.FAILED, "last_error": error}),
    )


def failed_stage(scene: SceneRetryState) -> Stage:
    """First stage without an accepted artifact."""
    if scene.script is None:
        return Stage.SCRIPT
    if scene.keyframe_url is None and scene.keyframe is None:
        return Stage.KEYFRAME
    return Stage.VIDEO


def reopen_scene(state: JobRetryState, scene_number: int) -> JobRetryState:
    """
    Give a failed scene a fresh budget at the stage it died on.

    Used by scene-level retry rounds. Earlier accepted artifacts are reused;
    the job-wide total is left alone.
    """
    scene = state.scene(scene_number)
    if scene.current_stage != RetryStage.FAILED:
        return state

    stage = failed_stage(scene)
    return _replace_scene(
        state,
        scene.model_copy(update={
            "current_stage": RetryStage(stage.value),
            f"{stage.value}_retries": 0,
        }),
    )


def restart_scenes(state: JobRetryState) -> JobRetryState:
    """Fresh per-scene state for every scene; the job-wide total carries over."""
    return state.model_copy(update={
        "scenes": tuple(SceneRetryState(scene_number=s.scene_number) for s in state.scenes),
    })


def summarize(state: JobRetryState) -> dict:
    return {
        "job_id": state.job_id,
        "total_attempts": state.total_attempts,
        "max_total_attempts": state.max_total_attempts,
        "attempts_remaining": attempts_remaining(state),
        "scenes": [
            {
                "scene_number": s.scene_number,
                "stage": s.current_stage.value,
                **{f"{stage.value}_retries": s.retries_for(stage) for stage in STAGE_ORDER},
                "last_error": s.last_error,
            }
            for s in state.scenes
        ],
        "failed_scenes": [
            s.scene_number for s in state.scenes if s.current_stage == RetryStage.FAILED
        ],
        "completed_scenes": [
            s.scene_number for s in state.scenes if s.current_stage == RetryStage.DONE
        ],
    }
