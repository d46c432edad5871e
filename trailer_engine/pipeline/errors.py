"""
Error taxonomy for the generation pipeline.

Every failure coming out of a provider call is reduced to one of five
kinds by `classify_error`. The same predicate drives both the concurrent
batch fallback in the scene orchestrator and the stage-level retry
decision, so there is exactly one definition of "rate limited".
"""

import json
from typing import Iterable, Optional

import httpx
from pydantic import ValidationError

ERROR_KIND_RATE_LIMIT = "rate_limit"
ERROR_KIND_TIMEOUT = "timeout"
ERROR_KIND_NETWORK = "network"
ERROR_KIND_VALIDATION = "validation"
ERROR_KIND_FATAL = "fatal"

# Scene-level only: the scene stopped because the job ran out of attempts
ERROR_KIND_JOB_CEILING = "job_attempts_exhausted"

TRANSIENT_ERROR_KINDS = {
    ERROR_KIND_RATE_LIMIT,
    ERROR_KIND_TIMEOUT,
    ERROR_KIND_NETWORK,
}

# Kinds that count against a stage budget instead of failing the scene outright
RETRYABLE_ERROR_KINDS = TRANSIENT_ERROR_KINDS | {ERROR_KIND_VALIDATION}

RATE_LIMIT_PHRASES = (
    "rate limit",
    "ratelimit",
    "too many requests",
    "quota exceeded",
    "resource exhausted",
    "concurrency limit",
)

TIMEOUT_PHRASES = ("timeout", "timed out", "deadline exceeded")

NETWORK_PHRASES = (
    "connection reset",
    "connection refused",
    "connection aborted",
    "temporarily unavailable",
    "service unavailable",
    "bad gateway",
)


def kind_for_status(status_code: Optional[int]) -> Optional[str]:
    if not status_code:
        return None
    if status_code == 429:
        return ERROR_KIND_RATE_LIMIT
    if status_code in {408, 504}:
        return ERROR_KIND_TIMEOUT
    if status_code >= 500:
        return ERROR_KIND_NETWORK
    return None


def kind_for_message(message: str) -> Optional[str]:
    text = (message or "").lower()
    if "429" in text or any(phrase in text for phrase in RATE_LIMIT_PHRASES):
        return ERROR_KIND_RATE_LIMIT
    if any(phrase in text for phrase in TIMEOUT_PHRASES):
        return ERROR_KIND_TIMEOUT
    if any(phrase in text for phrase in NETWORK_PHRASES):
        return ERROR_KIND_NETWORK
    return None


# ── Exceptions ───────────────────────────────────────────────────────────────

class PipelineError(RuntimeError):
    """Base class for errors raised by the pipeline itself."""

    def __init__(self, message: str, *, error_kind: str = ERROR_KIND_FATAL) -> None:
        super().__init__(message)
        self.error_kind = error_kind


class ProviderError(PipelineError):
    """A provider call failed. The kind comes from the status code, then the message."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        *,
        provider: str = "",
        error_kind: Optional[str] = None,
    ) -> None:
        kind = (
            error_kind
            or kind_for_status(status_code)
            or kind_for_message(message)
            or ERROR_KIND_FATAL
        )
        super().__init__(message, error_kind=kind)
        self.status_code = status_code
        self.provider = provider


class RateLimitError(ProviderError):
    def __init__(self, message: str = "Too many requests", *, provider: str = "") -> None:
        super().__init__(
            message, 429, provider=provider, error_kind=ERROR_KIND_RATE_LIMIT,
        )


class ScriptValidationError(PipelineError):
    """Provider output could not be parsed into the expected structure."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_kind=ERROR_KIND_VALIDATION)


class StageExhaustedError(PipelineError):
    """
    A scene stage ran out of budget (its own, or the job-wide ceiling).

    `error_kind` is the kind of the last underlying failure, so callers can
    still tell a scene that died on a fatal error from one that ran out of
    transient retries.
    """

    def __init__(
        self,
        scene_number: int,
        stage: str,
        failures: int,
        last_error: str,
        *,
        error_kind: str = ERROR_KIND_FATAL,
        job_ceiling: bool = False,
    ) -> None:
        budget = "job attempt ceiling reached" if job_ceiling else f"{failures} failure(s)"
        super().__init__(
            f"Scene {scene_number} {stage} stage exhausted ({budget}): {last_error}",
            error_kind=error_kind,
        )
        self.scene_number = scene_number
        self.stage = stage
        self.failures = failures
        self.last_error = last_error
        self.job_ceiling = job_ceiling


# ── Classification ───────────────────────────────────────────────────────────

def _iter_exception_chain(exc: BaseException) -> Iterable[BaseException]:
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        yield current
        seen.add(id(current))
        next_exc = current.__cause__ or current.__context__
        current = next_exc if isinstance(next_exc, BaseException) else None


def classify_error(exc: BaseException) -> str:
    """Reduce any exception to one of the ERROR_KIND_* values."""
    messages: list[str] = []
    for item in _iter_exception_chain(exc):
        if isinstance(item, PipelineError):
            return item.error_kind
        if isinstance(item, httpx.HTTPStatusError):
            kind = kind_for_status(item.response.status_code)
            if kind:
                return kind
        if isinstance(item, (httpx.TimeoutException, TimeoutError)):
            return ERROR_KIND_TIMEOUT
        if isinstance(item, (httpx.TransportError, ConnectionError)):
            return ERROR_KIND_NETWORK
        if isinstance(item, (ValidationError, json.JSONDecodeError)):
            return ERROR_KIND_VALIDATION
        messages.append(str(item or ""))

    return kind_for_message(" ".join(messages)) or ERROR_KIND_FATAL


def is_rate_limit_error(exc: BaseException) -> bool:
    return classify_error(exc) == ERROR_KIND_RATE_LIMIT


def is_retryable_kind(kind: Optional[str]) -> bool:
    return kind in RETRYABLE_ERROR_KINDS


def raise_for_provider_status(response: httpx.Response, provider: str) -> None:
    """Like `raise_for_status`, but raises ProviderError carrying the status code."""
    if response.is_success:
        return
    raise ProviderError(
        f"{provider} API error {response.status_code}: {response.text[:300]}",
        response.status_code,
        provider=provider,
    )
