"""Exponential backoff for single provider calls that sit outside the stage budget."""

import asyncio
import random
import logging
from typing import Awaitable, Callable, TypeVar

from .errors import TRANSIENT_ERROR_KINDS, classify_error

T = TypeVar("T")
logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

BASE_DELAY = 2.0    # seconds, doubles each retry: 2, 4, 8...
MAX_DELAY = 30.0
JITTER_MAX = 1.0


async def call_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args,
    attempts: int = 3,
    base_delay: float = BASE_DELAY,
    max_delay: float = MAX_DELAY,
    jitter: float = JITTER_MAX,
    label: str = "",
    **kwargs,
) -> T:
    """
    Await `func(*args, **kwargs)`, retrying transient failures.

    Rate-limit, timeout and network errors are retried with
    `base_delay * 2^attempt` plus random jitter. Anything else is raised on
    the spot. The last transient failure is re-raised once `attempts` runs out.
    """
    name = label or getattr(func, "__name__", "call")
    attempts = max(1, attempts)

    for attempt in range(attempts):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            kind = classify_error(e)
            if kind not in TRANSIENT_ERROR_KINDS or attempt == attempts - 1:
                raise

            delay = min(max_delay, base_delay * (2 ** attempt))
            if delay > 0 and jitter > 0:
                delay += random.uniform(0, jitter)
            logger.warning(
                f"{name} {kind} on attempt {attempt + 1}/{attempts}: {e}, "
                f"retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)

    raise RuntimeError(f"{name} failed after {attempts} attempts")
