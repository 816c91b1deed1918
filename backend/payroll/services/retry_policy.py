"""Backoff and retry-ceiling rules for stamping jobs."""
from __future__ import annotations

import random
from typing import Callable

from .error_classifier import ErrorClassification, StampingErrorType

DEFAULT_BASE_DELAY_MS = 2000
DEFAULT_MAX_DELAY_MS = 300000
DEFAULT_JITTER = 0.2


def compute_backoff_delay(
    attempt: int,
    *,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
    jitter: float = DEFAULT_JITTER,
    rng: Callable[[], float] = random.random,
) -> int:
    """
    Exponential backoff in milliseconds for the given 1-based attempt number.

    attempt 1 -> ~2s, 2 -> ~4s, 3 -> ~8s ... with +/- jitter, never above max_delay_ms.
    """
    exponent = max(attempt, 1) - 1
    # Cap before jitter so huge attempt numbers never overflow into floats.
    raw = base_delay_ms * (2 ** min(exponent, 32))
    capped = min(raw, max_delay_ms)
    spread = (rng() * 2 - 1) * jitter
    return int(min(max_delay_ms, capped * (1 + spread)))


def should_retry(
    classification: ErrorClassification,
    *,
    attempt_number: int,
    max_attempts: int,
    unknown_max_attempts: int | None = None,
) -> bool:
    """True when the job should go back to the queue instead of failing permanently."""
    if not classification.is_retryable:
        return False
    ceiling = max_attempts
    if classification.type == StampingErrorType.UNKNOWN and unknown_max_attempts is not None:
        ceiling = min(ceiling, unknown_max_attempts)
    return attempt_number < ceiling
