"""
Retry policy helpers for the archival cycle.

Purpose:
- Centralize retry rules for metadata lookup, transcoding and upload
- Keep the pipeline free of ad-hoc loops and sleeps

Policy decisions (max_attempts, get_retry_delay_ms) are pure.
with_retries() is the single place that sleeps between attempts.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from constants import METADATA_RETRY_DELAYS_MS, UPLOAD_RETRY_DELAYS_MS
from observability.logger import log_event, now_ms


T = TypeVar("T")


# =============================================================================
# Stages & Failure Types
# =============================================================================

class Stage(str, Enum):
    """Collaborator call within one archival cycle."""
    METADATA = "metadata"
    UPLOAD = "upload"


class FailureType(str, Enum):
    """
    Failure classification used by retry policy.

    TRANSIENT:
        The collaborator may succeed if asked again
        (store unreachable, network error, throttling).

    PERMANENT:
        Asking again cannot change the answer
        (no mission row).
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"


def classify_failure(exc: BaseException) -> FailureType:
    """
    Errors opt out of retries by setting a class attribute `retryable = False`.
    """
    if getattr(exc, "retryable", True):
        return FailureType.TRANSIENT
    return FailureType.PERMANENT


# =============================================================================
# Retry State
# =============================================================================

@dataclass(frozen=True)
class RetryAttempt:
    """
    Immutable retry attempt counter.

    - attempt == 0 represents the initial attempt (no retry yet).
    - attempt >= 1 represents the Nth retry attempt.
    """
    attempt: int


def next_attempt(current: RetryAttempt) -> RetryAttempt:
    return RetryAttempt(attempt=current.attempt + 1)


def reset_attempt() -> RetryAttempt:
    """Returns a fresh retry attempt counter."""
    return RetryAttempt(attempt=0)


# =============================================================================
# Policy
# =============================================================================

def _delays_for(stage: Stage) -> tuple[int, ...]:
    if stage is Stage.METADATA:
        return METADATA_RETRY_DELAYS_MS
    return UPLOAD_RETRY_DELAYS_MS


def max_attempts(stage: Stage, failure: FailureType) -> int:
    """
    Maximum retry attempts (excluding the initial attempt).

    - Permanent failures: 0 retries
    - Metadata / upload: one retry per backoff slot
    """
    if failure is FailureType.PERMANENT:
        return 0

    return len(_delays_for(stage))


def should_retry(
    *,
    stage: Stage,
    failure: FailureType,
    attempt: RetryAttempt,
) -> bool:
    """
    Returns True if a retry is allowed.

    attempt = number of retries already performed
    """
    return attempt.attempt < max_attempts(stage, failure)


def get_retry_delay_ms(*, stage: Stage, attempt: RetryAttempt) -> int:
    """Returns delay before retry attempt N, clamped to the last backoff slot."""
    delays = _delays_for(stage)
    idx = min(attempt.attempt, len(delays) - 1)
    return delays[idx]


# =============================================================================
# Execution
# =============================================================================

async def with_retries(
    stage: Stage,
    operation: Callable[[], Awaitable[T]],
    *,
    retry_on: tuple[type[Exception], ...],
    window_id: int | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `operation` until it succeeds or the policy gives up.

    Only exceptions listed in `retry_on` are considered; anything else
    propagates on the first occurrence. The last error is re-raised.
    """
    attempt = reset_attempt()

    while True:
        try:
            return await operation()
        except retry_on as exc:
            failure = classify_failure(exc)
            if not should_retry(stage=stage, failure=failure, attempt=attempt):
                raise

            delay_ms = get_retry_delay_ms(stage=stage, attempt=attempt)
            attempt = next_attempt(attempt)

            log_event({
                "ts_ms": now_ms(),
                "event_type": "RETRY_SCHEDULED",
                "stage": stage.value,
                "window_id": window_id,
                "attempt": attempt.attempt,
                "delay_ms": delay_ms,
                "exception": type(exc).__name__,
                "message": str(exc),
            })

            await sleep(delay_ms / 1000.0)
