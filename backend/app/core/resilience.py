"""
Resilience Patterns Module.

Bounded exponential-backoff retry for single remote calls. The decision of
*whether* a failure is worth retrying is a pure classification function; the
backoff combinator only consumes it.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from backend.app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Remote error codes that signal a temporary condition (compared upper-cased)
TRANSIENT_ERROR_CODES = frozenset({
    "SERVICE_UNAVAILABLE",
    "ABORTED",
    "BACKENDERROR",
    "BACKEND_ERROR",
    "INTERNALERROR",
    "RATELIMITEXCEEDED",
    "USERRATELIMITEXCEEDED",
    "RATE_LIMIT_EXCEEDED",
    "TOO_MANY_REQUESTS",
    "RESOURCE_EXHAUSTED",
})

# Message fragments that signal a temporary condition (compared lower-cased)
TRANSIENT_MESSAGE_MARKERS = (
    "aborted",
    "temporary",
    "temporarily",
    "unavailable",
    "backend error",
    "rate limit",
)


def is_transient_failure(code: Optional[str], message: Optional[str]) -> bool:
    """
    Classify a remote failure by its code and message.

    True means the same call may succeed if repeated later (service
    unavailable, aborted, rate limited, backend error). Everything else
    (permission denied, not found, invalid argument, daily quota exhausted)
    is permanent and must be surfaced without retrying.
    """
    normalized_code = (code or "").strip().upper()
    normalized_message = (message or "").lower()

    if normalized_code in TRANSIENT_ERROR_CODES:
        return True
    return any(marker in normalized_message for marker in TRANSIENT_MESSAGE_MARKERS)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for one remote call."""
    max_retries: int = 5
    base_delay_ms: int = 300
    max_delay_ms: int = 3000
    jitter: float = 0.3  # +/- fraction applied multiplicatively

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.retry_max_retries,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            jitter=settings.retry_jitter,
        )


def compute_backoff_delay(
    retry_index: int,
    policy: RetryPolicy,
    rng: Optional[random.Random] = None,
) -> float:
    """Seconds to wait before retry number ``retry_index`` (0-based)."""
    capped_ms = min(policy.base_delay_ms * (2 ** retry_index), policy.max_delay_ms)
    uniform = (rng or random).uniform(-policy.jitter, policy.jitter)
    return max(0.0, capped_ms * (1 + uniform)) / 1000.0


async def with_retry(
    call: Callable[[], Awaitable[T]],
    should_retry: Callable[[Exception], bool],
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
    label: str = "remote call",
) -> T:
    """
    Invoke ``call`` until it succeeds, a non-retryable error is raised, or the
    attempt budget is exhausted. The last error is re-raised unchanged.
    """
    policy = policy or RetryPolicy()

    for attempt in range(policy.max_attempts):
        try:
            return await call()
        except Exception as e:
            retryable = should_retry(e)
            if not retryable or attempt == policy.max_attempts - 1:
                if retryable:
                    logger.warning(
                        f"{label} failed after {policy.max_attempts} attempts: {e}"
                    )
                raise

            delay = compute_backoff_delay(attempt, policy, rng)
            logger.info(
                f"{label} hit transient failure, retrying",
                extra={
                    "extra_data": {
                        "attempt": attempt + 1,
                        "retries_left": policy.max_attempts - attempt - 1,
                        "delay_sec": round(delay, 3),
                        "error": str(e),
                    }
                },
            )
            await sleep(delay)

    # max_attempts is always >= 1, the loop either returns or raises
    raise RuntimeError("retry loop exited without a result")
