"""
Retry policy for backend calls.

RetryPolicy.decide() is a pure function of (attempt, error, previous_delay):
it holds no per-job state. The loop that owns the attempt count lives in
run_with_retry(), which both the batch orchestrator and the placement
analyzer drive their backend calls through.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from ..core.errors import ErrorKind, GenerationError, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryDecision:
    """Either Stop or RetryAfter(delay)."""
    should_retry: bool
    delay: float = 0.0
    reason: str = ""

    @classmethod
    def stop(cls, reason: str) -> "RetryDecision":
        return cls(should_retry=False, reason=reason)

    @classmethod
    def retry_after(cls, delay: float, reason: str = "") -> "RetryDecision":
        return cls(should_retry=True, delay=delay, reason=reason)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Decide whether and when to retry a failed unit of work.

    Rules:
    - RateLimited: wait the backend's hint plus ``rate_limit_buffer``, never
      less than the previous delay for the same job
    - Transient, timeout or unclassified errors: ``backoff_base ** attempt``
    - Validation and unrecoverable errors: stop immediately
    - Stop once ``max_attempts`` attempts have been made
    """
    max_attempts: int = 5
    backoff_base: float = 2.0
    rate_limit_buffer: float = 2.0
    default_rate_limit_wait: float = 15.0

    def decide(
        self,
        attempt: int,
        error: BaseException,
        previous_delay: float = 0.0
    ) -> RetryDecision:
        """
        Decide what to do after a failed attempt.

        Args:
            attempt: 1-based number of the attempt that just failed
            error: The exception it raised
            previous_delay: Delay chosen before this attempt (0 for the first)

        Returns:
            RetryDecision.stop(...) or RetryDecision.retry_after(delay)
        """
        kind = classify_error(error)

        if kind in (ErrorKind.VALIDATION, ErrorKind.UNRECOVERABLE):
            return RetryDecision.stop(f"{kind.value} error is not retryable")

        if attempt >= self.max_attempts:
            return RetryDecision.stop(f"gave up after {attempt} attempts")

        if kind == ErrorKind.RATE_LIMITED:
            hint = getattr(error, "retry_after", None)
            if hint is None:
                hint = self.default_rate_limit_wait
            delay = max(hint + self.rate_limit_buffer, previous_delay)
            return RetryDecision.retry_after(delay, "rate limited")

        return RetryDecision.retry_after(self.backoff_base ** attempt, f"{kind.value} error")


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    label: str = "operation",
    sleep: Optional[SleepFunc] = None,
) -> Tuple[T, int]:
    """
    Run an async operation until it succeeds or the policy says stop.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: RetryPolicy deciding each retry
        label: Name used in log messages (e.g., job id)
        sleep: Awaitable sleep function (defaults to asyncio.sleep)

    Returns:
        Tuple of (operation result, number of attempts made)

    Raises:
        Exception: The last error once retries stop. GenerationErrors carry
            the attempt count in ``attempts``.
    """
    sleep = sleep or asyncio.sleep
    attempt = 0
    previous_delay = 0.0

    while True:
        attempt += 1
        try:
            result = await operation()
            return result, attempt
        except asyncio.CancelledError:
            raise
        except Exception as e:
            decision = policy.decide(attempt, e, previous_delay)
            if not decision.should_retry:
                logger.error(f"{label} failed on attempt {attempt}: {e} ({decision.reason})")
                if isinstance(e, GenerationError):
                    e.attempts = attempt
                raise

            logger.warning(
                f"{label} attempt {attempt}/{policy.max_attempts} failed: {e}. "
                f"Retrying in {decision.delay:.1f}s ({decision.reason})"
            )
            await sleep(decision.delay)
            previous_delay = decision.delay
