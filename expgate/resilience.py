"""
Retry with exponential backoff for manifest downloads.
"""
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from datadog import statsd

from expgate.errors import FetchFailed
from expgate.logging_config import setup_logging

logger = setup_logging()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt cap and backoff schedule"""
    max_attempts: int = 3
    initial_delay: float = 0.5
    backoff_factor: float = 2.0

    def delays(self):
        """Sleep durations between consecutive attempts"""
        delay = self.initial_delay
        for _ in range(max(0, self.max_attempts - 1)):
            yield delay
            delay *= self.backoff_factor


async def call_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    is_transient: Callable[[Exception], bool],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    name: str = "operation",
) -> T:
    """
    Run operation, retrying transient failures with exponential backoff.

    Raises:
        FetchFailed: retries exhausted, or a non-transient error occurred.
            The original exception is kept in FetchFailed.cause.
    """
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not is_transient(e):
                logger.error(
                    f"{name} failed with a non-retryable error",
                    extra={"attempt": attempt, "error": str(e)},
                )
                statsd.increment("experiments.retry.aborted", tags=[f"operation:{name}"])
                raise FetchFailed(f"{name} failed: {e}", attempts=attempt, cause=e) from e

            delay = next(delays, None)
            if delay is None:
                logger.error(
                    f"{name} failed after {attempt} attempts",
                    extra={"attempt": attempt, "max_attempts": policy.max_attempts, "error": str(e)},
                )
                statsd.increment("experiments.retry.exhausted", tags=[f"operation:{name}"])
                raise FetchFailed(
                    f"{name} failed after {attempt} attempts: {e}", attempts=attempt, cause=e
                ) from e

            logger.warning(
                f"{name} failed (attempt {attempt}/{policy.max_attempts}). Retrying in {delay}s",
                extra={"attempt": attempt, "delay_seconds": delay, "error": str(e)},
            )
            await sleep(delay)
