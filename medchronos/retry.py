"""
Bounded retry for a single fallible async provider call.

Only TransientProviderError is retried. Safety blocks, malformed responses
and invalid input fail identically on every attempt, so they propagate on
the first failure.
"""
import asyncio
from typing import Awaitable, Callable, TypeVar

from .errors import TransientProviderError
from .structured_logging import StructuredLogger

logger = StructuredLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 2  # one retry
DEFAULT_BACKOFF_SECONDS = 2.0


class RetryPolicy:
    """Fixed-delay retry executor."""

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if backoff_seconds < 0:
            raise ValueError("backoff_seconds must be >= 0")
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    async def run(self, operation: Callable[[], Awaitable[T]], label: str = "operation") -> T:
        """Run `operation`, retrying transient failures.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per attempt
            label: Name used in log lines

        Returns:
            The operation's result

        Raises:
            The last TransientProviderError once attempts are exhausted, or any
            non-transient error immediately.
        """
        attempt = 1
        while True:
            try:
                result = await operation()
                if attempt > 1:
                    logger.info(
                        f"{label} succeeded on retry",
                        attempt=attempt,
                        max_attempts=self.max_attempts,
                    )
                return result
            except TransientProviderError as e:
                if attempt >= self.max_attempts:
                    logger.warning(
                        f"{label} failed after {attempt} attempt(s)",
                        attempt=attempt,
                        max_attempts=self.max_attempts,
                        error=str(e),
                    )
                    raise
                logger.info(
                    f"{label} failed, retrying in {self.backoff_seconds}s",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=str(e),
                )
                await asyncio.sleep(self.backoff_seconds)
                attempt += 1


DEFAULT_RETRY_POLICY = RetryPolicy()


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
) -> T:
    """Functional form of RetryPolicy.run."""
    return await RetryPolicy(max_attempts, backoff_seconds).run(operation)
