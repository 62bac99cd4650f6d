import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from ..utils import MaxRetriesExceeded, TransferCancelled

logger = logging.getLogger(__name__)


class RetryPolicy:
    """Bounded-attempt retry decisions shared by uploads and queue replay.

    Every failure class is retried alike (network errors, timeouts and both
    4xx and 5xx server rejections); only cancellation is never retried.

    Attributes:
        attempts (int): Extra attempts permitted after the first one.
        delay (float): Initial pause between attempts in seconds.
        backoff (float): Multiplier applied to the pause after each attempt.
            A value of 1 results in a fixed delay.
        max_delay (float): Upper bound for a single pause in seconds.
    """

    def __init__(self, attempts: int = 0, delay: float = 1.0, backoff: float = 1.0, max_delay: float = 300.0):
        if attempts < 0:
            raise ValueError("attempts must be >= 0")
        self.attempts = attempts
        self.delay = max(0.0, delay)
        self.backoff = backoff if backoff >= 1 else 1.0
        self.max_delay = max_delay

    def __repr__(self) -> str:
        return f"RetryPolicy(attempts={self.attempts}, delay={self.delay}, backoff={self.backoff})"

    @property
    def total_attempts(self) -> int:
        return self.attempts + 1

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """Decides whether another attempt follows the failed `attempt` (1-based)."""
        if isinstance(error, (TransferCancelled, asyncio.CancelledError)):
            return False
        return attempt < self.total_attempts

    def delay_for(self, attempt: int) -> float:
        """Returns the pause in seconds to take after the failed `attempt`."""
        return min(self.delay * (self.backoff ** max(0, attempt - 1)), self.max_delay)

    @staticmethod
    def allows_requeue(retry_count: int, max_retries: int) -> bool:
        """Replay rule for queued mutations: keep the item while retry_count <= max_retries."""
        return retry_count <= max_retries

    async def run(
        self,
        operation: Callable[[], Awaitable[Any]],
        on_retry: Optional[Callable[[int, Exception], None]] = None,
        label: str = "operation",
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> Any:
        """Runs `operation` until it succeeds or the policy gives up.

        Args:
            operation: A zero-argument callable returning a fresh awaitable for
                each attempt. Every attempt starts from scratch.
            on_retry: Optional hook called with (failed_attempt, error) before
                the pause that precedes the next attempt.
            label: Name used in log messages.
            sleep: Coroutine function used for the pause between attempts.
                Defaults to `asyncio.sleep`.

        Returns:
            Whatever the successful attempt returned.

        Raises:
            TransferCancelled: Immediately, without retrying.
            MaxRetriesExceeded: When every permitted attempt failed and the
                policy allowed at least one retry.
            Exception: The original error when the policy allows no retries.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except TransferCancelled:
                raise
            except Exception as e:
                if not self.should_retry(attempt, e):
                    if self.attempts == 0:
                        raise
                    logger.error(f"{label} failed on the final attempt ({attempt}/{self.total_attempts}): {e}")
                    raise MaxRetriesExceeded(attempt, e) from e

                pause = self.delay_for(attempt)
                logger.warning(
                    f"{label} failed with '{e}'. Attempt {attempt}/{self.total_attempts}. "
                    f"Retrying in {pause:g} seconds..."
                )
                if on_retry:
                    on_retry(attempt, e)
                if pause > 0:
                    await (sleep or asyncio.sleep)(pause)
                attempt += 1
