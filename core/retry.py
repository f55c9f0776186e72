"""
Retry policy for external batch calls.

A small value object describing how many times a batch is retried and how
long to wait in between. It drives a tenacity ``AsyncRetrying`` loop; the
backoff function and the sleep coroutine are injectable so the policy can be
exercised without real timers.
"""
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from core.logger import setup_logger

logger = setup_logger(__name__)


def exponential_backoff(base_delay: float, attempt: int) -> float:
    """Delay before retry number ``attempt + 1``: base * 2^attempt."""
    return base_delay * (2 ** attempt)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry with backoff.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1)
        base_delay: Backoff base in seconds
        backoff: Function of (base_delay, attempt) returning the delay in seconds
        sleep: Coroutine used to wait between attempts
    """
    max_retries: int = 3
    base_delay: float = 2.0
    backoff: Callable[[float, int], float] = exponential_backoff
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.base_delay < 0:
            raise ValueError("base_delay cannot be negative")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int) -> float:
        """Delay after the failed attempt ``attempt`` (0-based)."""
        return self.backoff(self.base_delay, attempt)

    def _wait(self, retry_state) -> float:
        return self.delay_for(retry_state.attempt_number - 1)

    def retrying(self, label: str = "batch") -> AsyncRetrying:
        """
        Build a fresh tenacity controller for one unit of work.

        Args:
            label: Name used in retry log lines

        Returns:
            AsyncRetrying that re-raises the last error once attempts run out
        """
        def log_retry(retry_state) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                f"{label}: attempt {retry_state.attempt_number}/{self.max_attempts} failed "
                f"({error}), retrying in {retry_state.next_action.sleep:.1f}s"
            )

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type(Exception),
            sleep=self.sleep,
            before_sleep=log_retry,
            reraise=True,
        )
