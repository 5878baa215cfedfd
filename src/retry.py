"""Bounded retry loops with injectable wait and sleep.

Every retry in the driver (SSH connect, VPC delete, throttled EC2 calls)
goes through RetryPolicy so attempt counts are fixed and tests can run
without real delays.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_fixed
from tenacity import RetryError as _TenacityRetryError
from tenacity.wait import wait_base

from deadline import OperationCancelled

logger = logging.getLogger(__name__)

T = TypeVar('T')


def constant_backoff(delay: float) -> wait_base:
    """Wait the same delay before every retry."""
    return wait_fixed(delay)


class RetryError(_TenacityRetryError):
    """Raised when all attempts are exhausted.

    Attributes:
        attempts: Number of attempts made
        last_error: Exception from the final attempt
    """
    description = 'operation'

    @property
    def attempts(self) -> int:
        return self.last_attempt.attempt_number

    @property
    def last_error(self) -> Optional[BaseException]:
        return self.last_attempt.exception()

    def __str__(self) -> str:
        return f"{self.description} failed after {self.attempts} attempts: {self.last_error}"


@dataclass
class RetryPolicy:
    """Fixed-count retry.

    Attributes:
        max_attempts: Total attempts including the first one
        backoff: tenacity wait strategy for the delay before the next attempt
        sleep: Sleep function; Deadline.sleep is passed here so waits are cancellable
        retry_on: Predicate deciding whether an exception is worth another attempt
    """
    max_attempts: int = 3
    backoff: wait_base = field(default_factory=lambda: constant_backoff(1.0))
    sleep: Callable[[float], None] = time.sleep
    retry_on: Callable[[Exception], bool] = lambda _e: True

    def _retryable(self, error: BaseException) -> bool:
        if isinstance(error, OperationCancelled):
            return False
        return self.retry_on(error)

    def _before_sleep(self, description: str) -> Callable[[RetryCallState], None]:
        def log_attempt(retry_state: RetryCallState) -> None:
            logger.warning(
                f"{description} failed (attempt {retry_state.attempt_number}/{self.max_attempts}): "
                f"{retry_state.outcome.exception()}. Retrying in {retry_state.next_action.sleep:g}s..."
            )
        return log_attempt

    def call(self, fn: Callable[[], T], description: str = 'operation') -> T:
        """Call fn until it succeeds or attempts run out.

        Raises:
            RetryError: All attempts failed with retryable errors
            Exception: The first non-retryable error, unchanged
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.backoff,
            retry=retry_if_exception(self._retryable),
            sleep=self.sleep,
            before_sleep=self._before_sleep(description),
            retry_error_cls=RetryError,
        )
        try:
            return retrying(fn)
        except RetryError as e:
            e.description = description
            logger.warning(str(e))
            raise
