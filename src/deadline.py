"""Per-target deadline with external cancellation.

A Deadline wraps one target's whole teardown or provisioning sequence.
Steps call check() between operations and sleep through deadline.sleep()
so that an interrupt wakes a waiting retry loop immediately.
"""

import logging
import signal
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_TARGET_TIMEOUT = 15 * 60


class OperationCancelled(Exception):
    """Work stopped by deadline expiry or an external interrupt.

    Attributes:
        reason: 'deadline' or 'interrupt'
    """

    def __init__(self, message: str, reason: str):
        self.reason = reason
        super().__init__(message)


class CancelToken:
    """Process-wide interrupt flag shared by every Deadline of one invocation."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to seconds; returns True if cancelled meanwhile."""
        return self._event.wait(seconds)


class Deadline:
    """Cancellable deadline for a single target."""

    def __init__(
        self,
        timeout: float = DEFAULT_TARGET_TIMEOUT,
        token: Optional[CancelToken] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = timeout
        self.token = token or CancelToken()
        self._clock = clock
        self._expires_at = clock() + timeout

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self, step: str = '') -> None:
        """Raise OperationCancelled if interrupted or out of time."""
        where = f" during {step}" if step else ''
        if self.token.cancelled:
            raise OperationCancelled(f"operation cancelled{where}", reason='interrupt')
        if self.expired:
            raise OperationCancelled(
                f"deadline of {self.timeout:g}s exceeded{where}", reason='deadline'
            )

    def sleep(self, seconds: float) -> None:
        """Sleep, but never past the deadline and never through an interrupt."""
        self.check()
        wait_for = min(seconds, self.remaining())
        if self.token.wait(wait_for):
            self.check()
        if wait_for < seconds:
            self.check()


def install_interrupt_handler(token: CancelToken) -> None:
    """Cancel token on SIGINT/SIGTERM instead of raising KeyboardInterrupt."""

    def _handler(signum, _frame):
        logger.warning(f"Received signal {signal.Signals(signum).name}, cancelling remaining work...")
        token.cancel()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
