"""
External cancellation and timeout signal for a running job.
"""

import threading
import time
from typing import Callable, Optional

from .errors import JobCancelled


class CancelToken:
    """Cancellation signal shared by a driver and its orchestrator.

    Every blocking wait in a job goes through :meth:`sleep`, so a cancel
    request or an expired timeout is noticed at the next suspension point.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be > 0")
        self._event = threading.Event()
        self._clock = clock
        self._deadline = clock() + timeout if timeout is not None else None

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """True once cancel() was called or the timeout expired."""
        if self._event.is_set():
            return True
        return self._deadline is not None and self._clock() >= self._deadline

    def raise_if_cancelled(self) -> None:
        """Raise JobCancelled if cancellation has been requested."""
        if self.cancelled:
            raise JobCancelled("Job cancelled")

    def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds``, waking early on cancellation.

        Raises:
            JobCancelled: If cancelled before or during the wait
        """
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        timeout = seconds
        hits_deadline = False
        if self._deadline is not None:
            remaining = max(0.0, self._deadline - self._clock())
            if remaining <= seconds:
                timeout, hits_deadline = remaining, True
        if self._event.wait(timeout) or hits_deadline:
            raise JobCancelled("Job cancelled")
