"""
Progress reporting and cooperative cancellation.

Long loops in the engine (covariance rows, inversion pivots, frontier points,
gradient iterations) accept an optional ``CancellationToken`` and
``ProgressReporter``. The token is polled at the top of every iteration; the
reporter emits at roughly every tenth of the loop. Both default to inert
instances, so the synchronous path pays nothing for them.
"""

import logging
import threading
import time
from typing import Callable, Optional

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from config import PROGRESS_STEPS
from portfolio_engine.exceptions import TaskCancelledError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]


class CancellationToken:
    """Flag shared between a task and whoever may cancel it."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """
        Checkpoint for loop boundaries.

        Raises:
            TaskCancelledError: If cancel() has been called.
        """
        if self._event.is_set():
            raise TaskCancelledError("Task cancelled")


class ProgressReporter:
    """
    Maps local progress onto a slice of the overall task's 0-100 range.

    A pipeline stage receives a reporter for its own slice (see ``span``)
    and reports in its own terms: ``report(0.5, ...)`` halfway through the
    stage becomes ``start + 0.5 * (end - start)`` for the caller.

    Attributes:
        callback: Receives (percent, message); None disables reporting.
        start: Overall percent at local fraction 0.
        end: Overall percent at local fraction 1.
        yield_seconds: Pause after each emission.
    """

    def __init__(
        self,
        callback: Optional[ProgressCallback] = None,
        start: float = 0.0,
        end: float = 100.0,
        yield_seconds: float = 0.0
    ) -> None:
        self.callback = callback
        self.start = start
        self.end = end
        self.yield_seconds = yield_seconds

    def report(self, fraction: float, message: str) -> None:
        """Emit progress at ``fraction`` (0..1) of this reporter's slice."""
        if self.callback is None:
            return
        fraction = min(1.0, max(0.0, fraction))
        percent = self.start + fraction * (self.end - self.start)
        self.callback(min(100.0, max(0.0, percent)), message)
        if self.yield_seconds > 0:
            time.sleep(self.yield_seconds)

    def span(self, start: float, end: float) -> "ProgressReporter":
        """Child reporter covering local fractions [start, end] of this one."""
        width = self.end - self.start
        return ProgressReporter(
            self.callback,
            start=self.start + start * width,
            end=self.start + end * width,
            yield_seconds=self.yield_seconds,
        )


def progress_interval(total: int, steps: int = PROGRESS_STEPS) -> int:
    """Loop stride between progress emissions (about ``steps`` per loop)."""
    return max(1, total // steps)
