"""
Batch Loop Controller - bounded, cancellable iteration for long-running jobs.

A job hands the controller one iteration callable. The controller keeps
calling it until it reports no more work, cancellation is requested, the
wall-clock budget runs out or the iteration cap is reached. Cancellation is
only observed between iterations, so a started iteration always finishes.

The result tells the caller whether work may remain; callers reschedule
themselves on that signal.
"""

from __future__ import annotations

import enum
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger


class LoopExit(str, enum.Enum):
    DRAINED = "drained"
    CANCELLED = "cancelled"
    BUDGET_EXHAUSTED = "budget_exhausted"
    ITERATION_LIMIT = "iteration_limit"


@dataclass
class LoopResult:
    """How a batch loop ended."""

    iterations: int
    productive_iterations: int
    elapsed_seconds: float
    exit_reason: LoopExit

    @property
    def work_may_remain(self) -> bool:
        """True when the loop stopped on a budget or cap instead of running dry."""
        return self.exit_reason in (LoopExit.BUDGET_EXHAUSTED, LoopExit.ITERATION_LIMIT)


class BatchLoopController:
    """
    Drive an iteration callable within a time budget and an optional cap.

    Example:
        >>> controller = BatchLoopController(max_duration_seconds=600)
        >>> result = controller.run(lambda: process_next_seed(), cancel_event)
        >>> if result.work_may_remain:
        ...     scheduler.enqueue(invocation)
    """

    def __init__(
        self,
        max_duration_seconds: float | None = None,
        max_iterations: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_duration_seconds = max_duration_seconds
        self.max_iterations = max_iterations
        self.clock = clock

    def run(
        self,
        iteration: Callable[[], bool],
        cancel_event: threading.Event | None = None,
    ) -> LoopResult:
        """
        Call iteration() until it returns False or a stop condition is met.

        Args:
            iteration: Performs one unit of work. Returns True when it made
                progress and more work may follow, False when nothing was left.
            cancel_event: Cooperative cancellation flag checked before each iteration.

        Returns:
            LoopResult describing the number of iterations and the exit reason.
        """
        started = self.clock()
        iterations = 0
        productive = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                exit_reason = LoopExit.CANCELLED
                break
            if (
                self.max_duration_seconds is not None
                and self.clock() - started >= self.max_duration_seconds
            ):
                exit_reason = LoopExit.BUDGET_EXHAUSTED
                break
            if self.max_iterations is not None and iterations >= self.max_iterations:
                exit_reason = LoopExit.ITERATION_LIMIT
                break

            iterations += 1
            if not iteration():
                exit_reason = LoopExit.DRAINED
                break
            productive += 1

        elapsed = self.clock() - started
        logger.debug(
            "Batch loop finished after {} iterations ({:.1f}s): {}",
            iterations,
            elapsed,
            exit_reason.value,
        )
        return LoopResult(
            iterations=iterations,
            productive_iterations=productive,
            elapsed_seconds=elapsed,
            exit_reason=exit_reason,
        )
