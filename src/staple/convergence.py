"""
Stopping rules and progress reporting for the EM iteration.
"""

import logging
import threading
from typing import Callable, List, Optional

import numpy as np

from src.staple.options import StapleConfigurationError
from src.staple.update import max_update

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, float], None]


class ConvergenceMonitor:
    """
    Decide when the EM iteration stops.

    The iteration stops when the largest confusion matrix update falls below
    the termination threshold, when the iteration cap is reached, or when a
    cancellation request is observed at an iteration boundary. In every case
    the caller finalizes with the latest estimates.

    Args:
        termination_update_threshold: Convergence threshold (None disables)
        maximum_number_of_iterations: Iteration cap (None disables)
        progress_callback: Called with (iteration, max_update) after each M-step
        cancel_event: Cooperative cancellation flag, checked before each iteration
    """

    def __init__(
        self,
        termination_update_threshold: Optional[float] = None,
        maximum_number_of_iterations: Optional[int] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        if termination_update_threshold is None and maximum_number_of_iterations is None:
            raise StapleConfigurationError(
                "At least one stopping criterion (termination threshold or "
                "maximum number of iterations) must be configured"
            )
        self.threshold = termination_update_threshold
        self.max_iterations = maximum_number_of_iterations
        self.progress_callback = progress_callback
        self.cancel_event = cancel_event

        self.iteration = 0
        self.max_update: Optional[float] = None
        self.history: List[float] = []
        self.converged = False
        self.aborted = False
        self.stop_reason: Optional[str] = None

    def should_continue(self) -> bool:
        """Check the stopping rules at an iteration boundary."""
        if self.converged:
            self.stop_reason = "converged"
            return False
        if self.max_iterations is not None and self.iteration >= self.max_iterations:
            self.stop_reason = "iteration_limit"
            return False
        if self.cancel_event is not None and self.cancel_event.is_set():
            self.aborted = True
            self.stop_reason = "aborted"
            return False
        return True

    def record(self, previous: np.ndarray, updated: np.ndarray) -> float:
        """
        Record one completed iteration.

        Args:
            previous: Confusion matrices before the M-step
            updated: Confusion matrices after the M-step

        Returns:
            The maximum entry update of this iteration
        """
        self.iteration += 1
        self.max_update = max_update(previous, updated)
        self.history.append(self.max_update)

        logger.debug(f"Iteration {self.iteration}: max confusion matrix update {self.max_update:.3e}")

        if self.threshold is not None and self.max_update < self.threshold:
            self.converged = True

        if self.progress_callback is not None:
            self.progress_callback(self.iteration, self.max_update)

        return self.max_update

    def report(self) -> None:
        """Log how the iteration ended."""
        if self.stop_reason == "converged":
            logger.info(
                f"Converged after {self.iteration} iterations "
                f"(max update {self.max_update:.3e} < {self.threshold:.3e})"
            )
        elif self.stop_reason == "aborted":
            logger.info(f"Iteration aborted after {self.iteration} iterations; using latest estimates")
        elif self.iteration == 0:
            logger.info("No EM iterations requested; deciding from the initial confusion matrices")
        else:
            threshold = "none" if self.threshold is None else f"{self.threshold:.3e}"
            logger.warning(
                f"Did not converge within {self.max_iterations} iterations "
                f"(last max update {self.max_update:.3e}, threshold {threshold}); "
                "using latest estimates"
            )
