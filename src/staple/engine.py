"""
Multi-label STAPLE: combine several segmentations of the same scene.

The labelings are weighted by their estimated performance, a per-observer
confusion matrix obtained by expectation-maximization, while the consensus
labeling is estimated at the same time. The multi-label algorithm follows

    T. Rohlfing, D. B. Russakoff, and C. R. Maurer, Jr., "Performance-based
    classifier combination in atlas-based image segmentation using
    expectation-maximization parameter estimation," IEEE Transactions on
    Medical Imaging, vol. 23, pp. 983-994, Aug. 2004.

which extends the binary STAPLE algorithm of Warfield, Zou and Wells
(MICCAI 2002).

Typical use:

    result = combine_segmentations({"rater_a": a, "rater_b": b, "model": c})
    consensus = result.labels
    performance = result.confusion_matrices["model"]
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from src.staple.convergence import ConvergenceMonitor, ProgressCallback
from src.staple.decision import (
    decide_labels,
    output_dtype,
    resolve_undecided_label,
    validate_prior_preference,
)
from src.staple.initialization import initialize_confusion_matrices
from src.staple.inputs import InputCollection, ObserverVolumes
from src.staple.options import StapleOptions
from src.staple.posterior import (
    compute_log_weights,
    iter_tiles,
    normalize_log_weights,
    prior_tile,
    safe_log,
)
from src.staple.priors import estimate_priors
from src.staple.update import accumulate_statistics, reduce_statistics, update_confusion_matrices

logger = logging.getLogger(__name__)


class StapleResult:
    """Outputs of a STAPLE run."""

    def __init__(
        self,
        observer_ids: List[str],
        confusion_matrix_array: np.ndarray,
        labels: Optional[np.ndarray],
        probabilities: Optional[np.ndarray],
        priors: np.ndarray,
        undecided_label: int,
        elapsed_iterations: int,
        max_update: Optional[float],
        update_history: List[float],
        converged: bool,
        aborted: bool,
        num_undecided: int,
        num_collapsed: int,
        zero_support_classes: List[int],
    ):
        self.observer_ids = observer_ids
        self.confusion_matrix_array = confusion_matrix_array
        self.labels = labels
        self.probabilities = probabilities
        self.priors = priors
        self.undecided_label = undecided_label
        self.elapsed_iterations = elapsed_iterations
        self.max_update = max_update
        self.update_history = update_history
        self.converged = converged
        self.aborted = aborted
        self.num_undecided = num_undecided
        self.num_collapsed = num_collapsed
        self.zero_support_classes = zero_support_classes

    @property
    def confusion_matrices(self) -> Dict[str, np.ndarray]:
        """Estimated confusion matrix per observer id; rows are true labels."""
        return {
            observer_id: self.confusion_matrix_array[i]
            for i, observer_id in enumerate(self.observer_ids)
        }

    @property
    def number_of_classes(self) -> int:
        return self.confusion_matrix_array.shape[1]

    def clear_probabilities(self) -> None:
        """Drop the probability volumes to release memory."""
        self.probabilities = None

    def summary(self) -> dict:
        """Plain-Python run summary, suitable for YAML."""
        return {
            "observers": list(self.observer_ids),
            "number_of_classes": self.number_of_classes,
            "elapsed_iterations": self.elapsed_iterations,
            "max_update": self.max_update,
            "converged": self.converged,
            "aborted": self.aborted,
            "undecided_label": self.undecided_label,
            "num_undecided": self.num_undecided,
            "num_collapsed": self.num_collapsed,
            "zero_support_classes": [int(c) for c in self.zero_support_classes],
            "update_history": [float(u) for u in self.update_history],
        }


class _TileRunner:
    """Runs per-tile work sequentially or on a thread pool, keeping tile order."""

    def __init__(self, num_pixels: int, block_size: Optional[int], num_workers: int):
        self.tiles = list(iter_tiles(num_pixels, block_size))
        self.executor = None
        if num_workers > 1 and len(self.tiles) > 1:
            self.executor = ThreadPoolExecutor(max_workers=num_workers)
            logger.debug(f"Processing {len(self.tiles)} tiles on {num_workers} threads")

    def map(self, func: Callable[[slice], object]) -> list:
        if self.executor is None:
            return [func(tile) for tile in self.tiles]
        return list(self.executor.map(func, self.tiles))

    def close(self) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=True)
            self.executor = None


def _em_iteration(
    labels: np.ndarray,
    confusion: np.ndarray,
    log_priors: np.ndarray,
    runner: _TileRunner,
) -> Tuple[np.ndarray, np.ndarray, int]:
    """
    One fused E/M pass over all tiles.

    Returns:
        Tuple of (new confusion matrices, unsupported classes, collapsed pixel count)
    """
    log_confusion = safe_log(confusion)

    def estimate_tile(tile: slice):
        tile_labels = labels[:, tile]
        log_weights = compute_log_weights(tile_labels, log_confusion, prior_tile(log_priors, tile))
        posteriors, collapsed = normalize_log_weights(log_weights)
        numerators, denominators = accumulate_statistics(tile_labels, posteriors)
        return numerators, denominators, int(collapsed.sum())

    partials = runner.map(estimate_tile)
    numerators, denominators = reduce_statistics((num, den) for num, den, _ in partials)
    num_collapsed = sum(count for _, _, count in partials)

    updated, unsupported = update_confusion_matrices(confusion, numerators, denominators)
    return updated, unsupported, num_collapsed


def _final_posteriors(
    labels: np.ndarray,
    confusion: np.ndarray,
    log_priors: np.ndarray,
    runner: _TileRunner,
) -> Tuple[np.ndarray, np.ndarray]:
    """E-step with the final confusion matrices over all tiles."""
    log_confusion = safe_log(confusion)

    def posterior_tile(tile: slice):
        log_weights = compute_log_weights(labels[:, tile], log_confusion, prior_tile(log_priors, tile))
        return normalize_log_weights(log_weights)

    blocks = runner.map(posterior_tile)
    posteriors = np.concatenate([block[0] for block in blocks], axis=0)
    collapsed = np.concatenate([block[1] for block in blocks], axis=0)
    return posteriors, collapsed


def combine_segmentations(
    observations: ObserverVolumes,
    options: Optional[StapleOptions] = None,
    mask: Optional[np.ndarray] = None,
    progress_callback: Optional[ProgressCallback] = None,
    cancel_event: Optional[threading.Event] = None,
) -> StapleResult:
    """
    Combine observer label volumes into a consensus labeling with STAPLE.

    Args:
        observations: Mapping of observer id to integer label volume (or a
            sequence of volumes); all volumes share one shape
        options: Run options (default: StapleOptions())
        mask: Optional volume; only non-zero pixels take part in the
            estimation, other pixels receive the first observer's label
        progress_callback: Called with (iteration, max_update) after each M-step
        cancel_event: Setting this event stops the iteration at the next
            iteration boundary; the latest estimates are used

    Returns:
        StapleResult with the consensus labels, confusion matrices and
        iteration statistics

    Raises:
        StapleConfigurationError: If inputs or options are inconsistent
    """
    options = options or StapleOptions()
    options.validate()

    inputs = InputCollection(observations, mask=mask, number_of_classes=options.number_of_classes)
    K = inputs.number_of_classes

    preference = validate_prior_preference(options.prior_preference, K)
    undecided_label = resolve_undecided_label(options.label_for_undecided_pixels, inputs.max_label)
    if options.label_output and undecided_label < K:
        logger.warning(
            f"Undecided label {undecided_label} coincides with a class label (K={K})"
        )

    monitor = ConvergenceMonitor(
        termination_update_threshold=options.termination_update_threshold,
        maximum_number_of_iterations=options.maximum_number_of_iterations,
        progress_callback=progress_callback,
        cancel_event=cancel_event,
    )

    labels = inputs.masked_labels()
    priors = estimate_priors(
        inputs,
        prior_probabilities=options.prior_probabilities,
        spatial_prior_probabilities=options.spatial_prior_probabilities,
    )
    log_priors = safe_log(priors)

    confusion = initialize_confusion_matrices(
        labels,
        K,
        observer_trust=options.observer_trust,
        initialize_with_majority_voting=options.initialize_with_majority_voting,
        prior_preference=preference,
        initial_confusion_matrices=options.initial_confusion_matrices,
    )

    logger.info(
        f"Starting STAPLE: {inputs.number_of_observers} observers, {K} classes, "
        f"{labels.shape[1]} pixels, threshold={options.termination_update_threshold}, "
        f"max_iterations={options.maximum_number_of_iterations}"
    )

    zero_support = set()
    runner = _TileRunner(labels.shape[1], options.block_size, options.num_workers)
    try:
        while monitor.should_continue():
            updated, unsupported, _ = _em_iteration(labels, confusion, log_priors, runner)

            new_classes = set(int(c) for c in unsupported) - zero_support
            if new_classes and not zero_support:
                logger.warning(
                    f"Classes {sorted(new_classes)} have no expected support in iteration "
                    f"{monitor.iteration + 1}; their confusion matrix rows are left unchanged"
                )
            zero_support |= new_classes

            monitor.record(confusion, updated)
            confusion = updated

        monitor.report()

        posteriors, collapsed = _final_posteriors(labels, confusion, log_priors, runner)
    finally:
        runner.close()

    num_collapsed = int(collapsed.sum())
    if num_collapsed:
        logger.warning(
            f"All class weights vanished at {num_collapsed} pixels; "
            "those pixels use the first observer's label"
        )

    first_observer = inputs.first_observer()
    combined = None
    num_undecided = 0
    if options.label_output:
        decided, num_undecided = decide_labels(
            posteriors,
            collapsed,
            fallback=labels[0],
            undecided_label=undecided_label,
            prior_preference=preference,
            tie_tolerance=options.tie_tolerance,
        )
        combined = inputs.mask.scatter(
            decided,
            fill=first_observer,
            dtype=output_dtype(inputs.label_dtype, undecided_label),
        )
        if num_undecided:
            logger.info(f"{num_undecided} pixels are undecided (label {undecided_label})")

    probabilities = None
    if options.probabilistic_output:
        probabilities = inputs.mask.scatter(posteriors.T, fill=0.0, dtype=np.float64)

    return StapleResult(
        observer_ids=inputs.observer_ids,
        confusion_matrix_array=confusion,
        labels=combined,
        probabilities=probabilities,
        priors=priors,
        undecided_label=undecided_label,
        elapsed_iterations=monitor.iteration,
        max_update=monitor.max_update,
        update_history=list(monitor.history),
        converged=monitor.converged,
        aborted=monitor.aborted,
        num_undecided=num_undecided,
        num_collapsed=num_collapsed,
        zero_support_classes=sorted(zero_support),
    )
