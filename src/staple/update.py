"""
M-step: re-estimate confusion matrices from E-step posteriors.

Each tile of pixels produces private partial sums per (observer, true label,
observed label). The partials are combined in one sequential reduction, which
is associative over any partitioning of the pixels.
"""

import logging
from typing import Iterable, Tuple

import numpy as np

logger = logging.getLogger(__name__)


def accumulate_statistics(
    labels: np.ndarray, posteriors: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Partial M-step sums for one tile.

    Args:
        labels: Observer labels (N, P)
        posteriors: Posteriors (P, K)

    Returns:
        numerators: (N, K, K), [i, t, o] = sum of Posterior(p, t) over pixels
            where observer i reports o
        denominators: (K,), [t] = sum of Posterior(p, t) over all pixels
    """
    num_observers = labels.shape[0]
    K = posteriors.shape[1]

    numerators = np.zeros((num_observers, K, K), dtype=np.float64)
    true_offsets = np.arange(K)[None, :] * K
    weights = posteriors.ravel()
    for i in range(num_observers):
        cells = (true_offsets + labels[i][:, None]).ravel()
        numerators[i] = np.bincount(cells, weights=weights, minlength=K * K).reshape(K, K)

    denominators = posteriors.sum(axis=0)
    return numerators, denominators


def reduce_statistics(
    partials: Iterable[Tuple[np.ndarray, np.ndarray]]
) -> Tuple[np.ndarray, np.ndarray]:
    """Sum per-tile partials in order."""
    numerators = None
    denominators = None
    for tile_numerators, tile_denominators in partials:
        if numerators is None:
            numerators = tile_numerators.copy()
            denominators = tile_denominators.copy()
        else:
            numerators += tile_numerators
            denominators += tile_denominators
    if numerators is None:
        raise ValueError("No partial statistics to reduce")
    return numerators, denominators


def update_confusion_matrices(
    previous: np.ndarray, numerators: np.ndarray, denominators: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """
    New confusion matrices from reduced statistics.

    Rows of classes without expected support (zero denominator) keep their
    previous values.

    Args:
        previous: Current matrices (N, K, K)
        numerators: Reduced numerators (N, K, K)
        denominators: Reduced denominators (K,)

    Returns:
        Tuple of (new matrices (N, K, K), indices of unsupported classes)
    """
    updated = previous.copy()
    supported = denominators > 0
    updated[:, supported, :] = numerators[:, supported, :] / denominators[supported][None, :, None]

    unsupported = np.flatnonzero(~supported)
    if unsupported.size:
        logger.debug(f"Classes without expected support keep their rows: {unsupported.tolist()}")
    return updated, unsupported


def max_update(previous: np.ndarray, updated: np.ndarray) -> float:
    """Largest absolute change of any confusion matrix entry."""
    return float(np.max(np.abs(updated - previous)))
