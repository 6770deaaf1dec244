"""
E-step: per-pixel posterior probabilities of the true label.

For each admissible pixel p and candidate true label t the unnormalized weight
is Prior(t) * prod_i Confusion[i][t][label_i(p)]. The product is accumulated as
a sum of logs and normalized with a max-shifted log-sum-exp, because direct
multiplication underflows once the number of observers grows.
"""

import logging
from typing import Iterator, Optional, Tuple

import numpy as np
from scipy.special import logsumexp

logger = logging.getLogger(__name__)


def safe_log(probabilities: np.ndarray) -> np.ndarray:
    """Elementwise log with log(0) = -inf and no runtime warning."""
    with np.errstate(divide="ignore"):
        return np.log(probabilities)


def iter_tiles(num_pixels: int, block_size: Optional[int] = None) -> Iterator[slice]:
    """Yield contiguous slices covering ``num_pixels`` admissible pixels."""
    step = num_pixels if not block_size else int(block_size)
    step = max(step, 1)
    for start in range(0, num_pixels, step):
        yield slice(start, min(start + step, num_pixels))


def prior_tile(log_priors: np.ndarray, tile: slice) -> np.ndarray:
    """Log priors for one tile: a (K,) vector is shared, (P, K) is sliced."""
    if log_priors.ndim == 2:
        return log_priors[tile]
    return log_priors


def compute_log_weights(
    labels: np.ndarray, log_confusion: np.ndarray, log_priors: np.ndarray
) -> np.ndarray:
    """
    Unnormalized log posterior weights.

    Args:
        labels: Observer labels (N, P)
        log_confusion: Log confusion matrices (N, K, K)
        log_priors: Log priors (K,) or (P, K)

    Returns:
        Log weights (P, K)
    """
    num_observers, num_pixels = labels.shape
    K = log_confusion.shape[1]

    log_weights = np.array(np.broadcast_to(log_priors, (num_pixels, K)), dtype=np.float64)
    for i in range(num_observers):
        # Column o of matrix i holds log P(o | t) for every t
        log_weights += log_confusion[i][:, labels[i]].T
    return log_weights


def normalize_log_weights(log_weights: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Turn log weights into posteriors.

    Returns:
        posteriors: (P, K), rows sum to 1; all-zero rows for collapsed pixels
        collapsed: (P,) boolean, True where every class weight is zero
    """
    collapsed = np.all(np.isneginf(log_weights), axis=1)
    if np.any(collapsed):
        logger.debug(f"{int(collapsed.sum())} of {len(collapsed)} pixels have no non-zero class weight")
    posteriors = np.zeros_like(log_weights)

    valid = ~collapsed
    if np.any(valid):
        shifted = log_weights[valid]
        shifted = shifted - logsumexp(shifted, axis=1, keepdims=True)
        probabilities = np.exp(shifted)
        probabilities /= probabilities.sum(axis=1, keepdims=True)
        posteriors[valid] = probabilities

    return posteriors, collapsed


def compute_posteriors(
    labels: np.ndarray, confusion: np.ndarray, priors: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """
    E-step for a block of admissible pixels.

    Args:
        labels: Observer labels (N, P)
        confusion: Confusion matrices (N, K, K)
        priors: Class priors (K,) or per-pixel (P, K)

    Returns:
        Tuple of (posteriors (P, K), collapsed (P,))
    """
    log_weights = compute_log_weights(labels, safe_log(confusion), safe_log(priors))
    return normalize_log_weights(log_weights)
