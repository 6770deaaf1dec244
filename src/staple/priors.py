"""
Class prior probabilities for STAPLE.

Priors are established once before the EM loop and held fixed for the whole
run; the M-step never re-estimates them.
"""

import logging
from typing import Optional, Sequence

import numpy as np

from src.staple.inputs import InputCollection
from src.staple.options import StapleConfigurationError

logger = logging.getLogger(__name__)


def estimate_label_frequencies(masked_labels: np.ndarray, number_of_classes: int) -> np.ndarray:
    """
    Relative label frequencies over all observers and admissible pixels.

    Args:
        masked_labels: Observer labels (N, P)
        number_of_classes: Number of classes K

    Returns:
        Length-K vector summing to 1
    """
    counts = np.bincount(masked_labels.ravel(), minlength=number_of_classes).astype(np.float64)
    return counts / counts.sum()


def validate_prior_vector(priors: Sequence[float], number_of_classes: int) -> np.ndarray:
    """
    Check a user-supplied prior vector and normalize it to sum 1.

    Raises:
        StapleConfigurationError: On wrong length, negative or non-finite
            entries, or an all-zero vector
    """
    priors = np.asarray(priors, dtype=np.float64).ravel()
    if priors.size != number_of_classes:
        raise StapleConfigurationError(
            f"Prior probabilities have {priors.size} entries, expected {number_of_classes} "
            "(one per class)"
        )
    if not np.all(np.isfinite(priors)) or np.any(priors < 0):
        raise StapleConfigurationError("Prior probabilities must be finite and non-negative")
    total = priors.sum()
    if total <= 0:
        raise StapleConfigurationError("Prior probabilities sum to zero")
    if not np.isclose(total, 1.0):
        logger.info(f"Normalizing prior probabilities (sum was {total:.6f})")
    return priors / total


def validate_spatial_priors(
    spatial_priors: np.ndarray, inputs: InputCollection
) -> np.ndarray:
    """
    Check per-pixel prior volumes and return them over admissible pixels.

    Args:
        spatial_priors: Array of shape (K, *grid)
        inputs: Input collection providing the grid and mask

    Returns:
        Array of shape (P, K); each row sums to 1, except rows of pixels whose
        supplied priors are all zero, which stay zero
    """
    spatial_priors = np.asarray(spatial_priors, dtype=np.float64)
    expected = (inputs.number_of_classes,) + inputs.shape
    if spatial_priors.shape != expected:
        raise StapleConfigurationError(
            f"Spatial prior volumes have shape {spatial_priors.shape}, expected {expected}"
        )
    if not np.all(np.isfinite(spatial_priors)) or np.any(spatial_priors < 0):
        raise StapleConfigurationError("Spatial prior probabilities must be finite and non-negative")

    priors = inputs.mask.select(spatial_priors).T.copy()
    totals = priors.sum(axis=1, keepdims=True)
    empty = totals[:, 0] <= 0
    if np.any(empty):
        logger.warning(
            f"{int(empty.sum())} admissible pixels have all-zero spatial priors; "
            "they will fall back to the first observer's label"
        )
    np.divide(priors, totals, out=priors, where=totals > 0)
    return priors


def estimate_priors(
    inputs: InputCollection,
    prior_probabilities: Optional[Sequence[float]] = None,
    spatial_prior_probabilities: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Establish the fixed class priors for a run.

    Spatial priors take precedence over a prior vector; without either, the
    empirical label frequency over admissible pixels is used.

    Returns:
        Length-K vector, or (P, K) array for spatial priors
    """
    K = inputs.number_of_classes

    if spatial_prior_probabilities is not None:
        if prior_probabilities is not None:
            logger.info("Both prior vector and spatial priors supplied; using spatial priors")
        priors = validate_spatial_priors(spatial_prior_probabilities, inputs)
        logger.info(f"Using spatial prior probabilities for {priors.shape[0]} pixels")
        return priors

    if prior_probabilities is not None:
        priors = validate_prior_vector(prior_probabilities, K)
        logger.info(f"Using supplied prior probabilities: {np.round(priors, 4).tolist()}")
        return priors

    priors = estimate_label_frequencies(inputs.masked_labels(), K)
    logger.info(f"Estimated prior probabilities from label frequency: {np.round(priors, 4).tolist()}")
    return priors
