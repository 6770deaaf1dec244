"""
Decision rule: turn final posteriors into a consensus labeling.
"""

from typing import Optional, Sequence, Tuple

import numpy as np

from src.staple.options import StapleConfigurationError


def validate_prior_preference(
    prior_preference: Optional[Sequence[int]], number_of_classes: int
) -> Optional[np.ndarray]:
    """
    Check a tie-break ranking: one unique value in [0, K) per class.

    Returns:
        The ranking as an int64 array, or None when no preference is set
    """
    if prior_preference is None:
        return None

    ranking = np.asarray(prior_preference)
    if ranking.ndim != 1 or ranking.size != number_of_classes:
        raise StapleConfigurationError(
            f"Prior preference has {ranking.size} entries, expected {number_of_classes} "
            "(one per class)"
        )
    if not np.issubdtype(ranking.dtype, np.integer):
        if not np.all(np.equal(np.mod(ranking, 1), 0)):
            raise StapleConfigurationError("Prior preference values must be integers")
    ranking = ranking.astype(np.int64)
    if np.any(ranking < 0) or np.any(ranking >= number_of_classes):
        raise StapleConfigurationError(
            f"Prior preference values must lie in [0, {number_of_classes - 1}]"
        )
    if len(np.unique(ranking)) != ranking.size:
        raise StapleConfigurationError("Prior preference contains duplicate values")
    return ranking


def resolve_undecided_label(override: Optional[int], max_input_label: int) -> int:
    """Undecided sentinel: the override, or the largest input label + 1."""
    if override is not None:
        return int(override)
    return int(max_input_label) + 1


def output_dtype(label_dtype: np.dtype, undecided_label: int) -> np.dtype:
    """
    Dtype for the combined volume.

    The input label dtype is kept unless the undecided label does not fit in
    it, e.g. uint8 inputs that use label 255 produce a uint16 volume.
    """
    label_dtype = np.dtype(label_dtype)
    limits = np.iinfo(label_dtype)
    if limits.min <= undecided_label <= limits.max:
        return label_dtype
    return np.promote_types(label_dtype, np.min_scalar_type(undecided_label))


def decide_labels(
    posteriors: np.ndarray,
    collapsed: np.ndarray,
    fallback: np.ndarray,
    undecided_label: int,
    prior_preference: Optional[np.ndarray] = None,
    tie_tolerance: float = 0.0,
) -> Tuple[np.ndarray, int]:
    """
    Hard labels for a block of admissible pixels.

    Args:
        posteriors: Posteriors (P, K)
        collapsed: (P,) True where all class weights vanished
        fallback: First observer's labels (P,), used for collapsed pixels
        undecided_label: Output for ties when no preference is set
        prior_preference: Validated ranking; lower value wins a tie
        tie_tolerance: Classes within this distance of the maximum tie

    Returns:
        Tuple of (labels (P,) int64, number of undecided pixels)
    """
    K = posteriors.shape[1]

    best = posteriors.max(axis=1, keepdims=True)
    tied = posteriors >= best - tie_tolerance
    num_tied = tied.sum(axis=1)

    if prior_preference is None:
        labels = np.argmax(posteriors, axis=1).astype(np.int64)
        undecided = (num_tied > 1) & ~collapsed
        labels[undecided] = undecided_label
        num_undecided = int(undecided.sum())
    else:
        rank_of_tied = np.where(tied, prior_preference[None, :], K)
        labels = np.argmin(rank_of_tied, axis=1).astype(np.int64)
        num_undecided = 0

    labels[collapsed] = fallback[collapsed]
    return labels, num_undecided
