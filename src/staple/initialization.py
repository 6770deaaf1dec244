"""
Initial confusion matrices for the STAPLE iteration.

Three strategies are supported:
- trust-biased: diagonal = observer trust, remaining mass spread uniformly
- majority voting: empirical P(observer label | majority label)
- seeded: matrices supplied by the caller (e.g. from a previous run)
"""

import logging
from typing import Optional

import numpy as np

from src.staple.options import DEFAULT_OBSERVER_TRUST, StapleConfigurationError

logger = logging.getLogger(__name__)


def resolve_observer_trust(observer_trust, number_of_observers: int) -> np.ndarray:
    """
    Expand the trust option to one value per observer.

    Args:
        observer_trust: None, a scalar, or a sequence with one value per observer
        number_of_observers: Number of observers N

    Returns:
        Length-N array of trust values in (0, 1]
    """
    if observer_trust is None:
        return np.full(number_of_observers, DEFAULT_OBSERVER_TRUST)

    trust = np.asarray(observer_trust, dtype=np.float64)
    if trust.ndim == 0:
        trust = np.full(number_of_observers, float(trust))
    elif trust.shape != (number_of_observers,):
        raise StapleConfigurationError(
            f"observer_trust has {trust.size} entries, expected {number_of_observers} "
            "(one per observer) or a single value"
        )
    if np.any(~np.isfinite(trust)) or np.any(trust <= 0) or np.any(trust > 1):
        raise StapleConfigurationError("observer_trust values must lie in (0, 1]")
    return trust


def trust_biased_matrices(trust: np.ndarray, number_of_classes: int) -> np.ndarray:
    """
    Confusion matrices that assume each observer is mostly correct.

    Args:
        trust: Length-N diagonal values
        number_of_classes: Number of classes K

    Returns:
        Array (N, K, K) with rows summing to 1
    """
    K = number_of_classes
    off_diagonal = (1.0 - trust) / (K - 1)
    matrices = np.repeat(off_diagonal[:, None, None], K, axis=1).repeat(K, axis=2)
    idx = np.arange(K)
    matrices[:, idx, idx] = trust[:, None]
    return matrices


def majority_vote(
    masked_labels: np.ndarray,
    number_of_classes: int,
    prior_preference: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Per-pixel majority label among observers.

    Ties are broken by the prior preference (lower value wins), or by the
    lowest class index when no preference is given.

    Args:
        masked_labels: Observer labels (N, P)
        number_of_classes: Number of classes K
        prior_preference: Optional validated length-K ranking

    Returns:
        Majority labels (P,)
    """
    K = number_of_classes
    P = masked_labels.shape[1]

    votes = np.zeros((P, K), dtype=np.int64)
    pixels = np.arange(P)
    for observer_labels in masked_labels:
        np.add.at(votes, (pixels, observer_labels), 1)

    ranking = np.arange(K) if prior_preference is None else np.asarray(prior_preference)
    is_top = votes == votes.max(axis=1, keepdims=True)
    rank_of_top = np.where(is_top, ranking[None, :], K)
    return np.argmin(rank_of_top, axis=1)


def majority_vote_matrices(
    masked_labels: np.ndarray,
    number_of_classes: int,
    trust: np.ndarray,
    prior_preference: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Confusion matrices seeded from agreement with the majority-vote labeling.

    Rows of classes that never win the vote fall back to the trust-biased row.

    Returns:
        Array (N, K, K) with rows summing to 1
    """
    K = number_of_classes
    N = masked_labels.shape[0]
    consensus = majority_vote(masked_labels, K, prior_preference)

    matrices = trust_biased_matrices(trust, K)
    for i in range(N):
        counts = np.zeros((K, K), dtype=np.float64)
        np.add.at(counts, (consensus, masked_labels[i]), 1.0)
        support = counts.sum(axis=1)
        supported = support > 0
        matrices[i, supported] = counts[supported] / support[supported, None]

    unsupported = K - len(np.unique(consensus))
    if unsupported:
        logger.debug(f"{unsupported} classes never won the majority vote; using trust-biased rows")
    return matrices


def validate_seed_matrices(
    matrices: np.ndarray, number_of_observers: int, number_of_classes: int
) -> np.ndarray:
    """Check caller-supplied confusion matrices and row-normalize a copy."""
    matrices = np.array(matrices, dtype=np.float64)
    expected = (number_of_observers, number_of_classes, number_of_classes)
    if matrices.shape != expected:
        raise StapleConfigurationError(
            f"initial_confusion_matrices has shape {matrices.shape}, expected {expected}"
        )
    if not np.all(np.isfinite(matrices)) or np.any(matrices < 0):
        raise StapleConfigurationError("initial_confusion_matrices must be finite and non-negative")
    sums = matrices.sum(axis=2, keepdims=True)
    if np.any(sums <= 0):
        raise StapleConfigurationError("initial_confusion_matrices contains an all-zero row")
    return matrices / sums


def initialize_confusion_matrices(
    masked_labels: np.ndarray,
    number_of_classes: int,
    observer_trust=None,
    initialize_with_majority_voting: bool = False,
    prior_preference: Optional[np.ndarray] = None,
    initial_confusion_matrices: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Build the N initial K x K confusion matrices.

    Args:
        masked_labels: Observer labels at admissible pixels (N, P)
        number_of_classes: Number of classes K
        observer_trust: Trust option (see resolve_observer_trust)
        initialize_with_majority_voting: Seed from the majority-vote labeling
        prior_preference: Validated tie-break ranking for the majority vote
        initial_confusion_matrices: Caller-supplied matrices; take precedence

    Returns:
        Array (N, K, K)
    """
    N = masked_labels.shape[0]

    if initial_confusion_matrices is not None:
        logger.info("Initializing confusion matrices from supplied matrices")
        return validate_seed_matrices(initial_confusion_matrices, N, number_of_classes)

    trust = resolve_observer_trust(observer_trust, N)

    if initialize_with_majority_voting:
        logger.info("Initializing confusion matrices by majority voting")
        return majority_vote_matrices(masked_labels, number_of_classes, trust, prior_preference)

    logger.info(f"Initializing confusion matrices with observer trust {np.round(trust, 4).tolist()}")
    return trust_biased_matrices(trust, number_of_classes)
