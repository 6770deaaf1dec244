"""
Run options for multi-label STAPLE.

Every configurable field is an explicit optional value: ``None`` means
"unset, use the default behaviour". Options can be built directly or from the
``staple`` section of a YAML config file.
"""

from typing import Optional, Sequence

import numpy as np


class StapleConfigurationError(ValueError):
    """Raised before any iteration when inputs or options are inconsistent."""


DEFAULT_TERMINATION_UPDATE_THRESHOLD = 1e-5
DEFAULT_OBSERVER_TRUST = 0.99
DEFAULT_TIE_TOLERANCE = 1e-9


class StapleOptions:
    """
    Options for a STAPLE run.

    Args:
        number_of_classes: Number of label classes K (default: max label + 1)
        prior_probabilities: Length-K class prior vector (default: label frequency)
        spatial_prior_probabilities: Per-pixel priors of shape (K, *grid)
        prior_preference: Length-K ranking used to break ties (lower wins)
        observer_trust: Initial diagonal value, scalar or one per observer
        termination_update_threshold: Stop once the largest confusion matrix
            change drops below this value (None disables the criterion)
        maximum_number_of_iterations: Iteration cap (None disables the criterion)
        initialize_with_majority_voting: Seed confusion matrices from a
            majority-vote labeling
        initial_confusion_matrices: Seed matrices of shape (N, K, K), e.g. from
            a previous run
        probabilistic_output: Also return per-class posterior volumes
        label_output: Return the hard consensus labeling
        label_for_undecided_pixels: Output value for unresolved ties
            (default: max input label + 1)
        tie_tolerance: Absolute tolerance for posterior ties
        block_size: Masked pixels per tile (default: all pixels in one tile)
        num_workers: Worker threads used to process tiles
    """

    def __init__(
        self,
        number_of_classes: Optional[int] = None,
        prior_probabilities: Optional[Sequence[float]] = None,
        spatial_prior_probabilities: Optional[np.ndarray] = None,
        prior_preference: Optional[Sequence[int]] = None,
        observer_trust=None,
        termination_update_threshold: Optional[float] = DEFAULT_TERMINATION_UPDATE_THRESHOLD,
        maximum_number_of_iterations: Optional[int] = None,
        initialize_with_majority_voting: bool = False,
        initial_confusion_matrices: Optional[np.ndarray] = None,
        probabilistic_output: bool = False,
        label_output: bool = True,
        label_for_undecided_pixels: Optional[int] = None,
        tie_tolerance: float = DEFAULT_TIE_TOLERANCE,
        block_size: Optional[int] = None,
        num_workers: int = 1,
    ):
        self.number_of_classes = number_of_classes
        self.prior_probabilities = prior_probabilities
        self.spatial_prior_probabilities = spatial_prior_probabilities
        self.prior_preference = prior_preference
        self.observer_trust = observer_trust
        self.termination_update_threshold = termination_update_threshold
        self.maximum_number_of_iterations = maximum_number_of_iterations
        self.initialize_with_majority_voting = initialize_with_majority_voting
        self.initial_confusion_matrices = initial_confusion_matrices
        self.probabilistic_output = probabilistic_output
        self.label_output = label_output
        self.label_for_undecided_pixels = label_for_undecided_pixels
        self.tie_tolerance = tie_tolerance
        self.block_size = block_size
        self.num_workers = num_workers

    # Keys accepted in the ``staple`` section of a config file. Array-valued
    # fields (spatial priors, seeded matrices) are supplied programmatically.
    CONFIG_KEYS = (
        "number_of_classes",
        "prior_probabilities",
        "prior_preference",
        "observer_trust",
        "termination_update_threshold",
        "maximum_number_of_iterations",
        "initialize_with_majority_voting",
        "probabilistic_output",
        "label_output",
        "label_for_undecided_pixels",
        "tie_tolerance",
        "block_size",
        "num_workers",
    )

    @classmethod
    def from_dict(cls, config: Optional[dict]) -> "StapleOptions":
        """
        Build options from a config mapping (e.g. the ``staple`` YAML section).

        Args:
            config: Mapping of option name to value; None gives the defaults

        Returns:
            StapleOptions instance
        """
        config = dict(config or {})
        unknown = sorted(set(config) - set(cls.CONFIG_KEYS))
        if unknown:
            raise StapleConfigurationError(f"Unknown STAPLE option(s): {', '.join(unknown)}")
        return cls(**config)

    def to_dict(self) -> dict:
        """Return the config-file representable options as plain Python values."""
        config = {}
        for key in self.CONFIG_KEYS:
            value = getattr(self, key)
            if isinstance(value, np.ndarray):
                value = value.tolist()
            elif isinstance(value, tuple):
                value = list(value)
            config[key] = value
        return config

    def validate(self) -> None:
        """
        Check option values that do not depend on the input volumes.

        Raises:
            StapleConfigurationError: If an option is out of range or no
                stopping criterion is configured
        """
        threshold = self.termination_update_threshold
        max_iterations = self.maximum_number_of_iterations

        if threshold is None and max_iterations is None:
            raise StapleConfigurationError(
                "Neither a termination update threshold nor a maximum number of "
                "iterations is configured; the iteration would never stop"
            )
        if threshold is not None and not threshold >= 0:
            raise StapleConfigurationError(
                f"termination_update_threshold must be non-negative, got {threshold}"
            )
        if max_iterations is not None and (int(max_iterations) != max_iterations or max_iterations < 0):
            raise StapleConfigurationError(
                f"maximum_number_of_iterations must be a non-negative integer, got {max_iterations}"
            )
        if self.number_of_classes is not None and self.number_of_classes < 2:
            raise StapleConfigurationError(
                f"At least 2 classes are required, got number_of_classes={self.number_of_classes}"
            )
        if not self.label_output and not self.probabilistic_output:
            raise StapleConfigurationError(
                "Both label_output and probabilistic_output are disabled; nothing to produce"
            )
        if not self.tie_tolerance >= 0:
            raise StapleConfigurationError(
                f"tie_tolerance must be non-negative, got {self.tie_tolerance}"
            )
        if self.block_size is not None and self.block_size < 1:
            raise StapleConfigurationError(f"block_size must be positive, got {self.block_size}")
        if self.num_workers < 1:
            raise StapleConfigurationError(f"num_workers must be at least 1, got {self.num_workers}")
        if self.label_for_undecided_pixels is not None and self.label_for_undecided_pixels < 0:
            raise StapleConfigurationError(
                f"label_for_undecided_pixels must be non-negative, got {self.label_for_undecided_pixels}"
            )

    def __repr__(self) -> str:
        fields = ", ".join(f"{key}={getattr(self, key)!r}" for key in self.CONFIG_KEYS)
        return f"StapleOptions({fields})"
