"""
Unit tests for src/staple/engine.py

End-to-end STAPLE runs on small synthetic grids:
- exact agreement, correlated vs. random observers, full disagreement
- iteration cap, masking, warm restarts, cancellation
- tiling/threading invariance and non-fatal numeric conditions
"""

import logging
import threading

import numpy as np
import pytest

from src.staple.engine import combine_segmentations
from src.staple.options import StapleConfigurationError, StapleOptions


def quadrant_pattern():
    """4x4 grid with label 1 in the top-left quadrant, 0 elsewhere."""
    pattern = np.zeros((4, 4), dtype=np.uint8)
    pattern[:2, :2] = 1
    return pattern


def correlated_and_random(seed=42):
    """10x10 grid: two observers equal to a half/half pattern, one randomized."""
    pattern = np.zeros((10, 10), dtype=np.uint8)
    pattern[:, 5:] = 1

    # Random labels, balanced within each true class
    rng = np.random.default_rng(seed)
    random_observer = np.zeros_like(pattern)
    for label in (0, 1):
        region = pattern == label
        values = np.array([0] * 25 + [1] * 25, dtype=np.uint8)
        random_observer[region] = rng.permutation(values)

    observers = {
        "rater_a": pattern.copy(),
        "rater_b": pattern.copy(),
        "random": random_observer,
    }
    return pattern, observers


def cyclic_disagreement():
    """3 observers that disagree at every pixel, symmetric in all classes."""
    base = np.array([[0, 1, 2], [1, 2, 0], [2, 0, 1]], dtype=np.uint8)
    return [base, (base + 1) % 3, (base + 2) % 3]


class TestScenarios:
    """Reference scenarios for the consensus labeling."""

    def test_exact_agreement(self):
        """Two identical observers reproduce the pattern with identity matrices."""
        pattern = quadrant_pattern()
        options = StapleOptions(termination_update_threshold=1e-4, maximum_number_of_iterations=50)

        result = combine_segmentations([pattern, pattern.copy()], options)

        assert result.converged
        assert result.elapsed_iterations <= 5
        assert np.array_equal(result.labels, pattern)
        for matrix in result.confusion_matrix_array:
            assert np.allclose(matrix, np.eye(2), atol=1e-3)

    def test_random_observer_is_discounted(self):
        """Correlated observers approach identity, the randomized one a uniform row."""
        pattern, observers = correlated_and_random()
        options = StapleOptions(termination_update_threshold=1e-6, maximum_number_of_iterations=100)

        result = combine_segmentations(observers, options)
        matrices = result.confusion_matrices

        assert np.array_equal(result.labels, pattern)
        for observer_id in ("rater_a", "rater_b"):
            assert np.all(np.diag(matrices[observer_id]) > 0.95)
        assert np.allclose(matrices["random"], 0.5, atol=0.1)
        assert result.converged

    def test_full_disagreement_is_undecided(self):
        """Symmetric disagreement without a preference yields max label + 1."""
        options = StapleOptions(maximum_number_of_iterations=20)

        result = combine_segmentations(cyclic_disagreement(), options)

        assert result.undecided_label == 3
        assert np.all(result.labels == 3)
        assert result.num_undecided == 9

    def test_full_disagreement_with_preference(self):
        """A prior preference resolves every tie to its top-ranked class."""
        options = StapleOptions(maximum_number_of_iterations=20, prior_preference=[2, 0, 1])

        result = combine_segmentations(cyclic_disagreement(), options)

        assert np.all(result.labels == 1)
        assert result.num_undecided == 0

    def test_undecided_override(self):
        options = StapleOptions(maximum_number_of_iterations=5, label_for_undecided_pixels=255)
        result = combine_segmentations(cyclic_disagreement(), options)
        assert np.all(result.labels == 255)

    def test_iteration_cap(self, caplog):
        """One iteration is executed and non-convergence is reported, not raised."""
        pattern, observers = correlated_and_random()
        options = StapleOptions(termination_update_threshold=1e-12, maximum_number_of_iterations=1)

        with caplog.at_level(logging.WARNING):
            result = combine_segmentations(observers, options)

        assert result.elapsed_iterations == 1
        assert not result.converged
        assert not result.aborted
        assert "Did not converge" in caplog.text
        assert result.labels.shape == pattern.shape
        assert set(np.unique(result.labels)) <= {0, 1}
        assert len(result.update_history) == 1

    def test_mask_isolates_excluded_pixels(self):
        """Labels outside the mask neither affect estimates nor the fallback rule."""
        truth = np.zeros((10, 10), dtype=np.uint8)
        truth[5:, :] = 1
        noisy = truth.copy()
        noisy[0, :3] = 1
        noisy[9, 1] = 0

        mask = np.zeros((10, 10), dtype=np.uint8)
        mask[:, :5] = 1

        clean = {"first": truth.copy(), "second": truth.copy(), "third": noisy.copy()}
        biased = {key: volume.copy() for key, volume in clean.items()}
        biased["second"][:, 5:] = 1 - truth[:, 5:]
        biased["third"][:, 5:] = 1

        options = StapleOptions(termination_update_threshold=1e-8, maximum_number_of_iterations=100)
        result_clean = combine_segmentations(clean, options, mask=mask)
        result_biased = combine_segmentations(biased, options, mask=mask)

        assert np.allclose(result_clean.confusion_matrix_array, result_biased.confusion_matrix_array)
        assert np.allclose(result_clean.priors, result_biased.priors)
        assert np.array_equal(result_biased.labels[:, 5:], biased["first"][:, 5:])
        assert np.array_equal(result_biased.labels[:, :5], truth[:, :5])


class TestRunBehaviour:
    """Warm restarts, cancellation, tiling and numeric edge cases."""

    def test_zero_iteration_restart_is_idempotent(self):
        """Seeding with converged matrices and no iterations reproduces the labels."""
        _, observers = correlated_and_random(seed=7)
        converged = combine_segmentations(
            observers, StapleOptions(termination_update_threshold=1e-10, maximum_number_of_iterations=200)
        )

        restart = combine_segmentations(
            observers,
            StapleOptions(
                maximum_number_of_iterations=0,
                initial_confusion_matrices=converged.confusion_matrix_array,
            ),
        )

        assert restart.elapsed_iterations == 0
        assert restart.max_update is None
        assert np.array_equal(restart.labels, converged.labels)
        assert np.allclose(restart.confusion_matrix_array, converged.confusion_matrix_array)

    def test_progress_callback_and_convergence_trend(self):
        _, observers = correlated_and_random()
        calls = []

        result = combine_segmentations(
            observers,
            StapleOptions(termination_update_threshold=1e-6, maximum_number_of_iterations=100),
            progress_callback=lambda iteration, update: calls.append((iteration, update)),
        )

        assert [c[0] for c in calls] == list(range(1, result.elapsed_iterations + 1))
        assert all(update >= 0 for _, update in calls)
        assert calls[-1][1] < 1e-6
        assert result.max_update == calls[-1][1]

    def test_cancel_before_start(self):
        pattern, observers = correlated_and_random()
        cancel = threading.Event()
        cancel.set()

        result = combine_segmentations(observers, StapleOptions(), cancel_event=cancel)

        assert result.aborted
        assert result.elapsed_iterations == 0
        assert result.labels.shape == pattern.shape

    def test_cancel_after_first_iteration(self):
        _, observers = correlated_and_random()
        cancel = threading.Event()

        result = combine_segmentations(
            observers,
            StapleOptions(termination_update_threshold=1e-12),
            progress_callback=lambda iteration, update: cancel.set(),
            cancel_event=cancel,
        )

        assert result.aborted
        assert not result.converged
        assert result.elapsed_iterations == 1

    def test_tiles_and_threads_do_not_change_estimates(self):
        pattern, observers = correlated_and_random(seed=3)
        base_options = dict(termination_update_threshold=None, maximum_number_of_iterations=15)

        single = combine_segmentations(observers, StapleOptions(**base_options))
        tiled = combine_segmentations(
            observers, StapleOptions(block_size=7, num_workers=3, **base_options)
        )

        assert np.allclose(single.confusion_matrix_array, tiled.confusion_matrix_array, atol=1e-10)
        assert np.array_equal(single.labels, tiled.labels)

    def test_probabilistic_output(self):
        pattern = quadrant_pattern()
        mask = np.ones_like(pattern)
        mask[3, 3] = 0
        options = StapleOptions(probabilistic_output=True, maximum_number_of_iterations=10)

        result = combine_segmentations([pattern, pattern.copy()], options, mask=mask)

        assert result.probabilities.shape == (2, 4, 4)
        sums = result.probabilities.sum(axis=0)
        assert np.allclose(sums[mask == 1], 1.0, atol=1e-6)
        assert sums[3, 3] == 0.0

        result.clear_probabilities()
        assert result.probabilities is None

    def test_probabilities_only(self):
        pattern = quadrant_pattern()
        options = StapleOptions(probabilistic_output=True, label_output=False, maximum_number_of_iterations=3)

        result = combine_segmentations([pattern, pattern.copy()], options)

        assert result.labels is None
        assert result.probabilities.shape == (2, 4, 4)

    def test_zero_support_reported_once(self, caplog):
        """An unused class keeps its initial row and is reported a single time."""
        pattern = quadrant_pattern()
        options = StapleOptions(number_of_classes=3, maximum_number_of_iterations=5,
                                termination_update_threshold=None)

        with caplog.at_level(logging.WARNING):
            result = combine_segmentations([pattern, pattern.copy()], options)

        assert result.zero_support_classes == [2]
        assert np.allclose(result.confusion_matrix_array[:, 2], [0.005, 0.005, 0.99])
        assert caplog.text.count("no expected support") == 1
        assert result.elapsed_iterations == 5

    def test_collapsed_pixels_fall_back(self, caplog):
        """With fully trusted observers a disagreement pixel falls back to the first observer."""
        a = quadrant_pattern()
        b = a.copy()
        b[3, 3] = 1
        b[3, 2] = 1
        options = StapleOptions(observer_trust=1.0, maximum_number_of_iterations=3)

        with caplog.at_level(logging.WARNING):
            result = combine_segmentations({"a": a, "b": b}, options)

        assert result.num_collapsed == 2
        assert result.labels[3, 3] == a[3, 3]
        assert result.labels[3, 2] == a[3, 2]
        assert caplog.text.count("vanished") == 1

    def test_undecided_label_widens_dtype(self):
        """uint8 inputs using label 255 get a uint16 output for undecided pixels."""
        a = np.array([[0, 255], [255, 0]], dtype=np.uint8)
        b = np.array([[255, 0], [0, 255]], dtype=np.uint8)

        result = combine_segmentations([a, b], StapleOptions(maximum_number_of_iterations=3))

        assert result.labels.dtype == np.uint16
        assert result.undecided_label == 256

    def test_three_dimensional_volumes(self):
        volume = np.zeros((3, 4, 4), dtype=np.int32)
        volume[1:, :2, :2] = 2
        volume[:, 3, :] = 1

        result = combine_segmentations([volume, volume.copy(), volume.copy()],
                                       StapleOptions(maximum_number_of_iterations=20))

        assert result.labels.shape == (3, 4, 4)
        assert np.array_equal(result.labels, volume)

    def test_majority_voting_initialization(self):
        pattern, observers = correlated_and_random()
        result = combine_segmentations(
            observers, StapleOptions(initialize_with_majority_voting=True, maximum_number_of_iterations=50)
        )
        assert np.array_equal(result.labels, pattern)

    def test_summary(self):
        pattern = quadrant_pattern()
        result = combine_segmentations({"x": pattern, "y": pattern.copy()})
        summary = result.summary()

        assert summary["observers"] == ["x", "y"]
        assert summary["number_of_classes"] == 2
        assert summary["elapsed_iterations"] == result.elapsed_iterations
        assert summary["converged"] is True


class TestConfigurationErrors:
    """Configuration problems fail before any iteration."""

    def test_no_stopping_criterion(self):
        pattern = quadrant_pattern()
        options = StapleOptions(termination_update_threshold=None)
        with pytest.raises(StapleConfigurationError):
            combine_segmentations([pattern, pattern], options)

    def test_mask_geometry(self):
        pattern = quadrant_pattern()
        with pytest.raises(StapleConfigurationError, match="mask"):
            combine_segmentations([pattern, pattern], mask=np.ones((4, 5)))

    def test_bad_prior_preference(self):
        pattern = quadrant_pattern()
        with pytest.raises(StapleConfigurationError, match="duplicate"):
            combine_segmentations([pattern, pattern], StapleOptions(prior_preference=[1, 1]))

    def test_bad_priors(self):
        pattern = quadrant_pattern()
        with pytest.raises(StapleConfigurationError, match="one per class"):
            combine_segmentations([pattern, pattern], StapleOptions(prior_probabilities=[1.0]))

    def test_callback_not_called_on_error(self):
        calls = []
        with pytest.raises(StapleConfigurationError):
            combine_segmentations(
                [quadrant_pattern()],
                progress_callback=lambda *args: calls.append(args),
            )
        assert calls == []
