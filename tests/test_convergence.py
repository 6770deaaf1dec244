"""
Unit tests for src/staple/convergence.py

Tests stopping rules, progress notifications and cooperative cancellation.
"""

import logging
import threading

import numpy as np
import pytest

from src.staple.convergence import ConvergenceMonitor
from src.staple.options import StapleConfigurationError


def matrices(value):
    return np.full((2, 2, 2), value)


class TestConvergenceMonitor:
    """Tests for ConvergenceMonitor."""

    def test_requires_a_criterion(self):
        with pytest.raises(StapleConfigurationError, match="stopping criterion"):
            ConvergenceMonitor(None, None)

    def test_threshold_stops(self):
        monitor = ConvergenceMonitor(termination_update_threshold=0.01)

        assert monitor.should_continue()
        monitor.record(matrices(0.5), matrices(0.6))
        assert monitor.should_continue()
        monitor.record(matrices(0.6), matrices(0.601))

        assert not monitor.should_continue()
        assert monitor.converged
        assert monitor.stop_reason == "converged"
        assert monitor.iteration == 2
        assert np.isclose(monitor.max_update, 0.001)

    def test_iteration_cap_stops_without_convergence(self, caplog):
        monitor = ConvergenceMonitor(termination_update_threshold=1e-12, maximum_number_of_iterations=2)

        while monitor.should_continue():
            monitor.record(matrices(0.5), matrices(0.7))

        assert monitor.iteration == 2
        assert not monitor.converged
        assert monitor.stop_reason == "iteration_limit"

        with caplog.at_level(logging.WARNING):
            monitor.report()
        assert "Did not converge" in caplog.text

    def test_zero_iterations(self):
        """A cap of zero stops before the first iteration."""
        monitor = ConvergenceMonitor(maximum_number_of_iterations=0)
        assert not monitor.should_continue()
        assert monitor.iteration == 0
        assert monitor.max_update is None

    def test_progress_callback(self):
        calls = []
        monitor = ConvergenceMonitor(
            termination_update_threshold=1e-6,
            progress_callback=lambda iteration, update: calls.append((iteration, update)),
        )

        monitor.record(matrices(0.5), matrices(0.75))
        monitor.record(matrices(0.75), matrices(0.75))

        assert calls == [(1, 0.25), (2, 0.0)]
        assert monitor.history == [0.25, 0.0]

    def test_cancellation_at_boundary(self):
        cancel = threading.Event()
        monitor = ConvergenceMonitor(termination_update_threshold=1e-6, cancel_event=cancel)

        assert monitor.should_continue()
        monitor.record(matrices(0.5), matrices(0.9))
        cancel.set()

        assert not monitor.should_continue()
        assert monitor.aborted
        assert not monitor.converged
        assert monitor.stop_reason == "aborted"

    def test_convergence_wins_over_cancellation(self):
        cancel = threading.Event()
        monitor = ConvergenceMonitor(termination_update_threshold=0.1, cancel_event=cancel)

        monitor.record(matrices(0.5), matrices(0.5))
        cancel.set()

        assert not monitor.should_continue()
        assert monitor.converged
        assert not monitor.aborted
