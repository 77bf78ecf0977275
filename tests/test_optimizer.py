"""
Unit Tests for the weight solvers.

Closed-form weights are checked against hand-calculated values on diagonal
covariance matrices, where Σ⁻¹ is just the reciprocal variances. Gradient
ascent is checked against the closed form.

Run with: pytest tests/test_optimizer.py -v
"""

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from portfolio_engine.constraints import ConstraintProjector
from portfolio_engine.exceptions import (
    DegenerateOptimizationError,
    InsufficientDataError,
    TaskCancelledError,
)
from portfolio_engine.models import PortfolioConstraints
from portfolio_engine.optimizer import (
    ClosedFormSolver,
    GradientAscentOptimizer,
    FUNCTION_CONVERGED,
    GRADIENT_CONVERGED,
    MAX_ITERATIONS_REACHED,
)
from portfolio_engine.progress import CancellationToken, ProgressReporter


@pytest.fixture
def two_asset_problem():
    """μ = [0.10, 0.05], Σ = diag(0.04, 0.0025); tangency at rf 2% is [1/7, 6/7]."""
    expected_returns = np.array([0.10, 0.05])
    cov_matrix = np.array([
        [0.04, 0.0],
        [0.0, 0.0025]
    ])
    return expected_returns, cov_matrix


class TestClosedFormSolver:
    """Tests for the analytic solutions."""

    def test_minimum_variance_inverse_variance_weights(self):
        """Σ⁻¹ = diag(25, 100) -> w = [25, 100] / 125 = [0.2, 0.8]"""
        solver = ClosedFormSolver(np.diag([25.0, 100.0]))

        result = solver.minimum_variance()

        np.testing.assert_allclose(result, [0.2, 0.8], atol=1e-12)

    def test_maximum_sharpe(self, two_asset_problem):
        """Σ⁻¹(μ - rf) = [25 * 0.08, 400 * 0.03] = [2, 12] -> [1/7, 6/7]"""
        expected_returns, cov_matrix = two_asset_problem
        solver = ClosedFormSolver(np.linalg.inv(cov_matrix))

        result = solver.maximum_sharpe(expected_returns, risk_free_rate=0.02)

        np.testing.assert_allclose(result, [1 / 7, 6 / 7], atol=1e-12)

    def test_weights_sum_to_target(self):
        solver = ClosedFormSolver(np.diag([25.0, 100.0]), sum_weights=0.5)

        result = solver.minimum_variance()

        assert abs(result.sum() - 0.5) < 1e-12

    def test_zero_excess_return_is_degenerate(self):
        """Every asset returning the risk-free rate leaves nothing to normalize."""
        solver = ClosedFormSolver(np.eye(2))

        with pytest.raises(DegenerateOptimizationError):
            solver.maximum_sharpe(np.array([0.02, 0.02]), risk_free_rate=0.02)

    def test_cancelling_excess_returns_is_degenerate(self):
        solver = ClosedFormSolver(np.eye(2))

        with pytest.raises(DegenerateOptimizationError):
            solver.maximum_sharpe(np.array([0.07, -0.03]), risk_free_rate=0.02)

    def test_target_return_midpoint(self):
        """
        Σ = I, μ = [0.1, 0.2]: A = 2, B = 0.3, C = 0.05, D = 0.01.
        Target 0.15 -> w = (0.005 * [1, 1] + 0 * μ) / 0.01 = [0.5, 0.5]
        """
        solver = ClosedFormSolver(np.eye(2))

        result = solver.target_return(np.array([0.1, 0.2]), 0.15)

        np.testing.assert_allclose(result, [0.5, 0.5], atol=1e-12)

    def test_target_return_hits_target(self):
        np.random.seed(42)
        factor = np.random.normal(0, 0.1, (4, 4))
        cov_matrix = factor @ factor.T + 0.01 * np.eye(4)
        expected_returns = np.array([0.04, 0.07, 0.10, 0.13])
        solver = ClosedFormSolver(np.linalg.inv(cov_matrix))

        result = solver.target_return(expected_returns, 0.09)

        assert abs(result @ expected_returns - 0.09) < 1e-10
        assert abs(result.sum() - 1.0) < 1e-10

    def test_equal_returns_frontier_is_degenerate(self):
        solver = ClosedFormSolver(np.eye(2))

        with pytest.raises(DegenerateOptimizationError):
            solver.target_return(np.array([0.1, 0.1]), 0.1)


class TestGradientAscentValidation:
    """Input validation for the iterative optimizer."""

    def _projector(self):
        return ConstraintProjector(PortfolioConstraints())

    def test_single_asset_rejected(self):
        with pytest.raises(InsufficientDataError):
            GradientAscentOptimizer(np.array([0.1]), np.array([[0.04]]), 0.02, self._projector())

    def test_dimension_mismatch_rejected(self):
        with pytest.raises(ValueError):
            GradientAscentOptimizer(np.array([0.1, 0.05]), np.eye(3), 0.02, self._projector())

    def test_risk_free_rate_out_of_range(self):
        with pytest.raises(ValueError):
            GradientAscentOptimizer(np.array([0.1, 0.05]), np.eye(2), 1.5, self._projector())

    def test_riskless_objective_is_negative_infinity(self):
        optimizer = GradientAscentOptimizer(
            np.array([0.1, 0.05]), np.zeros((2, 2)), 0.02, self._projector()
        )

        assert optimizer.objective(np.array([0.5, 0.5])) == -np.inf


class TestGradientAscent:
    """Convergence behaviour of the iterative optimizer."""

    def test_converges_to_tangency_portfolio(self, two_asset_problem):
        expected_returns, cov_matrix = two_asset_problem
        optimizer = GradientAscentOptimizer(
            expected_returns, cov_matrix, 0.02,
            ConstraintProjector(PortfolioConstraints())
        )

        result = optimizer.optimize()

        assert result.converged
        assert result.convergence_reason in (GRADIENT_CONVERGED, FUNCTION_CONVERGED)
        np.testing.assert_allclose(result.weights, [1 / 7, 6 / 7], atol=5e-3)
        # Tangency Sharpe: (0.4/7 - 0.02) / sqrt(0.13/49) ≈ 0.7211
        assert abs(result.objective_value - 0.7211) < 1e-3
        assert result.iterations == len(result.history)

    def test_central_difference_agrees(self, two_asset_problem):
        expected_returns, cov_matrix = two_asset_problem
        optimizer = GradientAscentOptimizer(
            expected_returns, cov_matrix, 0.02,
            ConstraintProjector(PortfolioConstraints()),
            central_difference=True
        )

        result = optimizer.optimize()

        np.testing.assert_allclose(result.weights, [1 / 7, 6 / 7], atol=5e-3)

    def test_bounds_honored(self, two_asset_problem):
        """The unconstrained tangency puts 6/7 in asset 2; a 0.8 cap binds."""
        expected_returns, cov_matrix = two_asset_problem
        projector = ConstraintProjector(PortfolioConstraints(max_weight=0.8))
        optimizer = GradientAscentOptimizer(expected_returns, cov_matrix, 0.02, projector)

        result = optimizer.optimize()

        assert result.weights.max() <= 0.8 + 1e-6
        assert abs(result.weights.sum() - 1.0) < 1e-6
        assert result.constraint_violation < 1e-6

    def test_iteration_cap_is_not_an_error(self, two_asset_problem):
        expected_returns, cov_matrix = two_asset_problem
        optimizer = GradientAscentOptimizer(
            expected_returns, cov_matrix, 0.02,
            ConstraintProjector(PortfolioConstraints()),
            max_iterations=3
        )

        result = optimizer.optimize()

        assert not result.converged
        assert result.convergence_reason == MAX_ITERATIONS_REACHED
        assert result.iterations == 3
        assert [record.iteration for record in result.history] == [1, 2, 3]
        assert all(record.reason == MAX_ITERATIONS_REACHED for record in result.history)

    def test_gradient_tolerance_stops_first_iteration(self, two_asset_problem):
        expected_returns, cov_matrix = two_asset_problem
        optimizer = GradientAscentOptimizer(
            expected_returns, cov_matrix, 0.02,
            ConstraintProjector(PortfolioConstraints()),
            gradient_tolerance=1e3
        )

        result = optimizer.optimize()

        assert result.converged
        assert result.convergence_reason == GRADIENT_CONVERGED
        assert result.iterations == 1
        assert result.history[-1].reason == GRADIENT_CONVERGED
        assert result.history[-1].gradient_norm < 1e3

    def test_function_tolerance_stops_first_iteration(self, two_asset_problem):
        expected_returns, cov_matrix = two_asset_problem
        optimizer = GradientAscentOptimizer(
            expected_returns, cov_matrix, 0.02,
            ConstraintProjector(PortfolioConstraints()),
            gradient_tolerance=0.0,
            function_tolerance=10.0
        )

        result = optimizer.optimize()

        assert result.converged
        assert result.convergence_reason == FUNCTION_CONVERGED
        assert result.iterations == 1
        assert result.history[-1].reason == FUNCTION_CONVERGED

    def test_objective_improves(self, two_asset_problem):
        expected_returns, cov_matrix = two_asset_problem
        optimizer = GradientAscentOptimizer(
            expected_returns, cov_matrix, 0.02,
            ConstraintProjector(PortfolioConstraints())
        )
        start = optimizer.objective(np.array([0.5, 0.5]))

        result = optimizer.optimize()

        assert result.objective_value > start

    def test_progress_reports_iterations(self, two_asset_problem):
        expected_returns, cov_matrix = two_asset_problem
        messages = []
        optimizer = GradientAscentOptimizer(
            expected_returns, cov_matrix, 0.02,
            ConstraintProjector(PortfolioConstraints()),
            max_iterations=20
        )

        optimizer.optimize(progress=ProgressReporter(lambda p, m: messages.append(m)))

        assert messages[0] == "Iteration 2/20: Maximum iterations reached"
        assert len(messages) == 10

    def test_cancellation(self, two_asset_problem):
        expected_returns, cov_matrix = two_asset_problem
        token = CancellationToken()
        token.cancel()
        optimizer = GradientAscentOptimizer(
            expected_returns, cov_matrix, 0.02,
            ConstraintProjector(PortfolioConstraints())
        )

        with pytest.raises(TaskCancelledError):
            optimizer.optimize(token=token)
