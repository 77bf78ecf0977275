"""
Portfolio Optimization Module.

This module implements the weight solvers of the engine, both based on Modern
Portfolio Theory (MPT):

Closed-form solutions (``ClosedFormSolver``):
    Given the inverse covariance Σ⁻¹, the minimum variance, maximum Sharpe
    (tangency) and target-return portfolios have analytic weights. They
    ignore weight bounds; projection happens afterwards.

Iterative solution (``GradientAscentOptimizer``):
    Maximizes the Sharpe ratio by finite-difference gradient ascent with a
    projection onto the constraints after every step, so bounds are honored
    during the search itself. Useful as an alternative to, and a check on,
    the closed form.

Key Concepts:
    - Maximum Sharpe Ratio Portfolio: The portfolio with the highest risk-adjusted
      return (tangent to the Capital Market Line).
    - Minimum Variance Portfolio: The portfolio with the lowest possible risk.
"""

import logging
import time
from typing import Optional

import numpy as np

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from config import (
    RISK_FREE_RATE,
    DENOMINATOR_TOLERANCE,
    VOLATILITY_EPSILON,
    MAX_ITERATIONS,
    LEARNING_RATE,
    GRADIENT_STEP,
    GRADIENT_TOLERANCE,
    FUNCTION_TOLERANCE,
    DEFAULT_SUM_WEIGHTS,
)
from portfolio_engine.constraints import ConstraintProjector
from portfolio_engine.exceptions import (
    DegenerateOptimizationError,
    InsufficientDataError,
)
from portfolio_engine.mathematics import QuantMetrics
from portfolio_engine.models import IterationRecord, IterativeResult
from portfolio_engine.progress import (
    CancellationToken,
    ProgressReporter,
    progress_interval,
)

logger = logging.getLogger(__name__)

GRADIENT_CONVERGED = "Gradient tolerance achieved"
FUNCTION_CONVERGED = "Function tolerance achieved"
MAX_ITERATIONS_REACHED = "Maximum iterations reached"


class ClosedFormSolver:
    """
    Analytic portfolio weights from the inverse covariance matrix.

    Attributes:
        inverse_cov: Σ⁻¹ of the regularized covariance matrix.
        sum_weights: Total the raw weights are normalized to.
        denominator_tolerance: Smallest acceptable normalizing denominator.
    """

    def __init__(
        self,
        inverse_cov: np.ndarray,
        sum_weights: float = DEFAULT_SUM_WEIGHTS,
        denominator_tolerance: float = DENOMINATOR_TOLERANCE
    ) -> None:
        self.inverse_cov = np.asarray(inverse_cov, dtype=float)
        self.n_assets = self.inverse_cov.shape[0]
        self.sum_weights = sum_weights
        self.denominator_tolerance = denominator_tolerance
        self._ones = np.ones(self.n_assets)

    def _normalize(self, numerator: np.ndarray, label: str) -> np.ndarray:
        denominator = float(np.dot(self._ones, numerator))
        if abs(denominator) < self.denominator_tolerance:
            raise DegenerateOptimizationError(
                f"Degenerate optimization problem: {label} denominator "
                f"{denominator:.3e} is near zero."
            )
        return numerator * self.sum_weights / denominator

    def minimum_variance(self) -> np.ndarray:
        """
        Minimum variance weights.

        Formula: w = Σ⁻¹·1 / (1ᵗ·Σ⁻¹·1)
        """
        return self._normalize(self.inverse_cov @ self._ones, "minimum variance")

    def maximum_sharpe(
        self,
        expected_returns: np.ndarray,
        risk_free_rate: float = RISK_FREE_RATE
    ) -> np.ndarray:
        """
        Tangency portfolio weights.

        Formula: w = Σ⁻¹·(μ - r_f) / (1ᵗ·Σ⁻¹·(μ - r_f))

        Raises:
            DegenerateOptimizationError: If 1ᵗ·Σ⁻¹·(μ - r_f) is near zero, e.g.
                when excess returns cancel out.
        """
        excess_returns = np.asarray(expected_returns, dtype=float) - risk_free_rate
        return self._normalize(self.inverse_cov @ excess_returns, "maximum Sharpe")

    def target_return(
        self,
        expected_returns: np.ndarray,
        target: float
    ) -> np.ndarray:
        """
        Minimum variance weights for a given expected return (two-fund form).

        With A = 1ᵗΣ⁻¹1, B = 1ᵗΣ⁻¹μ, C = μᵗΣ⁻¹μ and D = AC - B², the
        Lagrangian solution for target return t and weight sum s is

            w = ((C·s - B·t)·Σ⁻¹1 + (A·t - B·s)·Σ⁻¹μ) / D

        Raises:
            DegenerateOptimizationError: If D is near zero (all assets share
                the same expected return, so the target cannot be steered).
        """
        mu = np.asarray(expected_returns, dtype=float)
        inv_ones = self.inverse_cov @ self._ones
        inv_mu = self.inverse_cov @ mu

        a = float(self._ones @ inv_ones)
        b = float(self._ones @ inv_mu)
        c = float(mu @ inv_mu)
        d = a * c - b * b
        if abs(d) < self.denominator_tolerance:
            raise DegenerateOptimizationError(
                f"Degenerate optimization problem: frontier determinant {d:.3e} "
                f"is near zero."
            )

        s = self.sum_weights
        return ((c * s - b * target) * inv_ones + (a * target - b * s) * inv_mu) / d


class GradientAscentOptimizer:
    """
    Maximizes the Sharpe ratio by projected finite-difference gradient ascent.

    Starting from equal weights, every iteration estimates the gradient of the
    Sharpe ratio, takes a fixed-size step along it within the budget plane,
    projects back onto the constraints and re-evaluates the objective. The
    loop stops when the
    gradient norm or the objective change falls below tolerance, or at the
    iteration cap. Hitting the cap is reported, not raised.

    Attributes:
        expected_returns: Expected return of each asset.
        cov_matrix: Regularized covariance matrix.
        risk_free_rate: Rate subtracted in the Sharpe ratio.
        projector: Constraint projection applied after every step.

    Example:
        >>> optimizer = GradientAscentOptimizer(mu, cov, 0.02, projector)
        >>> result = optimizer.optimize()
        >>> print(result.convergence_reason, result.objective_value)
    """

    def __init__(
        self,
        expected_returns: np.ndarray,
        cov_matrix: np.ndarray,
        risk_free_rate: float,
        projector: ConstraintProjector,
        max_iterations: int = MAX_ITERATIONS,
        learning_rate: float = LEARNING_RATE,
        gradient_step: float = GRADIENT_STEP,
        gradient_tolerance: float = GRADIENT_TOLERANCE,
        function_tolerance: float = FUNCTION_TOLERANCE,
        central_difference: bool = False
    ) -> None:
        self.expected_returns = np.asarray(expected_returns, dtype=float)
        self.cov_matrix = np.asarray(cov_matrix, dtype=float)
        self.risk_free_rate = risk_free_rate
        self.projector = projector
        self.max_iterations = max_iterations
        self.learning_rate = learning_rate
        self.gradient_step = gradient_step
        self.gradient_tolerance = gradient_tolerance
        self.function_tolerance = function_tolerance
        self.central_difference = central_difference

        self._validate_inputs()
        self.n_assets: int = len(self.expected_returns)

    def _validate_inputs(self) -> None:
        if len(self.expected_returns) < 2:
            raise InsufficientDataError("At least 2 assets required.")
        if self.cov_matrix.shape != (len(self.expected_returns),) * 2:
            raise ValueError(
                f"Covariance matrix shape {self.cov_matrix.shape} does not match "
                f"{len(self.expected_returns)} assets."
            )
        if not 0.0 <= self.risk_free_rate <= 1.0:
            raise ValueError("Risk-free rate must be between 0 and 1.")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1.")

    def objective(self, weights: np.ndarray) -> float:
        """
        Sharpe ratio of ``weights``, or -inf for a (near) riskless portfolio.

        Returning -inf rather than 0 keeps the ascent away from degenerate
        points. The variance is not floored here so riskless points are seen.
        """
        portfolio_return = QuantMetrics.portfolio_return(weights, self.expected_returns)
        portfolio_vol = QuantMetrics.portfolio_volatility(weights, self.cov_matrix, floor=0.0)
        if portfolio_vol < VOLATILITY_EPSILON:
            return -np.inf
        return (portfolio_return - self.risk_free_rate) / portfolio_vol

    def gradient(self, weights: np.ndarray) -> np.ndarray:
        """Finite-difference gradient of the objective, one coordinate at a time."""
        h = self.gradient_step
        grad = np.zeros(self.n_assets)
        base = None if self.central_difference else self.objective(weights)

        for i in range(self.n_assets):
            forward = weights.copy()
            forward[i] += h
            if self.central_difference:
                backward = weights.copy()
                backward[i] -= h
                grad[i] = (self.objective(forward) - self.objective(backward)) / (2 * h)
            else:
                grad[i] = (self.objective(forward) - base) / h

        # -inf objectives produce nan/inf differences; those carry no direction
        return np.where(np.isfinite(grad), grad, 0.0)

    def ascent_direction(self, weights: np.ndarray) -> np.ndarray:
        """
        Gradient with its component normal to the budget plane (Σw = s) removed.

        A step along this direction keeps the weight sum, so the projection
        only has to enforce the bounds and the iteration's fixed point is the
        constrained optimum.
        """
        grad = self.gradient(weights)
        return grad - grad.mean()

    def optimize(
        self,
        token: Optional[CancellationToken] = None,
        progress: Optional[ProgressReporter] = None
    ) -> IterativeResult:
        """
        Run gradient ascent to convergence or the iteration cap.

        Args:
            token: Polled before every iteration.
            progress: Receives one update per ~10% of the iteration cap.

        Returns:
            IterativeResult with projected weights and convergence details.

        Raises:
            TaskCancelledError: If the token is cancelled.
        """
        token = token or CancellationToken()
        progress = progress or ProgressReporter()
        start_time = time.perf_counter()

        weights = self.projector.project(np.full(self.n_assets, 1.0 / self.n_assets))
        previous_objective = self.objective(weights)

        history = []
        converged = False
        reason = MAX_ITERATIONS_REACHED
        iteration = 0
        stride = progress_interval(self.max_iterations)

        while iteration < self.max_iterations and not converged:
            token.raise_if_cancelled()

            direction = self.ascent_direction(weights)
            weights = self.projector.project(weights + self.learning_rate * direction)

            current_objective = self.objective(weights)
            gradient_norm = float(np.linalg.norm(direction))
            function_change = abs(current_objective - previous_objective)

            if gradient_norm < self.gradient_tolerance:
                converged = True
                reason = GRADIENT_CONVERGED
            elif function_change < self.function_tolerance:
                converged = True
                reason = FUNCTION_CONVERGED

            previous_objective = current_objective
            iteration += 1
            history.append(
                IterationRecord(iteration, float(current_objective), gradient_norm, reason)
            )

            if iteration % stride == 0 or converged:
                progress.report(
                    iteration / self.max_iterations,
                    f"Iteration {iteration}/{self.max_iterations}: {reason}"
                )

        final_gradient_norm = float(np.linalg.norm(self.ascent_direction(weights)))
        elapsed = time.perf_counter() - start_time

        if not converged:
            logger.warning(
                f"Gradient ascent stopped after {iteration} iterations without "
                f"converging (gradient norm {final_gradient_norm:.3e})."
            )

        return IterativeResult(
            weights=weights,
            objective_value=float(previous_objective),
            iterations=iteration,
            converged=converged,
            convergence_reason=reason,
            gradient_norm=final_gradient_norm,
            constraint_violation=self.projector.violation(weights),
            computation_time=elapsed,
            history=history,
        )
