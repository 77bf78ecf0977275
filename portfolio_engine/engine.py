"""
Portfolio Engine - synchronous entry points.

``PortfolioEngine`` composes the pipeline

    AssetData → covariance → regularization → inversion
              → {closed form | gradient ascent} → projection → metrics

into the three public operations (minimum variance, maximum Sharpe,
efficient frontier) plus covariance-only and inversion-only helpers. The
engine holds nothing but its ``EngineConfig``; every call builds and drops
its own matrices, so one instance can serve any number of callers.

The same operations run off the caller's thread through
``portfolio_engine.background.BackgroundExecutor``, which passes a
cancellation token and progress reporter into the ``token``/``progress``
parameters accepted here.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from config import (
    RISK_FREE_RATE,
    REGULARIZATION,
    PIVOT_TOLERANCE,
    DENOMINATOR_TOLERANCE,
    WEIGHT_TOLERANCE,
    NUM_FRONTIER_POINTS,
    MAX_ITERATIONS,
    LEARNING_RATE,
    GRADIENT_STEP,
    GRADIENT_TOLERANCE,
    FUNCTION_TOLERANCE,
)
from portfolio_engine.constraints import ConstraintProjector
from portfolio_engine.exceptions import InsufficientDataError
from portfolio_engine.frontier import EfficientFrontierGenerator
from portfolio_engine.mathematics import QuantMetrics
from portfolio_engine.models import (
    AssetData,
    AssetWeight,
    EfficientFrontier,
    OptimizationMethod,
    PortfolioConstraints,
    PortfolioResult,
)
from portfolio_engine.optimizer import ClosedFormSolver, GradientAscentOptimizer
from portfolio_engine.progress import CancellationToken, ProgressReporter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    """
    Numerical settings for one engine instance.

    Attributes:
        risk_free_rate: Default rate for Sharpe ratios and the tangency portfolio.
        regularization: Diagonal loading applied before every inversion.
        pivot_tolerance: Smallest acceptable Gauss-Jordan pivot.
        denominator_tolerance: Smallest acceptable closed-form denominator.
        weight_tolerance: Tolerance for constraint checks.
        covariance_scale: Multiplier for the sample covariance (1 = as estimated,
            252 = annualize daily returns).
        num_frontier_points: Default number of frontier targets.
        max_iterations: Gradient ascent iteration cap.
        learning_rate: Gradient ascent step size.
        gradient_step: Finite-difference step.
        gradient_tolerance: Gradient-norm convergence threshold.
        function_tolerance: Objective-change convergence threshold.
        central_difference: Use central instead of forward differences.
        strict_constraints: Raise ConstraintViolationError instead of only
            reporting the violation.
    """
    risk_free_rate: float = RISK_FREE_RATE
    regularization: float = REGULARIZATION
    pivot_tolerance: float = PIVOT_TOLERANCE
    denominator_tolerance: float = DENOMINATOR_TOLERANCE
    weight_tolerance: float = WEIGHT_TOLERANCE
    covariance_scale: float = 1.0
    num_frontier_points: int = NUM_FRONTIER_POINTS
    max_iterations: int = MAX_ITERATIONS
    learning_rate: float = LEARNING_RATE
    gradient_step: float = GRADIENT_STEP
    gradient_tolerance: float = GRADIENT_TOLERANCE
    function_tolerance: float = FUNCTION_TOLERANCE
    central_difference: bool = False
    strict_constraints: bool = False


class PortfolioEngine:
    """
    Computes optimal portfolios from asset data.

    Example:
        >>> engine = PortfolioEngine(EngineConfig(risk_free_rate=0.03))
        >>> result = engine.compute_maximum_sharpe_portfolio(assets)
        >>> print(result.weights_dict, result.sharpe_ratio)
    """

    def __init__(self, config: Optional[EngineConfig] = None) -> None:
        self.config = config or EngineConfig()

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    def compute_covariance(
        self,
        assets: Sequence[AssetData],
        token: Optional[CancellationToken] = None,
        progress: Optional[ProgressReporter] = None
    ) -> np.ndarray:
        """Sample covariance of the assets' (tail-aligned) return series."""
        return QuantMetrics.covariance_matrix(
            [asset.returns for asset in assets],
            scale=self.config.covariance_scale,
            token=token,
            progress=progress,
        )

    def invert(
        self,
        matrix: np.ndarray,
        regularization: Optional[float] = None,
        token: Optional[CancellationToken] = None,
        progress: Optional[ProgressReporter] = None
    ) -> np.ndarray:
        """
        Regularize then invert a square matrix.

        Args:
            matrix: Square matrix.
            regularization: Diagonal loading; defaults to the config value.
                Pass 0.0 to invert the matrix as given.

        Raises:
            SingularMatrixError: If a pivot falls below tolerance.
        """
        if regularization is None:
            regularization = self.config.regularization
        regularized = QuantMetrics.regularize_matrix(matrix, regularization)
        return QuantMetrics.invert_matrix(
            regularized,
            pivot_tolerance=self.config.pivot_tolerance,
            token=token,
            progress=progress,
        )

    def _projector(self, constraints: PortfolioConstraints) -> ConstraintProjector:
        return ConstraintProjector(constraints, tolerance=self.config.weight_tolerance)

    @staticmethod
    def _validate_assets(assets: Sequence[AssetData]) -> None:
        if len(assets) < 2:
            raise InsufficientDataError(
                f"At least 2 assets required, got {len(assets)}."
            )

    # ------------------------------------------------------------------
    # Optimization from moments
    # ------------------------------------------------------------------

    def optimize(
        self,
        expected_returns: Sequence[float],
        covariance: np.ndarray,
        method: OptimizationMethod = OptimizationMethod.MIN_VARIANCE,
        constraints: Optional[PortfolioConstraints] = None,
        symbols: Optional[Sequence[str]] = None,
        risk_free_rate: Optional[float] = None,
        token: Optional[CancellationToken] = None,
        progress: Optional[ProgressReporter] = None,
        inverse: Optional[np.ndarray] = None
    ) -> PortfolioResult:
        """
        Optimize a portfolio from expected returns and a raw covariance matrix.

        The covariance is regularized and inverted here; metrics are reported
        against the regularized matrix.

        Args:
            expected_returns: μ, one entry per asset.
            covariance: Unregularized covariance matrix (n x n).
            method: Solver strategy.
            constraints: Weight constraints (defaults: sum 1, bounds [0, 1]).
            symbols: Asset identifiers for the result; defaults to "Asset i".
            risk_free_rate: Overrides the config rate.
            token: Polled inside the inversion and gradient loops.
            progress: Receives stage updates.
            inverse: Inverse of the regularized covariance, when the caller
                already holds it. The closed-form methods then skip inversion.

        Returns:
            PortfolioResult with projected weights and metrics.

        Raises:
            InsufficientDataError: Fewer than 2 assets.
            SingularMatrixError: Covariance cannot be inverted.
            DegenerateOptimizationError: Closed-form denominator near zero.
            ConstraintViolationError: Only with strict_constraints.
        """
        start_time = time.perf_counter()
        constraints = constraints or PortfolioConstraints()
        progress = progress or ProgressReporter()
        rf = self.config.risk_free_rate if risk_free_rate is None else risk_free_rate

        mu = np.asarray(expected_returns, dtype=float)
        cov = np.asarray(covariance, dtype=float)
        if len(mu) < 2:
            raise InsufficientDataError(f"At least 2 assets required, got {len(mu)}.")
        if cov.shape != (len(mu), len(mu)):
            raise ValueError(
                f"Covariance matrix shape {cov.shape} does not match {len(mu)} assets."
            )
        symbols = list(symbols) if symbols is not None else [
            f"Asset {i + 1}" for i in range(len(mu))
        ]
        if len(symbols) != len(mu):
            raise ValueError("One symbol per asset is required.")

        regularized = QuantMetrics.regularize_matrix(cov, self.config.regularization)
        projector = self._projector(constraints)

        if method is OptimizationMethod.MAX_SHARPE_NUMERICAL:
            progress.report(0.0, "Running gradient ascent...")
            raw_weights = self._numerical_weights(
                mu, regularized, rf, projector, token, progress.span(0.0, 0.9)
            )
        else:
            if inverse is None:
                progress.report(0.0, "Inverting covariance matrix...")
                inverse = QuantMetrics.invert_matrix(
                    regularized,
                    pivot_tolerance=self.config.pivot_tolerance,
                    token=token,
                    progress=progress.span(0.0, 0.7),
                )
            elif np.shape(inverse) != cov.shape:
                raise ValueError(
                    f"Inverse shape {np.shape(inverse)} does not match {len(mu)} assets."
                )
            solver = ClosedFormSolver(
                inverse,
                sum_weights=constraints.sum_weights,
                denominator_tolerance=self.config.denominator_tolerance,
            )
            progress.report(0.8, f"Calculating {method.value} weights...")
            raw_weights = self._closed_form_weights(method, solver, mu, rf)

        progress.report(0.9, "Applying constraints...")
        weights = projector.project(raw_weights)
        violation = projector.violation(weights)
        if violation > self.config.weight_tolerance:
            if self.config.strict_constraints:
                projector.check(weights)
            logger.warning(
                f"Projected weights violate constraints by {violation:.3e} "
                f"(min={constraints.min_weight}, max={constraints.max_weight}, "
                f"sum={constraints.sum_weights})."
            )

        expected_return, volatility, sharpe = QuantMetrics.portfolio_metrics(
            weights, mu, regularized, rf
        )
        progress.report(1.0, "Portfolio optimization complete")

        return PortfolioResult(
            weights=weights,
            expected_return=expected_return,
            volatility=volatility,
            sharpe_ratio=sharpe,
            assets=[
                AssetWeight(symbol, float(weight))
                for symbol, weight in zip(symbols, weights)
            ],
            method=method,
            constraint_violation=violation,
            computation_time=time.perf_counter() - start_time,
        )

    def _closed_form_weights(
        self,
        method: OptimizationMethod,
        solver: ClosedFormSolver,
        mu: np.ndarray,
        rf: float
    ) -> np.ndarray:
        handlers = {
            OptimizationMethod.MIN_VARIANCE: solver.minimum_variance,
            OptimizationMethod.MAX_SHARPE: lambda: solver.maximum_sharpe(mu, rf),
        }
        return handlers[method]()

    def _numerical_weights(
        self,
        mu: np.ndarray,
        regularized: np.ndarray,
        rf: float,
        projector: ConstraintProjector,
        token: Optional[CancellationToken],
        progress: ProgressReporter
    ) -> np.ndarray:
        optimizer = GradientAscentOptimizer(
            mu,
            regularized,
            rf,
            projector,
            max_iterations=self.config.max_iterations,
            learning_rate=self.config.learning_rate,
            gradient_step=self.config.gradient_step,
            gradient_tolerance=self.config.gradient_tolerance,
            function_tolerance=self.config.function_tolerance,
            central_difference=self.config.central_difference,
        )
        result = optimizer.optimize(token=token, progress=progress)
        logger.info(
            f"Gradient ascent finished: {result.convergence_reason} after "
            f"{result.iterations} iterations (Sharpe {result.objective_value:.4f})."
        )
        return result.weights

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def compute_portfolio(
        self,
        assets: Sequence[AssetData],
        constraints: Optional[PortfolioConstraints] = None,
        method: OptimizationMethod = OptimizationMethod.MIN_VARIANCE,
        risk_free_rate: Optional[float] = None,
        token: Optional[CancellationToken] = None,
        progress: Optional[ProgressReporter] = None
    ) -> PortfolioResult:
        """
        Full pipeline from asset data to an optimized portfolio.

        Covariance estimation takes the first 40% of the progress range and
        optimization the rest.
        """
        self._validate_assets(assets)
        progress = progress or ProgressReporter()

        progress.report(0.0, "Calculating covariance matrix...")
        covariance = self.compute_covariance(assets, token, progress.span(0.05, 0.4))

        result = self.optimize(
            [asset.expected_return for asset in assets],
            covariance,
            method=method,
            constraints=constraints,
            symbols=[asset.symbol for asset in assets],
            risk_free_rate=risk_free_rate,
            token=token,
            progress=progress.span(0.4, 1.0),
        )
        logger.info(
            f"{method.value} portfolio calculated: "
            f"return={result.expected_return:.2%}, volatility={result.volatility:.2%}, "
            f"sharpe={result.sharpe_ratio:.3f}, "
            f"time={result.computation_time * 1000:.2f}ms"
        )
        return result

    def compute_minimum_variance_portfolio(
        self,
        assets: Sequence[AssetData],
        constraints: Optional[PortfolioConstraints] = None
    ) -> PortfolioResult:
        """
        Find the portfolio that minimizes volatility (risk).

        This is the leftmost point on the Efficient Frontier - the portfolio
        with the lowest possible risk among all possible portfolios.
        """
        return self.compute_portfolio(assets, constraints, OptimizationMethod.MIN_VARIANCE)

    def compute_maximum_sharpe_portfolio(
        self,
        assets: Sequence[AssetData],
        constraints: Optional[PortfolioConstraints] = None,
        risk_free_rate: Optional[float] = None,
        method: OptimizationMethod = OptimizationMethod.MAX_SHARPE
    ) -> PortfolioResult:
        """
        Find the portfolio that maximizes the Sharpe ratio.

        This is the optimal risky portfolio - the point where the Capital Market
        Line is tangent to the Efficient Frontier. Pass
        ``OptimizationMethod.MAX_SHARPE_NUMERICAL`` to search with bounds
        enforced at every step instead of projecting the closed form.

        Raises:
            ValueError: If method is not a maximum Sharpe strategy.
        """
        if method is OptimizationMethod.MIN_VARIANCE:
            raise ValueError("Use compute_minimum_variance_portfolio for minimum variance.")
        return self.compute_portfolio(assets, constraints, method, risk_free_rate)

    def compute_efficient_frontier(
        self,
        assets: Sequence[AssetData],
        constraints: Optional[PortfolioConstraints] = None,
        num_points: Optional[int] = None,
        token: Optional[CancellationToken] = None,
        progress: Optional[ProgressReporter] = None
    ) -> EfficientFrontier:
        """
        Generate the efficient frontier with its two named portfolios.

        Args:
            assets: Asset data, at least 2 assets.
            constraints: Weight constraints applied to every point.
            num_points: Number of target returns; defaults to the config value.
            token: Polled in every loop of the pipeline.
            progress: Receives stage updates.

        Returns:
            EfficientFrontier whose points are sorted ascending by risk.
        """
        start_time = time.perf_counter()
        self._validate_assets(assets)
        constraints = constraints or PortfolioConstraints()
        progress = progress or ProgressReporter()
        if num_points is None:
            num_points = self.config.num_frontier_points
        rf = self.config.risk_free_rate

        symbols = [asset.symbol for asset in assets]
        mu = np.array([asset.expected_return for asset in assets], dtype=float)

        progress.report(0.0, "Calculating covariance matrix...")
        covariance = self.compute_covariance(assets, token, progress.span(0.05, 0.3))

        progress.report(0.3, "Inverting covariance matrix...")
        regularized = QuantMetrics.regularize_matrix(covariance, self.config.regularization)
        inverse = QuantMetrics.invert_matrix(
            regularized,
            pivot_tolerance=self.config.pivot_tolerance,
            token=token,
            progress=progress.span(0.3, 0.36),
        )

        min_variance = self.optimize(
            mu, covariance, OptimizationMethod.MIN_VARIANCE, constraints, symbols,
            token=token, progress=progress.span(0.36, 0.38), inverse=inverse,
        )
        max_sharpe = self.optimize(
            mu, covariance, OptimizationMethod.MAX_SHARPE, constraints, symbols,
            token=token, progress=progress.span(0.38, 0.4), inverse=inverse,
        )
        generator = EfficientFrontierGenerator(
            mu,
            regularized,
            ClosedFormSolver(
                inverse,
                sum_weights=constraints.sum_weights,
                denominator_tolerance=self.config.denominator_tolerance,
            ),
            self._projector(constraints),
            risk_free_rate=rf,
            num_points=num_points,
        )

        progress.report(0.4, "Generating frontier points...")
        points = generator.generate(token, progress.span(0.4, 1.0))

        logger.info(
            f"Efficient frontier calculated: {len(points)}/{num_points} points, "
            f"time={(time.perf_counter() - start_time) * 1000:.2f}ms"
        )
        return EfficientFrontier(
            points=points,
            min_variance_portfolio=min_variance,
            max_sharpe_portfolio=max_sharpe,
            symbols=symbols,
        )
