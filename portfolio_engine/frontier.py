"""
Efficient Frontier Module.

The efficient frontier is the set of optimal portfolios that offer the highest
expected return for a defined level of risk. It is traced here by sweeping
target returns evenly between the lowest and highest asset expected return
and solving a minimum variance problem for each target.

Each target is first solved in closed form (the two-fund Lagrangian in
``ClosedFormSolver.target_return``). When the weight bounds bind, i.e. the
projection has to move the closed-form weights, the point is re-solved with
bounds and the return target enforced inside scipy's SLSQP. Points that
cannot be solved are skipped.
"""

import logging
from typing import List, Optional

import numpy as np
from scipy.optimize import minimize, OptimizeResult

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from config import (
    RISK_FREE_RATE,
    NUM_FRONTIER_POINTS,
    OPTIMIZATION_METHOD,
    MAX_ITERATIONS,
    OPTIMIZATION_TOLERANCE,
)
from portfolio_engine.constraints import ConstraintProjector
from portfolio_engine.exceptions import PortfolioEngineError
from portfolio_engine.mathematics import QuantMetrics
from portfolio_engine.models import FrontierPoint
from portfolio_engine.optimizer import ClosedFormSolver
from portfolio_engine.progress import (
    CancellationToken,
    ProgressReporter,
    progress_interval,
)

logger = logging.getLogger(__name__)


class FrontierPointError(PortfolioEngineError):
    """A single frontier target could not be solved."""


class EfficientFrontierGenerator:
    """
    Generates points along the efficient frontier.

    Attributes:
        expected_returns: Expected return of each asset.
        cov_matrix: Regularized covariance matrix.
        solver: Closed-form solver built on the inverse of cov_matrix.
        projector: Constraint projection for every point.
        risk_free_rate: Rate used for each point's Sharpe ratio.
        num_points: Number of target returns to sweep.
    """

    def __init__(
        self,
        expected_returns: np.ndarray,
        cov_matrix: np.ndarray,
        solver: ClosedFormSolver,
        projector: ConstraintProjector,
        risk_free_rate: float = RISK_FREE_RATE,
        num_points: int = NUM_FRONTIER_POINTS
    ) -> None:
        if num_points < 2:
            raise ValueError("An efficient frontier needs at least 2 points.")

        self.expected_returns = np.asarray(expected_returns, dtype=float)
        self.cov_matrix = np.asarray(cov_matrix, dtype=float)
        self.solver = solver
        self.projector = projector
        self.risk_free_rate = risk_free_rate
        self.num_points = num_points

    def target_returns(self) -> np.ndarray:
        """Evenly spaced targets from min to max asset expected return."""
        min_return = self.expected_returns.min()
        max_return = self.expected_returns.max()
        steps = np.arange(self.num_points) / (self.num_points - 1)
        return min_return + (max_return - min_return) * steps

    def _refine_with_bounds(self, target: float, initial: np.ndarray) -> np.ndarray:
        """
        Minimum variance portfolio for a target return, bounds enforced.

        Args:
            target: Expected return the portfolio must achieve.
            initial: Starting weights (the projected closed-form solution).

        Returns:
            Weights found by SLSQP.

        Raises:
            FrontierPointError: If SLSQP does not converge.
        """
        constraints = [
            {"type": "eq", "fun": lambda w: np.sum(w) - self.projector.constraints.sum_weights},
            {"type": "eq", "fun": lambda w: QuantMetrics.portfolio_return(
                w, self.expected_returns
            ) - target},
        ]

        result: OptimizeResult = minimize(
            QuantMetrics.portfolio_variance,
            initial,
            args=(self.cov_matrix,),
            method=OPTIMIZATION_METHOD,
            bounds=self.projector.constraints.bounds(len(initial)),
            constraints=constraints,
            options={
                "maxiter": MAX_ITERATIONS,
                "ftol": OPTIMIZATION_TOLERANCE
            }
        )

        if not result.success:
            raise FrontierPointError(f"Bounded solve failed: {result.message}")
        return result.x

    def solve_point(self, target: float) -> FrontierPoint:
        """
        Solve the frontier portfolio for one target return.

        Raises:
            PortfolioEngineError: If the point cannot be solved.
        """
        raw = self.solver.target_return(self.expected_returns, target)
        weights = self.projector.project(raw)

        if not np.allclose(weights, raw, rtol=0.0, atol=self.projector.tolerance):
            weights = self.projector.project(self._refine_with_bounds(target, weights))

        expected_return, volatility, sharpe = QuantMetrics.portfolio_metrics(
            weights, self.expected_returns, self.cov_matrix, self.risk_free_rate
        )
        return FrontierPoint(
            risk=volatility,
            return_=expected_return,
            weights=weights,
            sharpe_ratio=sharpe,
        )

    def generate(
        self,
        token: Optional[CancellationToken] = None,
        progress: Optional[ProgressReporter] = None
    ) -> List[FrontierPoint]:
        """
        Sweep all target returns.

        Args:
            token: Polled before every point.
            progress: Receives "Generating point" updates.

        Returns:
            Solved frontier points sorted ascending by risk.

        Raises:
            TaskCancelledError: If the token is cancelled.
        """
        token = token or CancellationToken()
        progress = progress or ProgressReporter()

        targets = self.target_returns()
        stride = progress_interval(len(targets))
        points: List[FrontierPoint] = []

        for i, target in enumerate(targets):
            token.raise_if_cancelled()
            if i % stride == 0:
                progress.report(
                    i / len(targets),
                    f"Generating point {i + 1}/{len(targets)}..."
                )

            try:
                points.append(self.solve_point(float(target)))
            except PortfolioEngineError as e:
                logger.warning(f"Skipping frontier point {i + 1} (target {target:.4f}): {e}")

        progress.report(1.0, "Efficient frontier complete")
        return sorted(points, key=lambda point: point.risk)
