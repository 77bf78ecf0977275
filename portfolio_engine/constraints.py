"""
Constraint Projection Module.

Turns raw solver weights into weights that respect the caller's
``PortfolioConstraints``: each weight clipped to [min_weight, max_weight] and
the vector rescaled to sum to sum_weights.

This is a projection, not a constrained optimum. When rescaling pushes
weights back outside their bounds, the residual is spread over the weights
that still have room and the process repeats. Whatever violation survives
(e.g. infeasible bounds) is measured and reported, never hidden.
"""

import logging

import numpy as np

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from config import WEIGHT_TOLERANCE, MAX_PROJECTION_ITERATIONS
from portfolio_engine.exceptions import ConstraintViolationError
from portfolio_engine.models import PortfolioConstraints

logger = logging.getLogger(__name__)


class ConstraintProjector:
    """
    Projects weight vectors onto box-plus-budget constraints.

    Attributes:
        constraints: Bounds and target sum.
        tolerance: Tolerance for the sum and bound checks.
        max_iterations: Cap on clip/redistribute passes.

    Example:
        >>> projector = ConstraintProjector(PortfolioConstraints(max_weight=0.5))
        >>> projector.project(np.array([0.8, 0.1, 0.1])).round(2)
        array([0.5 , 0.25, 0.25])
    """

    def __init__(
        self,
        constraints: PortfolioConstraints,
        tolerance: float = WEIGHT_TOLERANCE,
        max_iterations: int = MAX_PROJECTION_ITERATIONS
    ) -> None:
        self.constraints = constraints
        self.tolerance = tolerance
        self.max_iterations = max_iterations

    def project(self, weights: np.ndarray) -> np.ndarray:
        """
        Clip weights to their bounds and rescale them to the target sum.

        Args:
            weights: Raw weights from a solver.

        Returns:
            New array of projected weights.
        """
        lower = self.constraints.min_weight
        upper = self.constraints.max_weight
        target = self.constraints.sum_weights

        projected = np.clip(np.asarray(weights, dtype=float), lower, upper)

        current_sum = projected.sum()
        if abs(current_sum) < self.tolerance:
            # Rescaling a ~zero sum would blow up the weights
            return projected
        projected = projected * target / current_sum

        return self._redistribute(projected)

    def _redistribute(self, weights: np.ndarray) -> np.ndarray:
        """
        Re-clip and move the sum residual onto weights with room left.

        The residual is shared out in proportion to each weight's distance
        from the bound it is moving toward, so no weight overshoots when the
        constraints are feasible.
        """
        lower = self.constraints.min_weight
        upper = self.constraints.max_weight
        target = self.constraints.sum_weights

        redistributed = weights.copy()
        iterations = 0
        while iterations < self.max_iterations:
            clipped = np.clip(redistributed, lower, upper)
            residual = target - clipped.sum()
            if np.allclose(clipped, redistributed, rtol=0.0, atol=self.tolerance * 1e-3) \
                    and abs(residual) <= self.tolerance * 1e-3:
                redistributed = clipped
                break

            redistributed = clipped
            if residual > 0:
                room = upper - redistributed
            else:
                room = redistributed - lower
            room = np.maximum(room, 0.0)

            total_room = room.sum()
            if total_room < self.tolerance * 1e-3:
                # Nothing can absorb the residual: constraints are infeasible
                break

            redistributed = redistributed + residual * room / total_room
            iterations += 1

        return redistributed

    def violation(self, weights: np.ndarray) -> float:
        """
        Measure how far weights are from satisfying the constraints.

        Returns:
            |Σw - sum_weights| plus the total amount by which weights exceed
            their bounds. Zero for a fully compliant vector.
        """
        weights = np.asarray(weights, dtype=float)
        sum_error = abs(weights.sum() - self.constraints.sum_weights)
        below = np.maximum(self.constraints.min_weight - weights, 0.0).sum()
        above = np.maximum(weights - self.constraints.max_weight, 0.0).sum()
        return float(sum_error + below + above)

    def check(self, weights: np.ndarray) -> float:
        """
        Validate projected weights.

        Returns:
            The violation magnitude (within tolerance).

        Raises:
            ConstraintViolationError: If the violation exceeds the tolerance.
        """
        magnitude = self.violation(weights)
        if magnitude > self.tolerance:
            raise ConstraintViolationError(
                f"Weights violate constraints by {magnitude:.3e}.",
                magnitude=magnitude,
            )
        return magnitude
