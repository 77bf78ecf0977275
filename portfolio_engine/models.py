"""
Data Model for the Portfolio Optimization Engine.

Inputs (``AssetData``, ``PortfolioConstraints``) are owned by the caller and
never mutated by the engine. Outputs (``PortfolioResult``,
``EfficientFrontier``, ``IterativeResult``) are plain dataclasses built fresh
for every call.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from config import DEFAULT_SUM_WEIGHTS, DEFAULT_MIN_WEIGHT, DEFAULT_MAX_WEIGHT


class OptimizationMethod(Enum):
    """Solver strategy used to produce portfolio weights."""

    MIN_VARIANCE = "min_variance"
    MAX_SHARPE = "max_sharpe"
    MAX_SHARPE_NUMERICAL = "max_sharpe_numerical"


@dataclass
class AssetData:
    """
    Historical information for a single asset.

    Attributes:
        symbol: Ticker or other identifier.
        expected_return: Annualized expected return.
        volatility: Annualized volatility (informational only).
        returns: Periodic returns, oldest first.
        name: Optional display name.
    """
    symbol: str
    expected_return: float
    volatility: float
    returns: Sequence[float]
    name: str = ""


@dataclass(frozen=True)
class PortfolioConstraints:
    """
    Weight constraints applied after (or during) optimization.

    Attributes:
        sum_weights: Target total of all weights (1.0 = fully invested).
        min_weight: Lower bound for every asset weight.
        max_weight: Upper bound for every asset weight.

    Raises:
        ValueError: If min_weight exceeds max_weight.
    """
    sum_weights: float = DEFAULT_SUM_WEIGHTS
    min_weight: float = DEFAULT_MIN_WEIGHT
    max_weight: float = DEFAULT_MAX_WEIGHT

    def __post_init__(self) -> None:
        if self.min_weight > self.max_weight:
            raise ValueError(
                f"min_weight ({self.min_weight}) must not exceed "
                f"max_weight ({self.max_weight})."
            )

    def is_feasible(self, n_assets: int) -> bool:
        """Whether n bounded weights can add up to sum_weights at all."""
        return (
            n_assets * self.min_weight <= self.sum_weights
            <= n_assets * self.max_weight
        )

    def bounds(self, n_assets: int) -> Tuple[Tuple[float, float], ...]:
        """Per-asset (lower, upper) pairs in the form scipy expects."""
        return tuple((self.min_weight, self.max_weight) for _ in range(n_assets))


@dataclass(frozen=True)
class AssetWeight:
    symbol: str
    weight: float


@dataclass
class PortfolioResult:
    """
    Container for an optimized portfolio.

    Attributes:
        weights: Weight per asset, in input order.
        expected_return: w'μ.
        volatility: √(w'Σw), never negative.
        sharpe_ratio: (R - r_f) / σ, or 0 for a riskless portfolio.
        assets: Symbol/weight pairs in input order.
        method: Solver strategy that produced the weights.
        constraint_violation: Remaining violation after projection.
        computation_time: Wall-clock seconds spent.
    """
    weights: np.ndarray
    expected_return: float
    volatility: float
    sharpe_ratio: float
    assets: List[AssetWeight] = field(default_factory=list)
    method: OptimizationMethod = OptimizationMethod.MIN_VARIANCE
    constraint_violation: float = 0.0
    computation_time: float = 0.0

    @property
    def weights_dict(self) -> Dict[str, float]:
        return {asset.symbol: asset.weight for asset in self.assets}


@dataclass
class FrontierPoint:
    risk: float
    return_: float
    weights: np.ndarray
    sharpe_ratio: float


@dataclass
class EfficientFrontier:
    """
    Points along the efficient frontier plus its two named portfolios.

    Attributes:
        points: Frontier points sorted ascending by risk.
        min_variance_portfolio: Closed-form minimum variance portfolio.
        max_sharpe_portfolio: Closed-form maximum Sharpe portfolio.
        symbols: Asset symbols, in the same order as every weight vector.
    """
    points: List[FrontierPoint]
    min_variance_portfolio: PortfolioResult
    max_sharpe_portfolio: PortfolioResult
    symbols: List[str] = field(default_factory=list)

    def to_frame(self) -> pd.DataFrame:
        """
        Frontier as a DataFrame.

        Returns:
            DataFrame with columns: Return, Volatility, Sharpe, and one per symbol.
        """
        rows = []
        for point in self.points:
            row = {
                "Return": point.return_,
                "Volatility": point.risk,
                "Sharpe": point.sharpe_ratio,
            }
            for symbol, weight in zip(self.symbols, point.weights):
                row[symbol] = weight
            rows.append(row)

        columns = ["Return", "Volatility", "Sharpe"] + list(self.symbols)
        return pd.DataFrame(rows, columns=columns)


@dataclass(frozen=True)
class IterationRecord:
    iteration: int
    objective: float
    gradient_norm: float
    reason: str


@dataclass
class IterativeResult:
    """
    Outcome of the gradient ascent optimizer.

    Non-convergence is not an error: ``converged`` is False and
    ``convergence_reason`` reads "Maximum iterations reached".
    """
    weights: np.ndarray
    objective_value: float
    iterations: int
    converged: bool
    convergence_reason: str
    gradient_norm: float
    constraint_violation: float
    computation_time: float = 0.0
    method: str = "Numerical Optimization (Gradient Ascent)"
    history: List[IterationRecord] = field(default_factory=list)
