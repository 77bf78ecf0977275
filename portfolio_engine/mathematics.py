"""
Quantitative Metrics Module for Portfolio Optimization.

This module provides the numerical building blocks of Modern Portfolio Theory
(MPT): sample covariance estimation, diagonal regularization, matrix inversion
by Gauss-Jordan elimination, and the portfolio metrics (return, volatility,
Sharpe ratio) every optimizer reports.

Mathematical Background:
------------------------
Modern Portfolio Theory, developed by Harry Markowitz in 1952, is based on the idea
that investors can construct portfolios to maximize expected return for a given level
of risk. The key insight is that an asset's risk and return should not be assessed
alone, but by how it contributes to a portfolio's overall risk and return.

Key Formulas:
    - Sample Covariance: Σ_ij = Σ_t (x_i,t - x̄_i)(x_j,t - x̄_j) / (m - 1)
    - Portfolio Return: R_p = Σ(w_i * μ_i)
    - Portfolio Volatility: σ_p = √(w^T * Σ * w)
    - Sharpe Ratio: SR = (R_p - R_f) / σ_p
"""

import logging
from typing import Optional, Sequence, Tuple, Union

import numpy as np

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from config import (
    RISK_FREE_RATE,
    REGULARIZATION,
    PIVOT_TOLERANCE,
    VARIANCE_FLOOR,
    VOLATILITY_EPSILON,
)
from portfolio_engine.exceptions import InsufficientDataError, SingularMatrixError
from portfolio_engine.progress import (
    CancellationToken,
    ProgressReporter,
    progress_interval,
)

logger = logging.getLogger(__name__)

ReturnSeries = Union[np.ndarray, Sequence[Sequence[float]]]


class QuantMetrics:
    """
    A collection of static methods for calculating quantitative financial metrics.

    This class provides the mathematical foundation for portfolio optimization.
    The covariance and inversion routines are written as explicit loops so
    that they can poll a cancellation token and report progress between
    rows; inside each row the work is vectorized with numpy.

    All methods are static to allow for easy testing and standalone usage.
    """

    @staticmethod
    def align_returns(returns: ReturnSeries) -> np.ndarray:
        """
        Truncate return series to their common length, keeping the most recent.

        Args:
            returns: One return series per asset, oldest observation first.

        Returns:
            Array of shape (n_assets, m) holding the last m observations of each
            series, where m is the length of the shortest series.

        Raises:
            InsufficientDataError: If there are no series or m < 2.
        """
        series = [np.asarray(r, dtype=float).ravel() for r in returns]
        if not series:
            raise InsufficientDataError("No return series supplied.")

        min_length = min(len(s) for s in series)
        if min_length < 2:
            raise InsufficientDataError(
                f"Return series too short: need at least 2 observations, got {min_length}."
            )

        return np.vstack([s[-min_length:] for s in series])

    @staticmethod
    def covariance_matrix(
        returns: ReturnSeries,
        scale: float = 1.0,
        token: Optional[CancellationToken] = None,
        progress: Optional[ProgressReporter] = None
    ) -> np.ndarray:
        """
        Calculate the Bessel-corrected sample covariance matrix.

        Series are first aligned from the most recent observation backward
        (see ``align_returns``). The matrix is filled one row at a time and
        mirrored, so it is exactly symmetric.

        Args:
            returns: One return series per asset.
            scale: Factor applied to the result (e.g. 252 to annualize daily data).
            token: Polled before every row.
            progress: Receives "Calculating covariance" updates.

        Returns:
            Covariance matrix of shape (n_assets, n_assets).

        Raises:
            InsufficientDataError: If the aligned series have fewer than 2 points.
            TaskCancelledError: If the token is cancelled mid-sweep.
        """
        token = token or CancellationToken()
        progress = progress or ProgressReporter()

        data = QuantMetrics.align_returns(returns)
        n_assets, n_obs = data.shape
        centered = data - data.mean(axis=1, keepdims=True)

        covariance = np.zeros((n_assets, n_assets))
        stride = progress_interval(n_assets)
        for i in range(n_assets):
            token.raise_if_cancelled()
            if i % stride == 0:
                progress.report(
                    i / n_assets,
                    f"Calculating covariance: {i + 1}/{n_assets} assets..."
                )

            row = centered[i:] @ centered[i] / (n_obs - 1)
            covariance[i, i:] = row
            covariance[i:, i] = row

        progress.report(1.0, "Covariance matrix complete")
        return covariance * scale

    @staticmethod
    def regularize_matrix(
        matrix: np.ndarray,
        regularization: float = REGULARIZATION
    ) -> np.ndarray:
        """
        Add a constant to the diagonal (diagonal loading).

        This handles cases where the covariance matrix might be singular
        (non-invertible) due to perfectly correlated assets or insufficient data.

        Args:
            matrix: Square covariance matrix.
            regularization: Value added to every diagonal entry.

        Returns:
            New regularized matrix; the input is left untouched.
        """
        regularized = np.array(matrix, dtype=float, copy=True)
        regularized[np.diag_indices_from(regularized)] += regularization
        return regularized

    @staticmethod
    def invert_matrix(
        matrix: np.ndarray,
        pivot_tolerance: float = PIVOT_TOLERANCE,
        token: Optional[CancellationToken] = None,
        progress: Optional[ProgressReporter] = None
    ) -> np.ndarray:
        """
        Invert a square matrix by Gauss-Jordan elimination with partial pivoting.

        The augmented system [A | I] is reduced column by column. For each
        column the remaining row with the largest absolute entry becomes the
        pivot row, which keeps the elimination numerically stable.

        Args:
            matrix: Square matrix to invert.
            pivot_tolerance: Smallest acceptable pivot magnitude.
            token: Polled before every pivot column.
            progress: Receives "Processing row" updates.

        Returns:
            The inverse matrix.

        Raises:
            ValueError: If the matrix is not square.
            SingularMatrixError: If a pivot is smaller than pivot_tolerance.
            TaskCancelledError: If the token is cancelled mid-sweep.
        """
        token = token or CancellationToken()
        progress = progress or ProgressReporter()

        a = np.array(matrix, dtype=float)
        if a.ndim != 2 or a.shape[0] != a.shape[1]:
            raise ValueError(f"Matrix must be square, got shape {a.shape}.")

        n = a.shape[0]
        augmented = np.hstack([a, np.eye(n)])

        stride = progress_interval(n)
        for col in range(n):
            token.raise_if_cancelled()
            if col % stride == 0:
                progress.report(col / n, f"Processing row {col + 1}/{n}...")

            # Partial pivoting: largest magnitude among the remaining rows
            pivot_row = col + int(np.argmax(np.abs(augmented[col:, col])))
            if pivot_row != col:
                augmented[[col, pivot_row]] = augmented[[pivot_row, col]]

            pivot = augmented[col, col]
            if abs(pivot) < pivot_tolerance:
                raise SingularMatrixError(
                    f"Matrix is singular or near-singular (pivot {pivot:.3e} "
                    f"in column {col}).",
                    column=col,
                    pivot=float(pivot),
                )

            augmented[col] /= pivot

            factors = augmented[:, col].copy()
            factors[col] = 0.0
            augmented -= np.outer(factors, augmented[col])

        progress.report(1.0, "Matrix inversion complete")
        return augmented[:, n:].copy()

    @staticmethod
    def portfolio_return(weights: np.ndarray, expected_returns: np.ndarray) -> float:
        """
        Calculate the expected portfolio return.

        Formula: R_p = Σ(w_i * μ_i)

        Args:
            weights: Array of portfolio weights.
            expected_returns: Annualized expected return of each asset.

        Returns:
            Expected portfolio return as a decimal (e.g., 0.12 = 12%).
        """
        return float(np.dot(weights, expected_returns))

    @staticmethod
    def portfolio_variance(
        weights: np.ndarray,
        cov_matrix: np.ndarray,
        floor: float = VARIANCE_FLOOR
    ) -> float:
        """
        Calculate w^T * Σ * w, clamped to a small positive floor.

        The floor removes negative-variance artifacts from floating-point error.
        """
        variance = float(np.dot(weights, np.dot(cov_matrix, weights)))
        return max(variance, floor)

    @staticmethod
    def portfolio_volatility(
        weights: np.ndarray,
        cov_matrix: np.ndarray,
        floor: float = VARIANCE_FLOOR
    ) -> float:
        """
        Calculate the portfolio volatility (standard deviation).

        Portfolio volatility accounts for the correlations between assets,
        which is why diversification can reduce overall portfolio risk.

        Formula: σ_p = √(w^T * Σ * w)

        Args:
            weights: Array of portfolio weights.
            cov_matrix: Covariance matrix of returns (n x n).
            floor: Lower clamp applied to the variance.

        Returns:
            Portfolio volatility as a decimal (e.g., 0.15 = 15%).
        """
        return float(np.sqrt(QuantMetrics.portfolio_variance(weights, cov_matrix, floor)))

    @staticmethod
    def sharpe_ratio(
        portfolio_return: float,
        portfolio_volatility: float,
        risk_free_rate: float = RISK_FREE_RATE,
        epsilon: float = VOLATILITY_EPSILON
    ) -> float:
        """
        Calculate the Sharpe Ratio of a portfolio.

        The Sharpe Ratio measures risk-adjusted return, showing how much
        excess return (above risk-free rate) is earned per unit of volatility.

        Formula: SR = (R_p - R_f) / σ_p

        Args:
            portfolio_return: Expected portfolio return (decimal).
            portfolio_volatility: Portfolio volatility (decimal).
            risk_free_rate: Risk-free rate (decimal, default: 2%).
            epsilon: Volatility below this counts as zero.

        Returns:
            Sharpe Ratio (dimensionless).

        Note:
            Returns 0.0 if volatility is zero or very small to avoid division errors.
        """
        if portfolio_volatility < epsilon:
            return 0.0
        return (portfolio_return - risk_free_rate) / portfolio_volatility

    @staticmethod
    def portfolio_metrics(
        weights: np.ndarray,
        expected_returns: np.ndarray,
        cov_matrix: np.ndarray,
        risk_free_rate: float = RISK_FREE_RATE
    ) -> Tuple[float, float, float]:
        """
        Return (expected_return, volatility, sharpe_ratio) for a weight vector.
        """
        expected_return = QuantMetrics.portfolio_return(weights, expected_returns)
        volatility = QuantMetrics.portfolio_volatility(weights, cov_matrix)
        sharpe = QuantMetrics.sharpe_ratio(expected_return, volatility, risk_free_rate)
        return expected_return, volatility, sharpe
