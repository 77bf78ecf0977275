"""
Asset Data Preparation Module.

This module turns historical market data the caller already holds (a pandas
DataFrame of prices or of periodic returns) into the ``AssetData`` records the
engine consumes. It applies the same data quality checks before any
statistics are estimated.

Features:
    - Clean price data (timezone removal, gap filling, completeness filter)
    - Calculate log returns for statistical accuracy
    - Annualize expected return and volatility per asset
    - Per-asset summary statistics
"""

import logging
from typing import List, Optional

import numpy as np
import pandas as pd

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from config import (
    RISK_FREE_RATE,
    TRADING_DAYS_PER_YEAR,
    MIN_DATA_COMPLETENESS,
    MAX_CONSECUTIVE_NANS,
)
from portfolio_engine.exceptions import InsufficientDataError
from portfolio_engine.mathematics import QuantMetrics
from portfolio_engine.models import AssetData

logger = logging.getLogger(__name__)


class AssetDataLoader:
    """
    Prepares asset data from a price or return history.

    Exactly one of ``prices`` or ``returns`` must be given. Prices are cleaned
    and converted to log returns; returns are used as supplied after dropping
    incomplete rows.

    Attributes:
        prices: Cleaned price DataFrame (rows=dates, columns=tickers), or None.
        returns: DataFrame of periodic returns.
        periods_per_year: Number of return periods in a year.
        removed_tickers: Tickers dropped for incomplete data.

    Example:
        >>> loader = AssetDataLoader(prices=price_frame)
        >>> assets = loader.to_asset_data()
        >>> result = PortfolioEngine().compute_maximum_sharpe_portfolio(assets)
    """

    def __init__(
        self,
        prices: Optional[pd.DataFrame] = None,
        returns: Optional[pd.DataFrame] = None,
        periods_per_year: int = TRADING_DAYS_PER_YEAR
    ) -> None:
        if (prices is None) == (returns is None):
            raise ValueError("Provide exactly one of prices or returns.")
        if periods_per_year < 1:
            raise ValueError("periods_per_year must be at least 1.")

        self.periods_per_year: int = periods_per_year
        self.removed_tickers: List[str] = []
        self.prices: Optional[pd.DataFrame] = None

        if prices is not None:
            self.prices = self._clean_data(prices.copy())
            self.returns: pd.DataFrame = self._calculate_log_returns(self.prices)
        else:
            self.returns = returns.dropna()

        if len(self.returns) < 2:
            raise InsufficientDataError(
                f"Need at least 2 return observations, got {len(self.returns)}."
            )

        logger.info(
            f"Prepared {len(self.returns.columns)} assets over "
            f"{len(self.returns)} periods. Removed: {self.removed_tickers}"
        )

    @property
    def tickers(self) -> List[str]:
        return list(self.returns.columns)

    def _clean_data(self, prices: pd.DataFrame) -> pd.DataFrame:
        """
        Clean the price data by handling missing values.

        Applies the following cleaning steps:
        1. Remove timezone info (for consistent date comparisons)
        2. Forward fill small gaps (up to MAX_CONSECUTIVE_NANS)
        3. Remove tickers with too many missing values
        4. Drop any remaining rows with NaN values

        Raises:
            ValueError: If nothing is left after cleaning.
        """
        if isinstance(prices.index, pd.DatetimeIndex) and prices.index.tz is not None:
            prices.index = prices.index.tz_localize(None)

        # Forward fill small gaps (weekends, holidays)
        prices = prices.ffill(limit=MAX_CONSECUTIVE_NANS)

        tickers_to_remove = []
        for ticker in prices.columns:
            completeness = prices[ticker].notna().mean()
            if completeness < MIN_DATA_COMPLETENESS:
                tickers_to_remove.append(ticker)
                logger.warning(
                    f"Removing {ticker}: only {completeness:.1%} complete data"
                )

        if tickers_to_remove:
            prices = prices.drop(columns=tickers_to_remove)
            self.removed_tickers.extend(tickers_to_remove)

        prices = prices.dropna()

        if prices.empty:
            raise ValueError("No valid data remaining after cleaning.")
        return prices

    @staticmethod
    def _calculate_log_returns(prices: pd.DataFrame) -> pd.DataFrame:
        """
        Calculate log returns from price data.

        Formula: r_t = ln(P_t / P_{t-1})

        Returns:
            DataFrame of log returns (first row is NaN and dropped).
        """
        log_returns = np.log(prices / prices.shift(1))
        return log_returns.dropna()

    def to_asset_data(self) -> List[AssetData]:
        """
        Build one AssetData per ticker.

        Expected return is the mean periodic return times periods_per_year;
        volatility is the sample standard deviation times its square root.
        The periodic (unannualized) series is kept in ``returns``.
        """
        assets = []
        for ticker in self.returns.columns:
            series = self.returns[ticker]
            assets.append(AssetData(
                symbol=str(ticker),
                expected_return=float(series.mean() * self.periods_per_year),
                volatility=float(series.std() * np.sqrt(self.periods_per_year)),
                returns=series.to_numpy(dtype=float),
            ))
        return assets

    def get_summary_statistics(self, risk_free_rate: float = RISK_FREE_RATE) -> pd.DataFrame:
        """
        Calculate summary statistics for each asset.

        Returns:
            DataFrame with annualized return, volatility, and Sharpe ratio
            for each ticker.
        """
        stats = []
        for asset in self.to_asset_data():
            stats.append({
                "Ticker": asset.symbol,
                "Annual Return": asset.expected_return,
                "Annual Volatility": asset.volatility,
                "Sharpe Ratio": QuantMetrics.sharpe_ratio(
                    asset.expected_return, asset.volatility, risk_free_rate
                ),
            })

        return pd.DataFrame(stats).set_index("Ticker")
