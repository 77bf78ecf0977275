"""
Integration Tests for the PortfolioEngine entry points.

Covers the documented examples (inverse-variance weighting, a singular
covariance rescued by regularization, a dominant-Sharpe asset under a cap)
and the sum/bounds guarantees of every optimization method.

Run with: pytest tests/test_engine.py -v
"""

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from portfolio_engine.engine import EngineConfig, PortfolioEngine
from portfolio_engine.mathematics import QuantMetrics
from portfolio_engine.exceptions import (
    ConstraintViolationError,
    InsufficientDataError,
    SingularMatrixError,
)
from portfolio_engine.models import (
    AssetData,
    EfficientFrontier,
    OptimizationMethod,
    PortfolioConstraints,
    PortfolioResult,
)
from portfolio_engine.progress import ProgressReporter


@pytest.fixture
def engine():
    return PortfolioEngine()


@pytest.fixture
def assets():
    """Four assets with a year of simulated daily returns."""
    np.random.seed(42)
    daily_means = [0.0004, 0.0005, 0.0003, 0.0002]
    daily_vols = [0.02, 0.015, 0.01, 0.008]
    data = []
    for i, (mean, vol) in enumerate(zip(daily_means, daily_vols)):
        returns = np.random.normal(mean, vol, 252)
        data.append(AssetData(
            symbol=f"AST{i + 1}",
            expected_return=mean * 252,
            volatility=vol * np.sqrt(252),
            returns=returns,
        ))
    return data


class TestDocumentedExamples:
    """Hand-checked scenarios."""

    def test_minimum_variance_inverse_variance_weighting(self, engine):
        """Σ = diag(0.0225, 0.0025): w ∝ [44.4, 400] -> [0.1, 0.9], σ = √0.00225"""
        covariance = np.array([[0.0225, 0.0], [0.0, 0.0025]])

        result = engine.optimize([0.08, 0.04], covariance, OptimizationMethod.MIN_VARIANCE)

        np.testing.assert_allclose(result.weights, [0.1, 0.9], atol=1e-3)
        assert abs(result.volatility - 0.0474) < 1e-4

    def test_singular_covariance_without_regularization(self, engine):
        covariance = np.array([[0.01, 0.01], [0.01, 0.01]])

        with pytest.raises(SingularMatrixError):
            engine.invert(covariance, regularization=0.0)

    def test_singular_covariance_with_regularization(self, engine):
        """Two identical assets split evenly once the diagonal is loaded."""
        covariance = np.array([[0.01, 0.01], [0.01, 0.01]])

        result = engine.optimize([0.08, 0.08], covariance, OptimizationMethod.MIN_VARIANCE)

        np.testing.assert_allclose(result.weights, [0.5, 0.5], atol=1e-6)

    def test_dominant_sharpe_asset_concentrated_within_cap(self, engine):
        """
        Excess returns [0.13, 0.04, 0.03] on equal variances give a tangency
        of [0.65, 0.2, 0.15]; the 0.5 cap holds the first asset at the bound.
        """
        covariance = np.eye(3) * 0.04
        constraints = PortfolioConstraints(max_weight=0.5)

        result = engine.optimize(
            [0.15, 0.06, 0.05], covariance, OptimizationMethod.MAX_SHARPE, constraints
        )

        assert int(np.argmax(result.weights)) == 0
        assert abs(result.weights[0] - 0.5) < 1e-6
        assert result.weights[1] > result.weights[2]
        assert abs(result.weights.sum() - 1.0) < 1e-6


class TestOptimize:
    """Tests for optimization from moments."""

    def test_default_symbols(self, engine):
        result = engine.optimize([0.08, 0.04], np.diag([0.0225, 0.0025]))

        assert [asset.symbol for asset in result.assets] == ["Asset 1", "Asset 2"]
        assert set(result.weights_dict) == {"Asset 1", "Asset 2"}

    def test_numerical_matches_closed_form(self, engine):
        covariance = np.diag([0.04, 0.0025])

        closed = engine.optimize([0.10, 0.05], covariance, OptimizationMethod.MAX_SHARPE)
        numerical = engine.optimize(
            [0.10, 0.05], covariance, OptimizationMethod.MAX_SHARPE_NUMERICAL
        )

        np.testing.assert_allclose(numerical.weights, closed.weights, atol=5e-3)
        assert numerical.method is OptimizationMethod.MAX_SHARPE_NUMERICAL

    def test_custom_risk_free_rate(self):
        engine = PortfolioEngine(EngineConfig(risk_free_rate=0.0))

        result = engine.optimize([0.10, 0.05], np.diag([0.04, 0.0025]),
                                 OptimizationMethod.MAX_SHARPE)

        # Σ⁻¹μ = [2.5, 20] -> [1/9, 8/9]
        np.testing.assert_allclose(result.weights, [1 / 9, 8 / 9], atol=1e-4)
        assert abs(result.sharpe_ratio - result.expected_return / result.volatility) < 1e-12

    def test_single_asset_rejected(self, engine):
        with pytest.raises(InsufficientDataError):
            engine.optimize([0.1], np.array([[0.04]]))

    def test_shape_mismatch_rejected(self, engine):
        with pytest.raises(ValueError):
            engine.optimize([0.1, 0.05], np.eye(3))

    def test_infeasible_constraints_reported(self, engine):
        constraints = PortfolioConstraints(max_weight=0.2)

        result = engine.optimize([0.1, 0.08, 0.06], np.eye(3) * 0.04,
                                 constraints=constraints)

        assert abs(result.constraint_violation - 0.4) < 1e-9

    def test_infeasible_constraints_strict(self):
        engine = PortfolioEngine(EngineConfig(strict_constraints=True))
        constraints = PortfolioConstraints(max_weight=0.2)

        with pytest.raises(ConstraintViolationError):
            engine.optimize([0.1, 0.08, 0.06], np.eye(3) * 0.04, constraints=constraints)


class TestAssetPipeline:
    """Tests for the asset-based public operations."""

    @pytest.mark.parametrize("method", list(OptimizationMethod))
    def test_weights_satisfy_constraints(self, engine, assets, method):
        constraints = PortfolioConstraints(min_weight=0.05, max_weight=0.4)

        result = engine.compute_portfolio(assets, constraints, method)

        assert isinstance(result, PortfolioResult)
        assert abs(result.weights.sum() - 1.0) < 1e-6
        assert np.all(result.weights >= 0.05 - 1e-6)
        assert np.all(result.weights <= 0.4 + 1e-6)
        assert result.volatility >= 0.0
        assert result.method is method

    def test_minimum_variance_uses_sample_covariance(self, engine, assets):
        covariance = engine.compute_covariance(assets)

        result = engine.compute_minimum_variance_portfolio(assets)
        direct = engine.optimize(
            [asset.expected_return for asset in assets], covariance,
            symbols=[asset.symbol for asset in assets],
        )

        np.testing.assert_allclose(result.weights, direct.weights, atol=1e-12)
        assert list(result.weights_dict) == ["AST1", "AST2", "AST3", "AST4"]

    def test_lowest_volatility_asset_weighted_most(self, engine, assets):
        result = engine.compute_minimum_variance_portfolio(assets)

        assert int(np.argmax(result.weights)) == 3

    def test_maximum_sharpe_rejects_minimum_variance(self, engine, assets):
        with pytest.raises(ValueError):
            engine.compute_maximum_sharpe_portfolio(
                assets, method=OptimizationMethod.MIN_VARIANCE
            )

    def test_single_asset_rejected(self, engine, assets):
        with pytest.raises(InsufficientDataError):
            engine.compute_minimum_variance_portfolio(assets[:1])

    def test_covariance_scale(self, assets):
        daily = PortfolioEngine().compute_covariance(assets)
        annual = PortfolioEngine(EngineConfig(covariance_scale=252)).compute_covariance(assets)

        np.testing.assert_allclose(annual, daily * 252)


class TestEfficientFrontier:
    """Tests for compute_efficient_frontier."""

    def test_frontier_structure(self, assets):
        engine = PortfolioEngine(EngineConfig(covariance_scale=252))

        frontier = engine.compute_efficient_frontier(assets, num_points=15)

        assert isinstance(frontier, EfficientFrontier)
        assert 0 < len(frontier.points) <= 15
        risks = [point.risk for point in frontier.points]
        assert risks == sorted(risks)
        assert frontier.symbols == ["AST1", "AST2", "AST3", "AST4"]
        assert frontier.min_variance_portfolio.method is OptimizationMethod.MIN_VARIANCE
        assert frontier.max_sharpe_portfolio.method is OptimizationMethod.MAX_SHARPE

    def test_frontier_points_satisfy_constraints(self, assets):
        engine = PortfolioEngine(EngineConfig(covariance_scale=252))

        frontier = engine.compute_efficient_frontier(
            assets, PortfolioConstraints(max_weight=0.5), num_points=10
        )

        for point in frontier.points:
            assert abs(point.weights.sum() - 1.0) < 1e-6
            assert point.weights.max() <= 0.5 + 1e-6
            assert point.weights.min() >= -1e-6

    def test_default_point_count_from_config(self, assets):
        engine = PortfolioEngine(EngineConfig(covariance_scale=252, num_frontier_points=5))

        frontier = engine.compute_efficient_frontier(assets)

        assert len(frontier.points) <= 5
        assert len(frontier.to_frame()) == len(frontier.points)

    def test_progress_monotonic(self, engine, assets):
        updates = []
        reporter = ProgressReporter(lambda percent, message: updates.append((percent, message)))

        engine.compute_efficient_frontier(assets, num_points=5, progress=reporter)

        percents = [percent for percent, _ in updates]
        assert percents == sorted(percents)
        assert updates[0] == (0.0, "Calculating covariance matrix...")
        assert updates[-1] == (100.0, "Efficient frontier complete")

    def test_covariance_inverted_once(self, engine, assets, monkeypatch):
        calls = []
        invert_matrix = QuantMetrics.invert_matrix

        def counting_invert(*args, **kwargs):
            calls.append(args[0])
            return invert_matrix(*args, **kwargs)

        monkeypatch.setattr(QuantMetrics, "invert_matrix", staticmethod(counting_invert))

        frontier = engine.compute_efficient_frontier(assets, num_points=5)

        assert len(calls) == 1
        assert frontier.points


class TestPrecomputedInverse:
    """optimize() with an inverse supplied by the caller."""

    def test_matches_internal_inversion(self, engine):
        covariance = np.diag([0.04, 0.0025])
        regularized = QuantMetrics.regularize_matrix(covariance, engine.config.regularization)
        inverse = QuantMetrics.invert_matrix(regularized)

        direct = engine.optimize([0.10, 0.05], covariance, OptimizationMethod.MAX_SHARPE)
        shared = engine.optimize([0.10, 0.05], covariance, OptimizationMethod.MAX_SHARPE,
                                 inverse=inverse)

        np.testing.assert_allclose(shared.weights, direct.weights, atol=1e-12)

    def test_wrong_shape_rejected(self, engine):
        with pytest.raises(ValueError):
            engine.optimize([0.10, 0.05], np.diag([0.04, 0.0025]), inverse=np.eye(3))
