"""
Portfolio Optimization Engine - Source Package

This package contains the numerical core for portfolio optimization
based on Modern Portfolio Theory (MPT).

Modules:
    - mathematics: Covariance, regularization, inversion and portfolio metrics
    - constraints: Projection of weights onto bounds and a target sum
    - optimizer: Closed-form and gradient ascent weight solvers
    - frontier: Efficient frontier generation
    - engine: Synchronous entry points
    - background: Worker-thread task execution with progress and cancellation
    - data_loader: Asset data preparation from price or return history
"""

from portfolio_engine.background import (
    BackgroundExecutor,
    OptimizationTask,
    TaskStatus,
    TaskType,
)
from portfolio_engine.data_loader import AssetDataLoader
from portfolio_engine.engine import EngineConfig, PortfolioEngine
from portfolio_engine.exceptions import (
    ConstraintViolationError,
    DegenerateOptimizationError,
    InsufficientDataError,
    PortfolioEngineError,
    SingularMatrixError,
    TaskCancelledError,
)
from portfolio_engine.mathematics import QuantMetrics
from portfolio_engine.models import (
    AssetData,
    AssetWeight,
    EfficientFrontier,
    FrontierPoint,
    IterativeResult,
    OptimizationMethod,
    PortfolioConstraints,
    PortfolioResult,
)

__all__ = [
    "AssetData",
    "AssetDataLoader",
    "AssetWeight",
    "BackgroundExecutor",
    "ConstraintViolationError",
    "DegenerateOptimizationError",
    "EfficientFrontier",
    "EngineConfig",
    "FrontierPoint",
    "InsufficientDataError",
    "IterativeResult",
    "OptimizationMethod",
    "OptimizationTask",
    "PortfolioConstraints",
    "PortfolioEngine",
    "PortfolioEngineError",
    "PortfolioResult",
    "QuantMetrics",
    "SingularMatrixError",
    "TaskCancelledError",
    "TaskStatus",
    "TaskType",
]

__version__ = "1.0.0"
