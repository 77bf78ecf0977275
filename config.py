"""
Central configuration for the Portfolio Optimization Engine.

This module contains all configurable parameters including numerical
tolerances, solver defaults, and background worker settings used throughout
the engine. Per-call overrides go through ``portfolio_engine.EngineConfig``,
whose defaults are read from here.
"""

# =============================================================================
# Financial Constants
# =============================================================================
# Risk-free rate (annualized)
RISK_FREE_RATE: float = 0.02

# Trading days per year (US market standard)
TRADING_DAYS_PER_YEAR: int = 252

# =============================================================================
# Numerical Tolerances
# =============================================================================
# Diagonal loading applied to every covariance matrix before inversion
REGULARIZATION: float = 1e-6

# Pivots smaller than this make the matrix singular
PIVOT_TOLERANCE: float = 1e-12

# Closed-form normalizing denominators smaller than this are degenerate
DENOMINATOR_TOLERANCE: float = 1e-10

# Tolerance for sum-of-weights and bound checks
WEIGHT_TOLERANCE: float = 1e-6

# Floor for portfolio variance (guards against negative round-off)
VARIANCE_FLOOR: float = 1e-16

# Volatility below this is treated as zero
VOLATILITY_EPSILON: float = 1e-10

# =============================================================================
# Portfolio Constraints
# =============================================================================
DEFAULT_SUM_WEIGHTS: float = 1.0
DEFAULT_MIN_WEIGHT: float = 0.0
DEFAULT_MAX_WEIGHT: float = 1.0

# Maximum clip/redistribute passes when projecting weights onto bounds
MAX_PROJECTION_ITERATIONS: int = 100

# =============================================================================
# Optimization Parameters
# =============================================================================
# Number of points on the efficient frontier curve
NUM_FRONTIER_POINTS: int = 20

# Optimization method for scipy.optimize.minimize (frontier refinement)
OPTIMIZATION_METHOD: str = "SLSQP"

# Maximum iterations for optimizers
MAX_ITERATIONS: int = 500

# Convergence tolerance for scipy.optimize.minimize
OPTIMIZATION_TOLERANCE: float = 1e-10

# Gradient ascent settings
LEARNING_RATE: float = 0.01
GRADIENT_STEP: float = 1e-8
GRADIENT_TOLERANCE: float = 1e-6
FUNCTION_TOLERANCE: float = 1e-8

# =============================================================================
# Background Worker
# =============================================================================
# Progress is reported roughly every 1/PROGRESS_STEPS of a loop
PROGRESS_STEPS: int = 10

# Pause after each progress emission so cancellation can interleave
WORKER_YIELD_SECONDS: float = 0.001

# Finished tasks older than this are dropped by cleanup_tasks()
TASK_RETENTION_SECONDS: float = 300.0

# =============================================================================
# Data Cleaning Parameters
# =============================================================================
# Minimum percentage of valid data required for a ticker to be included
MIN_DATA_COMPLETENESS: float = 0.95

# Maximum allowed consecutive NaN values before dropping a ticker
MAX_CONSECUTIVE_NANS: int = 5
