"""
Error taxonomy for the Portfolio Optimization Engine.

Every engine error exposes ``kind`` (its class name), which the background
executor forwards in failure events so callers can branch without importing
the exception classes.
"""


class PortfolioEngineError(Exception):
    """Base class for all errors raised by the engine."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class InsufficientDataError(PortfolioEngineError, ValueError):
    """Too few assets, or return series too short to estimate covariance."""


class SingularMatrixError(PortfolioEngineError):
    """A pivot fell below tolerance during Gauss-Jordan elimination."""

    def __init__(self, message: str, column: int = -1, pivot: float = 0.0) -> None:
        super().__init__(message)
        self.column = column
        self.pivot = pivot


class DegenerateOptimizationError(PortfolioEngineError):
    """A closed-form normalizing denominator is zero or near zero."""


class ConstraintViolationError(PortfolioEngineError):
    """
    Projected weights still violate the constraints.

    Attributes:
        magnitude: Sum-of-weights error plus total bound excess.
    """

    def __init__(self, message: str, magnitude: float) -> None:
        super().__init__(message)
        self.magnitude = magnitude


class TaskCancelledError(PortfolioEngineError):
    """A cooperative cancellation request was honored."""
