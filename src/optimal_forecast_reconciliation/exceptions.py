"""Error taxonomy for the reconciliation engine.

Configuration problems, numerical breakdowns and estimation failures are
raised as exceptions carrying a ``context`` dictionary so the caller can pick
a fallback. Solver non-convergence is reported through :class:`SolverStatus`
on the returned result instead of being raised.
"""

from enum import Enum
from typing import Any, Dict, Optional


class SolverStatus(Enum):
    """Outcome of a reconciliation or non-negativity solve."""

    CONVERGED = "converged"
    INFEASIBLE = "infeasible"
    ITERATION_LIMIT = "iteration_limit"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_success(self) -> bool:
        return self is SolverStatus.CONVERGED


class ReconciliationError(Exception):
    """Base exception with context for debugging."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} (context: {self.context})"
        return self.message


class ConfigurationError(ReconciliationError, ValueError):
    """Mismatched dimensions, malformed structure or unknown strategy name."""


class NumericalError(ReconciliationError, ArithmeticError):
    """Singular or indefinite matrix with no fallback requested."""


class EstimationError(ReconciliationError, ValueError):
    """Residual data insufficient for the requested covariance strategy."""


class FeasibilityWarning(UserWarning):
    """Non-negativity could not be fully achieved; best result returned."""
