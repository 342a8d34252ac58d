"""
Optimal Forecast Reconciliation.

Makes incoherent forecasts coherent under cross-sectional, temporal and
cross-temporal aggregation constraints by generalized-least-squares
projection, with non-negativity enforcement and reconciliation of sample
ensembles for probabilistic forecasts.
"""

__version__ = "0.1.0"

from . import data, evaluation, models, structure, utils
from .exceptions import (
    ConfigurationError,
    EstimationError,
    FeasibilityWarning,
    NumericalError,
    ReconciliationError,
    SolverStatus,
)
from .models import ForecastReconciler, ProjectionOperator
from .structure import (
    CrossSectionalStructure,
    CrossTemporalStructure,
    Representation,
    TemporalStructure,
)

__all__ = [
    "data",
    "evaluation",
    "models",
    "structure",
    "utils",
    "ConfigurationError",
    "EstimationError",
    "FeasibilityWarning",
    "NumericalError",
    "ReconciliationError",
    "SolverStatus",
    "ForecastReconciler",
    "ProjectionOperator",
    "CrossSectionalStructure",
    "CrossTemporalStructure",
    "Representation",
    "TemporalStructure",
]
