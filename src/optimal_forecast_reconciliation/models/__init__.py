"""Reconciliation models: covariance, GLS projection, non-negativity and sampling."""

from .covariance import (
    CovarianceEstimate,
    CovarianceEstimator,
    CovarianceMethod,
    estimate_with_fallback,
    shrinkage_toward_diagonal,
)
from .gls import GLSReconciler, ProjectionOperator, ReconciliationResult, gls_reconcile
from .nonnegative import NonNegativityEnforcer, NonNegativityMethod
from .probabilistic import EnsembleResult, ProbabilisticReconciler
from .reconciler import ForecastReconciler, resolve_representation
from .sources import (
    ArraySampleSource,
    GaussianSampleSource,
    JointBootstrapSource,
    SampleSource,
)

__all__ = [
    "CovarianceEstimate",
    "CovarianceEstimator",
    "CovarianceMethod",
    "estimate_with_fallback",
    "shrinkage_toward_diagonal",
    "GLSReconciler",
    "ProjectionOperator",
    "ReconciliationResult",
    "gls_reconcile",
    "NonNegativityEnforcer",
    "NonNegativityMethod",
    "EnsembleResult",
    "ProbabilisticReconciler",
    "ForecastReconciler",
    "resolve_representation",
    "ArraySampleSource",
    "GaussianSampleSource",
    "JointBootstrapSource",
    "SampleSource",
]
