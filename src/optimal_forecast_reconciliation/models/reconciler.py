"""
Session-level facade tying estimation, projection, non-negativity and sampling.

A :class:`ForecastReconciler` estimates the weighting matrix once in
:meth:`ForecastReconciler.fit` and reuses the factored projection for every
point forecast and every sample ensemble afterwards.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

from ..data.residuals import ResidualArena
from ..exceptions import ConfigurationError
from ..structure import (
    CrossTemporalStructure,
    LinearStructure,
    Representation,
    TemporalStructure,
)
from ..utils.logging_utils import PerformanceLogger, StructuredLogger, log_function_call
from .covariance import CovarianceEstimate, CovarianceMethod, estimate_with_fallback
from .gls import ProjectionOperator, ReconciliationResult
from .nonnegative import NonNegativityEnforcer, NonNegativityMethod
from .probabilistic import EnsembleResult, ProbabilisticReconciler
from .sources import GaussianSampleSource, JointBootstrapSource, SampleSource

ResidualInput = Union[np.ndarray, ResidualArena, None]


def resolve_representation(
    structure: LinearStructure,
    representation: Union[str, Representation]
) -> LinearStructure:
    """
    Apply a configured representation to ``structure``.

    ``"auto"`` picks the constraint form when there are fewer aggregated
    positions than free ones, the summing form otherwise.
    """
    if str(getattr(representation, "value", representation)).lower() == "auto":
        n_free = structure.n_free
        chosen = Representation.preferred_for(structure.size - n_free, n_free)
    else:
        chosen = Representation.from_name(representation)

    if chosen is structure.representation:
        return structure
    return structure.with_representation(chosen)


class ForecastReconciler:
    """
    Optimal (GLS) forecast reconciliation for one structure.

    Example:
        >>> reconciler = ForecastReconciler(structure, covariance="shrink")
        >>> reconciler.fit(residuals)
        >>> result = reconciler.reconcile(base)
        >>> result.values
    """

    def __init__(
        self,
        structure: LinearStructure,
        covariance: Union[str, CovarianceMethod] = CovarianceMethod.SHRINK,
        fallback: Optional[Sequence[Union[str, CovarianceMethod]]] = None,
        block_diagonal: Union[bool, str] = False,
        allow_pseudo_inverse: bool = False,
        rcond: float = 1e-12,
        nonnegativity: Union[str, NonNegativityMethod, None] = NonNegativityMethod.ITERATIVE_ZERO,
        tolerance: float = 1e-8,
        max_iter: int = 1000,
        qp_solver: str = "bvls",
        n_jobs: int = 1,
        chunk_size: int = 256,
        failure_policy: str = "exclude",
        n_samples: int = 500
    ) -> None:
        """
        Initialize reconciler.

        Args:
            structure: Structure with its constraint representation set.
            covariance: Weighting-matrix strategy.
            fallback: Strategies tried in order when ``covariance`` cannot be
                estimated from the residuals.
            block_diagonal: ``False``, ``"order"`` (or ``True``) or ``"series"``;
                zero covariances between blocks. Temporal structures only.
            allow_pseudo_inverse: Use a pseudo-inverse for singular matrices.
            rcond: Near-singularity threshold.
            nonnegativity: Non-negativity strategy, or None/``"none"`` to disable.
            tolerance: Non-negativity tolerance.
            max_iter: Iteration cap for the exact solver.
            qp_solver: ``"bvls"`` or ``"trf"``.
            n_jobs: Worker threads for ensemble repair.
            chunk_size: Samples projected per batch.
            failure_policy: ``raise``, ``exclude`` or ``fallback``.
            n_samples: Default ensemble size for sample sources.
        """
        self.structure = structure
        self.covariance_method = CovarianceMethod.from_name(covariance)
        self.fallback = [CovarianceMethod.from_name(name) for name in (fallback or [])]
        self.block_diagonal = "order" if block_diagonal is True else block_diagonal
        if self.block_diagonal not in (False, "order", "series"):
            raise ConfigurationError(
                f"Unknown block_diagonal layout {block_diagonal!r}",
                context={"allowed": [False, "order", "series"]},
            )
        self.allow_pseudo_inverse = allow_pseudo_inverse
        self.rcond = rcond
        self.nonnegativity = NonNegativityMethod.from_name(nonnegativity)
        self.tolerance = tolerance
        self.max_iter = max_iter
        self.qp_solver = qp_solver
        self.n_jobs = n_jobs
        self.chunk_size = chunk_size
        self.failure_policy = failure_policy
        self.n_samples = n_samples

        self.logger = StructuredLogger(
            __name__,
            {"structure": type(structure).__name__, "size": structure.size},
        )
        self.performance = PerformanceLogger(logging.getLogger(__name__))

        self.covariance_estimate: Optional[CovarianceEstimate] = None
        self.operator: Optional[ProjectionOperator] = None
        self.enforcer: Optional[NonNegativityEnforcer] = None
        self.sampler: Optional[ProbabilisticReconciler] = None

    @classmethod
    def from_config(cls, structure: LinearStructure, config: Dict[str, Any]) -> "ForecastReconciler":
        """
        Build a reconciler from a validated configuration dictionary.

        Args:
            structure: Structure to reconcile; its representation is replaced
                by ``structure.representation`` from the config when given.
            config: Configuration as returned by ``load_config``.
        """
        structure_config = config.get("structure") or {}
        reconciliation = config.get("reconciliation") or {}
        nonnegativity = config.get("nonnegativity") or {}
        probabilistic = config.get("probabilistic") or {}

        structure = resolve_representation(structure, structure_config.get("representation", "auto"))
        method = nonnegativity.get("method", "iterative_zero") if nonnegativity.get("enabled", True) else None

        return cls(
            structure,
            covariance=reconciliation.get("covariance", "shrink"),
            fallback=reconciliation.get("fallback", []),
            block_diagonal=reconciliation.get("block_diagonal", False),
            allow_pseudo_inverse=reconciliation.get("allow_pseudo_inverse", False),
            rcond=float(reconciliation.get("rcond", 1e-12)),
            nonnegativity=method,
            tolerance=float(nonnegativity.get("tolerance", 1e-8)),
            max_iter=int(nonnegativity.get("max_iter", 1000)),
            qp_solver=nonnegativity.get("qp_solver", "bvls"),
            n_jobs=int(probabilistic.get("n_jobs", 1)),
            chunk_size=int(probabilistic.get("chunk_size", 256)),
            failure_policy=probabilistic.get("failure_policy", "exclude"),
            n_samples=int(probabilistic.get("n_samples", 500)),
        )

    @property
    def is_fitted(self) -> bool:
        return self.operator is not None

    def _block_mask(self, residuals: ResidualInput) -> Optional[np.ndarray]:
        if not self.block_diagonal:
            return None
        if isinstance(residuals, ResidualArena):
            return residuals.block_mask(by=self.block_diagonal)
        if isinstance(self.structure, CrossTemporalStructure):
            return ResidualArena.for_structure(self.structure, 1).block_mask(by=self.block_diagonal)
        if isinstance(self.structure, TemporalStructure):
            return ResidualArena(self.structure, 1).block_mask(by=self.block_diagonal)
        raise ConfigurationError(
            "block_diagonal requires a temporal or cross-temporal structure",
            context={"structure": type(self.structure).__name__},
        )

    @log_function_call(level="DEBUG")
    def fit(self, residuals: ResidualInput = None) -> "ForecastReconciler":
        """
        Estimate the weighting matrix and factor the projection.

        Args:
            residuals: Residual matrix (observations x N) or ResidualArena.
                Not needed for the identity and structural strategies.

        Returns:
            Self for method chaining.

        Raises:
            EstimationError: If no strategy in the chain can be estimated.
            NumericalError: If the projection cannot be factored.
        """
        chain: List[CovarianceMethod] = [self.covariance_method] + self.fallback
        with self.performance.timer("covariance estimation"):
            estimate = estimate_with_fallback(
                self.structure,
                residuals,
                chain,
                block_mask=self._block_mask(residuals),
            )
        return self.fit_covariance(estimate)

    def fit_covariance(self, covariance: Union[np.ndarray, CovarianceEstimate]) -> "ForecastReconciler":
        """Factor the projection for a weighting matrix computed elsewhere."""
        if not isinstance(covariance, CovarianceEstimate):
            covariance = CovarianceEstimate(
                np.asarray(covariance, dtype=float),
                self.covariance_method,
            )

        with self.performance.timer("projection factorization"):
            operator = ProjectionOperator(
                self.structure,
                covariance,
                allow_pseudo_inverse=self.allow_pseudo_inverse,
                rcond=self.rcond,
            )

        self.covariance_estimate = covariance
        self.operator = operator
        self.enforcer = NonNegativityEnforcer(
            operator,
            method=self.nonnegativity,
            tolerance=self.tolerance,
            max_iter=self.max_iter,
            qp_solver=self.qp_solver,
        )
        self.sampler = ProbabilisticReconciler(
            operator,
            nonnegative=self.enforcer,
            failure_policy=self.failure_policy,
            n_jobs=self.n_jobs,
            chunk_size=self.chunk_size,
        )
        self.logger.info(
            "Reconciler fitted",
            extra={
                "covariance": covariance.method.value,
                "representation": self.structure.representation.value,
                "nonnegativity": self.nonnegativity.value,
            },
        )
        return self

    def _require_fitted(self) -> None:
        if not self.is_fitted:
            raise ConfigurationError("Reconciler not fitted. Call fit() first.")

    def reconcile(self, base: np.ndarray) -> ReconciliationResult:
        """
        Reconcile a base forecast vector ``(N,)`` or matrix ``(N, H)``.

        Returns:
            ReconciliationResult; check ``status`` before using ``values``
            when the exact non-negativity solver is configured.
        """
        self._require_fitted()
        values = self.structure.check_values(base, "base forecasts")
        reconciled = self.operator.apply(values)
        if not self.enforcer.enabled:
            return ReconciliationResult(values=reconciled, method="gls")

        result = self.enforcer.enforce(values, reconciled)
        if not result.is_success:
            self.logger.warning(
                "Non-negativity not achieved",
                extra={"status": result.status.value, "detail": result.message},
            )
        return result

    def reconcile_samples(
        self,
        samples: np.ndarray,
        cancel_event: Optional[threading.Event] = None
    ) -> EnsembleResult:
        """Reconcile a ``(B, N)`` ensemble, one sample per row."""
        self._require_fitted()
        with self.performance.timer("ensemble reconciliation"):
            result = self.sampler.reconcile_ensemble(samples, cancel_event=cancel_event)
        self.performance.log_ensemble_stats(result.samples, "Reconciled ensemble")
        return result

    def reconcile_source(
        self,
        source: SampleSource,
        n_samples: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> EnsembleResult:
        """Draw ``n_samples`` (default from config) from ``source`` and reconcile them."""
        self._require_fitted()
        return self.reconcile_samples(source.draw(n_samples or self.n_samples), cancel_event=cancel_event)

    def gaussian_source(
        self,
        base: np.ndarray,
        seed: Union[int, np.random.Generator, None] = None
    ) -> GaussianSampleSource:
        """Gaussian sample source around ``base`` using the fitted covariance."""
        self._require_fitted()
        return GaussianSampleSource(base, self.covariance_estimate, seed=seed)

    def bootstrap_source(
        self,
        base: np.ndarray,
        residuals: Union[np.ndarray, ResidualArena],
        seed: Union[int, np.random.Generator, None] = None
    ) -> JointBootstrapSource:
        """Joint bootstrap source around ``base``."""
        return JointBootstrapSource(base, residuals, seed=seed)
