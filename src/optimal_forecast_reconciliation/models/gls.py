"""
Generalized-least-squares reconciliation.

The coherent forecast minimizing ``(x - y)' Omega^{-1} (x - y)`` subject to the
aggregation constraints is computed in one of two equivalent forms:

- constraint form: ``x = y - Omega Ut' (Ut Omega Ut')^{-1} Ut y``
- summing form:    ``b = (S' Omega^{-1} S)^{-1} S' Omega^{-1} y``, ``x = S b``

:class:`ProjectionOperator` factors everything once so the projection can be
applied to any number of vectors.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
from scipy import linalg

from ..exceptions import ConfigurationError, NumericalError, SolverStatus
from ..structure import LinearStructure, Representation
from .covariance import CovarianceEstimate

logger = logging.getLogger(__name__)

CovarianceInput = Union[np.ndarray, CovarianceEstimate]


@dataclass
class ReconciliationResult:
    """
    Outcome of a reconciliation call.

    Attributes:
        values: Reconciled values, same shape as the input. Only valid
            (coherent, and non-negative when requested) when ``status`` is
            ``CONVERGED``.
        status: Solver status.
        method: Name of the step that produced ``values``.
        iterations: Iterations used by iterative steps.
        message: Human-readable detail for non-converged results.
    """

    values: np.ndarray
    status: SolverStatus = SolverStatus.CONVERGED
    method: str = "gls"
    iterations: int = 0
    message: str = ""

    @property
    def is_success(self) -> bool:
        return self.status.is_success


class _Factorization:
    """Cholesky factor of a symmetric matrix, or an eigen pseudo-inverse."""

    def __init__(
        self,
        matrix: np.ndarray,
        name: str,
        allow_pseudo_inverse: bool = False,
        rcond: float = 1e-12
    ) -> None:
        self.name = name
        self.size = matrix.shape[0]
        self.pseudo_inverse = False
        self._diagonal: Optional[np.ndarray] = None
        self._lower: Optional[np.ndarray] = None
        self._inverse: Optional[np.ndarray] = None
        self._inverse_sqrt: Optional[np.ndarray] = None

        off_diagonal = matrix - np.diag(np.diag(matrix))
        if not np.any(off_diagonal):
            diagonal = np.diag(matrix).copy()
            if np.all(diagonal > 0) and diagonal.min() / diagonal.max() >= rcond:
                self._diagonal = diagonal
                return
            self._fallback(matrix, allow_pseudo_inverse, rcond, "diagonal has non-positive or tiny entries")
            return

        try:
            lower = linalg.cholesky(matrix, lower=True, check_finite=False)
        except linalg.LinAlgError:
            self._fallback(matrix, allow_pseudo_inverse, rcond, "matrix is not positive definite")
            return

        pivots = np.abs(np.diag(lower))
        reciprocal_condition = (pivots.min() / pivots.max()) ** 2
        if reciprocal_condition < rcond:
            self._fallback(
                matrix,
                allow_pseudo_inverse,
                rcond,
                f"matrix is near singular (rcond ~ {reciprocal_condition:.2e})",
            )
            return
        self._lower = lower

    def _fallback(
        self,
        matrix: np.ndarray,
        allow_pseudo_inverse: bool,
        rcond: float,
        reason: str
    ) -> None:
        if not allow_pseudo_inverse:
            raise NumericalError(
                f"Cannot factor {self.name}: {reason}",
                context={"matrix": self.name, "size": self.size, "rcond": rcond},
            )

        eigenvalues, eigenvectors = linalg.eigh(matrix)
        scale = np.max(np.abs(eigenvalues)) if eigenvalues.size else 0.0
        if scale <= 0:
            raise NumericalError(
                f"Cannot factor {self.name}: matrix is zero",
                context={"matrix": self.name},
            )
        tolerance = max(rcond, np.finfo(float).eps * self.size) * scale
        if eigenvalues.min() < -tolerance:
            raise NumericalError(
                f"Cannot factor {self.name}: matrix is indefinite",
                context={"matrix": self.name, "min_eigenvalue": float(eigenvalues.min())},
            )

        keep = eigenvalues > tolerance
        vectors = eigenvectors[:, keep]
        values = eigenvalues[keep]
        self._inverse = (vectors / values) @ vectors.T
        self._inverse_sqrt = (vectors / np.sqrt(values)) @ vectors.T
        self.pseudo_inverse = True
        logger.warning(
            f"Using eigen pseudo-inverse for {self.name} ({reason}); "
            f"rank {int(keep.sum())} of {self.size}"
        )

    def solve(self, rhs: np.ndarray) -> np.ndarray:
        """``matrix^{-1} @ rhs``."""
        if self._diagonal is not None:
            if rhs.ndim == 1:
                return rhs / self._diagonal
            return rhs / self._diagonal[:, None]
        if self._lower is not None:
            return linalg.cho_solve((self._lower, True), rhs, check_finite=False)
        return self._inverse @ rhs

    def whiten(self, rhs: np.ndarray) -> np.ndarray:
        """``W @ rhs`` with ``W' W = matrix^{-1}``."""
        if self._diagonal is not None:
            scale = np.sqrt(self._diagonal)
            return rhs / (scale if rhs.ndim == 1 else scale[:, None])
        if self._lower is not None:
            return linalg.solve_triangular(self._lower, rhs, lower=True, check_finite=False)
        return self._inverse_sqrt @ rhs


def _validate_covariance(covariance: CovarianceInput, size: int) -> np.ndarray:
    matrix = covariance.matrix if isinstance(covariance, CovarianceEstimate) else covariance
    matrix = np.asarray(matrix, dtype=float)

    if matrix.shape != (size, size):
        raise ConfigurationError(
            f"Covariance has shape {matrix.shape}, structure expects ({size}, {size})"
        )
    if not np.all(np.isfinite(matrix)):
        raise ConfigurationError("Covariance contains NaN or infinite values")

    scale = max(np.max(np.abs(matrix)), 1.0)
    if not np.allclose(matrix, matrix.T, rtol=1e-8, atol=1e-10 * scale):
        raise ConfigurationError("Covariance matrix must be symmetric")
    return (matrix + matrix.T) / 2.0


class ProjectionOperator:
    """
    Factored GLS projection for one structure and one weighting matrix.

    Built once per session and reused for every base forecast, horizon and
    sample. It holds no mutable state after construction, so it can be shared
    across threads.

    Example:
        >>> operator = ProjectionOperator(structure, np.diag([2.0, 1.0, 1.0]))
        >>> operator.apply(np.array([10.0, 4.0, 5.0]))
        array([9.5 , 4.25, 5.25])
    """

    def __init__(
        self,
        structure: LinearStructure,
        covariance: CovarianceInput,
        allow_pseudo_inverse: bool = False,
        rcond: float = 1e-12
    ) -> None:
        """
        Factor the projection.

        Args:
            structure: Structural model; its ``representation`` selects the form.
            covariance: Weighting matrix ``Omega`` or a CovarianceEstimate.
            allow_pseudo_inverse: Use an eigen pseudo-inverse instead of
                raising when a matrix is singular or near singular.
            rcond: Reciprocal condition threshold for "near singular".

        Raises:
            ConfigurationError: On size mismatch, non-finite or asymmetric input.
            NumericalError: On singular matrices when no pseudo-inverse is allowed.
        """
        self.structure = structure
        self.representation = structure.representation
        self.allow_pseudo_inverse = allow_pseudo_inverse
        self.rcond = rcond
        self.covariance = _validate_covariance(covariance, structure.size)

        self._omega = _Factorization(self.covariance, "weighting matrix", allow_pseudo_inverse, rcond)
        self._summing = structure.summing_matrix
        self._omega_inv_summing: Optional[np.ndarray] = None

        if self.representation is Representation.ZERO_CONSTRAINT:
            self._build_constraint_form()
        elif self.representation is Representation.SUMMING:
            self._build_summing_form()
        else:
            raise ConfigurationError(f"Unsupported representation {self.representation!r}")

        logger.info(
            f"Factored {self.representation.value} projection: "
            f"{structure.size} positions, {structure.n_free} free"
        )

    @property
    def pseudo_inverse_used(self) -> bool:
        factors = [self._omega, getattr(self, "_inner", None)]
        return any(f is not None and f.pseudo_inverse for f in factors)

    @property
    def omega_inv_summing(self) -> np.ndarray:
        """``Omega^{-1} S`` as a dense array (cached)."""
        if self._omega_inv_summing is None:
            self._omega_inv_summing = self._omega.solve(self._summing.toarray())
        return self._omega_inv_summing

    def _build_constraint_form(self) -> None:
        zero_constraint = self.structure.zero_constraint_matrix
        constraint_omega = np.asarray(zero_constraint @ self.covariance)
        inner = np.asarray(zero_constraint @ constraint_omega.T)

        self._zero_constraint = zero_constraint
        self._gain = constraint_omega.T
        self._inner = _Factorization(inner, "Ut Omega Ut'", self.allow_pseudo_inverse, self.rcond)

    def _build_summing_form(self) -> None:
        inner = np.asarray(self._summing.T @ self.omega_inv_summing)
        self._inner = _Factorization(inner, "S' Omega^-1 S", self.allow_pseudo_inverse, self.rcond)
        self._bottom_gain = self._inner.solve(self.omega_inv_summing.T)

    def apply(self, base: np.ndarray) -> np.ndarray:
        """
        Reconcile a vector ``(N,)`` or a batch of column vectors ``(N, H)``.

        Returns:
            Coherent values with the same shape as ``base``.
        """
        values = self.structure.check_values(base, "base forecasts")
        if self.representation is Representation.ZERO_CONSTRAINT:
            violation = np.asarray(self._zero_constraint @ values)
            return values - self._gain @ self._inner.solve(violation)
        return np.asarray(self._summing @ (self._bottom_gain @ values))

    def bottom(self, base: np.ndarray) -> np.ndarray:
        """Reconciled free (bottom) values."""
        values = self.structure.check_values(base, "base forecasts")
        if self.representation is Representation.SUMMING:
            return self._bottom_gain @ values
        return self.apply(values)[self.structure.bottom_index]

    def restricted(self, base: np.ndarray, free: np.ndarray) -> np.ndarray:
        """
        GLS solution with every bottom value outside ``free`` fixed to zero.

        Args:
            base: Base forecast vector ``(N,)``.
            free: Boolean mask over the bottom values.

        Returns:
            Bottom vector with zeros at the fixed positions.
        """
        values = self.structure.check_values(base, "base forecasts")
        free = np.asarray(free, dtype=bool)
        bottom = np.zeros(self.structure.n_free)
        if not free.any():
            return bottom

        weighted = self.omega_inv_summing[:, free]
        summing_free = self._summing[:, free]
        inner = np.asarray(summing_free.T @ weighted)
        factor = _Factorization(inner, "restricted S' Omega^-1 S", self.allow_pseudo_inverse, self.rcond)
        bottom[free] = factor.solve(weighted.T @ values)
        return bottom

    def whiten(self, values: np.ndarray) -> np.ndarray:
        """``W @ values`` with ``W' W = Omega^{-1}``."""
        return self._omega.whiten(np.asarray(values, dtype=float))


class GLSReconciler:
    """Point reconciliation by GLS projection."""

    def __init__(
        self,
        structure: LinearStructure,
        covariance: CovarianceInput,
        allow_pseudo_inverse: bool = False,
        rcond: float = 1e-12
    ) -> None:
        self.operator = ProjectionOperator(
            structure,
            covariance,
            allow_pseudo_inverse=allow_pseudo_inverse,
            rcond=rcond,
        )

    @classmethod
    def from_operator(cls, operator: ProjectionOperator) -> "GLSReconciler":
        reconciler = cls.__new__(cls)
        reconciler.operator = operator
        return reconciler

    @property
    def structure(self) -> LinearStructure:
        return self.operator.structure

    def reconcile(self, base: np.ndarray) -> ReconciliationResult:
        """
        Project base forecasts onto the coherent subspace.

        Args:
            base: ``(N,)`` vector or ``(N, H)`` matrix of column vectors.

        Returns:
            ReconciliationResult with ``CONVERGED`` status.
        """
        values = self.operator.apply(base)
        return ReconciliationResult(values=values, status=SolverStatus.CONVERGED, method="gls")


def gls_reconcile(
    base: np.ndarray,
    structure: LinearStructure,
    covariance: CovarianceInput,
    allow_pseudo_inverse: bool = False
) -> np.ndarray:
    """One-shot GLS reconciliation; prefer :class:`ProjectionOperator` for repeated calls."""
    operator = ProjectionOperator(structure, covariance, allow_pseudo_inverse=allow_pseudo_inverse)
    return operator.apply(base)

