"""
Covariance (weighting matrix) estimation for GLS reconciliation.

Every strategy is a variant of :class:`CovarianceMethod` with exactly one
handler in :class:`CovarianceEstimator`. Residual matrices have one row per
observation and one column per position of the flattened forecast vector.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Sequence, Union

import numpy as np
from scipy import linalg
from sklearn.covariance import EmpiricalCovariance

from ..data.residuals import ResidualArena
from ..exceptions import ConfigurationError, EstimationError
from ..structure import LinearStructure

logger = logging.getLogger(__name__)

ResidualInput = Union[np.ndarray, ResidualArena, None]


class CovarianceMethod(Enum):
    """Available weighting-matrix strategies."""

    IDENTITY = "identity"
    STRUCTURAL = "structural"
    SAMPLE = "sample"
    SHRINK = "shrink"
    DIAGONAL = "diagonal"

    @classmethod
    def from_name(cls, name: Union[str, "CovarianceMethod"]) -> "CovarianceMethod":
        if isinstance(name, cls):
            return name
        try:
            return cls(str(name).lower())
        except ValueError:
            raise ConfigurationError(
                f"Unknown covariance strategy '{name}'",
                context={"allowed": [member.value for member in cls]},
            ) from None

    @property
    def needs_residuals(self) -> bool:
        return self not in (CovarianceMethod.IDENTITY, CovarianceMethod.STRUCTURAL)


@dataclass(frozen=True)
class CovarianceEstimate:
    """A weighting matrix together with how it was obtained."""

    matrix: np.ndarray
    method: CovarianceMethod
    n_observations: int = 0
    shrinkage: Optional[float] = None


def shrinkage_toward_diagonal(residuals: np.ndarray) -> CovarianceEstimate:
    """
    Shrink the sample covariance toward its diagonal.

    The intensity minimizes the expected Frobenius loss (Schäfer & Strimmer):
    ``lambda = sum_{i!=j} Var(r_ij) / sum_{i!=j} r_ij**2`` on the correlation
    scale, clipped to [0, 1]. Residuals are treated as zero-mean.

    With a single row, or when the shrunk matrix is not positive definite
    (rows that are all multiples of one vector), the intensity is 1 and the
    result is the diagonal target.

    Args:
        residuals: Residual matrix (observations x series).

    Returns:
        CovarianceEstimate with the shrunk matrix and the intensity used.

    Raises:
        EstimationError: If a series has zero variance.
    """
    n_obs, n_series = residuals.shape
    covariance = residuals.T @ residuals / n_obs
    variances = np.diag(covariance).copy()
    _require_positive_variances(variances, "shrink")

    target = np.diag(variances)
    intensity = _shrinkage_intensity(residuals, covariance, variances) if n_obs > 1 else 1.0
    shrunk = intensity * target + (1.0 - intensity) * covariance
    if intensity < 1.0 and not is_positive_definite(shrunk):
        logger.debug(f"Intensity {intensity:.4f} gives a singular matrix; using the diagonal target")
        intensity = 1.0
        shrunk = target
    logger.debug(f"Shrinkage intensity {intensity:.4f} for {n_series} series, {n_obs} rows")

    return CovarianceEstimate(
        matrix=shrunk,
        method=CovarianceMethod.SHRINK,
        n_observations=n_obs,
        shrinkage=intensity,
    )


def _shrinkage_intensity(
    residuals: np.ndarray,
    covariance: np.ndarray,
    variances: np.ndarray
) -> float:
    n_obs = residuals.shape[0]
    scale = np.sqrt(variances)
    standardized = residuals / scale
    correlation = covariance / np.outer(scale, scale)

    squared = standardized ** 2
    correlation_variance = (
        squared.T @ squared - (standardized.T @ standardized) ** 2 / n_obs
    ) / (n_obs * (n_obs - 1))
    np.fill_diagonal(correlation_variance, 0.0)

    off_diagonal = correlation ** 2
    np.fill_diagonal(off_diagonal, 0.0)

    denominator = off_diagonal.sum()
    if denominator <= 0:
        return 1.0
    return float(np.clip(correlation_variance.sum() / denominator, 0.0, 1.0))


def _require_positive_variances(variances: np.ndarray, method: str) -> None:
    zero = np.flatnonzero(~(variances > 0))
    if len(zero) > 0:
        raise EstimationError(
            f"{len(zero)} series have zero residual variance",
            context={"method": method, "positions": zero[:10].tolist()},
        )


def is_positive_definite(matrix: np.ndarray) -> bool:
    """Cholesky-based positive-definiteness check."""
    try:
        linalg.cho_factor(matrix, lower=True, check_finite=True)
    except (linalg.LinAlgError, ValueError):
        return False
    return True


class CovarianceEstimator:
    """
    Estimate the weighting matrix for a structure.

    Example:
        >>> estimator = CovarianceEstimator("shrink", structure)
        >>> estimate = estimator.estimate(residuals)
        >>> estimate.matrix.shape
        (7, 7)
    """

    def __init__(
        self,
        method: Union[str, CovarianceMethod],
        structure: LinearStructure
    ) -> None:
        """
        Initialize estimator.

        Args:
            method: Strategy name or enum member.
            structure: Structure the matrix must match.
        """
        self.method = CovarianceMethod.from_name(method)
        self.structure = structure
        self.logger = logging.getLogger(__name__)

        self._handlers: Dict[CovarianceMethod, Callable[[Optional[np.ndarray]], CovarianceEstimate]] = {
            CovarianceMethod.IDENTITY: self._identity,
            CovarianceMethod.STRUCTURAL: self._structural,
            CovarianceMethod.SAMPLE: self._sample,
            CovarianceMethod.SHRINK: self._shrink,
            CovarianceMethod.DIAGONAL: self._diagonal,
        }

    def estimate(
        self,
        residuals: ResidualInput = None,
        block_mask: Optional[np.ndarray] = None
    ) -> CovarianceEstimate:
        """
        Produce the weighting matrix.

        Args:
            residuals: Residual matrix (observations x N) or a ResidualArena.
                Ignored by the identity and structural strategies.
            block_mask: Optional boolean (N x N) mask; covariances outside
                the blocks are set to zero.

        Returns:
            CovarianceEstimate sized to the structure.

        Raises:
            ConfigurationError: If residual or mask dimensions do not match.
            EstimationError: If the residuals cannot support the strategy.
        """
        matrix = self._prepare_residuals(residuals) if self.method.needs_residuals else None
        self.logger.info(
            f"Estimating {self.method.value} covariance for {self.structure.size} positions"
        )
        estimate = self._handlers[self.method](matrix)

        if block_mask is not None:
            mask = np.asarray(block_mask, dtype=bool)
            if mask.shape != estimate.matrix.shape:
                raise ConfigurationError(
                    f"block_mask has shape {mask.shape}, expected {estimate.matrix.shape}"
                )
            estimate = CovarianceEstimate(
                matrix=np.where(mask, estimate.matrix, 0.0),
                method=estimate.method,
                n_observations=estimate.n_observations,
                shrinkage=estimate.shrinkage,
            )

        return estimate

    def _prepare_residuals(self, residuals: ResidualInput) -> np.ndarray:
        if residuals is None:
            raise EstimationError(
                f"Covariance strategy '{self.method.value}' requires residuals",
                context={"method": self.method.value},
            )
        if isinstance(residuals, ResidualArena):
            matrix = residuals.to_matrix()
        else:
            matrix = np.asarray(residuals, dtype=float)

        if matrix.ndim != 2:
            raise ConfigurationError(
                f"Residuals must be 2-D (observations x series), got {matrix.ndim} dimensions"
            )
        if matrix.shape[1] != self.structure.size:
            raise ConfigurationError(
                f"Residuals have {matrix.shape[1]} columns, structure expects {self.structure.size}",
                context={"method": self.method.value},
            )
        if not np.all(np.isfinite(matrix)):
            raise EstimationError(
                "Residuals contain NaN or infinite values",
                context={"method": self.method.value},
            )
        return matrix

    def _identity(self, residuals: Optional[np.ndarray]) -> CovarianceEstimate:
        return CovarianceEstimate(np.eye(self.structure.size), CovarianceMethod.IDENTITY)

    def _structural(self, residuals: Optional[np.ndarray]) -> CovarianceEstimate:
        return CovarianceEstimate(
            np.diag(self.structure.structural_weights()),
            CovarianceMethod.STRUCTURAL,
        )

    def _sample(self, residuals: np.ndarray) -> CovarianceEstimate:
        n_obs, n_series = residuals.shape
        if n_obs < n_series:
            raise EstimationError(
                f"Sample covariance needs at least {n_series} residual rows, got {n_obs}",
                context={"method": "sample", "n_observations": n_obs, "n_series": n_series},
            )

        covariance = EmpiricalCovariance(assume_centered=True).fit(residuals).covariance_
        if not is_positive_definite(covariance):
            raise EstimationError(
                "Sample covariance is not positive definite",
                context={"method": "sample", "n_observations": n_obs},
            )
        return CovarianceEstimate(covariance, CovarianceMethod.SAMPLE, n_observations=n_obs)

    def _shrink(self, residuals: np.ndarray) -> CovarianceEstimate:
        estimate = shrinkage_toward_diagonal(residuals)
        if not is_positive_definite(estimate.matrix):
            raise EstimationError(
                "Shrinkage covariance is not positive definite",
                context={"method": "shrink", "shrinkage": estimate.shrinkage},
            )
        return estimate

    def _diagonal(self, residuals: np.ndarray) -> CovarianceEstimate:
        n_obs = residuals.shape[0]
        variances = np.mean(residuals ** 2, axis=0)
        _require_positive_variances(variances, "diagonal")
        return CovarianceEstimate(np.diag(variances), CovarianceMethod.DIAGONAL, n_observations=n_obs)


def estimate_with_fallback(
    structure: LinearStructure,
    residuals: ResidualInput,
    chain: Sequence[Union[str, CovarianceMethod]],
    block_mask: Optional[np.ndarray] = None
) -> CovarianceEstimate:
    """
    Try strategies in order until one succeeds.

    Only :class:`EstimationError` moves on to the next strategy; configuration
    errors propagate immediately.

    Args:
        structure: Structure the matrix must match.
        residuals: Residual matrix or arena.
        chain: Strategies to try, e.g. ``["shrink", "diagonal", "structural"]``.
        block_mask: Optional block-diagonal mask.

    Raises:
        ConfigurationError: If ``chain`` is empty.
        EstimationError: The last failure when every strategy fails.
    """
    methods = [CovarianceMethod.from_name(name) for name in chain]
    if not methods:
        raise ConfigurationError("Covariance fallback chain is empty")

    last_error: Optional[EstimationError] = None
    for position, method in enumerate(methods):
        try:
            return CovarianceEstimator(method, structure).estimate(residuals, block_mask=block_mask)
        except EstimationError as e:
            last_error = e
            if position + 1 < len(methods):
                logger.warning(
                    f"Covariance strategy '{method.value}' failed ({e}); "
                    f"falling back to '{methods[position + 1].value}'"
                )

    raise last_error
