"""Incoherent sample-ensemble sources for probabilistic reconciliation."""

import logging
from abc import ABC, abstractmethod
from typing import Optional, Union

import numpy as np

from ..data.residuals import ResidualArena
from ..exceptions import ConfigurationError
from .covariance import CovarianceEstimate

logger = logging.getLogger(__name__)


class SampleSource(ABC):
    """Produces a ``(B, N)`` ensemble, one incoherent sample per row."""

    size: int

    @abstractmethod
    def draw(self, n_samples: Optional[int] = None) -> np.ndarray:
        """
        Draw an ensemble.

        Args:
            n_samples: Number of samples ``B``.

        Returns:
            Array of shape ``(n_samples, N)``.
        """

    @staticmethod
    def _check_count(n_samples: Optional[int]) -> int:
        if n_samples is None or int(n_samples) < 1:
            raise ConfigurationError(f"n_samples must be a positive integer, got {n_samples!r}")
        return int(n_samples)


class GaussianSampleSource(SampleSource):
    """
    Multivariate normal draws around the base forecast.

    ``seed`` is an integer or an existing ``numpy.random.Generator`` whose
    stream the source continues.

    Example:
        >>> source = GaussianSampleSource(base, estimate, seed=42)
        >>> source.draw(500).shape
        (500, 7)
    """

    def __init__(
        self,
        mean: np.ndarray,
        covariance: Union[np.ndarray, CovarianceEstimate],
        seed: Union[int, np.random.Generator, None] = None
    ) -> None:
        self.mean = np.asarray(mean, dtype=float)
        if self.mean.ndim != 1:
            raise ConfigurationError(f"Mean must be 1-D, got shape {self.mean.shape}")
        matrix = covariance.matrix if isinstance(covariance, CovarianceEstimate) else covariance
        self.covariance = np.asarray(matrix, dtype=float)
        self.size = self.mean.shape[0]
        if self.covariance.shape != (self.size, self.size):
            raise ConfigurationError(
                f"Covariance has shape {self.covariance.shape}, expected ({self.size}, {self.size})"
            )
        self._rng = np.random.default_rng(seed)

    def draw(self, n_samples: Optional[int] = None) -> np.ndarray:
        n_samples = self._check_count(n_samples)
        logger.debug(f"Drawing {n_samples} Gaussian samples of size {self.size}")
        return self._rng.multivariate_normal(self.mean, self.covariance, size=n_samples, method="eigh")


class JointBootstrapSource(SampleSource):
    """
    Base forecast plus whole resampled residual rows.

    Each row of the residual matrix is one observed cycle across every series
    and aggregation order, so resampling whole rows keeps the cross-sectional
    and temporal dependence of the errors.
    """

    def __init__(
        self,
        base: np.ndarray,
        residuals: Union[np.ndarray, ResidualArena],
        seed: Union[int, np.random.Generator, None] = None
    ) -> None:
        self.base = np.asarray(base, dtype=float)
        if self.base.ndim != 1:
            raise ConfigurationError(f"Base forecast must be 1-D, got shape {self.base.shape}")
        if isinstance(residuals, ResidualArena):
            residuals = residuals.to_matrix()
        self.residuals = np.asarray(residuals, dtype=float)
        self.size = self.base.shape[0]

        if self.residuals.ndim != 2 or self.residuals.shape[1] != self.size:
            raise ConfigurationError(
                f"Residuals must have shape (T, {self.size}), got {self.residuals.shape}"
            )
        if self.residuals.shape[0] < 1:
            raise ConfigurationError("Bootstrap needs at least one residual row")
        self._rng = np.random.default_rng(seed)

    def draw(self, n_samples: Optional[int] = None) -> np.ndarray:
        n_samples = self._check_count(n_samples)
        rows = self._rng.integers(0, self.residuals.shape[0], size=n_samples)
        return self.base[None, :] + self.residuals[rows]


class ArraySampleSource(SampleSource):
    """Wraps an externally produced ensemble (e.g. a block bootstrap)."""

    def __init__(self, samples: np.ndarray) -> None:
        self.samples = np.asarray(samples, dtype=float)
        if self.samples.ndim != 2:
            raise ConfigurationError(
                f"Sample ensemble must be 2-D (B, N), got shape {self.samples.shape}"
            )
        self.size = self.samples.shape[1]

    def draw(self, n_samples: Optional[int] = None) -> np.ndarray:
        """First ``n_samples`` rows, or the whole ensemble when omitted."""
        if n_samples is None:
            return self.samples.copy()
        n_samples = self._check_count(n_samples)
        if n_samples > self.samples.shape[0]:
            raise ConfigurationError(
                f"Requested {n_samples} samples, ensemble has {self.samples.shape[0]}"
            )
        return self.samples[:n_samples].copy()
