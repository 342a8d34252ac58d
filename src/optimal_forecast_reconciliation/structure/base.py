"""Shared linear-constraint machinery for all aggregation structures.

Every structure exposes the same two equivalent descriptions of coherence:

- the summing matrix ``S`` (``x = S @ b`` for the free bottom vector ``b``),
- the zero-constraint matrix ``Ut`` (``Ut @ x == 0`` exactly when ``x`` is coherent).

``Ut`` is always derived from ``S`` and the positions of the bottom variables
in the flattened vector, which keeps it full row rank for the cross-temporal
case as well.
"""

import logging
from enum import Enum
from typing import Dict, Union

import numpy as np
from scipy import sparse

from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class Representation(Enum):
    """Constraint representation used by the GLS solver."""

    ZERO_CONSTRAINT = "zero_constraint"
    SUMMING = "summing"

    @classmethod
    def from_name(cls, name: Union[str, "Representation"]) -> "Representation":
        """Resolve a configured representation name."""
        if isinstance(name, cls):
            return name
        try:
            return cls(str(name).lower())
        except ValueError:
            allowed = [member.value for member in cls]
            raise ConfigurationError(
                f"Unknown constraint representation '{name}'",
                context={"allowed": allowed},
            ) from None

    @classmethod
    def preferred_for(cls, n_upper: int, n_bottom: int) -> "Representation":
        """Constraint form is cheaper when the aggregates are few."""
        if n_upper < n_bottom:
            return cls.ZERO_CONSTRAINT
        return cls.SUMMING


def zero_constraint_from_summing(
    summing: sparse.csr_matrix,
    bottom_index: np.ndarray
) -> sparse.csr_matrix:
    """
    Build ``Ut = [I, -C]`` (columns in vector order) from ``S``.

    Args:
        summing: Summing matrix of shape (N, n_bottom).
        bottom_index: Positions of the bottom variables; ``S[bottom_index]``
            must be the identity.

    Returns:
        Sparse zero-constraint matrix of shape (N - n_bottom, N).
    """
    size, n_bottom = summing.shape
    upper_index = np.setdiff1d(np.arange(size), bottom_index)
    n_upper = len(upper_index)

    upper_selector = sparse.csr_matrix(
        (np.ones(n_upper), (np.arange(n_upper), upper_index)),
        shape=(n_upper, size)
    )
    bottom_selector = sparse.csr_matrix(
        (np.ones(n_bottom), (np.arange(n_bottom), bottom_index)),
        shape=(n_bottom, size)
    )
    aggregation = summing[upper_index]
    return sparse.csr_matrix(upper_selector - aggregation @ bottom_selector)


class LinearStructure:
    """
    Mixin with the operations common to every aggregation structure.

    Concrete structures set ``summing_matrix``, ``bottom_index`` and
    ``representation``; everything else is derived.
    """

    summing_matrix: sparse.csr_matrix
    bottom_index: np.ndarray
    representation: Representation

    @property
    def size(self) -> int:
        """Length of the flattened forecast vector."""
        return self.summing_matrix.shape[0]

    @property
    def n_free(self) -> int:
        """Number of free (bottom) variables."""
        return self.summing_matrix.shape[1]

    @property
    def upper_index(self) -> np.ndarray:
        return np.setdiff1d(np.arange(self.size), self.bottom_index)

    @property
    def aggregation_matrix(self) -> sparse.csr_matrix:
        """Rows of ``S`` belonging to the aggregated positions."""
        return sparse.csr_matrix(self.summing_matrix[self.upper_index])

    @property
    def zero_constraint_matrix(self) -> sparse.csr_matrix:
        return zero_constraint_from_summing(self.summing_matrix, self.bottom_index)

    def constraint_families(self) -> Dict[str, sparse.csr_matrix]:
        """Named constraint matrices a coherent vector must satisfy."""
        return {"coherence": self.zero_constraint_matrix}

    def structural_weights(self) -> np.ndarray:
        """Number of bottom variables summed into each position (``S @ 1``)."""
        return np.asarray(self.summing_matrix.sum(axis=1)).ravel().astype(float)

    def aggregate(self, bottom: np.ndarray) -> np.ndarray:
        """Build the coherent vector (or matrix) ``S @ bottom``."""
        bottom = np.asarray(bottom, dtype=float)
        if bottom.shape[0] != self.n_free:
            raise ConfigurationError(
                f"Bottom values have length {bottom.shape[0]}, expected {self.n_free}",
                context={"structure": type(self).__name__},
            )
        return np.asarray(self.summing_matrix @ bottom)

    def check_values(self, values: np.ndarray, name: str = "values") -> np.ndarray:
        """
        Validate a forecast vector or an (N, H) matrix of column vectors.

        Raises:
            ConfigurationError: If the leading dimension does not match or the
                array is not 1-D/2-D.
        """
        array = np.asarray(values, dtype=float)
        if array.ndim not in (1, 2):
            raise ConfigurationError(
                f"{name} must be 1-D or 2-D, got {array.ndim} dimensions",
                context={"shape": array.shape},
            )
        if array.shape[0] != self.size:
            raise ConfigurationError(
                f"{name} has leading dimension {array.shape[0]}, "
                f"structure expects {self.size}",
                context={"structure": type(self).__name__, "shape": array.shape},
            )
        return array


def validate_aggregation_matrix(matrix: Union[np.ndarray, sparse.spmatrix]) -> sparse.csr_matrix:
    """Check an aggregation matrix ``C`` and return it as CSR."""
    if sparse.issparse(matrix):
        dense = matrix.toarray()
    else:
        dense = np.asarray(matrix, dtype=float)

    if dense.ndim != 2:
        raise ConfigurationError(
            f"Aggregation matrix must be 2-D, got {dense.ndim} dimensions"
        )
    n_upper, n_bottom = dense.shape
    if n_upper < 1 or n_bottom < 1:
        raise ConfigurationError(
            "Aggregation matrix needs at least one upper and one bottom series",
            context={"shape": dense.shape},
        )
    if not np.all(np.isfinite(dense)):
        raise ConfigurationError("Aggregation matrix contains non-finite values")
    if np.any(dense < 0):
        raise ConfigurationError("Aggregation matrix coefficients must be non-negative")

    empty_rows = np.flatnonzero(~np.any(dense > 0, axis=1))
    if len(empty_rows) > 0:
        raise ConfigurationError(
            "Every upper series must aggregate at least one bottom series",
            context={"empty_rows": empty_rows.tolist()},
        )

    return sparse.csr_matrix(dense)
