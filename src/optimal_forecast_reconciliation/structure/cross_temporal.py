"""
Cross-temporal structures: a cross-sectional hierarchy observed at every
temporal aggregation order.

Forecasts live on an ``n x kt`` grid (series by temporal position) flattened
row-major, so position ``i * kt + j`` holds series ``i`` at temporal position
``j``. With that ordering ``S_ct = S_cs kron S_te``.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Union

import numpy as np
from scipy import sparse

from ..exceptions import ConfigurationError
from .base import LinearStructure, Representation
from .hierarchy import CrossSectionalStructure
from .temporal import TemporalStructure

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class CrossTemporalStructure(LinearStructure):
    """
    Combined cross-sectional and temporal constraint system.

    A vector is cross-temporally coherent iff it satisfies both constraint
    families at once; see :meth:`constraint_families`.

    Attributes:
        cross_sectional: Hierarchy across series.
        temporal: Temporal hierarchy applied to every series.
        representation: Constraint form handed to the GLS solver. The
            representations of the two parts are ignored.
    """

    cross_sectional: CrossSectionalStructure
    temporal: TemporalStructure
    representation: Representation

    summing_matrix: sparse.csr_matrix = field(init=False, repr=False)
    bottom_index: np.ndarray = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.cross_sectional, CrossSectionalStructure):
            raise ConfigurationError("cross_sectional must be a CrossSectionalStructure")
        if not isinstance(self.temporal, TemporalStructure):
            raise ConfigurationError("temporal must be a TemporalStructure")

        cs = self.cross_sectional
        te = self.temporal
        summing = sparse.kron(cs.summing_matrix, te.summing_matrix, format="csr")

        # Bottom series p at high-frequency period q <-> column p * m + q of S_ct
        series_rows = cs.bottom_index[:, None] * te.kt
        bottom_index = (series_rows + te.bottom_index[None, :]).ravel()

        object.__setattr__(self, "representation", Representation.from_name(self.representation))
        object.__setattr__(self, "summing_matrix", summing)
        object.__setattr__(self, "bottom_index", bottom_index)

        logger.debug(
            f"Cross-temporal structure: {cs.n_series} series x {te.kt} temporal positions, "
            f"{self.n_free} free values"
        )

    @property
    def n_series(self) -> int:
        return self.cross_sectional.n_series

    @property
    def kt(self) -> int:
        return self.temporal.kt

    @property
    def grid_shape(self):
        return (self.n_series, self.kt)

    def position(self, series: int, order: int, horizon: int) -> int:
        """Flattened position of ``series`` at ``(order, horizon)``."""
        if not 0 <= series < self.n_series:
            raise ConfigurationError(f"Series index {series} out of range")
        return series * self.kt + self.temporal.position(order, horizon)

    def constraint_families(self) -> Dict[str, sparse.csr_matrix]:
        """Cross-sectional constraints at every temporal position and temporal constraints for every series."""
        cs_family = sparse.kron(
            self.cross_sectional.zero_constraint_matrix,
            sparse.identity(self.kt),
            format="csr",
        )
        te_family = sparse.kron(
            sparse.identity(self.n_series),
            self.temporal.zero_constraint_matrix,
            format="csr",
        )
        return {"cross_sectional": cs_family, "temporal": te_family}

    def structural_weights(self) -> np.ndarray:
        return np.kron(
            self.cross_sectional.structural_weights(),
            self.temporal.structural_weights(),
        )

    def with_representation(
        self,
        representation: Union[str, Representation]
    ) -> "CrossTemporalStructure":
        return replace(self, representation=Representation.from_name(representation))
