"""
Temporal aggregation structures.

For a maximum frequency ``m`` and a set of aggregation orders ``K`` (divisors
of ``m``), order ``k`` carries ``m / k`` values per cycle. The flattened
vector lists the orders from the coarsest (``k = m``) to the finest
(``k = 1``), each in time order:

    [x_m, x_{m/2, 1}, x_{m/2, 2}, ..., x_{1, 1}, ..., x_{1, m}]
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy import sparse

from ..exceptions import ConfigurationError
from .base import LinearStructure, Representation

logger = logging.getLogger(__name__)


def divisors(m: int) -> List[int]:
    """All divisors of ``m`` in descending order."""
    return [k for k in range(m, 0, -1) if m % k == 0]


@dataclass(frozen=True, eq=False)
class TemporalStructure(LinearStructure):
    """
    Temporal hierarchy of one series over one aggregation cycle.

    Attributes:
        max_frequency: ``m``, number of high-frequency periods per cycle
            (e.g. 12 for monthly data aggregated up to years).
        representation: Constraint form handed to the GLS solver.
        orders: Aggregation orders; defaults to all divisors of ``m``.
            Stored in descending order and must contain 1.
    """

    max_frequency: int
    representation: Representation
    orders: Optional[Tuple[int, ...]] = None

    summing_matrix: sparse.csr_matrix = field(init=False, repr=False)
    bottom_index: np.ndarray = field(init=False, repr=False)
    temporal_aggregation: sparse.csr_matrix = field(init=False, repr=False)

    def __post_init__(self) -> None:
        m = self.max_frequency
        if not isinstance(m, (int, np.integer)) or isinstance(m, bool) or m < 1:
            raise ConfigurationError(
                f"max_frequency must be a positive integer, got {m!r}"
            )
        m = int(m)

        if self.orders is None:
            orders = divisors(m)
        else:
            orders = [int(k) for k in self.orders]
            if len(set(orders)) != len(orders):
                raise ConfigurationError(
                    "Aggregation orders must be unique",
                    context={"orders": orders},
                )
            invalid = [k for k in orders if k < 1 or m % k != 0]
            if invalid:
                raise ConfigurationError(
                    f"Aggregation orders must be divisors of {m}",
                    context={"invalid": invalid},
                )
            orders = sorted(orders, reverse=True)
        if 1 not in orders:
            raise ConfigurationError(
                "Aggregation orders must include 1 (the high-frequency series)",
                context={"orders": orders},
            )

        aggregation = self._build_temporal_aggregation(m, orders)
        summing = sparse.vstack(
            [aggregation, sparse.identity(m, format="csr")]
        ).tocsr()
        n_upper = aggregation.shape[0]

        object.__setattr__(self, "max_frequency", m)
        object.__setattr__(self, "orders", tuple(orders))
        object.__setattr__(self, "representation", Representation.from_name(self.representation))
        object.__setattr__(self, "temporal_aggregation", aggregation)
        object.__setattr__(self, "summing_matrix", summing)
        object.__setattr__(self, "bottom_index", np.arange(n_upper, n_upper + m))

        logger.debug(f"Temporal structure m={m}, orders={orders}, kt={n_upper + m}")

    @staticmethod
    def _build_temporal_aggregation(m: int, orders: Sequence[int]) -> sparse.csr_matrix:
        """Rows sum consecutive blocks of ``k`` high-frequency values, for each ``k > 1``."""
        rows: List[int] = []
        cols: List[int] = []
        row = 0
        for k in orders:
            if k == 1:
                continue
            for block in range(m // k):
                rows.extend([row] * k)
                cols.extend(range(block * k, (block + 1) * k))
                row += 1
        return sparse.csr_matrix(
            (np.ones(len(rows)), (rows, cols)),
            shape=(row, m)
        )

    @property
    def kt(self) -> int:
        """Number of values per cycle across all orders."""
        return self.size

    @property
    def ks(self) -> int:
        """Number of aggregated (non high-frequency) values per cycle."""
        return self.size - self.max_frequency

    @property
    def order_sizes(self) -> Dict[int, int]:
        """Values per cycle for each order (``m / k``)."""
        return {k: self.max_frequency // k for k in self.orders}

    @property
    def order_offsets(self) -> Dict[int, int]:
        """Start position of each order in the flattened vector."""
        offsets: Dict[int, int] = {}
        position = 0
        for k in self.orders:
            offsets[k] = position
            position += self.max_frequency // k
        return offsets

    @property
    def labels(self) -> List[Tuple[int, int]]:
        """``(order, horizon)`` label of each position, horizons starting at 1."""
        return [(k, h) for k in self.orders for h in range(1, self.max_frequency // k + 1)]

    def position(self, order: int, horizon: int) -> int:
        """Flattened position of the ``horizon``-th value of ``order``."""
        sizes = self.order_sizes
        if order not in sizes:
            raise ConfigurationError(
                f"Order {order} is not part of this structure",
                context={"orders": list(self.orders)},
            )
        if not 1 <= horizon <= sizes[order]:
            raise ConfigurationError(
                f"Horizon {horizon} out of range for order {order} (1..{sizes[order]})"
            )
        return self.order_offsets[order] + horizon - 1

    def constraint_families(self) -> Dict[str, sparse.csr_matrix]:
        return {"temporal": self.zero_constraint_matrix}

    def with_representation(
        self,
        representation: Union[str, Representation]
    ) -> "TemporalStructure":
        return replace(self, representation=Representation.from_name(representation))
