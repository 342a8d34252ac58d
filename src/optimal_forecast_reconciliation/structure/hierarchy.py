"""
Cross-sectional aggregation structures.

A cross-sectional structure links ``n_a`` upper series to ``n_b`` bottom
series through a non-negative aggregation matrix ``C``. Series are ordered
upper first, bottom last, so ``S = [C; I]`` and ``Ut = [I, -C]``.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import sparse

from ..exceptions import ConfigurationError
from .base import LinearStructure, Representation, validate_aggregation_matrix

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class CrossSectionalStructure(LinearStructure):
    """
    Hierarchical or grouped relationships between series at one granularity.

    Example for ``Total = A + B``:

        >>> structure = CrossSectionalStructure(
        ...     aggregation=np.array([[1, 1]]),
        ...     representation=Representation.ZERO_CONSTRAINT,
        ...     series_names=["Total", "A", "B"],
        ... )
        >>> structure.summing_matrix.toarray()
        array([[1., 1.],
               [1., 0.],
               [0., 1.]])

    Attributes:
        aggregation: Aggregation matrix ``C`` of shape (n_upper, n_bottom).
        representation: Constraint form handed to the GLS solver.
        series_names: Names of all series, upper first. Generated if omitted.
    """

    aggregation: sparse.csr_matrix = field(repr=False)
    representation: Representation
    series_names: Optional[List[str]] = None

    summing_matrix: sparse.csr_matrix = field(init=False, repr=False)
    bottom_index: np.ndarray = field(init=False, repr=False)

    def __post_init__(self) -> None:
        aggregation = validate_aggregation_matrix(self.aggregation)
        n_upper, n_bottom = aggregation.shape
        n_series = n_upper + n_bottom

        if self.series_names is None:
            names = [f"upper_{i}" for i in range(n_upper)] + [
                f"bottom_{j}" for j in range(n_bottom)
            ]
        else:
            names = [str(name) for name in self.series_names]
            if len(names) != n_series:
                raise ConfigurationError(
                    f"Got {len(names)} series names for {n_series} series",
                    context={"n_upper": n_upper, "n_bottom": n_bottom},
                )
            if len(set(names)) != len(names):
                raise ConfigurationError("Series names must be unique")

        summing = sparse.vstack(
            [aggregation, sparse.identity(n_bottom, format="csr")]
        ).tocsr()

        # Frozen dataclass: derived fields go through object.__setattr__
        object.__setattr__(self, "aggregation", aggregation)
        object.__setattr__(self, "representation", Representation.from_name(self.representation))
        object.__setattr__(self, "series_names", names)
        object.__setattr__(self, "summing_matrix", summing)
        object.__setattr__(self, "bottom_index", np.arange(n_upper, n_series))

        logger.debug(f"Cross-sectional structure: {n_upper} upper, {n_bottom} bottom series")

    @property
    def n_upper(self) -> int:
        return self.aggregation.shape[0]

    @property
    def n_bottom(self) -> int:
        return self.aggregation.shape[1]

    @property
    def n_series(self) -> int:
        return self.n_upper + self.n_bottom

    @property
    def upper_names(self) -> List[str]:
        return self.series_names[:self.n_upper]

    @property
    def bottom_names(self) -> List[str]:
        return self.series_names[self.n_upper:]

    def constraint_families(self) -> Dict[str, sparse.csr_matrix]:
        return {"cross_sectional": self.zero_constraint_matrix}

    def with_representation(
        self,
        representation: Union[str, Representation]
    ) -> "CrossSectionalStructure":
        """Copy of this structure using another constraint representation."""
        return replace(self, representation=Representation.from_name(representation))

    def to_frame(self) -> pd.DataFrame:
        """Summing matrix as a DataFrame (rows all series, columns bottom series)."""
        return pd.DataFrame(
            self.summing_matrix.toarray(),
            index=self.series_names,
            columns=self.bottom_names,
        )

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        representation: Union[str, Representation]
    ) -> "CrossSectionalStructure":
        """
        Build from an aggregation-matrix DataFrame.

        Args:
            frame: Rows are upper series, columns are bottom series, values
                are the aggregation coefficients.
            representation: Constraint representation.
        """
        names = [str(i) for i in frame.index] + [str(c) for c in frame.columns]
        return cls(
            aggregation=frame.to_numpy(dtype=float),
            representation=representation,
            series_names=names,
        )

    @classmethod
    def from_summing_matrix(
        cls,
        summing_matrix: Union[np.ndarray, sparse.spmatrix],
        representation: Union[str, Representation],
        series_names: Optional[List[str]] = None,
    ) -> "CrossSectionalStructure":
        """
        Recover ``C`` from a summing matrix whose last rows are the identity.

        Raises:
            ConfigurationError: If ``S`` does not end with an identity block.
        """
        dense = summing_matrix.toarray() if sparse.issparse(summing_matrix) else np.asarray(
            summing_matrix, dtype=float
        )
        if dense.ndim != 2 or dense.shape[0] <= dense.shape[1]:
            raise ConfigurationError(
                "Summing matrix must have more rows than columns",
                context={"shape": dense.shape},
            )

        n_bottom = dense.shape[1]
        if not np.allclose(dense[-n_bottom:], np.eye(n_bottom)):
            raise ConfigurationError(
                "Summing matrix must end with an identity block for the bottom series; "
                "reorder the rows so aggregates come first"
            )

        return cls(
            aggregation=dense[:-n_bottom],
            representation=representation,
            series_names=series_names,
        )

    @classmethod
    def from_zero_constraint(
        cls,
        zero_constraint: Union[np.ndarray, sparse.spmatrix],
        representation: Union[str, Representation],
        series_names: Optional[List[str]] = None,
    ) -> "CrossSectionalStructure":
        """
        Recover ``C`` from ``Ut = [I, -C]``.

        Raises:
            ConfigurationError: If the leading block is not the identity.
        """
        dense = zero_constraint.toarray() if sparse.issparse(zero_constraint) else np.asarray(
            zero_constraint, dtype=float
        )
        if dense.ndim != 2 or dense.shape[1] <= dense.shape[0]:
            raise ConfigurationError(
                "Zero-constraint matrix must have more columns than rows",
                context={"shape": dense.shape},
            )

        n_upper = dense.shape[0]
        if not np.allclose(dense[:, :n_upper], np.eye(n_upper)):
            raise ConfigurationError(
                "Zero-constraint matrix must start with an identity block for the upper series"
            )

        return cls(
            aggregation=-dense[:, n_upper:],
            representation=representation,
            series_names=series_names,
        )

    @classmethod
    def from_parent_children(
        cls,
        graph: Mapping[str, Sequence[str]],
        representation: Union[str, Representation],
        bottom_order: Optional[Sequence[str]] = None,
    ) -> "CrossSectionalStructure":
        """
        Build from a parent -> children mapping.

        Upper series are ordered level by level from the roots; bottom series
        (nodes without children) follow ``bottom_order`` when given, otherwise
        first-seen order.

        Args:
            graph: Mapping from each aggregate to its direct children.
            representation: Constraint representation.
            bottom_order: Optional explicit ordering of the bottom series.

        Raises:
            ConfigurationError: On empty graphs, parents without children,
                cycles, or a ``bottom_order`` that does not list the leaves.
        """
        if not graph:
            raise ConfigurationError("Aggregation graph is empty")

        children_of: Dict[str, List[str]] = {}
        for parent, children in graph.items():
            children = [str(c) for c in children]
            if not children:
                raise ConfigurationError(
                    f"Parent '{parent}' has no children",
                    context={"parent": parent},
                )
            if str(parent) in children:
                raise ConfigurationError(f"Node '{parent}' lists itself as a child")
            children_of[str(parent)] = list(dict.fromkeys(children))

        all_children = {c for children in children_of.values() for c in children}
        roots = [p for p in children_of if p not in all_children]
        if not roots:
            raise ConfigurationError("Aggregation graph has no root (cycle detected)")

        leaves_seen: List[str] = []
        for children in children_of.values():
            for child in children:
                if child not in children_of and child not in leaves_seen:
                    leaves_seen.append(child)

        if bottom_order is None:
            bottom = leaves_seen
        else:
            bottom = [str(b) for b in bottom_order]
            if sorted(bottom) != sorted(leaves_seen):
                raise ConfigurationError(
                    "bottom_order must list exactly the leaf nodes of the graph",
                    context={"leaves": sorted(leaves_seen)},
                )

        leaves_under = _collect_leaves(children_of)

        # Level order from the roots
        upper: List[str] = []
        frontier = list(roots)
        while frontier:
            next_frontier: List[str] = []
            for node in frontier:
                if node in children_of and node not in upper:
                    upper.append(node)
                    next_frontier.extend(children_of[node])
            frontier = next_frontier

        bottom_position = {name: j for j, name in enumerate(bottom)}
        aggregation = np.zeros((len(upper), len(bottom)))
        for i, node in enumerate(upper):
            for leaf in leaves_under[node]:
                aggregation[i, bottom_position[leaf]] = 1.0

        return cls(
            aggregation=aggregation,
            representation=representation,
            series_names=upper + bottom,
        )


def _collect_leaves(children_of: Dict[str, List[str]]) -> Dict[str, set]:
    """Leaves reachable from every aggregate; raises on cycles."""
    leaves: Dict[str, set] = {}
    visiting: set = set()

    def visit(node: str) -> set:
        if node not in children_of:
            return {node}
        if node in leaves:
            return leaves[node]
        if node in visiting:
            raise ConfigurationError(
                f"Aggregation graph contains a cycle through '{node}'",
                context={"node": node},
            )
        visiting.add(node)
        reached: set = set()
        for child in children_of[node]:
            reached |= visit(child)
        visiting.discard(node)
        leaves[node] = reached
        return reached

    for parent in children_of:
        visit(parent)
    return leaves


class HierarchyBuilder:
    """Builds cross-sectional structures from grouping columns of the bottom series."""

    def __init__(
        self,
        hierarchy_levels: Sequence[Union[str, Sequence[str]]],
        include_total: bool = True
    ) -> None:
        """
        Initialize hierarchy builder.

        Args:
            hierarchy_levels: Grouping levels, top to bottom. A level is a
                column name or a sequence of column names for crossed groups
                (e.g. ``("state_id", "cat_id")``).
            include_total: Whether to add a grand total as the first series.
        """
        self.hierarchy_levels = [
            (level,) if isinstance(level, str) else tuple(level) for level in hierarchy_levels
        ]
        self.include_total = include_total
        self.logger = logging.getLogger(__name__)

    def build(
        self,
        bottom_frame: pd.DataFrame,
        representation: Union[str, Representation],
        id_column: str = "id",
    ) -> CrossSectionalStructure:
        """
        Build the structure for the bottom series described by ``bottom_frame``.

        Args:
            bottom_frame: One row per bottom series with ``id_column`` and the
                grouping columns.
            representation: Constraint representation.
            id_column: Column holding bottom series identifiers.

        Returns:
            CrossSectionalStructure with total, then each level, then bottom series.
        """
        if bottom_frame.empty:
            raise ConfigurationError("bottom_frame is empty")
        if id_column not in bottom_frame.columns:
            raise ConfigurationError(f"Column '{id_column}' not found in bottom_frame")

        required = {column for level in self.hierarchy_levels for column in level}
        missing = required - set(bottom_frame.columns)
        if missing:
            raise ConfigurationError(
                f"bottom_frame is missing hierarchy columns: {sorted(missing)}"
            )

        frame = bottom_frame.drop_duplicates(subset=[id_column]).reset_index(drop=True)
        bottom_names = frame[id_column].astype(str).tolist()
        n_bottom = len(bottom_names)

        rows: List[np.ndarray] = []
        names: List[str] = []

        if self.include_total:
            rows.append(np.ones(n_bottom))
            names.append("total")

        for level in self.hierarchy_levels:
            groups = frame.groupby(list(level), sort=True).indices
            self.logger.info(f"Level {'/'.join(level)}: {len(groups)} series")
            for key, positions in groups.items():
                key = key if isinstance(key, tuple) else (key,)
                row = np.zeros(n_bottom)
                row[positions] = 1.0
                rows.append(row)
                names.append("/".join(f"{column}={value}" for column, value in zip(level, key)))

        if not rows:
            raise ConfigurationError("Hierarchy has no aggregate levels")

        structure = CrossSectionalStructure(
            aggregation=np.vstack(rows),
            representation=representation,
            series_names=names + bottom_names,
        )
        self.logger.info(
            f"Built aggregation matrix: {structure.n_upper} x {structure.n_bottom}"
        )
        return structure

    def get_hierarchy_structure(self, bottom_frame: pd.DataFrame) -> Dict[str, int]:
        """Number of series at each level."""
        counts: Dict[str, int] = {}
        if self.include_total:
            counts["total"] = 1
        for level in self.hierarchy_levels:
            counts["/".join(level)] = int(bottom_frame.groupby(list(level)).ngroups)
        counts["bottom"] = int(len(bottom_frame))
        return counts
