"""Multi-step residual container keyed by (aggregation order, horizon)."""

import logging
from typing import List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..exceptions import ConfigurationError, EstimationError
from ..structure import CrossTemporalStructure, TemporalStructure

logger = logging.getLogger(__name__)


class ResidualArena:
    """
    Residuals for every (series, order, horizon) in a single flat buffer.

    The buffer has one row per observed cycle and one column per position of
    the flattened forecast vector, so column ``series * kt + offset(order) +
    horizon - 1`` holds the residuals of ``series`` at ``(order, horizon)``.
    :meth:`to_matrix` therefore hands the covariance estimator a matrix whose
    columns already follow the forecast ordering.

    Example:
        >>> temporal = TemporalStructure(4, Representation.ZERO_CONSTRAINT)
        >>> arena = ResidualArena(temporal, n_observations=30)
        >>> arena.set(order=2, horizon=1, values=residuals_k2_h1)
    """

    def __init__(
        self,
        temporal: TemporalStructure,
        n_observations: int,
        series_names: Optional[Sequence[str]] = None
    ) -> None:
        """
        Initialize an empty arena.

        Args:
            temporal: Temporal structure defining orders and horizons.
            n_observations: Number of residual rows (observed cycles).
            series_names: Series names for cross-temporal residuals; a single
                unnamed series when omitted.
        """
        if not isinstance(n_observations, (int, np.integer)) or n_observations < 1:
            raise ConfigurationError(
                f"n_observations must be a positive integer, got {n_observations!r}"
            )
        self.temporal = temporal
        self.series_names: List[str] = (
            [str(name) for name in series_names] if series_names is not None else ["series_0"]
        )
        if len(set(self.series_names)) != len(self.series_names):
            raise ConfigurationError("Series names must be unique")

        self.n_observations = int(n_observations)
        self._offsets = temporal.order_offsets
        self._buffer = np.full((self.n_observations, self.width), np.nan)

    @classmethod
    def for_structure(
        cls,
        structure: CrossTemporalStructure,
        n_observations: int
    ) -> "ResidualArena":
        """Empty arena laid out like ``structure``'s flattened vector."""
        return cls(
            structure.temporal,
            n_observations,
            series_names=structure.cross_sectional.series_names,
        )

    @classmethod
    def from_mapping(
        cls,
        temporal: TemporalStructure,
        residuals: Mapping[Tuple[int, int], np.ndarray],
        series_names: Optional[Sequence[str]] = None
    ) -> "ResidualArena":
        """
        Build an arena from ``{(order, horizon): residuals}``.

        Each value is ``(n_observations,)`` for one series or
        ``(n_observations, n_series)`` for several.
        """
        if not residuals:
            raise ConfigurationError("Residual mapping is empty")
        n_observations = len(next(iter(residuals.values())))
        arena = cls(temporal, n_observations, series_names=series_names)
        for (order, horizon), values in residuals.items():
            arena.set(order, horizon, values)
        return arena

    @property
    def n_series(self) -> int:
        return len(self.series_names)

    @property
    def width(self) -> int:
        return self.n_series * self.temporal.kt

    def offset(self, order: int, horizon: int, series: int = 0) -> int:
        """Column of ``series`` at ``(order, horizon)``."""
        if not 0 <= series < self.n_series:
            raise ConfigurationError(
                f"Series index {series} out of range (0..{self.n_series - 1})"
            )
        return series * self.temporal.kt + self.temporal.position(order, horizon)

    def _columns(self, order: int, horizon: int, series: Optional[int]) -> np.ndarray:
        if series is not None:
            return np.array([self.offset(order, horizon, series)])
        return np.array([self.offset(order, horizon, s) for s in range(self.n_series)])

    def set(
        self,
        order: int,
        horizon: int,
        values: np.ndarray,
        series: Optional[int] = None
    ) -> None:
        """
        Store residuals of one ``(order, horizon)``.

        Args:
            order: Aggregation order ``k``.
            horizon: Position within the order, starting at 1.
            values: ``(n_observations,)`` for one series, or
                ``(n_observations, n_series)`` when ``series`` is None.
            series: Series index, or None to set every series at once.
        """
        columns = self._columns(order, horizon, series)
        array = np.asarray(values, dtype=float)
        if array.ndim == 1:
            array = array[:, None]
        if array.shape != (self.n_observations, len(columns)):
            raise ConfigurationError(
                f"Residuals for (order={order}, horizon={horizon}) have shape {array.shape}, "
                f"expected {(self.n_observations, len(columns))}"
            )
        self._buffer[:, columns] = array

    def get(self, order: int, horizon: int, series: Optional[int] = None) -> np.ndarray:
        """Residuals of one ``(order, horizon)``, squeezed for a single series."""
        columns = self._columns(order, horizon, series)
        values = self._buffer[:, columns]
        return values[:, 0] if values.shape[1] == 1 else values.copy()

    def missing_keys(self) -> List[Tuple[str, int, int]]:
        """``(series, order, horizon)`` entries that were never filled."""
        empty = np.all(np.isnan(self._buffer), axis=0)
        labels = self.temporal.labels
        missing = []
        for column in np.flatnonzero(empty):
            series, position = divmod(int(column), self.temporal.kt)
            order, horizon = labels[position]
            missing.append((self.series_names[series], order, horizon))
        return missing

    def to_matrix(self) -> np.ndarray:
        """
        Residual matrix (observations x flattened positions).

        Raises:
            EstimationError: If any entry is missing or NaN.
        """
        missing = self.missing_keys()
        if missing:
            raise EstimationError(
                f"Residuals missing for {len(missing)} (series, order, horizon) keys",
                context={"first_missing": missing[:5]},
            )
        if np.isnan(self._buffer).any():
            raise EstimationError("Residual arena contains NaN values")
        return self._buffer.copy()

    def block_mask(self, by: str = "order") -> np.ndarray:
        """
        Boolean mask keeping covariances inside blocks only.

        Args:
            by: ``"order"`` keeps covariances between positions of the same
                aggregation order (across series); ``"series"`` keeps
                covariances within each series.
        """
        labels = self.temporal.labels
        if by == "order":
            keys = np.array([labels[c % self.temporal.kt][0] for c in range(self.width)])
        elif by == "series":
            keys = np.arange(self.width) // self.temporal.kt
        else:
            raise ConfigurationError(
                f"Unknown block layout '{by}'",
                context={"allowed": ["order", "series"]},
            )
        return keys[:, None] == keys[None, :]
