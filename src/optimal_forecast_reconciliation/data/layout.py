"""Conversions between the flattened cross-temporal vector and nested layouts."""

from typing import Dict

import numpy as np
import pandas as pd

from ..exceptions import ConfigurationError
from ..structure import CrossTemporalStructure


class CrossTemporalLayout:
    """
    Pure reshaping between the solver's flat layout and consumer layouts.

    Inputs are a flat vector of length ``N = n * kt`` or an ensemble of shape
    ``(B, N)`` (one sample per row). Every conversion has an exact inverse.
    """

    def __init__(self, structure: CrossTemporalStructure) -> None:
        self.structure = structure
        self.series_names = structure.cross_sectional.series_names
        self.orders = structure.temporal.orders
        self._offsets = structure.temporal.order_offsets
        self._sizes = structure.temporal.order_sizes

    def _check_flat(self, values: np.ndarray) -> np.ndarray:
        array = np.asarray(values, dtype=float)
        if array.ndim not in (1, 2) or array.shape[-1] != self.structure.size:
            raise ConfigurationError(
                f"Expected shape ({self.structure.size},) or (B, {self.structure.size}), "
                f"got {array.shape}"
            )
        return array

    def to_grid(self, values: np.ndarray) -> np.ndarray:
        """``(N,) -> (n, kt)`` and ``(B, N) -> (B, n, kt)``."""
        array = self._check_flat(values)
        return array.reshape(array.shape[:-1] + self.structure.grid_shape).copy()

    def from_grid(self, grid: np.ndarray) -> np.ndarray:
        """Inverse of :meth:`to_grid`."""
        array = np.asarray(grid, dtype=float)
        if array.ndim not in (2, 3) or array.shape[-2:] != self.structure.grid_shape:
            raise ConfigurationError(
                f"Grid must end with shape {self.structure.grid_shape}, got {array.shape}"
            )
        return array.reshape(array.shape[:-2] + (self.structure.size,)).copy()

    def to_nested(self, values: np.ndarray) -> Dict[str, Dict[int, np.ndarray]]:
        """
        Split into ``{series: {order: values}}``.

        Each leaf has shape ``(m / k,)`` for a vector or ``(B, m / k)`` for an
        ensemble.
        """
        grid = self.to_grid(values)
        nested: Dict[str, Dict[int, np.ndarray]] = {}
        for i, name in enumerate(self.series_names):
            by_order: Dict[int, np.ndarray] = {}
            for k in self.orders:
                start = self._offsets[k]
                by_order[k] = grid[..., i, start:start + self._sizes[k]].copy()
            nested[name] = by_order
        return nested

    def from_nested(self, nested: Dict[str, Dict[int, np.ndarray]]) -> np.ndarray:
        """Inverse of :meth:`to_nested`."""
        if set(nested) != set(self.series_names):
            raise ConfigurationError(
                "Nested forecasts must contain exactly the structure's series",
                context={
                    "missing": sorted(set(self.series_names) - set(nested)),
                    "unexpected": sorted(set(nested) - set(self.series_names)),
                },
            )

        blocks = []
        for name in self.series_names:
            by_order = nested[name]
            if set(by_order) != set(self.orders):
                raise ConfigurationError(
                    f"Series '{name}' must provide orders {list(self.orders)}",
                    context={"got": sorted(by_order)},
                )
            parts = []
            for k in self.orders:
                part = np.asarray(by_order[k], dtype=float)
                if part.shape[-1] != self._sizes[k]:
                    raise ConfigurationError(
                        f"Series '{name}' order {k} has {part.shape[-1]} values, "
                        f"expected {self._sizes[k]}"
                    )
                parts.append(part)
            blocks.append(np.concatenate(parts, axis=-1))
        return np.concatenate(blocks, axis=-1)

    def to_frame(self, values: np.ndarray) -> pd.DataFrame:
        """
        Long DataFrame with columns ``series, order, horizon, value``.

        For an ensemble a ``sample`` column is added.
        """
        array = self._check_flat(values)
        labels = self.structure.temporal.labels
        kt = self.structure.kt

        series = np.repeat(self.series_names, kt)
        orders = np.tile([k for k, _ in labels], self.structure.n_series)
        horizons = np.tile([h for _, h in labels], self.structure.n_series)

        if array.ndim == 1:
            return pd.DataFrame({
                "series": series,
                "order": orders,
                "horizon": horizons,
                "value": array,
            })

        n_samples = array.shape[0]
        return pd.DataFrame({
            "sample": np.repeat(np.arange(n_samples), self.structure.size),
            "series": np.tile(series, n_samples),
            "order": np.tile(orders, n_samples),
            "horizon": np.tile(horizons, n_samples),
            "value": array.ravel(),
        })
