"""Tests for cross-temporal layouts and the residual arena."""

import numpy as np
import pytest

from optimal_forecast_reconciliation.data.layout import CrossTemporalLayout
from optimal_forecast_reconciliation.data.residuals import ResidualArena
from optimal_forecast_reconciliation.exceptions import ConfigurationError, EstimationError


class TestCrossTemporalLayout:
    """Test conversions between flat and nested layouts."""

    def test_grid_shape(self, cross_temporal_structure):
        layout = CrossTemporalLayout(cross_temporal_structure)
        values = np.arange(21, dtype=float)
        grid = layout.to_grid(values)

        assert grid.shape == (3, 7)
        # Series A, quarter 2
        assert grid[1, 4] == values[cross_temporal_structure.position(1, 1, 2)]
        np.testing.assert_array_equal(layout.from_grid(grid), values)

    def test_grid_ensemble(self, cross_temporal_structure, rng):
        layout = CrossTemporalLayout(cross_temporal_structure)
        ensemble = rng.normal(size=(5, 21))

        grid = layout.to_grid(ensemble)
        assert grid.shape == (5, 3, 7)
        np.testing.assert_array_equal(layout.from_grid(grid), ensemble)

    def test_nested(self, cross_temporal_structure):
        layout = CrossTemporalLayout(cross_temporal_structure)
        values = np.arange(21, dtype=float)
        nested = layout.to_nested(values)

        assert set(nested) == {"Total", "A", "B"}
        np.testing.assert_array_equal(nested["Total"][4], [0.0])
        np.testing.assert_array_equal(nested["Total"][2], [1.0, 2.0])
        np.testing.assert_array_equal(nested["B"][1], [17.0, 18.0, 19.0, 20.0])
        np.testing.assert_array_equal(layout.from_nested(nested), values)

    def test_nested_ensemble(self, cross_temporal_structure, rng):
        layout = CrossTemporalLayout(cross_temporal_structure)
        ensemble = rng.normal(size=(4, 21))
        nested = layout.to_nested(ensemble)

        assert nested["A"][1].shape == (4, 4)
        np.testing.assert_array_equal(layout.from_nested(nested), ensemble)

    def test_nested_missing_series(self, cross_temporal_structure):
        layout = CrossTemporalLayout(cross_temporal_structure)
        nested = layout.to_nested(np.zeros(21))
        del nested["B"]

        with pytest.raises(ConfigurationError, match="exactly the structure's series"):
            layout.from_nested(nested)

    def test_nested_wrong_length(self, cross_temporal_structure):
        layout = CrossTemporalLayout(cross_temporal_structure)
        nested = layout.to_nested(np.zeros(21))
        nested["A"][2] = np.zeros(3)

        with pytest.raises(ConfigurationError, match="order 2 has 3 values"):
            layout.from_nested(nested)

    def test_frame(self, cross_temporal_structure):
        layout = CrossTemporalLayout(cross_temporal_structure)
        frame = layout.to_frame(np.arange(21, dtype=float))

        assert list(frame.columns) == ["series", "order", "horizon", "value"]
        assert len(frame) == 21
        row = frame.iloc[cross_temporal_structure.position(2, 2, 1)]
        assert (row["series"], row["order"], row["horizon"]) == ("B", 2, 1)

    def test_frame_ensemble(self, cross_temporal_structure):
        layout = CrossTemporalLayout(cross_temporal_structure)
        frame = layout.to_frame(np.zeros((3, 21)))
        assert len(frame) == 63
        assert sorted(frame["sample"].unique()) == [0, 1, 2]

    def test_wrong_length(self, cross_temporal_structure):
        layout = CrossTemporalLayout(cross_temporal_structure)
        with pytest.raises(ConfigurationError, match="Expected shape"):
            layout.to_grid(np.zeros(20))
        with pytest.raises(ConfigurationError, match="Grid must end with shape"):
            layout.from_grid(np.zeros((3, 6)))


class TestResidualArena:
    """Test residual storage keyed by (order, horizon)."""

    def test_offsets_follow_forecast_order(self, cross_temporal_structure):
        arena = ResidualArena.for_structure(cross_temporal_structure, 10)

        assert arena.width == 21
        assert arena.offset(4, 1, series=0) == 0
        assert arena.offset(1, 3, series=2) == cross_temporal_structure.position(2, 1, 3)

    def test_set_and_get(self, temporal_structure, rng):
        arena = ResidualArena(temporal_structure, 8)
        values = rng.normal(size=8)
        arena.set(2, 2, values)

        np.testing.assert_array_equal(arena.get(2, 2), values)
        assert ("series_0", 2, 2) not in arena.missing_keys()
        assert ("series_0", 4, 1) in arena.missing_keys()

    def test_set_all_series(self, cross_temporal_structure, rng):
        arena = ResidualArena.for_structure(cross_temporal_structure, 6)
        values = rng.normal(size=(6, 3))
        arena.set(1, 4, values)

        np.testing.assert_array_equal(arena.get(1, 4), values)
        np.testing.assert_array_equal(arena.get(1, 4, series=1), values[:, 1])

    def test_to_matrix_requires_every_key(self, temporal_structure):
        arena = ResidualArena(temporal_structure, 5)
        arena.set(4, 1, np.ones(5))
        with pytest.raises(EstimationError, match="missing"):
            arena.to_matrix()

    def test_from_mapping(self, temporal_structure, rng):
        residuals = {label: rng.normal(size=9) for label in temporal_structure.labels}
        matrix = ResidualArena.from_mapping(temporal_structure, residuals).to_matrix()

        assert matrix.shape == (9, 7)
        for column, label in enumerate(temporal_structure.labels):
            np.testing.assert_array_equal(matrix[:, column], residuals[label])

    def test_shape_mismatch(self, temporal_structure):
        arena = ResidualArena(temporal_structure, 5)
        with pytest.raises(ConfigurationError, match="have shape"):
            arena.set(4, 1, np.ones(4))

    def test_unknown_order(self, temporal_structure):
        arena = ResidualArena(temporal_structure, 5)
        with pytest.raises(ConfigurationError, match="not part"):
            arena.set(3, 1, np.ones(5))

    def test_block_mask_by_order(self, temporal_structure):
        mask = ResidualArena(temporal_structure, 2).block_mask(by="order")

        assert mask.shape == (7, 7)
        assert mask[1, 2]
        assert not mask[0, 1]
        assert mask[3:, 3:].all()

    def test_block_mask_by_series(self, cross_temporal_structure):
        mask = ResidualArena.for_structure(cross_temporal_structure, 2).block_mask(by="series")

        assert mask[:7, :7].all()
        assert not mask[:7, 7:].any()

    def test_invalid_construction(self, temporal_structure):
        with pytest.raises(ConfigurationError, match="positive integer"):
            ResidualArena(temporal_structure, 0)
        with pytest.raises(ConfigurationError, match="unique"):
            ResidualArena(temporal_structure, 3, series_names=["a", "a"])
        with pytest.raises(ConfigurationError, match="block layout"):
            ResidualArena(temporal_structure, 3).block_mask(by="horizon")
