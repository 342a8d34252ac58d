"""Tests for the GLS projection."""

import numpy as np
import pytest

from optimal_forecast_reconciliation.evaluation.diagnostics import coherence_errors, is_coherent
from optimal_forecast_reconciliation.exceptions import ConfigurationError, NumericalError, SolverStatus
from optimal_forecast_reconciliation.models.covariance import CovarianceEstimator
from optimal_forecast_reconciliation.models.gls import (
    GLSReconciler,
    ProjectionOperator,
    gls_reconcile,
)
from optimal_forecast_reconciliation.structure import Representation


class TestProjectionOperator:
    """Test the factored projection in both forms."""

    def test_weighted_projection_values(self, simple_structure):
        """Total=10, A=4, B=5 with the total twice as uncertain."""
        operator = ProjectionOperator(simple_structure, np.diag([2.0, 1.0, 1.0]))
        reconciled = operator.apply(np.array([10.0, 4.0, 5.0]))

        np.testing.assert_allclose(reconciled, [9.5, 4.25, 5.25])
        assert reconciled[0] == pytest.approx(reconciled[1] + reconciled[2])

    def test_identity_weights_split_evenly(self, simple_structure):
        operator = ProjectionOperator(simple_structure, np.eye(3))
        reconciled = operator.apply(np.array([10.0, 4.0, 5.0]))
        np.testing.assert_allclose(reconciled, [29.0 / 3.0, 13.0 / 3.0, 16.0 / 3.0])

    def test_both_forms_agree(self, grouped_structure, grouped_residuals, rng):
        omega = CovarianceEstimator("shrink", grouped_structure).estimate(grouped_residuals)
        base = rng.normal(10.0, 3.0, size=(7, 5))

        constraint_form = ProjectionOperator(grouped_structure, omega)
        summing_form = ProjectionOperator(
            grouped_structure.with_representation(Representation.SUMMING),
            omega,
        )

        np.testing.assert_allclose(
            constraint_form.apply(base), summing_form.apply(base), rtol=1e-9, atol=1e-9
        )

    def test_coherent_input_unchanged(self, grouped_structure, grouped_residuals):
        omega = CovarianceEstimator("shrink", grouped_structure).estimate(grouped_residuals)
        base = grouped_structure.aggregate(np.array([1.0, 2.0, 3.0, 4.0]))

        for representation in Representation:
            operator = ProjectionOperator(grouped_structure.with_representation(representation), omega)
            np.testing.assert_allclose(operator.apply(base), base, atol=1e-10)

    def test_projection_is_idempotent(self, grouped_structure, rng):
        operator = ProjectionOperator(grouped_structure, np.diag(grouped_structure.structural_weights()))
        once = operator.apply(rng.normal(size=7))
        np.testing.assert_allclose(operator.apply(once), once, atol=1e-10)

    def test_residual_is_weighted_orthogonal(self, grouped_structure, grouped_residuals, rng):
        """The adjustment is orthogonal to the coherent subspace in the Omega^-1 metric."""
        omega = CovarianceEstimator("sample", grouped_structure).estimate(grouped_residuals).matrix
        operator = ProjectionOperator(grouped_structure, omega)
        base = rng.normal(5.0, 2.0, size=7)
        adjustment = base - operator.apply(base)

        summing = grouped_structure.summing_matrix.toarray()
        gradient = summing.T @ np.linalg.solve(omega, adjustment)
        np.testing.assert_allclose(gradient, 0.0, atol=1e-8)

    def test_matrix_input_matches_columns(self, grouped_structure, rng):
        operator = ProjectionOperator(grouped_structure, np.eye(7))
        base = rng.normal(size=(7, 3))
        batched = operator.apply(base)

        assert batched.shape == (7, 3)
        for column in range(3):
            np.testing.assert_allclose(batched[:, column], operator.apply(base[:, column]))

    def test_bottom_matches_full_solution(self, grouped_structure, rng):
        base = rng.normal(size=7)
        for representation in Representation:
            structure = grouped_structure.with_representation(representation)
            operator = ProjectionOperator(structure, np.eye(7))
            np.testing.assert_allclose(
                operator.bottom(base), operator.apply(base)[structure.bottom_index], atol=1e-10
            )

    def test_restricted_with_all_free(self, grouped_structure, rng):
        operator = ProjectionOperator(grouped_structure, np.diag([3.0, 2.0, 2.0, 1.0, 1.0, 1.0, 1.0]))
        base = rng.normal(size=7)
        free = np.ones(grouped_structure.n_free, dtype=bool)
        np.testing.assert_allclose(operator.restricted(base, free), operator.bottom(base), atol=1e-10)

    def test_restricted_fixes_values_to_zero(self, simple_structure):
        operator = ProjectionOperator(simple_structure, np.diag([2.0, 1.0, 1.0]))
        bottom = operator.restricted(np.array([3.0, -2.0, 5.0]), np.array([False, True]))

        assert bottom[0] == 0.0
        assert bottom[1] == pytest.approx(13.0 / 3.0)

    def test_restricted_nothing_free(self, simple_structure):
        operator = ProjectionOperator(simple_structure, np.eye(3))
        np.testing.assert_array_equal(
            operator.restricted(np.array([1.0, 2.0, 3.0]), np.zeros(2, dtype=bool)), [0.0, 0.0]
        )

    def test_whiten(self, grouped_structure, grouped_residuals):
        omega = CovarianceEstimator("sample", grouped_structure).estimate(grouped_residuals).matrix
        operator = ProjectionOperator(grouped_structure, omega)
        whitening = operator.whiten(np.eye(7))
        np.testing.assert_allclose(whitening.T @ whitening, np.linalg.inv(omega), rtol=1e-8, atol=1e-10)

    def test_accepts_estimate(self, grouped_structure):
        estimate = CovarianceEstimator("structural", grouped_structure).estimate()
        operator = ProjectionOperator(grouped_structure, estimate)
        np.testing.assert_array_equal(operator.covariance, estimate.matrix)

    def test_wrong_base_length(self, simple_structure):
        operator = ProjectionOperator(simple_structure, np.eye(3))
        with pytest.raises(ConfigurationError, match="leading dimension"):
            operator.apply(np.ones(4))


class TestCovarianceValidation:
    """Test rejection of unusable weighting matrices."""

    def test_wrong_size(self, simple_structure):
        with pytest.raises(ConfigurationError, match="Covariance has shape"):
            ProjectionOperator(simple_structure, np.eye(2))

    def test_asymmetric(self, simple_structure):
        omega = np.array([[2.0, 1.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
        with pytest.raises(ConfigurationError, match="symmetric"):
            ProjectionOperator(simple_structure, omega)

    def test_non_finite(self, simple_structure):
        omega = np.eye(3)
        omega[1, 1] = np.inf
        with pytest.raises(ConfigurationError, match="NaN or infinite"):
            ProjectionOperator(simple_structure, omega)

    def test_singular_raises(self, simple_structure):
        omega = np.array([[1.0, 1.0, 0.0], [1.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
        with pytest.raises(NumericalError, match="weighting matrix"):
            ProjectionOperator(simple_structure, omega)

    def test_zero_variance_raises(self, simple_structure):
        with pytest.raises(NumericalError):
            ProjectionOperator(simple_structure, np.diag([1.0, 0.0, 1.0]))

    def test_singular_with_pseudo_inverse(self, simple_structure):
        omega = np.array([[1.0, 1.0, 0.0], [1.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
        operator = ProjectionOperator(simple_structure, omega, allow_pseudo_inverse=True)
        reconciled = operator.apply(np.array([10.0, 4.0, 5.0]))

        assert operator.pseudo_inverse_used
        np.testing.assert_allclose(reconciled, [10.0, 4.0, 6.0])
        assert is_coherent(simple_structure, reconciled)

    def test_indefinite_rejected_even_with_pseudo_inverse(self, simple_structure):
        with pytest.raises(NumericalError, match="indefinite"):
            ProjectionOperator(simple_structure, np.diag([1.0, -1.0, 1.0]), allow_pseudo_inverse=True)


class TestTemporalProjection:
    """Test temporal and cross-temporal coherence."""

    def test_temporal_coherence(self, temporal_structure, rng):
        operator = ProjectionOperator(
            temporal_structure, np.diag(temporal_structure.structural_weights())
        )
        reconciled = operator.apply(rng.normal(10.0, 2.0, size=temporal_structure.kt))

        assert is_coherent(temporal_structure, reconciled, tolerance=1e-10)
        # Annual value equals the sum of the quarters
        assert reconciled[0] == pytest.approx(reconciled[3:].sum())

    def test_cross_temporal_coherence(self, cross_temporal_structure, rng):
        size = cross_temporal_structure.size
        factor = rng.normal(size=(size, size))
        omega = factor @ factor.T / size + np.eye(size)

        for representation in Representation:
            structure = cross_temporal_structure.with_representation(representation)
            reconciled = ProjectionOperator(structure, omega).apply(rng.normal(5.0, 1.0, size=size))

            errors = coherence_errors(structure, reconciled)
            assert set(errors) == {"cross_sectional", "temporal"}
            assert max(errors.values()) < 1e-9

    def test_cross_temporal_forms_agree(self, cross_temporal_structure, rng):
        size = cross_temporal_structure.size
        omega = np.diag(cross_temporal_structure.structural_weights())
        base = rng.normal(size=(size, 2))

        constraint_form = ProjectionOperator(cross_temporal_structure, omega).apply(base)
        summing_form = ProjectionOperator(
            cross_temporal_structure.with_representation(Representation.SUMMING), omega
        ).apply(base)
        np.testing.assert_allclose(constraint_form, summing_form, atol=1e-9)


class TestGLSReconciler:
    """Test the result-returning wrapper."""

    def test_reconcile_result(self, simple_structure):
        result = GLSReconciler(simple_structure, np.diag([2.0, 1.0, 1.0])).reconcile(
            np.array([10.0, 4.0, 5.0])
        )
        assert result.status is SolverStatus.CONVERGED
        assert result.is_success
        assert result.method == "gls"
        np.testing.assert_allclose(result.values, [9.5, 4.25, 5.25])

    def test_from_operator_shares_factorization(self, simple_structure):
        operator = ProjectionOperator(simple_structure, np.eye(3))
        reconciler = GLSReconciler.from_operator(operator)
        assert reconciler.operator is operator
        assert reconciler.structure is simple_structure

    def test_one_shot(self, simple_structure):
        np.testing.assert_allclose(
            gls_reconcile(np.array([10.0, 4.0, 5.0]), simple_structure, np.diag([2.0, 1.0, 1.0])),
            [9.5, 4.25, 5.25],
        )
