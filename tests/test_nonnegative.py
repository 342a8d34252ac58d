"""Tests for non-negativity enforcement."""

from types import SimpleNamespace

import numpy as np
import pytest

from optimal_forecast_reconciliation.evaluation.diagnostics import is_coherent
from optimal_forecast_reconciliation.exceptions import ConfigurationError, SolverStatus
from optimal_forecast_reconciliation.models import nonnegative
from optimal_forecast_reconciliation.models.gls import ProjectionOperator
from optimal_forecast_reconciliation.models.nonnegative import (
    NonNegativityEnforcer,
    NonNegativityMethod,
)

# Coherent base with a negative bottom series: Total = A + B
NEGATIVE_BASE = np.array([3.0, -2.0, 5.0])


@pytest.fixture
def weighted_operator(simple_structure):
    return ProjectionOperator(simple_structure, np.diag([2.0, 1.0, 1.0]))


def weighted_loss(omega, base, values):
    gap = values - base
    return float(gap @ np.linalg.solve(omega, gap))


class TestNonNegativityMethod:
    """Test method name resolution."""

    def test_aliases(self):
        assert NonNegativityMethod.from_name("sntz") is NonNegativityMethod.SET_NEGATIVE_TO_ZERO
        assert NonNegativityMethod.from_name("heuristic") is NonNegativityMethod.ITERATIVE_ZERO
        assert NonNegativityMethod.from_name("EXACT") is NonNegativityMethod.EXACT

    def test_none(self):
        assert NonNegativityMethod.from_name(None) is NonNegativityMethod.NONE

    def test_unknown(self):
        with pytest.raises(ConfigurationError, match="Unknown non-negativity method"):
            NonNegativityMethod.from_name("clip_everything")


class TestNonNegativityEnforcer:
    """Test each strategy on a small hierarchy."""

    def test_iterative_zero(self, weighted_operator):
        result = NonNegativityEnforcer(weighted_operator, "iterative_zero").enforce(NEGATIVE_BASE)

        assert result.status is SolverStatus.CONVERGED
        assert result.method == "iterative_zero"
        assert result.iterations == 1
        np.testing.assert_allclose(result.values, [13.0 / 3.0, 0.0, 13.0 / 3.0])

    def test_exact(self, weighted_operator):
        result = NonNegativityEnforcer(weighted_operator, "exact").enforce(NEGATIVE_BASE)

        assert result.status is SolverStatus.CONVERGED
        assert result.method == "exact"
        np.testing.assert_allclose(result.values, [13.0 / 3.0, 0.0, 13.0 / 3.0], atol=1e-8)

    def test_exact_trf_solver(self, weighted_operator):
        result = NonNegativityEnforcer(weighted_operator, "exact", qp_solver="trf").enforce(NEGATIVE_BASE)

        assert result.is_success
        np.testing.assert_allclose(result.values, [13.0 / 3.0, 0.0, 13.0 / 3.0], atol=1e-4)
        assert np.all(result.values >= 0.0)

    def test_set_negative_to_zero(self, weighted_operator):
        result = NonNegativityEnforcer(weighted_operator, "sntz").enforce(NEGATIVE_BASE)

        assert result.status is SolverStatus.CONVERGED
        assert result.iterations == 1
        np.testing.assert_allclose(result.values, [5.0, 0.0, 5.0])

    def test_none_keeps_negative_values(self, weighted_operator):
        enforcer = NonNegativityEnforcer(weighted_operator, None)
        result = enforcer.enforce(NEGATIVE_BASE)

        assert not enforcer.enabled
        assert result.method == "gls"
        np.testing.assert_allclose(result.values, NEGATIVE_BASE)

    @pytest.mark.parametrize("method", ["exact", "iterative_zero", "set_negative_to_zero"])
    def test_non_negative_input_untouched(self, weighted_operator, method):
        base = np.array([10.0, 4.0, 5.0])
        result = NonNegativityEnforcer(weighted_operator, method).enforce(base)

        assert result.method == "gls"
        np.testing.assert_allclose(result.values, [9.5, 4.25, 5.25])

    @pytest.mark.parametrize("method", ["exact", "iterative_zero", "set_negative_to_zero"])
    def test_idempotent(self, weighted_operator, method):
        enforcer = NonNegativityEnforcer(weighted_operator, method)
        once = enforcer.enforce(NEGATIVE_BASE).values
        twice = enforcer.enforce(once).values
        np.testing.assert_allclose(twice, once, atol=1e-10)

    @pytest.mark.parametrize("method", ["exact", "iterative_zero", "set_negative_to_zero"])
    def test_coherent_and_non_negative(self, grouped_structure, rng, method):
        omega = np.diag(grouped_structure.structural_weights())
        operator = ProjectionOperator(grouped_structure, omega)
        enforcer = NonNegativityEnforcer(operator, method)

        for _ in range(20):
            base = rng.normal(1.0, 3.0, size=7)
            result = enforcer.enforce(base)
            assert result.is_success
            assert np.all(result.values >= -1e-8)
            assert is_coherent(grouped_structure, result.values, tolerance=1e-9)

    def test_exact_is_optimal(self, grouped_structure, rng):
        omega = np.diag(grouped_structure.structural_weights())
        operator = ProjectionOperator(grouped_structure, omega)
        exact = NonNegativityEnforcer(operator, "exact")
        heuristic = NonNegativityEnforcer(operator, "iterative_zero")
        clipped = NonNegativityEnforcer(operator, "sntz")

        for _ in range(20):
            base = rng.normal(0.5, 3.0, size=7)
            best = weighted_loss(omega, base, exact.enforce(base).values)
            slack = 1e-7 * (1.0 + best)
            assert best <= weighted_loss(omega, base, heuristic.enforce(base).values) + slack
            assert best <= weighted_loss(omega, base, clipped.enforce(base).values) + slack

    def test_matrix_input(self, weighted_operator):
        base = np.column_stack([NEGATIVE_BASE, [10.0, 4.0, 5.0]])
        enforcer = NonNegativityEnforcer(weighted_operator, "iterative_zero")

        np.testing.assert_array_equal(
            enforcer.needs_repair(weighted_operator.apply(base)), [True, False]
        )
        result = enforcer.enforce(base)
        assert result.values.shape == (3, 2)
        np.testing.assert_allclose(result.values[:, 0], [13.0 / 3.0, 0.0, 13.0 / 3.0])
        np.testing.assert_allclose(result.values[:, 1], [9.5, 4.25, 5.25])
        assert result.status is SolverStatus.CONVERGED

    def test_precomputed_reconciled(self, weighted_operator):
        enforcer = NonNegativityEnforcer(weighted_operator, "sntz")
        reconciled = weighted_operator.apply(NEGATIVE_BASE)
        result = enforcer.enforce(NEGATIVE_BASE, reconciled)
        np.testing.assert_allclose(result.values, [5.0, 0.0, 5.0])

    def test_reconciled_shape_mismatch(self, weighted_operator):
        enforcer = NonNegativityEnforcer(weighted_operator, "sntz")
        with pytest.raises(ConfigurationError, match="does not match"):
            enforcer.enforce(NEGATIVE_BASE, np.ones((3, 2)))

    def test_everything_fixed_to_zero(self, weighted_operator):
        result = NonNegativityEnforcer(weighted_operator, "iterative_zero").enforce(
            np.array([-4.0, -1.0, -2.0])
        )
        assert result.status is SolverStatus.CONVERGED
        assert result.message == "all bottom values fixed to zero"
        np.testing.assert_array_equal(result.values, [0.0, 0.0, 0.0])

    def test_exact_iteration_limit(self, weighted_operator, monkeypatch):
        def stopped(*args, **kwargs):
            return SimpleNamespace(status=0, x=np.array([1.0, 1.0]), nit=1, message="iteration limit")

        monkeypatch.setattr(nonnegative.optimize, "lsq_linear", stopped)
        result = NonNegativityEnforcer(weighted_operator, "exact", max_iter=1).enforce(NEGATIVE_BASE)

        assert result.status is SolverStatus.ITERATION_LIMIT
        assert not result.is_success
        assert result.message == "iteration limit"
        np.testing.assert_allclose(result.values, NEGATIVE_BASE)

    def test_exact_solver_error(self, weighted_operator, monkeypatch):
        def broken(*args, **kwargs):
            raise np.linalg.LinAlgError("SVD did not converge")

        monkeypatch.setattr(nonnegative.optimize, "lsq_linear", broken)
        result = NonNegativityEnforcer(weighted_operator, "exact").enforce(NEGATIVE_BASE)
        assert result.status is SolverStatus.FAILED

    def test_invalid_settings(self, weighted_operator):
        with pytest.raises(ConfigurationError, match="Unknown QP solver"):
            NonNegativityEnforcer(weighted_operator, "exact", qp_solver="osqp")
        with pytest.raises(ConfigurationError, match="tolerance"):
            NonNegativityEnforcer(weighted_operator, tolerance=-1.0)
        with pytest.raises(ConfigurationError, match="max_iter"):
            NonNegativityEnforcer(weighted_operator, max_iter=0)
