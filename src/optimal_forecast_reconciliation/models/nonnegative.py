"""
Non-negativity enforcement for reconciled forecasts.

Every strategy keeps the result exactly coherent by working on the bottom
vector and rebuilding the full vector as ``S @ b``. Since ``S`` has only
non-negative coefficients, ``b >= 0`` implies every entry is non-negative.
"""

import logging
import warnings
from enum import Enum
from typing import Callable, Dict, List, Union

import numpy as np
from scipy import optimize

from ..exceptions import ConfigurationError, FeasibilityWarning, SolverStatus
from .gls import ProjectionOperator, ReconciliationResult

logger = logging.getLogger(__name__)

# scipy.optimize.lsq_linear termination codes
_LSQ_STATUS = {
    -1: SolverStatus.FAILED,
    0: SolverStatus.ITERATION_LIMIT,
    1: SolverStatus.CONVERGED,
    2: SolverStatus.CONVERGED,
    3: SolverStatus.CONVERGED,
}

QP_SOLVERS = ("bvls", "trf")


class NonNegativityMethod(Enum):
    """Available non-negativity strategies."""

    NONE = "none"
    EXACT = "exact"
    ITERATIVE_ZERO = "iterative_zero"
    SET_NEGATIVE_TO_ZERO = "set_negative_to_zero"

    @classmethod
    def from_name(cls, name: Union[str, "NonNegativityMethod", None]) -> "NonNegativityMethod":
        if isinstance(name, cls):
            return name
        if name is None:
            return cls.NONE
        aliases = {"sntz": cls.SET_NEGATIVE_TO_ZERO, "heuristic": cls.ITERATIVE_ZERO}
        key = str(name).lower()
        if key in aliases:
            return aliases[key]
        try:
            return cls(key)
        except ValueError:
            raise ConfigurationError(
                f"Unknown non-negativity method '{name}'",
                context={"allowed": [member.value for member in cls]},
            ) from None


class NonNegativityEnforcer:
    """
    Make a reconciled forecast entrywise non-negative while keeping it coherent.

    Strategies:
        - ``exact``: bounded least squares in bottom space,
          ``min ||W (S b - y)||^2 s.t. b >= 0`` with ``W' W = Omega^{-1}``,
          solved by ``scipy.optimize.lsq_linear``.
        - ``iterative_zero``: fix negative bottom values to zero and re-solve
          GLS over the remaining bottom values until none is negative.
        - ``set_negative_to_zero``: clip the bottom values once and rebuild.

    A result that is already non-negative is returned unchanged by all of them.

    The two heuristics differ once a value is fixed. For ``Total = A + B`` with
    base ``(3, -2, 5)`` and structural weights, ``iterative_zero`` re-solves
    over ``B`` and gives ``Total = B = 13/3``, the same as ``exact``.
    ``set_negative_to_zero`` keeps the GLS value of ``B`` and gives
    ``Total = B = 5``.
    """

    def __init__(
        self,
        operator: ProjectionOperator,
        method: Union[str, NonNegativityMethod] = NonNegativityMethod.ITERATIVE_ZERO,
        tolerance: float = 1e-8,
        max_iter: int = 1000,
        qp_solver: str = "bvls"
    ) -> None:
        """
        Initialize enforcer.

        Args:
            operator: Factored projection shared with the GLS step.
            method: Strategy name or enum member.
            tolerance: Values above ``-tolerance`` count as non-negative.
            max_iter: Iteration cap for the exact solver.
            qp_solver: ``"bvls"`` (active set) or ``"trf"`` (interior reflective).

        Raises:
            ConfigurationError: On an unknown method or solver, a negative
                tolerance or a non-positive iteration cap.
        """
        self.operator = operator
        self.structure = operator.structure
        self.method = NonNegativityMethod.from_name(method)
        if tolerance < 0:
            raise ConfigurationError(f"tolerance must be non-negative, got {tolerance}")
        if max_iter < 1:
            raise ConfigurationError(f"max_iter must be positive, got {max_iter}")
        if qp_solver not in QP_SOLVERS:
            raise ConfigurationError(
                f"Unknown QP solver '{qp_solver}'",
                context={"allowed": list(QP_SOLVERS)},
            )
        self.tolerance = tolerance
        self.max_iter = int(max_iter)
        self.qp_solver = qp_solver
        self.logger = logging.getLogger(__name__)

        self._handlers: Dict[NonNegativityMethod, Callable[[np.ndarray, np.ndarray], ReconciliationResult]] = {
            NonNegativityMethod.EXACT: self._exact,
            NonNegativityMethod.ITERATIVE_ZERO: self._iterative_zero,
            NonNegativityMethod.SET_NEGATIVE_TO_ZERO: self._set_negative_to_zero,
        }

    @property
    def enabled(self) -> bool:
        return self.method is not NonNegativityMethod.NONE

    def needs_repair(self, reconciled: np.ndarray) -> np.ndarray:
        """Boolean per column (or scalar for a vector): any entry below ``-tolerance``."""
        return np.any(np.asarray(reconciled) < -self.tolerance, axis=0)

    def enforce(self, base: np.ndarray, reconciled: np.ndarray = None) -> ReconciliationResult:
        """
        Enforce non-negativity on one vector or on each column of an ``(N, H)`` matrix.

        Args:
            base: Base (incoherent) forecasts.
            reconciled: Unconstrained GLS solution for ``base``; recomputed
                when omitted.

        Returns:
            ReconciliationResult. For a matrix the status is the first
            non-converged column status, iterations the maximum over columns.
        """
        values = self.structure.check_values(base, "base forecasts")
        if reconciled is None:
            reconciled = self.operator.apply(values)
        else:
            reconciled = self.structure.check_values(reconciled, "reconciled forecasts")
            if reconciled.shape != values.shape:
                raise ConfigurationError(
                    f"Reconciled shape {reconciled.shape} does not match base shape {values.shape}"
                )

        if values.ndim == 1:
            return self._enforce_vector(values, reconciled)

        results = [
            self._enforce_vector(values[:, column], reconciled[:, column])
            for column in range(values.shape[1])
        ]
        failed = [r for r in results if not r.is_success]
        status = failed[0].status if failed else SolverStatus.CONVERGED
        messages: List[str] = [
            f"column {i}: {r.message}" for i, r in enumerate(results) if r.message
        ]
        return ReconciliationResult(
            values=np.column_stack([r.values for r in results]),
            status=status,
            method=self.method.value if self.enabled else "gls",
            iterations=max(r.iterations for r in results),
            message="; ".join(messages),
        )

    def _enforce_vector(self, base: np.ndarray, reconciled: np.ndarray) -> ReconciliationResult:
        if not self.enabled or not self.needs_repair(reconciled):
            return ReconciliationResult(values=reconciled, status=SolverStatus.CONVERGED, method="gls")
        return self._handlers[self.method](base, reconciled)

    def _rebuild(self, bottom: np.ndarray) -> np.ndarray:
        return self.structure.aggregate(np.maximum(bottom, 0.0))

    def _exact(self, base: np.ndarray, reconciled: np.ndarray) -> ReconciliationResult:
        design = self.operator.whiten(self.structure.summing_matrix.toarray())
        target = self.operator.whiten(base)

        options = {"lsq_solver": "exact"} if self.qp_solver == "trf" else {}
        try:
            solution = optimize.lsq_linear(
                design,
                target,
                bounds=(0.0, np.inf),
                method=self.qp_solver,
                max_iter=self.max_iter,
                **options,
            )
        except (np.linalg.LinAlgError, ValueError) as e:
            self.logger.warning(f"Exact non-negative solve failed: {e}")
            return ReconciliationResult(
                values=reconciled,
                status=SolverStatus.FAILED,
                method=NonNegativityMethod.EXACT.value,
                message=str(e),
            )

        status = _LSQ_STATUS.get(solution.status, SolverStatus.FAILED)
        iterations = int(getattr(solution, "nit", 0))
        if not status.is_success:
            self.logger.warning(
                f"Exact non-negative solve stopped with status {status.value} "
                f"after {iterations} iterations"
            )
            return ReconciliationResult(
                values=reconciled,
                status=status,
                method=NonNegativityMethod.EXACT.value,
                iterations=iterations,
                message=str(solution.message),
            )

        self.logger.debug(f"Exact non-negative solve converged in {iterations} iterations")
        return ReconciliationResult(
            values=self._rebuild(solution.x),
            status=SolverStatus.CONVERGED,
            method=NonNegativityMethod.EXACT.value,
            iterations=iterations,
        )

    def _iterative_zero(self, base: np.ndarray, reconciled: np.ndarray) -> ReconciliationResult:
        bottom = reconciled[self.structure.bottom_index].copy()
        free = np.ones(self.structure.n_free, dtype=bool)
        iterations = 0

        while True:
            negative = free & (bottom < -self.tolerance)
            if not negative.any():
                break
            free &= ~negative
            iterations += 1
            self.logger.debug(
                f"Iteration {iterations}: fixed {int(negative.sum())} bottom values, "
                f"{int(free.sum())} free"
            )
            if not free.any():
                bottom = np.zeros(self.structure.n_free)
                break
            bottom = self.operator.restricted(base, free)

        values = self._rebuild(bottom)
        if np.any(values < -self.tolerance):
            message = "all bottom values fixed to zero and negative values remain"
            warnings.warn(message, FeasibilityWarning, stacklevel=3)
            self.logger.warning(f"Non-negativity infeasible: {message}")
            return ReconciliationResult(
                values=values,
                status=SolverStatus.INFEASIBLE,
                method=NonNegativityMethod.ITERATIVE_ZERO.value,
                iterations=iterations,
                message=message,
            )

        message = "" if free.any() else "all bottom values fixed to zero"
        return ReconciliationResult(
            values=values,
            status=SolverStatus.CONVERGED,
            method=NonNegativityMethod.ITERATIVE_ZERO.value,
            iterations=iterations,
            message=message,
        )

    def _set_negative_to_zero(self, base: np.ndarray, reconciled: np.ndarray) -> ReconciliationResult:
        bottom = reconciled[self.structure.bottom_index]
        return ReconciliationResult(
            values=self._rebuild(bottom),
            status=SolverStatus.CONVERGED,
            method=NonNegativityMethod.SET_NEGATIVE_TO_ZERO.value,
            iterations=1,
        )
