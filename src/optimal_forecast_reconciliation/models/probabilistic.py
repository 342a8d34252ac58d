"""
Probabilistic reconciliation of sample ensembles.

The projection is factored once and applied to a whole chunk of samples as a
single ``(N, B)`` matrix product. Non-negativity repair is only run for the
samples that need it, optionally on a thread pool; results are gathered back
by sample index so the output order always matches the input order.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from ..exceptions import ConfigurationError, NumericalError, SolverStatus
from ..utils.logging_utils import PerformanceLogger
from .gls import ProjectionOperator, ReconciliationResult
from .nonnegative import NonNegativityEnforcer, NonNegativityMethod
from .sources import SampleSource

logger = logging.getLogger(__name__)

FAILURE_POLICIES = ("raise", "exclude", "fallback")


@dataclass
class EnsembleResult:
    """
    Reconciled ensemble.

    Attributes:
        samples: ``(B, N)`` array in input order. Rows that were excluded or
            never processed are NaN.
        statuses: Solver status per sample (``CANCELLED`` for abandoned ones).
        completed: True for samples that were processed.
        excluded: Indices of processed samples whose repair failed.
        cancelled: Whether the call was cancelled before finishing.
    """

    samples: np.ndarray
    statuses: List[SolverStatus]
    completed: np.ndarray
    excluded: List[int] = field(default_factory=list)
    cancelled: bool = False

    @property
    def n_samples(self) -> int:
        return self.samples.shape[0]

    @property
    def valid(self) -> np.ndarray:
        """Mask of samples that are coherent and usable."""
        mask = self.completed.copy()
        mask[self.excluded] = False
        return mask

    def valid_samples(self) -> np.ndarray:
        return self.samples[self.valid]


class ProbabilisticReconciler:
    """
    Reconcile an ensemble of incoherent samples with a shared factorization.

    Example:
        >>> sampler = ProbabilisticReconciler(operator, enforcer, n_jobs=4)
        >>> result = sampler.reconcile_source(GaussianSampleSource(base, omega, seed=1), 500)
        >>> result.samples.shape
        (500, 7)
    """

    def __init__(
        self,
        operator: ProjectionOperator,
        nonnegative: Optional[NonNegativityEnforcer] = None,
        failure_policy: str = "exclude",
        n_jobs: int = 1,
        chunk_size: int = 256
    ) -> None:
        """
        Initialize sampler.

        Args:
            operator: Factored projection shared by all samples.
            nonnegative: Optional enforcer; must use the same operator.
            failure_policy: ``raise`` on the first failed repair, ``exclude``
                the failed sample, or ``fallback`` to a cheaper strategy and
                exclude only if that fails too.
            n_jobs: Worker threads for non-negativity repair.
            chunk_size: Samples projected per batch; cancellation is checked
                between batches and between repaired samples.
        """
        if failure_policy not in FAILURE_POLICIES:
            raise ConfigurationError(
                f"Unknown failure policy '{failure_policy}'",
                context={"allowed": list(FAILURE_POLICIES)},
            )
        if n_jobs < 1:
            raise ConfigurationError(f"n_jobs must be at least 1, got {n_jobs}")
        if chunk_size < 1:
            raise ConfigurationError(f"chunk_size must be at least 1, got {chunk_size}")
        if nonnegative is not None and nonnegative.operator is not operator:
            raise ConfigurationError("Non-negativity enforcer must share the projection operator")

        self.operator = operator
        self.nonnegative = nonnegative if nonnegative is not None and nonnegative.enabled else None
        self.failure_policy = failure_policy
        self.n_jobs = int(n_jobs)
        self.chunk_size = int(chunk_size)
        self.logger = logging.getLogger(__name__)
        self.performance = PerformanceLogger(self.logger)

        self._fallback: Optional[NonNegativityEnforcer] = None
        if self.nonnegative is not None and failure_policy == "fallback":
            fallback_method = (
                NonNegativityMethod.ITERATIVE_ZERO
                if self.nonnegative.method is NonNegativityMethod.EXACT
                else NonNegativityMethod.SET_NEGATIVE_TO_ZERO
            )
            self._fallback = NonNegativityEnforcer(
                operator,
                method=fallback_method,
                tolerance=self.nonnegative.tolerance,
            )

    def _check_ensemble(self, samples: np.ndarray) -> np.ndarray:
        ensemble = np.asarray(samples, dtype=float)
        if ensemble.ndim != 2 or ensemble.shape[1] != self.operator.structure.size:
            raise ConfigurationError(
                f"Ensemble must have shape (B, {self.operator.structure.size}), got {ensemble.shape}"
            )
        return ensemble

    def _repair(self, base: np.ndarray, reconciled: np.ndarray) -> ReconciliationResult:
        result = self.nonnegative.enforce(base, reconciled)
        if not result.is_success and self._fallback is not None:
            self.logger.debug(
                f"Repair with {self.nonnegative.method.value} returned {result.status.value}; "
                f"retrying with {self._fallback.method.value}"
            )
            result = self._fallback.enforce(base, reconciled)
        return result

    def reconcile_ensemble(
        self,
        samples: np.ndarray,
        cancel_event: Optional[threading.Event] = None
    ) -> EnsembleResult:
        """
        Reconcile every sample independently, preserving order.

        Args:
            samples: ``(B, N)`` ensemble, one sample per row.
            cancel_event: Set from another thread to abandon the remaining
                samples. Samples finished before that stay valid.

        Returns:
            EnsembleResult in input order.

        Raises:
            ConfigurationError: If the ensemble shape does not match.
            NumericalError: With ``failure_policy="raise"`` when a repair fails.
        """
        ensemble = self._check_ensemble(samples)
        n_samples = ensemble.shape[0]

        output = np.full(ensemble.shape, np.nan)
        statuses = [SolverStatus.CANCELLED] * n_samples
        completed = np.zeros(n_samples, dtype=bool)
        excluded: List[int] = []
        cancelled = False

        executor = ThreadPoolExecutor(max_workers=self.n_jobs) if self.n_jobs > 1 else None
        try:
            with self.performance.timer(f"reconcile ensemble of {n_samples} samples", log_level="DEBUG"):
                for start in range(0, n_samples, self.chunk_size):
                    if cancel_event is not None and cancel_event.is_set():
                        cancelled = True
                        break

                    stop = min(start + self.chunk_size, n_samples)
                    chunk = ensemble[start:stop]
                    projected = self.operator.apply(chunk.T).T

                    if self.nonnegative is None:
                        needs_repair = np.zeros(stop - start, dtype=bool)
                    else:
                        needs_repair = self.nonnegative.needs_repair(projected.T)

                    clean = start + np.flatnonzero(~needs_repair)
                    output[clean] = projected[clean - start]
                    completed[clean] = True
                    for index in clean:
                        statuses[index] = SolverStatus.CONVERGED

                    pending = start + np.flatnonzero(needs_repair)
                    self.performance.count("repaired", len(pending))
                    results = self._repair_many(ensemble, projected, start, pending, executor, cancel_event)

                    for index in pending:
                        result = results.get(int(index))
                        if result is None:
                            cancelled = True
                            continue
                        completed[index] = True
                        statuses[index] = result.status
                        if result.is_success:
                            output[index] = result.values
                            continue
                        if self.failure_policy == "raise":
                            raise NumericalError(
                                f"Non-negativity repair failed for sample {index}",
                                context={"status": result.status.value, "message": result.message},
                            )
                        excluded.append(int(index))

                    if cancelled:
                        break
        finally:
            if executor is not None:
                executor.shutdown(wait=True, cancel_futures=True)

        if cancelled:
            self.logger.warning(
                f"Ensemble reconciliation cancelled after {int(completed.sum())} of {n_samples} samples"
            )
        if excluded:
            self.logger.warning(f"Excluded {len(excluded)} samples whose repair failed")
        self.logger.info(
            f"Reconciled {int(completed.sum()) - len(excluded)}/{n_samples} samples "
            f"({self.performance.counters.get('repaired', 0)} repaired so far)"
        )

        return EnsembleResult(
            samples=output,
            statuses=statuses,
            completed=completed,
            excluded=sorted(excluded),
            cancelled=cancelled,
        )

    def _repair_many(
        self,
        ensemble: np.ndarray,
        projected: np.ndarray,
        start: int,
        pending: np.ndarray,
        executor: Optional[ThreadPoolExecutor],
        cancel_event: Optional[threading.Event]
    ) -> Dict[int, ReconciliationResult]:
        """Repair ``pending`` samples; abandoned ones are missing from the result."""
        results: Dict[int, ReconciliationResult] = {}
        if len(pending) == 0:
            return results

        if executor is None or len(pending) == 1:
            for index in pending:
                if cancel_event is not None and cancel_event.is_set():
                    break
                results[int(index)] = self._repair(ensemble[index], projected[index - start])
            return results

        futures = {
            executor.submit(self._repair, ensemble[index], projected[index - start]): int(index)
            for index in pending
        }
        for future in as_completed(futures):
            results[futures[future]] = future.result()
            if cancel_event is not None and cancel_event.is_set():
                for other in futures:
                    other.cancel()
                for other, index in futures.items():
                    if other.done() and not other.cancelled() and index not in results:
                        results[index] = other.result()
                break
        return results

    def reconcile_source(
        self,
        source: SampleSource,
        n_samples: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> EnsembleResult:
        """Draw from ``source`` and reconcile the ensemble."""
        return self.reconcile_ensemble(source.draw(n_samples), cancel_event=cancel_event)
