"""
Coherence and non-negativity diagnostics for reconciled forecasts.

These only verify feasibility of a result; they do not measure accuracy.
"""

import logging
from typing import Any, Dict

import numpy as np
import pandas as pd

from ..structure import LinearStructure

logger = logging.getLogger(__name__)


def coherence_errors(structure: LinearStructure, values: np.ndarray) -> Dict[str, float]:
    """
    Maximum absolute constraint violation per constraint family.

    Args:
        structure: Structure whose constraint families are checked.
        values: Vector ``(N,)`` or matrix ``(N, H)``.

    Returns:
        ``{family name: max |M @ values|}``.
    """
    array = structure.check_values(values)
    return {
        name: float(np.max(np.abs(matrix @ array))) if matrix.shape[0] else 0.0
        for name, matrix in structure.constraint_families().items()
    }


def is_coherent(
    structure: LinearStructure,
    values: np.ndarray,
    tolerance: float = 1e-6
) -> bool:
    """Whether every constraint family holds to ``tolerance`` relative to the value scale."""
    array = structure.check_values(values)
    scale = max(1.0, float(np.max(np.abs(array)))) if array.size else 1.0
    return all(error <= tolerance * scale for error in coherence_errors(structure, array).values())


def coherence_score(structure: LinearStructure, values: np.ndarray) -> float:
    """
    Coherence score between 0 and 1 (1 = perfectly coherent).

    One minus the mean relative gap between each aggregated value and the
    aggregate rebuilt from the bottom values.
    """
    array = structure.check_values(values)
    bottom = array[structure.bottom_index]
    actual = array[structure.upper_index]
    if actual.size == 0:
        return 1.0

    expected = np.asarray(structure.aggregation_matrix @ bottom)
    relative_errors = np.abs(expected - actual) / (np.abs(actual) + 1e-8)
    return float(np.clip(1.0 - np.mean(relative_errors), 0.0, 1.0))


def negativity_report(values: np.ndarray, tolerance: float = 0.0) -> Dict[str, Any]:
    """
    Summary of entries below ``-tolerance``.

    Returns:
        Dictionary with ``count``, ``fraction``, ``min_value`` and the first
        ten flat ``positions``.
    """
    array = np.asarray(values, dtype=float)
    negative = np.flatnonzero(array.ravel() < -tolerance)
    return {
        "count": int(len(negative)),
        "fraction": float(len(negative) / array.size) if array.size else 0.0,
        "min_value": float(np.min(array)) if array.size else 0.0,
        "positions": negative[:10].tolist(),
    }


def diagnostics_frame(structure: LinearStructure, values: np.ndarray) -> pd.DataFrame:
    """One row per constraint family with its maximum violation, plus a coherence score row."""
    errors = coherence_errors(structure, values)
    frame = pd.DataFrame(
        {"check": list(errors), "value": list(errors.values())}
    )
    summary = pd.DataFrame(
        {"check": ["coherence_score", "negative_count"],
         "value": [coherence_score(structure, values), negativity_report(values)["count"]]}
    )
    return pd.concat([frame, summary], ignore_index=True)
