"""Feasibility diagnostics for reconciled forecasts."""

from .diagnostics import (
    coherence_errors,
    coherence_score,
    diagnostics_frame,
    is_coherent,
    negativity_report,
)

__all__ = [
    "coherence_errors",
    "coherence_score",
    "diagnostics_frame",
    "is_coherent",
    "negativity_report",
]
