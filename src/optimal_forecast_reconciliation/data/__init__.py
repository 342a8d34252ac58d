"""Residual containers and layout conversions."""

from .layout import CrossTemporalLayout
from .residuals import ResidualArena

__all__ = [
    "CrossTemporalLayout",
    "ResidualArena",
]
