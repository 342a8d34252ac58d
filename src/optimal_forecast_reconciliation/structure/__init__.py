"""Structural model: summing and zero-constraint matrices for every framework."""

from .base import LinearStructure, Representation
from .cross_temporal import CrossTemporalStructure
from .hierarchy import CrossSectionalStructure, HierarchyBuilder
from .temporal import TemporalStructure, divisors

__all__ = [
    "LinearStructure",
    "Representation",
    "CrossSectionalStructure",
    "HierarchyBuilder",
    "TemporalStructure",
    "CrossTemporalStructure",
    "divisors",
]
