"""Pytest configuration and fixtures for testing."""

import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict

import numpy as np
import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from optimal_forecast_reconciliation.structure import (  # noqa: E402
    CrossSectionalStructure,
    CrossTemporalStructure,
    Representation,
    TemporalStructure,
)


@pytest.fixture
def simple_structure() -> CrossSectionalStructure:
    """Total = A + B."""
    return CrossSectionalStructure(
        aggregation=np.array([[1.0, 1.0]]),
        representation=Representation.ZERO_CONSTRAINT,
        series_names=["Total", "A", "B"],
    )


@pytest.fixture
def grouped_structure() -> CrossSectionalStructure:
    """Total -> (A, B), A -> (AA, AB), B -> (BA, BB); 3 upper, 4 bottom series."""
    return CrossSectionalStructure.from_parent_children(
        {"Total": ["A", "B"], "A": ["AA", "AB"], "B": ["BA", "BB"]},
        Representation.ZERO_CONSTRAINT,
    )


@pytest.fixture
def temporal_structure() -> TemporalStructure:
    """Quarterly values aggregated to half-years and years (orders 4, 2, 1)."""
    return TemporalStructure(4, Representation.ZERO_CONSTRAINT)


@pytest.fixture
def cross_temporal_structure(simple_structure, temporal_structure) -> CrossTemporalStructure:
    """Total = A + B at orders 4, 2, 1: 3 series x 7 temporal positions."""
    return CrossTemporalStructure(
        simple_structure,
        temporal_structure,
        Representation.ZERO_CONSTRAINT,
    )


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(42)


@pytest.fixture
def grouped_residuals(grouped_structure, rng) -> np.ndarray:
    """60 rows of correlated residuals for the grouped hierarchy (upper first)."""
    n_obs = 60
    mixing = np.array([
        [1.0, 0.3, 0.0, 0.0],
        [0.0, 1.0, 0.2, 0.0],
        [0.0, 0.0, 1.0, 0.4],
        [0.0, 0.0, 0.0, 1.0],
    ])
    bottom = rng.normal(0.0, 1.0, size=(n_obs, 4)) @ mixing
    upper = bottom @ grouped_structure.aggregation.toarray().T
    upper += rng.normal(0.0, 0.5, size=upper.shape)
    return np.hstack([upper, bottom])


@pytest.fixture
def sample_config() -> Dict[str, Any]:
    """A validated-shape configuration for testing."""
    return {
        "structure": {
            "representation": "auto",
            "temporal": None,
        },
        "reconciliation": {
            "covariance": "shrink",
            "fallback": ["diagonal", "structural"],
            "block_diagonal": False,
            "allow_pseudo_inverse": False,
            "rcond": 1e-12,
        },
        "nonnegativity": {
            "enabled": True,
            "method": "iterative_zero",
            "tolerance": 1e-8,
            "max_iter": 1000,
            "qp_solver": "bvls",
        },
        "probabilistic": {
            "n_samples": 50,
            "n_jobs": 1,
            "chunk_size": 16,
            "failure_policy": "exclude",
        },
        "logging": {
            "level": "INFO",
            "file": None,
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        },
        "reproducibility": {
            "seed": 42,
        },
    }


@pytest.fixture
def temp_directory():
    """Create a temporary directory for testing."""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    shutil.rmtree(temp_dir)
