#!/usr/bin/env python3
"""
Reconcile base forecasts read from CSV files.

Cross-sectional mode: ``--base`` has one row per series (index = series name)
and one column per horizon. Cross-temporal mode (``structure.temporal`` set in
the config): ``--base`` has one row per series and one column per temporal
position, orders descending (e.g. for m=4: k4, k2_1, k2_2, k1_1..k1_4).
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

# Add src to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from optimal_forecast_reconciliation.data.layout import CrossTemporalLayout
from optimal_forecast_reconciliation.evaluation.diagnostics import diagnostics_frame
from optimal_forecast_reconciliation.exceptions import ConfigurationError
from optimal_forecast_reconciliation.models.reconciler import ForecastReconciler
from optimal_forecast_reconciliation.structure import (
    CrossSectionalStructure,
    CrossTemporalStructure,
    LinearStructure,
    Representation,
    TemporalStructure,
)
from optimal_forecast_reconciliation.utils.config import (
    load_config,
    setup_logging,
    spawn_generators,
)
from optimal_forecast_reconciliation.utils.type_validation import (
    select_series,
    validate_numeric_frame,
)


def build_structure(structure_path: Path, config: dict) -> LinearStructure:
    """Aggregation-matrix CSV (rows upper series, columns bottom series) to a structure."""
    frame = pd.read_csv(structure_path, index_col=0)
    validate_numeric_frame(frame, "structure")

    # Final representation is chosen by the reconciler from the config
    cross_sectional = CrossSectionalStructure.from_frame(frame, Representation.ZERO_CONSTRAINT)
    temporal_config = (config.get("structure") or {}).get("temporal")
    if not temporal_config:
        return cross_sectional

    orders = temporal_config.get("orders")
    temporal = TemporalStructure(
        temporal_config["max_frequency"],
        Representation.ZERO_CONSTRAINT,
        orders=tuple(orders) if orders else None,
    )
    return CrossTemporalStructure(cross_sectional, temporal, Representation.ZERO_CONSTRAINT)


def series_names(structure: LinearStructure) -> list:
    if isinstance(structure, CrossTemporalStructure):
        return structure.cross_sectional.series_names
    return structure.series_names


def read_base(base_path: Path, structure: LinearStructure) -> pd.DataFrame:
    """Base forecasts reordered to the structure's series order."""
    frame = pd.read_csv(base_path, index_col=0)
    validate_numeric_frame(frame, "base")
    frame = select_series(frame, series_names(structure), "base")

    if isinstance(structure, CrossTemporalStructure) and frame.shape[1] != structure.kt:
        raise ConfigurationError(
            f"Cross-temporal base needs {structure.kt} columns per series, got {frame.shape[1]}"
        )
    return frame


def to_vectors(frame: pd.DataFrame, structure: LinearStructure) -> np.ndarray:
    """Base frame to solver layout: ``(N, H)`` or a flat ``(N,)`` cross-temporal vector."""
    values = frame.to_numpy(dtype=float)
    if isinstance(structure, CrossTemporalStructure):
        return CrossTemporalLayout(structure).from_grid(values)
    return values


def from_vectors(values: np.ndarray, frame: pd.DataFrame, structure: LinearStructure) -> pd.DataFrame:
    if isinstance(structure, CrossTemporalStructure):
        values = CrossTemporalLayout(structure).to_grid(values)
    return pd.DataFrame(values, index=frame.index, columns=frame.columns)


def samples_frame(samples: np.ndarray, structure: LinearStructure) -> pd.DataFrame:
    """Reconciled ensemble with one column per series, or long format when cross-temporal."""
    if isinstance(structure, CrossTemporalStructure):
        return CrossTemporalLayout(structure).to_frame(samples)
    frame = pd.DataFrame(samples, columns=structure.series_names)
    frame.insert(0, "sample", np.arange(samples.shape[0]))
    return frame


def read_residuals(residuals_path: Optional[Path], structure: LinearStructure) -> Optional[np.ndarray]:
    """Residual CSV (rows time, columns in solver order) or None."""
    if residuals_path is None:
        return None
    frame = pd.read_csv(residuals_path)
    validate_numeric_frame(frame, "residuals")
    if frame.shape[1] != structure.size:
        raise ConfigurationError(
            f"Residuals have {frame.shape[1]} columns, structure expects {structure.size}"
        )
    return frame.to_numpy(dtype=float)


def main():
    """Main reconciliation pipeline."""
    parser = argparse.ArgumentParser(
        description="Reconcile base forecasts with optimal (GLS) forecast reconciliation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Structural weights, no residuals needed
  python scripts/reconcile.py --structure agg.csv --base base.csv --output reconciled.csv

  # Shrinkage covariance from residuals, plus 1000 reconciled Gaussian samples
  python scripts/reconcile.py --structure agg.csv --base base.csv --residuals res.csv \\
      --samples 1000 --samples-output samples.csv
        """,
    )

    parser.add_argument(
        "--config",
        type=str,
        default="configs/default.yaml",
        help="Path to configuration file (default: configs/default.yaml)",
    )
    parser.add_argument("--structure", type=str, required=True, help="Aggregation matrix CSV")
    parser.add_argument("--base", type=str, required=True, help="Base forecasts CSV")
    parser.add_argument(
        "--residuals",
        type=str,
        default=None,
        help="Residuals CSV; when omitted the configured fallback chain must end in a strategy "
        "that needs none (identity or structural)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default="outputs/reconciled.csv",
        help="Output path for reconciled forecasts (default: outputs/reconciled.csv)",
    )
    parser.add_argument("--samples", type=int, default=0, help="Gaussian samples per forecast column")
    parser.add_argument(
        "--samples-output",
        type=str,
        default="outputs/reconciled_samples.csv",
        help="Output path for reconciled samples (long format)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: from config)",
    )

    args = parser.parse_args()

    try:
        config = load_config(args.config)
        logging_config = config.get("logging", {})
        setup_logging(
            level=args.log_level or logging_config.get("level", "INFO"),
            log_file=logging_config.get("file"),
            format_string=logging_config.get("format"),
        )
        logger = logging.getLogger(__name__)
        seed = config.get("reproducibility", {}).get("seed", 42)

        structure = build_structure(Path(args.structure), config)
        base_frame = read_base(Path(args.base), structure)
        residuals = read_residuals(Path(args.residuals) if args.residuals else None, structure)

        reconciler = ForecastReconciler.from_config(structure, config).fit(residuals)
        base = to_vectors(base_frame, reconciler.structure)
        result = reconciler.reconcile(base)
        if not result.is_success:
            raise RuntimeError(f"Reconciliation did not converge: {result.status.value} {result.message}")

        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        from_vectors(result.values, base_frame, reconciler.structure).to_csv(output_path)
        logger.info(f"Reconciled forecasts saved to {output_path}")

        print("\nDiagnostics:")
        print(diagnostics_frame(reconciler.structure, result.values).to_string(index=False))

        if args.samples > 0:
            columns = base[:, None] if base.ndim == 1 else base
            generators = spawn_generators(seed, columns.shape[1])
            frames = []
            for column, generator in enumerate(generators):
                source = reconciler.gaussian_source(columns[:, column], seed=generator)
                ensemble = reconciler.reconcile_source(source, args.samples)
                frame = samples_frame(ensemble.samples, reconciler.structure)
                frame.insert(1, "column", column)
                frames.append(frame)

            samples_path = Path(args.samples_output)
            samples_path.parent.mkdir(parents=True, exist_ok=True)
            pd.concat(frames, ignore_index=True).to_csv(samples_path, index=False)
            logger.info(f"Reconciled samples saved to {samples_path}")

        reconciler.performance.log_performance_summary()
        logger.info("Reconciliation completed successfully!")

    except Exception as e:
        logging.getLogger(__name__).error(f"Reconciliation failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
