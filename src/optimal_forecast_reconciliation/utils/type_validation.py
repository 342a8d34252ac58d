"""Validation of the tables a reconciliation run reads from disk.

Arrays passed to the library are checked by ``LinearStructure.check_values``;
these helpers cover the pandas frames behind the command-line entry point
(aggregation matrix, base forecasts, residuals). All of them raise
:class:`ConfigurationError`.
"""

import logging
from typing import Sequence

import numpy as np
import pandas as pd

from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def validate_numeric_frame(frame: pd.DataFrame, name: str, min_rows: int = 1) -> None:
    """
    Require a frame of finite numbers.

    Args:
        frame: Table to check; the index is not inspected.
        name: Table name for error messages.
        min_rows: Minimum number of rows.

    Raises:
        ConfigurationError: If the frame has no columns, too few rows, a
            non-numeric column or a NaN or infinite entry.
    """
    if frame.shape[1] == 0:
        raise ConfigurationError(f"'{name}' has no value columns")
    if len(frame) < min_rows:
        raise ConfigurationError(f"'{name}' needs at least {min_rows} rows, got {len(frame)}")

    non_numeric = [str(column) for column in frame.columns if not pd.api.types.is_numeric_dtype(frame[column])]
    if non_numeric:
        raise ConfigurationError(
            f"'{name}' has non-numeric columns: {non_numeric[:10]}",
            context={"dtypes": [str(frame[column].dtype) for column in frame.columns[:10]]},
        )

    bad_rows = ~np.isfinite(frame.to_numpy(dtype=float)).all(axis=1)
    if bad_rows.any():
        raise ConfigurationError(
            f"'{name}' contains NaN or infinite values in {int(bad_rows.sum())} rows",
            context={"rows": [str(label) for label in frame.index[bad_rows][:10]]},
        )


def select_series(frame: pd.DataFrame, names: Sequence[str], name: str) -> pd.DataFrame:
    """
    Rows of a series-indexed frame in structure order.

    Rows for series the structure does not know are dropped with a warning.

    Args:
        frame: Table indexed by series name.
        names: Series names in the order the structure uses.
        name: Table name for error messages.

    Returns:
        Copy of ``frame`` with a string index, reordered to ``names``.

    Raises:
        ConfigurationError: If a series is listed twice or missing.
    """
    selected = frame.copy()
    selected.index = selected.index.astype(str)

    duplicated = sorted(set(selected.index[selected.index.duplicated()]))
    if duplicated:
        raise ConfigurationError(f"'{name}' lists series more than once: {duplicated[:10]}")

    present = set(selected.index)
    missing = [series for series in names if series not in present]
    if missing:
        raise ConfigurationError(
            f"'{name}' missing series: {missing[:10]}",
            context={"n_missing": len(missing)},
        )

    unknown = sorted(present - set(names))
    if unknown:
        logger.warning(f"'{name}' has rows for unknown series, ignored: {unknown[:10]}")
    return selected.loc[list(names)]
