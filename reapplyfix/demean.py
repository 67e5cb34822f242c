"""
reapplyfix.demean
=================

Removal of the temporal mean from a run, voxel/vertex by voxel/vertex,
and the column-wise demeaning of motion regressor tables.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np
import pandas as pd

from .errors import ShapeMismatch


def demean(series: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Remove the temporal mean of each spatial unit.

    Parameters
    ----------
    series : np.ndarray
        Array of shape ``(T, S)``.

    Returns
    -------
    demeaned : np.ndarray
        ``series - mean`` with the same shape as the input.
    mean : np.ndarray
        Temporal mean of shape ``(1, S)``.

    Raises
    ------
    ShapeMismatch
        If ``series`` is not two dimensional or has no timepoints.
    """
    series = np.asarray(series)
    if series.ndim != 2:
        raise ShapeMismatch(f"expected a (T, S) array, got shape {series.shape}")
    if series.shape[0] == 0:
        raise ShapeMismatch("cannot demean a series without timepoints")
    mean = series.mean(axis=0, keepdims=True)
    return series - mean, mean


def demean_motion_regressors(table: pd.DataFrame) -> pd.DataFrame:
    """Subtract the mean of every regressor column."""
    if table.shape[0] == 0:
        raise ShapeMismatch("motion regressor table has no rows")
    values = table.to_numpy(dtype=float)
    return pd.DataFrame(values - values.mean(axis=0, keepdims=True), columns=table.columns)


__all__ = [
    'demean',
    'demean_motion_regressors',
]
