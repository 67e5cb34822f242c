"""
reapplyfix.rescale
==================

Arithmetic around the cleanup step.

Before cleanup each run has been demeaned and divided by its own
variance normalisation (VN) map.  The concatenated VN series is then
multiplied by the pooled VN map (the average over runs) so the cleanup
sees data on a physically meaningful scale:
:func:`restore_pooled_scale`.

After cleanup the pooling is undone per run:
:func:`rescale_segment` divides the pooled VN map back out, multiplies the
run's own VN map back in and adds the run's own mean.
"""

from __future__ import annotations

import numpy as np

from .errors import ShapeMismatch


def _check_map(name: str, values: np.ndarray, n_units: int) -> np.ndarray:
    values = np.asarray(values)
    if values.ndim == 1:
        values = values[np.newaxis, :]
    if values.shape != (1, n_units):
        raise ShapeMismatch(f"{name} has shape {values.shape}; expected (1, {n_units})")
    return values


def safe_divide(numerator: np.ndarray, denominator: np.ndarray) -> np.ndarray:
    """Elementwise division yielding zero wherever the denominator is zero."""
    numerator = np.asarray(numerator, dtype=float)
    denominator = np.broadcast_to(np.asarray(denominator, dtype=float), numerator.shape)
    out = np.zeros_like(numerator)
    np.divide(numerator, denominator, out=out, where=denominator != 0)
    return out


def restore_pooled_scale(vn_series: np.ndarray, pooled_vn: np.ndarray) -> np.ndarray:
    """Multiply a variance normalised series by the pooled VN map."""
    vn_series = np.asarray(vn_series)
    pooled_vn = _check_map('pooled VN map', pooled_vn, vn_series.shape[1])
    return vn_series * pooled_vn


def rescale_segment(
    segment: np.ndarray,
    run_vn: np.ndarray,
    pooled_vn: np.ndarray,
    run_mean: np.ndarray,
) -> np.ndarray:
    """Return ``((segment / pooled_vn) * run_vn) + run_mean``.

    Parameters
    ----------
    segment : np.ndarray
        Cleaned samples of one run, shape ``(T, S)``.
    run_vn : np.ndarray
        The run's own VN map, shape ``(1, S)``.
    pooled_vn : np.ndarray
        The pooled VN map used by :func:`restore_pooled_scale`.
    run_mean : np.ndarray
        The run's temporal mean, shape ``(1, S)``.
    """
    segment = np.asarray(segment)
    n_units = segment.shape[1]
    run_vn = _check_map('run VN map', run_vn, n_units)
    pooled_vn = _check_map('pooled VN map', pooled_vn, n_units)
    run_mean = _check_map('run mean map', run_mean, n_units)
    return safe_divide(segment, pooled_vn) * run_vn + run_mean


__all__ = [
    'safe_divide',
    'restore_pooled_scale',
    'rescale_segment',
]
