"""
reapplyfix.concat
=================

Concatenation of runs into one series and the inverse split.

Time series products are joined along the time axis.  The
:class:`RunManifest` records, for every run, its 1-based start offset and
its length so the cleaned concatenation can be cut back into runs::

    run1: start 1,   length 300  -> samples   1..300
    run2: start 301, length 250  -> samples 301..550

Map products (temporal mean, variance normalisation map, SBRef) have no
time axis.  Merging them averages the per-run maps elementwise and yields
a single :class:`PooledMap`.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple, Union

import numpy as np

from .errors import ShapeMismatch


class Product(Enum):
    """Derived product being merged."""

    RAW = 'raw'
    DEMEANED = 'demean'
    VN_SERIES = 'vn_series'
    VN_MAP = 'vn_map'
    MEAN_MAP = 'mean'
    SBREF = 'sbref'

    @property
    def is_map(self) -> bool:
        return self in (Product.VN_MAP, Product.MEAN_MAP, Product.SBREF)


@dataclass(frozen=True)
class RunSegment:
    """Position of one run inside the concatenation (1-based, inclusive)."""

    run_id: str
    start: int
    length: int

    @property
    def stop(self) -> int:
        return self.start + self.length - 1

    @property
    def slice(self) -> slice:
        return slice(self.start - 1, self.start - 1 + self.length)

    def as_tuple(self) -> Tuple[str, int, int]:
        return (self.run_id, self.start, self.length)


@dataclass(frozen=True)
class RunManifest:
    """Ordered offset/length table of a concatenation."""

    segments: Tuple[RunSegment, ...]

    @classmethod
    def from_lengths(cls, run_ids: Sequence[str], lengths: Sequence[int]) -> 'RunManifest':
        if len(run_ids) != len(lengths):
            raise ShapeMismatch(
                f"{len(run_ids)} run identifiers but {len(lengths)} lengths"
            )
        segments = []
        start = 1
        for run_id, length in zip(run_ids, lengths):
            length = int(length)
            if length <= 0:
                raise ShapeMismatch(f"run {run_id} has no timepoints")
            segments.append(RunSegment(run_id=run_id, start=start, length=length))
            start += length
        return cls(tuple(segments))

    @property
    def run_ids(self) -> List[str]:
        return [s.run_id for s in self.segments]

    @property
    def total_length(self) -> int:
        return sum(s.length for s in self.segments)

    def __len__(self) -> int:
        return len(self.segments)

    def __iter__(self):
        return iter(self.segments)

    def as_tuples(self) -> List[Tuple[str, int, int]]:
        return [s.as_tuple() for s in self.segments]

    def check(self, n_timepoints: int) -> None:
        """Raise :class:`ShapeMismatch` unless the manifest covers ``n_timepoints``."""
        if self.total_length != n_timepoints:
            raise ShapeMismatch(
                f"manifest covers {self.total_length} timepoints but the series has {n_timepoints}"
            )

    # -- serialisation -------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_length': self.total_length,
            'runs': [
                {'run_id': s.run_id, 'start': s.start, 'length': s.length}
                for s in self.segments
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RunManifest':
        manifest = cls.from_lengths(
            [r['run_id'] for r in data['runs']],
            [r['length'] for r in data['runs']],
        )
        if 'total_length' in data:
            manifest.check(int(data['total_length']))
        return manifest

    def save(self, path: str | Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as fh:
            json.dump(self.to_dict(), fh, indent=2)
        return path

    @classmethod
    def load(cls, path: str | Path) -> 'RunManifest':
        with open(path, 'r') as fh:
            return cls.from_dict(json.load(fh))


@dataclass
class ConcatenatedSeries:
    """Runs joined along time together with their manifest."""

    data: np.ndarray
    manifest: RunManifest
    product: Product = Product.RAW


@dataclass
class PooledMap:
    """Elementwise average of per-run maps, shape ``(1, S)``."""

    data: np.ndarray
    product: Product
    run_ids: Tuple[str, ...] = ()


# ----------------------------------------------------------------------
def _check_units(arrays: Sequence[np.ndarray], run_ids: Sequence[str]) -> None:
    if not arrays:
        raise ShapeMismatch("nothing to merge: no runs given")
    if len(arrays) != len(run_ids):
        raise ShapeMismatch(f"{len(arrays)} arrays but {len(run_ids)} run identifiers")
    n_units = arrays[0].shape[1] if arrays[0].ndim == 2 else None
    for run_id, arr in zip(run_ids, arrays):
        if arr.ndim != 2 or arr.shape[1] != n_units:
            raise ShapeMismatch(
                f"run {run_id} has shape {arr.shape}; expected (T, {n_units})"
            )


def concatenate(
    series: Sequence[np.ndarray],
    run_ids: Sequence[str],
    product: Product = Product.RAW,
) -> ConcatenatedSeries:
    """Join ``(T_i, S)`` series along time in the given order."""
    arrays = [np.asarray(s) for s in series]
    _check_units(arrays, run_ids)
    manifest = RunManifest.from_lengths(run_ids, [a.shape[0] for a in arrays])
    data = np.concatenate(arrays, axis=0)
    manifest.check(data.shape[0])
    return ConcatenatedSeries(data=data, manifest=manifest, product=product)


def pool_maps(
    maps: Sequence[np.ndarray],
    run_ids: Sequence[str],
    product: Product = Product.VN_MAP,
) -> PooledMap:
    """Average single-timepoint maps across runs."""
    arrays = [np.asarray(m) for m in maps]
    _check_units(arrays, run_ids)
    for run_id, arr in zip(run_ids, arrays):
        if arr.shape[0] != 1:
            raise ShapeMismatch(f"map of run {run_id} has {arr.shape[0]} timepoints; expected 1")
    pooled = np.mean(np.stack(arrays, axis=0), axis=0)
    return PooledMap(data=pooled, product=product, run_ids=tuple(run_ids))


def merge_runs(
    arrays: Sequence[np.ndarray],
    run_ids: Sequence[str],
    product: Product,
) -> Union[ConcatenatedSeries, PooledMap]:
    """Concatenate series products or pool map products."""
    if product.is_map:
        return pool_maps(arrays, run_ids, product)
    return concatenate(arrays, run_ids, product)


def split(series: np.ndarray, manifest: RunManifest) -> List[np.ndarray]:
    """Cut a concatenated ``(T, S)`` series back into per-run segments."""
    series = np.asarray(series)
    manifest.check(series.shape[0])
    return [series[segment.slice] for segment in manifest]


__all__ = [
    'Product',
    'RunSegment',
    'RunManifest',
    'ConcatenatedSeries',
    'PooledMap',
    'concatenate',
    'pool_maps',
    'merge_runs',
    'split',
]
