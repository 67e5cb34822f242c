"""
reapplyfix.series_io
====================

Loading and saving of volumetric (NIfTI) and surface-mapped (CIFTI)
time series.  Whatever the file format, data are handed to the rest of
the package as a two dimensional ``(T, S)`` array: ``T`` samples along
the first axis and ``S`` spatial units (voxels or grayordinates) along
the second.  Maps such as the temporal mean or the variance
normalisation map are stored with ``T == 1``.

The geometry needed to write results back (NIfTI affine and voxel sizes,
CIFTI brain-model axis) travels with the data in :class:`SeriesImage`.

Motion regressor tables are plain whitespace separated text and are read
with :mod:`pandas`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Optional, Tuple

import numpy as np
import pandas as pd

from .errors import PrerequisiteMissing

try:
    import nibabel as nib
except Exception:
    nib = None  # nibabel may not be available in all environments


logger = logging.getLogger(__name__)

CIFTI_SERIES_SUFFIX = '.dtseries.nii'
CIFTI_SCALAR_SUFFIX = '.dscalar.nii'


def _require_nibabel() -> None:
    if nib is None:
        raise PrerequisiteMissing("nibabel is required to read or write imaging files but is not available")


def is_cifti(path: str | Path) -> bool:
    name = str(path)
    return name.endswith(CIFTI_SERIES_SUFFIX) or name.endswith(CIFTI_SCALAR_SUFFIX)


@dataclass
class SeriesImage:
    """A time series or map together with its spatial geometry.

    Attributes
    ----------
    data : np.ndarray
        Array of shape ``(T, S)``.
    kind : str
        ``'nifti'`` or ``'cifti'``.
    tr : float | None
        Sampling interval in seconds.
    is_map : bool
        ``True`` for single-timepoint products (mean, VN map, SBRef).
    spatial_shape : tuple
        Voxel grid shape for NIfTI data, ``(S,)`` for CIFTI.
    affine : np.ndarray | None
        NIfTI voxel-to-world transform.
    zooms : tuple
        NIfTI voxel sizes of the spatial axes.
    brain_axis : Any
        CIFTI brain-model axis (``nibabel.cifti2.BrainModelAxis``).
    path : Path | None
        File the image was loaded from, if any.
    """

    data: np.ndarray
    kind: str
    tr: Optional[float] = None
    is_map: bool = False
    spatial_shape: Tuple[int, ...] = ()
    affine: Optional[np.ndarray] = None
    zooms: Tuple[float, ...] = ()
    brain_axis: Any = None
    path: Optional[Path] = None

    @property
    def n_timepoints(self) -> int:
        return int(self.data.shape[0])

    @property
    def n_units(self) -> int:
        return int(self.data.shape[1])

    def with_data(self, data: np.ndarray, is_map: Optional[bool] = None) -> 'SeriesImage':
        """Return a copy carrying ``data`` and the same geometry."""
        data = np.asarray(data)
        if data.ndim != 2 or data.shape[1] != self.n_units:
            raise ValueError(
                f"data of shape {data.shape} does not fit {self.n_units} spatial units"
            )
        if is_map is None:
            is_map = self.is_map and data.shape[0] == 1
        return replace(self, data=data, is_map=is_map, path=None)


# ----------------------------------------------------------------------
def load_series(path: str | Path) -> SeriesImage:
    """Load a NIfTI or CIFTI file as a :class:`SeriesImage`."""
    _require_nibabel()
    path = Path(path)
    if is_cifti(path):
        return _load_cifti(path)
    return _load_nifti(path)


def _load_nifti(path: Path) -> SeriesImage:
    img = nib.load(str(path))
    arr = np.asanyarray(img.get_fdata(dtype=np.float32))
    zooms = tuple(float(z) for z in img.header.get_zooms())
    if arr.ndim == 3:
        spatial_shape = arr.shape
        data = arr.reshape(1, -1)
        return SeriesImage(
            data=data, kind='nifti', tr=None, is_map=True,
            spatial_shape=spatial_shape, affine=img.affine.copy(),
            zooms=zooms[:3], path=path,
        )
    if arr.ndim != 4:
        raise PrerequisiteMissing(f"{path} is neither a 3D map nor a 4D time series")
    spatial_shape = arr.shape[:3]
    # (X, Y, Z, T) -> (T, V)
    data = arr.reshape(-1, arr.shape[3]).T
    tr = zooms[3] if len(zooms) > 3 else None
    return SeriesImage(
        data=np.ascontiguousarray(data), kind='nifti', tr=tr, is_map=False,
        spatial_shape=spatial_shape, affine=img.affine.copy(),
        zooms=zooms[:3], path=path,
    )


def _load_cifti(path: Path) -> SeriesImage:
    img = nib.Cifti2Image.from_filename(str(path))
    data = np.asanyarray(img.get_fdata(dtype=np.float32))
    row_axis = img.header.get_axis(0)
    brain_axis = img.header.get_axis(1)
    is_map = isinstance(row_axis, nib.cifti2.ScalarAxis)
    tr = None if is_map else float(row_axis.step)
    return SeriesImage(
        data=data, kind='cifti', tr=tr, is_map=is_map,
        spatial_shape=(data.shape[1],), brain_axis=brain_axis, path=path,
    )


# ----------------------------------------------------------------------
def save_series(image: SeriesImage, path: str | Path) -> Path:
    """Write ``image`` to ``path`` creating parent directories as needed."""
    _require_nibabel()
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = np.asarray(image.data, dtype=np.float32)
    if image.kind == 'cifti':
        if image.is_map:
            names = ['map'] * data.shape[0]
            row_axis = nib.cifti2.ScalarAxis(names)
        else:
            row_axis = nib.cifti2.SeriesAxis(start=0.0, step=image.tr or 1.0, size=data.shape[0])
        header = nib.cifti2.Cifti2Header.from_axes((row_axis, image.brain_axis))
        nib.Cifti2Image(data, header).to_filename(str(path))
    else:
        if image.is_map and data.shape[0] == 1:
            arr = data.reshape(image.spatial_shape)
            img = nib.Nifti1Image(arr, image.affine)
            img.header.set_zooms(image.zooms)
        else:
            arr = data.T.reshape(tuple(image.spatial_shape) + (data.shape[0],))
            img = nib.Nifti1Image(arr, image.affine)
            img.header.set_zooms(tuple(image.zooms) + (image.tr or 1.0,))
        nib.save(img, str(path))
    logger.debug('Wrote %s %s', data.shape, path)
    return path


def read_length(path: str | Path) -> int:
    """Return the number of timepoints of an image without loading its data."""
    _require_nibabel()
    path = Path(path)
    if is_cifti(path):
        return int(nib.Cifti2Image.from_filename(str(path)).shape[0])
    shape = nib.load(str(path)).shape
    return int(shape[3]) if len(shape) > 3 else 1


def read_tr(path: str | Path) -> float:
    """Return the sampling interval stored in a 4D NIfTI header (pixdim4)."""
    _require_nibabel()
    zooms = nib.load(str(path)).header.get_zooms()
    if len(zooms) < 4:
        raise PrerequisiteMissing(f"{path} has no temporal dimension")
    return float(zooms[3])


# ----------------------------------------------------------------------
def read_motion_regressors(path: str | Path) -> pd.DataFrame:
    """Read a whitespace separated regressor table (rows = timepoints)."""
    return pd.read_csv(path, sep=r'\s+', header=None, engine='python')


def write_motion_regressors(table: pd.DataFrame, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savetxt(path, table.to_numpy(dtype=float), fmt='%10.6f', delimiter='\t')
    return path


__all__ = [
    'SeriesImage',
    'is_cifti',
    'load_series',
    'save_series',
    'read_length',
    'read_tr',
    'read_motion_regressors',
    'write_motion_regressors',
]
