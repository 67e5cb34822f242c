"""Synthetic HCP style study folders for the pipeline tests."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

import numpy as np
import pytest

VOXELS = (2, 2, 2)
VERTICES = 5
TR = 0.8


def write_nifti(path: Path, data: np.ndarray, tr: float = TR) -> Path:
    """Write ``(T, S)`` data (or a ``(1, S)`` map as 3D) on the test grid."""
    import nibabel as nib

    data = np.asarray(data, dtype=np.float32)
    if data.shape[0] == 1:
        arr = data.reshape(VOXELS)
        img = nib.Nifti1Image(arr, np.eye(4))
        img.header.set_zooms((2.0, 2.0, 2.0))
    else:
        arr = data.T.reshape(VOXELS + (data.shape[0],))
        img = nib.Nifti1Image(arr, np.eye(4))
        img.header.set_zooms((2.0, 2.0, 2.0, tr))
    path.parent.mkdir(parents=True, exist_ok=True)
    nib.save(img, str(path))
    return path


def write_cifti(path: Path, data: np.ndarray, tr: float = TR) -> Path:
    import nibabel as nib

    data = np.asarray(data, dtype=np.float32)
    brain = nib.cifti2.BrainModelAxis.from_mask(np.ones(data.shape[1], dtype=bool), name='CortexLeft')
    series = nib.cifti2.SeriesAxis(start=0.0, step=tr, size=data.shape[0])
    header = nib.cifti2.Cifti2Header.from_axes((series, brain))
    path.parent.mkdir(parents=True, exist_ok=True)
    nib.Cifti2Image(data, header).to_filename(str(path))
    return path


def _series(rng: np.random.Generator, n_timepoints: int, n_units: int, offset: float) -> np.ndarray:
    trend = np.linspace(0.0, 3.0, n_timepoints)[:, None]
    noise = rng.normal(scale=2.0, size=(n_timepoints, n_units))
    return (offset + trend + noise).astype(np.float32)


@pytest.fixture
def study_factory(tmp_path: Path):
    """Return a function creating a two-run study below ``tmp_path``.

    The returned dictionary holds the raw arrays that were written, keyed
    by ``(run, space)``.
    """

    def build(
        runs: Optional[Dict[str, int]] = None,
        concat: str = 'concat',
        hp: str = '0',
        component_list: Optional[str] = 'HandNoise.txt',
        motion: bool = True,
        subject: str = '100',
    ) -> Dict:
        runs = runs or {'run1': 12, 'run2': 10}
        rng = np.random.default_rng(42)
        results = tmp_path / subject / 'MNINonLinear' / 'Results'
        raw = {}
        n_voxels = int(np.prod(VOXELS))
        for i, (name, length) in enumerate(runs.items()):
            run_dir = results / name
            volume = _series(rng, length, n_voxels, offset=100.0 + 10 * i)
            cifti = _series(rng, length, VERTICES, offset=50.0 + 5 * i)
            write_nifti(run_dir / f'{name}.nii.gz', volume)
            write_cifti(run_dir / f'{name}_Atlas.dtseries.nii', cifti)
            sbref = np.full((1, n_voxels), 200.0 + i, dtype=np.float32)
            sbref[0, 0] = 0.0
            write_nifti(run_dir / f'{name}_SBRef.nii.gz', sbref)
            if motion:
                table = rng.normal(size=(length, 6)) + 1.5
                np.savetxt(run_dir / 'Movement_Regressors.txt', table, fmt='%10.6f')
            raw[(name, 'volume')] = volume
            raw[(name, 'cifti')] = cifti
        ica_dir = results / concat / f'{concat}_hp{hp}.ica'
        ica_dir.mkdir(parents=True)
        if component_list is not None:
            (ica_dir / component_list).write_text('[1, 3]\n')
        return {'root': tmp_path, 'subject': subject, 'results': results,
                'runs': list(runs), 'concat': concat, 'raw': raw}

    return build
