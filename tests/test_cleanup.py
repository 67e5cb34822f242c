"""Tests for the cleanup invocation."""

from __future__ import annotations

import shutil
from pathlib import Path

import numpy as np
import pytest

from reapplyfix.cleanup import (
    CleanupBackend,
    CleanupInvoker,
    CleanupOptions,
    CompiledCleanup,
    InterpretedCleanup,
    cleanup_signature,
    make_cleanup_backend,
    select_component_list,
)
from reapplyfix.config import RunMode, ToolEnvironment
from reapplyfix.errors import ExternalToolFailure, PrerequisiteMissing, ShapeMismatch
from reapplyfix.layout import ScanFiles
from reapplyfix.series_io import load_series

from conftest import write_cifti, write_nifti


def test_fifth_argument_only_when_volume_is_skipped() -> None:
    with_volume = CleanupOptions(motion_regression=True).arguments('HandNoise.txt')
    assert with_volume == ["'HandNoise.txt'", '0', '1', '-1']
    without_volume = CleanupOptions(clean_volume=False).arguments('.fix')
    assert without_volume == ["'.fix'", '0', '0', '-1', '0']


def test_component_list_prefers_hand_classification(tmp_path: Path) -> None:
    with pytest.raises(PrerequisiteMissing):
        select_component_list(tmp_path)
    (tmp_path / '.fix').write_text('[1]\n')
    assert select_component_list(tmp_path).name == '.fix'
    (tmp_path / 'HandNoise.txt').write_text('[2]\n')
    assert select_component_list(tmp_path).name == 'HandNoise.txt'


def test_backend_selection() -> None:
    env = ToolEnvironment(hcp_pipe_dir=Path('/opt/hcp'), matlab_compiler_runtime='/opt/mcr')
    compiled = make_cleanup_backend(RunMode.COMPILED, env)
    assert isinstance(compiled, CompiledCleanup)
    cmd = compiled.command('HandNoise.txt', CleanupOptions())
    assert cmd[0] == '/opt/hcp/ICAFIX/scripts/Compiled_fix_3_clean/run_fix_3_clean.sh'
    assert cmd[1:] == ['/opt/mcr', "'HandNoise.txt'", '0', '0', '-1']
    octave = make_cleanup_backend(RunMode.OCTAVE, env)
    assert isinstance(octave, InterpretedCleanup) and octave.program == 'octave-cli'
    assert octave.script('.fix', CleanupOptions(clean_volume=False)).endswith(
        "fix_3_clean('.fix',0,0,-1,0);"
    )


class CopyCleanup(CleanupBackend):
    """Stand-in for fix_3_clean that returns its inputs unchanged."""

    name = 'copy'

    def __init__(self, truncate: bool = False, produce: bool = True) -> None:
        self.truncate = truncate
        self.produce = produce
        self.calls = []

    def clean(self, ica_dir: Path, component_list: str, options: CleanupOptions) -> None:
        self.calls.append((component_list, options))
        if not self.produce:
            return
        if self.truncate:
            write_cifti(ica_dir / 'Atlas_clean.dtseries.nii', np.zeros((2, 3)))
        else:
            shutil.copy(ica_dir / 'Atlas.dtseries.nii', ica_dir / 'Atlas_clean.dtseries.nii')
        if options.clean_volume:
            shutil.copy(ica_dir / 'filtered_func_data.nii.gz', ica_dir / 'filtered_func_data_clean.nii.gz')


@pytest.fixture
def concat(tmp_path: Path) -> ScanFiles:
    pytest.importorskip('nibabel')
    scan = ScanFiles(directory=tmp_path / 'concat', name='concat', reg_string='', hp_label='2000')
    write_nifti(scan.path('hp', 'volume'), np.ones((6, 8)))
    write_cifti(scan.path('hp', 'cifti'), np.ones((6, 3)))
    scan.ica_dir.mkdir(parents=True)
    return scan


def _inputs(scan: ScanFiles) -> dict:
    return {space: load_series(scan.path('hp', space)) for space in ('volume', 'cifti')}


def test_invoker_returns_outputs(concat: ScanFiles) -> None:
    (concat.ica_dir / 'HandNoise.txt').write_text('[1]\n')
    backend = CopyCleanup()
    outputs = CleanupInvoker(backend).invoke(concat.ica_dir, _inputs(concat), CleanupOptions())
    assert backend.calls[0][0] == 'HandNoise.txt'
    assert outputs.cifti.data.shape == (6, 3)
    assert outputs.volume.data.shape == (6, 8)
    assert (concat.ica_dir / 'filtered_func_data.nii.gz').is_symlink()
    # collected outputs are removed from the ICA directory
    assert not (concat.ica_dir / 'Atlas_clean.dtseries.nii').exists()
    assert not concat.path('clean', 'cifti').exists()


def test_invoker_writes_inputs_without_file(concat: ScanFiles) -> None:
    (concat.ica_dir / '.fix').write_text('[1]\n')
    inputs = {space: image.with_data(image.data * 2.0) for space, image in _inputs(concat).items()}
    outputs = CleanupInvoker(CopyCleanup()).invoke(concat.ica_dir, inputs, CleanupOptions())
    assert not (concat.ica_dir / 'Atlas.dtseries.nii').is_symlink()
    np.testing.assert_allclose(outputs.cifti.data, 2.0)


def test_invoker_without_volume(concat: ScanFiles) -> None:
    (concat.ica_dir / '.fix').write_text('[1]\n')
    outputs = CleanupInvoker(CopyCleanup()).invoke(
        concat.ica_dir, _inputs(concat), CleanupOptions(clean_volume=False)
    )
    assert outputs.volume is None


def test_invoker_discards_earlier_outputs(concat: ScanFiles) -> None:
    (concat.ica_dir / '.fix').write_text('[1]\n')
    write_cifti(concat.ica_dir / 'Atlas_clean.dtseries.nii', np.ones((6, 3)))
    with pytest.raises(ExternalToolFailure):
        CleanupInvoker(CopyCleanup(produce=False)).invoke(
            concat.ica_dir, _inputs(concat), CleanupOptions()
        )


def test_invoker_requires_component_list(concat: ScanFiles) -> None:
    with pytest.raises(PrerequisiteMissing):
        CleanupInvoker(CopyCleanup()).invoke(concat.ica_dir, _inputs(concat), CleanupOptions())


def test_invoker_requires_ica_directory(concat: ScanFiles, tmp_path: Path) -> None:
    with pytest.raises(PrerequisiteMissing, match='ICA directory'):
        CleanupInvoker(CopyCleanup()).invoke(tmp_path / 'missing.ica', _inputs(concat), CleanupOptions())


def test_invoker_reports_missing_outputs(concat: ScanFiles) -> None:
    (concat.ica_dir / '.fix').write_text('[1]\n')
    with pytest.raises(ExternalToolFailure):
        CleanupInvoker(CopyCleanup(produce=False)).invoke(
            concat.ica_dir, _inputs(concat), CleanupOptions()
        )


def test_invoker_checks_length_before_anything_is_stored(concat: ScanFiles) -> None:
    (concat.ica_dir / '.fix').write_text('[1]\n')
    with pytest.raises(ShapeMismatch):
        CleanupInvoker(CopyCleanup(truncate=True)).invoke(
            concat.ica_dir, _inputs(concat), CleanupOptions(clean_volume=False)
        )
    assert not concat.path('clean', 'cifti').exists()


def test_signature_follows_component_list_and_options(tmp_path: Path) -> None:
    fixlist = tmp_path / 'HandNoise.txt'
    fixlist.write_text('[1, 3]\n')
    first = cleanup_signature(fixlist, CleanupOptions())
    assert cleanup_signature(fixlist, CleanupOptions()) == first
    assert cleanup_signature(fixlist, CleanupOptions(clean_volume=False)) != first
    assert cleanup_signature(fixlist, CleanupOptions(motion_regression=True)) != first
    fixlist.write_text('[1, 3, 4]\n')
    assert cleanup_signature(fixlist, CleanupOptions()) != first
    other = tmp_path / '.fix'
    other.write_text('[1, 3]\n')
    assert cleanup_signature(other, CleanupOptions()) != first
