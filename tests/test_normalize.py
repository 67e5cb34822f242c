"""Tests for high-pass/variance normalisation and its backends."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from reapplyfix.cache import MemoryArtifactCache
from reapplyfix.config import RunMode, ToolEnvironment, parse_highpass
from reapplyfix.errors import ConfigurationError, ExternalToolFailure, ShapeMismatch
from reapplyfix.layout import ScanFiles
from reapplyfix.normalize import (
    PRODUCTS,
    VN_FLOOR,
    CompiledNormalization,
    NativeNormalization,
    NormalizationBackend,
    NormalizationRequest,
    RunNormalizer,
    ScriptedNormalization,
    highpass_filter,
    highpass_variance_normalize,
    make_normalization_backend,
)
from reapplyfix.series_io import SeriesImage


def _run(tmp_path: Path, hp: str = '2000') -> ScanFiles:
    return ScanFiles(directory=tmp_path / 'run1', name='run1', reg_string='', hp_label=hp)


def test_contract_shapes_and_scale() -> None:
    rng = np.random.default_rng(3)
    data = 100 + rng.normal(scale=4.0, size=(60, 7))
    vn_series, vn_map = highpass_variance_normalize(data, 0.72, parse_highpass('2000'))
    assert vn_series.shape == (60, 7)
    assert vn_map.shape == (1, 7)
    assert np.all(vn_map >= VN_FLOOR)
    np.testing.assert_allclose(vn_series.std(axis=0, ddof=1), 1.0, rtol=1e-6)


def test_detrend_removes_linear_trend() -> None:
    t = np.arange(30.0)[:, None]
    data = 3.0 + 0.5 * t + np.sin(t)
    vn_series, vn_map = highpass_variance_normalize(data, 1.0, parse_highpass('0'))
    filtered = vn_series * vn_map
    design = np.column_stack([np.ones(30), np.arange(30.0)])
    betas = np.linalg.lstsq(design, filtered, rcond=None)[0]
    np.testing.assert_allclose(betas, 0.0, atol=1e-8)


def test_polynomial_detrend_removes_quadratic() -> None:
    t = np.linspace(-1, 1, 25)[:, None]
    data = 2.0 + t + 4.0 * t ** 2
    vn_series, vn_map = highpass_variance_normalize(data, 1.0, parse_highpass('pd2'))
    np.testing.assert_allclose(vn_series * vn_map, 0.0, atol=1e-8)
    np.testing.assert_allclose(vn_map, VN_FLOOR)


def test_constant_unit_gets_floor() -> None:
    data = np.column_stack([np.full(40, 5.0), np.random.default_rng(4).normal(size=40)])
    vn_series, vn_map = highpass_variance_normalize(data, 2.0, parse_highpass('200'))
    assert vn_map[0, 0] == VN_FLOOR
    np.testing.assert_allclose(vn_series[:, 0], 0.0, atol=1e-8)


def test_highpass_filter_rejects_cutoff_above_nyquist() -> None:
    with pytest.raises(ConfigurationError, match='Nyquist'):
        highpass_filter(np.zeros((20, 2)), tr=2.0, cutoff=1.0)


def test_highpass_filter_rejects_series_shorter_than_padding() -> None:
    data = np.random.default_rng(8).normal(size=(8, 3))
    with pytest.raises(ShapeMismatch, match='8 timepoints'):
        highpass_variance_normalize(data, 0.8, parse_highpass('200'))
    # the detrend modes have no minimum length
    vn_series, _ = highpass_variance_normalize(data, 0.8, parse_highpass('0'))
    assert vn_series.shape == (8, 3)


class CountingBackend(NormalizationBackend):
    name = 'counting'

    def __init__(self, drop=None):
        self.calls = 0
        self.drop = drop

    def normalize(self, request: NormalizationRequest):
        self.calls += 1
        out = {}
        for stage, space in PRODUCTS:
            if (stage, space) == self.drop:
                continue
            rows = 1 if stage == 'vn_map' else 4
            out[(stage, space)] = SeriesImage(data=np.ones((rows, 3)), kind='nifti',
                                              is_map=rows == 1)
        return out


def test_run_normalizer_is_idempotent(tmp_path: Path) -> None:
    backend = CountingBackend()
    normalizer = RunNormalizer(backend, MemoryArtifactCache())
    hp = parse_highpass('2000')
    first = normalizer.normalize(_run(tmp_path), 0.72, hp)
    second = normalizer.normalize(_run(tmp_path), 0.72, hp)
    assert backend.calls == 1
    assert set(first) == set(PRODUCTS)
    assert first[('vn_map', 'cifti')] is second[('vn_map', 'cifti')]
    # a different high-pass is a different artifact
    normalizer.normalize(_run(tmp_path, 'pd2'), 0.72, parse_highpass('pd2'))
    assert backend.calls == 2


def test_run_normalizer_maps_only(tmp_path: Path) -> None:
    normalizer = RunNormalizer(CountingBackend(), MemoryArtifactCache())
    maps = [p for p in PRODUCTS if p[0] == 'vn_map']
    out = normalizer.normalize(_run(tmp_path), 0.72, parse_highpass('2000'), maps)
    assert set(out) == set(maps)


def test_incomplete_backend_output_is_an_error(tmp_path: Path) -> None:
    normalizer = RunNormalizer(CountingBackend(drop=('vn_map', 'cifti')), MemoryArtifactCache())
    with pytest.raises(ExternalToolFailure):
        normalizer.normalize(_run(tmp_path), 0.72, parse_highpass('2000'))


def test_compiled_normalization_is_unsupported(tmp_path: Path) -> None:
    request = NormalizationRequest(run=_run(tmp_path), tr=0.72, highpass=parse_highpass('2000'))
    with pytest.raises(ExternalToolFailure):
        CompiledNormalization().normalize(request)


def test_backend_selection() -> None:
    env = ToolEnvironment()
    assert isinstance(make_normalization_backend(RunMode.COMPILED, env), CompiledNormalization)
    assert make_normalization_backend(RunMode.OCTAVE, env).program == 'octave-cli'
    assert make_normalization_backend(RunMode.MATLAB, env).program == 'matlab'
    assert isinstance(make_normalization_backend(RunMode.MATLAB, env, native=True), NativeNormalization)


def test_scripted_normalization_script(tmp_path: Path) -> None:
    env = ToolEnvironment(fix_dir=Path('/opt/fix'), caret7_dir=Path('/opt/wb'))
    backend = ScriptedNormalization('octave-cli', env)
    request = NormalizationRequest(run=_run(tmp_path, 'pd2'), tr=0.72, highpass=parse_highpass('pd2'))
    script = backend.script(request)
    assert "addpath('/opt/fix');" in script
    assert "functionhighpassandvariancenormalize(0.72, 'pd2', 'run1', '/opt/wb/wb_command', '');" in script


def test_scripted_normalization_needs_program(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr('reapplyfix.normalize.shutil.which', lambda name: None)
    backend = ScriptedNormalization('matlab', ToolEnvironment())
    request = NormalizationRequest(run=_run(tmp_path), tr=0.72, highpass=parse_highpass('2000'))
    with pytest.raises(ExternalToolFailure, match='matlab'):
        backend.normalize(request)
