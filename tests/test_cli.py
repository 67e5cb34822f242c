"""Tests for the command line interface."""

from __future__ import annotations

import pytest

from reapplyfix.config import RunMode
from reapplyfix.main import build_config, main, parse_args


def test_named_options() -> None:
    ns = parse_args([
        '--study-folder=/data/study', '--subject=100610',
        '--fmri-names=run1@run2', '--concat-fmri-name=concat',
        '--high-pass=pd2', '--motion-regression=TRUE', '--native-vn',
    ])
    cfg = build_config(ns)
    assert cfg.run_names == ['run1', 'run2']
    assert cfg.highpass.mode == 'polynomial'
    assert cfg.motion_regression_enabled
    assert cfg.native_normalization
    assert cfg.remove_intermediates
    assert cfg.reg_name == 'NONE'
    assert cfg.mode is RunMode.MATLAB


def test_positional_values_in_order() -> None:
    ns = parse_args(['/data/study', '100610', 'run1@run2', 'concat', '2000', 'MSMAll', '59', '2', 'YES'])
    cfg = build_config(ns)
    assert str(cfg.study_folder) == '/data/study'
    assert cfg.concat_scan == 'concat'
    assert cfg.reg_string == '_MSMAll.59k'
    assert cfg.mode is RunMode.OCTAVE
    assert cfg.motion_regression_enabled


def test_named_option_wins_over_positional() -> None:
    ns = parse_args(['/data/study', '100610', '--subject=200', '--keep-intermediates'])
    assert ns.subject == '200'
    assert build_config(ns).remove_intermediates is False


def test_too_many_positional_values() -> None:
    with pytest.raises(SystemExit):
        parse_args([str(i) for i in range(10)])


def test_main_reports_configuration_errors() -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(['--subject=100610'])
    assert 'required' in str(excinfo.value.code)


def _study_args(study, high_pass: str) -> list:
    return [
        f"--study-folder={study['root']}", f"--subject={study['subject']}",
        f"--fmri-names={'@'.join(study['runs'])}", f"--concat-fmri-name={study['concat']}",
        f'--high-pass={high_pass}', '--motion-regression=NO', '--native-vn',
    ]


def test_main_reports_cutoff_above_nyquist(study_factory) -> None:
    study = study_factory(hp='1')
    with pytest.raises(SystemExit) as excinfo:
        main(_study_args(study, '1'))
    assert str(excinfo.value.code).startswith('ERROR:')
    assert 'Nyquist' in str(excinfo.value.code)


def test_main_reports_run_too_short_for_filter(study_factory) -> None:
    study = study_factory(runs={'run1': 8, 'run2': 8}, hp='200')
    with pytest.raises(SystemExit) as excinfo:
        main(_study_args(study, '200'))
    assert 'too short' in str(excinfo.value.code)
