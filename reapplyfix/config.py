"""
reapplyfix.config
=================

Configuration data classes for the multi-run FIX re-application
pipeline.  :class:`ReApplyFixConfig` gathers the user supplied options,
:class:`HighPass` interprets the high-pass setting and
:class:`ToolEnvironment` records where the external tools live.

Validation follows a "collect then abort" policy: every problem found in
the configuration is gathered and reported together in a single
:class:`~reapplyfix.errors.ConfigurationError`.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_REG_NAME = 'NONE'
DEFAULT_LOW_RES_MESH = 32
DEFAULT_MOTION_REGRESSION = 'FALSE'

_TRUE_WORDS = {'true', 'yes', '1'}
_FALSE_WORDS = {'false', 'no', 'none', '0'}
_INTEGER = re.compile(r'^-?[0-9]+$')


def parse_bool(text: str | bool, name: str = 'motion regression') -> bool:
    """Coerce a textual switch to a boolean.

    ``TRUE``, ``YES`` and ``1`` enable the switch, ``FALSE``, ``NO``,
    ``NONE`` and ``0`` disable it.  Matching is case insensitive.

    Raises
    ------
    ConfigurationError
        If ``text`` is not one of the recognised words.
    """
    if isinstance(text, bool):
        return text
    word = str(text).strip().lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    raise ConfigurationError(f"{name} setting must be TRUE or FALSE (got {text!r})")


class RunMode(Enum):
    """Execution backend for the external MATLAB code."""

    COMPILED = 0
    MATLAB = 1
    OCTAVE = 2

    @classmethod
    def parse(cls, value: 'RunMode | int | str') -> 'RunMode':
        if isinstance(value, cls):
            return value
        try:
            return cls(int(str(value).strip()))
        except ValueError:
            raise ConfigurationError(
                f"MATLAB run mode value must be 0, 1, or 2 (got {value!r})"
            ) from None

    @property
    def description(self) -> str:
        return {
            RunMode.COMPILED: 'Use compiled MATLAB',
            RunMode.MATLAB: 'Use interpreted MATLAB',
            RunMode.OCTAVE: 'Use interpreted Octave',
        }[self]


@dataclass(frozen=True)
class HighPass:
    """Parsed high-pass setting.

    Attributes
    ----------
    label : str
        The text exactly as supplied.  It appears verbatim in file names
        (``<run>_hp<label>...``).
    mode : str
        ``'detrend'`` for ``0`` (linear detrend), ``'polynomial'`` for a
        ``pd<N>`` value and ``'filter'`` for a positive cutoff in seconds.
    value : int
        Cutoff in seconds for ``'filter'``, polynomial order for
        ``'polynomial'`` and ``0`` for ``'detrend'``.
    """

    label: str
    mode: str
    value: int

    @property
    def order(self) -> int:
        """Order of the polynomial removed in detrend modes."""
        if self.mode == 'detrend':
            return 1
        return self.value


def parse_highpass(text: str | int) -> HighPass:
    """Parse a high-pass setting such as ``'2000'``, ``'0'`` or ``'pd2'``."""
    label = str(text).strip()
    polynomial = label.startswith('pd')
    number = label[2:] if polynomial else label
    if not _INTEGER.match(number):
        raise ConfigurationError(
            f"--high-pass argument does not contain a properly specified numeric value ({label!r})"
        )
    value = int(number)
    if value < 0:
        raise ConfigurationError(f"--high-pass value must not be negative ({label!r})")
    if polynomial:
        return HighPass(label=label, mode='polynomial', value=value)
    if value == 0:
        return HighPass(label=label, mode='detrend', value=0)
    return HighPass(label=label, mode='filter', value=value)


def normalize_scan_name(name: str) -> str:
    """Strip any leading directories and NIfTI extension from a scan name."""
    base = os.path.basename(str(name).strip())
    for ext in ('.nii.gz', '.nii'):
        if base.endswith(ext):
            return base[: -len(ext)]
    return base


def make_reg_string(reg_name: str, low_res_mesh: int | str = DEFAULT_LOW_RES_MESH) -> str:
    """Return the registration suffix used in CIFTI file names."""
    reg_string = '' if reg_name == 'NONE' else f'_{reg_name}'
    if str(low_res_mesh) != str(DEFAULT_LOW_RES_MESH):
        reg_string += f'.{low_res_mesh}k'
    return reg_string


@dataclass
class ToolEnvironment:
    """Locations of the external tool installations.

    Attributes
    ----------
    fsl_dir, fix_dir, caret7_dir, hcp_pipe_dir : Path | None
        Values of ``FSLDIR``, ``FSL_FIXDIR``, ``CARET7DIR`` and
        ``HCPPIPEDIR``.
    matlab_compiler_runtime : str | None
        ``MATLAB_COMPILER_RUNTIME``, required for the compiled backend.
    """

    fsl_dir: Optional[Path] = None
    fix_dir: Optional[Path] = None
    caret7_dir: Optional[Path] = None
    hcp_pipe_dir: Optional[Path] = None
    matlab_compiler_runtime: Optional[str] = None

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None) -> 'ToolEnvironment':
        env = os.environ if environ is None else environ

        def _path(key: str) -> Optional[Path]:
            value = env.get(key)
            return Path(value) if value else None

        return cls(
            fsl_dir=_path('FSLDIR'),
            fix_dir=_path('FSL_FIXDIR'),
            caret7_dir=_path('CARET7DIR'),
            hcp_pipe_dir=_path('HCPPIPEDIR'),
            matlab_compiler_runtime=env.get('MATLAB_COMPILER_RUNTIME') or None,
        )

    @property
    def wb_command(self) -> str:
        if self.caret7_dir is not None:
            return str(self.caret7_dir / 'wb_command')
        return 'wb_command'

    @property
    def fsl_matlab_path(self) -> Optional[Path]:
        if self.fsl_dir is None:
            return None
        return self.fsl_dir / 'etc' / 'matlab'

    @property
    def fix_settings(self) -> Optional[Path]:
        if self.fix_dir is None:
            return None
        return self.fix_dir / 'settings.sh'

    def matlab_paths(self, *extra: Path | str) -> str:
        """Return the ``addpath(...)`` preamble for interpreted sessions."""
        dirs = [self.fsl_matlab_path, self.fix_dir, *extra]
        return ' '.join(f"addpath('{d}');" for d in dirs if d is not None)

    def subprocess_env(self) -> dict:
        env = dict(os.environ)
        if self.fsl_matlab_path is not None:
            env['FSL_MATLAB_PATH'] = str(self.fsl_matlab_path)
        env['FSL_FIX_WBC'] = self.wb_command
        return env


@dataclass
class ReApplyFixConfig:
    """User options for one invocation of the pipeline.

    Attributes
    ----------
    study_folder : str | Path
        Root of the study; subjects live directly beneath it.
    subject : str
        Subject identifier, e.g. ``'100610'``.
    fmri_names : list of str
        Ordered scan names.  An ``@`` separated string is accepted too;
        directories and extensions are stripped.
    concat_name : str
        Root name of the concatenated scan.
    high_pass : str
        High-pass setting used by the original multi-run FIX, see
        :func:`parse_highpass`.
    reg_name : str
        Surface registration name, ``'NONE'`` for the default registration.
    low_res_mesh : int
        Low resolution mesh; only affects file names when not 32.
    run_mode : RunMode | int | str
        Execution backend (0 compiled, 1 MATLAB, 2 Octave).
    motion_regression : str | bool
        Textual switch coerced with :func:`parse_bool`.
    native_normalization : bool
        Compute high-pass and variance normalisation in-process instead
        of through the external MATLAB function.
    remove_intermediates : bool
        Delete per-run demeaned and VN time series once merged.
    force_cleanup : bool
        Re-run cleanup, splitting and rescaling even if their outputs
        already exist.
    """

    study_folder: Optional[str | Path] = None
    subject: Optional[str] = None
    fmri_names: Sequence[str] | str | None = None
    concat_name: Optional[str] = None
    high_pass: Optional[str] = None
    reg_name: str = DEFAULT_REG_NAME
    low_res_mesh: int | str = DEFAULT_LOW_RES_MESH
    run_mode: RunMode | int | str = RunMode.MATLAB
    motion_regression: str | bool = DEFAULT_MOTION_REGRESSION
    native_normalization: bool = False
    remove_intermediates: bool = True
    force_cleanup: bool = False
    environment: ToolEnvironment = field(default_factory=ToolEnvironment.from_environ)

    # ------------------------------------------------------------------
    @property
    def run_names(self) -> List[str]:
        names = self.fmri_names or []
        if isinstance(names, str):
            names = names.split('@')
        return [normalize_scan_name(n) for n in names if str(n).strip()]

    @property
    def concat_scan(self) -> str:
        return normalize_scan_name(self.concat_name or '')

    @property
    def highpass(self) -> HighPass:
        return parse_highpass(self.high_pass)

    @property
    def mode(self) -> RunMode:
        return RunMode.parse(self.run_mode)

    @property
    def motion_regression_enabled(self) -> bool:
        return parse_bool(self.motion_regression)

    @property
    def reg_string(self) -> str:
        return make_reg_string(self.reg_name, self.low_res_mesh)

    # ------------------------------------------------------------------
    def validate(self) -> None:
        """Check every option and raise once with all problems found.

        Raises
        ------
        ConfigurationError
            Carrying one message per invalid or missing option.
        """
        problems: List[str] = []
        if not self.study_folder:
            problems.append('Study Folder (--path= or --study-folder=) required')
        if not self.subject:
            problems.append('Subject ID (--subject=) required')
        if not self.run_names:
            problems.append('fMRI Names (--fmri-names=) required')
        if not self.concat_scan:
            problems.append('Concatenated fMRI scan name (--concat-fmri-name=) required')
        if self.high_pass is None or str(self.high_pass).strip() == '':
            problems.append('High Pass (--high-pass=) required')
        else:
            try:
                hp = self.highpass
                if hp.mode == 'detrend':
                    logger.info('--high-pass=0 corresponds to a linear detrend')
            except ConfigurationError as exc:
                problems.extend(exc.problems)
        if not self.reg_name:
            problems.append('Reg Name (--reg-name=) required')
        if self.low_res_mesh in (None, ''):
            problems.append('Low Res Mesh (--low-res-mesh=) required')
        mode: Optional[RunMode] = None
        try:
            mode = self.mode
        except ConfigurationError as exc:
            problems.extend(exc.problems)
        if mode is RunMode.COMPILED and not self.environment.matlab_compiler_runtime:
            problems.append(
                'To use MATLAB run mode: 0, the MATLAB_COMPILER_RUNTIME environment variable must be set'
            )
        if self.motion_regression in (None, ''):
            problems.append('motion regression setting (--motion-regression=) required')
        else:
            try:
                self.motion_regression_enabled
            except ConfigurationError as exc:
                problems.extend(exc.problems)
        if problems:
            for message in problems:
                logger.error(message)
            raise ConfigurationError(problems)

        logger.info('Study Folder: %s', self.study_folder)
        logger.info('Subject ID: %s', self.subject)
        logger.info('fMRI Names: %s', '@'.join(self.run_names))
        logger.info('Concatenated fMRI scan name: %s', self.concat_scan)
        logger.info('High Pass: %s', self.high_pass)
        logger.info('Reg Name: %s', self.reg_name)
        logger.info('Low Res Mesh: %s', self.low_res_mesh)
        logger.info('MATLAB Run Mode: %d - %s', mode.value, mode.description)
        logger.info('Motion Regression: %s', self.motion_regression_enabled)
        logger.info('RegString: %r', self.reg_string)


__all__ = [
    'DEFAULT_REG_NAME',
    'DEFAULT_LOW_RES_MESH',
    'HighPass',
    'ReApplyFixConfig',
    'RunMode',
    'ToolEnvironment',
    'make_reg_string',
    'normalize_scan_name',
    'parse_bool',
    'parse_highpass',
]
