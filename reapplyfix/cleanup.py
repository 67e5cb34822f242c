"""
reapplyfix.cleanup
==================

Invocation of the external FIX cleanup (``fix_3_clean``) on the
concatenated series.

The cleanup algorithm itself is opaque.  Seen from here it is a function
``(series, components, options) -> cleaned series`` that never changes
the shape of its input.  It operates on an ICA directory: the
concatenated high-passed volume is staged as ``filtered_func_data``
and the CIFTI series as ``Atlas.dtseries.nii`` (linked when they exist
as files, written otherwise); the cleaned results come back as
``filtered_func_data_clean*`` and ``Atlas_clean*``.  They are checked
there and returned in memory, so a wrong-length output never reaches
its final name.

:func:`cleanup_signature` identifies a cleanup by its component list
and options.  It is recorded next to the cleaned outputs so a changed
classification is re-applied.

Volume cleanup
--------------
``fix_3_clean`` skips the volume whenever a fifth argument is present,
whatever its value.  :class:`CleanupOptions` therefore carries an explicit
``clean_volume`` flag and the backends append the fifth argument only
when the volume must be left alone.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional

import numpy as np

from .config import RunMode, ToolEnvironment
from .errors import ExternalToolFailure, PrerequisiteMissing, ShapeMismatch
from .series_io import SeriesImage, load_series, save_series

logger = logging.getLogger(__name__)

HAND_NOISE = 'HandNoise.txt'
FIX_LIST = '.fix'
ALREADY_HIGHPASSED = -1


@dataclass
class CleanupOptions:
    """Options passed on to ``fix_3_clean``.

    Attributes
    ----------
    aggressive : bool
        Aggressive (full variance) rather than soft regression.
    motion_regression : bool
        Also regress out the motion confounds.
    highpass : int
        ``-1`` tells the cleanup the data were already high-passed.
    clean_volume : bool
        Whether the volume series is cleaned in addition to the CIFTI.
    """

    aggressive: bool = False
    motion_regression: bool = False
    highpass: int = ALREADY_HIGHPASSED
    clean_volume: bool = True

    def arguments(self, component_list: str) -> List[str]:
        args = [
            f"'{component_list}'",
            str(int(self.aggressive)),
            str(int(self.motion_regression)),
            str(self.highpass),
        ]
        if not self.clean_volume:
            # presence alone suppresses volume cleanup
            args.append('0')
        return args


def select_component_list(ica_dir: Path) -> Path:
    """Return the hand classification if present, else the automated list."""
    hand = ica_dir / HAND_NOISE
    if hand.exists():
        return hand
    fix = ica_dir / FIX_LIST
    if fix.exists():
        return fix
    raise PrerequisiteMissing(
        f"no noise component list in {ica_dir} (expected {HAND_NOISE} or {FIX_LIST})"
    )


def has_hand_classification(ica_dir: Path) -> bool:
    return (ica_dir / HAND_NOISE).exists()


# ----------------------------------------------------------------------
# Backends

class CleanupBackend(ABC):
    """Strategy running ``fix_3_clean`` in an ICA directory."""

    name = 'abstract'

    @abstractmethod
    def clean(self, ica_dir: Path, component_list: str, options: CleanupOptions) -> None:
        """Clean the series linked into ``ica_dir``.

        Implementations leave ``Atlas_clean.dtseries.nii`` (and, when
        volume cleanup is enabled, ``filtered_func_data_clean.nii.gz``) in
        ``ica_dir`` or raise :class:`ExternalToolFailure`.
        """
        raise NotImplementedError

    @staticmethod
    def _run(cmd: List[str], ica_dir: Path, env: dict, stdin: Optional[str] = None,
             log_file: Optional[Path] = None) -> None:
        try:
            if log_file is not None:
                log_file.parent.mkdir(parents=True, exist_ok=True)
                with open(log_file, 'ab') as log:
                    subprocess.run(cmd, cwd=str(ica_dir), env=env, check=True,
                                   stdout=log, stderr=subprocess.STDOUT)
            else:
                subprocess.run(cmd, cwd=str(ica_dir), env=env, check=True,
                               input=stdin.encode('utf-8') if stdin else None,
                               capture_output=True)
        except FileNotFoundError:
            logger.error('%s not found', cmd[0])
            raise ExternalToolFailure(f'{cmd[0]} command not found')
        except subprocess.CalledProcessError as e:
            detail = e.stderr.decode('utf-8', 'ignore') if e.stderr else f'see {log_file}'
            logger.error('fix_3_clean failed: %s', detail)
            raise ExternalToolFailure('fix_3_clean failed') from e


class CompiledCleanup(CleanupBackend):
    """Run the compiled ``run_fix_3_clean.sh`` with the MATLAB runtime."""

    name = 'compiled'

    def __init__(self, environment: ToolEnvironment, log_file: Optional[Path] = None) -> None:
        self.environment = environment
        self.log_file = log_file

    @property
    def executable(self) -> Path:
        if self.environment.hcp_pipe_dir is None:
            raise ExternalToolFailure('HCPPIPEDIR must be set to locate the compiled fix_3_clean')
        return (self.environment.hcp_pipe_dir / 'ICAFIX' / 'scripts'
                / 'Compiled_fix_3_clean' / 'run_fix_3_clean.sh')

    def command(self, component_list: str, options: CleanupOptions) -> List[str]:
        if not self.environment.matlab_compiler_runtime:
            raise ExternalToolFailure('MATLAB_COMPILER_RUNTIME must be set for compiled mode')
        return [str(self.executable), self.environment.matlab_compiler_runtime,
                *options.arguments(component_list)]

    def clean(self, ica_dir: Path, component_list: str, options: CleanupOptions) -> None:
        cmd = self.command(component_list, options)
        logger.info('Run MATLAB command: %s >> %s', ' '.join(cmd), self.log_file)
        self._run(cmd, ica_dir, self.environment.subprocess_env(), log_file=self.log_file)


class InterpretedCleanup(CleanupBackend):
    """Run ``fix_3_clean`` in an interpreted MATLAB or Octave session."""

    FLAGS = {
        'matlab': ['-nojvm', '-nodisplay', '-nosplash'],
        'octave-cli': ['-q', '--no-window-system'],
    }

    def __init__(self, program: str, environment: ToolEnvironment) -> None:
        self.program = program
        self.name = program
        self.environment = environment

    def script(self, component_list: str, options: CleanupOptions) -> str:
        args = ','.join(options.arguments(component_list))
        return f"{self.environment.matlab_paths()} fix_3_clean({args});"

    def command(self) -> List[str]:
        exe = shutil.which(self.program)
        if exe is None:
            logger.error('%s not found in PATH', self.program)
            raise ExternalToolFailure(f'{self.program} command not found')
        cmd = [exe] + self.FLAGS.get(self.program, [])
        settings = self.environment.fix_settings
        if settings is not None and settings.exists():
            return ['bash', '-c', f'source "{settings}" && exec {" ".join(cmd)}']
        return cmd

    def clean(self, ica_dir: Path, component_list: str, options: CleanupOptions) -> None:
        script = self.script(component_list, options)
        logger.info('Running %s: %s', self.program, script)
        self._run(self.command(), ica_dir, self.environment.subprocess_env(), stdin=script)


def make_cleanup_backend(
    mode: RunMode,
    environment: ToolEnvironment,
    log_file: Optional[Path] = None,
) -> CleanupBackend:
    """Select the cleanup backend once, from configuration."""
    if mode is RunMode.COMPILED:
        return CompiledCleanup(environment, log_file)
    if mode is RunMode.MATLAB:
        return InterpretedCleanup('matlab', environment)
    if mode is RunMode.OCTAVE:
        return InterpretedCleanup('octave-cli', environment)
    raise ValueError(f"Unsupported MATLAB run mode value: {mode}")


# ----------------------------------------------------------------------

def cleanup_signature(component_list: Path, options: CleanupOptions) -> str:
    """Digest of everything that determines the cleaned output.

    Covers the name and content of the component list and the cleanup
    options, so an edited or newly added hand classification yields a
    different signature than the one recorded with existing outputs.
    """
    payload = json.dumps({
        'component_list': component_list.name,
        'content': hashlib.sha1(component_list.read_bytes()).hexdigest(),
        'aggressive': options.aggressive,
        'motion_regression': options.motion_regression,
        'highpass': options.highpass,
        'clean_volume': options.clean_volume,
    }, sort_keys=True)
    return hashlib.sha1(payload.encode('utf-8')).hexdigest()[:12]


# input name in the .ica directory -> cleaned output, VN map of the output
STAGING = {
    'volume': ('filtered_func_data.nii.gz',
               'filtered_func_data_clean.nii.gz', 'filtered_func_data_clean_vn.nii.gz'),
    'cifti': ('Atlas.dtseries.nii',
              'Atlas_clean.dtseries.nii', 'Atlas_clean_vn.dscalar.nii'),
}


def _unlink(path: Path) -> None:
    if path.is_symlink() or path.exists():
        path.unlink()


def _stage(image: SeriesImage, target: Path) -> None:
    """Link ``image`` into the ICA directory, or write it there if it has no file."""
    _unlink(target)
    if image.path is not None and Path(image.path).exists():
        target.symlink_to(os.path.relpath(image.path, target.parent))
    else:
        save_series(image, target)


def _collect(path: Path, reference: Optional[SeriesImage] = None) -> Optional[SeriesImage]:
    """Load a cleanup output and remove it from the ICA directory."""
    if not path.exists():
        return None
    image = load_series(path)
    if reference is not None and image.n_timepoints != reference.n_timepoints:
        raise ShapeMismatch(
            f"cleanup changed the length of {path.name}: "
            f"{reference.n_timepoints} -> {image.n_timepoints}"
        )
    image = image.with_data(np.array(image.data))
    path.unlink()
    return image


@dataclass
class CleanupOutputs:
    """Cleaned series (and their VN maps) returned by the cleanup."""

    cifti: SeriesImage
    volume: Optional[SeriesImage] = None
    cifti_vn: Optional[SeriesImage] = None
    volume_vn: Optional[SeriesImage] = None


class CleanupInvoker:
    """Stage inputs for the cleanup, run the backend and collect its outputs.

    Parameters
    ----------
    backend : CleanupBackend
        Execution strategy chosen from configuration.
    """

    def __init__(self, backend: CleanupBackend) -> None:
        self.backend = backend

    def invoke(
        self,
        ica_dir: Path,
        inputs: Mapping[str, SeriesImage],
        options: CleanupOptions,
    ) -> CleanupOutputs:
        """Clean the concatenated high-passed series in ``inputs``.

        ``inputs`` maps ``'volume'`` and ``'cifti'`` to the series to be
        cleaned.  Outputs are validated inside ``ica_dir`` and handed back
        in memory; storing them is up to the caller.

        Raises
        ------
        PrerequisiteMissing
            If the ICA directory, the component list or an input series
            does not exist.
        ExternalToolFailure
            If the backend fails or leaves no cleaned output.
        ShapeMismatch
            If a cleaned series differs in length from its input.
        """
        if not ica_dir.is_dir():
            raise PrerequisiteMissing(f"ICA directory not found: {ica_dir}")
        component_list = select_component_list(ica_dir)
        logger.info('Use fixlist=%s', component_list.name)

        for space, (staged, cleaned, cleaned_vn) in STAGING.items():
            if space not in inputs:
                raise PrerequisiteMissing(f"no {space} series to clean")
            _stage(inputs[space], ica_dir / staged)
            # outputs of an earlier cleanup must not pass for new ones
            _unlink(ica_dir / cleaned)
            _unlink(ica_dir / cleaned_vn)

        self.backend.clean(ica_dir, component_list.name, options)

        _, cifti_name, cifti_vn_name = STAGING['cifti']
        cifti = _collect(ica_dir / cifti_name, inputs['cifti'])
        if cifti is None:
            raise ExternalToolFailure(f"cleanup did not produce {ica_dir / cifti_name}")
        outputs = CleanupOutputs(cifti=cifti, cifti_vn=_collect(ica_dir / cifti_vn_name))

        _, volume_name, volume_vn_name = STAGING['volume']
        outputs.volume = _collect(ica_dir / volume_name, inputs['volume'])
        if outputs.volume is None and options.clean_volume:
            raise ExternalToolFailure(f"cleanup did not produce {ica_dir / volume_name}")
        outputs.volume_vn = _collect(ica_dir / volume_vn_name)
        return outputs


__all__ = [
    'ALREADY_HIGHPASSED',
    'CleanupOptions',
    'CleanupBackend',
    'CompiledCleanup',
    'InterpretedCleanup',
    'CleanupInvoker',
    'CleanupOutputs',
    'cleanup_signature',
    'has_hand_classification',
    'make_cleanup_backend',
    'select_component_list',
]
