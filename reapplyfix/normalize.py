"""
reapplyfix.normalize
====================

High-pass filtering and variance normalisation (VN) of individual runs.

The computation itself belongs to an external collaborator; what this
package relies on is its numeric contract.  For a run of shape
``(T, S)`` it yields

* a high-pass filtered, variance normalised series of shape ``(T, S)``
* a VN map of shape ``(1, S)`` giving the per-unit scale that was
  divided out,

for the volume series and for the CIFTI series of the run.

Backends
--------

``ScriptedNormalization``
    Runs ``functionhighpassandvariancenormalize`` in an interpreted
    MATLAB or Octave session.  The function writes its outputs next to
    the run, from where they are loaded.
``CompiledNormalization``
    There is no compiled build of the normalisation function; asking
    it to do work raises :class:`~reapplyfix.errors.ExternalToolFailure`.
``NativeNormalization``
    In-process rendition of the contract using :mod:`scipy.signal`, see
    :func:`highpass_variance_normalize`.

:class:`RunNormalizer` sits in front of the backend and consults the
artifact cache so existing outputs are never recomputed.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.signal import butter, filtfilt

from .cache import ArtifactCache, ArtifactKey
from .config import HighPass, RunMode, ToolEnvironment
from .errors import ConfigurationError, ExternalToolFailure, ShapeMismatch
from .layout import ScanFiles
from .series_io import SeriesImage, load_series

logger = logging.getLogger(__name__)

VN_FLOOR = 0.001

# (stage, space) of the four normalisation products
PRODUCTS: Tuple[Tuple[str, str], ...] = (
    ('vn_series', 'volume'),
    ('vn_map', 'volume'),
    ('vn_series', 'cifti'),
    ('vn_map', 'cifti'),
)


# ----------------------------------------------------------------------
# Native computation

def remove_polynomial_trend(data: np.ndarray, order: int) -> np.ndarray:
    """Regress a polynomial of the given order in time out of every column."""
    T = data.shape[0]
    t = np.arange(T, dtype=float)
    t = (t - t.mean()) / (t.std() + 1e-8)
    design = np.vander(t, order + 1, increasing=True)  # (T, order+1)
    pinv = np.linalg.pinv(design)
    betas = pinv @ data  # (order+1, S)
    return data - design @ betas


def highpass_filter(data: np.ndarray, tr: float, cutoff: float, order: int = 2) -> np.ndarray:
    """Zero-phase Butterworth high-pass along the time axis.

    ``cutoff`` is the filter period in seconds (frequencies below
    ``1 / cutoff`` Hz are attenuated).  The temporal mean is removed.

    Raises
    ------
    ConfigurationError
        If ``1 / cutoff`` is not below the Nyquist frequency of ``tr``.
    ShapeMismatch
        If the series is too short for the forward-backward filter.
    """
    nyq = 0.5 / tr
    wn = (1.0 / cutoff) / nyq
    if not 0 < wn < 1:
        raise ConfigurationError(
            f"high-pass cutoff of {cutoff} s is not below the Nyquist frequency "
            f"of TR {tr} s (use a cutoff above {2 * tr} s)"
        )
    b, a = butter(order, wn, btype='highpass', analog=False)
    padlen = 3 * max(len(a), len(b))
    if data.shape[0] <= padlen:
        raise ShapeMismatch(
            f"a series of {data.shape[0]} timepoints is too short for the high-pass "
            f"filter (more than {padlen} needed); use a detrend high-pass instead"
        )
    centred = data - data.mean(axis=0, keepdims=True)
    return filtfilt(b, a, centred, axis=0)


def highpass_variance_normalize(
    data: np.ndarray,
    tr: float,
    highpass: HighPass,
    signal_rank: int = 0,
) -> Tuple[np.ndarray, np.ndarray]:
    """High-pass and variance normalise a ``(T, S)`` series.

    Parameters
    ----------
    data : np.ndarray
        Run series of shape ``(T, S)``.
    tr : float
        Sampling interval in seconds.
    highpass : HighPass
        ``detrend`` removes a linear trend, ``polynomial`` a trend of the
        configured order and ``filter`` applies a Butterworth high-pass.
    signal_rank : int
        Number of strongest SVD components treated as structured signal
        and excluded when estimating the noise level.

    Returns
    -------
    vn_series : np.ndarray
        ``filtered / vn_map``, shape ``(T, S)``.
    vn_map : np.ndarray
        Per-unit standard deviation of the residual, floored at 0.001,
        shape ``(1, S)``.
    """
    data = np.asarray(data, dtype=float)
    if highpass.mode == 'filter':
        filtered = highpass_filter(data, tr, float(highpass.value))
    else:
        filtered = remove_polynomial_trend(data, highpass.order)
    residual = filtered
    if signal_rank > 0:
        u, s, vt = np.linalg.svd(filtered, full_matrices=False)
        k = min(signal_rank, s.size)
        residual = filtered - (u[:, :k] * s[:k]) @ vt[:k]
    ddof = 1 if residual.shape[0] > 1 else 0
    vn_map = np.maximum(residual.std(axis=0, ddof=ddof, keepdims=True), VN_FLOOR)
    return filtered / vn_map, vn_map


# ----------------------------------------------------------------------
# Backends

@dataclass
class NormalizationRequest:
    """Everything a backend needs to normalise one run."""

    run: ScanFiles
    tr: float
    highpass: HighPass


class NormalizationBackend(ABC):
    """Produce the four normalisation products of a run."""

    name = 'abstract'

    @abstractmethod
    def normalize(self, request: NormalizationRequest) -> Dict[Tuple[str, str], SeriesImage]:
        """Return a mapping ``(stage, space) -> SeriesImage`` covering :data:`PRODUCTS`."""
        raise NotImplementedError


class NativeNormalization(NormalizationBackend):
    """Compute the normalisation in-process with numpy/scipy."""

    name = 'native'

    def __init__(self, signal_rank: int = 0) -> None:
        self.signal_rank = signal_rank

    def normalize(self, request: NormalizationRequest) -> Dict[Tuple[str, str], SeriesImage]:
        outputs: Dict[Tuple[str, str], SeriesImage] = {}
        for space in ('volume', 'cifti'):
            image = load_series(request.run.path('raw', space))
            vn_series, vn_map = highpass_variance_normalize(
                image.data, request.tr, request.highpass, self.signal_rank
            )
            outputs[('vn_series', space)] = image.with_data(vn_series, is_map=False)
            outputs[('vn_map', space)] = image.with_data(vn_map, is_map=True)
        return outputs


class CompiledNormalization(NormalizationBackend):
    """Compiled MATLAB mode; no compiled normalisation function is available."""

    name = 'compiled'

    def normalize(self, request: NormalizationRequest) -> Dict[Tuple[str, str], SeriesImage]:
        logger.error('MATLAB run mode of 0 not currently supported for high-pass/VN')
        raise ExternalToolFailure(
            "no compiled build of functionhighpassandvariancenormalize is available; "
            "use an interpreted run mode or native normalisation"
        )


class ScriptedNormalization(NormalizationBackend):
    """Run ``functionhighpassandvariancenormalize`` in MATLAB or Octave.

    Parameters
    ----------
    program : str
        ``'matlab'`` or ``'octave-cli'``.
    environment : ToolEnvironment
        Tool locations used for the ``addpath`` preamble and environment.
    scripts_dir : Path | None
        Extra directory holding the normalisation function.
    """

    FLAGS = {
        'matlab': ['-nojvm', '-nodisplay', '-nosplash'],
        'octave-cli': ['-q', '--no-window-system'],
    }

    def __init__(
        self,
        program: str,
        environment: ToolEnvironment,
        scripts_dir: Optional[Path] = None,
    ) -> None:
        self.program = program
        self.name = program
        self.environment = environment
        self.scripts_dir = scripts_dir

    def script(self, request: NormalizationRequest) -> str:
        extra = [self.scripts_dir] if self.scripts_dir is not None else []
        hp = request.highpass.label
        if request.highpass.mode == 'polynomial':
            hp = f"'{hp}'"
        return (
            f"{self.environment.matlab_paths(*extra)} "
            f"functionhighpassandvariancenormalize({request.tr}, {hp}, "
            f"'{request.run.name}', '{self.environment.wb_command}', '{request.run.reg_string}');"
        )

    def command(self) -> List[str]:
        exe = shutil.which(self.program)
        if exe is None:
            logger.error('%s not found in PATH', self.program)
            raise ExternalToolFailure(f'{self.program} command not found')
        cmd = [exe] + self.FLAGS.get(self.program, [])
        settings = self.environment.fix_settings
        if settings is not None and settings.exists():
            joined = ' '.join(cmd)
            return ['bash', '-c', f'source "{settings}" && exec {joined}']
        return cmd

    def normalize(self, request: NormalizationRequest) -> Dict[Tuple[str, str], SeriesImage]:
        stale_log = request.run.directory / '.fix.functionhighpassandvariancenormalize.log'
        if stale_log.exists():
            stale_log.unlink()
        cmd = self.command()
        logger.info('Running high-pass/VN for %s with %s', request.run.name, self.program)
        try:
            subprocess.run(
                cmd,
                input=self.script(request).encode('utf-8'),
                cwd=str(request.run.directory),
                env=self.environment.subprocess_env(),
                check=True,
                capture_output=True,
            )
        except FileNotFoundError:
            logger.error('%s command not found', self.program)
            raise ExternalToolFailure(f'{self.program} command not found')
        except subprocess.CalledProcessError as e:
            logger.error('high-pass/VN failed: %s', e.stderr.decode('utf-8', 'ignore'))
            raise ExternalToolFailure(f'high-pass/VN of {request.run.name} failed') from e
        outputs: Dict[Tuple[str, str], SeriesImage] = {}
        for stage, space in PRODUCTS:
            path = request.run.path(stage, space)
            if not path.exists():
                raise ExternalToolFailure(f'high-pass/VN did not produce {path}')
            outputs[(stage, space)] = load_series(path)
        return outputs


def make_normalization_backend(
    mode: RunMode,
    environment: ToolEnvironment,
    native: bool = False,
    scripts_dir: Optional[Path] = None,
) -> NormalizationBackend:
    """Select the normalisation backend once, from configuration."""
    if native:
        return NativeNormalization()
    if mode is RunMode.COMPILED:
        return CompiledNormalization()
    program = 'matlab' if mode is RunMode.MATLAB else 'octave-cli'
    return ScriptedNormalization(program, environment, scripts_dir)


# ----------------------------------------------------------------------

class RunNormalizer:
    """Cache-aware front end to a :class:`NormalizationBackend`.

    Parameters
    ----------
    backend : NormalizationBackend
        Strategy that performs the actual computation.
    cache : ArtifactCache
        Where normalisation products are looked up and stored.
    """

    def __init__(self, backend: NormalizationBackend, cache: ArtifactCache) -> None:
        self.backend = backend
        self.cache = cache

    @staticmethod
    def key(run_id: str, stage: str, space: str, highpass: HighPass) -> ArtifactKey:
        return ArtifactKey.create(stage, run_id, space, highpass=highpass.label)

    def normalize(
        self,
        run: ScanFiles,
        tr: float,
        highpass: HighPass,
        products: Sequence[Tuple[str, str]] = PRODUCTS,
    ) -> Dict[Tuple[str, str], SeriesImage]:
        """Return the requested normalisation products of ``run``.

        The backend only runs if one of the requested products is missing.
        """
        keys = {p: self.key(run.name, p[0], p[1], highpass) for p in products}

        def compute() -> Dict[ArtifactKey, SeriesImage]:
            logger.info('Computing high-pass/VN of %s (backend: %s)', run.name, self.backend.name)
            produced = self.backend.normalize(NormalizationRequest(run=run, tr=tr, highpass=highpass))
            missing = [p for p in PRODUCTS if p not in produced]
            if missing:
                raise ExternalToolFailure(
                    f"normalisation of {run.name} produced no {', '.join('/'.join(p) for p in missing)}"
                )
            return {self.key(run.name, s, sp, highpass): img for (s, sp), img in produced.items()}

        found = self.cache.fetch(list(keys.values()), compute)
        return {p: found[k] for p, k in keys.items()}


__all__ = [
    'PRODUCTS',
    'VN_FLOOR',
    'highpass_filter',
    'highpass_variance_normalize',
    'remove_polynomial_trend',
    'NormalizationRequest',
    'NormalizationBackend',
    'NativeNormalization',
    'CompiledNormalization',
    'ScriptedNormalization',
    'make_normalization_backend',
    'RunNormalizer',
]
