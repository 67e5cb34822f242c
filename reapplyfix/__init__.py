"""
reapplyfix
==========

Re-application of a multi-run FIX (ICA based artefact removal)
decomposition to the individual runs it was computed from.

Several fMRI runs of a subject were concatenated, decomposed with ICA and
classified into signal and noise components.  This package reproduces
the exact concatenated input, removes the noise components from it and
splits the cleaned result back into runs on each run's own scale.

The key modules include:

* ``config`` - user options, high-pass parsing and tool locations.
* ``series_io`` - NIfTI/CIFTI loading and saving as ``(T, S)`` arrays.
* ``demean`` - per-run temporal mean removal.
* ``normalize`` - per-run high-pass filtering and variance normalisation.
* ``concat`` - concatenation, map pooling and the run manifest.
* ``rescale`` - pooled-scale restoration and per-run rescaling.
* ``cleanup`` - invocation of the external ``fix_3_clean``.
* ``cache`` - resumable artifact storage.
* ``pipeline`` - orchestration of the whole re-application.

See ``reapplyfix.main`` for the command line interface.
"""

from .config import HighPass, ReApplyFixConfig, RunMode, ToolEnvironment
from .errors import (
    ConfigurationError,
    ExternalToolFailure,
    PrerequisiteMissing,
    ReApplyFixError,
    ShapeMismatch,
)
from .concat import RunManifest, RunSegment
from .pipeline import PipelineResult, PipelineState, ReApplyFixPipeline, run_pipeline

__all__ = [
    'ConfigurationError',
    'ExternalToolFailure',
    'HighPass',
    'PipelineResult',
    'PipelineState',
    'PrerequisiteMissing',
    'ReApplyFixConfig',
    'ReApplyFixError',
    'ReApplyFixPipeline',
    'RunManifest',
    'RunMode',
    'RunSegment',
    'ShapeMismatch',
    'ToolEnvironment',
    'run_pipeline',
]
