"""
reapplyfix.main
===============

Command line entry point.  Options can be given by name::

    reapplyfix --study-folder=/data/study --subject=100610 \\
        --fmri-names=rfMRI_REST1_LR@rfMRI_REST1_RL \\
        --concat-fmri-name=rfMRI_REST1_LR_RL --high-pass=2000

or as nine positional values in the order study folder, subject, fMRI
names, concatenated name, high-pass, registration name, low resolution
mesh, MATLAB run mode and motion regression.  Named options win over
positional values.

Example
-------
python -m reapplyfix.main /data/study 100610 rfMRI_REST1_LR@rfMRI_REST1_RL rfMRI_REST1_LR_RL 2000
"""

from __future__ import annotations

import argparse
import logging
from typing import List, Optional

from .config import (
    DEFAULT_LOW_RES_MESH,
    DEFAULT_MOTION_REGRESSION,
    DEFAULT_REG_NAME,
    ReApplyFixConfig,
    RunMode,
)
from .errors import ReApplyFixError
from .pipeline import ReApplyFixPipeline

logger = logging.getLogger(__name__)

# destination names of the positional values, in order
POSITIONAL = [
    'study_folder',
    'subject',
    'fmri_names',
    'concat_name',
    'high_pass',
    'reg_name',
    'low_res_mesh',
    'run_mode',
    'motion_regression',
]

DEFAULTS = {
    'reg_name': DEFAULT_REG_NAME,
    'low_res_mesh': DEFAULT_LOW_RES_MESH,
    'run_mode': RunMode.MATLAB.value,
    'motion_regression': DEFAULT_MOTION_REGRESSION,
}


def parse_args(args: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='reapplyfix',
        description='Re-apply multi-run FIX cleanup to the individual runs of a concatenation',
    )
    parser.add_argument('positional', nargs='*', metavar='VALUE',
                        help='Legacy positional form: ' + ' '.join(p.upper() for p in POSITIONAL))
    parser.add_argument('--path', '--study-folder', dest='study_folder', default=None,
                        help='Path to folder containing all subjects')
    parser.add_argument('--subject', default=None, help='Subject ID')
    parser.add_argument('--fmri-names', dest='fmri_names', default=None,
                        help="'@' separated list of fMRI file names")
    parser.add_argument('--concat-fmri-name', dest='concat_name', default=None,
                        help='Root name of the concatenated fMRI scan file')
    parser.add_argument('--high-pass', dest='high_pass', default=None,
                        help="High-pass used by the original multi-run FIX (e.g. 2000, 0 or pd2)")
    parser.add_argument('--reg-name', dest='reg_name', default=None,
                        help=f'Surface registration name (default: {DEFAULT_REG_NAME})')
    parser.add_argument('--low-res-mesh', dest='low_res_mesh', default=None,
                        help=f'Low resolution mesh (default: {DEFAULT_LOW_RES_MESH})')
    parser.add_argument('--matlab-run-mode', dest='run_mode', default=None,
                        help='0 = compiled MATLAB, 1 = interpreted MATLAB (default), 2 = Octave')
    parser.add_argument('--motion-regression', dest='motion_regression', default=None,
                        help=f'Perform motion regression (default: {DEFAULT_MOTION_REGRESSION})')
    parser.add_argument('--native-vn', dest='native_normalization', action='store_true',
                        help='Compute high-pass and variance normalisation in-process')
    parser.add_argument('--keep-intermediates', dest='keep_intermediates', action='store_true',
                        help='Keep per-run demeaned and VN time series after merging')
    parser.add_argument('--force-clean', dest='force_cleanup', action='store_true',
                        help='Re-run cleanup even if cleaned outputs already exist')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')
    ns = parser.parse_args(args)
    if len(ns.positional) > len(POSITIONAL):
        parser.error(f'at most {len(POSITIONAL)} positional values are accepted')
    for dest, value in zip(POSITIONAL, ns.positional):
        if getattr(ns, dest) is None:
            setattr(ns, dest, value)
    for dest, value in DEFAULTS.items():
        if getattr(ns, dest) is None:
            setattr(ns, dest, value)
    return ns


def build_config(ns: argparse.Namespace) -> ReApplyFixConfig:
    return ReApplyFixConfig(
        study_folder=ns.study_folder,
        subject=ns.subject,
        fmri_names=ns.fmri_names,
        concat_name=ns.concat_name,
        high_pass=ns.high_pass,
        reg_name=ns.reg_name,
        low_res_mesh=ns.low_res_mesh,
        run_mode=ns.run_mode,
        motion_regression=ns.motion_regression,
        native_normalization=ns.native_normalization,
        remove_intermediates=not ns.keep_intermediates,
        force_cleanup=ns.force_cleanup,
    )


def main(argv: Optional[List[str]] = None) -> None:
    ns = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if ns.verbose else logging.INFO,
        format='%(asctime)s %(name)s %(levelname)s: %(message)s',
    )
    try:
        result = ReApplyFixPipeline(build_config(ns)).run()
    except ReApplyFixError as e:
        logger.error('%s', e)
        raise SystemExit(f'ERROR: {e}')
    for space, paths in result.outputs.items():
        for path in paths:
            print(f'{space}: {path}')


if __name__ == '__main__':
    main()
