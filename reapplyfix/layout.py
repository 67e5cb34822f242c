"""
reapplyfix.layout
=================

File naming conventions of an HCP style study folder.  Every scan lives
in its own results directory::

    <study>/<subject>/MNINonLinear/Results/<scan>/<scan>.nii.gz
    <study>/<subject>/MNINonLinear/Results/<scan>/<scan>_Atlas<reg>.dtseries.nii
    ...

The concatenated scan follows exactly the same scheme under its own
name.  :class:`StudyLayout` turns an :class:`~reapplyfix.cache.ArtifactKey`
into a path so the file backed artifact cache needs no knowledge of the
naming rules, and every component receives explicit paths rather than
relying on the current working directory.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Tuple

from .cache import ArtifactKey

# (stage, space) -> file name template.  ``{b}`` is the scan name,
# ``{r}`` the registration string and ``{hp}`` the high-pass label.
NAMING: Dict[Tuple[str, str], str] = {
    ('raw', 'volume'): '{b}.nii.gz',
    ('sbref', 'volume'): '{b}_SBRef.nii.gz',
    ('mean', 'volume'): '{b}_mean.nii.gz',
    ('demean', 'volume'): '{b}_demean.nii.gz',
    ('vn_series', 'volume'): '{b}_hp{hp}_vnts.nii.gz',
    ('vn_map', 'volume'): '{b}_hp{hp}_vn.nii.gz',
    ('hp', 'volume'): '{b}_hp{hp}.nii.gz',
    ('clean', 'volume'): '{b}_hp{hp}_clean.nii.gz',
    ('clean_vn', 'volume'): '{b}_hp{hp}_clean_vn.nii.gz',
    ('brain_mask', 'volume'): '{b}_brain_mask.nii.gz',
    ('raw', 'cifti'): '{b}_Atlas{r}.dtseries.nii',
    ('mean', 'cifti'): '{b}_Atlas{r}_mean.dscalar.nii',
    ('demean', 'cifti'): '{b}_Atlas{r}_demean.dtseries.nii',
    ('vn_series', 'cifti'): '{b}_Atlas{r}_hp{hp}_vn.dtseries.nii',
    ('vn_map', 'cifti'): '{b}_Atlas{r}_hp{hp}_vn.dscalar.nii',
    ('hp', 'cifti'): '{b}_Atlas{r}_hp{hp}.dtseries.nii',
    ('clean', 'cifti'): '{b}_Atlas{r}_hp{hp}_clean.dtseries.nii',
    ('clean_vn', 'cifti'): '{b}_Atlas{r}_hp{hp}_clean_vn.dscalar.nii',
    ('clean', 'record'): '{b}_Atlas{r}_hp{hp}_clean.json',
    ('movement', 'table'): 'Movement_Regressors.txt',
    ('movement_demean', 'table'): 'Movement_Regressors_demean.txt',
}


@dataclass(frozen=True)
class ScanFiles:
    """Paths of one scan (an individual run or the concatenation)."""

    directory: Path
    name: str
    reg_string: str
    hp_label: str

    def path(self, stage: str, space: str = 'volume') -> Path:
        try:
            template = NAMING[(stage, space)]
        except KeyError:
            raise KeyError(f"no file naming rule for stage {stage!r} in space {space!r}") from None
        return self.directory / template.format(b=self.name, r=self.reg_string, hp=self.hp_label)

    @property
    def ica_dir(self) -> Path:
        return self.directory / f'{self.name}_hp{self.hp_label}.ica'

    @property
    def readme(self) -> Path:
        clean = self.path('clean', 'cifti')
        return clean.with_name(clean.name[: -len('.dtseries.nii')] + '.README.txt')

    @property
    def manifest(self) -> Path:
        return self.directory / f'{self.name}_manifest.json'


@dataclass(frozen=True)
class StudyLayout:
    """Locate all files of one subject for a given high-pass and registration."""

    study_folder: Path
    subject: str
    reg_string: str
    hp_label: str

    @property
    def results_dir(self) -> Path:
        return Path(self.study_folder) / self.subject / 'MNINonLinear' / 'Results'

    def scan(self, name: str) -> ScanFiles:
        return ScanFiles(
            directory=self.results_dir / name,
            name=name,
            reg_string=self.reg_string,
            hp_label=self.hp_label,
        )

    def resolve(self, key: ArtifactKey) -> Path:
        return self.scan(key.run_id).path(key.stage, key.space)

    def matlab_log(self, concat_name: str) -> Path:
        return Path(self.study_folder) / (
            f'{self.subject}_{concat_name}{self.reg_string}_hp{self.hp_label}.matlab.log'
        )


__all__ = [
    'NAMING',
    'ScanFiles',
    'StudyLayout',
]
