"""
reapplyfix.pipeline
===================

Orchestration of a multi-run FIX re-application.

The pipeline walks through the following states, each gated by the
existence of its output artifacts so an interrupted invocation resumes
where it stopped::

    NOT_STARTED -> PER_RUN_NORMALIZED -> MERGED -> POOLED_SCALED
                -> CLEANED -> SPLIT -> RESCALED -> DONE

1. **Per-run preparation** - demean the motion regressors, the volume
   and the CIFTI series of every run and obtain their high-pass/VN
   products (:class:`~reapplyfix.normalize.RunNormalizer`).
2. **Merge** - concatenate demeaned and VN series, pool the mean, VN and
   SBRef maps (:mod:`reapplyfix.concat`).
3. **Pooled scaling** - multiply the concatenated VN series by the
   pooled VN map (:func:`~reapplyfix.rescale.restore_pooled_scale`).
4. **Cleanup** - run ``fix_3_clean`` on the concatenation
   (:class:`~reapplyfix.cleanup.CleanupInvoker`).
5. **Split and rescale** - cut the cleaned series back into runs and
   restore each run's own VN scale and mean
   (:func:`~reapplyfix.rescale.rescale_segment`).

The volume is only cleaned, split and rescaled when a hand
reclassification exists and no alternative surface registration is in
use; otherwise the volume was handled by an earlier pass.

Cleanup and the per-run outputs are gated on more than existence: the
:func:`~reapplyfix.cleanup.cleanup_signature` of the component list and
options is recorded in ``<name>_Atlas<r>_hp<hp>_clean.json`` next to the
concatenated and per-run outputs.  A new or edited ``HandNoise.txt``
changes the signature, so it is re-applied without ``force_cleanup``.

Example
-------
>>> from reapplyfix import ReApplyFixConfig, ReApplyFixPipeline
>>> cfg = ReApplyFixConfig(study_folder='/data/study', subject='100610',
...                        fmri_names='rfMRI_REST1_LR@rfMRI_REST1_RL',
...                        concat_name='rfMRI_REST1_LR_RL', high_pass='2000')
>>> result = ReApplyFixPipeline(cfg).run()
>>> result.state
<PipelineState.DONE: 8>
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np

from .cache import ArtifactCache, ArtifactKey, FileArtifactCache
from .cleanup import (
    CleanupBackend,
    CleanupInvoker,
    CleanupOptions,
    cleanup_signature,
    has_hand_classification,
    make_cleanup_backend,
    select_component_list,
)
from .concat import Product, RunManifest, concatenate, pool_maps, split
from .config import ReApplyFixConfig
from .demean import demean, demean_motion_regressors
from .errors import PrerequisiteMissing, ShapeMismatch
from .layout import ScanFiles, StudyLayout
from .normalize import (
    PRODUCTS,
    NormalizationBackend,
    RunNormalizer,
    make_normalization_backend,
)
from .provenance import write_readme
from .rescale import rescale_segment, restore_pooled_scale
from .series_io import SeriesImage, load_series, read_length, read_motion_regressors, read_tr

logger = logging.getLogger(__name__)

SPACES = ('volume', 'cifti')


class PipelineState(Enum):
    NOT_STARTED = 1
    PER_RUN_NORMALIZED = 2
    MERGED = 3
    POOLED_SCALED = 4
    CLEANED = 5
    SPLIT = 6
    RESCALED = 7
    DONE = 8


@dataclass
class PipelineResult:
    """Summary of a finished invocation."""

    state: PipelineState
    manifest: RunManifest
    outputs: Dict[str, List[Path]] = field(default_factory=dict)
    volume_rescaled: bool = False


class ReApplyFixPipeline:
    """Re-apply a multi-run FIX decomposition to its individual runs.

    Parameters
    ----------
    config : ReApplyFixConfig
        Validated on construction.
    cache : ArtifactCache, optional
        Defaults to a :class:`~reapplyfix.cache.FileArtifactCache` over
        the study layout.
    normalization_backend : NormalizationBackend, optional
        Overrides the backend chosen from the configuration.
    cleanup_backend : CleanupBackend, optional
        Overrides the backend chosen from the configuration.
    """

    def __init__(
        self,
        config: ReApplyFixConfig,
        cache: Optional[ArtifactCache] = None,
        normalization_backend: Optional[NormalizationBackend] = None,
        cleanup_backend: Optional[CleanupBackend] = None,
    ) -> None:
        config.validate()
        self.config = config
        self.highpass = config.highpass
        self.run_names = config.run_names
        self.concat_name = config.concat_scan
        self.layout = StudyLayout(
            study_folder=Path(config.study_folder),
            subject=str(config.subject),
            reg_string=config.reg_string,
            hp_label=self.highpass.label,
        )
        self.cache = cache if cache is not None else FileArtifactCache(self.layout.resolve)
        if normalization_backend is None:
            normalization_backend = make_normalization_backend(
                config.mode, config.environment, native=config.native_normalization,
            )
        self.normalizer = RunNormalizer(normalization_backend, self.cache)
        if cleanup_backend is None:
            cleanup_backend = make_cleanup_backend(
                config.mode, config.environment, self.layout.matlab_log(self.concat_name),
            )
        self.invoker = CleanupInvoker(cleanup_backend)
        self.state = PipelineState.NOT_STARTED

    # ------------------------------------------------------------------
    def _key(self, stage: str, run_id: str, space: str) -> ArtifactKey:
        return RunNormalizer.key(run_id, stage, space, self.highpass)

    def _advance(self, state: PipelineState) -> None:
        logger.info('State: %s -> %s', self.state.name, state.name)
        self.state = state

    @property
    def concat(self) -> ScanFiles:
        return self.layout.scan(self.concat_name)

    @property
    def clean_volume(self) -> bool:
        """Whether the volume is part of this re-application."""
        hand = has_hand_classification(self.concat.ica_dir)
        # a non-default registration means the hand classification was
        # already applied to the volume in an earlier pass
        return hand and self.config.reg_name == 'NONE'

    # ------------------------------------------------------------------
    def run(self) -> PipelineResult:
        """Execute (or resume) the pipeline and return its result."""
        logger.info('Starting main functionality')
        clean_volume = self.clean_volume
        logger.info('Volume cleanup: %s', clean_volume)
        manifest = self.prepare_runs()
        self.merge(manifest)
        signature, ran = self.clean(clean_volume)
        outputs = self.split_and_rescale(manifest, clean_volume, signature, refresh=ran)
        self._advance(PipelineState.DONE)
        logger.info('Completing main functionality')
        return PipelineResult(
            state=self.state, manifest=manifest, outputs=outputs,
            volume_rescaled=clean_volume,
        )

    # -- per-run preparation -------------------------------------------
    def prepare_runs(self) -> RunManifest:
        """Demean and normalise every run; return the run manifest."""
        merged = self._merged()
        lengths = []
        for name in self.run_names:
            run = self.layout.scan(name)
            logger.info('Preparing run %s', name)
            for space in SPACES:
                if not run.path('raw', space).exists():
                    raise PrerequisiteMissing(f"Invalid FMRI file: {run.path('raw', space)}")
            self._demean_motion(run)
            for space in SPACES:
                self._demean(run, space, maps_only=merged)
            tr = read_tr(run.path('raw', 'volume'))
            logger.debug('tr: %s', tr)
            products = [p for p in PRODUCTS if p[0] == 'vn_map'] if merged else list(PRODUCTS)
            self.normalizer.normalize(run, tr, self.highpass, products)
            lengths.append(read_length(run.path('raw', 'cifti')))
        manifest = RunManifest.from_lengths(self.run_names, lengths)
        for segment in manifest:
            logger.info('%s: Start=%d Stop=%d', segment.run_id, segment.start, segment.stop)
        self._advance(PipelineState.PER_RUN_NORMALIZED)
        return manifest

    def _demean_motion(self, run: ScanFiles) -> None:
        source = run.path('movement', 'table')
        if not source.exists():
            if self.config.motion_regression_enabled:
                raise PrerequisiteMissing(f"motion regressors not found: {source}")
            logger.debug('No motion regressors for %s', run.name)
            return
        key = self._key('movement_demean', run.name, 'table')
        self.cache.fetch(
            [key], lambda: {key: demean_motion_regressors(read_motion_regressors(source))}
        )

    def _demean(self, run: ScanFiles, space: str, maps_only: bool = False) -> None:
        mean_key = self._key('mean', run.name, space)
        demean_key = self._key('demean', run.name, space)

        def compute() -> Dict[ArtifactKey, SeriesImage]:
            image = load_series(run.path('raw', space))
            demeaned, mean = demean(image.data)
            return {
                mean_key: image.with_data(mean, is_map=True),
                demean_key: image.with_data(demeaned, is_map=False),
            }

        keys = [mean_key] if maps_only else [mean_key, demean_key]
        self.cache.fetch(keys, compute)

    # -- merge and pooled scaling --------------------------------------
    def _merge_keys(self, space: str) -> List[ArtifactKey]:
        stages = ['hp', 'raw', 'mean', 'vn_map']
        if space == 'volume':
            stages += ['sbref', 'brain_mask']
        return [self._key(stage, self.concat_name, space) for stage in stages]

    def _merged(self) -> bool:
        return all(self.cache.exists(k) for space in SPACES for k in self._merge_keys(space))

    def merge(self, manifest: RunManifest) -> None:
        """Build the concatenated, pooled-scale series for both spaces."""
        for space in SPACES:
            keys = self._merge_keys(space)
            self.cache.fetch(keys, lambda space=space: self._merge_space(space, manifest))
        self._check_manifest(manifest)
        self._advance(PipelineState.MERGED)
        self._advance(PipelineState.POOLED_SCALED)
        if self.config.remove_intermediates:
            logger.info("Removing the individual run VN'ed and demeaned time series")
            for name in self.run_names:
                for space in SPACES:
                    self.cache.remove(self._key('demean', name, space))
                    self.cache.remove(self._key('vn_series', name, space))

    def _gather(self, stage: str, space: str, description: str) -> List[SeriesImage]:
        return [
            self.cache.require(self._key(stage, name, space), description)
            for name in self.run_names
        ]

    def _merge_space(self, space: str, manifest: RunManifest) -> Dict[ArtifactKey, SeriesImage]:
        logger.info('Merging %s series of %d runs', space, len(self.run_names))
        runs = self.run_names
        demeaned = self._gather('demean', space, 'demeaned series')
        means = self._gather('mean', space, 'mean map')
        vn_series = self._gather('vn_series', space, 'VN time series')
        vn_maps = self._gather('vn_map', space, 'VN map')

        cat_demean = concatenate([img.data for img in demeaned], runs, Product.DEMEANED)
        cat_vn = concatenate([img.data for img in vn_series], runs, Product.VN_SERIES)
        for cat in (cat_demean, cat_vn):
            if cat.manifest.as_tuples() != manifest.as_tuples():
                raise ShapeMismatch(
                    f"{space} {cat.product.value} lengths {cat.manifest.as_tuples()} "
                    f"differ from {manifest.as_tuples()}"
                )
        pooled_mean = pool_maps([img.data for img in means], runs, Product.MEAN_MAP)
        pooled_vn = pool_maps([img.data for img in vn_maps], runs, Product.VN_MAP)

        template = demeaned[0]
        out = {
            self._key('raw', self.concat_name, space): template.with_data(cat_demean.data + pooled_mean.data),
            self._key('mean', self.concat_name, space): template.with_data(pooled_mean.data, is_map=True),
            self._key('vn_map', self.concat_name, space): template.with_data(pooled_vn.data, is_map=True),
            self._key('hp', self.concat_name, space): template.with_data(
                restore_pooled_scale(cat_vn.data, pooled_vn.data)
            ),
        }
        if space == 'volume':
            sbrefs = []
            for name in runs:
                path = self.layout.scan(name).path('sbref', 'volume')
                if not path.exists():
                    raise PrerequisiteMissing(f"SBRef not found: {path}")
                sbrefs.append(load_series(path).data)
            pooled_sbref = pool_maps(sbrefs, runs, Product.SBREF)
            out[self._key('sbref', self.concat_name, space)] = template.with_data(pooled_sbref.data, is_map=True)
            out[self._key('brain_mask', self.concat_name, space)] = template.with_data(
                (pooled_sbref.data > 0).astype(np.float32), is_map=True
            )
        return out

    def _check_manifest(self, manifest: RunManifest) -> None:
        path = self.concat.manifest
        if path.exists():
            saved = RunManifest.load(path)
            if saved.as_tuples() != manifest.as_tuples():
                raise ShapeMismatch(
                    f"runs {manifest.as_tuples()} differ from the concatenation recorded in {path}"
                )
            return
        manifest.save(path)
        logger.info('Wrote run manifest %s', path)

    # -- cleanup -------------------------------------------------------
    def clean(self, clean_volume: bool) -> Tuple[str, bool]:
        """Run the cleanup unless outputs of the same cleanup exist.

        Returns
        -------
        signature : str
            :func:`~reapplyfix.cleanup.cleanup_signature` of this cleanup.
        ran : bool
            Whether the cleanup backend was invoked.
        """
        options = CleanupOptions(
            motion_regression=self.config.motion_regression_enabled,
            clean_volume=clean_volume,
        )
        component_list = select_component_list(self.concat.ica_dir)
        signature = cleanup_signature(component_list, options)
        record_key = self._key('clean', self.concat_name, 'record')
        keys = {space: self._key('clean', self.concat_name, space) for space in SPACES}
        needed = [keys['cifti']] + ([keys['volume']] if clean_volume else [])
        current = (
            all(self.cache.exists(k) for k in needed)
            and self._recorded_signature(record_key) == signature
        )
        if current and not self.config.force_cleanup:
            logger.info('Cleaned concatenated series already exist; skipping cleanup')
            self._advance(PipelineState.CLEANED)
            return signature, False
        if self.cache.exists(keys['cifti']) and not current:
            logger.info('Existing cleaned series do not match %s and the current options; '
                        're-applying', component_list.name)

        inputs = {
            space: self.cache.require(self._key('hp', self.concat_name, space), f'high-passed {space} series')
            for space in SPACES
        }
        outputs = self.invoker.invoke(self.concat.ica_dir, inputs, options)
        self.cache.store(keys['cifti'], outputs.cifti)
        if outputs.cifti_vn is not None:
            self.cache.store(self._key('clean_vn', self.concat_name, 'cifti'), outputs.cifti_vn)
        if outputs.volume is not None:
            self.cache.store(keys['volume'], outputs.volume)
        if outputs.volume_vn is not None:
            self.cache.store(self._key('clean_vn', self.concat_name, 'volume'), outputs.volume_vn)
        self.cache.store(record_key, {
            'signature': signature,
            'component_list': component_list.name,
            'clean_volume': clean_volume,
        })
        self._advance(PipelineState.CLEANED)
        return signature, True

    def _recorded_signature(self, record_key: ArtifactKey) -> Optional[str]:
        if not self.cache.exists(record_key):
            return None
        return self.cache.load(record_key).get('signature')

    # -- split and rescale ---------------------------------------------
    def split_and_rescale(
        self,
        manifest: RunManifest,
        clean_volume: bool,
        signature: str,
        refresh: bool = False,
    ) -> Dict[str, List[Path]]:
        """Produce per-run cleaned outputs from the cleaned concatenation.

        Per-run outputs are rebuilt when ``refresh`` is set (the
        concatenation was just cleaned) or when they were derived from a
        cleanup with a different ``signature``.
        """
        spaces = ['cifti'] + (['volume'] if clean_volume else [])
        record_keys = [self._key('clean', name, 'record') for name in self.run_names]
        stale = refresh or any(self._recorded_signature(k) != signature for k in record_keys)
        outputs: Dict[str, List[Path]] = {}
        for space in spaces:
            keys = [self._key('clean', name, space) for name in self.run_names]
            if stale:
                for key in keys:
                    self.cache.remove(key)
            self.cache.fetch(keys, lambda space=space: self._rescale_space(space, manifest))
            outputs[space] = [self.layout.resolve(k) for k in keys]
        for key in record_keys:
            self.cache.store(key, {'signature': signature, 'concatenation': self.concat_name})
        if self.state is not PipelineState.SPLIT:
            self._advance(PipelineState.SPLIT)
        self._write_readmes()
        self._advance(PipelineState.RESCALED)
        return outputs

    def _rescale_space(self, space: str, manifest: RunManifest) -> Dict[ArtifactKey, SeriesImage]:
        cleaned = self.cache.require(self._key('clean', self.concat_name, space), f'cleaned {space} series')
        pooled_vn = self.cache.require(self._key('vn_map', self.concat_name, space), 'pooled VN map')
        logger.debug('Splitting %s back into individual runs', space)
        segments = split(cleaned.data, manifest)
        if self.state is not PipelineState.SPLIT:
            self._advance(PipelineState.SPLIT)
        out: Dict[ArtifactKey, SeriesImage] = {}
        for segment, data in zip(manifest, segments):
            run_vn = self.cache.require(self._key('vn_map', segment.run_id, space), 'run VN map')
            run_mean = self.cache.require(self._key('mean', segment.run_id, space), 'run mean map')
            restored = rescale_segment(data, run_vn.data, pooled_vn.data, run_mean.data)
            out[self._key('clean', segment.run_id, space)] = cleaned.with_data(restored, is_map=False)
        return out

    def _write_readmes(self) -> None:
        sources = [self.layout.scan(name).path('raw', 'volume') for name in self.run_names]
        for name in self.run_names:
            run = self.layout.scan(name)
            write_readme(run.readme, run.path('clean', 'cifti'), sources)


def run_pipeline(config: ReApplyFixConfig, **kwargs) -> PipelineResult:
    """Build a :class:`ReApplyFixPipeline` for ``config`` and run it."""
    return ReApplyFixPipeline(config, **kwargs).run()


__all__ = [
    'PipelineResult',
    'PipelineState',
    'ReApplyFixPipeline',
    'run_pipeline',
]
