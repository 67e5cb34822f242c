"""Tests for the artifact caches."""

from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest

from reapplyfix.cache import ArtifactKey, FileArtifactCache, MemoryArtifactCache
from reapplyfix.errors import PrerequisiteMissing


def test_key_digest_depends_on_params() -> None:
    a = ArtifactKey.create('vn_map', 'run1', 'cifti', highpass='2000')
    b = ArtifactKey.create('vn_map', 'run1', 'cifti', highpass='2000')
    c = ArtifactKey.create('vn_map', 'run1', 'cifti', highpass='pd2')
    assert a == b
    assert a != c
    assert ArtifactKey.create('mean', 'run1').digest == ''


def test_memory_cache_computes_once() -> None:
    cache = MemoryArtifactCache()
    key = ArtifactKey.create('mean', 'run1')
    side = ArtifactKey.create('demean', 'run1')
    calls = []

    def compute():
        calls.append(1)
        return {key: 'mean', side: 'demeaned'}

    assert cache.fetch([key], compute) == {key: 'mean'}
    assert cache.fetch([key, side], compute) == {key: 'mean', side: 'demeaned'}
    assert len(calls) == 1
    assert len(cache) == 2


def test_fetch_requires_all_requested_keys() -> None:
    cache = MemoryArtifactCache()
    key = ArtifactKey.create('mean', 'run1')
    with pytest.raises(KeyError):
        cache.fetch([key], lambda: {})


def test_require_raises_prerequisite_missing() -> None:
    cache = MemoryArtifactCache()
    with pytest.raises(PrerequisiteMissing, match='VN map'):
        cache.require(ArtifactKey.create('vn_map', 'run1'), 'VN map')


def test_file_cache_does_not_rewrite_existing(tmp_path: Path) -> None:
    cache = FileArtifactCache(lambda k: tmp_path / k.run_id / f'{k.stage}.txt')
    key = ArtifactKey('movement_demean', 'run1', 'table')
    table = pd.DataFrame([[1.0, 2.0], [3.0, 4.0]])
    calls = []

    def compute():
        calls.append(1)
        return {key: table}

    cache.fetch([key], compute)
    path = tmp_path / 'run1' / 'movement_demean.txt'
    assert path.exists()
    mtime = path.stat().st_mtime_ns

    loaded = cache.fetch([key], compute)[key]
    assert len(calls) == 1
    assert path.stat().st_mtime_ns == mtime
    assert loaded.to_numpy().tolist() == [[1.0, 2.0], [3.0, 4.0]]

    cache.remove(key)
    assert not cache.exists(key)


def test_file_cache_rejects_unknown_values(tmp_path: Path) -> None:
    cache = FileArtifactCache(lambda k: tmp_path / 'x')
    with pytest.raises(TypeError):
        cache.store(ArtifactKey('mean', 'run1'), object())


def test_file_cache_records_are_json(tmp_path: Path) -> None:
    cache = FileArtifactCache(lambda k: tmp_path / k.run_id / f'{k.stage}.json')
    key = ArtifactKey('clean', 'concat', 'record')
    assert not cache.exists(key)
    cache.store(key, {'signature': 'abc123', 'component_list': 'HandNoise.txt'})
    assert cache.load(key) == {'signature': 'abc123', 'component_list': 'HandNoise.txt'}
    cache.store(key, {'signature': 'def456'})
    assert cache.load(key)['signature'] == 'def456'
