"""
reapplyfix.cache
================

Artifact caching used to make every pipeline stage resumable.

A stage asks the cache for the artifacts it is about to produce.  If all
of them already exist they are returned as they are; otherwise the stage
computes them, the cache stores every produced artifact and hands the
requested ones back.  Artifacts are addressed by an :class:`ArtifactKey`
made of the stage name, the run identifier, the space (``'volume'``,
``'cifti'``, ``'table'`` or ``'record'``) and a digest of the parameters that shaped
the artifact.

Two implementations are provided:

* :class:`MemoryArtifactCache` keeps everything in a dictionary and is
  mostly useful for tests.
* :class:`FileArtifactCache` maps keys to files through a resolver
  callable (normally :meth:`reapplyfix.layout.StudyLayout.resolve`);
  existence of the file means the artifact exists.
"""

from __future__ import annotations

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Sequence

import pandas as pd

from .errors import PrerequisiteMissing
from .series_io import (
    SeriesImage,
    load_series,
    read_motion_regressors,
    save_series,
    write_motion_regressors,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArtifactKey:
    """Identify one artifact: ``(stage, run_id, space, digest)``."""

    stage: str
    run_id: str
    space: str = 'volume'
    digest: str = ''

    @classmethod
    def create(cls, stage: str, run_id: str, space: str = 'volume', **params: Any) -> 'ArtifactKey':
        """Build a key whose digest is derived from ``params``."""
        digest = ''
        if params:
            payload = json.dumps(params, sort_keys=True, default=str)
            digest = hashlib.sha1(payload.encode('utf-8')).hexdigest()[:12]
        return cls(stage=stage, run_id=run_id, space=space, digest=digest)

    def __str__(self) -> str:
        return f"{self.run_id}:{self.stage}[{self.space}]"


class ArtifactCache(ABC):
    """Cached-or-compute access to pipeline artifacts."""

    @abstractmethod
    def exists(self, key: ArtifactKey) -> bool:
        raise NotImplementedError

    @abstractmethod
    def load(self, key: ArtifactKey) -> Any:
        raise NotImplementedError

    @abstractmethod
    def store(self, key: ArtifactKey, value: Any) -> None:
        raise NotImplementedError

    @abstractmethod
    def remove(self, key: ArtifactKey) -> None:
        raise NotImplementedError

    # ------------------------------------------------------------------
    def fetch(
        self,
        keys: Sequence[ArtifactKey],
        compute: Callable[[], Mapping[ArtifactKey, Any]],
    ) -> Dict[ArtifactKey, Any]:
        """Return the artifacts for ``keys``, computing them if any is missing.

        ``compute`` returns a mapping that must contain every requested
        key; it may contain further artifacts produced as a side product,
        which are stored as well.
        """
        if all(self.exists(k) for k in keys):
            logger.debug('Reusing cached %s', ', '.join(str(k) for k in keys))
            return {k: self.load(k) for k in keys}
        produced = compute()
        missing = [str(k) for k in keys if k not in produced]
        if missing:
            raise KeyError(f"computation did not produce {', '.join(missing)}")
        for key, value in produced.items():
            self.store(key, value)
        return {k: produced[k] for k in keys}

    def require(self, key: ArtifactKey, description: str | None = None) -> Any:
        """Load an upstream artifact or abort with :class:`PrerequisiteMissing`."""
        if not self.exists(key):
            raise PrerequisiteMissing(f"{description or 'artifact'} not found: {self.describe(key)}")
        return self.load(key)

    def describe(self, key: ArtifactKey) -> str:
        return str(key)


class MemoryArtifactCache(ArtifactCache):
    """Artifact cache held in a dictionary."""

    def __init__(self) -> None:
        self._items: Dict[ArtifactKey, Any] = {}

    def exists(self, key: ArtifactKey) -> bool:
        return key in self._items

    def load(self, key: ArtifactKey) -> Any:
        return self._items[key]

    def store(self, key: ArtifactKey, value: Any) -> None:
        self._items[key] = value

    def remove(self, key: ArtifactKey) -> None:
        self._items.pop(key, None)

    def __len__(self) -> int:
        return len(self._items)


class FileArtifactCache(ArtifactCache):
    """Artifact cache backed by deterministically named files.

    Parameters
    ----------
    resolver : callable
        Maps an :class:`ArtifactKey` to the path of its file.  The digest
        is not part of the file name; the naming convention already
        encodes the parameters (high-pass label, registration string).
    """

    def __init__(self, resolver: Callable[[ArtifactKey], Path]) -> None:
        self.resolver = resolver

    def path(self, key: ArtifactKey) -> Path:
        return Path(self.resolver(key))

    def describe(self, key: ArtifactKey) -> str:
        return str(self.path(key))

    def exists(self, key: ArtifactKey) -> bool:
        return self.path(key).exists()

    def load(self, key: ArtifactKey) -> Any:
        path = self.path(key)
        if key.space == 'table':
            return read_motion_regressors(path)
        if key.space == 'record':
            with open(path, 'r') as fh:
                return json.load(fh)
        return load_series(path)

    def store(self, key: ArtifactKey, value: Any) -> None:
        path = self.path(key)
        if key.space == 'record':
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w') as fh:
                json.dump(dict(value), fh, indent=2)
        elif isinstance(value, SeriesImage):
            if value.path is not None and Path(value.path) == path and path.exists():
                # written in place by an external tool
                return
            save_series(value, path)
        elif isinstance(value, pd.DataFrame):
            write_motion_regressors(value, path)
        else:
            raise TypeError(f"cannot store {type(value).__name__} for {key}")

    def remove(self, key: ArtifactKey) -> None:
        path = self.path(key)
        if path.exists():
            logger.debug('Removing %s', path)
            path.unlink()


__all__ = [
    'ArtifactKey',
    'ArtifactCache',
    'MemoryArtifactCache',
    'FileArtifactCache',
]
