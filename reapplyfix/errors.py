"""
reapplyfix.errors
=================

Exception hierarchy shared by all pipeline components.  Every error is
fatal: the pipeline stops at the state it last reached and the caller
re-runs the whole invocation once the cause has been fixed.  Artifacts
that were already produced are picked up again on the next run.
"""

from __future__ import annotations

from typing import Iterable, List


class ReApplyFixError(RuntimeError):
    """Base class for all errors raised by :mod:`reapplyfix`."""


class ConfigurationError(ReApplyFixError):
    """A required parameter is missing or has an invalid value.

    Parameters
    ----------
    problems : iterable of str
        One message per configuration problem.  Validation collects all
        problems before raising so the user sees the complete list.
    """

    def __init__(self, problems: Iterable[str] | str) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems: List[str] = list(problems)
        if len(self.problems) == 1:
            message = self.problems[0]
        else:
            message = f"{len(self.problems)} configuration problems: " + '; '.join(self.problems)
        super().__init__(message)


class PrerequisiteMissing(ReApplyFixError):
    """An upstream artifact that the current stage needs does not exist."""


class ExternalToolFailure(ReApplyFixError):
    """An external program failed or did not produce its outputs."""


class ShapeMismatch(ReApplyFixError):
    """Merge/split bookkeeping disagrees with the actual data shape."""


__all__ = [
    'ReApplyFixError',
    'ConfigurationError',
    'PrerequisiteMissing',
    'ExternalToolFailure',
    'ShapeMismatch',
]
