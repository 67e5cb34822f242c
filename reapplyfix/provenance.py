"""Human readable provenance notes written next to per-run cleaned outputs."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

TOOL_NAME = 'ReApplyFixMultiRun'


def write_readme(readme: str | Path, output: str | Path, runs: Sequence[str | Path]) -> Path:
    """Write a note listing the runs that were cleaned together.

    The note is rewritten on every call so repeated invocations do not
    accumulate duplicate entries.
    """
    readme = Path(readme)
    lines = [
        f'{Path(output).name} was generated by applying "multi-run FIX" '
        f"(using '{TOOL_NAME}')",
        'across the following individual runs:',
    ]
    lines.extend(f'  {run}' for run in runs)
    readme.parent.mkdir(parents=True, exist_ok=True)
    readme.write_text('\n'.join(lines) + '\n')
    return readme


__all__ = ['write_readme']
