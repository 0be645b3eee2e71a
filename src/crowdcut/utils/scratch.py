"""Scratch space for intermediate media files.

Frames and other intermediates live under ``<work_dir>/tmp/<area>/`` in
per-call directories that are removed as soon as the call returns. Anything
left behind by a crashed process is swept by ``CleanupService``.
"""

from __future__ import annotations

import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

SCRATCH_DIRNAME = "tmp"


def scratch_root(work_dir: Path) -> Path:
    return Path(work_dir) / SCRATCH_DIRNAME


@contextmanager
def scratch_dir(work_dir: Path, area: str, owner: str) -> Iterator[Path]:
    """Yield a fresh directory under ``<work_dir>/tmp/<area>``, deleted on exit.

    Args:
        work_dir: Pipeline working directory.
        area: Stage name, e.g. ``"quality"``.
        owner: Prefix for the directory name, usually a recording id.
    """
    root = scratch_root(work_dir) / area
    root.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(dir=root, prefix=f"{owner}_") as tmpdir:
        yield Path(tmpdir)
