"""Housekeeping for scratch files and finished jobs.

Stages delete their own scratch directories on return. This service sweeps
what a crashed or killed process left behind under ``<work_dir>/tmp`` and
forgets finished jobs so the in-memory queue does not grow without bound.
"""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from crowdcut.config import CleanupOptions
from crowdcut.jobs.queue import JobQueue
from crowdcut.models.schema import utc_now
from crowdcut.utils.scratch import scratch_root

logger = logging.getLogger(__name__)


@dataclass
class CleanupStats:
    """Outcome of one cleanup pass."""

    temp_entries_removed: int = 0
    jobs_pruned: int = 0
    disk_space_freed: int = 0
    dry_run: bool = False
    errors: list[str] = field(default_factory=list)


def _entry_size(path: Path) -> int:
    if path.is_file():
        return path.stat().st_size
    return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())


class CleanupService:
    """Sweep stale scratch entries and prune old finished jobs."""

    def __init__(
        self,
        queue: JobQueue,
        work_dir: Path,
        options: CleanupOptions | None = None,
    ) -> None:
        self.queue = queue
        self.work_dir = Path(work_dir)
        self.options = options or CleanupOptions()

    def clean_temp_files(
        self, max_age_hours: float, dry_run: bool = False, stats: CleanupStats | None = None
    ) -> CleanupStats:
        """Remove scratch entries last modified more than ``max_age_hours`` ago.

        Entries are the per-call directories under ``<work_dir>/tmp/<area>``
        plus any stray files at either level. Failures are collected in
        ``stats.errors`` and do not stop the sweep.
        """
        stats = stats or CleanupStats(dry_run=dry_run)
        root = scratch_root(self.work_dir)
        if not root.is_dir():
            return stats

        cutoff = time.time() - max_age_hours * 3600
        candidates: list[Path] = []
        for area in root.iterdir():
            if area.is_dir():
                candidates.extend(area.iterdir())
            else:
                candidates.append(area)

        for entry in candidates:
            try:
                if entry.stat().st_mtime >= cutoff:
                    continue
                size = _entry_size(entry)
                if not dry_run:
                    if entry.is_dir():
                        shutil.rmtree(entry)
                    else:
                        entry.unlink()
                stats.temp_entries_removed += 1
                stats.disk_space_freed += size
            except OSError as e:
                stats.errors.append(f"Failed to remove scratch entry {entry}: {e}")
        return stats

    def prune_jobs(
        self, max_age_hours: float, dry_run: bool = False, stats: CleanupStats | None = None
    ) -> CleanupStats:
        """Forget finished jobs older than ``max_age_hours``."""
        stats = stats or CleanupStats(dry_run=dry_run)
        cutoff = utc_now() - timedelta(hours=max_age_hours)
        stats.jobs_pruned += len(self.queue.prune_jobs(cutoff, dry_run=dry_run))
        return stats

    def perform_cleanup(self, options: CleanupOptions | None = None) -> CleanupStats:
        """Run every cleanup step and report what was (or would be) removed.

        Args:
            options: Overrides for the configured cleanup options.

        Returns:
            CleanupStats. Per-entry failures are listed in ``errors``.
        """
        opts = options or self.options
        start_time = time.perf_counter()
        stats = CleanupStats(dry_run=opts.dry_run)

        self.clean_temp_files(opts.temp_file_max_age_hours, opts.dry_run, stats)
        self.prune_jobs(opts.job_max_age_hours, opts.dry_run, stats)

        elapsed = time.perf_counter() - start_time
        prefix = "Cleanup (dry run)" if opts.dry_run else "Cleanup"
        logger.info(
            f"{prefix} completed in {elapsed:.2f}s: "
            f"{stats.temp_entries_removed} scratch entries, "
            f"{stats.jobs_pruned} jobs, {stats.disk_space_freed} bytes"
        )
        for error in stats.errors:
            logger.warning(error)
        return stats
