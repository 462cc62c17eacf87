"""MaintenanceScheduler — periodic sweeps and custom-drive scans on APScheduler."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tmacloud.fs.reconcile import OrphanSweeper, ShareSweeper, TrashSweeper

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import timedelta

    from tmacloud.fs.scanner import CustomDriveScanner
    from tmacloud.fs.tree import FileTree

logger = logging.getLogger(__name__)

TRASH_JOB_ID = "trash_sweep"
ORPHAN_JOB_ID = "orphan_sweep"
SHARE_JOB_ID = "share_sweep"
SCAN_JOB_ID = "custom_drive_scan"


class MaintenanceScheduler:
    """Runs the trash, orphan, and share sweeps (and drive scans) on intervals.

    Each job is registered with ``coalesce=True`` and ``max_instances=1``
    so a slow run is never overlapped by its own next firing. ``start``
    must be called from a running event loop.
    """

    def __init__(self, tree: FileTree, scanner: CustomDriveScanner | None = None) -> None:
        self._tree = tree
        self._scanner = scanner
        self.trash_sweeper = TrashSweeper(tree)
        self.orphan_sweeper = OrphanSweeper(tree)
        self.share_sweeper = ShareSweeper(tree)
        self.scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 300},
            timezone="UTC",
        )
        self._register_jobs()

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def _register_jobs(self) -> None:
        config = self._tree.config
        self._add(TRASH_JOB_ID, self.trash_sweeper.run_once, config.trash_sweep_interval)
        self._add(ORPHAN_JOB_ID, self.orphan_sweeper.run_once, config.orphan_sweep_interval)
        self._add(SHARE_JOB_ID, self.share_sweeper.run_once, config.share_sweep_interval)
        if self._scanner is not None:
            self._add(SCAN_JOB_ID, self._scanner.scan_all, config.scan_interval)

    def _add(
        self, job_id: str, func: Callable[[], Awaitable[Any]], interval: timedelta
    ) -> None:
        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=interval.total_seconds()),
            id=job_id,
            name=job_id,
            replace_existing=True,
        )
        logger.debug("Scheduled %s every %s", job_id, interval)

    def job_ids(self) -> list[str]:
        return sorted(job.id for job in self.scheduler.get_jobs())

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.scheduler.start()
        logger.info("Maintenance scheduler started with jobs: %s", ", ".join(self.job_ids()))

    def shutdown(self, *, wait: bool = False) -> None:
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=wait)
        logger.info("Maintenance scheduler stopped")

    async def run_all_once(self) -> dict[str, Any]:
        """Run every job immediately, in order, outside the schedule."""
        results: dict[str, Any] = {
            TRASH_JOB_ID: await self.trash_sweeper.run_once(),
            ORPHAN_JOB_ID: await self.orphan_sweeper.run_once(),
            SHARE_JOB_ID: await self.share_sweeper.run_once(),
        }
        if self._scanner is not None:
            results[SCAN_JOB_ID] = await self._scanner.scan_all()
        return results
