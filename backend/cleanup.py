"""
Job retention and cleanup.

CleanupScheduler arms one deferred purge per finished job. When it fires it
deletes the job's working directory, closes its event channel and evicts it
from the registry, in that order, so no download is offered after the files
are gone.

sweep_stale_dirs() runs once at startup and removes job directories that a
previous process left behind (jobs never survive a restart).
"""

import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import Dict, Optional

import config
from errors import NotFound
from events import EventBus
from jobs import JobRegistry

logger = logging.getLogger(__name__)


class CleanupScheduler:

    def __init__(
        self,
        registry: JobRegistry,
        bus: EventBus,
        delay_seconds: Optional[float] = None,
    ):
        self.registry = registry
        self.bus = bus
        self.delay_seconds = config.CLEANUP_SECONDS if delay_seconds is None else delay_seconds
        self._tasks: Dict[str, "asyncio.Task[None]"] = {}

    def schedule(self, job_id: str) -> "asyncio.Task[None]":
        """Arm a one-shot purge of *job_id* after the retention window."""
        existing = self._tasks.get(job_id)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.get_running_loop().create_task(
            self._purge_later(job_id), name=f"cleanup-{job_id}"
        )
        self._tasks[job_id] = task
        logger.info(f"[Cleanup] Scheduled cleanup for job {job_id} in {self.delay_seconds:g}s")
        return task

    def pending(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def _purge_later(self, job_id: str) -> None:
        try:
            await asyncio.sleep(self.delay_seconds)
            await self.purge(job_id)
        finally:
            self._tasks.pop(job_id, None)

    async def purge(self, job_id: str) -> None:
        """Delete storage, close the channel, evict the record. Idempotent."""
        try:
            job = self.registry.get(job_id)
        except NotFound:
            job = None

        if job is not None:
            await asyncio.to_thread(remove_tree, Path(job.temp_dir))

        self.bus.teardown(job_id)
        self.registry.delete(job_id)

    async def shutdown(self) -> None:
        """Cancel every pending timer and purge those jobs right away."""
        tasks = dict(self._tasks)
        for task in tasks.values():
            task.cancel()
        for job_id, task in tasks.items():
            try:
                await task
            except asyncio.CancelledError:
                pass
            await self.purge(job_id)
        self._tasks.clear()


def remove_tree(path: Path) -> bool:
    """
    Recursively delete *path*. A path that is already gone counts as success.
    Other filesystem errors are logged, never raised.
    """
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return True
    except OSError as exc:
        logger.error(f"[Cleanup] Could not delete {path}: {exc!r}")
        return False
    logger.info(f"[Cleanup] Deleted {path}")
    return True


def sweep_stale_dirs(
    root: Optional[str] = None,
    max_age: Optional[float] = None,
) -> int:
    """Delete job directories under *root* older than *max_age* seconds."""
    temp_path = Path(root or config.TEMP_DIR)
    if max_age is None:
        max_age = config.CLEANUP_SECONDS
    if not temp_path.exists():
        return 0

    now = time.time()
    deleted = 0

    for entry in temp_path.iterdir():
        if not entry.is_dir() or not entry.name.startswith(config.JOB_DIR_PREFIX):
            continue
        age = now - entry.stat().st_mtime
        if age > max_age and remove_tree(entry):
            deleted += 1

    if deleted:
        logger.info(f"[Cleanup] Swept {deleted} stale job dir(s) from {temp_path}")
    return deleted
