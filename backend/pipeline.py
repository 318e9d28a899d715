"""
Render job orchestrator.

start(job_id) runs the whole pipeline for one admitted job:
  1. Render one segment per track, in track order (seg_01.mp4, seg_02.mp4, ...)
  2. Concatenate the segments losslessly into output.mp4
  3. Mark the job done (or error), release the gate, schedule cleanup

Progress and ffmpeg output are published on the job's event bus channel as
they happen. The first failure aborts everything that is left.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from cleanup import CleanupScheduler
from errors import InvalidTransition
from events import DoneEvent, ErrorEvent, EventBus, LogEvent, ProgressEvent
from jobs import Job, JobRegistry, JobStatus
from video import OUTPUT_FILENAME, Runner, concatenate_segments, render_segment, run_ffmpeg

logger = logging.getLogger(__name__)

DOWNLOAD_URL_TEMPLATE: str = "/api/render/{job_id}/download"


class RenderOrchestrator:

    def __init__(
        self,
        registry: JobRegistry,
        bus: EventBus,
        scheduler: CleanupScheduler,
        runner: Runner = run_ffmpeg,
        download_url_template: str = DOWNLOAD_URL_TEMPLATE,
    ):
        self.registry = registry
        self.bus = bus
        self.scheduler = scheduler
        self.runner = runner
        self.download_url_template = download_url_template

    async def start(self, job_id: str) -> None:
        """
        Run *job_id* to completion.

        Raises NotFound for an unknown job, InvalidTransition if it is not
        pending and Busy if another job holds the gate; all three before any
        state changes. Render failures are not raised: they end the job in
        the error state and are reported as an error event.
        """
        job = self.registry.get(job_id)
        if job.status is not JobStatus.PENDING:
            raise InvalidTransition(job_id, job.status.value, JobStatus.PROCESSING.value)
        self.registry.try_acquire_gate(job_id)
        self.registry.transition(job_id, JobStatus.PROCESSING)

        try:
            output_path = await self._render(job)
        except asyncio.CancelledError:
            self._fail(job_id, "Render cancelled")
            raise
        except Exception as exc:
            logger.exception(f"[Render] Job {job_id} failed")
            self._fail(job_id, str(exc))
            return

        self._succeed(job_id, output_path)

    # ---- Pipeline -----------------------------------------------------------

    async def _render(self, job: Job) -> Path:
        total = job.track_count
        meta = job.meta
        self._log(job.id, "Starting render job...")
        self._log(job.id, f"Processing {total} tracks at {meta.width}x{meta.height}@{meta.fps}fps")

        def emit(line: str) -> None:
            self._log(job.id, line)

        segments: List[Path] = []
        for index in range(total):
            self.bus.publish(job.id, ProgressEvent.segment(index, total))
            self._log(job.id, f"[{index + 1}/{total}] Processing: {job.track_label(index)}")

            segments.append(await render_segment(job, index, emit, runner=self.runner))

            self._log(job.id, f"[{index + 1}/{total}] Segment complete")

        self.bus.publish(job.id, ProgressEvent.concat())
        self._log(job.id, "Concatenating segments...")

        output_path = await concatenate_segments(job, segments, emit, runner=self.runner)

        self._log(job.id, "Render complete!")
        return output_path

    # ---- Terminal transitions ------------------------------------------------

    def _succeed(self, job_id: str, output_path: Path) -> None:
        logger.info(f"[Render] Job {job_id} done: {output_path}")
        self.registry.update_status(job_id, JobStatus.DONE)
        self.bus.publish(job_id, DoneEvent(self.download_url(job_id)))
        self.registry.release_gate(job_id)
        self.scheduler.schedule(job_id)

    def _fail(self, job_id: str, message: str) -> None:
        self.registry.update_status(job_id, JobStatus.ERROR, error=message)
        self.bus.publish(job_id, ErrorEvent(f"Render failed: {message}"))
        self.registry.release_gate(job_id)
        self.scheduler.schedule(job_id)

    # ---- Helpers -------------------------------------------------------------

    def download_url(self, job_id: str) -> str:
        return self.download_url_template.format(job_id=job_id)

    def _log(self, job_id: str, message: str) -> None:
        self.bus.publish(job_id, LogEvent(message))


def output_path_for(job: Job) -> Optional[Path]:
    """Final artifact of a finished job, or None if it is not (or no longer) there."""
    if job.status is not JobStatus.DONE:
        return None
    path = Path(job.temp_dir) / OUTPUT_FILENAME
    return path if path.is_file() else None
