"""
In-memory job registry. No database - all state lives in this object.
A server restart clears every job (and the sweep in cleanup.py removes
whatever working directories the previous process left behind).

Besides the job records the registry owns the active-job gate: a single
optional job id that at most one job may hold while it is processing.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, field_validator

import config
from errors import Busy, DuplicateJob, InvalidTransition, NotFound

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Render request metadata
# ---------------------------------------------------------------------------

class Track(BaseModel):
    title: Optional[str] = None


class RenderMeta(BaseModel):
    tracks: List[Track]
    width: int
    height: int
    fps: int

    @field_validator("tracks")
    @classmethod
    def validate_tracks(cls, v: List[Track]) -> List[Track]:
        if not config.MIN_TRACKS <= len(v) <= config.MAX_TRACKS:
            raise ValueError(
                f"Number of tracks must be between {config.MIN_TRACKS} and "
                f"{config.MAX_TRACKS}, got {len(v)}"
            )
        return v

    @field_validator("width", "height", "fps")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v


# ---------------------------------------------------------------------------
# Job record
# ---------------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.ERROR)


_ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.DONE, JobStatus.ERROR},
    JobStatus.DONE: set(),
    JobStatus.ERROR: set(),
}


def new_job_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Job:
    id: str
    meta: RenderMeta
    temp_dir: Path
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def track_count(self) -> int:
        return len(self.meta.tracks)

    def track_label(self, index: int) -> str:
        """Display title for a track, falling back to its 1-based position."""
        title = self.meta.tracks[index].title
        return title if title else f"Track {index + 1}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status.value,
            "tracks": self.track_count,
            "width": self.meta.width,
            "height": self.meta.height,
            "fps": self.meta.fps,
            "createdAt": self.created_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class JobRegistry:
    """Thread-safe job store plus the single-slot active-job gate."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._active_job_id: Optional[str] = None
        self._lock = threading.Lock()

    def put(self, job: Job) -> None:
        with self._lock:
            if job.id in self._jobs:
                raise DuplicateJob(job.id)
            self._jobs[job.id] = job
        logger.info(f"[Registry] Job {job.id} registered ({job.track_count} tracks)")

    def get(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise NotFound(job_id)
        return job

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def update_status(
        self, job_id: str, status: JobStatus, error: Optional[str] = None
    ) -> None:
        """
        Move a job to *status*. Terminal states stamp completed_at.

        Updates for a job that is already gone (cleaned up) or that would
        move it backwards are logged and dropped.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                logger.warning(f"[Registry] Ignoring status {status.value} for unknown job {job_id}")
                return
            if status not in _ALLOWED_TRANSITIONS[job.status]:
                logger.warning(
                    f"[Registry] Ignoring transition {job.status.value} -> {status.value} "
                    f"for job {job_id}"
                )
                return
            job.status = status
            if status.is_terminal:
                job.completed_at = datetime.now(timezone.utc)
            if error:
                job.error = error
        logger.info(f"[Registry] Job {job_id} -> {status.value}")

    def transition(self, job_id: str, status: JobStatus) -> Job:
        """Strict variant of update_status: raises instead of ignoring."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFound(job_id)
            if status not in _ALLOWED_TRANSITIONS[job.status]:
                raise InvalidTransition(job_id, job.status.value, status.value)
            job.status = status
            if status.is_terminal:
                job.completed_at = datetime.now(timezone.utc)
        logger.info(f"[Registry] Job {job_id} -> {status.value}")
        return job

    # ---- Active-job gate ---------------------------------------------------

    @property
    def active_job_id(self) -> Optional[str]:
        with self._lock:
            return self._active_job_id

    def is_busy(self) -> bool:
        return self.active_job_id is not None

    def try_acquire_gate(self, job_id: str) -> None:
        """Take the gate for *job_id* or raise Busy. Never waits."""
        with self._lock:
            if self._active_job_id is not None and self._active_job_id != job_id:
                raise Busy(self._active_job_id)
            self._active_job_id = job_id

    def release_gate(self, job_id: str) -> None:
        """Clear the gate, but only if *job_id* is the one holding it."""
        with self._lock:
            if self._active_job_id == job_id:
                self._active_job_id = None
                return
        logger.debug(f"[Registry] Stale gate release from {job_id} ignored")

    def delete(self, job_id: str) -> None:
        with self._lock:
            if self._active_job_id == job_id:
                self._active_job_id = None
            removed = self._jobs.pop(job_id, None)
        if removed is not None:
            logger.info(f"[Registry] Job {job_id} evicted")
