"""
Render error types.

All errors inherit from RenderError so callers can catch the whole family.
Tool-level failures (launch, exit code, timeout) are re-raised by the step
that ran the tool as SegmentRenderFailed or ConcatenationFailed.
"""

from typing import Optional


class RenderError(Exception):
    """Base exception for every render-related failure."""


class Busy(RenderError):
    """Another job currently holds the active-job gate."""

    def __init__(self, active_job_id: Optional[str] = None):
        self.active_job_id = active_job_id
        super().__init__("Server is busy processing another job. Please try again later.")


class NotFound(RenderError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class DuplicateJob(RenderError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} already exists")


class InvalidTransition(RenderError):
    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id}: invalid status transition {current} -> {target}")


class SubprocessLaunchFailed(RenderError):
    """The tool executable is missing or could not be started."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class ToolExited(RenderError):
    def __init__(self, tool: str, returncode: int):
        self.tool = tool
        self.returncode = returncode
        super().__init__(f"{tool} exited with code {returncode}")


class ToolTimedOut(RenderError):
    def __init__(self, tool: str, seconds: float):
        self.tool = tool
        self.seconds = seconds
        super().__init__(f"{tool} did not finish within {seconds:g}s and was killed")


class SegmentRenderFailed(RenderError):
    def __init__(self, index: int, detail: str):
        self.index = index
        self.detail = detail
        super().__init__(f"Segment for track {index} failed: {detail}")


class ConcatenationFailed(RenderError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Concatenation failed: {detail}")
