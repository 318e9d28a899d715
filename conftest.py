import asyncio
from pathlib import Path
from typing import List, Optional, Sequence

import pytest

from cleanup import CleanupScheduler
from errors import ToolExited
from events import EventBus
from jobs import Job, JobRegistry, RenderMeta, Track, new_job_id
from pipeline import RenderOrchestrator


class FakeFFmpeg:
    """
    Stand-in for video.run_ffmpeg: records argument lists, emits a couple of
    stderr-like lines and writes the output file (last argument). Fails with
    a non-zero exit when the output file name equals *fail_on*.
    """

    def __init__(self, fail_on: Optional[str] = None, lines: Sequence[str] = ("frame=1", "frame=2")):
        self.fail_on = fail_on
        self.lines = list(lines)
        self.calls: List[List[str]] = []

    async def __call__(self, args, on_line) -> None:
        self.calls.append(list(args))
        for line in self.lines:
            on_line(line)
        output = Path(args[-1])
        if self.fail_on is not None and output.name == self.fail_on:
            raise ToolExited("ffmpeg", 1)
        output.write_bytes(b"fake mp4 data")

    @property
    def outputs(self) -> List[str]:
        return [Path(call[-1]).name for call in self.calls]


class GatedFFmpeg(FakeFFmpeg):
    """FakeFFmpeg that parks every call until release is set."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, args, on_line) -> None:
        self.started.set()
        await self.release.wait()
        await super().__call__(args, on_line)


@pytest.fixture()
def registry():
    return JobRegistry()


@pytest.fixture()
def bus():
    return EventBus()


@pytest.fixture()
def make_job(tmp_path, registry):
    """Stage input files for a job and register it as pending."""

    def _make(
        tracks: int = 2,
        width: int = 1920,
        height: int = 1080,
        fps: int = 30,
        titles: Optional[Sequence[Optional[str]]] = None,
        missing: Sequence[str] = (),
        register: bool = True,
    ) -> Job:
        job_id = new_job_id()
        temp_dir = tmp_path / f"audio2mp4-{job_id}-x"
        temp_dir.mkdir()
        for i in range(tracks):
            if f"image_{i}" not in missing:
                (temp_dir / f"image_{i}.png").write_bytes(b"png")
            if f"audio_{i}" not in missing:
                (temp_dir / f"audio_{i}.mp3").write_bytes(b"mp3")
        titles = titles or [None] * tracks
        meta = RenderMeta(
            tracks=[Track(title=t) for t in titles],
            width=width,
            height=height,
            fps=fps,
        )
        job = Job(id=job_id, meta=meta, temp_dir=temp_dir)
        if register:
            registry.put(job)
        return job

    return _make


@pytest.fixture()
def make_orchestrator(registry, bus):
    """Orchestrator wired to the test registry/bus with a fake ffmpeg."""

    def _make(runner=None, delay_seconds: float = 3600):
        scheduler = CleanupScheduler(registry, bus, delay_seconds=delay_seconds)
        return RenderOrchestrator(registry, bus, scheduler, runner=runner or FakeFFmpeg())

    return _make


async def collect(subscription) -> list:
    return [event async for event in subscription]
