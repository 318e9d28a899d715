"""
FFmpeg rendering steps.

Key public functions:
  run_ffmpeg(args, on_line)             - spawn ffmpeg, stream its stderr line by line
  render_segment(job, index, emit)      - still image + audio → seg_NN.mp4
  concatenate_segments(job, segs, emit) - lossless join of segments → output.mp4
  probe_duration(path)                  - FFprobe: media length in seconds

Every ffmpeg call goes through run_ffmpeg with an explicit argument list
(no shell). The runner is passed in so the orchestrator and the tests can
swap it for a fake.
"""

import asyncio
import codecs
import json
import logging
import shlex
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

import config
from errors import (
    ConcatenationFailed,
    RenderError,
    SegmentRenderFailed,
    SubprocessLaunchFailed,
    ToolExited,
    ToolTimedOut,
)
from jobs import Job

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]
Runner = Callable[[Sequence[str], LineCallback], Awaitable[None]]

OUTPUT_FILENAME: str = "output.mp4"
CONCAT_LIST_FILENAME: str = "list.txt"
_READ_CHUNK: int = 4096


# ---------------------------------------------------------------------------
# Output stream splitting
# ---------------------------------------------------------------------------

class LineSplitter:
    """
    Incrementally turn raw bytes into text lines.

    ffmpeg ends ordinary lines with \\n and redraws its stats line with \\r,
    so both count as line breaks. A trailing partial line is held until more
    data arrives or flush() is called at process exit.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> List[str]:
        text = self._pending + self._decoder.decode(chunk)
        parts = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
        self._pending = parts.pop()
        return parts

    def flush(self) -> Optional[str]:
        rest = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return rest if rest.strip() else None


# ---------------------------------------------------------------------------
# Low-level subprocess helper
# ---------------------------------------------------------------------------

async def run_ffmpeg(
    args: Sequence[str],
    on_line: LineCallback,
    ffmpeg_path: Optional[str] = None,
    timeout: Optional[float] = None,
) -> None:
    """
    Run ffmpeg with *args* and wait for it to exit.

    stderr carries ffmpeg's progress and diagnostics: each non-blank line is
    handed to *on_line* as soon as it is complete. stdout is drained and only
    logged. Both streams are read concurrently with the exit wait.

    Raises SubprocessLaunchFailed, ToolExited (non-zero exit) or ToolTimedOut.
    """
    executable = ffmpeg_path or config.FFMPEG_PATH
    if timeout is None:
        timeout = config.FFMPEG_TIMEOUT_SECONDS
    timeout = timeout or None  # 0 means no limit
    tool = Path(executable).name

    try:
        proc = await asyncio.create_subprocess_exec(
            executable, *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise SubprocessLaunchFailed(f"Failed to spawn {executable}: {exc}") from exc

    logger.debug(f"[FFmpeg] PID {proc.pid}: {executable} {shlex.join(args)}")

    async def drain_stdout() -> None:
        while True:
            chunk = await proc.stdout.read(_READ_CHUNK)
            if not chunk:
                break
            logger.debug(f"[FFmpeg] stdout: {chunk.decode(errors='replace').rstrip()}")

    async def drain_stderr() -> None:
        splitter = LineSplitter()
        while True:
            chunk = await proc.stderr.read(_READ_CHUNK)
            if not chunk:
                break
            for line in splitter.feed(chunk):
                if line.strip():
                    on_line(line)
        tail = splitter.flush()
        if tail is not None:
            on_line(tail)

    try:
        await asyncio.wait_for(
            asyncio.gather(drain_stdout(), drain_stderr(), proc.wait()),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        await _kill(proc)
        raise ToolTimedOut(tool, timeout)
    except asyncio.CancelledError:
        await _kill(proc)
        raise

    logger.info(f"[FFmpeg] {tool} exited with code {proc.returncode}")
    if proc.returncode != 0:
        raise ToolExited(tool, proc.returncode)


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()


def _announcing(runner: Runner, emit: LineCallback) -> Runner:
    """Wrap *runner* so every invocation is echoed as a `$ ffmpeg ...` line."""
    async def run(args: Sequence[str], on_line: LineCallback) -> None:
        emit(f"$ {config.FFMPEG_PATH} {shlex.join(args)}")
        await runner(args, on_line)
    return run


# ---------------------------------------------------------------------------
# Segment rendering
# ---------------------------------------------------------------------------

def segment_filename(index: int) -> str:
    """Deterministic segment name for a 0-based track index: seg_01.mp4, ..."""
    return f"seg_{index + 1:02d}.mp4"


def find_track_inputs(temp_dir: Path, index: int) -> Tuple[Path, Path]:
    """
    Locate the staged (image, audio) pair for track *index*.

    The admission layer stores them as image_<i>.<ext> and audio_<i>.<ext>,
    whatever the original extension was.
    """
    def find(kind: str) -> Path:
        matches = sorted(Path(temp_dir).glob(f"{kind}_{index}.*"))
        if not matches:
            raise SegmentRenderFailed(index, f"Missing {kind} file for track {index}")
        return matches[0]

    return find("image"), find("audio")


def build_segment_args(
    image_path: Path,
    audio_path: Path,
    output_path: Path,
    width: int,
    height: int,
    fps: int,
) -> List[str]:
    """
    Still image looped for the length of the audio, scaled to fit the frame
    (aspect preserved) and padded to exactly width x height.
    """
    video_filter = (
        f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2"
    )
    return [
        "-y",
        "-loop", "1",
        "-i", str(image_path),
        "-i", str(audio_path),
        "-c:v", "libx264",
        "-tune", "stillimage",
        "-pix_fmt", "yuv420p",
        "-vf", video_filter,
        "-r", str(fps),
        "-c:a", "aac",
        "-shortest",  # segment ends when the audio ends
        "-movflags", "+faststart",
        str(output_path),
    ]


async def render_segment(
    job: Job,
    index: int,
    emit: LineCallback,
    runner: Runner = run_ffmpeg,
) -> Path:
    """Render track *index* of *job* into its segment file and return the path."""
    image_path, audio_path = find_track_inputs(job.temp_dir, index)
    segment_path = Path(job.temp_dir) / segment_filename(index)

    args = build_segment_args(
        image_path, audio_path, segment_path,
        job.meta.width, job.meta.height, job.meta.fps,
    )
    try:
        await _announcing(runner, emit)(args, emit)
    except RenderError as exc:
        raise SegmentRenderFailed(index, str(exc)) from exc

    return segment_path


# ---------------------------------------------------------------------------
# Concatenation
# ---------------------------------------------------------------------------

def _escape_concat_path(path: Path) -> str:
    """Quote a path for the concat demuxer: single quotes become '\\''."""
    text = str(path).replace("\\", "/")
    return "'" + text.replace("'", "'\\''") + "'"


def write_concat_list(list_path: Path, segments: Sequence[Path]) -> None:
    lines = [f"file {_escape_concat_path(Path(s).resolve())}" for s in segments]
    list_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def build_concat_args(list_path: Path, output_path: Path) -> List[str]:
    return [
        "-y",
        "-f", "concat",
        "-safe", "0",
        "-i", str(list_path),
        "-c", "copy",
        str(output_path),
    ]


async def concatenate_segments(
    job: Job,
    segments: Sequence[Path],
    emit: LineCallback,
    runner: Runner = run_ffmpeg,
) -> Path:
    """Join *segments* in order without re-encoding. Returns output.mp4."""
    temp_dir = Path(job.temp_dir)
    list_path = temp_dir / CONCAT_LIST_FILENAME
    output_path = temp_dir / OUTPUT_FILENAME

    missing = [s.name for s in segments if not Path(s).exists()]
    if missing:
        raise ConcatenationFailed(f"Missing segment(s): {', '.join(missing)}")

    try:
        write_concat_list(list_path, segments)
    except OSError as exc:
        raise ConcatenationFailed(f"Could not write {list_path.name}: {exc}") from exc

    try:
        await _announcing(runner, emit)(build_concat_args(list_path, output_path), emit)
    except RenderError as exc:
        raise ConcatenationFailed(str(exc)) from exc

    return output_path


# ---------------------------------------------------------------------------
# FFprobe helper
# ---------------------------------------------------------------------------

async def probe_duration(path: Path, ffprobe_path: Optional[str] = None) -> float:
    """
    Return the container duration of a media file in seconds.

    Not part of the render path: used to check rendered segments and the
    final output against their source audio.
    """
    executable = ffprobe_path or config.FFPROBE_PATH
    try:
        proc = await asyncio.create_subprocess_exec(
            executable, "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            str(path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise SubprocessLaunchFailed(f"Failed to spawn {executable}: {exc}") from exc

    stdout, _ = await proc.communicate()
    if proc.returncode != 0:
        raise ToolExited(Path(executable).name, proc.returncode)

    data = json.loads(stdout.decode(errors="replace") or "{}")
    duration = data.get("format", {}).get("duration")
    if duration is None:
        raise RenderError(f"Could not determine duration for: {path}")
    return float(duration)
