"""
audio2mp4 FastAPI backend.

Endpoints:
  POST /api/ping                    - health check
  POST /api/render                  - upload tracks (multipart), get back a jobId immediately
  GET  /api/render/{job_id}         - poll status: pending | processing | done | error
  GET  /api/render/{job_id}/log     - live Server-Sent Events: log | progress | done | error
  GET  /api/render/{job_id}/download - download the rendered MP4
"""

import asyncio
import json
import logging
import re
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Tuple

from dotenv import load_dotenv

# Load .env before config reads the environment (no-op when vars are already set)
load_dotenv()

import uvicorn
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import ValidationError
from starlette.datastructures import UploadFile

import config
from cleanup import CleanupScheduler, sweep_stale_dirs
from errors import Busy, NotFound
from events import Event, EventBus, LogEvent
from jobs import Job, JobRegistry, RenderMeta, new_job_id
from pipeline import RenderOrchestrator, output_path_for

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Upload rules
# ---------------------------------------------------------------------------
ALLOWED_AUDIO_TYPES = {"mp3", "wav", "m4a", "aac", "flac", "ogg"}
ALLOWED_IMAGE_TYPES = {"jpg", "jpeg", "png", "webp"}
AUDIO_MIMETYPES = {
    "audio/mpeg", "audio/wav", "audio/x-wav", "audio/mp4", "audio/x-m4a",
    "audio/aac", "audio/flac", "audio/x-flac", "audio/ogg",
}
IMAGE_MIMETYPES = {"image/jpeg", "image/png", "image/webp"}
FIELD_NAME_RE = re.compile(r"^(audio|image)_(\d+)$")
MAX_FILES: int = config.MAX_TRACKS * 2
MB: int = 1024 * 1024

# ---------------------------------------------------------------------------
# Render core: one registry, one bus, one scheduler, one orchestrator
# ---------------------------------------------------------------------------
registry = JobRegistry()
bus = EventBus()
scheduler = CleanupScheduler(registry, bus)
orchestrator = RenderOrchestrator(registry, bus, scheduler)


# ---------------------------------------------------------------------------
# App lifespan: create temp dir, sweep leftovers, stop cleanup timers
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    Path(config.TEMP_DIR).mkdir(parents=True, exist_ok=True)
    await asyncio.to_thread(sweep_stale_dirs, config.TEMP_DIR, config.CLEANUP_SECONDS)
    logger.info(
        f"[API] Upload limits: {config.MAX_FILE_MB}MB per file, {config.MAX_TOTAL_MB}MB total; "
        f"cleanup after {config.CLEANUP_MINUTES:g} min"
    )

    yield  # application runs

    await scheduler.shutdown()


app = FastAPI(title="audio2mp4 API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.CORS_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class UploadRejected(Exception):
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(UploadRejected)
async def upload_error_handler(request: Request, exc: UploadRejected) -> JSONResponse:
    logger.info(f"[API] Upload rejected ({exc.status_code}): {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(Busy)
async def busy_handler(request: Request, exc: Busy) -> JSONResponse:
    return JSONResponse(status_code=429, content={"error": str(exc)})


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": str(exc)})


# ---------------------------------------------------------------------------
# Upload parsing
# ---------------------------------------------------------------------------

def _extension(filename: str) -> str:
    return Path(filename or "").suffix.lstrip(".").lower()


def _check_type(kind: str, upload: UploadFile) -> None:
    """Accept if either the mimetype or the extension is known."""
    ext = _extension(upload.filename)
    if kind == "audio":
        allowed, mimetypes = ALLOWED_AUDIO_TYPES, AUDIO_MIMETYPES
    else:
        allowed, mimetypes = ALLOWED_IMAGE_TYPES, IMAGE_MIMETYPES
    if ext in allowed or upload.content_type in mimetypes:
        return
    raise UploadRejected(
        415,
        f"Invalid {kind} file type: {ext or upload.content_type}. "
        f"Allowed types: {', '.join(sorted(allowed))}",
    )


def _parse_meta(raw) -> RenderMeta:
    if not raw or not isinstance(raw, str):
        raise UploadRejected(400, "Missing meta field in request")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        raise UploadRejected(400, "Invalid JSON in meta field")
    try:
        return RenderMeta.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ()))
        raise UploadRejected(400, f"Invalid meta{'.' + where if where else ''}: {first['msg']}")


async def _collect_files(
    form, meta: RenderMeta
) -> Dict[str, Dict[int, Tuple[UploadFile, bytes]]]:
    """Sort uploads into {"audio": {i: ...}, "image": {i: ...}} and enforce size limits."""
    files: Dict[str, Dict[int, Tuple[UploadFile, bytes]]] = {"audio": {}, "image": {}}
    total_size = 0
    track_count = len(meta.tracks)

    for name, value in form.multi_items():
        if not isinstance(value, UploadFile):
            continue
        match = FIELD_NAME_RE.match(name)
        if not match:
            raise UploadRejected(
                400, f"Invalid field name: {name}. Expected format: audio_N or image_N"
            )
        kind, index = match.group(1), int(match.group(2))
        if index >= track_count:
            raise UploadRejected(400, f"File index {index} out of range (tracks: {track_count})")
        if index in files[kind]:
            raise UploadRejected(400, f"Duplicate {kind} file for track {index}")
        _check_type(kind, value)

        data = await value.read()
        if len(data) > config.MAX_FILE_MB * MB:
            raise UploadRejected(413, f"File size exceeds limit of {config.MAX_FILE_MB}MB")
        total_size += len(data)
        files[kind][index] = (value, data)

    if total_size > config.MAX_TOTAL_MB * MB:
        raise UploadRejected(
            413,
            f"Total payload size ({total_size / MB:.2f}MB) exceeds limit of {config.MAX_TOTAL_MB}MB",
        )

    if not files["audio"] and not files["image"]:
        raise UploadRejected(400, "No files uploaded")
    for i in range(track_count):
        for kind in ("audio", "image"):
            if i not in files[kind]:
                raise UploadRejected(400, f"Missing {kind} file for track {i}")
    return files


def _stage_files(
    job_id: str, files: Dict[str, Dict[int, Tuple[UploadFile, bytes]]]
) -> Path:
    """Write uploads into a fresh job dir as audio_<i>.<ext> / image_<i>.<ext>."""
    Path(config.TEMP_DIR).mkdir(parents=True, exist_ok=True)
    temp_dir = Path(tempfile.mkdtemp(prefix=f"{config.JOB_DIR_PREFIX}{job_id}-", dir=config.TEMP_DIR))
    defaults = {"audio": "mp3", "image": "jpg"}
    for kind, by_index in files.items():
        for index, (upload, data) in by_index.items():
            ext = _extension(upload.filename) or defaults[kind]
            (temp_dir / f"{kind}_{index}.{ext}").write_bytes(data)
    return temp_dir


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.post("/api/ping")
async def ping():
    return {"ok": True}


@app.post("/api/render", status_code=202)
async def create_render_job(request: Request, background_tasks: BackgroundTasks):
    """Stage the uploaded tracks, start rendering in the background, return the jobId."""
    if registry.is_busy():
        raise Busy(registry.active_job_id)

    form = await request.form(max_files=MAX_FILES)
    try:
        meta = _parse_meta(form.get("meta"))
        files = await _collect_files(form, meta)

        job_id = new_job_id()
        registry.try_acquire_gate(job_id)  # a racing upload may have won meanwhile
        try:
            temp_dir = await asyncio.to_thread(_stage_files, job_id, files)
            registry.put(Job(id=job_id, meta=meta, temp_dir=temp_dir))
        except Exception:
            registry.release_gate(job_id)
            raise
    finally:
        await form.close()

    logger.info(
        f"[API] Job {job_id} created in {temp_dir}: {len(meta.tracks)} tracks, "
        f"{meta.width}x{meta.height}@{meta.fps}fps"
    )
    background_tasks.add_task(orchestrator.start, job_id)
    return {"jobId": job_id}


@app.get("/api/render/{job_id}")
async def get_render_status(job_id: str):
    """Poll the status of a job."""
    job = registry.get(job_id)
    body = job.to_dict()
    body["downloadUrl"] = orchestrator.download_url(job_id) if output_path_for(job) else None
    return body


def _format_sse(event: Event) -> str:
    data = event.data if isinstance(event.data, str) else json.dumps(event.data)
    lines = "".join(f"data: {line}\n" for line in data.split("\n"))
    return f"event: {event.kind}\n{lines}\n"


@app.get("/api/render/{job_id}/log")
async def stream_render_log(job_id: str):
    """Server-Sent Events stream of everything published for the job from now on."""
    registry.get(job_id)
    subscription = bus.subscribe(job_id)
    logger.info(f"[API] SSE connection established for job {job_id}")
    bus.publish(job_id, LogEvent(f"Connected to job {job_id}"))

    async def event_stream() -> AsyncIterator[str]:
        async with subscription:
            yield ": connected\n\n"
            async for event in subscription:
                yield _format_sse(event)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.get("/api/render/{job_id}/download")
async def download_render(job_id: str):
    """Serve the rendered video of a finished job."""
    job = registry.get(job_id)
    path = output_path_for(job)
    if path is None:
        raise HTTPException(status_code=404, detail=f"No rendered video for job {job_id}")
    return FileResponse(
        str(path),
        media_type="video/mp4",
        filename=f"render-{job_id}.mp4",
    )


if __name__ == "__main__":
    uvicorn.run(app, host=config.SERVER_HOST, port=config.SERVER_PORT)
