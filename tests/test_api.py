import asyncio
import json

import pytest
from fastapi.testclient import TestClient

import config
import main
from cleanup import CleanupScheduler
from conftest import FakeFFmpeg
from events import ProgressEvent
from jobs import JobStatus
from pipeline import RenderOrchestrator


@pytest.fixture()
def runner():
    return FakeFFmpeg()


@pytest.fixture()
def client(tmp_path, monkeypatch, registry, bus, runner):
    monkeypatch.setattr(config, "TEMP_DIR", str(tmp_path / "work"))
    scheduler = CleanupScheduler(registry, bus, delay_seconds=3600)
    monkeypatch.setattr(main, "registry", registry)
    monkeypatch.setattr(main, "bus", bus)
    monkeypatch.setattr(main, "scheduler", scheduler)
    monkeypatch.setattr(main, "orchestrator", RenderOrchestrator(registry, bus, scheduler, runner=runner))
    with TestClient(main.app) as c:
        yield c


def _meta(tracks=2, **overrides):
    meta = {"tracks": [{"title": f"Song {i}"} for i in range(tracks)], "width": 1280, "height": 720, "fps": 30}
    meta.update(overrides)
    return json.dumps(meta)


def _files(tracks=2, skip=()):
    files = []
    for i in range(tracks):
        if f"audio_{i}" not in skip:
            files.append((f"audio_{i}", (f"song{i}.mp3", b"ID3 fake audio", "audio/mpeg")))
        if f"image_{i}" not in skip:
            files.append((f"image_{i}", (f"cover{i}.png", b"\x89PNG fake", "image/png")))
    return files


def test_ping(client):
    resp = client.post("/api/ping")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


def test_render_happy_path(client, registry, runner, tmp_path):
    resp = client.post("/api/render", data={"meta": _meta()}, files=_files())
    assert resp.status_code == 202
    job_id = resp.json()["jobId"]

    job = registry.get(job_id)
    assert job.status is JobStatus.DONE
    assert job.temp_dir.parent == tmp_path / "work"
    assert job.temp_dir.name.startswith(f"audio2mp4-{job_id}-")
    assert (job.temp_dir / "audio_0.mp3").read_bytes() == b"ID3 fake audio"
    assert (job.temp_dir / "image_1.png").exists()
    assert runner.outputs == ["seg_01.mp4", "seg_02.mp4", "output.mp4"]
    assert registry.active_job_id is None

    status = client.get(f"/api/render/{job_id}").json()
    assert status["status"] == "done"
    assert status["downloadUrl"] == f"/api/render/{job_id}/download"

    download = client.get(status["downloadUrl"])
    assert download.status_code == 200
    assert download.headers["content-type"] == "video/mp4"
    assert download.content == b"fake mp4 data"


def test_render_rejected_while_busy(client, registry, tmp_path):
    registry.try_acquire_gate("someone-else")

    resp = client.post("/api/render", data={"meta": _meta()}, files=_files())

    assert resp.status_code == 429
    assert "busy" in resp.json()["error"]
    assert len(registry) == 0
    assert registry.active_job_id == "someone-else"
    assert not any((tmp_path / "work").iterdir())


def test_failed_render_reports_error_status(client, registry, runner):
    runner.fail_on = "seg_02.mp4"
    job_id = client.post("/api/render", data={"meta": _meta()}, files=_files()).json()["jobId"]

    status = client.get(f"/api/render/{job_id}").json()
    assert status["status"] == "error"
    assert "track 1" in status["error"]
    assert status["downloadUrl"] is None
    assert client.get(f"/api/render/{job_id}/download").status_code == 404
    assert registry.active_job_id is None


@pytest.mark.parametrize(
    "data, files, message",
    [
        ({}, _files(), "Missing meta"),
        ({"meta": "{not json"}, _files(), "Invalid JSON"),
        ({"meta": _meta(tracks=1)}, _files(tracks=1), "between 2 and 10"),
        ({"meta": _meta(width=0)}, _files(), "width"),
        ({"meta": _meta()}, _files(skip=("image_1",)), "Missing image file for track 1"),
        ({"meta": _meta()}, _files() + [("video_0", ("x.mp4", b"x", "video/mp4"))], "Invalid field name"),
        ({"meta": _meta()}, _files() + [("audio_5", ("x.mp3", b"x", "audio/mpeg"))], "out of range"),
        ({"meta": _meta()}, _files() + [("audio_0", ("x.mp3", b"x", "audio/mpeg"))], "Duplicate audio"),
    ],
)
def test_render_validation_errors(client, registry, data, files, message):
    resp = client.post("/api/render", data=data, files=files)
    assert resp.status_code == 400
    assert message in resp.json()["error"]
    assert len(registry) == 0
    assert registry.active_job_id is None


def test_render_rejects_unsupported_type(client):
    files = _files(skip=("image_0",)) + [("image_0", ("cover.txt", b"text", "text/plain"))]
    resp = client.post("/api/render", data={"meta": _meta()}, files=files)
    assert resp.status_code == 415


def test_render_accepts_known_extension_with_generic_mimetype(client, registry):
    files = _files(skip=("audio_0",)) + [("audio_0", ("song.flac", b"fLaC", "application/octet-stream"))]
    resp = client.post("/api/render", data={"meta": _meta()}, files=files)
    assert resp.status_code == 202
    job = registry.get(resp.json()["jobId"])
    assert (job.temp_dir / "audio_0.flac").exists()


def test_render_rejects_oversized_file(client, monkeypatch, registry):
    monkeypatch.setattr(config, "MAX_FILE_MB", 0)
    resp = client.post("/api/render", data={"meta": _meta()}, files=_files())
    assert resp.status_code == 413
    assert registry.active_job_id is None


def test_render_rejects_oversized_total(client, monkeypatch):
    monkeypatch.setattr(config, "MAX_TOTAL_MB", 0)
    resp = client.post("/api/render", data={"meta": _meta()}, files=_files())
    assert resp.status_code == 413
    assert "Total payload size" in resp.json()["error"]


def test_unknown_job_is_404(client):
    assert client.get("/api/render/nope").status_code == 404
    assert client.get("/api/render/nope/log").status_code == 404
    resp = client.get("/api/render/nope/download")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Job nope not found"}


def test_download_gone_after_cleanup(client, registry):
    job_id = client.post("/api/render", data={"meta": _meta()}, files=_files()).json()["jobId"]
    job = registry.get(job_id)
    assert client.get(f"/api/render/{job_id}/download").status_code == 200

    client.portal.call(main.scheduler.purge, job_id)

    assert not job.temp_dir.exists()
    assert client.get(f"/api/render/{job_id}/download").status_code == 404
    assert client.get(f"/api/render/{job_id}").status_code == 404


def test_log_stream_formats_events(registry, bus, make_job, monkeypatch):
    monkeypatch.setattr(main, "registry", registry)
    monkeypatch.setattr(main, "bus", bus)
    job = make_job()

    async def scenario():
        response = await main.stream_render_log(job.id)
        chunks = response.body_iterator
        received = [await chunks.__anext__(), await chunks.__anext__()]
        bus.publish(job.id, ProgressEvent.segment(0, 2))
        received.append(await chunks.__anext__())
        bus.teardown(job.id)
        received.extend([chunk async for chunk in chunks])
        return response, received

    response, received = asyncio.run(scenario())
    assert response.media_type == "text/event-stream"
    assert received == [
        ": connected\n\n",
        f"event: log\ndata: Connected to job {job.id}\n\n",
        'event: progress\ndata: {"step": "segment", "index": 0, "total": 2}\n\n',
    ]
    assert bus.subscriber_count(job.id) == 0
