import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import FakeAudioProvider, FakeStorage, FakeTextProvider, FakeVideoProvider

from studio_workers import rate_limiter
from studio_workers.pipeline import routes, transcode
from studio_workers.pipeline.errors import ProviderError
from studio_workers.pipeline.models import Completed, TaskState, TaskStatus
from studio_workers.pipeline.orchestrator import ClipGenerationService


@pytest.fixture
def service(monkeypatch):
    async def fake_read_media(ref, temp_dir=None):
        return b"video"

    monkeypatch.setattr(transcode, "read_media", fake_read_media)
    svc = ClipGenerationService(
        text_provider=FakeTextProvider(),
        video_provider=FakeVideoProvider(statuses=[
            TaskStatus(status=TaskState.COMPLETED, video_url="https://cdn/v.mp4", cost=0.3),
        ]),
        audio_provider=FakeAudioProvider(available=False),
        storage_backend=FakeStorage(),
        poll_interval=0.01,
        poll_timeout=1,
    )
    monkeypatch.setattr(routes, "_service", svc)
    return svc


@pytest.fixture
def client(service):
    app = FastAPI()
    app.include_router(routes.asmr_router)
    with TestClient(app) as c:
        yield c


def _body(**kwargs):
    body = {"visualPrompt": "pearls poured into a glass bowl", "title": "Pearls", "userId": "u1"}
    body.update(kwargs)
    return body


def test_list_models(client):
    resp = client.get("/asmr/models")
    assert resp.status_code == 200
    models = resp.json()["models"]
    assert len(models) == 11
    assert models[0]["modelId"] == "seedance-1.0-pro"


def test_model_config(client):
    resp = client.get("/asmr/models/veo-3.1/config")
    assert resp.status_code == 200
    assert resp.json()["durations"] == [4, 6, 8]
    assert client.get("/asmr/models/unknown/config").status_code == 404


def test_generate_completed(client):
    resp = client.post("/asmr/generate", json=_body())
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "completed"
    assert data["videoUrl"].startswith("https://assets.test/story-mode/u1/")
    assert data["storyId"] == "story-1"
    assert "stageCosts" in data


def test_generate_rejects_unsupported_settings(client, service):
    resp = client.post("/asmr/generate", json=_body(modelId="veo-3.0", duration=5))
    assert resp.status_code == 400
    detail = resp.json()["detail"]
    assert detail["errorKind"] == "validation"
    assert detail["validation"] == {"field": "duration", "supportedValues": [4, 6, 8]}
    assert service.video_provider.payloads == []


def test_generate_maps_provider_failure_to_502(client, service):
    service.video_provider.submit_error = ProviderError("runware", "HTTP 500: boom", status_code=500)
    resp = client.post("/asmr/generate", json=_body())
    assert resp.status_code == 502
    assert resp.json()["detail"]["errorKind"] == "provider"


def test_generate_maps_upload_failure_to_500(client, service):
    service.storage.fail_upload = True
    resp = client.post("/asmr/generate", json=_body())
    assert resp.status_code == 500
    assert resp.json()["detail"]["errorKind"] == "upload"


def test_generate_rejects_bad_body(client):
    assert client.post("/asmr/generate", json=_body(visualPrompt="   ")).status_code == 422
    assert client.post("/asmr/generate", json=_body(loopMultiplier=3)).status_code == 422


def test_rate_limited(client, monkeypatch):
    monkeypatch.setattr(rate_limiter, "check_rate_limit", lambda user_id: (False, 0, 42))
    resp = client.post("/asmr/generate", json=_body())
    assert resp.status_code == 429
    assert resp.headers["Retry-After"] == "42"


def test_generate_async_and_job_status(client):
    resp = client.post("/asmr/generate/async", json=_body())
    assert resp.status_code == 200
    job_id = resp.json()["jobId"]

    status = None
    for _ in range(100):
        status = client.get(f"/asmr/jobs/{job_id}").json()
        if status["status"] == "COMPLETED":
            break
        time.sleep(0.01)
    assert status["status"] == "COMPLETED"
    assert status["result"]["videoUrl"]


def test_unknown_job(client):
    assert client.get("/asmr/jobs/missing").status_code == 404


def test_generate_async_at_capacity(client, monkeypatch):
    monkeypatch.setattr(rate_limiter, "acquire_job_slot", lambda: False)
    assert client.post("/asmr/generate/async", json=_body()).status_code == 503


def test_task_status(client):
    resp = client.get("/asmr/status/task-9")
    assert resp.status_code == 200
    assert resp.json() == {
        "taskId": "task-9",
        "status": "completed",
        "videoUrl": "https://cdn/v.mp4",
        "cost": 0.3,
        "error": None,
    }


def test_merge_streams_and_deletes(client, monkeypatch, tmp_path):
    merged = tmp_path / "s_merged.mp4"

    async def fake_merge(video_ref, audio_ref, temp_dir=None):
        merged.write_bytes(b"merged-video")
        return Completed(asset_ref=str(merged), duration_seconds=4.0)

    monkeypatch.setattr(routes, "merge_media", fake_merge)
    resp = client.post("/asmr/merge", json={"videoUrl": "https://cdn/v.mp4", "audioUrl": "https://cdn/a.mp3"})

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "video/mp4"
    assert resp.content == b"merged-video"
    assert not merged.exists()


def test_merge_rejects_local_references(client, monkeypatch):
    async def fail_merge(video_ref, audio_ref, temp_dir=None):
        raise AssertionError("merge must not run")

    monkeypatch.setattr(routes, "merge_media", fail_merge)
    for body in (
        {"videoUrl": "/etc/passwd", "audioUrl": "https://cdn/a.mp3"},
        {"videoUrl": "https://cdn/v.mp4", "audioUrl": "file:///tmp/studio-media/other_merged.mp4"},
        {"videoUrl": "/temp/other_merged.mp4", "audioUrl": "https://cdn/a.mp3"},
    ):
        assert client.post("/asmr/merge", json=body).status_code == 400


# ── Prompt enhancement ───────────────────────────────────────────────────────

def test_enhance(client, service):
    resp = client.post("/asmr/enhance", json={"prompt": "kinetic sand sliced", "modelId": "veo-3.1", "duration": 8})
    assert resp.status_code == 200
    data = resp.json()
    assert data["enhancedPrompt"].startswith("Macro shot of glossy kinetic sand")
    assert data["usedFallback"] is False
    assert data["soundPrompt"]
    assert service.video_provider.payloads == []


def test_enhance_rejects_unsupported_settings(client):
    resp = client.post("/asmr/enhance", json={"prompt": "soap", "modelId": "veo-3.0", "duration": 5})
    assert resp.status_code == 400
    assert client.post("/asmr/enhance", json={"prompt": "  "}).status_code == 422


def test_enhance_falls_back_when_provider_breaks(client, service):
    service.text_provider.error = RuntimeError("connection reset")
    resp = client.post("/asmr/enhance", json={"prompt": "kinetic sand sliced"})
    assert resp.status_code == 200
    assert resp.json()["enhancedPrompt"] == "kinetic sand sliced"
    assert resp.json()["usedFallback"] is True


def test_enhance_sound(client, service):
    service.text_provider.raw_text = '{"soundPrompt": "Binaural close-mic pearls clicking into glass, soft hiss"}'
    resp = client.post("/asmr/enhance-sound", json={"prompt": "pearls", "visualPrompt": "pearls poured into a bowl"})
    assert resp.status_code == 200
    assert resp.json()["enhancedPrompt"] == "Binaural close-mic pearls clicking into glass, soft hiss"
    assert "pearls poured into a bowl" in service.text_provider.calls[-1][1]


def test_enhance_sound_without_input(client, service):
    service.text_provider.error = RuntimeError("connection reset")
    resp = client.post("/asmr/enhance-sound", json={})
    assert resp.status_code == 200
    assert resp.json()["usedFallback"] is True
    assert resp.json()["enhancedPrompt"]
