import json

import pytest

from studio_workers import metrics, rate_limiter
from studio_workers.pipeline import storage
from studio_workers.pipeline.errors import UploadError
from studio_workers.pipeline.models import TaskState, TaskStatus


class FakeTextProvider:
    def __init__(self, payload=None, raw_text=None, cost=0.0012, error=None):
        if raw_text is None:
            raw_text = json.dumps(payload if payload is not None else {
                "visualPrompt": "Macro shot of glossy kinetic sand being sliced by a brass knife, soft studio light",
            })
        self.raw_text = raw_text
        self.cost = cost
        self.error = error
        self.calls = []

    async def generate_text(self, system_prompt, user_prompt, temperature=0.7, model=None):
        self.calls.append((system_prompt, user_prompt))
        if self.error:
            raise self.error
        return {"text": self.raw_text, "cost": self.cost}


class FakeVideoProvider:
    def __init__(self, submit_status=None, statuses=None, submit_error=None, video_url="https://cdn.provider.test/clip.mp4"):
        self.submit_status = submit_status or TaskStatus(status=TaskState.COMPLETED, video_url=video_url, cost=0.35)
        self.statuses = list(statuses or [])
        self.submit_error = submit_error
        self.payloads = []
        self.status_calls = 0

    async def submit_video_task(self, payload):
        self.payloads.append(payload)
        if self.submit_error:
            raise self.submit_error
        return payload["taskUUID"], self.submit_status

    async def get_task_status(self, task_id):
        self.status_calls += 1
        if not self.statuses:
            return TaskStatus(status=TaskState.PROCESSING)
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]


class FakeAudioProvider:
    def __init__(self, available=True, error=None, audio=b"ID3fake-mp3"):
        self.available = available
        self.error = error
        self.audio = audio
        self.calls = []

    def is_available(self):
        return self.available

    async def generate_sound(self, text, duration_seconds, prompt_influence):
        self.calls.append((text, duration_seconds, prompt_influence))
        if self.error:
            raise self.error
        return {"audio_bytes": self.audio, "format": "mp3", "content_type": "audio/mpeg", "cost": 0.05}


class FakeStorage:
    def __init__(self, fail_upload=False):
        self.fail_upload = fail_upload
        self.uploads = []
        self.records = []

    def story_mode_path(self, user_id, workspace, project):
        return storage.story_mode_path(user_id, workspace, project, filename="1700000000000.mp4")

    async def upload_to_r2(self, key, data, content_type="video/mp4"):
        if self.fail_upload:
            raise UploadError("R2 upload failed: bucket unreachable")
        self.uploads.append((key, data, content_type))
        return f"https://assets.test/{key}"

    async def create_story_record(self, workspace_id, title, aspect_ratio, duration, export_url):
        self.records.append({
            "workspace_id": workspace_id,
            "title": title,
            "aspect_ratio": aspect_ratio,
            "duration": duration,
            "export_url": export_url,
        })
        return "story-1"


@pytest.fixture(autouse=True)
def reset_worker_state(monkeypatch):
    monkeypatch.setattr(rate_limiter, "get_redis", lambda: None)
    rate_limiter.reset()
    metrics.reset()
    yield
    rate_limiter.reset()
