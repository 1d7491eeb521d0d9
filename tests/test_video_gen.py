import asyncio

from pydantic import TypeAdapter

from conftest import FakeVideoProvider

from studio_workers.pipeline.capabilities import get_capability
from studio_workers.pipeline.errors import ProviderError
from studio_workers.pipeline.models import (
    Completed,
    ErrorKind,
    Failed,
    GenerationRequest,
    Pending,
    StageResult,
    TaskState,
    TaskStatus,
)
from studio_workers.pipeline.video_gen import (
    STRATEGIES,
    build_payload,
    poll_video_task,
    prepare_request,
    synthesize_video,
)


def _request(**kwargs):
    kwargs.setdefault("visual_prompt", "Foam being pressed by a glass plate")
    return GenerationRequest(**kwargs)


def test_every_registered_model_has_a_strategy():
    from studio_workers.pipeline.capabilities import MODEL_CAPABILITIES

    assert set(STRATEGIES) == set(MODEL_CAPABILITIES)


def test_payload_basics():
    payload = build_payload(_request(), task_uuid="task-1")
    assert payload["taskType"] == "videoInference"
    assert payload["taskUUID"] == "task-1"
    assert payload["model"] == "bytedance:2@1"
    assert (payload["width"], payload["height"]) == (1248, 704)
    assert payload["duration"] == 4
    assert payload["deliveryMethod"] == "async"
    assert payload["includeCost"] is True
    assert "providerSettings" not in payload


def test_payload_is_pure():
    request = _request(model_id="veo-3.1", duration=8)
    first = build_payload(request, task_uuid="t")
    first["providerSettings"]["google"]["generateAudio"] = False
    second = build_payload(request, task_uuid="t")
    assert second["providerSettings"]["google"]["generateAudio"] is True


def test_native_audio_settings_per_model():
    assert build_payload(_request(model_id="pixverse-v5.5", duration=5))["providerSettings"] == {
        "pixverse": {"audio": True, "thinking": "auto"}
    }
    assert build_payload(_request(model_id="kling-video-2.6-pro", duration=5, resolution="1080p"))[
        "providerSettings"
    ]["klingai"]["sound"] is True


def test_frame_image_shapes():
    flat = build_payload(_request(first_frame_image="https://img/a.png", last_frame_image="https://img/b.png"))
    assert flat["frameImages"] == [
        {"inputImage": "https://img/a.png", "frame": "first"},
        {"inputImage": "https://img/b.png", "frame": "last"},
    ]

    hailuo = build_payload(_request(model_id="hailuo-2.3", duration=6, first_frame_image="https://img/a.png"))
    assert hailuo["inputs"] == {"frameImages": [{"inputImage": "https://img/a.png", "frame": "first"}]}

    wan = build_payload(_request(model_id="alibaba-wan-2.6", duration=5, first_frame_image="https://img/a.png"))
    assert wan["inputs"] == {"frameImages": [{"image": "https://img/a.png"}]}
    assert "frameImages" not in wan


def test_prepare_request_drops_unsupported_last_frame():
    request = _request(model_id="veo-3.0", last_frame_image="https://img/b.png")
    prepared, warnings = prepare_request(request, get_capability("veo-3.0"), "engineered prompt")
    assert prepared.visual_prompt == "engineered prompt"
    assert prepared.last_frame_image is None
    assert request.last_frame_image == "https://img/b.png"
    assert len(warnings) == 1


def test_synthesize_returns_pending_for_async_task():
    provider = FakeVideoProvider(submit_status=TaskStatus(status=TaskState.PENDING))
    result = asyncio.run(synthesize_video(_request(), provider))
    assert isinstance(result, Pending)
    assert result.task_ref == provider.payloads[0]["taskUUID"]


def test_synthesize_returns_completed_when_video_ready():
    result = asyncio.run(synthesize_video(_request(), FakeVideoProvider()))
    assert isinstance(result, Completed)
    assert result.asset_ref == "https://cdn.provider.test/clip.mp4"
    assert result.cost == 0.35


def test_synthesize_maps_provider_errors():
    provider = FakeVideoProvider(submit_error=ProviderError("runware", "HTTP 400: invalid model"))
    result = asyncio.run(synthesize_video(_request(), provider))
    assert isinstance(result, Failed)
    assert result.error_kind == ErrorKind.PROVIDER
    assert "invalid model" in result.message


def test_poll_until_completed():
    provider = FakeVideoProvider(statuses=[
        TaskStatus(status=TaskState.PROCESSING),
        TaskStatus(status=TaskState.COMPLETED, video_url="https://cdn/v.mp4", cost=0.4),
    ])
    result = asyncio.run(poll_video_task("task-1", provider, interval=0.01, timeout=5))
    assert isinstance(result, Completed)
    assert result.asset_ref == "https://cdn/v.mp4"
    assert provider.status_calls == 2


def test_poll_reports_provider_failure():
    provider = FakeVideoProvider(statuses=[TaskStatus(status=TaskState.FAILED, error="content policy")])
    result = asyncio.run(poll_video_task("task-1", provider, interval=0.01, timeout=5))
    assert isinstance(result, Failed)
    assert result.error_kind == ErrorKind.PROVIDER
    assert result.message == "content policy"


def test_poll_times_out():
    provider = FakeVideoProvider(statuses=[TaskStatus(status=TaskState.PROCESSING)])
    result = asyncio.run(poll_video_task("task-1", provider, interval=0.01, timeout=0.05))
    assert isinstance(result, Failed)
    assert result.error_kind == ErrorKind.TIMEOUT
    assert provider.status_calls >= 1


def test_poll_survives_transient_status_errors():
    class FlakyProvider(FakeVideoProvider):
        async def get_task_status(self, task_id):
            self.status_calls += 1
            if self.status_calls == 1:
                raise ProviderError("runware", "request failed: connection reset")
            return TaskStatus(status=TaskState.COMPLETED, video_url="https://cdn/v.mp4")

    provider = FlakyProvider()
    result = asyncio.run(poll_video_task("task-1", provider, interval=0.01, timeout=5))
    assert isinstance(result, Completed)
    assert provider.status_calls == 2


def test_stage_result_union_discriminates_on_kind():
    adapter = TypeAdapter(StageResult)
    assert isinstance(adapter.validate_python({"kind": "pending", "task_ref": "task-1"}), Pending)
    failed = adapter.validate_python({"kind": "failed", "error_kind": "timeout", "message": "late"})
    assert isinstance(failed, Failed) and failed.error_kind == ErrorKind.TIMEOUT
