from types import MappingProxyType

import pytest

from studio_workers.pipeline.capabilities import (
    DEFAULT_DIMENSIONS,
    MODEL_CAPABILITIES,
    ModelCapability,
    default_capability,
    get_capability,
    get_dimensions,
    list_capabilities,
    resolve_frame_images,
    validate_settings,
)
from studio_workers.pipeline.errors import SettingsValidationError
from studio_workers.pipeline.models import GenerationRequest


def _request(**kwargs):
    kwargs.setdefault("visual_prompt", "slime being folded slowly")
    return GenerationRequest(**kwargs)


def test_registry_ships_every_model():
    assert len(list_capabilities()) == 11
    assert default_capability().model_id == "seedance-1.0-pro"
    assert get_capability("veo-3.1").native_audio is True
    assert get_capability("does-not-exist") is None


def test_registry_is_read_only():
    with pytest.raises(TypeError):
        MODEL_CAPABILITIES["new-model"] = default_capability()


def test_unsupported_duration_lists_supported_values():
    registry = MappingProxyType({
        "modelX": ModelCapability(
            model_id="modelX",
            label="Model X",
            durations=(4, 6, 8),
            aspect_ratios=("16:9",),
            resolutions=("720p",),
        ),
    })
    with pytest.raises(SettingsValidationError) as exc:
        validate_settings(_request(model_id="modelX", duration=5), registry)

    assert exc.value.field == "duration"
    assert exc.value.supported_values == [4, 6, 8]
    assert "Model X doesn't support 5s duration" in exc.value.message


def test_unknown_model_is_reported_first():
    with pytest.raises(SettingsValidationError) as exc:
        validate_settings(_request(model_id="nope", duration=999, aspect_ratio="2:1"))
    assert exc.value.field == "model_id"
    assert exc.value.supported_values == list(MODEL_CAPABILITIES.keys())


def test_fields_checked_in_fixed_order():
    bad = _request(model_id="veo-3.0", duration=4, aspect_ratio="1:1", resolution="4k")
    with pytest.raises(SettingsValidationError) as exc:
        validate_settings(bad)
    assert exc.value.field == "aspect_ratio"
    assert exc.value.supported_values == ["16:9", "9:16"]

    with pytest.raises(SettingsValidationError) as exc:
        validate_settings(_request(model_id="veo-3.0", duration=4, resolution="4k"))
    assert exc.value.field == "resolution"


def test_validation_is_idempotent():
    request = _request(model_id="hailuo-2.3", duration=6, aspect_ratio="4:3", resolution="768p")
    assert validate_settings(request) == validate_settings(request)

    bad = _request(model_id="hailuo-2.3", duration=8)
    messages = []
    for _ in range(2):
        with pytest.raises(SettingsValidationError) as exc:
            validate_settings(bad)
        messages.append((exc.value.field, exc.value.supported_values, exc.value.message))
    assert messages[0] == messages[1]


def test_last_frame_dropped_with_warning_when_unsupported():
    cap = get_capability("veo-3.0")
    first, last, warnings = resolve_frame_images(
        _request(model_id="veo-3.0", first_frame_image="https://img/a.png", last_frame_image="https://img/b.png"),
        cap,
    )
    assert first == "https://img/a.png"
    assert last is None
    assert len(warnings) == 1


def test_frames_kept_when_supported():
    cap = get_capability("seedance-1.0-pro")
    first, last, warnings = resolve_frame_images(
        _request(first_frame_image="https://img/a.png", last_frame_image="https://img/b.png"),
        cap,
    )
    assert (first, last, warnings) == ("https://img/a.png", "https://img/b.png", [])


def test_frames_ignored_without_frame_support():
    cap = get_capability("veo-3.0").model_copy(update={"supports_frame_images": False})
    first, last, warnings = resolve_frame_images(_request(first_frame_image="https://img/a.png"), cap)
    assert (first, last, warnings) == (None, None, [])


def test_dimensions_lookup_order():
    assert get_dimensions("16:9", "720p", "seedance-1.0-pro") == (1248, 704)
    assert get_dimensions("16:9", "720p", "veo-3.1") == (1280, 720)
    assert get_dimensions("7:4", "720p", "sora-2-pro") == (1792, 1024)
    assert get_dimensions("17:13", "1080p", "alibaba-wan-2.6") == (1632, 1248)
    assert get_dimensions("5:2", "720p", "veo-3.1") == DEFAULT_DIMENSIONS


def test_capability_serialises_camel_case():
    data = get_capability("ltx-2-pro").model_dump(by_alias=True)
    assert data["modelId"] == "ltx-2-pro"
    assert data["nativeAudio"] is True
    assert data["maxPromptLength"] == 10000
