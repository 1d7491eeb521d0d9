"""
Capability registry and settings validator.

Every video model the worker can drive is declared here once, with the
discrete durations, aspect ratios and resolutions it accepts. The registry
is read-only and shared by every pipeline run; validation is pure and runs
before any paid provider call.
"""

import logging
from types import MappingProxyType
from typing import Mapping, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .errors import SettingsValidationError
from .models import DEFAULT_VIDEO_MODEL_ID, GenerationRequest

logger = logging.getLogger(__name__)


class ModelCapability(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
    )

    model_id: str
    label: str
    durations: tuple[int, ...]
    aspect_ratios: tuple[str, ...]
    resolutions: tuple[str, ...]
    native_audio: bool = False
    supports_frame_images: bool = True
    supports_last_frame: bool = False
    min_prompt_length: int = 2
    max_prompt_length: int = 3000
    is_default: bool = False


class Dimensions(NamedTuple):
    width: int
    height: int


def _capability(model_id: str, label: str, **kwargs) -> ModelCapability:
    return ModelCapability(model_id=model_id, label=label, **kwargs)


# ── Registry ─────────────────────────────────────────────────────────────────

_CAPABILITIES = [
    _capability(
        "seedance-1.0-pro", "Seedance 1.0 Pro",
        durations=(2, 4, 5, 6, 8, 10, 12),
        aspect_ratios=("16:9", "9:16", "1:1", "4:3", "3:4", "21:9", "9:21"),
        resolutions=("480p", "720p", "1080p"),
        supports_last_frame=True,
        is_default=True,
    ),
    _capability(
        "klingai-2.5-turbo-pro", "KlingAI 2.5 Turbo Pro",
        durations=(5, 10),
        aspect_ratios=("16:9", "1:1", "9:16"),
        resolutions=("720p",),
        supports_last_frame=True,
        max_prompt_length=2500,
    ),
    _capability(
        "veo-3.0", "Google Veo 3.0",
        durations=(4, 6, 8),
        aspect_ratios=("16:9", "9:16"),
        resolutions=("720p", "1080p"),
        native_audio=True,
    ),
    _capability(
        "pixverse-v5.5", "PixVerse v5.5",
        durations=(5, 8),
        aspect_ratios=("16:9", "4:3", "1:1", "3:4", "9:16"),
        resolutions=("360p", "540p", "720p", "1080p"),
        native_audio=True,
        supports_last_frame=True,
        max_prompt_length=2048,
    ),
    _capability(
        "hailuo-2.3", "MiniMax Hailuo 2.3",
        durations=(6, 10),
        aspect_ratios=("16:9", "4:3"),
        resolutions=("768p", "1080p"),
        max_prompt_length=2000,
    ),
    _capability(
        "sora-2-pro", "Sora 2 Pro",
        durations=(4, 8, 12),
        aspect_ratios=("16:9", "9:16", "7:4", "4:7"),
        resolutions=("720p",),
        min_prompt_length=1,
        max_prompt_length=4000,
    ),
    _capability(
        "veo-3.1", "Google Veo 3.1",
        durations=(4, 6, 8),
        aspect_ratios=("16:9", "9:16"),
        resolutions=("720p", "1080p"),
        native_audio=True,
        supports_last_frame=True,
    ),
    _capability(
        "ltx-2-pro", "LTX-2 Pro",
        durations=(6, 8, 10),
        aspect_ratios=("16:9",),
        resolutions=("1080p", "1440p", "2160p"),
        native_audio=True,
        max_prompt_length=10000,
    ),
    _capability(
        "seedance-1.5-pro", "Seedance 1.5 Pro",
        durations=(4, 5, 6, 8, 10, 12),
        aspect_ratios=("16:9", "9:16", "1:1", "4:3", "3:4", "21:9"),
        resolutions=("480p", "720p"),
        native_audio=True,
        supports_last_frame=True,
    ),
    _capability(
        "kling-video-2.6-pro", "Kling VIDEO 2.6 Pro",
        durations=(5, 10),
        aspect_ratios=("16:9", "1:1", "9:16"),
        resolutions=("1080p",),
        native_audio=True,
        max_prompt_length=2500,
    ),
    _capability(
        "alibaba-wan-2.6", "Alibaba Wan 2.6",
        durations=(5, 10, 15),
        aspect_ratios=("16:9", "9:16", "1:1", "17:13", "13:17"),
        resolutions=("720p", "1080p"),
        native_audio=True,
        min_prompt_length=1,
        max_prompt_length=1500,
    ),
]

MODEL_CAPABILITIES: Mapping[str, ModelCapability] = MappingProxyType(
    {cap.model_id: cap for cap in _CAPABILITIES}
)


def get_capability(
    model_id: str,
    registry: Mapping[str, ModelCapability] = MODEL_CAPABILITIES,
) -> Optional[ModelCapability]:
    return registry.get(model_id)


def default_capability() -> ModelCapability:
    for cap in MODEL_CAPABILITIES.values():
        if cap.is_default:
            return cap
    return MODEL_CAPABILITIES[DEFAULT_VIDEO_MODEL_ID]


def list_capabilities() -> list[ModelCapability]:
    return list(MODEL_CAPABILITIES.values())


# ── Validation ───────────────────────────────────────────────────────────────

def validate_settings(
    request: GenerationRequest,
    registry: Mapping[str, ModelCapability] = MODEL_CAPABILITIES,
) -> ModelCapability:
    """
    Check a request against the capability matrix of its model.

    Checks run in a fixed order (model, duration, aspect ratio, resolution)
    so the same request always reports the same field.

    Returns:
        The matching ModelCapability.

    Raises:
        SettingsValidationError: naming the first offending field and the
            values the model does accept.
    """
    cap = registry.get(request.model_id)
    if cap is None:
        raise SettingsValidationError(
            "model_id",
            list(registry.keys()),
            message=f"Unknown model: {request.model_id}",
            model_id=request.model_id,
        )

    if request.duration not in cap.durations:
        raise SettingsValidationError(
            "duration",
            cap.durations,
            message=(
                f"Model {cap.label} doesn't support {request.duration}s duration. "
                f"Supported: {', '.join(str(d) for d in cap.durations)}s"
            ),
            model_id=cap.model_id,
        )

    if request.aspect_ratio not in cap.aspect_ratios:
        raise SettingsValidationError(
            "aspect_ratio",
            cap.aspect_ratios,
            message=(
                f"Model {cap.label} doesn't support {request.aspect_ratio} aspect ratio. "
                f"Supported: {', '.join(cap.aspect_ratios)}"
            ),
            model_id=cap.model_id,
        )

    if request.resolution not in cap.resolutions:
        raise SettingsValidationError(
            "resolution",
            cap.resolutions,
            message=(
                f"Model {cap.label} doesn't support {request.resolution}. "
                f"Supported: {', '.join(cap.resolutions)}"
            ),
            model_id=cap.model_id,
        )

    return cap


def resolve_frame_images(
    request: GenerationRequest,
    cap: ModelCapability,
) -> tuple[Optional[str], Optional[str], list[str]]:
    """
    Decide which reference frames are actually sent to the provider.

    Returns:
        (first_frame, last_frame, warnings)
    """
    warnings: list[str] = []
    first = request.first_frame_image or None
    last = request.last_frame_image or None

    if not cap.supports_frame_images:
        if first or last:
            logger.info(f"{cap.model_id} has no frame-image support, ignoring reference frames")
        return None, None, warnings

    if last and not cap.supports_last_frame:
        msg = f"{cap.label} does not support a last frame image; it was ignored"
        logger.warning(msg)
        warnings.append(msg)
        last = None

    return first, last, warnings


# ── Dimensions ───────────────────────────────────────────────────────────────

# Standard pixel sizes shared by most providers.
DIMENSION_MAP: dict[str, dict[str, Dimensions]] = {
    "16:9": {
        "360p": Dimensions(640, 360),
        "540p": Dimensions(960, 540),
        "720p": Dimensions(1280, 720),
        "1080p": Dimensions(1920, 1080),
    },
    "9:16": {
        "360p": Dimensions(360, 640),
        "540p": Dimensions(540, 960),
        "720p": Dimensions(720, 1280),
        "1080p": Dimensions(1080, 1920),
    },
    "1:1": {
        "360p": Dimensions(360, 360),
        "540p": Dimensions(540, 540),
        "720p": Dimensions(720, 720),
        "1080p": Dimensions(1080, 1080),
    },
    "4:3": {
        "360p": Dimensions(480, 360),
        "540p": Dimensions(720, 540),
        "720p": Dimensions(960, 720),
        "1080p": Dimensions(1440, 1080),
    },
    "3:4": {
        "360p": Dimensions(360, 480),
        "540p": Dimensions(540, 720),
        "720p": Dimensions(720, 960),
        "1080p": Dimensions(1080, 1440),
    },
}

# Only models whose sizes differ from DIMENSION_MAP are listed.
MODEL_DIMENSIONS: dict[str, dict[str, dict[str, Dimensions]]] = {
    "seedance-1.0-pro": {
        "16:9": {"480p": Dimensions(864, 480), "720p": Dimensions(1248, 704), "1080p": Dimensions(1920, 1088)},
        "9:16": {"480p": Dimensions(480, 864), "720p": Dimensions(704, 1248), "1080p": Dimensions(1088, 1920)},
        "1:1": {"480p": Dimensions(640, 640), "720p": Dimensions(960, 960), "1080p": Dimensions(1440, 1440)},
        "4:3": {"480p": Dimensions(736, 544), "720p": Dimensions(1120, 832), "1080p": Dimensions(1664, 1248)},
        "3:4": {"480p": Dimensions(544, 736), "720p": Dimensions(832, 1120), "1080p": Dimensions(1248, 1664)},
        "21:9": {"480p": Dimensions(960, 416), "720p": Dimensions(1568, 672), "1080p": Dimensions(2176, 928)},
        "9:21": {"480p": Dimensions(416, 960), "720p": Dimensions(672, 1568), "1080p": Dimensions(928, 2176)},
    },
    "seedance-1.5-pro": {
        "16:9": {"480p": Dimensions(864, 496), "720p": Dimensions(1280, 720)},
        "9:16": {"480p": Dimensions(496, 864), "720p": Dimensions(720, 1280)},
        "1:1": {"480p": Dimensions(640, 640), "720p": Dimensions(960, 960)},
        "4:3": {"480p": Dimensions(752, 560), "720p": Dimensions(1112, 834)},
        "3:4": {"480p": Dimensions(560, 752), "720p": Dimensions(834, 1112)},
        "21:9": {"480p": Dimensions(992, 432), "720p": Dimensions(1470, 630)},
    },
    "hailuo-2.3": {
        "4:3": {"768p": Dimensions(1024, 768)},
    },
    "sora-2-pro": {
        "7:4": {"720p": Dimensions(1792, 1024)},
        "4:7": {"720p": Dimensions(1024, 1792)},
    },
    "ltx-2-pro": {
        "16:9": {"1440p": Dimensions(2560, 1440), "2160p": Dimensions(3840, 2160)},
    },
    "alibaba-wan-2.6": {
        "1:1": {"720p": Dimensions(960, 960), "1080p": Dimensions(1440, 1440)},
        "17:13": {"720p": Dimensions(1088, 832), "1080p": Dimensions(1632, 1248)},
        "13:17": {"720p": Dimensions(832, 1088), "1080p": Dimensions(1248, 1632)},
    },
}

DEFAULT_DIMENSIONS = Dimensions(1248, 704)


def get_dimensions(aspect_ratio: str, resolution: str, model_id: Optional[str] = None) -> Dimensions:
    """Model-specific size first, then the standard table, then 1248x704."""
    if model_id:
        dims = MODEL_DIMENSIONS.get(model_id, {}).get(aspect_ratio, {}).get(resolution)
        if dims:
            return dims
    return DIMENSION_MAP.get(aspect_ratio, {}).get(resolution, DEFAULT_DIMENSIONS)
