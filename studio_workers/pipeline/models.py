"""
Pydantic models and enums for the clip generation pipeline.
"""

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


DEFAULT_VIDEO_MODEL_ID = "seedance-1.0-pro"

LoopMultiplier = Literal[1, 2, 4, 6]


class CamelModel(BaseModel):
    """Snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, protected_namespaces=())


# ── Pipeline Status ──────────────────────────────────────────────────────────

class PipelineStatus(str, Enum):
    QUEUED = "QUEUED"
    VALIDATED = "VALIDATED"
    ENRICHING = "ENRICHING"
    SYNTHESIZING = "SYNTHESIZING"
    AUDIO_SYNTHESIZING = "AUDIO_SYNTHESIZING"
    MERGING = "MERGING"
    LOOPING = "LOOPING"
    DELIVERING = "DELIVERING"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


TERMINAL_STATUSES = {PipelineStatus.COMPLETED, PipelineStatus.REJECTED, PipelineStatus.FAILED}


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    PROVIDER = "provider"
    MERGE = "merge"
    LOOP = "loop"
    TIMEOUT = "timeout"
    UPLOAD = "upload"


class AudioSource(str, Enum):
    NATIVE = "native"            # video provider produced the audio itself
    SYNTHESIZED = "synthesized"  # external sound clip, delivered separately
    MERGED = "merged"            # external sound clip muxed into the video


class TaskState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ── Request ──────────────────────────────────────────────────────────────────

class GenerationRequest(CamelModel):
    """One user-initiated clip generation. Immutable once built."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, protected_namespaces=())

    model_id: str = DEFAULT_VIDEO_MODEL_ID
    visual_prompt: str = Field(..., min_length=1, description="Idea or engineered visual prompt")
    sound_prompt: Optional[str] = None
    duration: int = 4
    aspect_ratio: str = "16:9"
    resolution: str = "720p"
    first_frame_image: Optional[str] = None
    last_frame_image: Optional[str] = None
    loop_multiplier: LoopMultiplier = 1
    audio_intensity: int = Field(50, ge=0, le=100)
    enhance_prompt: bool = True

    # Delivery context
    title: str = ""
    user_id: Optional[str] = None
    workspace_id: Optional[str] = None

    @field_validator("visual_prompt")
    @classmethod
    def _visual_prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("visual prompt must not be blank")
        return value


# ── Stage Results ────────────────────────────────────────────────────────────

class Completed(BaseModel):
    kind: Literal["completed"] = "completed"
    asset_ref: str
    cost: float = 0.0
    duration_seconds: Optional[float] = None
    task_ref: Optional[str] = None


class Pending(BaseModel):
    kind: Literal["pending"] = "pending"
    task_ref: str
    cost: float = 0.0


class Failed(BaseModel):
    kind: Literal["failed"] = "failed"
    error_kind: ErrorKind
    message: str


StageResult = Annotated[Union[Completed, Pending, Failed], Field(discriminator="kind")]


class TaskStatus(CamelModel):
    """Result of one status read on an asynchronous provider task."""

    status: TaskState
    video_url: Optional[str] = None
    cost: Optional[float] = None
    error: Optional[str] = None


class EnrichedPrompt(BaseModel):
    visual_prompt: str
    sound_prompt: Optional[str] = None
    cost: float = 0.0
    used_fallback: bool = False
    warning: Optional[str] = None


class EnhancedSoundPrompt(BaseModel):
    sound_prompt: str
    cost: float = 0.0
    used_fallback: bool = False
    warning: Optional[str] = None


# ── Responses ────────────────────────────────────────────────────────────────

class ValidationDetail(CamelModel):
    field: str
    supported_values: list = Field(default_factory=list)


class PipelineResult(CamelModel):
    job_id: str
    status: Literal["completed", "failed"]
    video_url: Optional[str] = None
    audio_url: Optional[str] = None
    audio_source: Optional[AudioSource] = None
    cost: float = 0.0
    stage_costs: dict[str, float] = Field(default_factory=dict)
    duration_seconds: Optional[float] = None
    engineered_prompt: Optional[str] = None
    engineered_sound_prompt: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    validation: Optional[ValidationDetail] = None
    story_id: Optional[str] = None


class JobStatusResponse(CamelModel):
    job_id: str
    status: PipelineStatus
    current_step: str = ""
    progress_pct: int = 0
    history: list[PipelineStatus] = Field(default_factory=list)
    result: Optional[PipelineResult] = None
    error: Optional[str] = None


class TaskStatusResponse(TaskStatus):
    task_id: str


class MergeRequest(CamelModel):
    video_url: str
    audio_url: str


class EnhanceRequest(CamelModel):
    prompt: str = Field(..., min_length=1)
    model_id: str = DEFAULT_VIDEO_MODEL_ID
    duration: int = 4
    aspect_ratio: str = "16:9"
    resolution: str = "720p"

    @field_validator("prompt")
    @classmethod
    def _prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt must not be blank")
        return value


class SoundEnhanceRequest(CamelModel):
    prompt: str = ""
    visual_prompt: str = ""


class EnhanceResponse(CamelModel):
    enhanced_prompt: str
    sound_prompt: Optional[str] = None
    cost: float = 0.0
    used_fallback: bool = False
    warning: Optional[str] = None
