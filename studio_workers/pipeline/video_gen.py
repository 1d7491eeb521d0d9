"""
Video synthesis stage.

Provider payloads differ per model in two ways: which provider-settings block
switches native audio on, and how reference frames are wrapped. Both are
declared once in STRATEGIES, keyed by model id, and every payload is built by
the same pure PayloadStrategy.build.
"""

import os
import copy
import time
import uuid
import asyncio
import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Union

from .capabilities import Dimensions, ModelCapability, get_dimensions, resolve_frame_images
from .errors import PipelineError
from .models import Completed, ErrorKind, Failed, GenerationRequest, Pending, StageResult, TaskState

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

POLL_INTERVAL = float(os.getenv("VIDEO_POLL_INTERVAL_SECONDS", "5"))
POLL_TIMEOUT = float(os.getenv("VIDEO_POLL_TIMEOUT_SECONDS", "300"))


class FrameFormat(str, Enum):
    FLAT = "flat"                  # frameImages=[{inputImage, frame}]
    INPUTS = "inputs"              # inputs.frameImages=[{inputImage, frame}]
    INPUTS_IMAGE = "inputs_image"  # inputs.frameImages=[{image}]


@dataclass(frozen=True)
class PayloadStrategy:
    provider_model: str
    provider_settings: Optional[dict] = field(default=None, compare=False)
    frame_format: FrameFormat = FrameFormat.FLAT

    def build(
        self,
        request: GenerationRequest,
        dimensions: Dimensions,
        task_uuid: str,
    ) -> dict:
        """
        Build the provider payload for a request whose prompt and frame
        images are already final. Pure: same inputs, same payload.
        """
        payload: dict = {
            "taskType": "videoInference",
            "taskUUID": task_uuid,
            "model": self.provider_model,
            "positivePrompt": request.visual_prompt,
            "width": dimensions.width,
            "height": dimensions.height,
            "duration": request.duration,
            "deliveryMethod": "async",
            "includeCost": True,
        }

        if self.provider_settings:
            payload["providerSettings"] = copy.deepcopy(self.provider_settings)

        frames = []
        if request.first_frame_image:
            frames.append({"inputImage": request.first_frame_image, "frame": "first"})
        if request.last_frame_image:
            frames.append({"inputImage": request.last_frame_image, "frame": "last"})

        if frames:
            if self.frame_format == FrameFormat.INPUTS_IMAGE:
                payload["inputs"] = {"frameImages": [{"image": f["inputImage"]} for f in frames]}
            elif self.frame_format == FrameFormat.INPUTS:
                payload["inputs"] = {"frameImages": frames}
            else:
                payload["frameImages"] = frames

        return payload


_GOOGLE_AUDIO = {"google": {"generateAudio": True, "enhancePrompt": True}}

STRATEGIES: dict[str, PayloadStrategy] = {
    "seedance-1.0-pro": PayloadStrategy("bytedance:2@1"),
    "klingai-2.5-turbo-pro": PayloadStrategy("klingai:6@1"),
    "veo-3.0": PayloadStrategy("google:3@0", _GOOGLE_AUDIO),
    "pixverse-v5.5": PayloadStrategy("pixverse:1@6", {"pixverse": {"audio": True, "thinking": "auto"}}),
    "hailuo-2.3": PayloadStrategy("minimax:4@1", frame_format=FrameFormat.INPUTS),
    "sora-2-pro": PayloadStrategy("openai:3@2"),
    "veo-3.1": PayloadStrategy("google:3@2", _GOOGLE_AUDIO),
    "ltx-2-pro": PayloadStrategy(
        "lightricks:2@0", {"lightricks": {"generateAudio": True, "fps": 25}}, FrameFormat.INPUTS
    ),
    "seedance-1.5-pro": PayloadStrategy(
        "bytedance:seedance@1.5-pro", {"bytedance": {"audio": True, "cameraFixed": False}}
    ),
    "kling-video-2.6-pro": PayloadStrategy(
        "klingai:kling-video@2.6-pro", {"klingai": {"sound": True, "cfgScale": 0.5}}
    ),
    "alibaba-wan-2.6": PayloadStrategy(
        "alibaba:wan@2.6", {"alibaba": {"audio": True}}, FrameFormat.INPUTS_IMAGE
    ),
}


def prepare_request(
    request: GenerationRequest,
    cap: ModelCapability,
    visual_prompt: str,
) -> tuple[GenerationRequest, list[str]]:
    """Return the request as it will be sent: final prompt, supported frames only."""
    first, last, warnings = resolve_frame_images(request, cap)
    prepared = request.model_copy(update={
        "visual_prompt": visual_prompt,
        "first_frame_image": first,
        "last_frame_image": last,
    })
    return prepared, warnings


def build_payload(request: GenerationRequest, task_uuid: Optional[str] = None) -> dict:
    strategy = STRATEGIES.get(request.model_id)
    if strategy is None:
        raise KeyError(f"No payload strategy for model: {request.model_id}")
    dims = get_dimensions(request.aspect_ratio, request.resolution, request.model_id)
    return strategy.build(request, dims, task_uuid or str(uuid.uuid4()))


# ── Stage ────────────────────────────────────────────────────────────────────

async def synthesize_video(request: GenerationRequest, video_provider) -> StageResult:
    """
    Submit a video task.

    Args:
        request:        Prepared request (see prepare_request).
        video_provider: Object exposing async submit_video_task(payload) -> (task_id, TaskStatus).

    Returns:
        Completed when the provider answered with a finished video, Pending
        with the task id otherwise, Failed on any provider error.
    """
    try:
        payload = build_payload(request)
    except KeyError as e:
        return Failed(error_kind=ErrorKind.PROVIDER, message=str(e))

    logger.info(
        f"Starting video generation: model={payload['model']}, "
        f"{payload['width']}x{payload['height']}, {request.duration}s, "
        f"audio={'providerSettings' in payload}, frames={bool(request.first_frame_image or request.last_frame_image)}"
    )

    try:
        task_id, status = await video_provider.submit_video_task(payload)
    except PipelineError as e:
        logger.error(f"Video generation failed to start: {e}")
        return Failed(error_kind=e.kind, message=e.message)

    if status.status == TaskState.COMPLETED and status.video_url:
        return Completed(asset_ref=status.video_url, cost=status.cost or 0.0, task_ref=task_id)
    if status.status == TaskState.FAILED:
        return Failed(error_kind=ErrorKind.PROVIDER, message=status.error or "Video generation failed")
    return Pending(task_ref=task_id, cost=status.cost or 0.0)


async def poll_video_task(
    task_ref: str,
    video_provider,
    interval: float = POLL_INTERVAL,
    timeout: float = POLL_TIMEOUT,
) -> Union[Completed, Failed]:
    """
    Poll an asynchronous task until it reaches a terminal state.

    Status reads that raise are treated as transient and retried on the
    next tick; only the ceiling ends polling early.

    Returns:
        Completed, or Failed (ErrorKind.TIMEOUT once the ceiling is reached).
    """
    deadline = time.monotonic() + timeout
    attempts = 0

    while True:
        attempts += 1
        try:
            status = await video_provider.get_task_status(task_ref)
        except PipelineError as e:
            logger.warning(f"Status read {attempts} for task {task_ref} failed: {e}")
        else:
            if status.status == TaskState.COMPLETED:
                if not status.video_url:
                    return Failed(error_kind=ErrorKind.PROVIDER, message="Task completed without a video URL")
                logger.info(f"Video task {task_ref} completed after {attempts} poll(s)")
                return Completed(asset_ref=status.video_url, cost=status.cost or 0.0, task_ref=task_ref)
            if status.status == TaskState.FAILED:
                return Failed(error_kind=ErrorKind.PROVIDER, message=status.error or "Video generation failed")

        if time.monotonic() + interval > deadline:
            return Failed(
                error_kind=ErrorKind.TIMEOUT,
                message=f"Video task {task_ref} did not finish within {timeout:.0f}s",
            )
        await asyncio.sleep(interval)
