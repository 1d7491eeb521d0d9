"""
Audio synthesis stage.

Only runs for models without native audio, when a sound prompt exists and
the sound provider is configured. Failures come back as Failed results; the
orchestrator delivers the video without synthesized audio in that case.
"""

import base64
import logging
from typing import Union

from .errors import PipelineError
from .models import Completed, ErrorKind, Failed
from .prompt_parser import truncate_at_boundary

logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 450
MAX_DURATION_SECONDS = 22
DEFAULT_INTENSITY = 50


def intensity_to_influence(intensity) -> float:
    """Map a 0-100 intensity linearly onto prompt influence in [0, 1]."""
    if intensity is None:
        intensity = DEFAULT_INTENSITY
    return max(0.0, min(1.0, intensity / 100))


def prepare_sound_prompt(sound_prompt: str) -> str:
    prompt = sound_prompt.strip()
    if "asmr" not in prompt.lower():
        prompt = f"ASMR quality, {prompt}"
    if len(prompt) > MAX_PROMPT_LENGTH:
        logger.info(f"Truncating sound prompt from {len(prompt)} to {MAX_PROMPT_LENGTH} chars")
        prompt = truncate_at_boundary(prompt, MAX_PROMPT_LENGTH)
    return prompt


def to_data_uri(audio: bytes, content_type: str) -> str:
    return f"data:{content_type};base64,{base64.b64encode(audio).decode()}"


async def synthesize_sound(
    sound_prompt: str,
    duration: float,
    audio_provider,
    intensity: int = DEFAULT_INTENSITY,
) -> Union[Completed, Failed]:
    """
    Render a sound-effect clip matching the video.

    Args:
        sound_prompt:   Sound design description.
        duration:       Video duration in seconds; clamped to the provider maximum.
        audio_provider: Object exposing
                        async generate_sound(text, duration_seconds, prompt_influence) -> dict.
        intensity:      0-100, mapped to prompt influence.

    Returns:
        Completed with a data URI asset reference, or Failed.
    """
    text = prepare_sound_prompt(sound_prompt)
    clamped = min(duration, MAX_DURATION_SECONDS)
    influence = intensity_to_influence(intensity)

    logger.info(f"Starting sound generation: {len(text)} chars, duration={clamped}s, influence={influence:.2f}")

    try:
        result = await audio_provider.generate_sound(text, clamped, influence)
    except PipelineError as e:
        logger.warning(f"Sound generation failed: {e}")
        return Failed(error_kind=e.kind, message=e.message)
    except Exception as e:
        logger.warning(f"Sound generation raised unexpectedly: {e}", exc_info=True)
        return Failed(error_kind=ErrorKind.PROVIDER, message=str(e) or type(e).__name__)

    audio = result.get("audio_bytes") or b""
    if not audio:
        return Failed(error_kind=ErrorKind.PROVIDER, message="No audio data received")

    content_type = result.get("content_type") or "audio/mpeg"
    return Completed(
        asset_ref=to_data_uri(audio, content_type),
        cost=float(result.get("cost") or 0.0),
        duration_seconds=float(clamped),
    )
