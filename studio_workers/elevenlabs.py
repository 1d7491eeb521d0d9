"""
ElevenLabs sound-effects client.

POST /v1/sound-generation returns the rendered clip as raw audio bytes.
"""

import os
import logging

import httpx

from .http_retry import request_with_backoff
from .pipeline.errors import ProviderError

logger = logging.getLogger(__name__)

ELEVENLABS_API_KEY = os.environ.get("ELEVENLABS_API_KEY", "")
ELEVENLABS_API_BASE = os.environ.get("ELEVENLABS_API_BASE", "https://api.elevenlabs.io")
OUTPUT_FORMAT = "mp3_44100_128"
REQUEST_TIMEOUT = 120

# Provider limits
MAX_DURATION_SECONDS = 22
MAX_TEXT_LENGTH = 450

COST_PER_CALL = 0.05  # USD, flat


def is_available() -> bool:
    return bool(ELEVENLABS_API_KEY)


async def generate_sound(text: str, duration_seconds: float, prompt_influence: float) -> dict:
    """
    Render a sound effect.

    Args:
        text:             Sound description, at most MAX_TEXT_LENGTH chars.
        duration_seconds: Clip length, at most MAX_DURATION_SECONDS.
        prompt_influence: 0-1, how literally the prompt is followed.

    Returns:
        {"audio_bytes": bytes, "format": "mp3" | "wav", "content_type": str, "cost": float}
    """
    if not ELEVENLABS_API_KEY:
        raise ProviderError("elevenlabs", "ELEVENLABS_API_KEY not set")

    url = f"{ELEVENLABS_API_BASE.rstrip('/')}/v1/sound-generation"
    body = {
        "text": text,
        "duration_seconds": duration_seconds,
        "prompt_influence": prompt_influence,
    }
    headers = {"xi-api-key": ELEVENLABS_API_KEY, "Accept": "audio/mpeg"}

    logger.info(
        f"ElevenLabs sound request: {len(text)} chars, duration={duration_seconds}s, "
        f"influence={prompt_influence:.2f}"
    )

    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
        resp = await request_with_backoff(
            client, "POST", url, "elevenlabs",
            json=body, headers=headers, params={"output_format": OUTPUT_FORMAT},
        )

    audio = resp.content
    if not audio:
        raise ProviderError("elevenlabs", "no audio data received")

    content_type = resp.headers.get("Content-Type", "audio/mpeg").split(";")[0]
    fmt = "wav" if "wav" in content_type else "mp3"
    logger.info(f"ElevenLabs sound generated: {len(audio)} bytes ({fmt})")

    return {
        "audio_bytes": audio,
        "format": fmt,
        "content_type": "audio/wav" if fmt == "wav" else "audio/mpeg",
        "cost": COST_PER_CALL,
    }
