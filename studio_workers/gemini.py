"""
Gemini integration for prompt engineering.

- Text generation: Google Gemini via the generateContent REST endpoint,
  with a system instruction and a single user turn.
- Cost is estimated from the usageMetadata token counts in the response.
"""

import os
import logging

import httpx

from .http_retry import request_with_backoff
from .pipeline.errors import ProviderError

logger = logging.getLogger(__name__)

GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY", "")
GEMINI_TEXT_MODEL = os.environ.get("GEMINI_TEXT_MODEL", "gemini-2.0-flash")
API_BASE = "https://generativelanguage.googleapis.com/v1beta"
REQUEST_TIMEOUT = 60

# USD per million tokens
INPUT_COST_PER_MTOK = float(os.environ.get("GEMINI_INPUT_COST_PER_MTOK", "0.10"))
OUTPUT_COST_PER_MTOK = float(os.environ.get("GEMINI_OUTPUT_COST_PER_MTOK", "0.40"))


def _api_url(model: str) -> str:
    return f"{API_BASE}/models/{model}:generateContent"


def is_available() -> bool:
    return bool(GEMINI_API_KEY)


def _usage_cost(result: dict) -> float:
    usage = result.get("usageMetadata") or {}
    prompt_tokens = usage.get("promptTokenCount", 0) or 0
    output_tokens = usage.get("candidatesTokenCount", 0) or 0
    cost = (prompt_tokens * INPUT_COST_PER_MTOK + output_tokens * OUTPUT_COST_PER_MTOK) / 1_000_000
    return round(cost, 6)


def _extract_text(result: dict) -> str:
    candidates = result.get("candidates") or []
    if not candidates:
        feedback = result.get("promptFeedback") or {}
        raise ProviderError("gemini", f"no candidates returned (blockReason={feedback.get('blockReason')})")

    parts = (candidates[0].get("content") or {}).get("parts") or []
    text = "".join(part.get("text", "") for part in parts)
    if not text.strip():
        raise ProviderError("gemini", f"empty response (finishReason={candidates[0].get('finishReason')})")
    return text


async def generate_text(
    system_prompt: str,
    user_prompt: str,
    temperature: float = 0.7,
    model: str | None = None,
) -> dict:
    """
    Call Gemini with a system instruction and one user message.

    Returns:
        {"text": str, "cost": float}
    """
    if not GEMINI_API_KEY:
        raise ProviderError("gemini", "GEMINI_API_KEY not set")

    model = model or GEMINI_TEXT_MODEL
    body = {
        "systemInstruction": {"parts": [{"text": system_prompt}]},
        "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
        "generationConfig": {
            "temperature": temperature,
            "responseMimeType": "application/json",
        },
    }

    logger.info(f"Gemini {model} request: system={len(system_prompt)} chars, user={len(user_prompt)} chars")

    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
        resp = await request_with_backoff(
            client, "POST", _api_url(model), "gemini",
            json=body, headers={"x-goog-api-key": GEMINI_API_KEY},
        )

    try:
        result = resp.json()
        text = _extract_text(result)
    except (ValueError, AttributeError, TypeError) as e:
        raise ProviderError("gemini", f"malformed response: {e}; body={resp.text[:200]!r}") from e

    cost = _usage_cost(result)
    logger.info(f"Gemini {model} response: {len(text)} chars, cost=${cost:.6f}")
    return {"text": text, "cost": cost}
