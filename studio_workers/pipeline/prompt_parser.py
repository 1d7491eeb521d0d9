"""
Tolerant parsing of text-model output.

The prompt engineer is asked for raw JSON but models wrap it in code fences,
commentary, smart quotes and trailing commas. Candidates are extracted in a
fixed order and the first one that decodes to an object with a usable visual
prompt wins.
"""

import re
import json
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)

VISUAL_KEYS = ("visualPrompt", "visual_prompt", "prompt")
SOUND_KEYS = ("soundPrompt", "sound_prompt")

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)```")
_GREEDY_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")

_SMART_QUOTES = str.maketrans({
    "“": '"',
    "”": '"',
    "‘": "'",
    "’": "'",
})

_decoder = json.JSONDecoder()


def normalize_json_text(text: str) -> str:
    """Straighten smart quotes and drop trailing separators before } or ]."""
    text = text.translate(_SMART_QUOTES)
    return _TRAILING_COMMA_RE.sub(r"\1", text).strip()


# ── Extraction strategies ────────────────────────────────────────────────────

def _fenced_block(text: str) -> Optional[str]:
    match = _FENCE_RE.search(text)
    return match.group(1) if match else None


def _greedy_object(text: str) -> Optional[str]:
    match = _GREEDY_OBJECT_RE.search(text)
    return match.group(0) if match else None


def _whole_text(text: str) -> Optional[str]:
    return text


EXTRACTORS: tuple[Callable[[str], Optional[str]], ...] = (
    _fenced_block,
    _greedy_object,
    _whole_text,
)


def _decode_object(candidate: str) -> Optional[dict]:
    """Decode a candidate, falling back to the first well-formed object inside it."""
    text = normalize_json_text(candidate)
    if not text:
        return None

    try:
        value = json.loads(text)
        if isinstance(value, dict):
            return value
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    while start != -1:
        try:
            value, _ = _decoder.raw_decode(text, start)
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        start = text.find("{", start + 1)
    return None


def _first_string(data: dict, keys: tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def parse_engineer_output(raw_output: str, expect_audio: bool = False) -> Optional[dict]:
    """
    Extract the engineered prompts from a text-model response.

    Args:
        raw_output:   Raw text returned by the model.
        expect_audio: Whether a sound prompt should be picked up as well.

    Returns:
        {"visual_prompt": str, "sound_prompt": str | None}, or None when no
        strategy yields an object with a visual prompt.
    """
    if not raw_output or not raw_output.strip():
        return None

    for extract in EXTRACTORS:
        candidate = extract(raw_output)
        if not candidate:
            continue
        data = _decode_object(candidate)
        if data is None:
            continue
        visual = _first_string(data, VISUAL_KEYS)
        if not visual:
            continue
        sound = _first_string(data, SOUND_KEYS) if expect_audio else None
        logger.info(
            f"Parsed engineer output via {extract.__name__.lstrip('_')}: "
            f"visual={len(visual)} chars, sound={len(sound) if sound else 0} chars"
        )
        return {"visual_prompt": visual, "sound_prompt": sound}

    logger.warning(f"Could not parse engineer output: {raw_output[:200]!r}")
    return None


def parse_sound_output(raw_output: str) -> Optional[str]:
    """
    Extract a sound prompt from a text-model response.

    Uses the same extractors as parse_engineer_output. Output that holds no
    JSON object at all is taken as the prompt itself, minus wrapping quotes.
    """
    if not raw_output or not raw_output.strip():
        return None

    for extract in EXTRACTORS:
        candidate = extract(raw_output)
        if not candidate:
            continue
        data = _decode_object(candidate)
        if data is None:
            continue
        return _first_string(data, SOUND_KEYS + ("prompt",))

    plain = raw_output.strip().translate(_SMART_QUOTES).strip("\"'` \n")
    return plain or None


# ── Truncation ───────────────────────────────────────────────────────────────

def truncate_at_boundary(text: str, max_length: int, min_keep_ratio: float = 0.5) -> str:
    """
    Shorten text to at most max_length characters without cutting mid-word.

    Prefers the last sentence end, then the last clause separator, then the
    last space, provided the cut keeps at least min_keep_ratio of the limit.
    Falls back to a hard cut when no boundary qualifies.
    """
    if max_length <= 0:
        return ""
    if len(text) <= max_length:
        return text

    window = text[:max_length]
    floor = int(max_length * min_keep_ratio)

    # Sentence end: punctuation followed by whitespace (or end of text)
    for i in range(len(window) - 1, floor - 1, -1):
        if window[i] in ".!?" and (i + 1 >= len(text) or text[i + 1].isspace()):
            return window[: i + 1]

    clause = max(window.rfind(sep) for sep in (",", ";", ":"))
    if clause >= floor:
        return window[:clause].rstrip()

    space = window.rfind(" ")
    if space >= floor:
        return window[:space].rstrip(" ,;:")

    return window
