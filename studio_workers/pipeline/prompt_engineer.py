"""
Prompt enrichment stage.

Turns a terse idea into a cinematic, provider-ready visual prompt (and a
sound-design prompt when the target model renders audio itself). Enrichment
is a quality step only: any provider or parsing failure falls back to the
original idea and the pipeline carries on.

Also hosts the standalone sound-prompt enhancer, which writes or improves
the prompt the audio stage consumes for models without native audio.
"""

import logging
from typing import Optional

from .capabilities import ModelCapability
from .errors import PipelineError
from .models import EnhancedSoundPrompt, EnrichedPrompt, GenerationRequest
from .prompt_parser import parse_engineer_output, parse_sound_output, truncate_at_boundary
from .sound_gen import MAX_PROMPT_LENGTH as MAX_SOUND_PROMPT_LENGTH

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

MIN_ENRICHED_LENGTH = 20
DEFAULT_SOUND_PROMPT = "ASMR quality audio, satisfying sounds, immersive soundscape"
TEMPERATURE = 0.7


# ── Prompt templates ─────────────────────────────────────────────────────────

def _pacing_hint(duration: int) -> str:
    if duration <= 4:
        return "Focus on a single, perfect moment. No transitions."
    if duration <= 8:
        return "Allow for subtle progression. One key action with buildup."
    return "Gentle pacing. Multiple related actions are possible."


def _framing_hint(aspect_ratio: str) -> str:
    return {
        "16:9": "Cinematic widescreen: horizontal composition, guide the eye left to right.",
        "9:16": "Vertical mobile format: stack elements, vertical flow, hands entering from the bottom.",
        "1:1": "Square format: centered subjects and symmetrical compositions.",
    }.get(aspect_ratio, "Consider the frame shape in the composition.")


def build_system_prompt(cap: ModelCapability, duration: int, aspect_ratio: str) -> str:
    audio_line = (
        "Audio generation is ENABLED: describe the soundscape in a separate soundPrompt."
        if cap.native_audio
        else "Audio generation is DISABLED: the prompt must be purely visual."
    )
    output_shape = (
        '{"visualPrompt": "...", "soundPrompt": "..."}'
        if cap.native_audio
        else '{"visualPrompt": "..."}'
    )
    return (
        "You are an expert AI video prompt engineer specialising in ASMR and sensory content.\n"
        "Transform the user's concept into a vivid, precise prompt for a text-to-video model.\n\n"
        f"Target model: {cap.label}\n"
        f"Duration: {duration} seconds. {_pacing_hint(duration)}\n"
        f"Aspect ratio: {aspect_ratio}. {_framing_hint(aspect_ratio)}\n"
        f"{audio_line}\n\n"
        "Layer the visual prompt: subject and action, materials and textures, lighting, "
        "camera and lens, motion, atmosphere.\n"
        f"Keep the visual prompt under {min(cap.max_prompt_length, 2000)} characters.\n\n"
        f"Respond ONLY with JSON of the form {output_shape}"
    )


def build_user_prompt(idea: str) -> str:
    return f"ASMR concept:\n{idea.strip()}\n\nGenerate the optimized prompt(s) as JSON."


# ── Stage ────────────────────────────────────────────────────────────────────

def _fallback(
    request: GenerationRequest,
    cap: ModelCapability,
    warning: Optional[str],
    cost: float = 0.0,
) -> EnrichedPrompt:
    sound = request.sound_prompt or (DEFAULT_SOUND_PROMPT if cap.native_audio else None)
    return EnrichedPrompt(
        visual_prompt=truncate_at_boundary(request.visual_prompt, cap.max_prompt_length),
        sound_prompt=sound,
        cost=cost,
        used_fallback=True,
        warning=warning,
    )


async def enrich_prompt(
    request: GenerationRequest,
    cap: ModelCapability,
    text_provider,
) -> EnrichedPrompt:
    """
    Run the prompt enrichment stage.

    Args:
        request:       The validated request; visual_prompt holds the idea.
        cap:           Capability of the target model.
        text_provider: Object exposing
                       async generate_text(system_prompt, user_prompt, temperature) -> {"text", "cost"}.

    Returns:
        EnrichedPrompt. Never raises for provider or parse failures.
    """
    if not request.enhance_prompt:
        return EnrichedPrompt(
            visual_prompt=truncate_at_boundary(request.visual_prompt, cap.max_prompt_length),
            sound_prompt=request.sound_prompt,
        )

    system_prompt = build_system_prompt(cap, request.duration, request.aspect_ratio)
    user_prompt = build_user_prompt(request.visual_prompt)

    logger.info(f"Engineering prompt for {cap.model_id} (native audio: {cap.native_audio})")
    try:
        response = await text_provider.generate_text(system_prompt, user_prompt, temperature=TEMPERATURE)
    except PipelineError as e:
        logger.warning(f"Prompt enrichment failed, using original idea: {e}")
        return _fallback(request, cap, f"Prompt enrichment failed ({e}); used the original idea")
    except Exception as e:
        logger.warning(f"Prompt enrichment raised unexpectedly, using original idea: {e}", exc_info=True)
        return _fallback(request, cap, f"Prompt enrichment failed ({e}); used the original idea")

    cost = float(response.get("cost") or 0.0)
    parsed = parse_engineer_output(response.get("text", ""), expect_audio=cap.native_audio)

    if parsed is None:
        return _fallback(request, cap, "Prompt enrichment returned unparseable output; used the original idea", cost)

    visual = parsed["visual_prompt"]
    if len(visual) < max(MIN_ENRICHED_LENGTH, cap.min_prompt_length):
        logger.warning(f"Engineered prompt too short ({len(visual)} chars), using original idea")
        return _fallback(request, cap, "Prompt enrichment returned a degenerate prompt; used the original idea", cost)

    if len(visual) > cap.max_prompt_length:
        logger.info(f"Truncating engineered prompt from {len(visual)} to {cap.max_prompt_length} chars")
        visual = truncate_at_boundary(visual, cap.max_prompt_length)

    sound = parsed["sound_prompt"] or request.sound_prompt
    if cap.native_audio and not sound:
        sound = DEFAULT_SOUND_PROMPT

    logger.info(f"Generated visual prompt ({len(visual)} chars), cost=${cost:.6f}")
    return EnrichedPrompt(visual_prompt=visual, sound_prompt=sound, cost=cost)


# ── Sound prompt enhancement ─────────────────────────────────────────────────

SOUND_SYSTEM_PROMPT = (
    "You are an ASMR sound designer writing prompts for a sound-effect generator.\n"
    "Describe 2-3 layered sound elements: the textures, the rhythm, the recording "
    "perspective (close-mic, binaural) and the acoustic space.\n"
    "No music, no voices unless asked. 100-400 characters, dense with detail.\n\n"
    'Respond ONLY with JSON of the form {"soundPrompt": "..."}'
)


def build_sound_user_prompt(sound_prompt: str = "", visual_prompt: str = "") -> str:
    """Sonify the scene when one is given, else enhance the sound idea, else start from scratch."""
    sound_prompt, visual_prompt = sound_prompt.strip(), visual_prompt.strip()
    if visual_prompt:
        prompt = f'Visual scene to sonify:\n"{visual_prompt}"\n\n'
        if sound_prompt:
            prompt += f'Current sound idea:\n"{sound_prompt}"\n\nEnhance it to match the scene.'
        else:
            prompt += "Create the ASMR sound effects that would accompany this scene."
        return prompt
    if sound_prompt:
        return (
            f'Sound concept to enhance:\n"{sound_prompt}"\n\n'
            "Add specific textures, recording perspective, rhythm and sensory detail."
        )
    return (
        "Create a satisfying ASMR sound effect from scratch: tapping, crinkling, "
        "pouring, brushing, slicing or gentle ambience."
    )


def _sound_fallback(sound_prompt: str, warning: str, cost: float = 0.0) -> EnhancedSoundPrompt:
    return EnhancedSoundPrompt(
        sound_prompt=truncate_at_boundary(sound_prompt.strip(), MAX_SOUND_PROMPT_LENGTH) or DEFAULT_SOUND_PROMPT,
        cost=cost,
        used_fallback=True,
        warning=warning,
    )


async def enhance_sound_prompt(
    text_provider,
    sound_prompt: str = "",
    visual_prompt: str = "",
) -> EnhancedSoundPrompt:
    """
    Write or improve a sound-effect prompt, optionally matched to a visual scene.

    Falls back to the given sound idea (or a generic ASMR prompt) on any
    provider or parse failure. Never raises for those.
    """
    user_prompt = build_sound_user_prompt(sound_prompt, visual_prompt)

    logger.info(f"Enhancing sound prompt (scene: {bool(visual_prompt.strip())}, idea: {bool(sound_prompt.strip())})")
    try:
        response = await text_provider.generate_text(SOUND_SYSTEM_PROMPT, user_prompt, temperature=TEMPERATURE)
    except PipelineError as e:
        logger.warning(f"Sound prompt enhancement failed: {e}")
        return _sound_fallback(sound_prompt, f"Sound prompt enhancement failed ({e}); kept the original")
    except Exception as e:
        logger.warning(f"Sound prompt enhancement raised unexpectedly: {e}", exc_info=True)
        return _sound_fallback(sound_prompt, f"Sound prompt enhancement failed ({e}); kept the original")

    cost = float(response.get("cost") or 0.0)
    enhanced = parse_sound_output(response.get("text", ""))
    if not enhanced or len(enhanced) < MIN_ENRICHED_LENGTH:
        return _sound_fallback(sound_prompt, "Sound prompt enhancement returned no usable prompt; kept the original", cost)

    if len(enhanced) > MAX_SOUND_PROMPT_LENGTH:
        enhanced = truncate_at_boundary(enhanced, MAX_SOUND_PROMPT_LENGTH)

    logger.info(f"Generated sound prompt ({len(enhanced)} chars), cost=${cost:.6f}")
    return EnhancedSoundPrompt(sound_prompt=enhanced, cost=cost)
