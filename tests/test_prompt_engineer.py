import asyncio

from conftest import FakeTextProvider

from studio_workers.pipeline.capabilities import get_capability
from studio_workers.pipeline.errors import ProviderError
from studio_workers.pipeline.models import GenerationRequest
from studio_workers.pipeline.prompt_engineer import (
    DEFAULT_SOUND_PROMPT,
    build_sound_user_prompt,
    build_system_prompt,
    enhance_sound_prompt,
    enrich_prompt,
)

IDEA = "kinetic sand sliced with a knife"


def _enrich(provider, **kwargs):
    kwargs.setdefault("visual_prompt", IDEA)
    request = GenerationRequest(**kwargs)
    return asyncio.run(enrich_prompt(request, get_capability(request.model_id), provider))


def test_enriched_prompt_used():
    provider = FakeTextProvider()
    result = _enrich(provider)
    assert result.visual_prompt.startswith("Macro shot of glossy kinetic sand")
    assert result.used_fallback is False
    assert result.cost == 0.0012
    assert result.sound_prompt is None
    assert len(provider.calls) == 1
    assert IDEA in provider.calls[0][1]


def test_unparseable_output_falls_back_to_idea_verbatim():
    provider = FakeTextProvider(raw_text="Sorry, I can only describe this in prose.")
    result = _enrich(provider)
    assert result.visual_prompt == IDEA
    assert result.used_fallback is True
    assert result.warning
    assert result.cost == 0.0012


def test_provider_error_falls_back():
    provider = FakeTextProvider(error=ProviderError("gemini", "HTTP 503: overloaded", status_code=503))
    result = _enrich(provider)
    assert result.visual_prompt == IDEA
    assert result.used_fallback is True
    assert "gemini: HTTP 503" in result.warning


def test_degenerate_prompt_falls_back():
    result = _enrich(FakeTextProvider(payload={"visualPrompt": "sand"}))
    assert result.visual_prompt == IDEA
    assert result.used_fallback is True


def test_long_prompt_truncated_to_model_maximum():
    sentence = "Glossy slime stretches between two gloved fingers under warm light. "
    result = _enrich(
        FakeTextProvider(payload={"visualPrompt": sentence * 40}),
        model_id="alibaba-wan-2.6",
        duration=5,
    )
    assert len(result.visual_prompt) <= 1500
    assert result.visual_prompt.endswith(".")


def test_fallback_idea_truncated_to_model_maximum():
    long_idea = "slime " * 400
    provider = FakeTextProvider(raw_text="not json")
    result = asyncio.run(enrich_prompt(
        GenerationRequest(model_id="alibaba-wan-2.6", duration=5, visual_prompt=long_idea),
        get_capability("alibaba-wan-2.6"),
        provider,
    ))
    assert len(result.visual_prompt) <= 1500


def test_native_audio_model_gets_sound_prompt():
    payload = {
        "visualPrompt": "Close-up of a wooden spoon cracking caramelised sugar",
        "soundPrompt": "sharp crisp cracks",
    }
    result = _enrich(FakeTextProvider(payload=payload), model_id="veo-3.1")
    assert result.sound_prompt == "sharp crisp cracks"


def test_native_audio_model_defaults_sound_prompt():
    result = _enrich(FakeTextProvider(), model_id="veo-3.1")
    assert result.sound_prompt == DEFAULT_SOUND_PROMPT


def test_user_sound_prompt_kept_for_silent_model():
    result = _enrich(FakeTextProvider(), sound_prompt="soft crunching")
    assert result.sound_prompt == "soft crunching"


def test_enhance_disabled_skips_provider():
    provider = FakeTextProvider()
    result = _enrich(provider, enhance_prompt=False)
    assert provider.calls == []
    assert result.visual_prompt == IDEA
    assert result.cost == 0.0


def test_system_prompt_mentions_audio_mode():
    assert "ENABLED" in build_system_prompt(get_capability("veo-3.1"), 8, "9:16")
    assert "DISABLED" in build_system_prompt(get_capability("hailuo-2.3"), 6, "16:9")


def test_unexpected_provider_error_falls_back_to_idea():
    result = _enrich(FakeTextProvider(error=ValueError("Expecting value: line 1 column 1 (char 0)")))
    assert result.visual_prompt == IDEA
    assert result.used_fallback is True
    assert "Expecting value" in result.warning


# ── Sound prompt enhancement ─────────────────────────────────────────────────

def test_sound_user_prompt_prefers_the_scene():
    both = build_sound_user_prompt("rain", "a candle flickering by a window")
    assert "candle flickering" in both and '"rain"' in both
    assert '"rain"' in build_sound_user_prompt("rain")
    assert "from scratch" in build_sound_user_prompt()


def test_sound_prompt_enhanced():
    provider = FakeTextProvider(payload={"soundPrompt": "Close-mic wax crackle with soft, slow paper rustling"})
    result = asyncio.run(enhance_sound_prompt(provider, "crackle", "a candle burning"))
    assert result.sound_prompt == "Close-mic wax crackle with soft, slow paper rustling"
    assert result.used_fallback is False
    assert result.cost == 0.0012
    assert "a candle burning" in provider.calls[0][1]


def test_sound_prompt_falls_back_on_any_error():
    result = asyncio.run(enhance_sound_prompt(FakeTextProvider(error=RuntimeError("socket closed")), "soft tapping"))
    assert result.sound_prompt == "soft tapping"
    assert result.used_fallback is True
    assert "socket closed" in result.warning

    result = asyncio.run(enhance_sound_prompt(FakeTextProvider(error=ProviderError("gemini", "HTTP 503: busy"))))
    assert result.sound_prompt == DEFAULT_SOUND_PROMPT


def test_sound_prompt_capped_for_the_sound_provider():
    provider = FakeTextProvider(payload={"soundPrompt": "Gentle brushing on velvet. " * 40})
    result = asyncio.run(enhance_sound_prompt(provider, "brushing"))
    assert len(result.sound_prompt) <= 450
    assert result.sound_prompt.endswith(".")
