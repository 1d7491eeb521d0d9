from . import gemini
from . import runware
from . import elevenlabs


class ProviderFactory:
    @staticmethod
    def get_text_provider():
        return gemini

    @staticmethod
    def get_video_provider():
        # Every registered model is served through Runware's videoInference API
        return runware

    @staticmethod
    def get_audio_provider():
        # None when unconfigured so the pipeline skips sound synthesis
        return elevenlabs if elevenlabs.is_available() else None
