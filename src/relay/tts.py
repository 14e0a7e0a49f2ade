"""
Speech Synthesizer Adapter selection.

- `openai`: OpenAI Audio Speech API, 24kHz WAV per sentence (default)
- `cartesia`: Cartesia WebSocket TTS, raw PCM16 at TTS_SAMPLE_RATE
"""

from __future__ import annotations

from typing import Optional

from src.relay.config import Config, ConfigError, get_config
from src.relay.tts_providers.base import SpeechSynthesizer
from src.relay.tts_providers.cartesia import CartesiaTTS
from src.relay.tts_providers.openai_tts import OpenAITTS
from src.relay.tts_types import SynthesizedAudio

__all__ = ["SpeechSynthesizer", "SynthesizedAudio", "create_synthesizer"]


def create_synthesizer(config: Optional[Config] = None) -> SpeechSynthesizer:
    config = config or get_config()
    provider = (config.tts_provider or "openai").strip().lower()

    if provider == "openai":
        return OpenAITTS(config)
    if provider == "cartesia":
        return CartesiaTTS(config)

    raise ConfigError(f"Unsupported TTS_PROVIDER: {config.tts_provider}")
