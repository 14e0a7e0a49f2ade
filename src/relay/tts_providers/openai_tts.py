from __future__ import annotations

import asyncio
from typing import Any, Optional

import openai
import structlog
from openai import OpenAI

from src.relay.config import Config, get_config
from src.relay.errors import SynthesisError
from src.relay.tts_providers.base import SpeechSynthesizer
from src.relay.tts_types import SynthesizedAudio

logger = structlog.get_logger(__name__)

OPENAI_TTS_SAMPLE_RATE = 24000


class OpenAITTS(SpeechSynthesizer):
    """
    OpenAI Text-to-Speech provider (non-streaming).

    Synthesizes a full 24kHz WAV per sentence.
    """

    def __init__(self, config: Optional[Config] = None, client: Optional[Any] = None):
        self.config = config or get_config()
        self._client = client or OpenAI(api_key=self.config.openai_api_key)

    def _generate_wav(self, text: str, voice: str) -> bytes:
        resp = self._client.audio.speech.create(
            model=self.config.openai_tts_model,
            voice=voice,
            input=text,
            response_format="wav",
        )
        # SDKs have varied over time; handle several shapes.
        data = getattr(resp, "content", None)
        if isinstance(data, (bytes, bytearray)):
            return bytes(data)
        read = getattr(resp, "read", None)
        if callable(read):
            return read()
        return bytes(resp)

    async def synthesize(self, text: str, *, voice: Optional[str] = None) -> SynthesizedAudio:
        if not text or not text.strip():
            return SynthesizedAudio(audio=b"", sample_rate=OPENAI_TTS_SAMPLE_RATE)

        try:
            wav_bytes = await asyncio.to_thread(
                self._generate_wav, text, voice or self.config.openai_tts_voice
            )
        except openai.OpenAIError as e:
            logger.warning("OpenAI TTS failed", error_type=type(e).__name__, error=str(e))
            raise SynthesisError("OpenAI TTS failed", cause=e) from e

        return SynthesizedAudio(audio=wav_bytes, sample_rate=OPENAI_TTS_SAMPLE_RATE, container="wav")

    async def close(self) -> None:
        close = getattr(self._client, "close", None)
        if callable(close):
            close()
