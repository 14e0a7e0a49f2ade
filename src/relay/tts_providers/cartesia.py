from __future__ import annotations

import asyncio
import base64
import json
import uuid
from typing import Optional

import structlog
import websockets

from src.relay.config import Config, get_config
from src.relay.errors import SynthesisError
from src.relay.tts_providers.base import SpeechSynthesizer
from src.relay.tts_types import SynthesizedAudio

logger = structlog.get_logger(__name__)

CARTESIA_WS_URL = "wss://api.cartesia.ai/tts/websocket"
CARTESIA_API_VERSION = "2024-06-10"


class CartesiaTTS(SpeechSynthesizer):
    """
    Cartesia TTS client using the WebSocket API.

    Collects raw PCM16 chunks for one sentence and returns them together.
    """

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()

    def build_request(self, text: str, voice_id: str) -> dict:
        return {
            "context_id": uuid.uuid4().hex,
            "model_id": self.config.cartesia_model_id,
            "transcript": text,
            "voice": {"mode": "id", "id": voice_id},
            "output_format": {
                "container": "raw",
                "encoding": "pcm_s16le",
                "sample_rate": self.config.tts_sample_rate,
            },
            "continue": False,
        }

    async def synthesize(self, text: str, *, voice: Optional[str] = None) -> SynthesizedAudio:
        sample_rate = self.config.tts_sample_rate
        if not text or not text.strip():
            return SynthesizedAudio(audio=b"", sample_rate=sample_rate, container="raw")

        url = (
            f"{CARTESIA_WS_URL}?api_key={self.config.cartesia_api_key}"
            f"&cartesia_version={CARTESIA_API_VERSION}"
        )
        pcm = bytearray()

        try:
            async with websockets.connect(url, open_timeout=10) as ws:
                await ws.send(json.dumps(self.build_request(text, voice or self.config.cartesia_voice_id)))

                async for message in ws:
                    if isinstance(message, (bytes, bytearray)):
                        pcm.extend(message)
                        continue

                    data = json.loads(message)
                    msg_type = data.get("type", "")
                    if msg_type == "chunk":
                        audio_b64 = data.get("data")
                        if audio_b64:
                            pcm.extend(base64.b64decode(audio_b64))
                    elif msg_type == "done":
                        break
                    elif msg_type == "error":
                        logger.error("Cartesia error", error=data.get("message") or data.get("error"))
                        raise SynthesisError(f"Cartesia error: {data.get('message') or data.get('error')}")

        except (OSError, asyncio.TimeoutError, json.JSONDecodeError, websockets.exceptions.WebSocketException) as e:
            logger.error("Cartesia synthesis failed", error_type=type(e).__name__, error=str(e))
            raise SynthesisError("Cartesia synthesis failed", cause=e) from e

        return SynthesizedAudio(audio=bytes(pcm), sample_rate=sample_rate, container="raw")
