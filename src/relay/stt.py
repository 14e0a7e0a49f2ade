"""
Speech Recognizer Adapter.

Streams carrier-rate PCM16 to a streaming recognizer and reports interim and
final transcripts through an async callback. Deepgram's live WebSocket API is
the provided implementation.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import structlog
import websockets

from src.relay.audio import CARRIER_SAMPLE_RATE
from src.relay.config import Config, get_config
from src.relay.errors import RecognizerError
from src.relay.models import TranscriptEvent

logger = structlog.get_logger(__name__)

TranscriptCallback = Callable[[TranscriptEvent], Awaitable[None]]
ClosedCallback = Callable[[], Awaitable[None]]


class SpeechRecognizer(ABC):
    """Adapter boundary for streaming speech-to-text."""

    @abstractmethod
    async def start(
        self,
        on_transcript: TranscriptCallback,
        on_closed: Optional[ClosedCallback] = None,
    ) -> None:
        """
        Open the recognition stream.

        Raises:
            RecognizerError: If the service cannot be reached
        """
        raise NotImplementedError

    @abstractmethod
    async def send_audio(self, pcm: bytes) -> None:
        """Push PCM16 at the carrier rate. Raises RecognizerError on a dead stream."""
        raise NotImplementedError

    @abstractmethod
    async def stop(self) -> None:
        raise NotImplementedError


class DeepgramRecognizer(SpeechRecognizer):
    """
    Deepgram streaming STT client using raw WebSocket.
    """

    def __init__(self, session_id: str = "", config: Optional[Config] = None):
        self.config = config or get_config()
        self.session_id = session_id
        self._ws: Optional[Any] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._on_transcript: Optional[TranscriptCallback] = None
        self._on_closed: Optional[ClosedCallback] = None
        self._is_connected = False
        self._stopping = False

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    def build_url(self) -> str:
        params = {
            "model": self.config.deepgram_model,
            "language": self.config.deepgram_language,
            "encoding": "linear16",
            "sample_rate": CARRIER_SAMPLE_RATE,
            "channels": 1,
            "punctuate": "true",
            "interim_results": "true",
            "endpointing": self.config.deepgram_endpointing_ms,
        }
        return f"{self.config.deepgram_url}?{urlencode(params)}"

    async def start(
        self,
        on_transcript: TranscriptCallback,
        on_closed: Optional[ClosedCallback] = None,
    ) -> None:
        if self._is_connected:
            return

        self._on_transcript = on_transcript
        self._on_closed = on_closed
        self._stopping = False

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        try:
            self._ws = await websockets.connect(
                self.build_url(),
                additional_headers=headers,
                open_timeout=10,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            logger.error(
                "Deepgram connection failed",
                session_id=self.session_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise RecognizerError("Deepgram connection failed", cause=e) from e

        self._is_connected = True
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("Deepgram STT connected", session_id=self.session_id, model=self.config.deepgram_model)

    async def stop(self) -> None:
        """Disconnect from Deepgram."""
        self._stopping = True
        self._is_connected = False

        if self._ws:
            try:
                # Ask Deepgram to flush any pending final before closing.
                await self._ws.send(json.dumps({"type": "CloseStream"}))
            except websockets.exceptions.ConnectionClosed as e:
                logger.debug("Deepgram already closed before CloseStream", error=str(e))
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        if self._receive_task and not self._receive_task.done():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass

        self._ws = None
        self._receive_task = None
        logger.info("Deepgram STT disconnected", session_id=self.session_id)

    async def send_audio(self, pcm: bytes) -> None:
        if not pcm:
            return
        if not self._is_connected or not self._ws:
            raise RecognizerError("Deepgram stream is not connected")

        try:
            await self._ws.send(pcm)
        except websockets.exceptions.ConnectionClosed as e:
            self._is_connected = False
            raise RecognizerError("Deepgram stream closed", cause=e) from e

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                    continue
                await self._handle_message(data)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Deepgram connection closed", session_id=self.session_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Deepgram receive loop error", session_id=self.session_id, error=str(e))
        finally:
            self._is_connected = False

        if not self._stopping and self._on_closed:
            await self._on_closed()

    async def _handle_message(self, data: dict) -> None:
        msg_type = data.get("type", "")

        if msg_type == "Results":
            alternatives = (data.get("channel") or {}).get("alternatives") or []
            if not alternatives:
                return

            transcript = alternatives[0].get("transcript", "")
            if not transcript:
                return

            event = TranscriptEvent(
                session_id=self.session_id,
                text=transcript,
                is_final=bool(data.get("is_final", False)),
                confidence=float(alternatives[0].get("confidence", 0.0) or 0.0),
            )
            logger.debug(
                "STT transcript",
                text=transcript[:50],
                is_final=event.is_final,
            )
            if self._on_transcript:
                await self._on_transcript(event)

        elif msg_type == "Error":
            logger.error("Deepgram error", error=data.get("description") or data.get("message"), details=data)


def create_recognizer(session_id: str, config: Optional[Config] = None) -> SpeechRecognizer:
    return DeepgramRecognizer(session_id=session_id, config=config)
