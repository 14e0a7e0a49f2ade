"""
OpenAI Realtime (speech-to-speech) relay for Twilio Media Streams.

Twilio (g711_ulaw 8kHz) -> OpenAI Realtime -> Twilio (g711_ulaw 8kHz)

No transcoding in either direction. Turn detection and conversation memory belong
to the upstream model; this side only relays audio and handles barge-in.
"""

from __future__ import annotations

import asyncio
import base64
import json
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode

import structlog
import websockets
import websockets.exceptions

from src.relay.audio import AudioCodec
from src.relay.carrier import CarrierChannel
from src.relay.config import Config, ConfigError, get_config
from src.relay.errors import UpstreamError
from src.relay.llm import get_system_prompt
from src.relay.models import AudioFrame, BargeInState, CallSession, ConversationHistory
from src.relay.twilio_protocol import TwilioMarkEvent

logger = structlog.get_logger(__name__)

AUDIO_DELTA_EVENTS = ("response.audio.delta", "response.output_audio.delta")
RESPONSE_END_EVENTS = ("response.done", "response.completed", "response.cancelled")
# Transcript events and the conversation role they belong to.
TRANSCRIPT_EVENTS = {
    "conversation.item.input_audio_transcription.completed": "user",
    "response.audio_transcript.done": "assistant",
    "response.output_audio_transcript.done": "assistant",
}
IGNORED_ERROR_CODES = ("response_cancel_not_active",)

Connect = Callable[..., Awaitable[Any]]


class RealtimeState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    SPEAKING = "speaking"
    STOPPED = "stopped"


class RealtimeRelayPipeline:
    """
    Twilio Media Streams pipeline powered by OpenAI Realtime speech-to-speech.

    Same interface as CascadedPipeline: `start()`, `on_carrier_audio(frame)`,
    `on_mark(event)`, `schedule_greeting(text, delay_s)`, `stop()`.
    """

    def __init__(
        self,
        session: CallSession,
        channel: CarrierChannel,
        codec: Optional[AudioCodec] = None,
        *,
        config: Optional[Config] = None,
        connect: Optional[Connect] = None,
        on_terminate: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[UpstreamError], None]] = None,
    ):
        self.config = config or get_config()
        self.session = session
        self._channel = channel
        self._codec = codec or AudioCodec()
        self._connect = connect or websockets.connect
        self._on_terminate = on_terminate
        self._on_error = on_error
        self._log = logger.bind(session_id=session.session_id, stream_sid=session.stream_sid)

        self._state = RealtimeState.IDLE
        self._is_running = False
        self._stopped = False

        self._ws: Optional[Any] = None
        self._send_queue: asyncio.Queue[Optional[dict]] = asyncio.Queue(maxsize=2000)
        self._send_task: Optional[asyncio.Task] = None
        self._recv_task: Optional[asyncio.Task] = None
        self._greeting_task: Optional[asyncio.Task] = None

        # Response tracking / ignore late audio after barge-in.
        self._active_response_id: Optional[str] = None
        self._ignore_audio = False
        self._consecutive_errors = 0
        self.interruptions = 0
        self._history = ConversationHistory()

    @property
    def state(self) -> RealtimeState:
        return self._state

    @property
    def history(self) -> ConversationHistory:
        """Caller and assistant transcripts reported by the realtime model."""
        return self._history

    def build_url(self) -> str:
        return f"{self.config.openai_realtime_url}?{urlencode({'model': self.config.openai_realtime_model})}"

    def build_session_update(self) -> Dict[str, Any]:
        instructions = (self.config.openai_realtime_instructions or "").strip() or get_system_prompt(self.config)
        vad_threshold = min(1.0, max(0.0, float(self.config.openai_realtime_vad_threshold)))

        session: Dict[str, Any] = {
            "modalities": ["audio", "text"],
            "instructions": instructions,
            "voice": self.config.openai_realtime_voice,
            "input_audio_format": "g711_ulaw",
            "output_audio_format": "g711_ulaw",
            "turn_detection": {
                "type": "server_vad",
                "threshold": vad_threshold,
                "prefix_padding_ms": int(self.config.openai_realtime_prefix_padding_ms),
                "silence_duration_ms": int(self.config.openai_realtime_silence_ms),
            },
        }
        transcription_model = (self.config.openai_realtime_transcription_model or "").strip()
        if transcription_model:
            session["input_audio_transcription"] = {"model": transcription_model}

        return {"type": "session.update", "session": session}

    async def start(self) -> None:
        """
        Connect upstream and configure the session.

        Raises:
            ConfigError: If the API key or model is missing
            UpstreamError: If the realtime connection cannot be opened
        """
        api_key = (self.config.openai_api_key or "").strip()
        if not api_key or not self.config.openai_realtime_model:
            raise ConfigError("OpenAI Realtime requires OPENAI_API_KEY and OPENAI_REALTIME_MODEL")

        headers = {
            "Authorization": f"Bearer {api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            self._ws = await self._connect(self.build_url(), additional_headers=headers, open_timeout=10)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            self._log.error("OpenAI Realtime connection failed", error_type=type(e).__name__, error=str(e))
            raise UpstreamError("Failed to connect to OpenAI Realtime", cause=e) from e

        self._is_running = True
        self._state = RealtimeState.LISTENING
        self._send_task = asyncio.create_task(self._send_loop())
        self._recv_task = asyncio.create_task(self._receive_loop())

        self._send(self.build_session_update())

        self._log.info(
            "OpenAI Realtime connected",
            model=self.config.openai_realtime_model,
            voice=self.config.openai_realtime_voice,
            silence_ms=self.config.openai_realtime_silence_ms,
        )

    async def stop(self) -> None:
        """Close the upstream session. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        self._is_running = False
        self._state = RealtimeState.STOPPED

        current = asyncio.current_task()
        tasks = [
            t for t in (self._greeting_task, self._send_task, self._recv_task)
            if t and not t.done() and t is not current
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                self._log.debug("OpenAI Realtime close failed", error=str(e))
        self._ws = None

        self._log.info("OpenAI Realtime pipeline stopped", interruptions=self.interruptions)

    async def on_carrier_audio(self, frame: AudioFrame) -> None:
        if not self._is_running or not frame.payload:
            return
        # Twilio audio goes upstream as-is (g711_ulaw 8kHz).
        self._send({
            "type": "input_audio_buffer.append",
            "audio": base64.b64encode(frame.payload).decode("ascii"),
        })

    async def on_mark(self, event: TwilioMarkEvent) -> None:
        self._channel.protocol.handle_mark(event)

    def schedule_greeting(self, text: str, delay_s: float = 0.0) -> None:
        if not text or not self._is_running:
            return
        self._greeting_task = asyncio.create_task(self._run_greeting(text, delay_s))

    async def _run_greeting(self, text: str, delay_s: float) -> None:
        if delay_s > 0:
            await asyncio.sleep(delay_s)
        self._log.info("Requesting outbound greeting")
        self._send({
            "type": "response.create",
            "response": {
                "modalities": ["audio", "text"],
                "instructions": f"Greet the caller by saying: {text}",
            },
        })

    async def on_upstream_event(self, event: Dict[str, Any]) -> None:
        """Dispatch one decoded upstream event."""
        event_type = event.get("type")

        if event_type in AUDIO_DELTA_EVENTS:
            if self._ignore_audio:
                return
            response_id = event.get("response_id")
            if response_id and self._active_response_id and response_id != self._active_response_id:
                return
            delta = event.get("delta") or event.get("audio")
            if isinstance(delta, str) and delta:
                self._state = RealtimeState.SPEAKING
                self.session.barge_in_state = BargeInState.SPEAKING
                await self._channel.send_media_b64(delta)
            return

        if event_type == "input_audio_buffer.speech_started":
            await self._handle_speech_started()
            return

        if event_type == "response.created":
            response = event.get("response") or {}
            self._active_response_id = response.get("id") or event.get("response_id")
            self._ignore_audio = False
            return

        if event_type in RESPONSE_END_EVENTS:
            self._active_response_id = None
            self._consecutive_errors = 0
            if self._state == RealtimeState.SPEAKING:
                self._state = RealtimeState.LISTENING
            self.session.barge_in_state = BargeInState.IDLE
            self._log.debug("Realtime response finished", type=event_type)
            return

        if event_type == "error":
            self._handle_error(event.get("error") or {})
            return

        if event_type in TRANSCRIPT_EVENTS:
            text = str(event.get("transcript") or "").strip()
            if text:
                self._history.append(TRANSCRIPT_EVENTS[event_type], text)
            self._log.info("Realtime transcript", type=event_type, text=text[:200])
            return

        if event_type in ("session.created", "session.updated"):
            self._log.debug("Realtime session event", type=event_type)

    async def _handle_speech_started(self) -> None:
        # Caller started speaking: stop assistant audio immediately.
        if self._state != RealtimeState.SPEAKING and not self._active_response_id:
            return

        self._ignore_audio = True
        self.interruptions += 1
        self.session.barge_in_state = BargeInState.INTERRUPTED
        await self._channel.send_clear()
        if self._active_response_id:
            self._send({"type": "response.cancel"})
        self._state = RealtimeState.LISTENING
        self.session.barge_in_state = BargeInState.IDLE
        self._log.info("Barge-in (realtime)", response_id=self._active_response_id)

    def _handle_error(self, error: Dict[str, Any]) -> None:
        code = error.get("code") or ""
        if code in IGNORED_ERROR_CODES:
            self._log.debug("Ignoring realtime error", code=code)
            return

        message = error.get("message") or "unknown error"
        self._log.error("OpenAI Realtime error", code=code, error=message)

        self._consecutive_errors += 1
        failure = UpstreamError(f"OpenAI Realtime error: {message}")
        self.session.errors.append(failure.category)
        if self._on_error:
            self._on_error(failure)
        if self._consecutive_errors >= self.config.max_consecutive_failures:
            self._terminate("realtime failure budget exhausted")

    def _terminate(self, reason: str) -> None:
        self._is_running = False
        self._state = RealtimeState.STOPPED
        if self._on_terminate:
            self._on_terminate(reason)

    def _send(self, message: dict) -> None:
        if not self._is_running:
            return
        # Avoid blocking the Twilio receiver on upstream backpressure.
        try:
            self._send_queue.put_nowait(message)
        except asyncio.QueueFull:
            self._log.warning("OpenAI send queue full; dropping event", type=message.get("type"))

    async def _send_loop(self) -> None:
        ws = self._ws
        try:
            while self._is_running and ws is not None:
                item = await self._send_queue.get()
                if item is None:
                    break
                await ws.send(json.dumps(item))
        except asyncio.CancelledError:
            pass
        except websockets.exceptions.WebSocketException as e:
            self._log.error("OpenAI send failed", error=str(e))
            self._terminate("realtime upstream send failed")

    async def _receive_loop(self) -> None:
        ws = self._ws
        if ws is None:
            return

        try:
            async for raw in ws:
                if not self._is_running:
                    break
                try:
                    event = json.loads(raw)
                except (TypeError, ValueError):
                    self._log.warning("Invalid realtime event")
                    continue
                if isinstance(event, dict):
                    await self.on_upstream_event(event)
        except asyncio.CancelledError:
            return
        except websockets.exceptions.WebSocketException as e:
            self._log.warning("OpenAI Realtime connection lost", error=str(e))

        if self._is_running:
            self._log.info("OpenAI Realtime upstream closed")
            self._terminate("realtime upstream closed")


def create_realtime_pipeline(
    session: CallSession,
    channel: CarrierChannel,
    codec: Optional[AudioCodec] = None,
    *,
    config: Optional[Config] = None,
    on_terminate: Optional[Callable[[str], None]] = None,
    on_error: Optional[Callable[[UpstreamError], None]] = None,
) -> RealtimeRelayPipeline:
    config = config or get_config()
    missing = config.missing_for_mode("realtime_relay")
    if missing:
        raise ConfigError(f"Missing configuration for realtime relay: {', '.join(missing)}")
    return RealtimeRelayPipeline(
        session, channel, codec, config=config, on_terminate=on_terminate, on_error=on_error
    )
