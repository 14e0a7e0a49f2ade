"""
Test doubles and message builders shared by the test modules.
"""

import asyncio
import base64
import json
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from src.relay.carrier import CarrierChannel, CarrierConnection
from src.relay.errors import CarrierClosed, LanguageModelError, SynthesisError
from src.relay.llm import LanguageModel
from src.relay.models import CallSession, ConversationHistory, TranscriptEvent
from src.relay.stt import SpeechRecognizer
from src.relay.tts import SpeechSynthesizer, SynthesizedAudio
from src.relay.twilio_protocol import TwilioStartEvent


def twilio_start(stream_sid: str = "MZ123456", direction: Optional[str] = None) -> str:
    custom = {"direction": direction} if direction else {}
    return json.dumps({
        "event": "start",
        "streamSid": stream_sid,
        "start": {
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": custom,
        },
    })


def twilio_media(payload: bytes, stream_sid: str = "MZ123456", chunk: int = 1) -> str:
    return json.dumps({
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "track": "inbound",
            "chunk": chunk,
            "timestamp": str(chunk * 20),
            "payload": base64.b64encode(payload).decode(),
        },
    })


def twilio_stop(stream_sid: str = "MZ123456") -> str:
    return json.dumps({"event": "stop", "streamSid": stream_sid, "stop": {}})


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll `predicate` until it holds or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class FakeCarrier(CarrierConnection):
    """In-memory carrier connection."""

    def __init__(self) -> None:
        self._incoming: asyncio.Queue = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self.close_code: Optional[int] = None

    def feed(self, raw: Any) -> None:
        """Queue a raw message. An exception instance is raised by the next read."""
        self._incoming.put_nowait(raw)

    def disconnect(self) -> None:
        self._incoming.put_nowait(None)

    async def receive_text(self) -> str:
        raw = await self._incoming.get()
        if raw is None or self.closed:
            raise CarrierClosed("fake carrier closed")
        if isinstance(raw, Exception):
            raise raw
        return raw

    async def send_text(self, message: str) -> None:
        if self.closed:
            raise CarrierClosed("fake carrier closed")
        self.sent.append(json.loads(message))

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.close_code = code
        self._incoming.put_nowait(None)

    def events(self, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        return [m for m in self.sent if kind is None or m.get("event") == kind]

    @property
    def event_kinds(self) -> List[str]:
        return [m["event"] for m in self.sent]


class FakeRecognizer(SpeechRecognizer):
    """Recognizer double: records audio and lets tests emit transcripts."""

    def __init__(self, start_error: Optional[Exception] = None, start_delay: float = 0.0) -> None:
        self.start_error = start_error
        self.start_delay = start_delay
        self.start_calls = 0
        self.stopped = False
        self.audio: List[bytes] = []
        self.started = asyncio.Event()
        self._on_transcript = None
        self._on_closed = None

    async def start(self, on_transcript, on_closed=None) -> None:
        self.start_calls += 1
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.start_error is not None:
            raise self.start_error
        self._on_transcript = on_transcript
        self._on_closed = on_closed
        self.started.set()

    async def send_audio(self, pcm: bytes) -> None:
        self.audio.append(pcm)

    async def stop(self) -> None:
        self.stopped = True

    async def emit(self, text: str, is_final: bool = True) -> None:
        await self._on_transcript(TranscriptEvent(session_id="test", text=text, is_final=is_final))

    async def drop_connection(self) -> None:
        await self._on_closed()


class Stall:
    """FakeLLM script entry that hangs before the first token."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds


class FakeLLM(LanguageModel):
    """
    Scripted language model.

    Each call consumes the next script entry: a list of tokens, an exception
    raised before any token is produced, or a Stall.
    """

    def __init__(self, scripts: Optional[List[Any]] = None, default: Any = None) -> None:
        self.scripts = list(scripts or [])
        self.default = default
        self.calls: List[List[Dict[str, str]]] = []
        self.closed = False

    async def stream_reply(self, system_prompt: str, history: ConversationHistory) -> AsyncIterator[str]:
        self.calls.append(history.to_messages())
        script = self.scripts.pop(0) if self.scripts else self.default
        if isinstance(script, Exception):
            raise script
        if isinstance(script, Stall):
            await asyncio.sleep(script.seconds)
        for token in script or []:
            yield token

    async def close(self) -> None:
        self.closed = True


class FakeSynthesizer(SpeechSynthesizer):
    """Returns `frames` carrier frames of raw 8kHz PCM per sentence."""

    def __init__(self, frames: int = 2, error: Optional[Exception] = None) -> None:
        self.frames = frames
        self.error = error
        self.texts: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()
        self.closed = False

    async def synthesize(self, text: str, *, voice: Optional[str] = None) -> SynthesizedAudio:
        self.texts.append(text)
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return SynthesizedAudio(audio=b"\x00\x10" * 160 * self.frames, sample_rate=8000, container="raw")

    async def close(self) -> None:
        self.closed = True


def llm_failure() -> LanguageModelError:
    return LanguageModelError("upstream 503")


def synth_failure() -> SynthesisError:
    return SynthesisError("synthesis unavailable")


def make_channel(stream_sid: str = "MZ123456"):
    carrier = FakeCarrier()
    channel = CarrierChannel(carrier)
    channel.bind(TwilioStartEvent(stream_sid=stream_sid, call_sid="CA789012"))
    return carrier, channel


def make_session(stream_sid: str = "MZ123456", **kwargs) -> CallSession:
    return CallSession(stream_sid=stream_sid, call_sid="CA789012", **kwargs)


class FakeRealtimeSocket:
    """Stands in for the OpenAI Realtime websocket connection."""

    def __init__(self) -> None:
        self._incoming: asyncio.Queue = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self.url = ""
        self.headers: Dict[str, str] = {}

    async def connect(self, url: str, **kwargs: Any) -> "FakeRealtimeSocket":
        self.url = url
        self.headers = kwargs.get("additional_headers") or {}
        return self

    def push(self, event: Dict[str, Any]) -> None:
        self._incoming.put_nowait(json.dumps(event))

    def hang_up(self) -> None:
        self._incoming.put_nowait(None)

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def __aiter__(self) -> "FakeRealtimeSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def sent_types(self) -> List[str]:
        return [m.get("type") for m in self.sent]
