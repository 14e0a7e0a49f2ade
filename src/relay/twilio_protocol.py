"""
Twilio Media Streams WebSocket Protocol Handler.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid, callSid and customParameters
- media: Audio data as base64 mu-law 8kHz
- mark: Playback marker acknowledgment
- dtmf: DTMF tone detected
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
- mark: Request playback acknowledgment
- clear: Clear buffered audio (for interruption)
"""

import base64
import binascii
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import msgspec
import structlog

from src.relay.models import CallDirection

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    account_sid: str = ""
    tracks: List[str] = field(default_factory=list)
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def direction(self) -> CallDirection:
        return CallDirection.parse(self.custom_parameters.get("direction"))

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        """Parse from Twilio message."""
        start = message.get("start") or {}
        stream_sid = message.get("streamSid") or start.get("streamSid", "")
        if not stream_sid:
            raise ValueError("Start event without streamSid")
        return cls(
            stream_sid=stream_sid,
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=start.get("tracks", []),
            custom_parameters=start.get("customParameters") or {},
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        """Parse from Twilio message."""
        media = message.get("media") or {}
        try:
            payload = base64.b64decode(media.get("payload", ""), validate=True)
        except (binascii.Error, TypeError) as e:
            raise ValueError(f"Invalid media payload: {e}")

        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            chunk=int(media.get("chunk", 0) or 0),
            timestamp=str(media.get("timestamp", "")),
            payload=payload,
        )


@dataclass
class TwilioMarkEvent:
    """Parsed Twilio mark event."""
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        mark = message.get("mark") or {}
        return cls(
            stream_sid=message.get("streamSid", ""),
            name=mark.get("name", ""),
        )


@dataclass
class TwilioDTMFEvent:
    """Parsed Twilio DTMF event."""
    stream_sid: str
    digit: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioDTMFEvent":
        dtmf = message.get("dtmf") or {}
        return cls(
            stream_sid=message.get("streamSid", ""),
            digit=dtmf.get("digit", ""),
        )


@dataclass
class CallState:
    """Protocol-level state for an active stream."""
    stream_sid: str = ""
    call_sid: str = ""
    account_sid: str = ""
    is_active: bool = True
    playback_generation_id: int = 0
    pending_marks: Dict[str, float] = field(default_factory=dict)  # mark_name -> send_time
    mark_rtt_samples: List[float] = field(default_factory=list)  # RTT samples in ms

    @property
    def avg_mark_rtt_ms(self) -> float:
        """Average mark round-trip time in ms."""
        if not self.mark_rtt_samples:
            return 0.0
        return sum(self.mark_rtt_samples) / len(self.mark_rtt_samples)


def parse_twilio_message(raw_message: str) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Args:
        raw_message: Raw JSON string from Twilio

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Message is not a JSON object")

    event_type_str = message.get("event", "")

    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    elif event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    elif event_type == TwilioEventType.MARK:
        return event_type, TwilioMarkEvent.from_message(message)
    elif event_type == TwilioEventType.DTMF:
        return event_type, TwilioDTMFEvent.from_message(message)
    return event_type, message


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """
    Create a Twilio media message.

    Args:
        stream_sid: The stream SID
        audio_payload: Raw mu-law audio bytes (should be 160 bytes for 20ms)
    """
    return create_media_message_b64(stream_sid, base64.b64encode(audio_payload).decode("utf-8"))


def create_media_message_b64(stream_sid: str, payload_b64: str) -> str:
    """Create a Twilio media message from an already base64-encoded payload."""
    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "payload": payload_b64
        }
    }
    return encoder.encode(message).decode("utf-8")


def create_mark_message(stream_sid: str, name: str) -> str:
    """
    Create a Twilio mark message.

    Marks are used to get acknowledgment when audio has been played.
    """
    message = {
        "event": "mark",
        "streamSid": stream_sid,
        "mark": {
            "name": name
        }
    }
    return encoder.encode(message).decode("utf-8")


def create_clear_message(stream_sid: str) -> str:
    """
    Create a Twilio clear message.

    This clears any buffered audio on Twilio's side, used for interruption.
    """
    message = {
        "event": "clear",
        "streamSid": stream_sid
    }
    return encoder.encode(message).decode("utf-8")


class TwilioProtocolHandler:
    """
    High-level handler for Twilio WebSocket protocol.

    Tracks stream state, playback generations and mark round trips.
    """

    def __init__(self):
        self.call_state: Optional[CallState] = None

    @property
    def stream_sid(self) -> str:
        return self.call_state.stream_sid if self.call_state else ""

    @property
    def call_sid(self) -> str:
        return self.call_state.call_sid if self.call_state else ""

    @property
    def is_active(self) -> bool:
        return self.call_state is not None and self.call_state.is_active

    def handle_start(self, event: TwilioStartEvent) -> None:
        """Handle a start event and initialize call state."""
        self.call_state = CallState(
            stream_sid=event.stream_sid,
            call_sid=event.call_sid,
            account_sid=event.account_sid,
        )

    def handle_stop(self) -> None:
        if self.call_state:
            self.call_state.is_active = False

    def handle_mark(self, event: TwilioMarkEvent) -> float:
        """
        Handle a mark acknowledgment and calculate RTT.

        Returns:
            Round-trip time in ms, or 0 if the mark is unknown or stale
        """
        if not self.call_state:
            return 0.0

        mark_gen = self._parse_mark_generation(event.name)
        if mark_gen is not None and mark_gen != self.call_state.playback_generation_id:
            logger.debug(
                "Ignoring stale mark acknowledgment",
                mark_name=event.name,
                mark_generation=mark_gen,
                current_generation=self.call_state.playback_generation_id,
            )
            return 0.0

        rtt_ms = 0.0
        send_time = self.call_state.pending_marks.pop(event.name, None)
        if send_time:
            rtt_ms = (time.time() - send_time) * 1000
            self.call_state.mark_rtt_samples.append(rtt_ms)
            # Keep only last 20 samples
            if len(self.call_state.mark_rtt_samples) > 20:
                self.call_state.mark_rtt_samples.pop(0)
        return rtt_ms

    def create_media(self, frame: bytes) -> str:
        if not self.call_state:
            return ""
        return create_media_message(self.call_state.stream_sid, frame)

    def create_media_b64(self, payload_b64: str) -> str:
        if not self.call_state:
            return ""
        return create_media_message_b64(self.call_state.stream_sid, payload_b64)

    def create_mark(self, chunk_id: int) -> str:
        """Create a mark tagged with the playback generation and chunk id."""
        if not self.call_state:
            return ""

        name = f"g{self.call_state.playback_generation_id}_c{chunk_id}"
        self.call_state.pending_marks[name] = time.time()
        return create_mark_message(self.call_state.stream_sid, name)

    def bump_playback_generation(self) -> int:
        """
        Bump the playback generation id.

        Used to ignore stale marks after a Twilio `clear` (barge-in).
        """
        if not self.call_state:
            return 0

        self.call_state.playback_generation_id += 1
        self.call_state.pending_marks.clear()
        return self.call_state.playback_generation_id

    def create_clear(self) -> str:
        if not self.call_state:
            return ""
        return create_clear_message(self.call_state.stream_sid)

    @staticmethod
    def _parse_mark_generation(mark_name: str) -> Optional[int]:
        """
        Parse a playback generation id from a mark name.

        Expected format: `g{gen}_c{chunk}`. Returns None if the format doesn't match.
        """
        if not isinstance(mark_name, str) or not mark_name.startswith("g"):
            return None
        try:
            return int(mark_name.split("_", 1)[0][1:])
        except ValueError:
            return None
