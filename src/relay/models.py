"""
Core data model shared by the relay components.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class PipelineMode(str, Enum):
    """Which backend a session is bridged to. Fixed at session start."""
    CASCADED = "cascaded"
    REALTIME_RELAY = "realtime_relay"


class CallDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"

    @classmethod
    def parse(cls, value: Optional[str]) -> "CallDirection":
        if isinstance(value, str) and value.strip().lower() == cls.OUTBOUND.value:
            return cls.OUTBOUND
        return cls.INBOUND


class BargeInState(str, Enum):
    IDLE = "idle"
    SPEAKING = "speaking"
    INTERRUPTED = "interrupted"


class AudioCodecName(str, Enum):
    MULAW = "mulaw"
    PCM16 = "pcm16"


@dataclass
class CallSession:
    """
    One live call.

    Owned by the SessionManager; pipelines only read it.
    """
    stream_sid: str
    call_sid: str = ""
    direction: CallDirection = CallDirection.INBOUND
    mode: PipelineMode = PipelineMode.CASCADED
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)
    terminated_at: Optional[float] = None
    termination_reason: Optional[str] = None
    barge_in_state: BargeInState = BargeInState.IDLE
    errors: List[str] = field(default_factory=list)

    @property
    def is_terminated(self) -> bool:
        return self.terminated_at is not None

    def terminate(self, reason: str) -> bool:
        """Mark the session terminated. Returns False if it already was."""
        if self.terminated_at is not None:
            return False
        self.terminated_at = time.time()
        self.termination_reason = reason
        return True

    def to_dict(self) -> Dict[str, object]:
        end = self.terminated_at or time.time()
        return {
            "session_id": self.session_id,
            "stream_sid": self.stream_sid,
            "call_sid": self.call_sid,
            "direction": self.direction.value,
            "mode": self.mode.value,
            "duration_seconds": round(end - self.created_at, 2),
            "termination_reason": self.termination_reason,
            "barge_in_state": self.barge_in_state.value,
            "errors": len(self.errors),
        }


@dataclass(frozen=True)
class AudioFrame:
    """A fixed-duration slice of audio, as received from or sent to the carrier."""
    payload: bytes
    codec: AudioCodecName = AudioCodecName.MULAW
    sample_rate: int = 8000
    timestamp: float = field(default_factory=time.time)
    sequence: int = 0


@dataclass(frozen=True)
class TranscriptEvent:
    """Result from the speech recognizer."""
    session_id: str
    text: str
    is_final: bool
    confidence: float = 0.0
    timestamp: float = field(default_factory=time.time)

    @property
    def is_empty(self) -> bool:
        return not self.text or not self.text.strip()


@dataclass(frozen=True)
class ConversationTurn:
    """A single turn in the conversation."""
    role: str  # "user" | "assistant" | "system"
    text: str
    timestamp: float = field(default_factory=time.time)


class ConversationHistory:
    """Append-only, ordered conversation history for one session."""

    def __init__(self) -> None:
        self._turns: List[ConversationTurn] = []

    def append(self, role: str, text: str) -> ConversationTurn:
        turn = ConversationTurn(role=role, text=text)
        self._turns.append(turn)
        return turn

    @property
    def turns(self) -> List[ConversationTurn]:
        return list(self._turns)

    def to_messages(self) -> List[Dict[str, str]]:
        """Get messages in OpenAI chat format."""
        return [{"role": turn.role, "content": turn.text} for turn in self._turns]

    def __len__(self) -> int:
        return len(self._turns)


@dataclass
class SynthesisChunk:
    """A sentence-sized piece of assistant text and, once synthesized, its carrier audio."""
    chunk_id: int
    turn_id: int
    text: str
    audio: bytes = b""
