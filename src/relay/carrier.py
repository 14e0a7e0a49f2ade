"""
Carrier connection abstraction.

`CarrierConnection` is the transport (a FastAPI WebSocket in production, an
in-memory double in tests). `CarrierChannel` is what pipelines talk to: it
frames audio into Twilio media/mark/clear events for one stream.
"""

from abc import ABC, abstractmethod
from typing import Optional

import structlog

from src.relay.errors import CarrierClosed
from src.relay.twilio_protocol import TwilioProtocolHandler, TwilioStartEvent

logger = structlog.get_logger(__name__)


class CarrierConnection(ABC):
    """Bidirectional text transport to the telephony carrier."""

    @abstractmethod
    async def receive_text(self) -> str:
        """Return the next message. Raises CarrierClosed when the peer is gone."""
        raise NotImplementedError

    @abstractmethod
    async def send_text(self, message: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def close(self, code: int = 1000) -> None:
        raise NotImplementedError


class CarrierChannel:
    """Outbound side of one carrier stream."""

    def __init__(self, connection: CarrierConnection, protocol: Optional[TwilioProtocolHandler] = None):
        self._connection = connection
        self.protocol = protocol or TwilioProtocolHandler()
        self._closed = False
        self._close_requested = False
        self.frames_sent = 0

    @property
    def stream_sid(self) -> str:
        return self.protocol.stream_sid

    @property
    def is_closed(self) -> bool:
        return self._closed

    def bind(self, event: TwilioStartEvent) -> None:
        self.protocol.handle_start(event)

    async def _send(self, message: str) -> bool:
        if self._closed or not message:
            return False
        try:
            await self._connection.send_text(message)
            return True
        except CarrierClosed:
            self._closed = True
            return False
        except Exception as e:
            logger.error("Failed to send carrier message", error=str(e), stream_sid=self.stream_sid)
            self._closed = True
            return False

    async def send_media(self, frame: bytes) -> bool:
        """Send one 20ms mu-law frame."""
        ok = await self._send(self.protocol.create_media(frame))
        if ok:
            self.frames_sent += 1
        return ok

    async def send_media_b64(self, payload_b64: str) -> bool:
        """Send an already-encoded mu-law payload verbatim."""
        ok = await self._send(self.protocol.create_media_b64(payload_b64))
        if ok:
            self.frames_sent += 1
        return ok

    async def send_mark(self, chunk_id: int) -> bool:
        return await self._send(self.protocol.create_mark(chunk_id))

    async def send_clear(self) -> bool:
        """Flush carrier-side buffered audio and invalidate outstanding marks."""
        generation = self.protocol.bump_playback_generation()
        ok = await self._send(self.protocol.create_clear())
        if ok:
            logger.info("Carrier clear sent", stream_sid=self.stream_sid, playback_generation_id=generation)
        return ok

    async def close(self, code: int = 1000) -> None:
        if self._close_requested:
            return
        self._close_requested = True
        self._closed = True
        try:
            await self._connection.close(code)
        except Exception as e:
            logger.debug("Carrier close failed", error=str(e))
