"""
Session Manager.

Owns the lifecycle of every carrier connection:

connect -> `start` (identity, direction, pipeline mode) -> audio in arrival order
-> `stop` / disconnect / pipeline termination -> teardown

At most one session exists per carrier stream id. Teardown runs on every exit
path and is idempotent.
"""

import asyncio
import itertools
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import structlog

from src.relay.audio import AudioCodec
from src.relay.carrier import CarrierChannel, CarrierConnection
from src.relay.config import Config, ConfigError, get_config
from src.relay.errors import AdapterError, CarrierClosed
from src.relay.models import AudioFrame, CallDirection, CallSession, ConversationHistory, PipelineMode
from src.relay.pipeline import CascadedPipeline, create_cascaded_pipeline
from src.relay.realtime_pipeline import RealtimeRelayPipeline, create_realtime_pipeline
from src.relay.twilio_protocol import (
    TwilioDTMFEvent,
    TwilioEventType,
    TwilioMarkEvent,
    TwilioMediaEvent,
    TwilioStartEvent,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)

Pipeline = Union[CascadedPipeline, RealtimeRelayPipeline]
PipelineFactory = Callable[..., Pipeline]
# Receives every session that started, with its conversation, once it has ended.
SessionEndSink = Callable[[CallSession, ConversationHistory], Awaitable[None]]

# Posted to a connection inbox to end its loop without waiting on the carrier.
_SHUTDOWN = object()


@dataclass
class SessionMetrics:
    """Session-level counters exposed on /metrics."""
    total_sessions: int = 0
    active_sessions: int = 0
    rejected_sessions: int = 0
    failed_starts: int = 0
    adapter_errors: int = 0
    malformed_events: int = 0
    dropped_messages: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_sessions": self.total_sessions,
            "active_sessions": self.active_sessions,
            "rejected_sessions": self.rejected_sessions,
            "failed_starts": self.failed_starts,
            "adapter_errors": self.adapter_errors,
            "malformed_events": self.malformed_events,
            "dropped_messages": self.dropped_messages,
        }


@dataclass
class CallContext:
    """Per-connection state. A CallSession only exists once `start` arrives."""
    carrier: CarrierConnection
    channel: CarrierChannel
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    session: Optional[CallSession] = None
    pipeline: Optional[Pipeline] = None
    inbox: "asyncio.Queue[Any]" = field(default_factory=asyncio.Queue)
    registered: bool = False
    failed: bool = False
    closing: bool = False
    closed: bool = False
    termination_reason: Optional[str] = None
    connected_at: float = field(default_factory=time.time)
    sequence: "itertools.count[int]" = field(default_factory=lambda: itertools.count(1))


def build_pipeline(
    session: CallSession,
    channel: CarrierChannel,
    codec: AudioCodec,
    *,
    config: Config,
    on_terminate: Callable[[str], None],
    on_error: Callable[[AdapterError], None],
) -> Pipeline:
    """Create the orchestrator for `session.mode`. Raises ConfigError on missing credentials."""
    if session.mode == PipelineMode.REALTIME_RELAY:
        return create_realtime_pipeline(
            session, channel, codec, config=config, on_terminate=on_terminate, on_error=on_error
        )
    return create_cascaded_pipeline(
        session, channel, codec, config=config, on_terminate=on_terminate, on_error=on_error
    )


class SessionManager:
    """Registry and lifecycle owner for call sessions."""

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        pipeline_factory: Optional[PipelineFactory] = None,
        codec: Optional[AudioCodec] = None,
        on_session_end: Optional[SessionEndSink] = None,
    ):
        self.config = config or get_config()
        self._pipeline_factory = pipeline_factory or build_pipeline
        self._codec = codec or AudioCodec()
        self._on_session_end = on_session_end
        # stream sid -> context. A context is reserved here before its pipeline
        # starts and only counts as a live session once `registered` is set.
        self._sessions: Dict[str, CallContext] = {}
        self._call_sids: Dict[str, str] = {}
        self.metrics = SessionMetrics()

    @property
    def active_sessions(self) -> Dict[str, CallSession]:
        return {sid: ctx.session for sid, ctx in self._sessions.items() if ctx.registered and ctx.session}

    def get_session(self, stream_sid: str) -> Optional[CallSession]:
        ctx = self._sessions.get(stream_sid)
        return ctx.session if ctx and ctx.registered else None

    def get_session_by_call_sid(self, call_sid: str) -> Optional[CallSession]:
        stream_sid = self._call_sids.get(call_sid)
        return self.get_session(stream_sid) if stream_sid else None

    def pipeline_mode(self) -> PipelineMode:
        try:
            return PipelineMode((self.config.pipeline_mode or "").strip().lower())
        except ValueError:
            raise ConfigError(f"Unsupported PIPELINE_MODE: {self.config.pipeline_mode}")

    def on_connect(self, carrier: CarrierConnection) -> CallContext:
        ctx = CallContext(
            carrier=carrier,
            channel=CarrierChannel(carrier),
            inbox=asyncio.Queue(maxsize=max(1, self.config.max_buffered_frames)),
        )
        logger.info("Carrier connected", connection_id=ctx.connection_id)
        return ctx

    async def handle_connection(self, carrier: CarrierConnection) -> None:
        """
        Run one carrier connection to completion.

        A reader task feeds the inbox; termination callbacks post a sentinel so the
        loop ends even while the carrier stays silent.
        """
        ctx = self.on_connect(carrier)
        reader = asyncio.create_task(self._read_carrier(ctx))
        try:
            while not ctx.closing:
                item = await ctx.inbox.get()
                if item is _SHUTDOWN:
                    break
                await self._dispatch(ctx, item)
        finally:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
            await self.on_disconnect(ctx)

    async def _read_carrier(self, ctx: CallContext) -> None:
        reason = "carrier disconnected"
        try:
            while not ctx.closing:
                raw = await ctx.carrier.receive_text()
                try:
                    ctx.inbox.put_nowait(raw)
                except asyncio.QueueFull:
                    self.metrics.dropped_messages += 1
                    logger.warning("Carrier inbox full; dropping message", connection_id=ctx.connection_id)
        except CarrierClosed:
            logger.info("Carrier disconnected", connection_id=ctx.connection_id)
        except Exception as e:
            reason = "carrier error"
            logger.error(
                "Carrier read failed",
                connection_id=ctx.connection_id,
                error_type=type(e).__name__,
                error=str(e),
            )
        finally:
            self._request_shutdown(ctx, reason)

    async def _dispatch(self, ctx: CallContext, raw: str) -> None:
        try:
            event_type, event = parse_twilio_message(raw)
        except ValueError as e:
            self.metrics.malformed_events += 1
            logger.warning("Dropping malformed carrier event", connection_id=ctx.connection_id, error=str(e))
            return

        if event_type == TwilioEventType.MEDIA:
            await self.on_audio_frame(ctx, self._to_frame(ctx, event))
            return
        await self.on_control_event(ctx, event_type, event)

    @staticmethod
    def _to_frame(ctx: CallContext, event: TwilioMediaEvent) -> AudioFrame:
        return AudioFrame(payload=event.payload, sequence=next(ctx.sequence))

    async def on_control_event(self, ctx: CallContext, event_type: TwilioEventType, event: Any) -> None:
        if event_type == TwilioEventType.CONNECTED:
            logger.debug("Carrier stream connected", connection_id=ctx.connection_id)

        elif event_type == TwilioEventType.START:
            await self._start_session(ctx, event)

        elif event_type == TwilioEventType.MARK:
            if ctx.pipeline and isinstance(event, TwilioMarkEvent):
                await ctx.pipeline.on_mark(event)

        elif event_type == TwilioEventType.DTMF:
            if isinstance(event, TwilioDTMFEvent):
                logger.info("DTMF received", stream_sid=ctx.channel.stream_sid, digit=event.digit)

        elif event_type == TwilioEventType.STOP:
            ctx.channel.protocol.handle_stop()
            logger.info("Carrier stop", stream_sid=ctx.channel.stream_sid)
            self._request_shutdown(ctx, "carrier stop")

    async def on_audio_frame(self, ctx: CallContext, frame: AudioFrame) -> None:
        # Frames before `start` or after a failed start are dropped.
        if ctx.pipeline is None or ctx.failed or ctx.closing:
            return
        await ctx.pipeline.on_carrier_audio(frame)

    async def _start_session(self, ctx: CallContext, event: TwilioStartEvent) -> None:
        if ctx.session is not None:
            logger.warning("Ignoring repeated start", stream_sid=event.stream_sid)
            return

        if event.stream_sid in self._sessions:
            self.metrics.rejected_sessions += 1
            ctx.failed = True
            logger.warning("Duplicate stream rejected", stream_sid=event.stream_sid, connection_id=ctx.connection_id)
            self._request_shutdown(ctx, "duplicate stream")
            return

        session = CallSession(
            stream_sid=event.stream_sid,
            call_sid=event.call_sid,
            direction=event.direction,
        )
        ctx.session = session
        # Reserve the stream id before the first await so a concurrent start is rejected.
        self._sessions[event.stream_sid] = ctx
        ctx.channel.bind(event)
        log = logger.bind(session_id=session.session_id, stream_sid=session.stream_sid)

        pipeline: Optional[Pipeline] = None
        try:
            session.mode = self.pipeline_mode()
            pipeline = self._pipeline_factory(
                session,
                ctx.channel,
                self._codec,
                config=self.config,
                on_terminate=lambda reason: self._request_shutdown(ctx, reason),
                on_error=self._on_adapter_error,
            )
            await pipeline.start()
        except (ConfigError, AdapterError) as e:
            self.metrics.failed_starts += 1
            ctx.failed = True
            self._release(ctx)
            log.error("Session start failed", error_type=type(e).__name__, error=str(e))
            if pipeline is not None:
                await self._stop_pipeline(pipeline)
            self._request_shutdown(ctx, f"start failed: {e}")
            return

        ctx.pipeline = pipeline
        ctx.registered = True
        if session.call_sid:
            self._call_sids[session.call_sid] = session.stream_sid
        self.metrics.total_sessions += 1
        self.metrics.active_sessions += 1

        log.info(
            "Session started",
            call_sid=session.call_sid,
            direction=session.direction.value,
            mode=session.mode.value,
            active_sessions=self.metrics.active_sessions,
        )

        if session.direction == CallDirection.OUTBOUND:
            pipeline.schedule_greeting(self.config.greeting, self.config.outbound_greeting_delay_ms / 1000.0)

    def _on_adapter_error(self, error: AdapterError) -> None:
        self.metrics.adapter_errors += 1

    def _request_shutdown(self, ctx: CallContext, reason: str) -> None:
        if ctx.closing:
            return
        ctx.closing = True
        ctx.termination_reason = reason
        if ctx.inbox.full():
            # Pending carrier messages are moot once the session is ending.
            ctx.inbox.get_nowait()
        ctx.inbox.put_nowait(_SHUTDOWN)

    def _release(self, ctx: CallContext) -> None:
        """Drop `ctx` from the registry if it still owns its stream id."""
        session = ctx.session
        if session is None or self._sessions.get(session.stream_sid) is not ctx:
            return
        del self._sessions[session.stream_sid]
        if session.call_sid and self._call_sids.get(session.call_sid) == session.stream_sid:
            del self._call_sids[session.call_sid]
        if ctx.registered:
            self.metrics.active_sessions -= 1

    async def on_disconnect(self, ctx: CallContext, reason: str = "carrier disconnected") -> None:
        """Release everything held for `ctx`. Safe to call more than once."""
        if ctx.closed:
            return
        ctx.closed = True
        ctx.closing = True
        reason = ctx.termination_reason or reason

        if ctx.pipeline is not None:
            await self._stop_pipeline(ctx.pipeline)

        session = ctx.session
        if session is not None:
            session.terminate(reason)
            self._release(ctx)

        await ctx.channel.close()

        if session is not None and ctx.registered and ctx.pipeline is not None:
            await self._record_session(session, ctx.pipeline.history)

        logger.info(
            "Session ended",
            connection_id=ctx.connection_id,
            reason=reason,
            frames_sent=ctx.channel.frames_sent,
            **(session.to_dict() if session else {}),
        )

    async def _record_session(self, session: CallSession, history: ConversationHistory) -> None:
        if self._on_session_end is None:
            return
        try:
            await self._on_session_end(session, history)
        except Exception as e:
            # The call is already over; a failing sink must not block teardown.
            logger.error(
                "Session sink failed",
                session_id=session.session_id,
                error_type=type(e).__name__,
                error=str(e),
            )

    @staticmethod
    async def _stop_pipeline(pipeline: Pipeline) -> None:
        try:
            await pipeline.stop()
        except Exception as e:
            logger.error("Error stopping pipeline", error_type=type(e).__name__, error=str(e))
