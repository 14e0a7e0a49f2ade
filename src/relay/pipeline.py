"""Cascaded Pipeline Orchestration.

inbound carrier mu-law -> PCM16 -> recognizer -> (final transcript) -> LLM stream
-> sentence chunker -> synthesizer -> codec -> 20ms carrier frames

Features:
- Sequential turn worker; one playback at a time
- Synthesis of sentence N overlaps LLM streaming of sentence N+1
- Barge-in on any caller speech while speaking (carrier clear + cancel)
- Per-turn consecutive adapter failure budget that terminates the session
- Outbound greeting with inbound audio held back until it has been spoken
"""

import asyncio
import itertools
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, List, Optional

import structlog

from src.relay.audio import AudioCodec
from src.relay.barge_in import BargeInController, TurnHandle
from src.relay.carrier import CarrierChannel
from src.relay.chunker import SentenceChunker
from src.relay.config import Config, ConfigError, get_config
from src.relay.errors import AdapterError, LanguageModelError, RecognizerError, SynthesisError
from src.relay.llm import LanguageModel, create_llm, get_system_prompt
from src.relay.models import (
    AudioFrame,
    BargeInState,
    CallSession,
    ConversationHistory,
    SynthesisChunk,
    TranscriptEvent,
)
from src.relay.stt import SpeechRecognizer, create_recognizer
from src.relay.tts import SpeechSynthesizer, create_synthesizer
from src.relay.twilio_protocol import TwilioMarkEvent

logger = structlog.get_logger(__name__)

TerminateCallback = Callable[[str], None]
ErrorCallback = Callable[[AdapterError], None]

FRAME_SECONDS = 0.020


class PipelineState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    THINKING = "thinking"
    SPEAKING = "speaking"
    TERMINATED = "terminated"


class TurnAbandoned(Exception):
    """Raised inside a turn once an adapter failure has been recorded for it."""


@dataclass
class TurnMetrics:
    """Metrics for a single conversation turn."""
    turn_id: int = 0
    start_time: float = 0.0
    llm_first_token_ms: float = 0.0
    first_audio_ms: float = 0.0
    total_turn_ms: float = 0.0
    chunks: int = 0
    was_interrupted: bool = False

    def finalize(self) -> None:
        if self.start_time > 0:
            self.total_turn_ms = (time.time() - self.start_time) * 1000


class CascadedPipeline:
    """
    Recognizer -> LLM -> Synthesizer orchestrator for one call.

    Interface shared with RealtimeRelayPipeline:
    - `start()` (raises AdapterError if an adapter cannot be opened)
    - `on_carrier_audio(frame)`
    - `on_mark(event)`
    - `schedule_greeting(text, delay_s)`
    - `stop()` (idempotent)
    """

    def __init__(
        self,
        session: CallSession,
        channel: CarrierChannel,
        codec: AudioCodec,
        *,
        recognizer: SpeechRecognizer,
        llm: LanguageModel,
        synthesizer: SpeechSynthesizer,
        config: Optional[Config] = None,
        on_terminate: Optional[TerminateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ):
        self.config = config or get_config()
        self.session = session
        self._channel = channel
        self._codec = codec
        self._recognizer = recognizer
        self._llm = llm
        self._synth = synthesizer
        self._on_terminate = on_terminate
        self._on_error = on_error
        self._log = logger.bind(session_id=session.session_id, stream_sid=session.stream_sid)

        self._state = PipelineState.IDLE
        self._is_running = False
        self._stopped = False
        self._terminated = False

        self._history = ConversationHistory()
        self._system_prompt = get_system_prompt(self.config)
        self._barge_in = BargeInController(
            send_clear=self._channel.send_clear,
            on_interrupt=self._on_barge_in,
            session_id=session.session_id,
            on_state_change=self._on_barge_in_state,
        )
        self._chunk_ids = itertools.count(1)

        self._turn_queue: asyncio.Queue[str] = asyncio.Queue()
        self._turn_worker_task: Optional[asyncio.Task] = None
        self._turn_task: Optional[asyncio.Task] = None
        self._greeting_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None

        self._consecutive_failures = 0
        self._pending_interim_since: Optional[float] = None
        self._recognizer_down = False

        # Inbound audio held back while an outbound greeting is pending.
        self._greeting_pending = False
        self._held_frames: Deque[AudioFrame] = deque(maxlen=max(1, self.config.max_buffered_frames))

        self._playout_clock = 0.0
        self._turn_metrics: List[TurnMetrics] = []

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def history(self) -> ConversationHistory:
        return self._history

    @property
    def barge_in(self) -> BargeInController:
        return self._barge_in

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    async def start(self) -> None:
        """Open the recognizer and start the turn worker."""
        self._log.info("Starting cascaded pipeline")
        self._is_running = True

        await self._recognizer.start(self._on_transcript, self._on_recognizer_closed)

        self._state = PipelineState.LISTENING
        self._turn_worker_task = asyncio.create_task(self._turn_worker())
        self._watchdog_task = asyncio.create_task(self._recognizer_watchdog())
        self._log.info("Cascaded pipeline started")

    async def stop(self) -> None:
        """Stop all pipeline components. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        self._is_running = False
        self._state = PipelineState.TERMINATED

        tasks: List[asyncio.Task] = []
        for task in (self._turn_task, self._turn_worker_task, self._greeting_task, self._watchdog_task):
            if task and not task.done():
                task.cancel()
                tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for name, closer in (
            ("recognizer", self._recognizer.stop),
            ("synthesizer", self._synth.close),
            ("llm", self._llm.close),
        ):
            try:
                await closer()
            except Exception as e:
                self._log.warning("Error closing adapter", adapter=name, error=str(e))

        self._held_frames.clear()
        self._log.info(
            "Cascaded pipeline stopped",
            turns=len(self._turn_metrics),
            interruptions=self._barge_in.interruptions,
            frames_sent=self._channel.frames_sent,
        )

    async def on_carrier_audio(self, frame: AudioFrame) -> None:
        """Handle one inbound carrier frame, in arrival order."""
        if not self._is_running or self._terminated or not frame.payload:
            return

        if self._greeting_pending:
            if len(self._held_frames) == self._held_frames.maxlen:
                self._log.debug("Held audio buffer full; dropping oldest frame")
            self._held_frames.append(frame)
            return

        await self._forward_audio(frame)

    async def on_mark(self, event: TwilioMarkEvent) -> None:
        rtt_ms = self._channel.protocol.handle_mark(event)
        if rtt_ms:
            self._log.debug("Carrier mark ack", mark_name=event.name, mark_rtt_ms=round(rtt_ms, 2))

    def schedule_greeting(self, text: str, delay_s: float = 0.0) -> None:
        """
        Speak `text` before any caller audio is processed.

        Inbound frames are held from now until the greeting has been sent, then
        replayed to the recognizer in arrival order.
        """
        if not text or not self._is_running:
            return
        self._greeting_pending = True
        self._greeting_task = asyncio.create_task(self._run_greeting(text, delay_s))

    async def _forward_audio(self, frame: AudioFrame) -> None:
        pcm = self._codec.decode(frame.payload)
        try:
            await self._recognizer.send_audio(pcm)
            self._recognizer_down = False
        except RecognizerError as e:
            # The close callback owns reconnection; just note the gap once.
            if not self._recognizer_down:
                self._recognizer_down = True
                self._log.warning("Recognizer unavailable; dropping audio", error=str(e))

    async def _run_greeting(self, text: str, delay_s: float) -> None:
        try:
            if delay_s > 0:
                await asyncio.sleep(delay_s)

            turn = self._barge_in.new_turn()
            self._log.info("Speaking outbound greeting", text=text[:80])
            try:
                if await self._speak_text(turn, text):
                    self._history.append("assistant", text)
            except TurnAbandoned:
                self._log.warning("Outbound greeting could not be spoken")
            finally:
                self._barge_in.end_playback(turn)
                if self._state == PipelineState.SPEAKING:
                    self._state = PipelineState.LISTENING
        finally:
            await self._release_held_audio()

    async def _release_held_audio(self) -> None:
        while self._held_frames and self._is_running and not self._terminated:
            await self._forward_audio(self._held_frames.popleft())
        self._held_frames.clear()
        self._greeting_pending = False

    async def _on_transcript(self, event: TranscriptEvent) -> None:
        if not self._is_running or self._terminated or event.is_empty:
            return

        self._pending_interim_since = None if event.is_final else time.monotonic()

        await self._barge_in.on_transcript(event.text)

        if event.is_final:
            self._log.info("Final transcript", text=event.text[:80])
            self._turn_queue.put_nowait(event.text.strip())

    def _on_barge_in_state(self, state: BargeInState) -> None:
        self.session.barge_in_state = state

    async def _on_barge_in(self, turn: TurnHandle) -> None:
        if self._turn_task and not self._turn_task.done():
            self._turn_task.cancel()
        if self._turn_metrics and self._turn_metrics[-1].turn_id == turn.turn_id:
            self._turn_metrics[-1].was_interrupted = True
        self._playout_clock = 0.0
        if self._state != PipelineState.TERMINATED:
            self._state = PipelineState.LISTENING

    async def _on_recognizer_closed(self) -> None:
        if not self._is_running or self._terminated:
            return

        self._log.warning("Recognizer disconnected unexpectedly; reconnecting")
        try:
            await self._recognizer.start(self._on_transcript, self._on_recognizer_closed)
            self._recognizer_down = False
            self._log.info("Recognizer reconnected")
        except RecognizerError as e:
            self._record_failure(e)
            self._terminate("recognizer disconnected")

    async def _recognizer_watchdog(self) -> None:
        timeout = self.config.adapter_idle_timeout_seconds
        interval = max(0.01, min(0.25, timeout / 4))
        try:
            while self._is_running:
                await asyncio.sleep(interval)
                since = self._pending_interim_since
                if since is not None and time.monotonic() - since > timeout:
                    self._pending_interim_since = None
                    self._record_failure(RecognizerError("Recognizer stalled after interim transcript"))
        except asyncio.CancelledError:
            pass

    async def _turn_worker(self) -> None:
        """Background worker that processes final transcripts sequentially."""
        while self._is_running:
            text = await self._turn_queue.get()
            if self._terminated:
                continue
            self._turn_task = asyncio.create_task(self._run_turn(text))
            try:
                await self._turn_task
            except asyncio.CancelledError:
                # Barge-in cancels the turn; only a pipeline stop ends the worker.
                if not self._is_running:
                    raise
            finally:
                self._turn_task = None
                self._turn_queue.task_done()

    async def _run_turn(self, text: str) -> None:
        """Run one conversation turn from a final transcript."""
        turn = self._barge_in.new_turn()
        metrics = TurnMetrics(turn_id=turn.turn_id, start_time=time.time())
        self._turn_metrics.append(metrics)
        # The failure budget is per turn.
        self._consecutive_failures = 0

        self._history.append("user", text)
        self._state = PipelineState.THINKING

        chunks: asyncio.Queue[Optional[SynthesisChunk]] = asyncio.Queue()
        speaker = asyncio.create_task(self._speak_chunks(turn, chunks, metrics))
        try:
            reply = await self._generate(turn, chunks, speaker, metrics)
            await speaker
            if not turn.interrupted:
                if reply:
                    self._history.append("assistant", reply)
        except TurnAbandoned:
            self._log.info("Turn abandoned", turn_id=turn.turn_id)
        finally:
            if not speaker.done():
                speaker.cancel()
            await asyncio.gather(speaker, return_exceptions=True)
            self._barge_in.end_playback(turn)
            if self._state in (PipelineState.THINKING, PipelineState.SPEAKING):
                self._state = PipelineState.LISTENING
            metrics.was_interrupted = metrics.was_interrupted or turn.interrupted
            self._end_turn(metrics)

    async def _generate(
        self,
        turn: TurnHandle,
        chunks: "asyncio.Queue[Optional[SynthesisChunk]]",
        speaker: asyncio.Task,
        metrics: TurnMetrics,
    ) -> str:
        """
        Stream the LLM reply into sentence chunks. Returns the full reply text.

        A request that fails before its first token is retried within the turn
        until the failure budget is spent. Once text has been spoken a failure
        abandons the turn.
        """
        timeout = self.config.adapter_idle_timeout_seconds
        started = time.time()
        chunker = SentenceChunker()

        while True:
            chunker.reset()
            parts: List[str] = []
            stream = self._llm.stream_reply(self._system_prompt, self._history)
            try:
                while True:
                    try:
                        token = await asyncio.wait_for(stream.__anext__(), timeout=timeout)
                    except StopAsyncIteration:
                        break
                    except asyncio.TimeoutError as e:
                        raise LanguageModelError("LLM stream stalled", cause=e) from e

                    if turn.interrupted:
                        chunks.put_nowait(None)
                        return ""
                    if not parts:
                        metrics.llm_first_token_ms = (time.time() - started) * 1000
                    parts.append(token)
                    for sentence in chunker.push(token):
                        self._emit_chunk(turn, chunks, speaker, sentence)

            except LanguageModelError as e:
                if self._record_failure(e) or parts:
                    raise TurnAbandoned() from e
                self._log.info("Retrying LLM request", failures=self._consecutive_failures)
                continue
            finally:
                await _aclose(stream)

            tail = chunker.finish()
            if tail and not turn.interrupted:
                self._emit_chunk(turn, chunks, speaker, tail)
            chunks.put_nowait(None)
            return "".join(parts).strip()

    def _emit_chunk(
        self,
        turn: TurnHandle,
        chunks: "asyncio.Queue[Optional[SynthesisChunk]]",
        speaker: asyncio.Task,
        text: str,
    ) -> None:
        if speaker.done():
            # Speaker already failed (or the turn was interrupted); stop generating.
            raise TurnAbandoned()
        chunks.put_nowait(
            SynthesisChunk(chunk_id=next(self._chunk_ids), turn_id=turn.turn_id, text=text)
        )

    async def _speak_chunks(
        self,
        turn: TurnHandle,
        chunks: "asyncio.Queue[Optional[SynthesisChunk]]",
        metrics: TurnMetrics,
    ) -> None:
        playing = False
        while True:
            chunk = await chunks.get()
            if chunk is None or turn.interrupted or not self._is_running:
                return

            if not playing:
                if not await self._barge_in.begin_playback(turn):
                    return
                playing = True
                self._state = PipelineState.SPEAKING

            sent = await self._speak_chunk(turn, chunk)
            if sent:
                metrics.chunks += 1
                if not metrics.first_audio_ms:
                    metrics.first_audio_ms = (time.time() - metrics.start_time) * 1000

    async def _speak_text(self, turn: TurnHandle, text: str) -> bool:
        """Speak a fixed utterance (greeting) as a single chunk."""
        if not await self._barge_in.begin_playback(turn):
            return False
        self._state = PipelineState.SPEAKING
        chunk = SynthesisChunk(chunk_id=next(self._chunk_ids), turn_id=turn.turn_id, text=text)
        return await self._speak_chunk(turn, chunk)

    async def _speak_chunk(self, turn: TurnHandle, chunk: SynthesisChunk) -> bool:
        """
        Synthesize one chunk and stream it to the carrier.

        Returns True if the chunk was fully sent. The interrupted flag is checked
        after synthesis, after encoding and before every frame.
        """
        try:
            synthesized = await asyncio.wait_for(
                self._synth.synthesize(chunk.text),
                timeout=self.config.synthesis_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            self._record_failure(SynthesisError("Synthesis timed out", cause=e))
            raise TurnAbandoned() from e
        except SynthesisError as e:
            self._record_failure(e)
            raise TurnAbandoned() from e

        if turn.interrupted:
            return False
        if synthesized.is_empty:
            self._log.debug("Synthesizer returned no audio", chunk_id=chunk.chunk_id)
            return False

        try:
            chunk.audio = self._codec.to_carrier(
                synthesized.audio, synthesized.sample_rate, synthesized.container
            )
        except ValueError as e:
            self._record_failure(SynthesisError("Synthesizer returned unreadable audio", cause=e))
            raise TurnAbandoned() from e

        if not chunk.audio:
            self._log.debug("Empty synthesis dropped", chunk_id=chunk.chunk_id)
            return False

        for frame in self._codec.frames(chunk.audio):
            if turn.interrupted or not self._is_running:
                return False
            if not await self._channel.send_media(frame):
                return False
            await self._pace()

        if turn.interrupted:
            return False
        await self._channel.send_mark(chunk.chunk_id)
        return True

    async def _pace(self) -> None:
        """Keep outbound audio roughly real-time, a small lead ahead of playback."""
        if not self.config.outbound_pacing:
            return
        now = time.monotonic()
        if self._playout_clock < now:
            self._playout_clock = now
        self._playout_clock += FRAME_SECONDS
        ahead = self._playout_clock - now - self.config.pace_ahead_ms / 1000.0
        if ahead > 0:
            await asyncio.sleep(ahead)

    def _record_failure(self, error: AdapterError) -> bool:
        """Count an adapter failure. Returns True once the session has been terminated."""
        self._consecutive_failures += 1
        self.session.errors.append(error.category)
        self._log.warning(
            "Adapter failure",
            adapter=error.adapter,
            error=str(error),
            cause=type(error.cause).__name__ if error.cause else None,
            consecutive_failures=self._consecutive_failures,
        )
        if self._on_error:
            self._on_error(error)
        if self._consecutive_failures >= self.config.max_consecutive_failures:
            self._terminate(f"{error.adapter} failure budget exhausted")
        return self._terminated

    def _terminate(self, reason: str) -> None:
        if self._terminated:
            return
        self._terminated = True
        self._state = PipelineState.TERMINATED
        self._log.error("Terminating session", reason=reason)
        if self._on_terminate:
            self._on_terminate(reason)

    def _end_turn(self, metrics: TurnMetrics) -> None:
        metrics.finalize()
        self._log.info(
            "Turn completed",
            turn_id=metrics.turn_id,
            llm_first_token_ms=round(metrics.llm_first_token_ms, 2),
            first_audio_ms=round(metrics.first_audio_ms, 2),
            total_turn_ms=round(metrics.total_turn_ms, 2),
            chunks=metrics.chunks,
            was_interrupted=metrics.was_interrupted,
        )


async def _aclose(stream: Any) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except (RuntimeError, LanguageModelError) as e:
        logger.debug("LLM stream close failed", error=str(e))


def create_cascaded_pipeline(
    session: CallSession,
    channel: CarrierChannel,
    codec: AudioCodec,
    *,
    config: Optional[Config] = None,
    on_terminate: Optional[TerminateCallback] = None,
    on_error: Optional[ErrorCallback] = None,
) -> CascadedPipeline:
    """
    Build a cascaded pipeline with the configured adapters.

    Raises:
        ConfigError: If credentials for the configured adapters are missing
    """
    config = config or get_config()
    missing = config.missing_for_mode("cascaded")
    if missing:
        raise ConfigError(f"Missing configuration for cascaded pipeline: {', '.join(missing)}")

    return CascadedPipeline(
        session,
        channel,
        codec,
        recognizer=create_recognizer(session.session_id, config),
        llm=create_llm(config),
        synthesizer=create_synthesizer(config),
        config=config,
        on_terminate=on_terminate,
        on_error=on_error,
    )
