"""
Barge-in Controller.

Tracks whether assistant audio is playing for a session and tears playback down
when the caller starts talking over it. Teardown order matters:

1. the current turn is flagged interrupted (synchronously, before any await)
2. the carrier is told to `clear` its buffered audio
3. in-flight work for the turn is cancelled
4. the controller returns to idle

A new playback cannot begin until a teardown in progress has finished.
"""

import asyncio
import itertools
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from src.relay.models import BargeInState

logger = structlog.get_logger(__name__)


@dataclass
class TurnHandle:
    """Cancellation token shared by everything producing audio for one turn."""
    turn_id: int
    interrupted: bool = False


class BargeInController:
    """Per-session barge-in state machine: idle -> speaking -> interrupted -> idle."""

    def __init__(
        self,
        send_clear: Callable[[], Awaitable[object]],
        on_interrupt: Optional[Callable[[TurnHandle], Awaitable[None]]] = None,
        *,
        session_id: str = "",
        on_state_change: Optional[Callable[[BargeInState], None]] = None,
    ):
        self._send_clear = send_clear
        self._on_interrupt = on_interrupt
        self._session_id = session_id
        self._on_state_change = on_state_change
        self._state = BargeInState.IDLE
        self._current: Optional[TurnHandle] = None
        self._teardown_lock = asyncio.Lock()
        self._turn_ids = itertools.count(1)
        self.interruptions = 0

    @property
    def state(self) -> BargeInState:
        return self._state

    @property
    def current_turn(self) -> Optional[TurnHandle]:
        return self._current

    def new_turn(self) -> TurnHandle:
        return TurnHandle(turn_id=next(self._turn_ids))

    async def begin_playback(self, turn: TurnHandle) -> bool:
        """
        Enter speaking for `turn`.

        Waits for any teardown in progress. Returns False if the turn was
        interrupted while waiting.
        """
        async with self._teardown_lock:
            if turn.interrupted:
                return False
            self._current = turn
            self._set_state(BargeInState.SPEAKING)
            return True

    def end_playback(self, turn: TurnHandle) -> None:
        """Leave speaking once `turn` finished (or was abandoned) normally."""
        if self._current is turn and self._state == BargeInState.SPEAKING:
            self._set_state(BargeInState.IDLE)
            self._current = None

    async def on_transcript(self, text: str) -> bool:
        """
        Feed recognizer output. Any non-empty text while speaking is a barge-in.

        Returns True if playback was interrupted.
        """
        if self._state != BargeInState.SPEAKING or not text or not text.strip():
            return False

        turn = self._current
        if turn is None:
            return False

        turn.interrupted = True
        self._set_state(BargeInState.INTERRUPTED)
        self.interruptions += 1

        async with self._teardown_lock:
            logger.info("Barge-in", session_id=self._session_id, turn_id=turn.turn_id, text=text[:50])
            try:
                await self._send_clear()
                if self._on_interrupt:
                    await self._on_interrupt(turn)
            finally:
                if self._current is turn:
                    self._current = None
                self._set_state(BargeInState.IDLE)

        return True

    def _set_state(self, state: BargeInState) -> None:
        self._state = state
        if self._on_state_change:
            self._on_state_change(state)
