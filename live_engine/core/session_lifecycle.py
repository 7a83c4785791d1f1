"""
SessionLifecycleManager - session state machine and lifetime budget.

Owns the single Session of an engine. State changes go through
``transition()``; the table below is the only set of legal moves.

The provider closes live sessions at a hard ceiling. The manager reports
when the session is within ``renewal_margin_sec`` of that ceiling so the
engine can soft-disconnect and reconnect before the server does it for us.
The periodic check runs as a background task that only posts ticks; the
engine decides what to do with them on its dispatcher.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import Awaitable, Callable, Dict, FrozenSet, Optional

import structlog

from .errors import InvalidTransition, SessionExpired
from .models import Session, SessionState

logger = structlog.get_logger(__name__)

_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.CONNECTING}),
    SessionState.CONNECTING: frozenset({SessionState.HANDSHAKING, SessionState.CLOSED}),
    SessionState.HANDSHAKING: frozenset({SessionState.READY, SessionState.CLOSING, SessionState.CLOSED}),
    SessionState.READY: frozenset({SessionState.CLOSING, SessionState.CLOSED}),
    SessionState.CLOSING: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset({SessionState.CONNECTING}),
}


class SessionLifecycleManager:
    def __init__(
        self,
        *,
        max_session_duration_sec: float = 900.0,
        renewal_margin_sec: float = 60.0,
        check_interval_sec: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = Session()
        self.max_session_duration_sec = float(max_session_duration_sec)
        self.renewal_margin_sec = max(0.0, float(renewal_margin_sec))
        self.check_interval_sec = max(0.001, float(check_interval_sec))
        self._clock = clock
        self._watchdog_task: Optional[asyncio.Task] = None
        # Caller-initiated permanent close. Independent of session.state so a
        # soft renewal (which passes through CLOSED) never looks like a dispose.
        self.disposed: bool = False

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def is_ready(self) -> bool:
        return self.session.state is SessionState.READY and not self.disposed

    def transition(self, new_state: SessionState) -> None:
        current = self.session.state
        if new_state is current:
            return
        if new_state not in _TRANSITIONS[current]:
            raise InvalidTransition(f"{current.value} -> {new_state.value}")
        self.session.state = new_state
        if new_state is SessionState.CONNECTING:
            self.session.setup_acknowledged = False
            self.session.soft_ready = False
        elif new_state is SessionState.READY:
            self.session.started_at = self._clock()
        logger.debug("Session state changed", previous=current.value, state=new_state.value)

    def mark_audio_activity(self) -> None:
        self.session.last_audio_activity_at = self._clock()

    @property
    def renewal_threshold_sec(self) -> float:
        return max(0.0, self.max_session_duration_sec - self.renewal_margin_sec)

    def elapsed(self) -> float:
        if self.session.started_at is None:
            return 0.0
        return self._clock() - self.session.started_at

    def renewal_due(self) -> bool:
        if self.disposed or self.session.state is not SessionState.READY:
            return False
        if self.session.started_at is None:
            return False
        return self.elapsed() >= self.renewal_threshold_sec

    def check_lifetime(self) -> None:
        """Raise SessionExpired once the session is due for renewal."""
        if self.renewal_due():
            raise SessionExpired(f"Session at {self.elapsed():.0f}s of {self.max_session_duration_sec:.0f}s budget")

    def start_watchdog(self, on_tick: Callable[[], Awaitable[None]]) -> asyncio.Task:
        """Start the periodic lifetime check; ``on_tick`` runs every interval."""
        self.stop_watchdog()
        self._watchdog_task = asyncio.create_task(self._watchdog_loop(on_tick), name="live-session-watchdog")
        return self._watchdog_task

    def stop_watchdog(self) -> None:
        task, self._watchdog_task = self._watchdog_task, None
        if task is not None and not task.done():
            task.cancel()

    async def wait_watchdog_stopped(self) -> None:
        task, self._watchdog_task = self._watchdog_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _watchdog_loop(self, on_tick: Callable[[], Awaitable[None]]) -> None:
        try:
            while True:
                await asyncio.sleep(self.check_interval_sec)
                await on_tick()
        except asyncio.CancelledError:
            return
        except Exception:
            logger.error("Session watchdog exiting due to unexpected error", exc_info=True)


__all__ = ["SessionLifecycleManager"]
