"""Per-round countdowns for sessions with the timer enabled."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

import records

logger = logging.getLogger(__name__)

DEFAULT_ROUND_SECONDS = 30.0


class TimerSupervisor:
    """Keeps at most one countdown per session, keyed to its current round.

    Expiry always re-reads the session, so a timer that fires after the round
    moved on (or after another observer already expired it) does nothing.
    """

    def __init__(
        self,
        store,
        machine,
        *,
        round_seconds: float = DEFAULT_ROUND_SECONDS,
        metrics: Callable[[str], None] | None = None,
        timer_factory=threading.Timer,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.machine = machine
        self.round_seconds = float(round_seconds)
        self.metrics = metrics
        self.timer_factory = timer_factory
        self.clock = clock
        self._timers: dict[str, tuple[int, object]] = {}
        self._lock = threading.Lock()

    def deadline_for(self, session: records.Session) -> float | None:
        if (
            not session.timer_enabled
            or session.status != records.STATUS_ACTIVE
            or session.abandoned
            or not session.round_started_at
        ):
            return None
        return float(session.round_started_at) + self.round_seconds

    def sync(self, session: records.Session | None) -> None:
        if session is None:
            return
        deadline = self.deadline_for(session)
        if deadline is None:
            self.cancel(session.code)
            return

        with self._lock:
            existing = self._timers.get(session.code)
            if existing is not None and existing[0] == session.round_number:
                return
            if existing is not None:
                existing[1].cancel()

            delay = max(0.0, deadline - self.clock())
            timer = self.timer_factory(
                delay, self._fire, args=(session.code, session.round_number)
            )
            timer.daemon = True
            self._timers[session.code] = (session.round_number, timer)
        timer.start()
        logger.debug(
            "Countdown for session %s round %s set (%.1fs)",
            session.code,
            session.round_number,
            delay,
        )

    def expire(self, session_code: str, round_number: int) -> bool:
        session = self.machine.get_session(session_code)
        if (
            session is None
            or session.status != records.STATUS_ACTIVE
            or session.abandoned
            or session.round_number != int(round_number)
        ):
            return False
        expired = self.machine.expire_round(session_code, round_number)
        if expired:
            logger.info("Session %s timed out in round %s", session_code, round_number)
        return expired

    def cancel(self, session_code: str) -> None:
        with self._lock:
            existing = self._timers.pop(session_code, None)
        if existing is not None:
            existing[1].cancel()

    def shutdown(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for _, timer in timers:
            timer.cancel()

    def active_countdowns(self) -> dict[str, int]:
        with self._lock:
            return {code: entry[0] for code, entry in self._timers.items()}

    def _fire(self, session_code: str, round_number: int) -> None:
        with self._lock:
            existing = self._timers.get(session_code)
            if existing is not None and existing[0] == round_number:
                self._timers.pop(session_code, None)
        try:
            self.expire(session_code, round_number)
        except Exception:
            logger.exception(
                "Countdown expiry failed for session %s round %s",
                session_code,
                round_number,
            )
            if self.metrics is not None:
                self.metrics("engine_loop_errors")
