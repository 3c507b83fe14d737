"""Roster observation: start trigger and departure detection."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable

import records

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RosterChange:
    session_code: str
    previous_count: int | None
    current_count: int
    status: str | None
    started: bool = False
    departed: bool = False


class RosterWatcher:
    def __init__(self, store, machine):
        self.store = store
        self.machine = machine
        self._last_counts: dict[str, int] = {}
        self._lock = threading.Lock()
        self._listeners: list[Callable[[str, int, int], None]] = []

    def add_departure_listener(self, listener: Callable[[str, int, int], None]) -> None:
        self._listeners.append(listener)

    def observe(self, session_code: str) -> RosterChange:
        session = self.machine.get_session(session_code)
        participants = self.machine.list_participants(session_code)
        current = len(participants)

        with self._lock:
            previous = self._last_counts.get(session_code)
            self._last_counts[session_code] = current

        if session is None:
            return RosterChange(session_code, previous, current, None)

        started = False
        if (
            session.is_pre_game
            and current == session.capacity
            and all(p.ready_to_start for p in participants)
        ):
            started = self.machine.try_start(session_code)

        departed = (
            previous is not None
            and current < previous
            and session.status in (records.STATUS_ACTIVE, records.STATUS_FINISHED)
        )
        if departed:
            logger.info(
                "Player left session %s (%s -> %s, status=%s)",
                session_code,
                previous,
                current,
                session.status,
            )
            for listener in list(self._listeners):
                try:
                    listener(session_code, previous, current)
                except Exception:
                    logger.warning(
                        "Departure listener failed for session %s",
                        session_code,
                        exc_info=True,
                    )
            if session.status == records.STATUS_ACTIVE:
                self.machine.abandon(session_code)

        return RosterChange(
            session_code,
            previous,
            current,
            session.status,
            started=started,
            departed=departed,
        )

    def forget(self, session_code: str) -> None:
        with self._lock:
            self._last_counts.pop(session_code, None)

    def last_count(self, session_code: str) -> int | None:
        with self._lock:
            return self._last_counts.get(session_code)
