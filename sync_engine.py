"""One observer of the record store.

An engine follows the change feed for sessions, participants and submissions
and hands each touched session to the component that owns that kind of
change. Every handler re-reads the store before writing, so several engines
(in other threads or processes) can run side by side against one database.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

import records
from rematch_coordinator import RematchCoordinator
from roster_watcher import RosterWatcher
from round_resolver import HISTORY_SCOPE_PARTICIPANT, RoundResolver
from session_machine import SessionStateMachine
from timer_supervisor import DEFAULT_ROUND_SECONDS, TimerSupervisor

logger = logging.getLogger(__name__)

DISPATCH_ORDER = (
    records.KIND_SESSION,
    records.KIND_PARTICIPANT,
    records.KIND_SUBMISSION,
)


class SyncEngine:
    def __init__(
        self,
        store,
        *,
        session_code: str | None = None,
        from_sequence: int | None = None,
        round_seconds: float = DEFAULT_ROUND_SECONDS,
        history_scope: str = HISTORY_SCOPE_PARTICIPANT,
        poll_interval: float = 0.5,
        metrics: Callable[[str], None] | None = None,
        timer_factory=threading.Timer,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.session_code = session_code
        self.poll_interval = max(0.05, float(poll_interval))
        self.metrics = metrics
        self.machine = SessionStateMachine(store, metrics=metrics, clock=clock)
        self.resolver = RoundResolver(
            store, self.machine, history_scope=history_scope, metrics=metrics
        )
        self.rematch = RematchCoordinator(store, self.machine, metrics=metrics)
        self.roster = RosterWatcher(store, self.machine)
        self.timers = TimerSupervisor(
            store,
            self.machine,
            round_seconds=round_seconds,
            metrics=metrics,
            timer_factory=timer_factory,
            clock=clock,
        )
        self._abandon_listeners: list[Callable[[str], None]] = []
        self._error_listeners: list[Callable[[Exception], None]] = []
        self._abandon_notified: set[str] = set()
        self._notify_lock = threading.Lock()
        self._subscriptions = {
            kind: store.subscribe(
                kind=kind, session_code=session_code, from_sequence=from_sequence
            )
            for kind in DISPATCH_ORDER
        }
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------
    # Listeners
    # ------------------------

    def add_abandon_listener(self, listener: Callable[[str], None]) -> None:
        self._abandon_listeners.append(listener)

    def add_departure_listener(self, listener: Callable[[str, int, int], None]) -> None:
        self.roster.add_departure_listener(listener)

    def add_error_listener(self, listener: Callable[[Exception], None]) -> None:
        """Called with every exception the background loop survives."""
        self._error_listeners.append(listener)

    # ------------------------
    # Handlers
    # ------------------------

    def handle_session_change(self, session_code: str) -> None:
        session = self.machine.get_session(session_code)
        if session is None:
            self.timers.cancel(session_code)
            self._forget(session_code)
            return
        self.timers.sync(session)
        if session.abandoned:
            self._notify_abandoned(session_code)
        self._forget_if_settled(session)

    def handle_participant_change(self, session_code: str) -> None:
        self.roster.observe(session_code)
        self.rematch.evaluate(session_code)
        session = self.machine.get_session(session_code)
        if session is not None:
            self._forget_if_settled(session)

    def handle_submission_change(self, session_code: str) -> None:
        self.resolver.resolve(session_code)
        self.handle_session_change(session_code)

    # ------------------------
    # Feed
    # ------------------------

    def pump(self) -> int:
        """Drain pending change events once; returns how many were seen."""
        handlers = {
            records.KIND_SESSION: self.handle_session_change,
            records.KIND_PARTICIPANT: self.handle_participant_change,
            records.KIND_SUBMISSION: self.handle_submission_change,
        }
        seen = 0
        for kind in DISPATCH_ORDER:
            subscription = self._subscriptions[kind]
            cursor = subscription.cursor
            events = subscription.poll()
            seen += len(events)
            touched: list[str] = []
            for event in events:
                if event.session_code and event.session_code not in touched:
                    touched.append(event.session_code)
            try:
                for session_code in touched:
                    handlers[kind](session_code)
            except Exception:
                # Redeliver the whole batch next time.
                subscription.cursor = cursor
                raise
        return seen

    @property
    def cursor(self) -> int:
        return min(sub.cursor for sub in self._subscriptions.values())

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="word-sync-engine", daemon=True
        )
        self._thread.start()
        logger.info("Sync engine started (poll every %.2fs)", self.poll_interval)

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self.timers.shutdown()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.pump()
            except Exception as exc:
                logger.exception("Sync engine loop failed")
                if self.metrics is not None:
                    self.metrics("engine_loop_errors")
                for listener in list(self._error_listeners):
                    try:
                        listener(exc)
                    except Exception:
                        logger.warning("Engine error listener failed", exc_info=True)
            self._stop.wait(self.poll_interval)

    def _forget_if_settled(self, session: records.Session) -> None:
        # A finished session only matters until its rematch is published or
        # its last player is gone.
        if session.status != records.STATUS_FINISHED:
            return
        if session.successor_code or self.roster.last_count(session.code) == 0:
            self._forget(session.code)

    def _forget(self, session_code: str) -> None:
        self.roster.forget(session_code)
        with self._notify_lock:
            self._abandon_notified.discard(session_code)

    def _notify_abandoned(self, session_code: str) -> None:
        with self._notify_lock:
            if session_code in self._abandon_notified:
                return
            self._abandon_notified.add(session_code)
        for listener in list(self._abandon_listeners):
            try:
                listener(session_code)
            except Exception:
                logger.warning(
                    "Abandon listener failed for session %s",
                    session_code,
                    exc_info=True,
                )
