"""Session lifecycle transitions.

Each transition is a single conditional write against the record store, so
any number of observers may attempt the same one and at most one succeeds.
Losers get ``False`` back and carry on.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

import records
from record_store import BulkUpdate, CountWithin
from sync_errors import StoreUnavailable, TransitionConflict, ValidationError

logger = logging.getLogger(__name__)

MIN_CAPACITY = 2
MAX_CAPACITY = 4
MAX_ROUND_LIMIT = 50
CREATE_SESSION_CODE_ATTEMPTS = 24


class SessionStateMachine:
    def __init__(
        self,
        store,
        *,
        metrics: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.metrics = metrics
        self.clock = clock

    # ------------------------
    # Reads
    # ------------------------

    def get_session(self, session_code: str) -> records.Session | None:
        return self.store.get(records.KIND_SESSION, session_code)

    def require_session(self, session_code: str) -> records.Session:
        session = self.get_session(session_code)
        if session is None:
            raise ValidationError("Session not found.", 404)
        return session

    def list_participants(self, session_code: str) -> list[records.Participant]:
        return self.store.query(
            records.KIND_PARTICIPANT,
            {"session_code": session_code},
            order_by=("joined_at", "participant_id"),
        )

    # ------------------------
    # Transitions
    # ------------------------

    def create_session(
        self,
        capacity: int,
        timer_enabled: bool = False,
        round_limit: int | None = None,
    ) -> records.Session:
        capacity = self.normalize_capacity(capacity)
        round_limit = self.normalize_round_limit(round_limit)
        now_ts = self.clock()

        for _ in range(CREATE_SESSION_CODE_ATTEMPTS):
            session = records.Session(
                code=records.new_session_code(),
                capacity=capacity,
                status=records.STATUS_WAITING,
                round_number=1,
                round_limit=round_limit,
                timer_enabled=bool(timer_enabled),
                created_at=now_ts,
                updated_at=now_ts,
            )
            if self.store.insert(session):
                logger.info(
                    "Session %s created (capacity=%s timer=%s round_limit=%s)",
                    session.code,
                    capacity,
                    session.timer_enabled,
                    round_limit,
                )
                self._count("sessions_created")
                return session
        raise StoreUnavailable("Unable to create a session code right now.")

    def mark_ready_to_start(self, participant_id: str) -> bool:
        participant = self.store.get(records.KIND_PARTICIPANT, participant_id)
        if participant is None:
            raise ValidationError("Player not found.", 404)
        session = self.require_session(participant.session_code)
        if not session.is_pre_game:
            raise ValidationError("This session already started.", 409)

        if not participant.ready_to_start:
            self.store.update(
                records.KIND_PARTICIPANT,
                participant_id,
                {"ready_to_start": False},
                {"ready_to_start": True},
            )
        return self.try_start(participant.session_code)

    def try_start(self, session_code: str) -> bool:
        session = self.get_session(session_code)
        if session is None or not session.is_pre_game:
            return False

        started = self._transition(
            session,
            expected={"status": list(records.PRE_GAME_STATUSES)},
            changes={
                "status": records.STATUS_ACTIVE,
                "round_started_at": self.clock(),
            },
            guards=(
                CountWithin(
                    records.KIND_PARTICIPANT,
                    {"session_code": session_code},
                    minimum=session.capacity,
                    maximum=session.capacity,
                ),
                CountWithin(
                    records.KIND_PARTICIPANT,
                    {"session_code": session_code, "ready_to_start": False},
                    maximum=0,
                ),
            ),
            quiet=True,
        )
        if started:
            logger.info("Session %s started", session_code)
        return started

    def advance_round(self, session_code: str, from_round: int) -> bool:
        session = self.get_session(session_code)
        if session is None:
            return False
        advanced = self._transition(
            session,
            expected={
                "status": records.STATUS_ACTIVE,
                "round_number": int(from_round),
                "abandoned": False,
            },
            changes={
                "round_number": int(from_round) + 1,
                "round_started_at": self.clock(),
            },
            side_effects=(
                BulkUpdate(
                    records.KIND_PARTICIPANT,
                    {"session_code": session_code},
                    {"submitted": False, "current_word": None},
                ),
            ),
        )
        if advanced:
            logger.info(
                "Session %s advanced to round %s", session_code, int(from_round) + 1
            )
            self._count("rounds_advanced")
        return advanced

    def finish(
        self,
        session_code: str,
        from_round: int,
        winner: str | None = None,
        rounds_taken: int | None = None,
        outcome: str = records.OUTCOME_WON,
    ) -> bool:
        session = self.get_session(session_code)
        if session is None:
            return False
        finished = self._transition(
            session,
            expected={
                "status": records.STATUS_ACTIVE,
                "round_number": int(from_round),
                "abandoned": False,
            },
            changes={
                "status": records.STATUS_FINISHED,
                "winner": winner,
                "rounds_taken": rounds_taken,
                "outcome": outcome,
            },
        )
        if finished:
            logger.info(
                "Session %s finished at round %s (outcome=%s winner=%s)",
                session_code,
                from_round,
                outcome,
                winner,
            )
            if outcome == records.OUTCOME_WON:
                self._count("sessions_won")
            elif outcome == records.OUTCOME_TIMED_OUT:
                self._count("sessions_timed_out")
        return finished

    def expire_round(self, session_code: str, from_round: int) -> bool:
        return self.finish(
            session_code,
            from_round,
            winner=None,
            rounds_taken=None,
            outcome=records.OUTCOME_TIMED_OUT,
        )

    def abandon(self, session_code: str) -> bool:
        session = self.get_session(session_code)
        if session is None:
            return False
        abandoned = self._transition(
            session,
            expected={"status": records.STATUS_ACTIVE, "abandoned": False},
            changes={"abandoned": True},
        )
        if abandoned:
            logger.info(
                "Session %s abandoned at round %s", session_code, session.round_number
            )
            self._count("sessions_abandoned")
        return abandoned

    # ------------------------
    # Helpers
    # ------------------------

    @staticmethod
    def normalize_capacity(capacity) -> int:
        try:
            value = int(capacity)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Capacity must be a number.", 400) from exc
        if value < MIN_CAPACITY or value > MAX_CAPACITY:
            raise ValidationError(
                f"Capacity must be between {MIN_CAPACITY} and {MAX_CAPACITY} players.",
                400,
            )
        return value

    @staticmethod
    def normalize_round_limit(round_limit) -> int | None:
        if round_limit in (None, "", 0, "0"):
            return None
        try:
            value = int(round_limit)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Round limit must be a number.", 400) from exc
        if value <= 0:
            return None
        return min(value, MAX_ROUND_LIMIT)

    def _transition(
        self,
        session,
        *,
        expected: dict,
        changes: dict,
        guards=(),
        side_effects=(),
        quiet: bool = False,
    ) -> bool:
        try:
            self._apply(session, expected, changes, guards, side_effects)
        except TransitionConflict:
            if not quiet:
                logger.debug(
                    "Session %s transition %s lost to another observer",
                    session.code,
                    sorted(changes),
                )
                self._count("transition_conflicts")
            return False
        return True

    def _apply(self, session, expected, changes, guards, side_effects) -> None:
        applied = self.store.update(
            records.KIND_SESSION,
            session.code,
            expected,
            changes,
            guards=guards,
            side_effects=side_effects,
        )
        if not applied:
            raise TransitionConflict()

    def _count(self, name: str) -> None:
        if self.metrics is not None:
            self.metrics(name)
