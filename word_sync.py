from __future__ import annotations

import logging
import threading
from typing import Callable

import records
from multiplayer_service_core import MultiplayerServiceCore
from round_resolver import HISTORY_SCOPE_PARTICIPANT, MAX_WORD_LENGTH
from session_machine import MAX_ROUND_LIMIT
from sync_engine import SyncEngine
from timer_supervisor import DEFAULT_ROUND_SECONDS

logger = logging.getLogger(__name__)

DEPARTED_PLAYER_NAME = "Former player"


class WordSyncService(MultiplayerServiceCore):
    """Operations a client can perform, plus the per-viewer live view.

    Writes go through the engine components; afterwards the matching engine
    handler runs inline so a single process sees its own changes resolved
    without waiting for the background feed.
    """

    GAME_NAME = "Word Sync"

    def __init__(
        self,
        *,
        store,
        round_seconds: float = DEFAULT_ROUND_SECONDS,
        history_scope: str = HISTORY_SCOPE_PARTICIPANT,
        poll_interval: float = 0.5,
        metrics: Callable[[str], None] | None = None,
        timer_factory=threading.Timer,
        engine: SyncEngine | None = None,
    ):
        self.engine = engine or SyncEngine(
            store,
            round_seconds=round_seconds,
            history_scope=history_scope,
            poll_interval=poll_interval,
            metrics=metrics,
            timer_factory=timer_factory,
        )
        super().__init__(store=store, machine=self.engine.machine)
        self.resolver = self.engine.resolver
        self.rematch = self.engine.rematch
        self.timers = self.engine.timers

    # ------------------------
    # Public API helpers
    # ------------------------

    def bootstrap(self) -> dict:
        return {
            "game_name": self.GAME_NAME,
            "min_players": self.MIN_PLAYERS,
            "max_players": self.MAX_PLAYERS,
            "round_seconds": self.timers.round_seconds,
            "max_round_limit": MAX_ROUND_LIMIT,
            "max_word_length": MAX_WORD_LENGTH,
            "word_history_scope": self.resolver.history_scope,
            "rules": "Everyone submits a word each round. Match every word in the same round to win.",
            "engine_running": self.engine.running,
        }

    def create_session(
        self,
        capacity: int = 2,
        timer_enabled: bool = False,
        round_limit: int | None = None,
        display_name: str = "",
    ) -> dict:
        session, participant = self._create_session_identity(
            player_name=display_name,
            capacity=capacity,
            timer_enabled=timer_enabled,
            round_limit=round_limit,
        )
        self.engine.handle_participant_change(session.code)
        return {
            "session_code": session.code,
            "participant_id": participant.participant_id,
            "display_name": participant.display_name,
            "capacity": session.capacity,
            "timer_enabled": session.timer_enabled,
            "round_limit": session.round_limit,
            "game_name": self.GAME_NAME,
        }

    def join_session(self, session_code: str, display_name: str = "") -> dict:
        session, participant = self._join_session_identity(
            session_code=session_code, player_name=display_name
        )
        self.engine.handle_participant_change(session.code)
        logger.info(
            "Player %s joined session %s", participant.participant_id, session.code
        )
        return {
            "session_code": session.code,
            "participant_id": participant.participant_id,
            "display_name": participant.display_name,
            "capacity": session.capacity,
            "player_count": self.store.count(
                records.KIND_PARTICIPANT, {"session_code": session.code}
            ),
            "game_name": self.GAME_NAME,
        }

    def mark_ready(self, participant_id: str) -> dict:
        participant = self._require_participant(participant_id)
        self.machine.mark_ready_to_start(participant.participant_id)
        self.engine.handle_participant_change(participant.session_code)
        self.engine.handle_session_change(participant.session_code)
        return self.get_state(participant.session_code, participant.participant_id)

    def submit_word(self, participant_id: str, text) -> dict:
        participant = self._require_participant(participant_id)
        submission = self.resolver.submit(participant.participant_id, text)
        self.engine.handle_submission_change(participant.session_code)
        return {
            "accepted": True,
            "word": submission.word,
            "round_number": submission.round_number,
            "state": self.get_state(
                participant.session_code, participant.participant_id
            ),
        }

    def request_rematch(self, participant_id: str) -> dict:
        participant = self._require_participant(participant_id)
        successor_code = self.rematch.request_rematch(participant.participant_id)
        self.engine.handle_session_change(participant.session_code)
        return {
            "successor_code": successor_code,
            "successor_participant_id": self.rematch.successor_identity(
                participant.participant_id
            ),
            "state": self.get_state(
                participant.session_code, participant.participant_id
            ),
        }

    def leave(self, participant_id: str) -> dict:
        participant = self._require_participant(participant_id)
        code = participant.session_code
        self.engine.roster.observe(code)
        self.store.delete(records.KIND_PARTICIPANT, participant.participant_id)
        logger.info("Player %s left session %s", participant.participant_id, code)

        self.engine.handle_participant_change(code)
        self.engine.handle_session_change(code)

        session = self.machine.get_session(code)
        remaining = self.store.count(records.KIND_PARTICIPANT, {"session_code": code})
        session_closed = False
        if session is not None and remaining == 0 and not session.is_won:
            self.store.delete_where(records.KIND_SUBMISSION, {"session_code": code})
            self.store.delete(records.KIND_SESSION, code)
            self.engine.handle_session_change(code)
            session_closed = True
            logger.info("Session %s closed after the last player left", code)

        return {
            "left": True,
            "session_code": code,
            "remaining_players": remaining,
            "session_closed": session_closed,
        }

    def get_state(self, session_code: str, participant_id: str | None) -> dict:
        code = self._normalize_code(session_code)
        if not code:
            self._raise_error("Session code is required.", 400)
        session = self.machine.require_session(code)
        viewer_id = self._normalize_participant_id(participant_id)
        participants = self.machine.list_participants(code)
        viewer = next(
            (p for p in participants if p.participant_id == viewer_id), None
        )
        if viewer is None:
            self._raise_error("You are not part of this session.", 403)

        names = {p.participant_id: p.display_name for p in participants}
        submissions = self.store.query(
            records.KIND_SUBMISSION,
            {"session_code": code},
            order_by=("round_number", "submitted_at"),
        )
        current_round = [
            s
            for s in submissions
            if s.round_number == session.round_number and s.participant_id in names
        ]
        round_complete = bool(participants) and len(current_round) >= len(participants)
        show_current = round_complete or session.status == records.STATUS_FINISHED

        history: dict[int, list[dict]] = {}
        for submission in submissions:
            if submission.round_number > session.round_number:
                continue
            if submission.round_number == session.round_number and not show_current:
                continue
            history.setdefault(submission.round_number, []).append(
                {
                    "participant_id": submission.participant_id,
                    "display_name": names.get(
                        submission.participant_id, DEPARTED_PLAYER_NAME
                    ),
                    "word": submission.word,
                }
            )

        deadline = self.timers.deadline_for(session)
        successor_participant_id = None
        if session.successor_code:
            successor_participant_id = self.rematch.successor_identity(
                viewer.participant_id
            )

        return {
            "game_name": self.GAME_NAME,
            "session": {
                "code": session.code,
                "status": session.status,
                "capacity": session.capacity,
                "player_count": len(participants),
                "round_number": session.round_number,
                "round_limit": session.round_limit,
                "timer_enabled": session.timer_enabled,
                "winner": session.winner,
                "rounds_taken": session.rounds_taken,
                "outcome": session.outcome,
                "abandoned": session.abandoned,
                "successor_code": session.successor_code,
            },
            "viewer": self._participant_view(viewer, viewer.participant_id),
            "participants": [
                self._participant_view(p, viewer.participant_id) for p in participants
            ],
            "round": {
                "number": session.round_number,
                "submitted_count": len(current_round),
                "required": len(participants),
                "complete": round_complete,
            },
            "history": [
                {"round_number": round_number, "words": words}
                for round_number, words in sorted(history.items())
            ],
            "round_deadline": deadline,
            "successor_participant_id": successor_participant_id,
            "can_ready": session.is_pre_game and not viewer.ready_to_start,
            "can_submit": (
                session.status == records.STATUS_ACTIVE
                and not session.abandoned
                and not viewer.submitted
            ),
            "can_rematch": (
                session.status == records.STATUS_FINISHED
                and not viewer.wants_rematch
                and not session.successor_code
            ),
            "can_leave": True,
        }

    def recent_matches(self, limit: int = 3) -> list[dict]:
        limit = max(1, min(int(limit or 3), 20))
        sessions = self.store.query(
            records.KIND_SESSION,
            {"status": records.STATUS_FINISHED, "outcome": records.OUTCOME_WON},
            order_by=("-created_at", "code"),
            limit=limit,
        )
        matches = []
        for session in sessions:
            submissions = self.store.query(
                records.KIND_SUBMISSION,
                {"session_code": session.code},
                order_by=("round_number", "submitted_at"),
            )
            if not submissions:
                continue
            last_round = session.rounds_taken or max(
                s.round_number for s in submissions
            )
            matched = [s.word for s in submissions if s.round_number == last_round]
            matches.append(
                {
                    "session_code": session.code,
                    "winner": session.winner,
                    "rounds_taken": session.rounds_taken,
                    "created_at": session.created_at,
                    "finished_at": session.updated_at,
                    "starting_words": [
                        s.word for s in submissions if s.round_number == 1
                    ],
                    "matched_word": matched[0] if matched else None,
                }
            )
        return matches

    def start_engine(self) -> None:
        self.engine.start()

    def shutdown(self) -> None:
        self.engine.stop()

    @staticmethod
    def _participant_view(participant: records.Participant, viewer_id: str) -> dict:
        is_viewer = participant.participant_id == viewer_id
        return {
            "participant_id": participant.participant_id,
            "display_name": participant.display_name,
            "is_viewer": is_viewer,
            "submitted": participant.submitted,
            "ready_to_start": participant.ready_to_start,
            "wants_rematch": participant.wants_rematch,
            "current_word": participant.current_word if is_viewer else None,
        }
