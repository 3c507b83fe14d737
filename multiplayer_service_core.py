from __future__ import annotations

import re
import time

import records
from record_store import CountWithin, Expect
from sync_errors import ValidationError


class MultiplayerServiceCore:
    """Shared lobby/identity plumbing for record-store backed game services."""

    GAME_NAME = ""
    MIN_PLAYERS = 2
    MAX_PLAYERS = 4
    MAX_NAME_LENGTH = 20
    ERROR_CLASS = ValidationError

    def __init__(self, *, store, machine):
        self.store = store
        self.machine = machine

    def _raise_error(self, message: str, status_code: int = 400) -> None:
        raise self.ERROR_CLASS(message, status_code)

    def _create_session_identity(
        self,
        *,
        player_name: str,
        capacity: int,
        timer_enabled: bool,
        round_limit: int | None,
    ) -> tuple[records.Session, records.Participant]:
        display_name = self._sanitize_player_name(player_name)
        session = self.machine.create_session(
            capacity, timer_enabled=timer_enabled, round_limit=round_limit
        )
        participant = records.Participant(
            participant_id=records.new_participant_id(),
            session_code=session.code,
            display_name=display_name,
            joined_at=time.time(),
        )
        if not self.store.insert(participant):
            self._raise_error("Unable to create a player right now.", 503)
        return session, participant

    def _join_session_identity(
        self,
        *,
        session_code: str,
        player_name: str,
        session_code_required_message: str = "Session code is required.",
        started_message: str = "This session already started. Try another code.",
        session_full_message: str | None = None,
    ) -> tuple[records.Session, records.Participant]:
        code = self._normalize_code(session_code)
        if not code:
            self._raise_error(session_code_required_message, 400)

        session = self.machine.get_session(code)
        if session is None:
            self._raise_error("Session not found.", 404)

        full_message = (
            session_full_message
            or f"Session is full ({session.capacity} players max)."
        )
        if not session.is_pre_game:
            self._raise_error(started_message, 409)

        participant = records.Participant(
            participant_id=records.new_participant_id(),
            session_code=code,
            display_name=self._sanitize_player_name(player_name),
            joined_at=time.time(),
        )
        joined = self.store.insert(
            participant,
            guards=(
                Expect(
                    records.KIND_SESSION,
                    code,
                    {"status": list(records.PRE_GAME_STATUSES)},
                ),
                CountWithin(
                    records.KIND_PARTICIPANT,
                    {"session_code": code},
                    maximum=session.capacity - 1,
                ),
            ),
        )
        if not joined:
            latest = self.machine.get_session(code)
            if latest is None:
                self._raise_error("Session not found.", 404)
            if not latest.is_pre_game:
                self._raise_error(started_message, 409)
            self._raise_error(full_message, 409)
        return session, participant

    def _require_participant(self, participant_id: str | None) -> records.Participant:
        normalized = self._normalize_participant_id(participant_id)
        if not normalized:
            self._raise_error("Player id is required.", 400)
        participant = self.store.get(records.KIND_PARTICIPANT, normalized)
        if participant is None:
            self._raise_error("Player not found.", 404)
        return participant

    @classmethod
    def _sanitize_player_name(cls, player_name: str) -> str:
        collapsed = re.sub(r"\s+", " ", str(player_name or "")).strip()
        if not collapsed:
            return "Player"
        return collapsed[: cls.MAX_NAME_LENGTH]

    @staticmethod
    def _normalize_code(code: str) -> str:
        if not code:
            return ""
        cleaned = re.sub(r"[^A-Z0-9]", "", str(code).upper())
        return cleaned[: records.SESSION_CODE_LENGTH]

    @staticmethod
    def _normalize_participant_id(participant_id: str | None) -> str:
        if not participant_id:
            return ""
        return re.sub(r"[^A-Za-z0-9_-]", "", str(participant_id))[:48]
