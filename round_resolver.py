"""Word intake and round resolution."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import records
from record_store import BulkUpdate, Expect
from sync_errors import DuplicateWordError, ValidationError

logger = logging.getLogger(__name__)

MAX_WORD_LENGTH = 40

HISTORY_SCOPE_PARTICIPANT = "participant"
HISTORY_SCOPE_SESSION = "session"
HISTORY_SCOPES = (HISTORY_SCOPE_PARTICIPANT, HISTORY_SCOPE_SESSION)

STATE_IDLE = "idle"
STATE_INCOMPLETE = "incomplete"
STATE_ADVANCED = "advanced"
STATE_WON = "won"
STATE_ROUND_LIMIT = "round_limit"
STATE_CONFLICT = "conflict"


@dataclass(frozen=True)
class RoundOutcome:
    state: str
    round_number: int = 0
    submitted: int = 0
    required: int = 0

    @property
    def conflict(self) -> bool:
        return self.state == STATE_CONFLICT

    @property
    def finished(self) -> bool:
        return self.state in (STATE_WON, STATE_ROUND_LIMIT)


def normalize_word(text) -> str:
    word = str(text or "").strip().casefold()
    if not word:
        raise ValidationError("Enter a word first.", 400)
    if len(word) > MAX_WORD_LENGTH:
        raise ValidationError(
            f"Words can be at most {MAX_WORD_LENGTH} characters.", 400
        )
    return word


class RoundResolver:
    def __init__(
        self,
        store,
        machine,
        *,
        history_scope: str = HISTORY_SCOPE_PARTICIPANT,
        metrics: Callable[[str], None] | None = None,
        clock: Callable[[], float] | None = None,
    ):
        if history_scope not in HISTORY_SCOPES:
            raise ValueError(f"Unknown word history scope: {history_scope!r}")
        self.store = store
        self.machine = machine
        self.history_scope = history_scope
        self.metrics = metrics
        self.clock = clock or machine.clock

    def check_word(
        self, session: records.Session, participant: records.Participant, word: str
    ) -> None:
        """Raise DuplicateWordError if ``word`` was used in an earlier round."""
        where = {"session_code": session.code, "word": word}
        if self.history_scope == HISTORY_SCOPE_PARTICIPANT:
            where["participant_id"] = participant.participant_id
        earlier = [
            submission
            for submission in self.store.query(
                records.KIND_SUBMISSION, where, order_by="round_number"
            )
            if submission.round_number < session.round_number
        ]
        if earlier:
            self._count("duplicate_words_rejected")
            raise DuplicateWordError(word, earlier[0].round_number)

    def submit(self, participant_id: str, text) -> records.Submission:
        participant = self.store.get(records.KIND_PARTICIPANT, participant_id)
        if participant is None:
            raise ValidationError("Player not found.", 404)
        session = self.machine.require_session(participant.session_code)
        if session.status != records.STATUS_ACTIVE:
            raise ValidationError("This session is not in progress.", 409)
        if session.abandoned:
            raise ValidationError("A player left, so this session has ended.", 409)

        word = normalize_word(text)
        self.check_word(session, participant, word)

        submission = records.Submission(
            session_code=session.code,
            participant_id=participant_id,
            round_number=session.round_number,
            word=word,
            submitted_at=self.clock(),
        )
        inserted = self.store.insert(
            submission,
            guards=(
                Expect(
                    records.KIND_SESSION,
                    session.code,
                    {
                        "status": records.STATUS_ACTIVE,
                        "round_number": session.round_number,
                        "abandoned": False,
                    },
                ),
                Expect(records.KIND_PARTICIPANT, participant_id, {}),
            ),
            side_effects=(
                BulkUpdate(
                    records.KIND_PARTICIPANT,
                    {"session_code": session.code, "participant_id": participant_id},
                    {"submitted": True, "current_word": word},
                ),
            ),
        )
        if not inserted:
            existing = self.store.get(
                records.KIND_SUBMISSION,
                (session.code, participant_id, session.round_number),
            )
            if existing is not None:
                raise ValidationError("You already submitted a word this round.", 409)
            raise ValidationError(
                "The round changed before your word arrived. Try again.", 409
            )

        logger.info(
            "Word submitted in session %s round %s by %s",
            session.code,
            session.round_number,
            participant_id,
        )
        self._count("words_submitted")
        return submission

    def resolve(self, session_code: str) -> RoundOutcome:
        session = self.machine.get_session(session_code)
        if (
            session is None
            or session.status != records.STATUS_ACTIVE
            or session.abandoned
        ):
            return RoundOutcome(STATE_IDLE)

        round_number = session.round_number
        participants = self.machine.list_participants(session_code)
        member_ids = {participant.participant_id for participant in participants}
        submissions = [
            submission
            for submission in self.store.query(
                records.KIND_SUBMISSION,
                {"session_code": session_code, "round_number": round_number},
                order_by="submitted_at",
            )
            if submission.participant_id in member_ids
        ]
        required = len(participants)
        if required == 0 or len(submissions) < required:
            return RoundOutcome(STATE_INCOMPLETE, round_number, len(submissions), required)

        words = {submission.word for submission in submissions}
        if len(words) == 1:
            winner = None
            if required == 2:
                names = {p.participant_id: p.display_name for p in participants}
                winner = names.get(submissions[-1].participant_id)
            if self.machine.finish(
                session_code,
                round_number,
                winner=winner,
                rounds_taken=round_number,
                outcome=records.OUTCOME_WON,
            ):
                return RoundOutcome(STATE_WON, round_number, len(submissions), required)
            return RoundOutcome(STATE_CONFLICT, round_number, len(submissions), required)

        if session.round_limit and round_number >= session.round_limit:
            if self.machine.finish(
                session_code,
                round_number,
                winner=None,
                rounds_taken=round_number,
                outcome=records.OUTCOME_ROUND_LIMIT,
            ):
                return RoundOutcome(STATE_ROUND_LIMIT, round_number, len(submissions), required)
            return RoundOutcome(STATE_CONFLICT, round_number, len(submissions), required)

        if self.machine.advance_round(session_code, round_number):
            return RoundOutcome(STATE_ADVANCED, round_number, len(submissions), required)
        return RoundOutcome(STATE_CONFLICT, round_number, len(submissions), required)

    def _count(self, name: str) -> None:
        if self.metrics is not None:
            self.metrics(name)
