"""Rematch opt-ins and successor session minting."""

from __future__ import annotations

import logging
import secrets
from typing import Callable

import records
from record_store import CountWithin
from sync_errors import ValidationError

logger = logging.getLogger(__name__)

REMATCH_CLAIM_TIMEOUT_SECONDS = 30.0


class RematchCoordinator:
    """Mints at most one successor per finished session.

    Several observers may see the last opt-in at once. They race on a claim
    token written into ``rematch_claim``; only the claimant creates the new
    session, and the successor code is published once everything exists.
    A claim older than ``claim_timeout`` is treated as abandoned by its owner
    and may be taken over by the next observer.
    """

    def __init__(
        self,
        store,
        machine,
        *,
        metrics: Callable[[str], None] | None = None,
        claim_timeout: float = REMATCH_CLAIM_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.machine = machine
        self.metrics = metrics
        self.claim_timeout = float(claim_timeout)

    def request_rematch(self, participant_id: str) -> str | None:
        participant = self.store.get(records.KIND_PARTICIPANT, participant_id)
        if participant is None:
            raise ValidationError("Player not found.", 404)
        session = self.machine.require_session(participant.session_code)
        if session.status != records.STATUS_FINISHED:
            raise ValidationError("Rematch is only available once a game ends.", 409)

        if not participant.wants_rematch:
            self.store.update(
                records.KIND_PARTICIPANT,
                participant_id,
                {"wants_rematch": False},
                {"wants_rematch": True},
            )
        return self.evaluate(session.code)

    def evaluate(self, session_code: str) -> str | None:
        session = self.machine.get_session(session_code)
        if session is None or session.status != records.STATUS_FINISHED:
            return None
        if session.successor_code:
            return session.successor_code
        if session.rematch_claim and not self._claim_is_stale(session):
            return None

        participants = self.machine.list_participants(session_code)
        if not participants or not all(p.wants_rematch for p in participants):
            return None

        claim = secrets.token_hex(8)
        claimed = self.store.update(
            records.KIND_SESSION,
            session_code,
            {
                "status": records.STATUS_FINISHED,
                "successor_code": None,
                "rematch_claim": session.rematch_claim,
            },
            {"rematch_claim": claim, "rematch_claimed_at": self.machine.clock()},
            guards=(
                CountWithin(
                    records.KIND_PARTICIPANT,
                    {"session_code": session_code},
                    minimum=1,
                ),
                CountWithin(
                    records.KIND_PARTICIPANT,
                    {"session_code": session_code, "wants_rematch": False},
                    maximum=0,
                ),
            ),
        )
        if not claimed:
            return None
        if session.rematch_claim:
            logger.warning(
                "Took over stale rematch claim on session %s", session_code
            )

        try:
            successor_code = self._mint(session, claim)
        except Exception:
            logger.exception("Rematch minting for session %s failed", session_code)
            self._release(session_code, claim)
            raise
        return successor_code

    def successor_identity(self, participant_id: str) -> str | None:
        participant = self.store.get(records.KIND_PARTICIPANT, participant_id)
        if participant is None:
            matches = self.store.query(
                records.KIND_PARTICIPANT, {"predecessor_id": participant_id}, limit=1
            )
            return matches[0].participant_id if matches else None
        session = self.machine.get_session(participant.session_code)
        if session is None or not session.successor_code:
            return None
        matches = self.store.query(
            records.KIND_PARTICIPANT,
            {
                "session_code": session.successor_code,
                "predecessor_id": participant_id,
            },
            limit=1,
        )
        return matches[0].participant_id if matches else None

    def _mint(self, session: records.Session, claim: str) -> str | None:
        participants = self.machine.list_participants(session.code)
        if not participants:
            self._release(session.code, claim)
            return None

        self._discard_unpublished(session.code, participants)
        successor = self.machine.create_session(
            session.capacity,
            timer_enabled=session.timer_enabled,
            round_limit=session.round_limit,
        )
        now_ts = self.machine.clock()
        try:
            for offset, previous in enumerate(participants):
                self.store.insert(
                    records.Participant(
                        participant_id=records.new_participant_id(),
                        session_code=successor.code,
                        display_name=previous.display_name,
                        predecessor_id=previous.participant_id,
                        joined_at=now_ts + offset * 0.001,
                    )
                )
        except Exception:
            self._discard_session(successor.code)
            raise

        published = self.store.update(
            records.KIND_SESSION,
            session.code,
            {"successor_code": None, "rematch_claim": claim},
            {"successor_code": successor.code},
        )
        if not published:
            # The claim was released or taken over underneath us.
            self._discard_session(successor.code)
            return None

        logger.info(
            "Rematch for session %s minted successor %s (%s players)",
            session.code,
            successor.code,
            len(participants),
        )
        if self.metrics is not None:
            self.metrics("rematches_minted")
        return successor.code

    def _discard_unpublished(
        self, session_code: str, participants: list[records.Participant]
    ) -> None:
        """Drop successors a previous claimant built but never published."""
        leftovers = self.store.query(
            records.KIND_PARTICIPANT,
            {"predecessor_id": [p.participant_id for p in participants]},
        )
        for orphan_code in sorted({p.session_code for p in leftovers}):
            logger.warning(
                "Discarding unpublished rematch session %s of %s",
                orphan_code,
                session_code,
            )
            self._discard_session(orphan_code)

    def _discard_session(self, session_code: str) -> None:
        self.store.delete_where(
            records.KIND_PARTICIPANT, {"session_code": session_code}
        )
        self.store.delete(records.KIND_SESSION, session_code)

    def _claim_is_stale(self, session: records.Session) -> bool:
        return self.machine.clock() - session.rematch_claimed_at >= self.claim_timeout

    def _release(self, session_code: str, claim: str) -> None:
        self.store.update(
            records.KIND_SESSION,
            session_code,
            {"successor_code": None, "rematch_claim": claim},
            {"rematch_claim": None, "rematch_claimed_at": 0.0},
        )
