"""Record shapes for sessions, participants and submissions."""

from __future__ import annotations

import random
import secrets
from dataclasses import asdict, dataclass, fields
from typing import ClassVar

KIND_SESSION = "session"
KIND_PARTICIPANT = "participant"
KIND_SUBMISSION = "submission"
RECORD_KINDS = (KIND_SESSION, KIND_PARTICIPANT, KIND_SUBMISSION)

STATUS_WAITING = "waiting"
STATUS_READY = "ready"
STATUS_ACTIVE = "active"
STATUS_FINISHED = "finished"
SESSION_STATUSES = (STATUS_WAITING, STATUS_READY, STATUS_ACTIVE, STATUS_FINISHED)
PRE_GAME_STATUSES = (STATUS_WAITING, STATUS_READY)

OUTCOME_WON = "won"
OUTCOME_TIMED_OUT = "timed_out"
OUTCOME_ROUND_LIMIT = "round_limit"

SESSION_CODE_LENGTH = 5
SESSION_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"


@dataclass
class Session:
    code: str
    capacity: int
    status: str = STATUS_WAITING
    round_number: int = 1
    round_limit: int | None = None
    timer_enabled: bool = False
    winner: str | None = None
    rounds_taken: int | None = None
    successor_code: str | None = None
    outcome: str | None = None
    abandoned: bool = False
    rematch_claim: str | None = None
    rematch_claimed_at: float = 0.0
    round_started_at: float = 0.0
    created_at: float = 0.0
    updated_at: float = 0.0

    KIND: ClassVar[str] = KIND_SESSION
    KEY_FIELDS: ClassVar[tuple[str, ...]] = ("code",)
    SESSION_FIELD: ClassVar[str] = "code"
    BOOL_FIELDS: ClassVar[tuple[str, ...]] = ("timer_enabled", "abandoned")

    @property
    def is_pre_game(self) -> bool:
        return self.status in PRE_GAME_STATUSES

    @property
    def is_won(self) -> bool:
        return self.status == STATUS_FINISHED and self.outcome == OUTCOME_WON


@dataclass
class Participant:
    participant_id: str
    session_code: str
    display_name: str
    current_word: str | None = None
    submitted: bool = False
    ready_to_start: bool = False
    wants_rematch: bool = False
    predecessor_id: str | None = None
    joined_at: float = 0.0

    KIND: ClassVar[str] = KIND_PARTICIPANT
    KEY_FIELDS: ClassVar[tuple[str, ...]] = ("participant_id",)
    SESSION_FIELD: ClassVar[str] = "session_code"
    BOOL_FIELDS: ClassVar[tuple[str, ...]] = (
        "submitted",
        "ready_to_start",
        "wants_rematch",
    )


@dataclass
class Submission:
    session_code: str
    participant_id: str
    round_number: int
    word: str
    submitted_at: float = 0.0

    KIND: ClassVar[str] = KIND_SUBMISSION
    KEY_FIELDS: ClassVar[tuple[str, ...]] = (
        "session_code",
        "participant_id",
        "round_number",
    )
    SESSION_FIELD: ClassVar[str] = "session_code"
    BOOL_FIELDS: ClassVar[tuple[str, ...]] = ()


RECORD_TYPES = {
    KIND_SESSION: Session,
    KIND_PARTICIPANT: Participant,
    KIND_SUBMISSION: Submission,
}


def record_type(kind: str):
    try:
        return RECORD_TYPES[kind]
    except KeyError as exc:
        raise ValueError(f"Unknown record kind: {kind!r}") from exc


def field_names(kind: str) -> tuple[str, ...]:
    return tuple(f.name for f in fields(record_type(kind)))


def normalize_key(kind: str, key) -> tuple:
    """Return the key as a tuple in KEY_FIELDS order.

    Single-field kinds accept a bare scalar; lists (from JSON) become tuples.
    """
    key_fields = record_type(kind).KEY_FIELDS
    if isinstance(key, (list, tuple)):
        values = tuple(key)
    else:
        values = (key,)
    if len(values) != len(key_fields):
        raise ValueError(
            f"{kind} key needs {len(key_fields)} part(s), got {len(values)}."
        )
    return values


def record_key(record) -> tuple:
    return tuple(getattr(record, name) for name in record.KEY_FIELDS)


def record_session_code(record) -> str:
    return getattr(record, record.SESSION_FIELD)


def to_dict(record) -> dict:
    return asdict(record)


def from_dict(kind: str, payload: dict):
    cls = record_type(kind)
    known = {f.name for f in fields(cls)}
    values = {name: value for name, value in dict(payload).items() if name in known}
    for name in cls.BOOL_FIELDS:
        if name in values:
            values[name] = bool(values[name])
    return cls(**values)


def to_row(record) -> dict:
    row = asdict(record)
    for name in record.BOOL_FIELDS:
        row[name] = 1 if row[name] else 0
    return row


def from_row(kind: str, row) -> object:
    return from_dict(kind, {name: row[name] for name in row.keys()})


def encode_value(value):
    if isinstance(value, bool):
        return 1 if value else 0
    return value


def new_session_code() -> str:
    return "".join(
        random.choice(SESSION_CODE_ALPHABET) for _ in range(SESSION_CODE_LENGTH)
    )


def new_participant_id() -> str:
    return secrets.token_urlsafe(18).replace("-", "").replace("_", "")[:32]
