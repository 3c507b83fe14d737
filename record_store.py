"""SQLite-backed record store with conditional writes and a change log.

Every write appends to ``ws_changes`` in the same transaction, so any number
of observers (threads or processes sharing the database file) can follow the
store through :class:`ChangeSubscription` polling.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass, field

import records
from sync_errors import StoreUnavailable

logger = logging.getLogger(__name__)

TABLES = {
    records.KIND_SESSION: "ws_sessions",
    records.KIND_PARTICIPANT: "ws_participants",
    records.KIND_SUBMISSION: "ws_submissions",
}

OP_INSERT = "insert"
OP_UPSERT = "upsert"
OP_UPDATE = "update"
OP_DELETE = "delete"


@dataclass(frozen=True)
class Expect:
    """Precondition: the record at ``key`` exists and matches ``expected``."""

    kind: str
    key: object
    expected: dict = field(default_factory=dict)

    def to_payload(self) -> dict:
        return {
            "type": "expect",
            "kind": self.kind,
            "key": list(records.normalize_key(self.kind, self.key)),
            "expected": dict(self.expected),
        }


@dataclass(frozen=True)
class CountWithin:
    """Precondition: the number of rows matching ``where`` is within bounds."""

    kind: str
    where: dict
    minimum: int | None = None
    maximum: int | None = None

    def to_payload(self) -> dict:
        return {
            "type": "count",
            "kind": self.kind,
            "where": dict(self.where),
            "minimum": self.minimum,
            "maximum": self.maximum,
        }


@dataclass(frozen=True)
class BulkUpdate:
    kind: str
    where: dict
    changes: dict

    def to_payload(self) -> dict:
        return {
            "type": "update",
            "kind": self.kind,
            "where": dict(self.where),
            "changes": dict(self.changes),
        }


@dataclass(frozen=True)
class BulkDelete:
    kind: str
    where: dict

    def to_payload(self) -> dict:
        return {"type": "delete", "kind": self.kind, "where": dict(self.where)}


def guard_from_payload(payload: dict):
    guard_type = payload.get("type")
    if guard_type == "expect":
        return Expect(payload["kind"], payload["key"], payload.get("expected") or {})
    if guard_type == "count":
        return CountWithin(
            payload["kind"],
            payload.get("where") or {},
            payload.get("minimum"),
            payload.get("maximum"),
        )
    raise ValueError(f"Unknown guard type: {guard_type!r}")


def side_effect_from_payload(payload: dict):
    effect_type = payload.get("type")
    if effect_type == "update":
        return BulkUpdate(
            payload["kind"], payload.get("where") or {}, payload["changes"]
        )
    if effect_type == "delete":
        return BulkDelete(payload["kind"], payload.get("where") or {})
    raise ValueError(f"Unknown side effect type: {effect_type!r}")


@dataclass(frozen=True)
class ChangeEvent:
    sequence: int
    kind: str
    op: str
    session_code: str
    key: tuple | None
    created_at: float

    def to_dict(self) -> dict:
        return {
            "sequence": self.sequence,
            "kind": self.kind,
            "op": self.op,
            "session_code": self.session_code,
            "key": list(self.key) if self.key is not None else None,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "ChangeEvent":
        key = payload.get("key")
        return cls(
            sequence=int(payload["sequence"]),
            kind=str(payload["kind"]),
            op=str(payload["op"]),
            session_code=str(payload.get("session_code") or ""),
            key=tuple(key) if key is not None else None,
            created_at=float(payload.get("created_at") or 0.0),
        )


class ChangeSubscription:
    """Cursor over a change source filtered by kind and session code.

    Delivery is at-least-once: a poll that raises leaves the cursor where it
    was, and handlers are expected to be idempotent.
    """

    def __init__(
        self,
        source,
        *,
        kind: str | None = None,
        session_code: str | None = None,
        from_sequence: int | None = None,
    ):
        self.source = source
        self.kind = kind
        self.session_code = session_code
        self.cursor = (
            int(from_sequence)
            if from_sequence is not None
            else int(source.latest_sequence())
        )

    def poll(self, limit: int = 200) -> list[ChangeEvent]:
        events = self.source.changes_since(
            self.cursor,
            kind=self.kind,
            session_code=self.session_code,
            limit=limit,
        )
        if events:
            self.cursor = max(event.sequence for event in events)
        return events


class RecordStore:
    def __init__(self, db_path: str = "word_sync.db", timeout: float = 10.0):
        self.db_path = str(db_path)
        self.timeout = float(timeout)
        self.ensure_schema()

    # ------------------------
    # Schema
    # ------------------------

    def ensure_schema(self) -> None:
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        with self._write() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ws_sessions (
                    code TEXT PRIMARY KEY,
                    capacity INTEGER NOT NULL CHECK (capacity BETWEEN 2 AND 4),
                    status TEXT NOT NULL CHECK (status IN ('waiting', 'ready', 'active', 'finished')),
                    round_number INTEGER NOT NULL DEFAULT 1,
                    round_limit INTEGER,
                    timer_enabled INTEGER NOT NULL DEFAULT 0,
                    winner TEXT,
                    rounds_taken INTEGER,
                    successor_code TEXT,
                    outcome TEXT,
                    abandoned INTEGER NOT NULL DEFAULT 0,
                    rematch_claim TEXT,
                    rematch_claimed_at REAL NOT NULL DEFAULT 0,
                    round_started_at REAL NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL DEFAULT 0,
                    updated_at REAL NOT NULL DEFAULT 0
                )
                """
            )
            self._ensure_column(
                conn,
                "ws_sessions",
                "rematch_claimed_at",
                "ALTER TABLE ws_sessions ADD COLUMN rematch_claimed_at REAL NOT NULL DEFAULT 0",
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ws_participants (
                    participant_id TEXT PRIMARY KEY,
                    session_code TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    current_word TEXT,
                    submitted INTEGER NOT NULL DEFAULT 0,
                    ready_to_start INTEGER NOT NULL DEFAULT 0,
                    wants_rematch INTEGER NOT NULL DEFAULT 0,
                    predecessor_id TEXT,
                    joined_at REAL NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ws_submissions (
                    session_code TEXT NOT NULL,
                    participant_id TEXT NOT NULL,
                    round_number INTEGER NOT NULL,
                    word TEXT NOT NULL,
                    submitted_at REAL NOT NULL DEFAULT 0,
                    PRIMARY KEY (session_code, participant_id, round_number)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ws_changes (
                    sequence INTEGER PRIMARY KEY AUTOINCREMENT,
                    kind TEXT NOT NULL,
                    op TEXT NOT NULL,
                    session_code TEXT NOT NULL DEFAULT '',
                    record_key TEXT,
                    created_at REAL NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_ws_participants_session ON ws_participants(session_code, joined_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_ws_submissions_round ON ws_submissions(session_code, round_number)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_ws_changes_session ON ws_changes(session_code, sequence)"
            )

    # ------------------------
    # Reads
    # ------------------------

    def get(self, kind: str, key):
        where = self._key_where(kind, key)
        rows = self._select(kind, where, limit=1)
        return records.from_row(kind, rows[0]) if rows else None

    def query(
        self,
        kind: str,
        where: dict | None = None,
        order_by=None,
        limit: int | None = None,
    ) -> list:
        return [
            records.from_row(kind, row)
            for row in self._select(kind, where or {}, order_by=order_by, limit=limit)
        ]

    def count(self, kind: str, where: dict | None = None) -> int:
        clause, params = self._where_clause(kind, where or {})
        with self._read() as conn:
            return int(
                conn.execute(
                    f"SELECT COUNT(*) FROM {TABLES[kind]}{clause}", params
                ).fetchone()[0]
            )

    # ------------------------
    # Writes
    # ------------------------

    def put(self, record) -> None:
        row = records.to_row(record)
        columns = list(row)
        with self._write() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO {TABLES[record.KIND]} ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                [row[name] for name in columns],
            )
            self._log_change(
                conn,
                record.KIND,
                OP_UPSERT,
                records.record_session_code(record),
                records.record_key(record),
            )

    def insert(self, record, guards=(), side_effects=()) -> bool:
        """Insert a new record; False when the key exists or a guard fails."""
        row = records.to_row(record)
        columns = list(row)
        try:
            with self._write() as conn:
                if not self._guards_hold(conn, guards):
                    conn.execute("ROLLBACK")
                    return False
                conn.execute(
                    f"INSERT INTO {TABLES[record.KIND]} ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    [row[name] for name in columns],
                )
                self._log_change(
                    conn,
                    record.KIND,
                    OP_INSERT,
                    records.record_session_code(record),
                    records.record_key(record),
                )
                self._apply_side_effects(conn, side_effects)
        except sqlite3.IntegrityError:
            return False
        return True

    def update(
        self,
        kind: str,
        key,
        expected: dict | None = None,
        changes: dict | None = None,
        guards=(),
        side_effects=(),
    ) -> bool:
        """Conditionally update one record.

        Applies ``changes`` only if the current record matches ``expected`` and
        every guard holds; side effects run in the same transaction.
        """
        changes = self._stamp_updated_at(kind, dict(changes or {}))
        if not changes:
            raise ValueError("update requires at least one change.")
        where = dict(expected or {})
        where.update(self._key_where(kind, key))
        set_clause, set_params = self._set_clause(kind, changes)
        clause, params = self._where_clause(kind, where)
        with self._write() as conn:
            if not self._guards_hold(conn, guards):
                conn.execute("ROLLBACK")
                return False
            cursor = conn.execute(
                f"UPDATE {TABLES[kind]} SET {set_clause}{clause}",
                set_params + params,
            )
            if cursor.rowcount != 1:
                conn.execute("ROLLBACK")
                return False
            self._log_change(
                conn,
                kind,
                OP_UPDATE,
                self._session_code_for(kind, key, conn),
                records.normalize_key(kind, key),
            )
            self._apply_side_effects(conn, side_effects)
        return True

    def update_where(self, kind: str, where: dict, changes: dict) -> int:
        with self._write() as conn:
            return self._bulk_update(conn, BulkUpdate(kind, dict(where), dict(changes)))

    def delete(self, kind: str, key, side_effects=()) -> bool:
        normalized = records.normalize_key(kind, key)
        clause, params = self._where_clause(kind, self._key_where(kind, normalized))
        with self._write() as conn:
            session_code = self._session_code_for(kind, normalized, conn)
            cursor = conn.execute(f"DELETE FROM {TABLES[kind]}{clause}", params)
            if cursor.rowcount == 0:
                conn.execute("ROLLBACK")
                return False
            self._log_change(conn, kind, OP_DELETE, session_code, normalized)
            self._apply_side_effects(conn, side_effects)
        return True

    def delete_where(self, kind: str, where: dict) -> int:
        with self._write() as conn:
            return self._bulk_delete(conn, BulkDelete(kind, dict(where)))

    # ------------------------
    # Change feed
    # ------------------------

    def latest_sequence(self) -> int:
        with self._read() as conn:
            row = conn.execute("SELECT MAX(sequence) FROM ws_changes").fetchone()
        return int(row[0] or 0)

    def changes_since(
        self,
        sequence: int,
        kind: str | None = None,
        session_code: str | None = None,
        limit: int = 200,
    ) -> list[ChangeEvent]:
        clauses = ["sequence > ?"]
        params: list = [int(sequence)]
        if kind:
            records.record_type(kind)
            clauses.append("kind = ?")
            params.append(kind)
        if session_code:
            clauses.append("session_code = ?")
            params.append(session_code)
        params.append(max(1, int(limit)))
        with self._read() as conn:
            rows = conn.execute(
                f"""
                SELECT sequence, kind, op, session_code, record_key, created_at
                FROM ws_changes
                WHERE {' AND '.join(clauses)}
                ORDER BY sequence ASC
                LIMIT ?
                """,
                params,
            ).fetchall()
        return [
            ChangeEvent(
                sequence=int(row["sequence"]),
                kind=row["kind"],
                op=row["op"],
                session_code=row["session_code"],
                key=tuple(json.loads(row["record_key"])) if row["record_key"] else None,
                created_at=float(row["created_at"]),
            )
            for row in rows
        ]

    def subscribe(
        self,
        kind: str | None = None,
        session_code: str | None = None,
        from_sequence: int | None = None,
    ) -> ChangeSubscription:
        return ChangeSubscription(
            self, kind=kind, session_code=session_code, from_sequence=from_sequence
        )

    # ------------------------
    # Internal helpers
    # ------------------------

    @staticmethod
    def _ensure_column(
        conn: sqlite3.Connection, table_name: str, column_name: str, ddl_sql: str
    ) -> None:
        columns = {
            row["name"]
            for row in conn.execute(f"PRAGMA table_info({table_name})").fetchall()
        }
        if column_name in columns:
            return
        conn.execute(ddl_sql)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _read(self):
        try:
            conn = self._connect()
        except sqlite3.OperationalError as exc:
            raise StoreUnavailable(f"Could not open the session store: {exc}") from exc
        try:
            yield conn
        except sqlite3.OperationalError as exc:
            raise StoreUnavailable(f"Session store read failed: {exc}") from exc
        finally:
            conn.close()

    @contextmanager
    def _write(self):
        """Run a block inside ``BEGIN IMMEDIATE`` so checks and writes are atomic.

        A block may issue ROLLBACK itself to abandon the write quietly.
        """
        try:
            conn = self._connect()
        except sqlite3.OperationalError as exc:
            raise StoreUnavailable(f"Could not open the session store: {exc}") from exc
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            if conn.in_transaction:
                conn.execute("COMMIT")
        except sqlite3.OperationalError as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            logger.warning("Session store write failed: %s", exc)
            raise StoreUnavailable(f"Session store write failed: {exc}") from exc
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _select(
        self, kind: str, where: dict, order_by=None, limit: int | None = None
    ) -> list[sqlite3.Row]:
        clause, params = self._where_clause(kind, where)
        order = self._order_clause(kind, order_by)
        sql = f"SELECT * FROM {TABLES[kind]}{clause}{order}"
        if limit is not None:
            sql += " LIMIT ?"
            params = params + [int(limit)]
        with self._read() as conn:
            return conn.execute(sql, params).fetchall()

    def _guards_hold(self, conn: sqlite3.Connection, guards) -> bool:
        for guard in guards or ():
            if isinstance(guard, Expect):
                where = dict(guard.expected)
                where.update(self._key_where(guard.kind, guard.key))
                clause, params = self._where_clause(guard.kind, where)
                row = conn.execute(
                    f"SELECT 1 FROM {TABLES[guard.kind]}{clause} LIMIT 1", params
                ).fetchone()
                if row is None:
                    return False
            elif isinstance(guard, CountWithin):
                clause, params = self._where_clause(guard.kind, guard.where)
                total = conn.execute(
                    f"SELECT COUNT(*) FROM {TABLES[guard.kind]}{clause}", params
                ).fetchone()[0]
                if guard.minimum is not None and total < guard.minimum:
                    return False
                if guard.maximum is not None and total > guard.maximum:
                    return False
            else:
                raise TypeError(f"Unsupported guard: {guard!r}")
        return True

    def _apply_side_effects(self, conn: sqlite3.Connection, side_effects) -> None:
        for effect in side_effects or ():
            if isinstance(effect, BulkUpdate):
                self._bulk_update(conn, effect)
            elif isinstance(effect, BulkDelete):
                self._bulk_delete(conn, effect)
            else:
                raise TypeError(f"Unsupported side effect: {effect!r}")

    def _bulk_update(self, conn: sqlite3.Connection, effect: BulkUpdate) -> int:
        changes = self._stamp_updated_at(effect.kind, dict(effect.changes))
        set_clause, set_params = self._set_clause(effect.kind, changes)
        clause, params = self._where_clause(effect.kind, effect.where)
        cursor = conn.execute(
            f"UPDATE {TABLES[effect.kind]} SET {set_clause}{clause}",
            set_params + params,
        )
        if cursor.rowcount:
            session_code = self._where_session_code(effect.kind, effect.where)
            self._log_change(conn, effect.kind, OP_UPDATE, session_code, None)
        return cursor.rowcount

    def _bulk_delete(self, conn: sqlite3.Connection, effect: BulkDelete) -> int:
        clause, params = self._where_clause(effect.kind, effect.where)
        cursor = conn.execute(f"DELETE FROM {TABLES[effect.kind]}{clause}", params)
        if cursor.rowcount:
            session_code = self._where_session_code(effect.kind, effect.where)
            self._log_change(conn, effect.kind, OP_DELETE, session_code, None)
        return cursor.rowcount

    def _log_change(
        self, conn: sqlite3.Connection, kind: str, op: str, session_code: str, key
    ) -> None:
        conn.execute(
            """
            INSERT INTO ws_changes (kind, op, session_code, record_key, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                kind,
                op,
                session_code or "",
                json.dumps(list(key)) if key is not None else None,
                time.time(),
            ),
        )

    def _session_code_for(self, kind: str, key, conn: sqlite3.Connection) -> str:
        cls = records.record_type(kind)
        normalized = records.normalize_key(kind, key)
        if cls.SESSION_FIELD in cls.KEY_FIELDS:
            return normalized[cls.KEY_FIELDS.index(cls.SESSION_FIELD)]
        clause, params = self._where_clause(kind, self._key_where(kind, normalized))
        row = conn.execute(
            f"SELECT {cls.SESSION_FIELD} FROM {TABLES[kind]}{clause}", params
        ).fetchone()
        return row[0] if row else ""

    @staticmethod
    def _where_session_code(kind: str, where: dict) -> str:
        value = where.get(records.record_type(kind).SESSION_FIELD)
        return value if isinstance(value, str) else ""

    @staticmethod
    def _key_where(kind: str, key) -> dict:
        key_fields = records.record_type(kind).KEY_FIELDS
        return dict(zip(key_fields, records.normalize_key(kind, key)))

    @staticmethod
    def _stamp_updated_at(kind: str, changes: dict) -> dict:
        if "updated_at" in records.field_names(kind) and "updated_at" not in changes:
            changes["updated_at"] = time.time()
        return changes

    @staticmethod
    def _check_columns(kind: str, names) -> None:
        known = set(records.field_names(kind))
        unknown = [name for name in names if name not in known]
        if unknown:
            raise ValueError(f"Unknown {kind} field(s): {', '.join(sorted(unknown))}")

    def _set_clause(self, kind: str, changes: dict) -> tuple[str, list]:
        self._check_columns(kind, changes)
        names = list(changes)
        return (
            ", ".join(f"{name} = ?" for name in names),
            [records.encode_value(changes[name]) for name in names],
        )

    def _where_clause(self, kind: str, where: dict) -> tuple[str, list]:
        """Equality filter; ``None`` matches NULL and a list/tuple matches any member."""
        if not where:
            return "", []
        self._check_columns(kind, where)
        parts = []
        params: list = []
        for name, value in where.items():
            if value is None:
                parts.append(f"{name} IS NULL")
            elif isinstance(value, (list, tuple, set, frozenset)):
                options = list(value)
                if not options:
                    parts.append("0")
                    continue
                parts.append(f"{name} IN ({', '.join('?' for _ in options)})")
                params.extend(records.encode_value(option) for option in options)
            else:
                parts.append(f"{name} = ?")
                params.append(records.encode_value(value))
        return " WHERE " + " AND ".join(parts), params

    def _order_clause(self, kind: str, order_by) -> str:
        if not order_by:
            return ""
        if isinstance(order_by, str):
            order_by = (order_by,)
        terms = []
        for term in order_by:
            descending = term.startswith("-")
            name = term.lstrip("-")
            self._check_columns(kind, [name])
            terms.append(f"{name} {'DESC' if descending else 'ASC'}")
        return " ORDER BY " + ", ".join(terms)
