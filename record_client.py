"""Record client wrapper for the remote store API or a local SQLite store."""

from __future__ import annotations

import logging
import os
from urllib.parse import urljoin

import requests

import records
from record_store import (
    ChangeEvent,
    ChangeSubscription,
    RecordStore,
)
from sync_errors import StoreUnavailable, ValidationError

logger = logging.getLogger(__name__)


class RecordClient:
    """Same interface as :class:`RecordStore`, local or over HTTP."""

    def __init__(
        self,
        base_url: str | None = None,
        db_path: str = "word_sync.db",
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = float(timeout)
        self._local = None if self.base_url else RecordStore(db_path, timeout=timeout)

    @property
    def is_remote(self) -> bool:
        return self.base_url is not None

    @property
    def db_path(self) -> str | None:
        return self._local.db_path if self._local else None

    def get(self, kind: str, key):
        if self._local:
            return self._local.get(kind, key)

        payload = self._post_json(
            f"/api/records/{kind}/get",
            {"key": list(records.normalize_key(kind, key))},
            allow_missing=True,
        )
        if not payload:
            return None
        return records.from_dict(kind, payload["record"])

    def query(
        self,
        kind: str,
        where: dict | None = None,
        order_by=None,
        limit: int | None = None,
    ) -> list:
        if self._local:
            return self._local.query(kind, where, order_by=order_by, limit=limit)

        if isinstance(order_by, str):
            order_by = [order_by]
        payload = self._post_json(
            f"/api/records/{kind}/query",
            {
                "where": _encode_where(where),
                "order_by": list(order_by) if order_by else None,
                "limit": limit,
            },
        )
        return [records.from_dict(kind, item) for item in payload.get("records", [])]

    def count(self, kind: str, where: dict | None = None) -> int:
        if self._local:
            return self._local.count(kind, where)

        payload = self._post_json(
            f"/api/records/{kind}/count", {"where": _encode_where(where)}
        )
        return int(payload.get("count", 0))

    def put(self, record) -> None:
        if self._local:
            self._local.put(record)
            return

        self._put_json(
            f"/api/records/{record.KIND}", {"record": records.to_dict(record)}
        )

    def insert(self, record, guards=(), side_effects=()) -> bool:
        if self._local:
            return self._local.insert(record, guards=guards, side_effects=side_effects)

        payload = self._post_json(
            f"/api/records/{record.KIND}",
            {
                "record": records.to_dict(record),
                "guards": [guard.to_payload() for guard in guards],
                "side_effects": [effect.to_payload() for effect in side_effects],
            },
        )
        return bool(payload.get("inserted"))

    def update(
        self,
        kind: str,
        key,
        expected: dict | None = None,
        changes: dict | None = None,
        guards=(),
        side_effects=(),
    ) -> bool:
        if self._local:
            return self._local.update(
                kind,
                key,
                expected,
                changes,
                guards=guards,
                side_effects=side_effects,
            )

        payload = self._post_json(
            f"/api/records/{kind}/update",
            {
                "key": list(records.normalize_key(kind, key)),
                "expected": _encode_where(expected),
                "changes": dict(changes or {}),
                "guards": [guard.to_payload() for guard in guards],
                "side_effects": [effect.to_payload() for effect in side_effects],
            },
        )
        return bool(payload.get("updated"))

    def update_where(self, kind: str, where: dict, changes: dict) -> int:
        if self._local:
            return self._local.update_where(kind, where, changes)

        payload = self._post_json(
            f"/api/records/{kind}/update-where",
            {"where": _encode_where(where), "changes": dict(changes)},
        )
        return int(payload.get("updated", 0))

    def delete(self, kind: str, key, side_effects=()) -> bool:
        if self._local:
            return self._local.delete(kind, key, side_effects=side_effects)

        payload = self._post_json(
            f"/api/records/{kind}/delete",
            {
                "key": list(records.normalize_key(kind, key)),
                "side_effects": [effect.to_payload() for effect in side_effects],
            },
        )
        return bool(payload.get("deleted"))

    def delete_where(self, kind: str, where: dict) -> int:
        if self._local:
            return self._local.delete_where(kind, where)

        payload = self._post_json(
            f"/api/records/{kind}/delete-where", {"where": _encode_where(where)}
        )
        return int(payload.get("deleted", 0))

    def latest_sequence(self) -> int:
        if self._local:
            return self._local.latest_sequence()

        payload = self._get_json("/api/changes/latest")
        return int(payload.get("sequence", 0))

    def changes_since(
        self,
        sequence: int,
        kind: str | None = None,
        session_code: str | None = None,
        limit: int = 200,
    ) -> list[ChangeEvent]:
        if self._local:
            return self._local.changes_since(
                sequence, kind=kind, session_code=session_code, limit=limit
            )

        params = {"since": int(sequence), "limit": int(limit)}
        if kind:
            params["kind"] = kind
        if session_code:
            params["session_code"] = session_code
        payload = self._get_json("/api/changes", params=params)
        return [ChangeEvent.from_dict(item) for item in payload.get("changes", [])]

    def subscribe(
        self,
        kind: str | None = None,
        session_code: str | None = None,
        from_sequence: int | None = None,
    ) -> ChangeSubscription:
        return ChangeSubscription(
            self, kind=kind, session_code=session_code, from_sequence=from_sequence
        )

    def _get_json(self, path: str, params: dict | None = None) -> dict:
        url = self._url(path)
        logger.debug("Record client request: GET %s params=%s", url, params)
        try:
            response = requests.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise StoreUnavailable(f"Record API unreachable: {exc}") from exc
        return self._decode(response)

    def _post_json(self, path: str, payload: dict, allow_missing: bool = False) -> dict:
        url = self._url(path)
        logger.debug("Record client request: POST %s", url)
        try:
            response = requests.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise StoreUnavailable(f"Record API unreachable: {exc}") from exc
        if allow_missing and response.status_code == 404:
            return {}
        return self._decode(response)

    def _put_json(self, path: str, payload: dict) -> dict:
        url = self._url(path)
        logger.debug("Record client request: PUT %s", url)
        try:
            response = requests.put(url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise StoreUnavailable(f"Record API unreachable: {exc}") from exc
        return self._decode(response)

    @staticmethod
    def _decode(response) -> dict:
        if response.status_code == 400:
            try:
                message = response.json().get("error") or "Bad record request."
            except ValueError:
                message = "Bad record request."
            raise ValidationError(message, 400)
        try:
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as exc:
            raise StoreUnavailable(f"Record API error: {exc}") from exc

    def _url(self, path: str) -> str:
        return urljoin(self.base_url + "/", path.lstrip("/"))


def _encode_where(where: dict | None) -> dict:
    encoded = {}
    for name, value in (where or {}).items():
        if isinstance(value, (tuple, set, frozenset)):
            value = list(value)
        encoded[name] = value
    return encoded


def get_record_client() -> RecordClient:
    standalone = os.getenv("APP_STANDALONE", "false").strip().lower() in {
        "1",
        "true",
        "yes",
        "y",
    }
    api_url = (os.getenv("RECORD_API_URL") or "").strip() or None
    db_path = os.getenv("WORD_SYNC_DB", "word_sync.db")
    try:
        timeout = float(os.getenv("STORE_TIMEOUT_SECONDS", "10"))
    except ValueError:
        timeout = 10.0

    if standalone:
        api_url = None

    client = RecordClient(api_url, db_path, timeout=timeout)
    if client.is_remote:
        logger.info("Record client: using API at %s", client.base_url)
    else:
        logger.info("Record client: using local SQLite database (%s)", db_path)
    return client
