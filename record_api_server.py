"""Standalone record store API service backed by SQLite."""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from flask import Flask, current_app, jsonify, request

import records
from record_store import RecordStore, guard_from_payload, side_effect_from_payload
from sync_errors import WordSyncError

load_dotenv()

logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


def _normalize_where(where) -> dict:
    if where is None:
        return {}
    if not isinstance(where, dict):
        raise ValueError("where must be an object")
    return {
        name: tuple(value) if isinstance(value, list) else value
        for name, value in where.items()
    }


def create_record_api(store: RecordStore | None = None) -> Flask:
    app = Flask(__name__)
    app.config["RECORD_STORE"] = store

    def get_store() -> RecordStore:
        current = current_app.config.get("RECORD_STORE")
        if current is None:
            current = RecordStore(
                os.getenv("WORD_SYNC_DB", "word_sync.db"),
                timeout=float(os.getenv("STORE_TIMEOUT_SECONDS", "10")),
            )
            current_app.config["RECORD_STORE"] = current
        return current

    def require_kind(kind: str) -> str:
        records.record_type(kind)
        return kind

    def body() -> dict:
        data = request.get_json(silent=True)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError("JSON body must be an object")
        return data

    @app.errorhandler(ValueError)
    def handle_value_error(exc):
        return jsonify({"error": str(exc)}), 400

    @app.errorhandler(TypeError)
    def handle_type_error(exc):
        return jsonify({"error": str(exc)}), 400

    @app.errorhandler(WordSyncError)
    def handle_store_error(exc):
        logger.warning("Record API store error: %s", exc)
        return jsonify({"error": str(exc)}), exc.status_code

    @app.after_request
    def add_cors_headers(response):
        origin = os.getenv("CORS_ORIGIN", "*")
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,OPTIONS"
        return response

    @app.route("/health")
    def health():
        return jsonify(status="ok")

    @app.route("/api/<path:_path>", methods=["OPTIONS"])
    def api_options(_path):
        return ("", 204)

    @app.route("/api/records/<kind>/get", methods=["POST"])
    def api_get(kind: str):
        data = body()
        record = get_store().get(require_kind(kind), data.get("key"))
        if record is None:
            return jsonify({"error": f"{kind} not found"}), 404
        return jsonify(record=records.to_dict(record))

    @app.route("/api/records/<kind>/query", methods=["POST"])
    def api_query(kind: str):
        data = body()
        limit = data.get("limit")
        found = get_store().query(
            require_kind(kind),
            _normalize_where(data.get("where")),
            order_by=data.get("order_by") or None,
            limit=int(limit) if limit is not None else None,
        )
        return jsonify(records=[records.to_dict(record) for record in found])

    @app.route("/api/records/<kind>/count", methods=["POST"])
    def api_count(kind: str):
        data = body()
        total = get_store().count(
            require_kind(kind), _normalize_where(data.get("where"))
        )
        return jsonify(count=total)

    @app.route("/api/records/<kind>", methods=["POST"])
    def api_insert(kind: str):
        data = body()
        record = records.from_dict(require_kind(kind), data.get("record") or {})
        inserted = get_store().insert(
            record,
            guards=[guard_from_payload(item) for item in data.get("guards") or []],
            side_effects=[
                side_effect_from_payload(item) for item in data.get("side_effects") or []
            ],
        )
        if inserted:
            logger.info("Inserted %s %s via API", kind, records.record_key(record))
        return jsonify(inserted=inserted), 201 if inserted else 200

    @app.route("/api/records/<kind>", methods=["PUT"])
    def api_put(kind: str):
        data = body()
        record = records.from_dict(require_kind(kind), data.get("record") or {})
        get_store().put(record)
        return jsonify(record=records.to_dict(record))

    @app.route("/api/records/<kind>/update", methods=["POST"])
    def api_update(kind: str):
        data = body()
        updated = get_store().update(
            require_kind(kind),
            data.get("key"),
            _normalize_where(data.get("expected")),
            data.get("changes") or {},
            guards=[guard_from_payload(item) for item in data.get("guards") or []],
            side_effects=[
                side_effect_from_payload(item) for item in data.get("side_effects") or []
            ],
        )
        return jsonify(updated=updated)

    @app.route("/api/records/<kind>/update-where", methods=["POST"])
    def api_update_where(kind: str):
        data = body()
        total = get_store().update_where(
            require_kind(kind),
            _normalize_where(data.get("where")),
            data.get("changes") or {},
        )
        return jsonify(updated=total)

    @app.route("/api/records/<kind>/delete", methods=["POST"])
    def api_delete(kind: str):
        data = body()
        deleted = get_store().delete(
            require_kind(kind),
            data.get("key"),
            side_effects=[
                side_effect_from_payload(item) for item in data.get("side_effects") or []
            ],
        )
        return jsonify(deleted=deleted)

    @app.route("/api/records/<kind>/delete-where", methods=["POST"])
    def api_delete_where(kind: str):
        data = body()
        total = get_store().delete_where(
            require_kind(kind), _normalize_where(data.get("where"))
        )
        return jsonify(deleted=total)

    @app.route("/api/changes")
    def api_changes():
        since = request.args.get("since", default=0, type=int)
        limit = request.args.get("limit", default=200, type=int)
        kind = request.args.get("kind") or None
        session_code = request.args.get("session_code") or None
        events = get_store().changes_since(
            since, kind=kind, session_code=session_code, limit=limit
        )
        return jsonify(changes=[event.to_dict() for event in events])

    @app.route("/api/changes/latest")
    def api_changes_latest():
        return jsonify(sequence=get_store().latest_sequence())

    return app


app = create_record_api()


if __name__ == "__main__":
    host = os.getenv("API_HOST", "127.0.0.1")
    port = int(os.getenv("API_PORT", "8050"))
    app.run(debug=False, host=host, port=port)
