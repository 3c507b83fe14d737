from flask import current_app, jsonify, request

from api_errors import error_code_for, error_details_for, error_response
from sync_errors import StoreUnavailable


def register_game_api_routes(bp, context):
    word_sync_service = context["word_sync_service"]
    services = context.get("services")

    def _api_error(status: int, code: str, message: str, details=None):
        return error_response(
            status=status, code=code, message=message, details=details
        )

    def _build_responder(
        *,
        log_label: str,
        unavailable_code: str,
        unavailable_message: str,
    ):
        def _respond(fn, status: int = 200):
            try:
                payload = fn()
                return jsonify(payload), status
            except Exception as exc:
                status_code = int(getattr(exc, "status_code", 500))
                if isinstance(exc, StoreUnavailable) and services is not None:
                    services.record_store_error(exc)
                if status_code >= 500:
                    current_app.logger.error("%s API failure: %s", log_label, exc)
                    return _api_error(503, unavailable_code, unavailable_message)
                return _api_error(
                    status_code,
                    error_code_for(exc, status_code),
                    str(exc),
                    error_details_for(exc),
                )

        return _respond

    _word_sync_response = _build_responder(
        log_label="Word Sync",
        unavailable_code="word_sync_unavailable",
        unavailable_message="Word Sync is temporarily unavailable.",
    )

    def _json_body() -> dict:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    def _as_bool(value) -> bool:
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "y", "on"}
        return bool(value)

    def _bootstrap():
        return _word_sync_response(word_sync_service.bootstrap)

    def _recent_matches():
        limit = request.args.get("limit", default=3, type=int)
        return _word_sync_response(
            lambda: {"matches": word_sync_service.recent_matches(limit=limit)}
        )

    def _create_session():
        data = _json_body()
        return _word_sync_response(
            lambda: word_sync_service.create_session(
                capacity=data.get("capacity", 2),
                timer_enabled=_as_bool(data.get("timer_enabled")),
                round_limit=data.get("round_limit"),
                display_name=(data.get("display_name") or "").strip(),
            ),
            status=201,
        )

    def _join_session(session_code: str):
        data = _json_body()
        return _word_sync_response(
            lambda: word_sync_service.join_session(
                session_code=session_code,
                display_name=(data.get("display_name") or "").strip(),
            )
        )

    def _session_state(session_code: str):
        participant_id = (request.args.get("participant_id") or "").strip()
        return _word_sync_response(
            lambda: word_sync_service.get_state(session_code, participant_id)
        )

    def _mark_ready(participant_id: str):
        return _word_sync_response(lambda: word_sync_service.mark_ready(participant_id))

    def _submit_word(participant_id: str):
        data = _json_body()
        return _word_sync_response(
            lambda: word_sync_service.submit_word(participant_id, data.get("word"))
        )

    def _request_rematch(participant_id: str):
        return _word_sync_response(
            lambda: word_sync_service.request_rematch(participant_id)
        )

    def _leave(participant_id: str):
        return _word_sync_response(lambda: word_sync_service.leave(participant_id))

    bp.add_url_rule(
        "/api/word-sync/bootstrap",
        endpoint="api_word_sync_bootstrap",
        view_func=_bootstrap,
        methods=["GET"],
    )
    bp.add_url_rule(
        "/api/word-sync/recent-matches",
        endpoint="api_word_sync_recent_matches",
        view_func=_recent_matches,
        methods=["GET"],
    )
    bp.add_url_rule(
        "/api/word-sync/sessions",
        endpoint="api_word_sync_create_session",
        view_func=_create_session,
        methods=["POST"],
    )
    bp.add_url_rule(
        "/api/word-sync/sessions/<string:session_code>/join",
        endpoint="api_word_sync_join_session",
        view_func=_join_session,
        methods=["POST"],
    )
    bp.add_url_rule(
        "/api/word-sync/sessions/<string:session_code>",
        endpoint="api_word_sync_session_state",
        view_func=_session_state,
        methods=["GET"],
    )
    bp.add_url_rule(
        "/api/word-sync/participants/<string:participant_id>/ready",
        endpoint="api_word_sync_mark_ready",
        view_func=_mark_ready,
        methods=["POST"],
    )
    bp.add_url_rule(
        "/api/word-sync/participants/<string:participant_id>/submit",
        endpoint="api_word_sync_submit_word",
        view_func=_submit_word,
        methods=["POST"],
    )
    bp.add_url_rule(
        "/api/word-sync/participants/<string:participant_id>/rematch",
        endpoint="api_word_sync_request_rematch",
        view_func=_request_rematch,
        methods=["POST"],
    )
    bp.add_url_rule(
        "/api/word-sync/participants/<string:participant_id>/leave",
        endpoint="api_word_sync_leave",
        view_func=_leave,
        methods=["POST"],
    )
