from __future__ import annotations

from typing import Any

from flask import jsonify

from sync_errors import DuplicateWordError


def build_error_payload(
    *,
    code: str,
    message: str,
    details: Any = None,
) -> dict[str, Any]:
    payload = {
        "code": str(code).strip() or "unknown_error",
        "message": str(message).strip() or "Unknown error.",
        "details": details if details is not None else {},
    }
    # Backward-compatible alias for older clients that still read "error".
    payload["error"] = payload["message"]
    return payload


def error_response(
    *,
    status: int,
    code: str,
    message: str,
    details: Any = None,
):
    return jsonify(build_error_payload(code=code, message=message, details=details)), int(
        status
    )


_ERROR_CODES_BY_STATUS = {
    400: "invalid_request",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    503: "store_unavailable",
}


def error_code_for(exc: Exception, status: int) -> str:
    if isinstance(exc, DuplicateWordError):
        return "duplicate_word"
    return _ERROR_CODES_BY_STATUS.get(int(status), "request_failed")


def error_details_for(exc: Exception) -> dict[str, Any]:
    if isinstance(exc, DuplicateWordError):
        return {"word": exc.word, "round_number": exc.round_number}
    return {}
