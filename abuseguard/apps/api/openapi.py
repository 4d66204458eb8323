from __future__ import annotations

from typing import Any

from abuseguard.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Bad request", code="INVALID_REQUEST", message="Validation error"),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Operator or admin role required for overrides"),
    404: _response("Not found", code="NOT_FOUND", message="Project not found"),
    423: _response(
        "Project suspended",
        code="PROJECT_SUSPENDED",
        message="Project is suspended",
        details={"project_id": "proj_123", "status": "suspended"},
    ),
    429: _response(
        "Rate limited",
        code="RATE_LIMITED",
        message="Too many requests; retry after the current window resets",
        details={"reset_at": "2025-01-01T01:00:00+00:00", "limit": 10, "retry_after_s": 1800},
    ),
    500: _response("Internal error", code="INTERNAL_ERROR", message="Override failed and was rolled back"),
}
