from __future__ import annotations

from typing import Any

from eventlens.apps.api.response import ErrorEnvelope


def _error_example(*, message: str, errors: list[dict[str, str]] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {"success": False, "message": message}
    if errors:
        payload["errors"] = errors
    return payload


def _error_response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error_response(
        "Validation error",
        _error_example(
            message="Validation error",
            errors=[{"field": "event", "message": "Field required"}],
        ),
    ),
    429: _error_response(
        "Rate limited",
        _error_example(message="Too many requests from this IP, please try again later."),
    ),
    500: _error_response("Internal error", _error_example(message="Internal server error")),
}

AUTH_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _error_response("Unauthenticated", _error_example(message="Invalid or expired API key.")),
}

NOT_FOUND_RESPONSES: dict[int | str, dict[str, Any]] = {
    404: _error_response("Not found", _error_example(message="User not found or no events tracked")),
}
