from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel


T = TypeVar("T")


class FieldError(BaseModel):
    # One failed field from request validation.
    field: str
    message: str


class SuccessEnvelope(BaseModel, Generic[T]):
    # Wrap successful responses in a consistent envelope.
    success: bool = True
    message: str | None = None
    data: T
    cached: bool | None = None


class ErrorEnvelope(BaseModel):
    # Wrap error responses in a consistent envelope.
    success: bool = False
    message: str
    errors: list[FieldError] | None = None


def success_response(
    *,
    data: Any,
    message: str | None = None,
    cached: bool = False,
) -> dict[str, Any]:
    # `cached` only appears when the payload was served from the aggregate cache.
    payload: dict[str, Any] = {"success": True}
    if message is not None:
        payload["message"] = message
    payload["data"] = data
    if cached:
        payload["cached"] = True
    return payload


def error_response(
    *,
    message: str,
    errors: list[dict[str, str]] | None = None,
    stack: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"success": False, "message": message}
    if errors:
        payload["errors"] = errors
    if stack is not None:
        payload["stack"] = stack
    return payload
