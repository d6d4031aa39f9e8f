from __future__ import annotations

import logging
import traceback
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from eventlens.apps.api.response import error_response
from eventlens.core.errors import EventLensError, RateLimited


logger = logging.getLogger(__name__)

_REQUEST_LOCATIONS = {"body", "query", "path", "header"}


def _include_stack(request: Request) -> bool:
    # Stack traces are only exposed in development builds.
    resources = getattr(request.app.state, "resources", None)
    if resources is None:
        return False
    return resources.settings.environment.lower() == "development"


def _stack_for(request: Request, exc: BaseException) -> str | None:
    if not _include_stack(request):
        return None
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def field_errors(raw_errors: list[dict[str, Any]]) -> list[dict[str, str]]:
    # Flatten pydantic error locations into dotted field paths.
    errors: list[dict[str, str]] = []
    for item in raw_errors:
        loc = [str(part) for part in item.get("loc", ())]
        if loc and loc[0] in _REQUEST_LOCATIONS:
            loc = loc[1:]
        errors.append({"field": ".".join(loc), "message": str(item.get("msg", "Invalid value"))})
    return errors


async def eventlens_error_handler(request: Request, exc: EventLensError) -> JSONResponse:
    # Render domain errors with their status code in the shared envelope.
    if exc.status_code >= 500:
        logger.error(
            "request_failed path=%s status=%s message=%s",
            request.url.path,
            exc.status_code,
            exc.message,
            exc_info=exc.__cause__ or exc,
        )
    errors = exc.details.get("errors") if exc.details else None
    headers = exc.headers if isinstance(exc, RateLimited) else None
    payload = error_response(
        message=exc.message,
        errors=errors,
        stack=_stack_for(request, exc) if exc.status_code >= 500 else None,
    )
    return JSONResponse(content=payload, status_code=exc.status_code, headers=headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Surface validation errors as 400 with field-level descriptors.
    errors = field_errors(list(exc.errors()))
    logger.warning("request_validation_failed path=%s fields=%s", request.url.path, [e["field"] for e in errors])
    payload = error_response(message="Validation error", errors=errors)
    return JSONResponse(content=payload, status_code=400)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Unknown routes name the path; other framework errors keep their detail.
    if exc.status_code == 404:
        message = f"Route {request.url.path} not found"
    elif isinstance(exc.detail, str):
        message = exc.detail
    else:
        message = "Request failed"
    return JSONResponse(
        content=error_response(message=message),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces outside development; return a stable 500 envelope.
    logger.exception("unhandled_exception path=%s", request.url.path)
    payload = error_response(message="Internal server error", stack=_stack_for(request, exc))
    return JSONResponse(content=payload, status_code=500)
