from __future__ import annotations

from eventlens.apps.api.errors import field_errors
from eventlens.apps.api.response import error_response, success_response
from eventlens.core.errors import (
    CacheError,
    NotFound,
    RateLimited,
    ServiceUnavailable,
    StorageError,
    Unauthenticated,
    ValidationError,
)


def test_error_taxonomy_status_codes() -> None:
    assert ValidationError().status_code == 400
    assert Unauthenticated().status_code == 401
    assert NotFound().status_code == 404
    assert RateLimited().status_code == 429
    assert StorageError().status_code == 500
    assert CacheError().status_code == 500
    assert ServiceUnavailable().status_code == 503


def test_rate_limited_carries_retry_headers() -> None:
    exc = RateLimited("slow down", retry_after_ms=1500, headers={"Retry-After": "2"})
    assert exc.message == "slow down"
    assert exc.retry_after_ms == 1500
    assert exc.headers == {"Retry-After": "2"}


def test_field_errors_strip_request_location() -> None:
    errors = field_errors(
        [
            {"loc": ("body", "event"), "msg": "Field required"},
            {"loc": ("query", "userId"), "msg": "String should have at least 1 character"},
            {"loc": ("body", "metadata", "screen"), "msg": "Invalid"},
        ]
    )
    assert errors == [
        {"field": "event", "message": "Field required"},
        {"field": "userId", "message": "String should have at least 1 character"},
        {"field": "metadata.screen", "message": "Invalid"},
    ]


def test_envelopes() -> None:
    assert success_response(data={"a": 1}) == {"success": True, "data": {"a": 1}}
    assert success_response(data={}, message="ok", cached=True) == {
        "success": True,
        "message": "ok",
        "data": {},
        "cached": True,
    }
    assert error_response(message="nope") == {"success": False, "message": "nope"}
