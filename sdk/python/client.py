from __future__ import annotations

from datetime import datetime
import time
from typing import Any, Callable

import httpx


RETRYABLE_STATUSES = {429, 503}


class EventLensApiError(Exception):
    """Non-success response from the eventlens API."""

    def __init__(self, status_code: int, message: str, payload: dict[str, Any] | None = None) -> None:
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.payload = payload or {}


def _retry_after_seconds(headers: httpx.Headers) -> float | None:
    retry_after = headers.get("Retry-After")
    if not retry_after:
        return None
    try:
        return float(retry_after)
    except ValueError:
        return None


class EventLensClient:
    """Thin synchronous client that retries 429/503 responses with backoff."""

    def __init__(
        self,
        *,
        base_url: str = "http://localhost:8000",
        api_key: str | None = None,
        session_token: str | None = None,
        max_retries: int = 2,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        headers: dict[str, str] = {}
        if api_key:
            headers["X-API-Key"] = api_key
        if session_token:
            headers["Authorization"] = f"Bearer {session_token}"
        self._client = httpx.Client(base_url=base_url, headers=headers, timeout=timeout, transport=transport)
        self._max_retries = max_retries
        self._sleep = sleep

    def __enter__(self) -> "EventLensClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        attempt = 0
        while True:
            response = self._client.request(method, path, **kwargs)
            if response.status_code in RETRYABLE_STATUSES and attempt < self._max_retries:
                retry_after = _retry_after_seconds(response.headers)
                if retry_after is None:
                    retry_after = min(2.0, 0.25 * (2 ** attempt))
                self._sleep(retry_after)
                attempt += 1
                continue
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            if response.is_error:
                message = payload.get("message") if isinstance(payload, dict) else None
                raise EventLensApiError(response.status_code, message or response.reason_phrase, payload)
            return payload

    def track(
        self,
        event: str,
        *,
        url: str | None = None,
        referrer: str | None = None,
        device: str | None = None,
        ip_address: str | None = None,
        timestamp: datetime | None = None,
        metadata: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"event": event}
        optional = {
            "url": url,
            "referrer": referrer,
            "device": device,
            "ipAddress": ip_address,
            "timestamp": timestamp.isoformat() if timestamp is not None else None,
            "metadata": metadata,
            "user_id": user_id,
        }
        body.update({key: value for key, value in optional.items() if value is not None})
        return self._request("POST", "/api/analytics/collect", json=body)["data"]

    def event_summary(
        self,
        event: str,
        *,
        start_date: str | None = None,
        end_date: str | None = None,
        app_id: str | None = None,
    ) -> dict[str, Any]:
        params = {"event": event}
        if start_date:
            params["startDate"] = start_date
        if end_date:
            params["endDate"] = end_date
        if app_id:
            params["app_id"] = app_id
        return self._request("GET", "/api/analytics/event-summary", params=params)

    def user_stats(self, user_id: str) -> dict[str, Any]:
        return self._request("GET", "/api/analytics/user-stats", params={"userId": user_id})
