from __future__ import annotations

from datetime import timedelta
import re

import pytest
from sqlalchemy import select

from eventlens.core.clock import utc_now
from eventlens.core.config import Settings
from eventlens.domain.models import Credential, Event
from eventlens.persistence.db import create_all
from eventlens.tests.utils.app import app_client, build_test_settings, drop_events_table, running_resources
from eventlens.tests.utils.auth import create_test_account, create_test_credential


CHROME_ANDROID = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Mobile Safari/537.36"
)


async def _events(resources) -> list[Event]:
    async with resources.session_factory() as session:
        result = await session.execute(select(Event).order_by(Event.created_at))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_register_collect_and_summarize_demo_app(client, resources) -> None:
    _account, session_headers = await create_test_account(resources)

    registered = await client.post("/api/auth/register", json={"app_name": "Demo"}, headers=session_headers)
    assert registered.status_code == 201
    api_key = registered.json()["data"]["api_key"]
    assert re.fullmatch(r"[0-9a-f]{64}", api_key)

    collected = await client.post(
        "/api/analytics/collect",
        json={"event": "click", "device": "mobile"},
        headers={"X-API-Key": api_key},
    )
    assert collected.status_code == 201
    body = collected.json()
    assert body["success"] is True
    assert body["data"]["id"]
    assert body["data"]["created_at"]
    await resources.runner.drain()

    summary = await client.get("/api/analytics/event-summary", params={"event": "click"}, headers=session_headers)
    assert summary.status_code == 200
    data = summary.json()["data"]
    assert data["count"] == 1
    assert data["deviceData"] == {"mobile": 1}


@pytest.mark.asyncio
async def test_collect_enriches_from_headers_and_merges_metadata(client, resources) -> None:
    account, _ = await create_test_account(resources)
    credential, key_headers = await create_test_credential(resources, account_id=account.id)

    response = await client.post(
        "/api/analytics/collect",
        json={
            "event": "page_view",
            "url": "https://demo.example.com/pricing",
            "referrer": "https://search.example.com/?q=demo",
            "user_id": "user-42",
            "metadata": {"screenSize": "1920x1080", "plan": "pro"},
        },
        headers={**key_headers, "User-Agent": CHROME_ANDROID, "X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
    )
    assert response.status_code == 201

    [event] = await _events(resources)
    assert event.credential_id == credential.id
    assert event.event_name == "page_view"
    assert event.browser == "Chrome"
    assert event.os == "Linux"
    assert event.device == "mobile"
    assert event.ip_address == "203.0.113.9"
    assert event.user_agent == CHROME_ANDROID
    assert event.screen_size == "1920x1080"
    assert event.user_id == "user-42"
    assert event.metadata_json == {"screenSize": "1920x1080", "plan": "pro", "userAgent": CHROME_ANDROID}


@pytest.mark.asyncio
async def test_client_supplied_device_and_address_override_enrichment(client, resources) -> None:
    account, _ = await create_test_account(resources)
    _credential, key_headers = await create_test_credential(resources, account_id=account.id)
    occurred = (utc_now() - timedelta(hours=2)).replace(microsecond=0)

    response = await client.post(
        "/api/analytics/collect",
        json={
            "event": "signup",
            "device": "tablet",
            "ipAddress": "198.51.100.20",
            "timestamp": occurred.isoformat(),
        },
        headers={**key_headers, "User-Agent": CHROME_ANDROID, "X-Real-IP": "192.0.2.1"},
    )
    assert response.status_code == 201

    [event] = await _events(resources)
    assert event.device == "tablet"
    assert event.ip_address == "198.51.100.20"
    assert event.occurred_at.replace(tzinfo=None) == occurred.replace(tzinfo=None)
    # Metadata always records the raw signature, even when none was sent.
    assert event.metadata_json == {"userAgent": CHROME_ANDROID}


@pytest.mark.asyncio
async def test_collect_without_user_agent_records_unknown(client, resources) -> None:
    account, _ = await create_test_account(resources)
    _credential, key_headers = await create_test_credential(resources, account_id=account.id)

    response = await client.post(
        "/api/analytics/collect",
        json={"event": "ping"},
        headers={**key_headers, "User-Agent": ""},
    )
    assert response.status_code == 201
    [event] = await _events(resources)
    assert event.user_agent == "unknown"
    assert event.browser == "Unknown"
    assert event.device == "desktop"


@pytest.mark.asyncio
async def test_invalid_credentials_share_one_message(client, resources) -> None:
    account, _ = await create_test_account(resources)
    _revoked, revoked_headers = await create_test_credential(resources, account_id=account.id, is_active=False)
    _expired, expired_headers = await create_test_credential(
        resources, account_id=account.id, expires_at=utc_now() - timedelta(minutes=1)
    )

    attempts = [
        {},
        {"X-API-Key": "not-a-key"},
        {"X-API-Key": "f" * 64},
        revoked_headers,
        expired_headers,
    ]
    messages = set()
    for headers in attempts:
        response = await client.post("/api/analytics/collect", json={"event": "click"}, headers=headers)
        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        messages.add(body["message"])
    assert messages == {"Invalid or expired API key."}
    assert await _events(resources) == []


@pytest.mark.asyncio
async def test_future_expiry_is_accepted_and_usage_is_stamped(client, resources) -> None:
    account, _ = await create_test_account(resources)
    credential, key_headers = await create_test_credential(
        resources, account_id=account.id, expires_at=utc_now() + timedelta(days=1)
    )

    response = await client.post("/api/analytics/collect", json={"event": "click"}, headers=key_headers)
    assert response.status_code == 201
    await resources.runner.drain()

    async with resources.session_factory() as session:
        refreshed = await session.get(Credential, credential.id)
    assert refreshed is not None
    assert refreshed.last_used_at is not None


@pytest.mark.asyncio
async def test_collect_validation_errors_are_field_level(client, resources) -> None:
    account, _ = await create_test_account(resources)
    _credential, key_headers = await create_test_credential(resources, account_id=account.id)

    missing = await client.post("/api/analytics/collect", json={"url": "https://x.example"}, headers=key_headers)
    assert missing.status_code == 400
    body = missing.json()
    assert body["success"] is False
    assert body["message"] == "Validation error"
    assert [error["field"] for error in body["errors"]] == ["event"]

    bad = await client.post(
        "/api/analytics/collect",
        json={"event": "", "device": "watch", "ipAddress": "999.1.1.1", "url": "not a url"},
        headers=key_headers,
    )
    assert bad.status_code == 400
    fields = {error["field"] for error in bad.json()["errors"]}
    assert fields == {"event", "device", "ipAddress", "url"}
    assert await _events(resources) == []


@pytest.mark.asyncio
async def test_unknown_fields_are_ignored(client, resources) -> None:
    account, _ = await create_test_account(resources)
    _credential, key_headers = await create_test_credential(resources, account_id=account.id)

    response = await client.post(
        "/api/analytics/collect",
        json={"event": "click", "api_key_id": "someone-else"},
        headers=key_headers,
    )
    assert response.status_code == 201


@pytest.mark.asyncio
async def test_failed_write_is_a_storage_error_without_stack_by_default(tmp_path, clock, monkeypatch) -> None:
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    settings = Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'eventlens.db'}",
        cache_backend="memory",
        rate_limit_backend="memory",
    )
    assert settings.environment == "production"
    async with running_resources(settings, time_provider=clock) as resources:
        account, _ = await create_test_account(resources)
        _credential, key_headers = await create_test_credential(resources, account_id=account.id)
        await drop_events_table(resources)
        async with app_client(resources) as client:
            failed = await client.post("/api/analytics/collect", json={"event": "click"}, headers=key_headers)
            assert failed.status_code == 500
            assert failed.json() == {"success": False, "message": "Error collecting event"}
            await resources.runner.drain()

            # The failed insert was rolled back, so the next write lands alone.
            await create_all(resources.engine)
            recovered = await client.post("/api/analytics/collect", json={"event": "click"}, headers=key_headers)
            assert recovered.status_code == 201
        events = await _events(resources)
        assert [event.id for event in events] == [recovered.json()["data"]["id"]]


@pytest.mark.asyncio
async def test_development_builds_attach_a_stack_to_storage_errors(tmp_path, clock) -> None:
    settings = build_test_settings(tmp_path, environment="development")
    async with running_resources(settings, time_provider=clock) as resources:
        account, _ = await create_test_account(resources)
        _credential, key_headers = await create_test_credential(resources, account_id=account.id)
        await drop_events_table(resources)
        async with app_client(resources) as client:
            failed = await client.post("/api/analytics/collect", json={"event": "click"}, headers=key_headers)
        assert failed.status_code == 500
        body = failed.json()
        assert body["message"] == "Error collecting event"
        assert "StorageError" in body["stack"]
