from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from eventlens.core.errors import Unauthenticated
from eventlens.services.auth.credentials import (
    INVALID_CREDENTIAL_MESSAGE,
    CredentialValidator,
    generate_api_key,
    generate_expiry,
    is_valid_api_key_format,
    key_prefix,
)
from eventlens.services.auth.sessions import (
    TOKEN_PREFIX,
    generate_session_token,
    hash_session_token,
    parse_bearer_token,
)
from eventlens.tests.utils.auth import create_test_account, create_test_credential


NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def test_generated_keys_are_64_lowercase_hex() -> None:
    keys = {generate_api_key() for _ in range(20)}
    assert len(keys) == 20
    for key in keys:
        assert len(key) == 64
        assert key == key.lower()
        assert is_valid_api_key_format(key)
        assert key_prefix(key) == key[:8]


def test_key_format_rejects_wrong_shape() -> None:
    assert not is_valid_api_key_format("A" * 64)
    assert not is_valid_api_key_format("a" * 63)
    assert not is_valid_api_key_format("g" * 64)
    assert not is_valid_api_key_format("")


@pytest.mark.asyncio
async def test_validator_accepts_only_active_unexpired_credentials(resources) -> None:
    validator = CredentialValidator(
        session_factory=resources.session_factory,
        runner=resources.runner,
        clock=lambda: NOW,
    )
    account, _ = await create_test_account(resources)
    cases = [
        ({}, True),
        ({"expires_at": NOW + timedelta(seconds=1)}, True),
        ({"expires_at": NOW}, False),
        ({"expires_at": NOW - timedelta(days=1)}, False),
        ({"is_active": False}, False),
        ({"is_active": False, "expires_at": NOW + timedelta(days=1)}, False),
    ]
    for overrides, usable in cases:
        row, _headers = await create_test_credential(resources, account_id=account.id, **overrides)
        async with resources.session_factory() as session:
            if usable:
                context = await validator.validate(session, row.api_key)
                assert context.credential_id == row.id
                assert context.account_id == account.id
            else:
                with pytest.raises(Unauthenticated) as excinfo:
                    await validator.validate(session, row.api_key)
                assert excinfo.value.message == INVALID_CREDENTIAL_MESSAGE
    await resources.runner.drain()


def test_generate_expiry() -> None:
    assert generate_expiry(365, now=NOW) == NOW + timedelta(days=365)
    assert generate_expiry(None, now=NOW) is None
    assert generate_expiry(0, now=NOW) is None


def test_session_tokens_are_prefixed_and_hashed() -> None:
    token_id, raw_token, token_prefix, token_hash = generate_session_token()
    assert raw_token.startswith(TOKEN_PREFIX)
    assert token_id in raw_token
    assert token_prefix == raw_token[:12]
    assert token_hash == hash_session_token(raw_token)
    assert token_hash != raw_token


def test_parse_bearer_token() -> None:
    assert parse_bearer_token("Bearer els_abc") == "els_abc"
    assert parse_bearer_token("bearer els_abc") == "els_abc"
    assert parse_bearer_token("Basic abc") is None
    assert parse_bearer_token("Bearer") is None
    assert parse_bearer_token(None) is None
