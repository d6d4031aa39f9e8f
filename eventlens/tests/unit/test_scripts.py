from __future__ import annotations

import argparse

import pytest
from sqlalchemy import select

from eventlens.domain.models import Account, Credential
from eventlens.persistence.db import build_engine, build_sessionmaker
from eventlens.services.auth.credentials import is_valid_api_key_format
from eventlens.services.auth.sessions import TOKEN_PREFIX, resolve_session
from eventlens.tests.utils.app import build_test_settings
from scripts.create_session import _create_session
from scripts.init_db import _init_db
from scripts.regenerate_api_key import _regenerate_key
from scripts.register_app import _register
from scripts.revoke_api_key import _revoke_key


async def _load_credentials(settings) -> list[Credential]:
    engine = build_engine(settings)
    try:
        async with build_sessionmaker(engine)() as session:
            result = await session.execute(select(Credential))
            return list(result.scalars().all())
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_operator_scripts_manage_credential_lifecycle(tmp_path, capsys) -> None:
    settings = build_test_settings(tmp_path)
    assert await _init_db(argparse.Namespace(database_url=None), settings) == 0

    args = argparse.Namespace(
        email="ops@example.com",
        external_id=None,
        owner_name="Ops",
        app_name="Demo",
        app_domain="https://demo.example.com",
    )
    assert await _register(args, settings) == 0
    output = capsys.readouterr().out
    [credential] = await _load_credentials(settings)
    assert credential.api_key in output
    assert is_valid_api_key_format(credential.api_key)
    assert credential.is_active is True
    assert credential.expires_at is not None

    assert await _revoke_key(credential.id, settings) == 0
    [revoked] = await _load_credentials(settings)
    assert revoked.is_active is False
    assert revoked.revoked_at is not None
    assert revoked.api_key == credential.api_key

    assert await _regenerate_key(credential.id, settings) == 0
    [regenerated] = await _load_credentials(settings)
    assert regenerated.id == credential.id
    assert regenerated.api_key != credential.api_key
    assert regenerated.is_active is True
    assert regenerated.revoked_at is None


@pytest.mark.asyncio
async def test_register_script_reuses_account_for_same_identity(tmp_path) -> None:
    settings = build_test_settings(tmp_path)
    await _init_db(argparse.Namespace(database_url=None), settings)
    for app_name in ("First App", "Second App"):
        args = argparse.Namespace(
            email="ops@example.com",
            external_id="idp-123",
            owner_name="Ops",
            app_name=app_name,
            app_domain=None,
        )
        await _register(args, settings)

    engine = build_engine(settings)
    try:
        async with build_sessionmaker(engine)() as session:
            accounts = (await session.execute(select(Account))).scalars().all()
    finally:
        await engine.dispose()
    assert len(accounts) == 1
    assert len(await _load_credentials(settings)) == 2


@pytest.mark.asyncio
async def test_revoke_script_rejects_unknown_credential(tmp_path) -> None:
    settings = build_test_settings(tmp_path)
    await _init_db(argparse.Namespace(database_url=None), settings)
    with pytest.raises(ValueError):
        await _revoke_key("missing", settings)


@pytest.mark.asyncio
async def test_create_session_script_issues_a_resolvable_token(tmp_path, capsys) -> None:
    settings = build_test_settings(tmp_path)
    await _init_db(argparse.Namespace(database_url=None), settings)
    args = argparse.Namespace(email="ops@example.com", external_id=None, owner_name="Ops", ttl_hours=2)
    assert await _create_session(args, settings) == 0

    [token] = [line.strip() for line in capsys.readouterr().out.splitlines() if line.strip().startswith(TOKEN_PREFIX)]
    engine = build_engine(settings)
    try:
        async with build_sessionmaker(engine)() as session:
            identity = await resolve_session(session=session, raw_token=token)
    finally:
        await engine.dispose()
    assert identity.email == "ops@example.com"
    assert identity.name == "Ops"


@pytest.mark.asyncio
async def test_create_session_script_rejects_non_positive_ttl(tmp_path) -> None:
    settings = build_test_settings(tmp_path)
    await _init_db(argparse.Namespace(database_url=None), settings)
    args = argparse.Namespace(email="ops@example.com", external_id=None, owner_name=None, ttl_hours=0)
    with pytest.raises(ValueError):
        await _create_session(args, settings)
