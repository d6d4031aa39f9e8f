from __future__ import annotations

from typing import AsyncIterator

import pytest
from httpx import AsyncClient

from eventlens.apps.api.state import AppResources
from eventlens.core.config import Settings, get_settings
from eventlens.tests.utils.app import app_client, build_test_settings, running_resources
from eventlens.tests.utils.clock import FakeClock


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> None:
    # Clear settings cache between tests to avoid leaking env overrides.
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return build_test_settings(tmp_path)


@pytest.fixture
async def resources(settings: Settings, clock: FakeClock) -> AsyncIterator[AppResources]:
    async with running_resources(settings, time_provider=clock) as built:
        yield built


@pytest.fixture
async def client(resources: AppResources) -> AsyncIterator[AsyncClient]:
    async with app_client(resources) as http_client:
        yield http_client
