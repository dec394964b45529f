from __future__ import annotations

import pytest

from kbingest.core.config import get_settings
from kbingest.services import telemetry
from kbingest.tests.utils.fakes import FakeRedis


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Metrics registry and cached settings are process-wide; isolate each test.
    telemetry.reset()
    get_settings.cache_clear()
    yield
    telemetry.reset()
    get_settings.cache_clear()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
