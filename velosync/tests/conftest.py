from __future__ import annotations

import pytest

from velosync.core.config import get_settings
from velosync.services.kv import reset_redis_state
from velosync.services.telemetry import reset_telemetry
from velosync.tests.utils.harness import Harness, make_harness


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Telemetry and cached settings are process-wide; isolate them per test.
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_redis_state()
    reset_telemetry()


@pytest.fixture
def harness() -> Harness:
    return make_harness()
