from __future__ import annotations

import pytest

from notifyrelay.core.config import get_settings
from notifyrelay.services import notifications as notifications_module
from notifyrelay.services import telemetry
from notifyrelay.services.delivery import poller as poller_module
from notifyrelay.services.delivery import processor as processor_module
from notifyrelay.tests.utils.fakes import FakeClock, Harness, make_harness


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Counters and cached settings are process-global; isolate each test.
    telemetry.reset_telemetry()
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    # Drive every engine timestamp from one controllable clock.
    fake = FakeClock()
    monkeypatch.setattr(processor_module, "_utc_now", fake)
    monkeypatch.setattr(poller_module, "_utc_now", fake)
    monkeypatch.setattr(notifications_module, "_utc_now", fake)
    return fake


@pytest.fixture
def harness(clock: FakeClock) -> Harness:
    return make_harness()
