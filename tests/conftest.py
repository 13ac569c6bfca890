"""Shared fixtures for quotagate tests."""

from datetime import datetime, timezone

import pytest

from quotagate.app.core.config import Settings
from quotagate.app.core.observability import AdmissionObserver
from quotagate.app.store.memory import InMemoryCounterStore

# 2026-10-17 12:00:00 UTC
BASE_TIME = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc).timestamp()


class FakeClock:
    """Controllable clock returning epoch seconds."""

    def __init__(self, now: float = BASE_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_clock():
    """Factory for clocks starting at an arbitrary time."""
    return FakeClock


@pytest.fixture
def observer():
    return AdmissionObserver()


@pytest.fixture
def store(clock):
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        redis_enabled=False,
        store_timeout_seconds=0.5,
        background_retry_delay=0.001,
        dead_letter_path=tmp_path / "dead_letter.jsonl",
    )
