"""Pytest configuration and fixtures for Resilio tests.

Time-dependent components are driven by a VirtualScheduler or a ManualClock
so tests never wait on real timers.
"""

import os

import pytest

from resilio.events import EventBus, EventRecorder
from resilio.scheduling import VirtualScheduler


class ManualClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start_ms: float = 1_000_000.0):
        self.now = start_ms

    def __call__(self) -> float:
        return self.now

    def advance(self, delta_ms: float) -> None:
        self.now += delta_ms


@pytest.fixture
def clock():
    """Manual millisecond clock starting well above zero."""
    return ManualClock()


@pytest.fixture
def scheduler():
    """Virtual scheduler; advance it explicitly to fire timers."""
    virtual = VirtualScheduler()
    yield virtual
    virtual.close()


@pytest.fixture
def bus():
    """Fresh event bus."""
    return EventBus()


@pytest.fixture
def recorder(bus):
    """Recorder subscribed to every event on ``bus``."""
    events = EventRecorder()
    bus.subscribe_all(events)
    return events


@pytest.fixture
def clean_env(monkeypatch):
    """Isolate RESILIO_* environment variables."""
    for key in list(os.environ):
        if key.startswith("RESILIO_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("RESILIO_LOG_LEVEL", "ERROR")


def pytest_configure(config):
    """Configure pytest environment."""
    os.environ["RESILIO_ENV"] = "test"

    config.addinivalue_line("markers", "unit: unit tests that don't require external services")
    config.addinivalue_line("markers", "slow: tests that take a long time to run")


def pytest_collection_modifyitems(config, items):
    """Mark tests under tests/unit automatically."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
