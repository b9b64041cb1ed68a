"""pytest configuration for AOI tests."""

from __future__ import annotations

import asyncio
import time
from typing import Callable

import pytest


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


class FakeTimer:
    def __init__(self, delay: float, callback: Callable[[], None]):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Records call_later requests so tests decide when timers fire."""

    def __init__(self):
        self.timers: list[FakeTimer] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled]

    def fire_all(self) -> None:
        timers, self.timers = self.pending, []
        for timer in timers:
            timer.callback()


class FakeLink:
    """Stand-in for a station connection."""

    def __init__(self, connected: bool = True):
        self.is_connected = connected
        self.written = bytearray()

    def write(self, data: bytes) -> None:
        self.written.extend(data)


@pytest.fixture()
def scheduler() -> FakeScheduler:
    return FakeScheduler()


async def wait_for(condition: Callable[[], bool], timeout: float = 3.0) -> None:
    """Poll *condition* on the running loop until it holds."""
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
