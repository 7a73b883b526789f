"""Shared fixtures."""

from datetime import datetime, timezone

import pytest

from crew.scheduler.clock import ManualClock
from tests.helpers import FakeTime


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def start_time():
    # Monday
    return datetime(2026, 1, 5, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(start_time):
    return ManualClock(start_time)


@pytest.fixture
def fake_time():
    return FakeTime()
