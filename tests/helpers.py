"""Builders and utilities shared by the tests."""

import asyncio
import time
from typing import Any, Callable

from crew.registry.models import AgentConfig, Capability, Task


class FakeTime:
    """Epoch-seconds callable moved by hand."""

    def __init__(self, start: float = 1_800_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_agent(agent_id: str = "agent-001", **overrides: Any) -> AgentConfig:
    values = {
        "id": agent_id,
        "name": agent_id.replace("-", " ").title(),
        "capability": Capability.CONTENT_CREATION,
        "schedule": "0 * * * *",
        "max_concurrency": 1,
        "priority": 5,
    }
    values.update(overrides)
    return AgentConfig(**values)


def make_task(agent_id: str = "agent-001", **overrides: Any) -> Task:
    values = {
        "agent_id": agent_id,
        "category": Capability.CONTENT_CREATION,
        "title": "Test task",
    }
    values.update(overrides)
    return Task(**values)


async def eventually(
    predicate: Callable[[], bool],
    timeout: float = 3.0,
    interval: float = 0.005,
) -> None:
    """Poll *predicate* on the real event loop until it holds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(interval)
