"""Tests for the health monitor."""

import psutil
import pytest

from crew.registry.agent_registry import AgentRegistry
from crew.registry.models import Capability
from crew.scheduler.queue_manager import MemoryQueueBackend, TaskQueueStore
from crew_monitoring.health import (
    STATUS_CRITICAL,
    STATUS_DEGRADED,
    STATUS_HEALTHY,
    HealthMonitor,
)
from crew_monitoring.metrics import MetricsRecorder
from tests.helpers import eventually, make_agent, make_task


class UnreachableBackend(MemoryQueueBackend):
    async def ping(self):
        raise ConnectionError("connection refused")


class BrokenStatsBackend(MemoryQueueBackend):
    async def list_all(self, status=None):
        raise RuntimeError("corrupt queue state")


def build_monitor(clock, backend=None, **kwargs):
    registry = AgentRegistry(clock=clock)
    registry.register(make_agent("content-creator-001"))
    metrics = MetricsRecorder()
    metrics.register_agent("content-creator-001", "content_creation")
    store = TaskQueueStore(Capability.CONTENT_CREATION, backend=backend)
    options = {
        "interval": 300,
        "memory_warning_percent": 101,
        "memory_critical_percent": 101,
        "sinks": [],
    }
    options.update(kwargs)
    monitor = HealthMonitor(
        registry, {Capability.CONTENT_CREATION: store}, metrics=metrics, clock=clock, **options
    )
    return monitor, registry, metrics, store


class TestCollect:
    @pytest.mark.anyio
    async def test_healthy_snapshot(self, clock):
        monitor, _, _, _ = build_monitor(clock)

        snapshot = await monitor.collect()

        assert snapshot.status == STATUS_HEALTHY
        assert snapshot.healthy
        assert snapshot.score == 100
        assert snapshot.errors == []
        assert snapshot.queues["content_creation"]["reachable"] is True
        assert snapshot.agents[0]["id"] == "content-creator-001"
        assert snapshot.process["rss_mb"] > 0
        assert monitor.latest() is snapshot

    @pytest.mark.anyio
    async def test_unreachable_queue_is_critical(self, clock):
        monitor, _, _, _ = build_monitor(clock, backend=UnreachableBackend())

        snapshot = await monitor.collect()

        assert snapshot.status == STATUS_CRITICAL
        assert snapshot.queues["content_creation"]["reachable"] is False
        assert any("content_creation" in e for e in snapshot.errors)
        assert any("unreachable" in r for r in snapshot.recommendations)

    @pytest.mark.anyio
    async def test_broken_stats_never_raise(self, clock):
        monitor, _, _, _ = build_monitor(clock, backend=BrokenStatsBackend())

        snapshot = await monitor.collect()

        assert snapshot.status == STATUS_CRITICAL
        assert any("corrupt queue state" in e for e in snapshot.errors)

    @pytest.mark.anyio
    async def test_failing_agent_degrades(self, clock):
        monitor, _, metrics, _ = build_monitor(clock)
        metrics.record_success("content-creator-001", 10.0)
        for _ in range(3):
            metrics.record_failure("content-creator-001", "timeout")

        snapshot = await monitor.collect()

        assert snapshot.status == STATUS_DEGRADED
        assert snapshot.score == 75
        assert snapshot.agents[0]["healthy"] is False
        assert snapshot.agents[0]["metrics"]["success_rate"] == 25
        assert any("failing agents" in r for r in snapshot.recommendations)

    @pytest.mark.anyio
    async def test_dead_letters_degrade(self, clock):
        monitor, _, metrics, store = build_monitor(clock)
        await store.enqueue(make_task("content-creator-001", max_retries=1))
        claimed = await store.dequeue()
        await store.nack(claimed.id, "boom")

        snapshot = await monitor.collect()

        assert snapshot.status == STATUS_DEGRADED
        assert snapshot.queues["content_creation"]["dead_letters"] == 1
        assert metrics.registry.get_sample_value(
            "crew_queue_depth", {"category": "content_creation"}
        ) == 0.0

    @pytest.mark.anyio
    async def test_memory_threshold_is_critical(self, clock):
        monitor, _, _, _ = build_monitor(
            clock, memory_warning_percent=0, memory_critical_percent=0
        )

        snapshot = await monitor.collect()

        assert snapshot.status == STATUS_CRITICAL
        assert any("Memory" in r for r in snapshot.recommendations)

    @pytest.mark.anyio
    async def test_first_snapshot_has_a_cpu_sample(self, clock, monkeypatch):
        readings = iter([0.0, 12.5])
        calls = []

        def cpu_percent(process, interval=None):
            calls.append(interval)
            return next(readings)

        monkeypatch.setattr(psutil.Process, "cpu_percent", cpu_percent)
        monitor, _, _, _ = build_monitor(clock)
        assert calls == [None]

        snapshot = await monitor.collect()

        assert snapshot.process["cpu_percent"] == 12.5

    @pytest.mark.anyio
    async def test_agent_summary_includes_trigger_state(self, clock):
        monitor, registry, _, _ = build_monitor(clock)
        registry.arm(lambda agent_id, at: None)
        await clock.advance(0)

        snapshot = await monitor.collect()
        registry.disarm()

        summary = snapshot.agents[0]
        assert summary["trigger_armed"] is True
        assert summary["next_fire"] is not None


class TestLoop:
    @pytest.mark.anyio
    async def test_collects_every_interval_and_publishes(self, clock):
        published = []
        monitor, _, _, _ = build_monitor(clock, retention=2, sinks=[published.append])

        monitor.start()
        await eventually(lambda: len(published) == 1)
        assert monitor.running

        await clock.advance(300)
        await eventually(lambda: len(published) == 2)
        await clock.advance(300)
        await eventually(lambda: len(published) == 3)

        await monitor.stop()
        await monitor.stop()

        assert not monitor.running
        assert len(monitor.history()) == 2
        assert published[-1]["status"] == STATUS_HEALTHY
        assert monitor.latest().to_dict() == published[-1]

    @pytest.mark.anyio
    async def test_failing_sink_does_not_stop_loop(self, clock):
        def broken(snapshot):
            raise RuntimeError("sink down")

        received = []
        monitor, _, _, _ = build_monitor(clock, sinks=[broken, received.append])

        monitor.start()
        await eventually(lambda: len(received) == 1)
        await clock.advance(300)
        await eventually(lambda: len(received) == 2)
        await monitor.stop()
