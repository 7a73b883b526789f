# =============================================================================
# LAW FIRM CREW ORCHESTRATOR - HEALTH MONITOR
# =============================================================================
"""
Health Monitor

Periodic sweep that combines agent, queue and process health into one
HealthSnapshot and publishes it to observability sinks.

Checks:
    - agents: enabled flag, trigger armed, success rate of completed tasks
    - queues: reachability (ping), depth, leased tasks, dead letters
    - process: uptime, RSS, CPU, load average and system memory (psutil)

collect() never raises. A failing sub-check is recorded as unreachable /
absent plus an entry in ``errors``; the sweep always produces a snapshot.

Status:
    critical  a queue is unreachable, memory is critical or score < 50
    degraded  dead letters exist, an agent is failing, memory is high,
              or any check failed
    healthy   otherwise
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

import psutil
import structlog

from crew.registry.agent_registry import AgentRegistry
from crew.scheduler.clock import Clock, SystemClock
from crew.scheduler.queue_manager import QueueUnavailableError, TaskQueueStore
from crew_monitoring.metrics import MetricsRecorder


logger = logging.getLogger(__name__)


HealthSink = Callable[[Dict[str, Any]], Any]


STATUS_HEALTHY = "healthy"
STATUS_DEGRADED = "degraded"
STATUS_CRITICAL = "critical"


# =============================================================================
# DATA STRUCTURES
# =============================================================================


@dataclass
class HealthSnapshot:
    """
    Point-in-time health record.

    Attributes:
        timestamp: ISO timestamp of the sweep
        status: healthy / degraded / critical
        score: Percentage of passing checks
        agents: One summary per registered agent
        queues: Category -> queue summary (reachable, depth, ...)
        process: Process resource sample, None when sampling failed
        errors: Sub-checks that failed
        recommendations: Operator hints derived from the checks
    """
    timestamp: str
    status: str
    score: int
    agents: List[Dict[str, Any]] = field(default_factory=list)
    queues: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    process: Optional[Dict[str, Any]] = None
    errors: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.status == STATUS_HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "status": self.status,
            "score": self.score,
            "agents": self.agents,
            "queues": self.queues,
            "process": self.process,
            "errors": self.errors,
            "recommendations": self.recommendations,
        }


def log_sink(snapshot: Dict[str, Any]) -> None:
    """Default sink: one structured log event per snapshot."""
    structlog.get_logger("crew.health").info(
        "health_snapshot",
        status=snapshot["status"],
        score=snapshot["score"],
        errors=snapshot["errors"],
        recommendations=snapshot["recommendations"],
    )


# =============================================================================
# HEALTH MONITOR
# =============================================================================


class HealthMonitor:
    """
    Collects health snapshots on a fixed interval.

    Usage::

        monitor = HealthMonitor(registry, stores, metrics, interval=300)
        monitor.add_sink(my_sink)
        monitor.start()
        ...
        await monitor.stop()
        monitor.latest()
    """

    def __init__(
        self,
        registry: AgentRegistry,
        stores: Mapping[Any, TaskQueueStore],
        metrics: Optional[MetricsRecorder] = None,
        clock: Optional[Clock] = None,
        interval: float = 300.0,
        retention: int = 20,
        memory_warning_percent: float = 80.0,
        memory_critical_percent: float = 90.0,
        agent_success_threshold: int = 80,
        sinks: Optional[List[HealthSink]] = None,
    ):
        """
        Initialize the monitor.

        Args:
            registry: Agent registry to summarize
            stores: Category queue stores to ping
            metrics: Metrics recorder (agent summaries, queue depth gauge)
            clock: Time source for the interval loop
            interval: Seconds between sweeps
            retention: Number of snapshots kept
            memory_warning_percent: System memory usage flagged as high
            memory_critical_percent: System memory usage flagged as critical
            agent_success_threshold: Success rate under which an agent with
                completed tasks counts as failing
            sinks: Callables receiving each snapshot dict
        """
        self.registry = registry
        self.stores = stores
        self.metrics = metrics
        self.clock = clock or SystemClock()
        self.interval = interval
        self.memory_warning_percent = memory_warning_percent
        self.memory_critical_percent = memory_critical_percent
        self.agent_success_threshold = agent_success_threshold
        self.sinks: List[HealthSink] = list(sinks) if sinks is not None else [log_sink]

        self._history: Deque[HealthSnapshot] = deque(maxlen=max(1, retention))
        self._task: Optional[asyncio.Task] = None
        self._process = psutil.Process()
        # The first cpu_percent call only sets the baseline and returns 0.0
        self._process.cpu_percent(interval=None)
        self._started_at = time.time()

    def add_sink(self, sink: HealthSink) -> None:
        self.sinks.append(sink)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the interval loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="health-monitor")
        logger.info(f"Health monitor started (interval={self.interval}s)")

    async def stop(self) -> None:
        """Stop the interval loop. Idempotent."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Health monitor stopped")

    async def _run(self) -> None:
        while True:
            snapshot = await self.collect()
            self._publish(snapshot)
            await self.clock.sleep(self.interval)

    # =========================================================================
    # COLLECTION
    # =========================================================================

    async def collect(self) -> HealthSnapshot:
        """
        Run every check once and retain the snapshot. Never raises.
        """
        errors: List[str] = []
        checks: Dict[str, bool] = {}

        try:
            agents = self._check_agents(errors)
            queues = await self._check_queues(errors)
            process = self._sample_process(errors)

            failing_agents = [a["id"] for a in agents if not a["healthy"]]
            checks["agents"] = not failing_agents
            for category, summary in queues.items():
                checks[f"queue:{category}"] = summary["reachable"]
            checks["process"] = process is not None

            memory_percent = process.get("system_memory_percent") if process else None
            if memory_percent is not None:
                checks["memory"] = memory_percent < self.memory_warning_percent

            score = round(100 * sum(checks.values()) / len(checks)) if checks else 100
            status = self._status(score, queues, memory_percent, failing_agents)
            recommendations = self._recommend(checks, queues, memory_percent, failing_agents)

            snapshot = HealthSnapshot(
                timestamp=datetime.utcnow().isoformat() + "Z",
                status=status,
                score=score,
                agents=agents,
                queues=queues,
                process=process,
                errors=errors,
                recommendations=recommendations,
            )
        except Exception as e:
            logger.error(f"Health sweep failed: {e}", exc_info=True)
            snapshot = HealthSnapshot(
                timestamp=datetime.utcnow().isoformat() + "Z",
                status=STATUS_CRITICAL,
                score=0,
                errors=errors + [f"health sweep failed: {e}"],
                recommendations=["Health check system failure - inspect the logs"],
            )

        self._history.append(snapshot)
        return snapshot

    def _check_agents(self, errors: List[str]) -> List[Dict[str, Any]]:
        summaries = []
        try:
            configs = self.registry.list()
        except Exception as e:
            errors.append(f"agents: {e}")
            return summaries

        for config in configs:
            summary: Dict[str, Any] = {
                "id": config.id,
                "name": config.name,
                "category": config.category.value,
                "enabled": config.enabled,
                "trigger_armed": False,
                "next_fire": None,
                "metrics": None,
                "healthy": True,
            }
            try:
                summary["trigger_armed"] = self.registry.is_armed(config.id)
                next_fire = self.registry.next_fire_time(config.id)
                summary["next_fire"] = next_fire.isoformat() if next_fire else None
            except Exception as e:
                errors.append(f"agent {config.id}: {e}")

            if self.metrics is not None:
                m = self.metrics.snapshot(config.id)
                summary["metrics"] = {
                    "tasks_completed": m.tasks_completed,
                    "success_rate": m.success_rate,
                    "error_rate": m.error_rate,
                    "tasks_dead_lettered": m.tasks_dead_lettered,
                    "average_execution_ms": round(m.average_execution_ms, 3),
                    "last_active": m.last_active,
                    "last_error": m.last_error,
                }
                if (
                    config.enabled
                    and m.tasks_completed > 0
                    and m.success_rate < self.agent_success_threshold
                ):
                    summary["healthy"] = False
            summaries.append(summary)
        return summaries

    async def _check_queues(self, errors: List[str]) -> Dict[str, Dict[str, Any]]:
        queues: Dict[str, Dict[str, Any]] = {}
        for category, store in list(self.stores.items()):
            name = getattr(category, "value", str(category))
            summary: Dict[str, Any] = {
                "reachable": False,
                "depth": None,
                "leased": None,
                "dead_letters": None,
            }
            try:
                await store.ping()
                stats = await store.stats()
            except QueueUnavailableError as e:
                errors.append(f"queue {name}: {e}")
            except Exception as e:
                errors.append(f"queue {name}: {type(e).__name__}: {e}")
            else:
                summary.update(
                    reachable=True,
                    depth=stats.depth,
                    leased=stats.leased_items,
                    dead_letters=stats.dead_letters,
                )
                if self.metrics is not None:
                    self.metrics.set_queue_depth(name, stats.depth)
            queues[name] = summary
        return queues

    def _sample_process(self, errors: List[str]) -> Optional[Dict[str, Any]]:
        try:
            with self._process.oneshot():
                memory = self._process.memory_info()
                sample = {
                    "pid": self._process.pid,
                    "uptime_seconds": round(time.time() - self._process.create_time(), 1),
                    "rss_mb": round(memory.rss / 1024 / 1024, 1),
                    "memory_percent": round(self._process.memory_percent(), 2),
                    "cpu_percent": self._process.cpu_percent(interval=None),
                    "threads": self._process.num_threads(),
                }
            sample["system_memory_percent"] = psutil.virtual_memory().percent
            sample["load_average"] = [round(v, 2) for v in psutil.getloadavg()]
            return sample
        except (psutil.Error, OSError) as e:
            errors.append(f"process: {e}")
            return None

    def _status(
        self,
        score: int,
        queues: Dict[str, Dict[str, Any]],
        memory_percent: Optional[float],
        failing_agents: List[str],
    ) -> str:
        if any(not q["reachable"] for q in queues.values()):
            return STATUS_CRITICAL
        if memory_percent is not None and memory_percent >= self.memory_critical_percent:
            return STATUS_CRITICAL
        if score < 50:
            return STATUS_CRITICAL
        if score < 100 or failing_agents:
            return STATUS_DEGRADED
        if any(q["dead_letters"] for q in queues.values()):
            return STATUS_DEGRADED
        return STATUS_HEALTHY

    def _recommend(
        self,
        checks: Dict[str, bool],
        queues: Dict[str, Dict[str, Any]],
        memory_percent: Optional[float],
        failing_agents: List[str],
    ) -> List[str]:
        recommendations = []
        failed = [name for name, ok in checks.items() if not ok]
        if failed:
            recommendations.append(f"Address {len(failed)} unhealthy components immediately")
        for category, summary in queues.items():
            if not summary["reachable"]:
                recommendations.append(f"Queue {category} is unreachable - check the queue backend")
            elif summary["dead_letters"]:
                recommendations.append(
                    f"Review {summary['dead_letters']} dead-lettered tasks in {category}"
                )
        if memory_percent is not None and memory_percent > self.memory_warning_percent:
            recommendations.append("Memory usage is high - consider optimization or scaling")
        if failing_agents:
            recommendations.append(
                f"Investigate {len(failing_agents)} failing agents: {', '.join(failing_agents)}"
            )
        return recommendations

    # =========================================================================
    # PUBLISHING / HISTORY
    # =========================================================================

    def _publish(self, snapshot: HealthSnapshot) -> None:
        data = snapshot.to_dict()
        for sink in self.sinks:
            try:
                sink(data)
            except Exception as e:
                logger.error(f"Health sink {getattr(sink, '__name__', sink)} failed: {e}")

    def latest(self) -> Optional[HealthSnapshot]:
        """Most recent snapshot, None before the first sweep."""
        return self._history[-1] if self._history else None

    def history(self) -> List[HealthSnapshot]:
        """Retained snapshots, oldest first."""
        return list(self._history)


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    "HealthMonitor",
    "HealthSnapshot",
    "HealthSink",
    "log_sink",
    "STATUS_HEALTHY",
    "STATUS_DEGRADED",
    "STATUS_CRITICAL",
]
