# =============================================================================
# LAW FIRM CREW ORCHESTRATOR - METRICS COLLECTION
# =============================================================================
"""
Metrics Collection Module

Per-agent performance metrics, mirrored into Prometheus metrics.

Metric Categories:
    - Agent metrics: completed / succeeded / failed / dead-lettered tasks,
      running average duration, success and error rates
    - Domain counters: items produced and engagement, opaque values
      reported by result handlers
    - System metrics: in-flight executions, queue depth, errors

Running averages use an exponential moving average so memory stays
bounded. Rates are integer percentages of completed tasks and read 0
when nothing has completed.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    start_http_server,
)

logger = logging.getLogger(__name__)


# =============================================================================
# AGENT METRICS
# =============================================================================


def percent(part: int, whole: int) -> int:
    """Integer percentage rounded half up; 0 when *whole* is 0."""
    if whole <= 0:
        return 0
    return (part * 200 + whole) // (2 * whole)


@dataclass
class AgentMetrics:
    """
    Metrics of one agent.

    Attributes:
        agent_id: Agent identifier
        tasks_completed: Finished attempts (success or failure)
        tasks_succeeded: Successful attempts
        tasks_failed: Failed attempts (every nack counts)
        tasks_dead_lettered: Tasks that ended in the dead-letter list
        average_execution_ms: EMA of successful execution durations
        last_active: ISO timestamp of the last recorded activity
        last_error: Reason of the most recent failure
        items_produced: Sum reported by result handlers
        engagement_generated: Sum reported by result handlers
    """
    agent_id: str
    category: Optional[str] = None
    tasks_completed: int = 0
    tasks_succeeded: int = 0
    tasks_failed: int = 0
    tasks_dead_lettered: int = 0
    average_execution_ms: float = 0.0
    last_active: Optional[str] = None
    last_error: Optional[str] = None
    items_produced: int = 0
    engagement_generated: int = 0
    _samples: int = field(default=0, repr=False)

    @property
    def success_rate(self) -> int:
        return percent(self.tasks_succeeded, self.tasks_completed)

    @property
    def error_rate(self) -> int:
        if self.tasks_completed == 0:
            return 0
        return 100 - self.success_rate

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "agent_id": self.agent_id,
            "category": self.category,
            "tasks_completed": self.tasks_completed,
            "tasks_succeeded": self.tasks_succeeded,
            "tasks_failed": self.tasks_failed,
            "tasks_dead_lettered": self.tasks_dead_lettered,
            "average_execution_ms": round(self.average_execution_ms, 3),
            "success_rate": self.success_rate,
            "error_rate": self.error_rate,
            "last_active": self.last_active,
            "last_error": self.last_error,
            "items_produced": self.items_produced,
            "engagement_generated": self.engagement_generated,
        }


# =============================================================================
# METRICS RECORDER
# =============================================================================


class MetricsRecorder:
    """
    Central metrics recorder for the crew orchestrator.

    Each agent record has its own lock, so workers of different agents
    never contend. Every recorded value is mirrored into a Prometheus
    registry owned by this instance.

    Usage::

        metrics = MetricsRecorder(ema_weight=0.5)
        metrics.register_agent("content-creator-001", "content_creation")
        metrics.record_success("content-creator-001", 1520.0, items_produced=1)
        metrics.record_failure("content-creator-001", "timeout")
        metrics.snapshot("content-creator-001").success_rate   # 50
    """

    def __init__(
        self,
        ema_weight: float = 0.5,
        config: Optional[Dict[str, Any]] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        """
        Initialize the recorder.

        Args:
            ema_weight: Weight of the newest sample in the running average
            config: Optional metrics configuration dict
            registry: Prometheus registry (a private one by default)
        """
        if not 0.0 < ema_weight <= 1.0:
            raise ValueError(f"ema_weight must be in (0, 1], got {ema_weight}")

        self.config = config or {}
        self.ema_weight = ema_weight
        self.registry = registry or CollectorRegistry()
        self._start_time = time.monotonic()

        self._records: Dict[str, AgentMetrics] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._records_lock = threading.Lock()

        self._init_prometheus()

    # -----------------------------------------------------------------
    # Prometheus initialization
    # -----------------------------------------------------------------

    def _init_prometheus(self) -> None:
        self.task_executions = Counter(
            "crew_task_executions_total",
            "Task execution attempts",
            ["agent_id", "category", "result"],
            registry=self.registry,
        )
        self.task_duration = Histogram(
            "crew_task_duration_seconds",
            "Successful task execution duration",
            ["category"],
            buckets=[0.1, 0.5, 1, 5, 15, 30, 60, 120, 300],
            registry=self.registry,
        )
        self.tasks_in_flight = Gauge(
            "crew_tasks_in_flight",
            "Task executions currently running",
            ["category"],
            registry=self.registry,
        )
        self.dead_letters_total = Counter(
            "crew_dead_letters_total",
            "Tasks moved to the dead-letter list",
            ["agent_id", "category"],
            registry=self.registry,
        )
        self.queue_depth = Gauge(
            "crew_queue_depth",
            "Tasks waiting in a category queue",
            ["category"],
            registry=self.registry,
        )
        self.success_rate_gauge = Gauge(
            "crew_agent_success_rate_percent",
            "Agent success rate over completed tasks",
            ["agent_id"],
            registry=self.registry,
        )
        self.items_produced_total = Counter(
            "crew_items_produced_total",
            "Items produced as reported by result handlers",
            ["agent_id"],
            registry=self.registry,
        )
        self.errors_total = Counter(
            "crew_errors_total",
            "Component errors",
            ["component", "error_type"],
            registry=self.registry,
        )
        self.system_info = Info(
            "crew_system",
            "Orchestrator information",
            registry=self.registry,
        )

    # =====================================================================
    # AGENT RECORDS
    # =====================================================================

    def register_agent(self, agent_id: str, category: Optional[str] = None) -> AgentMetrics:
        """Create the metrics record of an agent (idempotent)."""
        with self._records_lock:
            record = self._records.get(agent_id)
            if record is None:
                record = AgentMetrics(agent_id=agent_id, category=category)
                self._records[agent_id] = record
                self._locks[agent_id] = threading.Lock()
            elif category and not record.category:
                record.category = category
            return record

    def _record(self, agent_id: str) -> tuple:
        with self._records_lock:
            record = self._records.get(agent_id)
            if record is not None:
                return record, self._locks[agent_id]
        record = self.register_agent(agent_id)
        return record, self._locks[agent_id]

    def record_success(
        self,
        agent_id: str,
        duration_ms: float,
        items_produced: int = 0,
        engagement: int = 0,
    ) -> None:
        """
        Record a successful execution.

        Args:
            agent_id: Agent identifier
            duration_ms: Execution duration in milliseconds
            items_produced: Domain counter from the result handler
            engagement: Domain counter from the result handler
        """
        record, lock = self._record(agent_id)
        with lock:
            record.tasks_completed += 1
            record.tasks_succeeded += 1
            if record._samples == 0:
                record.average_execution_ms = float(duration_ms)
            else:
                record.average_execution_ms = (
                    record.average_execution_ms * (1.0 - self.ema_weight)
                    + duration_ms * self.ema_weight
                )
            record._samples += 1
            record.items_produced += items_produced
            record.engagement_generated += engagement
            record.last_active = datetime.utcnow().isoformat()
            rate = record.success_rate
            category = record.category or "unknown"

        self.task_executions.labels(agent_id=agent_id, category=category, result="success").inc()
        self.task_duration.labels(category=category).observe(duration_ms / 1000.0)
        self.success_rate_gauge.labels(agent_id=agent_id).set(rate)
        if items_produced:
            self.items_produced_total.labels(agent_id=agent_id).inc(items_produced)

    def record_failure(self, agent_id: str, reason: Optional[str] = None) -> None:
        """Record a failed execution attempt."""
        record, lock = self._record(agent_id)
        with lock:
            record.tasks_completed += 1
            record.tasks_failed += 1
            record.last_active = datetime.utcnow().isoformat()
            if reason:
                record.last_error = reason
            rate = record.success_rate
            category = record.category or "unknown"

        self.task_executions.labels(agent_id=agent_id, category=category, result="failure").inc()
        self.success_rate_gauge.labels(agent_id=agent_id).set(rate)

    def record_dead_letter(self, agent_id: str) -> None:
        """Record a task of the agent reaching the dead-letter list."""
        record, lock = self._record(agent_id)
        with lock:
            record.tasks_dead_lettered += 1
            category = record.category or "unknown"
        self.dead_letters_total.labels(agent_id=agent_id, category=category).inc()

    def snapshot(self, agent_id: str) -> AgentMetrics:
        """
        Copy of an agent's metrics.

        Unknown agents read as an all-zero record.
        """
        with self._records_lock:
            record = self._records.get(agent_id)
            lock = self._locks.get(agent_id)
        if record is None:
            return AgentMetrics(agent_id=agent_id)
        with lock:
            return replace(record)

    def snapshot_all(self) -> Dict[str, AgentMetrics]:
        """Copies of all agent records."""
        with self._records_lock:
            agent_ids = list(self._records)
        return {agent_id: self.snapshot(agent_id) for agent_id in agent_ids}

    @property
    def agent_ids(self) -> List[str]:
        with self._records_lock:
            return list(self._records)

    # =====================================================================
    # SYSTEM METRICS
    # =====================================================================

    def execution_started(self, category: str) -> None:
        """Increment in-flight executions."""
        self.tasks_in_flight.labels(category=category).inc()

    def execution_finished(self, category: str) -> None:
        """Decrement in-flight executions."""
        self.tasks_in_flight.labels(category=category).dec()

    def set_queue_depth(self, category: str, depth: int) -> None:
        """Set the current depth of a category queue."""
        self.queue_depth.labels(category=category).set(depth)

    def record_error(self, component: str, error_type: str) -> None:
        """Record an error occurrence."""
        self.errors_total.labels(component=component, error_type=error_type).inc()

    def set_system_info(self, **info: str) -> None:
        """Set system information labels."""
        self.system_info.info(info)

    def get_uptime(self) -> float:
        """Return seconds since this recorder was created."""
        return time.monotonic() - self._start_time

    # =====================================================================
    # EXPORT / SNAPSHOT
    # =====================================================================

    def start_http_server(self, port: int = 9100) -> None:
        """Start an HTTP server exposing this recorder's Prometheus registry."""
        start_http_server(port, registry=self.registry)
        logger.info(f"Metrics HTTP server started on port {port}")

    def exposition(self) -> bytes:
        """Prometheus text exposition of this recorder's registry."""
        return generate_latest(self.registry)

    def summary(self) -> Dict[str, Any]:
        """
        Return a plain dict summary of all agents.

        Useful for logging, health snapshots and the CLI status output.
        """
        agents = {agent_id: m.to_dict() for agent_id, m in self.snapshot_all().items()}
        completed = sum(m["tasks_completed"] for m in agents.values())
        succeeded = sum(m["tasks_succeeded"] for m in agents.values())
        return {
            "uptime_seconds": round(self.get_uptime(), 1),
            "tasks_completed": completed,
            "tasks_succeeded": succeeded,
            "tasks_failed": sum(m["tasks_failed"] for m in agents.values()),
            "tasks_dead_lettered": sum(m["tasks_dead_lettered"] for m in agents.values()),
            "success_rate": percent(succeeded, completed),
            "agents": agents,
        }


# =============================================================================
# FACTORY
# =============================================================================


def create_metrics_recorder(config: Optional[Dict[str, Any]] = None) -> MetricsRecorder:
    """
    Create a MetricsRecorder from the ``metrics`` config section.

    Starts the Prometheus HTTP exporter when ``export.enabled`` is set.
    """
    config = config or {}
    recorder = MetricsRecorder(
        ema_weight=float(config.get("ema_weight", 0.5)),
        config=config,
    )

    export = config.get("export") or {}
    if export.get("enabled", False):
        port = int(export.get("port", 9100))
        try:
            recorder.start_http_server(port)
        except OSError as e:
            logger.warning(f"Could not start metrics server on port {port}: {e}")

    return recorder


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    "MetricsRecorder",
    "AgentMetrics",
    "create_metrics_recorder",
    "percent",
]
