# =============================================================================
# LAW FIRM CREW ORCHESTRATOR - MAIN ENTRY POINT
# =============================================================================
"""
Orchestrator Main Module

Entry point of the crew orchestrator service. Composes the agent
registry, schedule triggers, task factory, category queues, execution
engine, metrics and health monitor, and exposes the administrative
surface (start, stop, toggle_agent, get_metrics, get_agent_status).

Lifecycle:
    STOPPED --start()--> STARTING --> RUNNING --stop()--> STOPPING --> STOPPED

Usage:
    python -m crew.main
    python -m crew.main --config config/crew.yaml
    python -m crew.main --debug
    python -m crew.main --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set
from zoneinfo import ZoneInfo

import yaml

from crew.engine.collaborators import (
    CollaboratorRegistry,
    DryRunCollaborator,
    LoggingResultHandler,
    build_collaborator_registry,
)
from crew.engine.execution_engine import ExecutionEngine
from crew.engine.task_factory import TaskFactory, templates_from_config
from crew.errors import ConfigurationError, CrewError
from crew.registry.agent_registry import AgentRegistry, agents_from_config
from crew.registry.models import AgentConfig, Capability
from crew.scheduler.clock import Clock, SystemClock
from crew.scheduler.queue_manager import (
    CompletionLedger,
    DeadLetter,
    QueueError,
    TaskQueueStore,
    create_queue_store,
)
from crew_monitoring.health import HealthMonitor, HealthSnapshot
from crew_monitoring.logger import AuditLogger, setup_logging
from crew_monitoring.metrics import MetricsRecorder, create_metrics_recorder


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================


# Environment variable -> config path
ENV_MAPPINGS: Dict[str, tuple] = {
    # Logging
    "CREW_LOG_LEVEL": ("logging", "level"),
    "CREW_LOG_FORMAT": ("logging", "format"),
    "CREW_LOG_DIR": ("logging", "log_dir"),
    # Scheduler
    "CREW_TIMEZONE": ("scheduler", "timezone"),
    # Queue
    "CREW_QUEUE_BACKEND": ("queue", "backend"),
    "CREW_REDIS_URL": ("queue", "redis_url"),
    "REDIS_URL": ("queue", "redis_url"),
    "CREW_MAX_RETRIES": ("queue", "backoff", "max_retries"),
    # Engine
    "CREW_GLOBAL_CONCURRENCY": ("engine", "global_concurrency"),
    "CREW_DEFAULT_DEADLINE": ("engine", "default_deadline"),
    "CREW_GRACE_PERIOD": ("engine", "grace_period"),
    # Factory
    "CREW_CONTEXT_TIMEOUT": ("factory", "context_timeout"),
    # Metrics
    "CREW_METRICS_PORT": ("metrics", "export", "port"),
    "CREW_METRICS_EXPORT": ("metrics", "export", "enabled"),
    # Health
    "CREW_HEALTH_INTERVAL": ("health", "interval"),
    # Audit
    "CREW_AUDIT_PATH": ("audit", "path"),
}


DEFAULT_CONFIG: Dict[str, Dict[str, Any]] = {
    "logging": {
        "level": "INFO",
        "format": "json",
        "log_dir": None,
    },
    "scheduler": {
        "timezone": "UTC",
    },
    "queue": {
        "backend": "memory",
        "redis_url": "redis://localhost:6379/0",
        "redis_prefix": "crew",
        "max_dead_letters": 1000,
        "ledger_size": 10000,
        "backoff": {
            "base_delay": 2.0,
            "multiplier": 2.0,
            "max_delay": 300.0,
            "max_retries": 3,
            "visibility_timeout": 600.0,
        },
        "categories": {},
    },
    "engine": {
        "global_concurrency": 10,
        "default_deadline": 300.0,
        "handler_timeout": 60.0,
        "grace_period": 30.0,
        "poll_interval": 0.5,
        "max_poll_interval": 5.0,
        "categories": {},
    },
    "factory": {
        "context_timeout": 2.0,
        "templates": {},
    },
    "metrics": {
        "ema_weight": 0.5,
        "export": {"enabled": False, "port": 9100},
    },
    "health": {
        "enabled": True,
        "interval": 300.0,
        "retention": 20,
        "memory_warning_percent": 80.0,
        "memory_critical_percent": 90.0,
        "agent_success_threshold": 80,
    },
    "audit": {
        "path": "./logs/audit.jsonl",
    },
}


def _coerce_env(value: str) -> Any:
    """Convert numeric and boolean environment strings."""
    if value.isdigit():
        return int(value)
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    try:
        return float(value)
    except ValueError:
        return value


def _set_path(config: Dict[str, Any], path: tuple, value: Any) -> None:
    section = config
    for key in path[:-1]:
        if not isinstance(section.get(key), dict):
            section[key] = {}
        section = section[key]
    section[path[-1]] = value


def _apply_defaults(config: Dict[str, Any], defaults: Dict[str, Any]) -> None:
    for key, default_value in defaults.items():
        if key not in config or config[key] is None and isinstance(default_value, dict):
            config[key] = (
                {} if isinstance(default_value, dict) else default_value
            )
        if isinstance(default_value, dict) and isinstance(config[key], dict):
            _apply_defaults(config[key], default_value)


def load_config(
    config_path: Optional[str] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """
    Load configuration from YAML file and environment variables.

    Environment variables override YAML values; missing keys are filled
    from DEFAULT_CONFIG.

    Args:
        config_path: Path to crew.yaml
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Merged configuration dictionary

    Raises:
        ConfigurationError: If the file is not valid YAML
    """
    config: Dict[str, Any] = {}

    if config_path:
        config_file = Path(config_path)
        if config_file.exists():
            try:
                with open(config_file) as f:
                    config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
            if not isinstance(config, dict):
                raise ConfigurationError(f"{config_path} must contain a mapping")
            logger.info(f"Loaded config from {config_path}")
        else:
            logger.warning(f"Config file not found: {config_path}, using defaults")

    environ = os.environ if environ is None else environ
    for env_var, path in ENV_MAPPINGS.items():
        value = environ.get(env_var)
        if value is not None:
            _set_path(config, path, _coerce_env(value))

    _apply_defaults(config, DEFAULT_CONFIG)

    for section in ("agents",):
        config.setdefault(section, [])
    for section in ("collaborators", "result_handlers", "context_providers"):
        if config.get(section) is None:
            config[section] = {}

    return config


def clock_from_config(config: Dict[str, Any]) -> Clock:
    """SystemClock in the configured scheduler timezone."""
    name = (config.get("scheduler") or {}).get("timezone") or "UTC"
    if name.upper() == "UTC":
        return SystemClock(timezone.utc)
    try:
        return SystemClock(ZoneInfo(name))
    except (KeyError, ValueError) as e:
        raise ConfigurationError(f"Unknown timezone {name!r}") from e


# =============================================================================
# ORCHESTRATOR CLASS
# =============================================================================


class OrchestratorState(Enum):
    """Lifecycle states."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class Orchestrator:
    """
    Composes the crew components and owns their lifecycle.

    This class is responsible for:
    1. Registering agents and checking capability bindings
    2. Arming schedule triggers for enabled agents
    3. Turning trigger fires into queued tasks (in background builds)
    4. Running the category worker pools and the health monitor
    5. The administrative surface for operators

    Usage::

        orchestrator = Orchestrator(config, collaborators=bindings)
        orchestrator.load_agents(config["agents"])
        await orchestrator.start()
        ...
        await orchestrator.stop()
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        collaborators: Optional[CollaboratorRegistry] = None,
        metrics: Optional[MetricsRecorder] = None,
        audit: Optional[AuditLogger] = None,
        clock: Optional[Clock] = None,
        queue_clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the orchestrator and its components.

        Args:
            config: Merged configuration (see load_config)
            collaborators: Capability bindings and context providers
            metrics: Metrics recorder
            audit: Audit logger (defaults to audit.path from config)
            clock: Time source for triggers and the health loop
            queue_clock: Epoch-seconds time source for queues and deadlines
        """
        self.config = config if config is not None else load_config(None, environ={})
        _apply_defaults(self.config, DEFAULT_CONFIG)

        self.clock = clock or clock_from_config(self.config)
        self.collaborators = collaborators or CollaboratorRegistry()
        self.metrics = metrics or create_metrics_recorder(self.config.get("metrics"))
        self.audit = audit or AuditLogger((self.config.get("audit") or {}).get("path"))

        self._state = OrchestratorState.STOPPED
        self._builds: Set[asyncio.Task] = set()
        self._tasks_built: Dict[str, int] = {}

        # Components
        self.registry = AgentRegistry(clock=self.clock)

        queue_config = self.config["queue"]
        self.ledger = CompletionLedger(int(queue_config.get("ledger_size", 10000)))
        self.stores: Dict[Capability, TaskQueueStore] = {
            category: create_queue_store(category, queue_config, self.ledger, queue_clock)
            for category in Capability
        }
        self._active_stores: Dict[Capability, TaskQueueStore] = {}

        factory_config = self.config["factory"]
        self.factory = TaskFactory(
            provider_lookup=self.collaborators.provider,
            context_timeout=float(factory_config.get("context_timeout", 2.0)),
            templates=templates_from_config(factory_config.get("templates")),
            max_retries_for=lambda category: self.stores[category].policy.max_retries,
            clock=queue_clock,
        )

        self.engine = ExecutionEngine(
            self.registry,
            self.stores,
            self.collaborators,
            self.metrics,
            audit=self.audit,
            config=self.config["engine"],
            clock=queue_clock,
        )

        health_config = self.config["health"]
        self.health = HealthMonitor(
            self.registry,
            self._active_stores,
            metrics=self.metrics,
            clock=self.clock,
            interval=float(health_config.get("interval", 300.0)),
            retention=int(health_config.get("retention", 20)),
            memory_warning_percent=float(health_config.get("memory_warning_percent", 80.0)),
            memory_critical_percent=float(health_config.get("memory_critical_percent", 90.0)),
            agent_success_threshold=int(health_config.get("agent_success_threshold", 80)),
        )

    # =========================================================================
    # AGENTS
    # =========================================================================

    def register_agent(self, config: AgentConfig) -> AgentConfig:
        """
        Register an agent. Agents are registered while stopped.

        Raises:
            ConfigurationError: If running, or the config is invalid
        """
        if self._state is not OrchestratorState.STOPPED:
            raise ConfigurationError(
                f"Cannot register agent {config.id} while {self._state.value}"
            )
        stored = self.registry.register(config)
        self.metrics.register_agent(stored.id, stored.category.value)
        self._tasks_built.setdefault(stored.id, 0)
        return stored

    def load_agents(self, entries: Iterable[Dict[str, Any]]) -> List[AgentConfig]:
        """Register agents from the ``agents`` config section."""
        return [self.register_agent(config) for config in agents_from_config(entries)]

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def state(self) -> OrchestratorState:
        return self._state

    def _set_state(self, state: OrchestratorState, reason: str = "") -> None:
        previous, self._state = self._state, state
        logger.info(f"Orchestrator {previous.value} -> {state.value}")
        self.audit.log_state_transition(previous.value, state.value, reason)

    async def start(self) -> None:
        """
        Start the orchestrator.

        A no-op (with a warning) unless stopped. A failure while starting
        rolls everything back to stopped and re-raises.

        Raises:
            ConfigurationError: If a capability lacks a collaborator or a
                result handler
        """
        if self._state is not OrchestratorState.STOPPED:
            logger.warning(f"start() called while {self._state.value}, ignoring")
            return

        self._set_state(OrchestratorState.STARTING)
        try:
            agents = self.registry.list()
            missing = self.collaborators.missing_bindings(a.capability for a in agents)
            if missing:
                raise ConfigurationError(f"Missing bindings: {', '.join(missing)}")

            for category in sorted({a.category for a in agents}, key=lambda c: c.value):
                store = self.stores[category]
                await store.initialize()
                self._active_stores[category] = store

            self.engine.start()
            self.registry.arm(self._on_fire)
            if self.config["health"].get("enabled", True):
                self.health.start()
        except Exception as e:
            logger.error(f"Orchestrator failed to start: {e}")
            await self._teardown(grace_period=0)
            self._set_state(OrchestratorState.STOPPED, reason=f"start failed: {e}")
            raise

        self.metrics.set_system_info(
            agents=str(len(self.registry)),
            categories=",".join(c.value for c in self._active_stores),
        )
        self._set_state(OrchestratorState.RUNNING)
        logger.info(
            f"Crew orchestrator running: {self.registry.active_trigger_count} triggers armed, "
            f"{len(self._active_stores)} category pools"
        )

    async def stop(self, grace_period: Optional[float] = None) -> None:
        """
        Stop the orchestrator.

        Cancels all triggers and pending task builds, drains the workers
        up to the grace period, stops the health monitor and closes the
        queues. A no-op when already stopped.
        """
        if self._state is OrchestratorState.STOPPED:
            logger.debug("stop() called while stopped, ignoring")
            return
        if self._state is not OrchestratorState.RUNNING:
            logger.warning(f"stop() called while {self._state.value}, ignoring")
            return

        self._set_state(OrchestratorState.STOPPING)
        await self._teardown(grace_period)
        self._set_state(OrchestratorState.STOPPED)

    async def _teardown(self, grace_period: Optional[float]) -> None:
        self.registry.disarm()

        builds = list(self._builds)
        for build in builds:
            build.cancel()
        if builds:
            await asyncio.gather(*builds, return_exceptions=True)
        self._builds.clear()

        cancelled = await self.engine.drain(grace_period)
        if cancelled:
            logger.warning(f"{cancelled} executions cancelled during drain")

        await self.health.stop()

        for category, store in list(self._active_stores.items()):
            try:
                await store.close()
            except QueueError as e:
                logger.warning(f"Queue {category.value} cleanup failed: {e}")
        self._active_stores.clear()

    # =========================================================================
    # TRIGGER HANDLING
    # =========================================================================

    def _on_fire(self, agent_id: str, fire_at: datetime) -> None:
        """Trigger callback: schedule a background build, never execute inline."""
        if self._state is not OrchestratorState.RUNNING:
            return
        build = asyncio.create_task(
            self._build_and_submit(agent_id, fire_at), name=f"build-{agent_id}"
        )
        self._builds.add(build)
        build.add_done_callback(self._builds.discard)

    async def _build_and_submit(self, agent_id: str, fire_at: datetime) -> None:
        try:
            agent = self.registry.get(agent_id)
            if not agent.enabled:
                return
            task = await self.factory.build(
                agent, external_context={"scheduled_for": fire_at.isoformat()}
            )
            await self.engine.submit(task)
            self._tasks_built[agent_id] = self._tasks_built.get(agent_id, 0) + 1
        except CrewError as e:
            logger.error(f"Could not schedule task for agent {agent_id}: {e}")
            self.metrics.record_error("scheduler", type(e).__name__)
            self.audit.log_error("scheduler", type(e).__name__, str(e), agent_id=agent_id)

    # =========================================================================
    # ADMINISTRATIVE SURFACE
    # =========================================================================

    async def toggle_agent(self, agent_id: str, enabled: bool) -> AgentConfig:
        """
        Enable or disable an agent.

        Raises:
            AgentNotFoundError: If the agent does not exist
        """
        config = await self.registry.set_enabled(agent_id, enabled)
        self.audit.log_agent_toggled(agent_id, enabled, self.registry.is_armed(agent_id))
        return config

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Metrics of every registered agent."""
        return {
            config.id: self.metrics.snapshot(config.id).to_dict()
            for config in self.registry.list()
        }

    async def get_agent_status(self, agent_id: str, dead_letter_limit: int = 10) -> Dict[str, Any]:
        """
        Status of one agent.

        Raises:
            AgentNotFoundError: If the agent does not exist
        """
        config = self.registry.get(agent_id)
        next_fire = self.registry.next_fire_time(agent_id)

        store = self.stores[config.category]
        try:
            dead = [
                record.to_dict()
                for record in await store.dead_letters()
                if record.task.agent_id == agent_id
            ][:dead_letter_limit]
        except QueueError as e:
            logger.warning(f"Could not list dead letters of {agent_id}: {e}")
            dead = []

        return {
            "config": config.to_dict(),
            "enabled": config.enabled,
            "trigger_armed": self.registry.is_armed(agent_id),
            "next_fire": next_fire.isoformat() if next_fire else None,
            "in_flight": self.engine.in_flight(agent_id),
            "tasks_built": self._tasks_built.get(agent_id, 0),
            "metrics": self.metrics.snapshot(agent_id).to_dict(),
            "dead_letters": dead,
        }

    def get_health(self) -> Optional[HealthSnapshot]:
        """Most recent health snapshot."""
        return self.health.latest()

    async def dead_letters(self, category: Optional[Capability] = None) -> List[DeadLetter]:
        """Dead letters of one category, or of all categories."""
        stores = [self.stores[category]] if category else list(self.stores.values())
        records: List[DeadLetter] = []
        for store in stores:
            records.extend(await store.dead_letters())
        return records

    async def get_status(self) -> Dict[str, Any]:
        """Overall orchestrator status."""
        queues = {}
        for category, store in self._active_stores.items():
            try:
                queues[category.value] = (await store.stats()).to_dict()
            except QueueError as e:
                queues[category.value] = {"error": str(e)}

        latest = self.health.latest()
        return {
            "state": self._state.value,
            "agents": len(self.registry),
            "triggers_armed": self.registry.active_trigger_count,
            "pending_builds": len(self._builds),
            "pools": self.engine.status(),
            "queues": queues,
            "metrics": self.metrics.summary(),
            "health": latest.status if latest else None,
        }

    def tasks_built(self, agent_id: str) -> int:
        return self._tasks_built.get(agent_id, 0)


# =============================================================================
# FACTORY
# =============================================================================


def create_orchestrator(
    config: Dict[str, Any],
    dry_run: bool = False,
    clock: Optional[Clock] = None,
) -> Orchestrator:
    """
    Create an Orchestrator from configuration.

    In dry-run mode every capability is bound to DryRunCollaborator and
    LoggingResultHandler; otherwise bindings are loaded from the
    ``collaborators``, ``result_handlers`` and ``context_providers``
    sections.

    Args:
        config: Merged configuration
        dry_run: Bind placeholder collaborators
        clock: Optional time source

    Returns:
        Orchestrator with agents registered
    """
    if dry_run:
        collaborators = CollaboratorRegistry()
        collaborators.bind_all(DryRunCollaborator(), LoggingResultHandler())
    else:
        collaborators = build_collaborator_registry(config)

    orchestrator = Orchestrator(config, collaborators=collaborators, clock=clock)
    orchestrator.load_agents(config.get("agents") or [])
    return orchestrator


# =============================================================================
# CLI ARGUMENT PARSING
# =============================================================================


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Law Firm Crew Orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--config",
        default="config/crew.yaml",
        help="Path to configuration file (default: config/crew.yaml)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run with placeholder collaborators that call no external service",
    )

    return parser.parse_args(argv)


# =============================================================================
# SIGNAL HANDLING
# =============================================================================


def setup_signal_handlers(shutdown_event: asyncio.Event, loop: asyncio.AbstractEventLoop) -> None:
    """Setup signal handlers for graceful shutdown."""

    def signal_handler(sig: signal.Signals) -> None:
        logger.info(f"Received signal {sig.name}, initiating shutdown...")
        shutdown_event.set()

    # Only set signal handlers if running on Unix-like systems
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler, sig)


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


async def async_main(config: Dict[str, Any], dry_run: bool = False) -> None:
    """Async entry point for the orchestrator."""
    orchestrator = create_orchestrator(config, dry_run=dry_run)

    shutdown_event = asyncio.Event()
    setup_signal_handlers(shutdown_event, asyncio.get_running_loop())

    await orchestrator.start()
    try:
        await shutdown_event.wait()
    finally:
        await orchestrator.stop()
        orchestrator.audit.close()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    log_config = config["logging"]
    setup_logging(
        level="DEBUG" if args.debug else str(log_config.get("level", "INFO")),
        fmt=log_config.get("format", "json"),
        log_dir=log_config.get("log_dir"),
    )

    logger.info("=" * 60)
    logger.info("Law Firm Crew Orchestrator")
    logger.info("=" * 60)

    try:
        asyncio.run(async_main(config, dry_run=args.dry_run))
    except KeyboardInterrupt:
        logger.info("Orchestrator stopped by user")
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e}")
        sys.exit(2)
    except Exception as e:
        logger.critical(f"Orchestrator failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
