# =============================================================================
# LAW FIRM CREW ORCHESTRATOR - AGENT REGISTRY
# =============================================================================
"""
Agent Registry

Holds the configuration of every scheduled agent and the schedule
trigger of each enabled one.

Features:
    - Validation at registration (unique id, cron schedule, limits)
    - Snapshot listing (callers never see live state)
    - Serialized enable/disable that arms or cancels the agent's trigger
    - Arm/disarm of all triggers for the orchestrator lifecycle

Usage:
    registry = AgentRegistry()
    for config in agents_from_config(raw_config["agents"]):
        registry.register(config)

    registry.arm(on_fire)                  # triggers for enabled agents
    await registry.set_enabled("seo-dominator-001", False)
    registry.disarm()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from crew.errors import AgentNotFoundError, ConfigurationError, DuplicateAgentError
from crew.registry.models import AgentConfig
from crew.scheduler.clock import Clock, SystemClock
from crew.scheduler.cron_trigger import ScheduleTrigger, validate_schedule


logger = logging.getLogger(__name__)


FireCallback = Callable[[str, datetime], Any]


# =============================================================================
# AGENT REGISTRY
# =============================================================================


class AgentRegistry:
    """
    Registry of agent configurations and their schedule triggers.

    Configurations are immutable; set_enabled() swaps in a copy with the
    new flag. Triggers only exist while the registry is armed.
    """

    def __init__(self, clock: Optional[Clock] = None):
        """
        Initialize the registry.

        Args:
            clock: Time source handed to every trigger
        """
        self.clock = clock or SystemClock()
        self._agents: Dict[str, AgentConfig] = {}
        self._triggers: Dict[str, ScheduleTrigger] = {}
        self._on_fire: Optional[FireCallback] = None
        self._lock = asyncio.Lock()

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(self, config: AgentConfig) -> AgentConfig:
        """
        Register an agent.

        Args:
            config: Agent configuration

        Returns:
            The stored configuration (schedule normalized)

        Raises:
            DuplicateAgentError: If the id is already registered
            ConfigurationError: If the schedule or limits are invalid
        """
        if not config.id:
            raise ConfigurationError("Agent id must not be empty")
        if config.id in self._agents:
            raise DuplicateAgentError(f"Agent {config.id} is already registered")
        if config.max_concurrency < 1:
            raise ConfigurationError(
                f"Agent {config.id}: max_concurrency must be >= 1, "
                f"got {config.max_concurrency}"
            )
        if config.max_retries is not None and config.max_retries < 1:
            raise ConfigurationError(f"Agent {config.id}: max_retries must be >= 1")
        if config.deadline_seconds is not None and config.deadline_seconds <= 0:
            raise ConfigurationError(f"Agent {config.id}: deadline_seconds must be > 0")

        try:
            schedule = validate_schedule(config.schedule)
        except ConfigurationError as e:
            raise ConfigurationError(f"Agent {config.id}: {e}") from e

        stored = replace(config, schedule=schedule)
        self._agents[stored.id] = stored
        logger.info(
            f"Registered agent {stored.id} ({stored.capability.value}, "
            f"schedule='{stored.schedule}', enabled={stored.enabled})"
        )

        if self.armed and stored.enabled:
            self._start_trigger(stored)
        return stored

    def get(self, agent_id: str) -> AgentConfig:
        """
        Get an agent configuration.

        Raises:
            AgentNotFoundError: If no agent has this id
        """
        try:
            return self._agents[agent_id]
        except KeyError:
            raise AgentNotFoundError(f"Agent {agent_id} not found") from None

    def list(self) -> List[AgentConfig]:
        """Snapshot of all configurations in registration order."""
        return list(self._agents.values())

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    # =========================================================================
    # ENABLE / DISABLE
    # =========================================================================

    async def set_enabled(self, agent_id: str, enabled: bool) -> AgentConfig:
        """
        Enable or disable an agent.

        While armed, enabling starts a trigger if none is active and
        disabling cancels the active one. Concurrent calls are serialized.

        Returns:
            The updated configuration
        """
        async with self._lock:
            current = self.get(agent_id)
            updated = current.with_enabled(enabled)
            self._agents[agent_id] = updated

            if self.armed:
                if enabled and not self.is_armed(agent_id):
                    self._start_trigger(updated)
                elif not enabled:
                    self._stop_trigger(agent_id)

            if current.enabled != enabled:
                logger.info(f"Agent {agent_id} {'enabled' if enabled else 'disabled'}")
            return updated

    # =========================================================================
    # TRIGGERS
    # =========================================================================

    @property
    def armed(self) -> bool:
        """True between arm() and disarm()."""
        return self._on_fire is not None

    def arm(self, on_fire: FireCallback) -> int:
        """
        Start a trigger for every enabled agent.

        Args:
            on_fire: Called with (agent_id, fire_time) on every fire

        Returns:
            Number of triggers started
        """
        self._on_fire = on_fire
        started = 0
        for config in self._agents.values():
            if config.enabled and not self.is_armed(config.id):
                self._start_trigger(config)
                started += 1
        logger.info(f"Armed {started} agent triggers")
        return started

    def disarm(self) -> int:
        """
        Cancel every trigger. Idempotent.

        Returns:
            Number of triggers cancelled
        """
        cancelled = 0
        for agent_id in list(self._triggers):
            self._stop_trigger(agent_id)
            cancelled += 1
        self._on_fire = None
        if cancelled:
            logger.info(f"Disarmed {cancelled} agent triggers")
        return cancelled

    def is_armed(self, agent_id: str) -> bool:
        """Whether the agent currently has an active trigger."""
        trigger = self._triggers.get(agent_id)
        return trigger is not None and not trigger.cancelled

    def next_fire_time(self, agent_id: str) -> Optional[datetime]:
        """Next fire of the agent's trigger, None when not armed."""
        self.get(agent_id)
        trigger = self._triggers.get(agent_id)
        return trigger.next_fire_time() if trigger else None

    def trigger_fire_count(self, agent_id: str) -> int:
        trigger = self._triggers.get(agent_id)
        return trigger.fire_count if trigger else 0

    @property
    def active_trigger_count(self) -> int:
        return sum(1 for t in self._triggers.values() if not t.cancelled)

    def _start_trigger(self, config: AgentConfig) -> None:
        on_fire = self._on_fire
        agent_id = config.id

        def fire(fire_at: datetime) -> Any:
            return on_fire(agent_id, fire_at)

        trigger = ScheduleTrigger(config.schedule, fire, clock=self.clock, name=agent_id)
        self._triggers[agent_id] = trigger
        trigger.start()

    def _stop_trigger(self, agent_id: str) -> None:
        trigger = self._triggers.pop(agent_id, None)
        if trigger is not None:
            trigger.cancel()


# =============================================================================
# CONFIG LOADING
# =============================================================================


def agents_from_config(entries: Optional[Iterable[Dict[str, Any]]]) -> List[AgentConfig]:
    """
    Build agent configurations from the ``agents`` config section.

    Raises:
        ConfigurationError: If an entry is missing required keys or has an
            unknown capability
    """
    configs = []
    for index, entry in enumerate(entries or []):
        try:
            configs.append(AgentConfig.from_dict(entry))
        except KeyError as e:
            raise ConfigurationError(f"Agent entry #{index} is missing {e}") from e
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Agent entry #{index} is invalid: {e}") from e
    return configs


__all__ = [
    "AgentRegistry",
    "FireCallback",
    "agents_from_config",
]
