# =============================================================================
# LAW FIRM CREW ORCHESTRATOR - REGISTRY PACKAGE
# =============================================================================
"""
Registry Package

Agent configurations and the registry that owns them.

Components:
    - Capability: The nine agent capabilities (categories)
    - AgentConfig: Immutable agent configuration
    - Task: Unit of work produced for one agent
    - AgentRegistry: Roster, enable/disable and schedule triggers
"""

from crew.registry.models import AgentConfig, Capability, Task
from crew.registry.agent_registry import AgentRegistry, agents_from_config

__all__ = [
    # Models
    "AgentConfig",
    "Capability",
    "Task",
    # Registry
    "AgentRegistry",
    "agents_from_config",
]
