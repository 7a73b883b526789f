# =============================================================================
# LAW FIRM CREW ORCHESTRATOR - AGENT AND TASK MODELS
# =============================================================================
"""
Agent and Task Models

Data structures shared by the registry, the task factory, the queue
store and the execution engine.

Agents are configured once at startup and never mutated in place: the
only change allowed after registration is toggling the enabled flag,
which produces a new AgentConfig via with_enabled().
"""

from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence


# =============================================================================
# ENUMS
# =============================================================================


class Capability(Enum):
    """
    Category of work an agent performs.

    The capability selects the collaborator that executes the task, the
    queue the task waits in and the result handler that applies it.
    """
    CONTENT_CREATION = "content_creation"
    SOCIAL_POSTING = "social_posting"
    REVIEW_RESPONSE = "review_response"
    LEAD_FOLLOW_UP = "lead_follow_up"
    PERFORMANCE_CHECK = "performance_check"
    LEGAL_UPDATE = "legal_update"
    SEO_OPTIMIZATION = "seo_optimization"
    WEBSITE_UPDATE = "website_update"
    COMPETITIVE_ANALYSIS = "competitive_analysis"

    @classmethod
    def parse(cls, value: Any) -> "Capability":
        """Accept an enum member, its value or its name (any case)."""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for member in cls:
            if text.lower() in (member.value, member.name.lower()):
                return member
        raise ValueError(f"Unknown capability: {value!r}")


# =============================================================================
# AGENT CONFIGURATION
# =============================================================================


@dataclass(frozen=True)
class AgentConfig:
    """
    Immutable configuration of a scheduled agent.

    Attributes:
        id: Unique agent identifier
        name: Display name
        capability: Category of work (selects queue, collaborator, handler)
        schedule: Cron expression (5 fields, or 6 with a leading seconds field)
        max_concurrency: Max simultaneous executions for this agent
        priority: Higher values are dequeued first
        enabled: Whether the agent's trigger is armed
        description: Free text
        parameters: Opaque execution knobs (model, temperature, ...), read-only
        tools: Tool names the collaborator may use, as a tuple
        memory: Whether the collaborator keeps memory between runs
        learning: Whether the collaborator learns from results
        deadline_seconds: Per-task execution deadline, None for engine default
        max_retries: Override of the category retry ceiling
    """
    id: str
    name: str
    capability: Capability
    schedule: str
    max_concurrency: int = 1
    priority: int = 5
    enabled: bool = True
    description: str = ""
    parameters: Mapping[str, Any] = field(default_factory=dict)
    tools: Sequence[str] = field(default_factory=tuple)
    memory: bool = False
    learning: bool = False
    deadline_seconds: Optional[float] = None
    max_retries: Optional[int] = None

    def __post_init__(self):
        # Registry snapshots hand these out, so no caller may mutate them
        frozen_parameters = MappingProxyType(copy.deepcopy(dict(self.parameters)))
        object.__setattr__(self, "parameters", frozen_parameters)
        object.__setattr__(self, "tools", tuple(self.tools))

    @property
    def category(self) -> Capability:
        """Task category; mirrors the capability."""
        return self.capability

    def with_enabled(self, enabled: bool) -> "AgentConfig":
        """Return a copy with the enabled flag changed."""
        return replace(self, enabled=enabled)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "capability": self.capability.value,
            "schedule": self.schedule,
            "max_concurrency": self.max_concurrency,
            "priority": self.priority,
            "enabled": self.enabled,
            "description": self.description,
            "parameters": copy.deepcopy(dict(self.parameters)),
            "tools": list(self.tools),
            "memory": self.memory,
            "learning": self.learning,
            "deadline_seconds": self.deadline_seconds,
            "max_retries": self.max_retries,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentConfig":
        """Create from a configuration dictionary (YAML agents section)."""
        deadline = data.get("deadline_seconds")
        max_retries = data.get("max_retries")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            capability=Capability.parse(data["capability"]),
            schedule=str(data["schedule"]),
            max_concurrency=int(data.get("max_concurrency", 1)),
            priority=int(data.get("priority", 5)),
            enabled=bool(data.get("enabled", True)),
            description=data.get("description", ""),
            parameters=dict(data.get("parameters", {})),
            tools=list(data.get("tools", [])),
            memory=bool(data.get("memory", False)),
            learning=bool(data.get("learning", False)),
            deadline_seconds=float(deadline) if deadline is not None else None,
            max_retries=int(max_retries) if max_retries is not None else None,
        )


# =============================================================================
# TASK
# =============================================================================


def _new_task_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Task:
    """
    One concrete unit of work produced by a trigger fire.

    Created by the TaskFactory; afterwards only the queue store and the
    execution engine touch it (retry_count, last_error).

    Attributes:
        agent_id: Owning agent
        category: Queue / capability the task belongs to
        title: Human readable title
        description: Human readable description
        priority: Inherited from the agent (higher = more urgent)
        dependencies: Task ids that must be acked before this one runs
        context: Free-form context handed to the collaborator
        deadline: Absolute epoch seconds after which the task is void
        retry_count: Failed attempts so far
        max_retries: Failed attempts allowed before dead-lettering
        degraded_context: Context keys that could not be fetched
    """
    agent_id: str
    category: Capability
    title: str = ""
    description: str = ""
    priority: int = 5
    dependencies: List[str] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    deadline: Optional[float] = None
    retry_count: int = 0
    max_retries: int = 3
    degraded_context: List[str] = field(default_factory=list)
    last_error: Optional[str] = None
    id: str = field(default_factory=_new_task_id)
    created_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Check whether the task deadline has passed."""
        if self.deadline is None:
            return False
        return (now if now is not None else time.time()) >= self.deadline

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "category": self.category.value,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "context": self.context,
            "deadline": self.deadline,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "degraded_context": list(self.degraded_context),
            "last_error": self.last_error,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Create Task from dictionary."""
        return cls(
            id=data["id"],
            agent_id=data["agent_id"],
            category=Capability.parse(data["category"]),
            title=data.get("title", ""),
            description=data.get("description", ""),
            priority=data.get("priority", 5),
            dependencies=list(data.get("dependencies", [])),
            context=dict(data.get("context", {})),
            deadline=data.get("deadline"),
            retry_count=data.get("retry_count", 0),
            max_retries=data.get("max_retries", 3),
            degraded_context=list(data.get("degraded_context", [])),
            last_error=data.get("last_error"),
            created_at=data.get("created_at", ""),
        )


__all__ = [
    "Capability",
    "AgentConfig",
    "Task",
]
