# =============================================================================
# LAW FIRM CREW ORCHESTRATOR - ERRORS
# =============================================================================
"""
Error Taxonomy

Exceptions shared across the crew components. Queue-specific errors live
in crew.scheduler.queue_manager next to the store that raises them.

Hierarchy:
    CrewError
    ├── ConfigurationError          bad schedule, bad limits, missing binding
    │   └── DuplicateAgentError     agent id already registered
    ├── NotFoundError
    │   └── AgentNotFoundError      unknown agent id
    ├── ContextUnavailableError     context provider timed out or failed
    └── ExecutionError              one failed attempt of a task
        ├── ExecutionTimeoutError   collaborator exceeded its deadline
        ├── CollaboratorError       collaborator raised
        └── ResultHandlerError      result handler raised or reported failure
"""


class CrewError(Exception):
    """Base exception for all crew orchestrator errors."""
    pass


# =============================================================================
# CONFIGURATION
# =============================================================================


class ConfigurationError(CrewError):
    """Invalid configuration detected at registration or start time."""
    pass


class DuplicateAgentError(ConfigurationError):
    """An agent with the same id is already registered."""
    pass


# =============================================================================
# LOOKUP
# =============================================================================


class NotFoundError(CrewError):
    """A requested entity does not exist."""
    pass


class AgentNotFoundError(NotFoundError):
    """No agent is registered under the given id."""
    pass


# =============================================================================
# TASK CONSTRUCTION AND EXECUTION
# =============================================================================


class ContextUnavailableError(CrewError):
    """A context provider could not supply its value in time."""
    pass


class ExecutionError(CrewError):
    """Base class for failures of a single task attempt."""
    pass


class ExecutionTimeoutError(ExecutionError):
    """The collaborator did not finish before the task deadline."""
    pass


class CollaboratorError(ExecutionError):
    """The collaborator bound to the task's capability raised an error."""
    pass


class ResultHandlerError(ExecutionError):
    """The category result handler failed to apply the result."""
    pass


__all__ = [
    "CrewError",
    "ConfigurationError",
    "DuplicateAgentError",
    "NotFoundError",
    "AgentNotFoundError",
    "ContextUnavailableError",
    "ExecutionError",
    "ExecutionTimeoutError",
    "CollaboratorError",
    "ResultHandlerError",
]
