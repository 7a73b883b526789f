# =============================================================================
# LAW FIRM CREW ORCHESTRATOR - ENGINE PACKAGE
# =============================================================================
"""
Engine Package

Builds tasks and executes them.

Components:
    - TaskFactory: Builds tasks from agent configs and context providers
    - CollaboratorRegistry: Capability -> collaborator / result handler
    - ExecutionEngine: Category worker pools with bounded concurrency
"""

from crew.engine.collaborators import (
    CallableCollaborator,
    CallableResultHandler,
    Collaborator,
    CollaboratorRegistry,
    DryRunCollaborator,
    HandlerOutcome,
    LoggingResultHandler,
    ResultHandler,
    build_collaborator_registry,
)
from crew.engine.task_factory import DynamicKey, TaskFactory, TaskTemplate
from crew.engine.execution_engine import CategoryWorkerPool, ExecutionEngine

__all__ = [
    # Collaborators
    "Collaborator",
    "ResultHandler",
    "CallableCollaborator",
    "CallableResultHandler",
    "DryRunCollaborator",
    "LoggingResultHandler",
    "HandlerOutcome",
    "CollaboratorRegistry",
    "build_collaborator_registry",
    # Task factory
    "TaskFactory",
    "TaskTemplate",
    "DynamicKey",
    # Execution
    "ExecutionEngine",
    "CategoryWorkerPool",
]
