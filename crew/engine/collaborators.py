# =============================================================================
# LAW FIRM CREW ORCHESTRATOR - COLLABORATOR INTERFACES
# =============================================================================
"""
Collaborator Interfaces

Boundary contracts between the orchestrator core and the services that
do the actual work:

1. Collaborator: performs the work of one capability (content generation,
   social publishing, review responses, ...)
2. ResultHandler: applies a collaborator result (publish a draft, post to
   an account, send a follow-up email, write an SEO report)
3. Context providers: plain callables registered by name that return
   live data for task context (keyword lists, trending hashtags, ...)

Bindings are keyed by Capability and checked when the orchestrator
starts, so a missing binding is a ConfigurationError instead of a
runtime surprise.

Concrete implementations are loaded from ``module:attribute`` paths in
the configuration via load_object().
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from crew.errors import ConfigurationError
from crew.registry.models import Capability, Task


logger = logging.getLogger(__name__)


# =============================================================================
# DATA STRUCTURES
# =============================================================================


@dataclass
class HandlerOutcome:
    """
    Result of applying a collaborator result.

    Attributes:
        success: Whether the side effect happened
        items_produced: Opaque domain counter (posts, drafts, emails, ...)
        engagement: Opaque domain counter supplied by the handler
        message: Human-readable summary
        details: Additional details
    """
    success: bool
    items_produced: int = 0
    engagement: int = 0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "items_produced": self.items_produced,
            "engagement": self.engagement,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }

    @classmethod
    def ok(cls, items_produced: int = 0, engagement: int = 0, message: str = "") -> "HandlerOutcome":
        """Create a successful outcome."""
        return cls(success=True, items_produced=items_produced, engagement=engagement, message=message)

    @classmethod
    def failure(cls, message: str, details: Optional[Dict[str, Any]] = None) -> "HandlerOutcome":
        """Create a failed outcome."""
        return cls(success=False, message=message, details=details or {})

    @classmethod
    def coerce(cls, value: Union["HandlerOutcome", bool, None]) -> "HandlerOutcome":
        """Normalize a handler return value (outcome, bool or None)."""
        if isinstance(value, cls):
            return value
        if value is None or value is True:
            return cls.ok()
        if value is False:
            return cls.failure("Result handler reported failure")
        raise TypeError(f"Unsupported result handler return value: {value!r}")


# =============================================================================
# INTERFACES
# =============================================================================


class Collaborator(ABC):
    """
    Performs the work of one capability.

    Subclasses implement invoke(). The engine enforces the deadline; the
    argument is informational so a collaborator can pass it on (HTTP
    timeouts, model request limits).
    """

    @abstractmethod
    async def invoke(self, context: Dict[str, Any], deadline: float) -> Any:
        """
        Execute a task.

        Args:
            context: Invocation context built by the engine (task metadata,
                agent parameters, task context under "data")
            deadline: Absolute epoch seconds by which the call must finish

        Returns:
            Raw result, passed unchanged to the result handler
        """
        pass


class ResultHandler(ABC):
    """Applies the result of one category."""

    @abstractmethod
    async def handle(self, task: Task, result: Any) -> Union[HandlerOutcome, bool, None]:
        """
        Apply a raw collaborator result.

        Returns:
            HandlerOutcome, or a bool (None counts as success)
        """
        pass


class CallableCollaborator(Collaborator):
    """
    Adapts a plain (async or sync) function to the Collaborator interface.

    Sync functions run in a worker thread so the engine deadline can
    interrupt the wait and a blocking call cannot stall other workers.
    """

    def __init__(self, func: Callable[..., Any]):
        self.func = func

    async def invoke(self, context: Dict[str, Any], deadline: float) -> Any:
        if inspect.iscoroutinefunction(self.func):
            return await self.func(context, deadline)
        result = await asyncio.to_thread(self.func, context, deadline)
        if inspect.isawaitable(result):
            result = await result
        return result


class CallableResultHandler(ResultHandler):
    """Adapts a plain (async or sync) function to the ResultHandler interface."""

    def __init__(self, func: Callable[..., Any]):
        self.func = func

    async def handle(self, task: Task, result: Any) -> Union[HandlerOutcome, bool, None]:
        if inspect.iscoroutinefunction(self.func):
            return await self.func(task, result)
        outcome = await asyncio.to_thread(self.func, task, result)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome


# =============================================================================
# BUILT-IN IMPLEMENTATIONS
# =============================================================================


class DryRunCollaborator(Collaborator):
    """
    Collaborator that produces a placeholder result without calling any
    external service. Used by ``crew --dry-run``.
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.invocations = 0

    async def invoke(self, context: Dict[str, Any], deadline: float) -> Any:
        self.invocations += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        return {
            "content": f"[dry-run] {context.get('title', '')}",
            "task_id": context.get("task_id"),
            "agent_id": context.get("agent_id"),
            "executed_at": datetime.utcnow().isoformat(),
            "success": True,
        }


class LoggingResultHandler(ResultHandler):
    """Result handler that only logs the result."""

    async def handle(self, task: Task, result: Any) -> HandlerOutcome:
        logger.info(
            f"Result for task {task.id} ({task.category.value}) "
            f"of agent {task.agent_id}: {str(result)[:200]}"
        )
        return HandlerOutcome.ok(items_produced=1, message="logged")


# =============================================================================
# REGISTRY
# =============================================================================


def _capability(value: Union[Capability, str]) -> Capability:
    try:
        return Capability.parse(value)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


class CollaboratorRegistry:
    """
    Capability bindings: collaborators, result handlers and named
    context providers.
    """

    def __init__(self):
        self._collaborators: Dict[Capability, Collaborator] = {}
        self._handlers: Dict[Capability, ResultHandler] = {}
        self._providers: Dict[str, Callable[[], Any]] = {}

    # -------------------------------------------------------------------------
    # Binding
    # -------------------------------------------------------------------------

    def bind_collaborator(
        self,
        capability: Union[Capability, str],
        collaborator: Union[Collaborator, Callable[..., Any]],
    ) -> None:
        """Bind the collaborator that executes tasks of a capability."""
        capability = _capability(capability)
        if not isinstance(collaborator, Collaborator):
            if not callable(collaborator):
                raise ConfigurationError(
                    f"Collaborator for {capability.value} is not callable"
                )
            collaborator = CallableCollaborator(collaborator)
        self._collaborators[capability] = collaborator
        logger.debug(f"Bound collaborator {type(collaborator).__name__} to {capability.value}")

    def bind_handler(
        self,
        capability: Union[Capability, str],
        handler: Union[ResultHandler, Callable[..., Any]],
    ) -> None:
        """Bind the result handler of a capability."""
        capability = _capability(capability)
        if not isinstance(handler, ResultHandler):
            if not callable(handler):
                raise ConfigurationError(
                    f"Result handler for {capability.value} is not callable"
                )
            handler = CallableResultHandler(handler)
        self._handlers[capability] = handler
        logger.debug(f"Bound result handler {type(handler).__name__} to {capability.value}")

    def register_provider(self, name: str, provider: Callable[[], Any]) -> None:
        """Register a named context provider (sync or async callable)."""
        if not callable(provider):
            raise ConfigurationError(f"Context provider {name} is not callable")
        self._providers[name] = provider

    def bind_all(
        self,
        collaborator: Collaborator,
        handler: ResultHandler,
        capabilities: Optional[Iterable[Capability]] = None,
    ) -> None:
        """Bind the same collaborator and handler to many capabilities."""
        for capability in capabilities or list(Capability):
            self.bind_collaborator(capability, collaborator)
            self.bind_handler(capability, handler)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def collaborator_for(self, capability: Capability) -> Collaborator:
        try:
            return self._collaborators[capability]
        except KeyError:
            raise ConfigurationError(
                f"No collaborator bound to capability {capability.value}"
            ) from None

    def handler_for(self, capability: Capability) -> ResultHandler:
        try:
            return self._handlers[capability]
        except KeyError:
            raise ConfigurationError(
                f"No result handler bound to capability {capability.value}"
            ) from None

    def provider(self, name: str) -> Optional[Callable[[], Any]]:
        return self._providers.get(name)

    @property
    def providers(self) -> Dict[str, Callable[[], Any]]:
        return dict(self._providers)

    def missing_bindings(self, capabilities: Iterable[Capability]) -> List[str]:
        """
        Describe the missing collaborator / handler bindings.

        Returns:
            One message per missing binding, empty when all are bound
        """
        missing = []
        for capability in sorted(set(capabilities), key=lambda c: c.value):
            if capability not in self._collaborators:
                missing.append(f"collaborator for {capability.value}")
            if capability not in self._handlers:
                missing.append(f"result handler for {capability.value}")
        return missing


# =============================================================================
# DYNAMIC LOADING
# =============================================================================


def load_object(path: str) -> Any:
    """
    Import an object from a ``module:attribute`` path.

    Raises:
        ConfigurationError: If the module or attribute cannot be found
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(f"Expected 'module:attribute', got {path!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import {module_name}: {e}") from e

    obj = module
    for part in attribute.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError:
            raise ConfigurationError(f"{module_name} has no attribute {attribute}") from None
    return obj


def instantiate(spec: Union[str, Dict[str, Any]]) -> Any:
    """
    Load and build an object from config.

    Accepts a ``module:attribute`` string or a mapping with ``path`` and
    optional ``options``. Classes are instantiated with the options;
    other objects are returned as loaded.
    """
    if isinstance(spec, dict):
        path = spec.get("path")
        options = dict(spec.get("options") or {})
    else:
        path, options = spec, {}

    if not path:
        raise ConfigurationError(f"Missing object path in {spec!r}")

    obj = load_object(path)
    if inspect.isclass(obj):
        return obj(**options)
    return obj


def build_collaborator_registry(config: Dict[str, Any]) -> CollaboratorRegistry:
    """
    Create a CollaboratorRegistry from the ``collaborators``,
    ``result_handlers`` and ``context_providers`` config sections.
    """
    registry = CollaboratorRegistry()
    for capability, spec in (config.get("collaborators") or {}).items():
        registry.bind_collaborator(capability, instantiate(spec))
    for capability, spec in (config.get("result_handlers") or {}).items():
        registry.bind_handler(capability, instantiate(spec))
    for name, spec in (config.get("context_providers") or {}).items():
        registry.register_provider(name, instantiate(spec))
    return registry


__all__ = [
    "Collaborator",
    "ResultHandler",
    "HandlerOutcome",
    "CallableCollaborator",
    "CallableResultHandler",
    "DryRunCollaborator",
    "LoggingResultHandler",
    "CollaboratorRegistry",
    "load_object",
    "instantiate",
    "build_collaborator_registry",
]
