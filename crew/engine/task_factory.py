# =============================================================================
# LAW FIRM CREW ORCHESTRATOR - TASK FACTORY
# =============================================================================
"""
Task Factory

Builds a concrete Task for an agent at trigger time.

Each capability has a template: a title, a description, static context
and dynamic context keys. Dynamic keys are filled by named context
providers (keyword lists, trending hashtags, competitor keywords, ...).

Availability over completeness: every provider call runs under a short
timeout. A provider that times out or raises leaves its key at the
template default and the key is listed in task.degraded_context; the
build itself never fails because of a provider.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from crew.errors import ConfigurationError, ContextUnavailableError
from crew.registry.models import AgentConfig, Capability, Task


logger = logging.getLogger(__name__)


ProviderLookup = Callable[[str], Optional[Callable[[], Any]]]


# =============================================================================
# TEMPLATES
# =============================================================================


@dataclass(frozen=True)
class DynamicKey:
    """A context key filled from a named provider, with its fallback value."""
    provider: str
    default: Any = None


@dataclass(frozen=True)
class TaskTemplate:
    """
    Template of the tasks of one capability.

    Attributes:
        title: Task title
        description: Task description
        context: Static context (deep-copied into every task)
        dynamic: Context key -> DynamicKey
    """
    title: str
    description: str
    context: Dict[str, Any] = field(default_factory=dict)
    dynamic: Dict[str, DynamicKey] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TaskTemplate":
        dynamic = {}
        for key, spec in (data.get("dynamic") or {}).items():
            if isinstance(spec, str):
                dynamic[key] = DynamicKey(provider=spec)
            else:
                dynamic[key] = DynamicKey(provider=spec["provider"], default=spec.get("default"))
        return cls(
            title=data.get("title", ""),
            description=data.get("description", ""),
            context=dict(data.get("context") or {}),
            dynamic=dynamic,
        )


DEFAULT_SEO_KEYWORDS = [
    "immigration lawyer",
    "personal injury attorney",
    "workers compensation",
]
DEFAULT_HASHTAGS = ["#LegalHelp", "#ImmigrationLaw", "#PersonalInjury"]
DEFAULT_COMPETITOR_KEYWORDS = [
    "charlotte immigration lawyer",
    "raleigh personal injury attorney",
]


DEFAULT_TEMPLATES: Dict[Capability, TaskTemplate] = {
    Capability.CONTENT_CREATION: TaskTemplate(
        title="Create Legal Content",
        description="Generate SEO-optimized legal content for the website",
        context={
            "topics": ["immigration", "personal_injury", "workers_compensation", "criminal_defense"],
            "target_audience": "north_carolina_residents",
            "content_type": "blog_post",
        },
        dynamic={"seo_keywords": DynamicKey("seo_keywords", DEFAULT_SEO_KEYWORDS)},
    ),
    Capability.SOCIAL_POSTING: TaskTemplate(
        title="Social Media Posting",
        description="Create and schedule social media posts",
        context={
            "platforms": ["facebook", "instagram", "linkedin", "twitter"],
            "post_type": "success_story",
            "tone": "professional_friendly",
        },
        dynamic={"hashtags": DynamicKey("trending_hashtags", DEFAULT_HASHTAGS)},
    ),
    Capability.REVIEW_RESPONSE: TaskTemplate(
        title="Review Management",
        description="Monitor and respond to new reviews",
        context={
            "platforms": ["google", "avvo"],
            "response_type": "professional",
            "check_period": "4_hours",
        },
    ),
    Capability.LEAD_FOLLOW_UP: TaskTemplate(
        title="Lead Follow-up",
        description="Follow up with recent leads",
        context={
            "lead_sources": ["website", "google_ads", "referrals"],
            "follow_up_type": "email_sequence",
            "timeframe": "24_hours",
        },
        dynamic={"recent_leads": DynamicKey("recent_leads", [])},
    ),
    Capability.PERFORMANCE_CHECK: TaskTemplate(
        title="Performance Analysis",
        description="Analyze and optimize website performance",
        context={
            "metrics": ["page_speed", "conversion_rate", "bounce_rate"],
            "pages": ["homepage", "practice_areas", "contact"],
            "optimization_type": "conversion",
        },
    ),
    Capability.LEGAL_UPDATE: TaskTemplate(
        title="Federal Register Monitor",
        description="Monitor federal register for legal updates",
        context={
            "categories": ["immigration", "labor", "commerce"],
            "keywords": ["visa", "immigration", "workers", "compensation"],
            "timeframe": "1_hour",
        },
    ),
    Capability.SEO_OPTIMIZATION: TaskTemplate(
        title="SEO Optimization",
        description="Optimize website for search engines",
        context={
            "locations": ["charlotte", "raleigh", "durham", "winston-salem"],
            "practice_areas": ["immigration", "personal_injury", "workers_comp"],
        },
        dynamic={"target_keywords": DynamicKey("competitor_keywords", DEFAULT_COMPETITOR_KEYWORDS)},
    ),
    Capability.WEBSITE_UPDATE: TaskTemplate(
        title="Dynamic Content Update",
        description="Update website with fresh, dynamic content",
        context={
            "sections": ["hero", "testimonials", "news", "practice_areas"],
            "update_type": "real_time",
            "personalize_for": "returning_visitors",
        },
    ),
    Capability.COMPETITIVE_ANALYSIS: TaskTemplate(
        title="Competitive Analysis",
        description="Track competitor rankings and content in target markets",
        context={
            "locations": ["charlotte", "raleigh", "durham", "winston-salem"],
            "practice_areas": ["immigration", "personal_injury", "workers_comp"],
        },
        dynamic={"competitor_keywords": DynamicKey("competitor_keywords", DEFAULT_COMPETITOR_KEYWORDS)},
    ),
}


def templates_from_config(
    config: Optional[Mapping[str, Any]],
    base: Optional[Mapping[Capability, TaskTemplate]] = None,
) -> Dict[Capability, TaskTemplate]:
    """
    Overlay the ``factory.templates`` config section on the default templates.

    Raises:
        ConfigurationError: On an unknown capability or malformed entry
    """
    templates = dict(base if base is not None else DEFAULT_TEMPLATES)
    for name, data in (config or {}).items():
        try:
            templates[Capability.parse(name)] = TaskTemplate.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid task template {name!r}: {e}") from e
    return templates


# =============================================================================
# TASK FACTORY
# =============================================================================


class TaskFactory:
    """
    Builds tasks from agent configurations and live context.

    Attributes:
        context_timeout: Seconds allowed per context provider call
        templates: Capability -> TaskTemplate
    """

    def __init__(
        self,
        provider_lookup: Optional[ProviderLookup] = None,
        context_timeout: float = 2.0,
        templates: Optional[Mapping[Capability, TaskTemplate]] = None,
        max_retries_for: Optional[Callable[[Capability], int]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the factory.

        Args:
            provider_lookup: Returns the provider registered under a name
            context_timeout: Seconds allowed per provider call
            templates: Template overrides (defaults to DEFAULT_TEMPLATES)
            max_retries_for: Category retry ceiling (defaults to 3)
            clock: Epoch-seconds time source for deadlines
        """
        self._lookup = provider_lookup or (lambda name: None)
        self.context_timeout = context_timeout
        self.templates: Dict[Capability, TaskTemplate] = dict(
            templates if templates is not None else DEFAULT_TEMPLATES
        )
        self._max_retries_for = max_retries_for or (lambda capability: 3)
        self._clock = clock
        self.tasks_built = 0
        self.degraded_builds = 0

    async def build(
        self,
        agent: AgentConfig,
        external_context: Optional[Mapping[str, Any]] = None,
        dependencies: Optional[List[str]] = None,
    ) -> Task:
        """
        Build a task for an agent.

        Args:
            agent: Agent configuration
            external_context: Caller context merged over the template
            dependencies: Task ids that must succeed first

        Returns:
            New Task (degraded_context lists keys that fell back to defaults)
        """
        template = self.templates.get(agent.capability) or TaskTemplate(
            title=agent.name, description=agent.description
        )

        context = copy.deepcopy(template.context)
        degraded: List[str] = []

        if template.dynamic:
            keys = list(template.dynamic)
            results = await asyncio.gather(
                *(self._fetch(key, template.dynamic[key]) for key in keys)
            )
            for key, (value, ok) in zip(keys, results):
                context[key] = value
                if not ok:
                    degraded.append(key)

        if external_context:
            context.update(external_context)

        now = self._clock()
        task = Task(
            agent_id=agent.id,
            category=agent.category,
            title=template.title or agent.name,
            description=template.description or agent.description,
            priority=agent.priority,
            dependencies=list(dependencies or []),
            context=context,
            deadline=now + agent.deadline_seconds if agent.deadline_seconds else None,
            max_retries=(
                agent.max_retries
                if agent.max_retries is not None
                else self._max_retries_for(agent.category)
            ),
            degraded_context=degraded,
        )

        self.tasks_built += 1
        if degraded:
            self.degraded_builds += 1
            logger.warning(
                f"Built task {task.id} for agent {agent.id} with degraded context: "
                f"{', '.join(degraded)}"
            )
        else:
            logger.debug(f"Built task {task.id} for agent {agent.id}")
        return task

    async def _fetch(self, key: str, spec: DynamicKey) -> Tuple[Any, bool]:
        """Fetch one dynamic value. Returns (value, fetched_ok)."""
        provider = self._lookup(spec.provider)
        if provider is None:
            logger.debug(f"No provider {spec.provider} registered, using default for {key}")
            return copy.deepcopy(spec.default), True

        try:
            return await self._call_provider(spec.provider, provider), True
        except ContextUnavailableError as e:
            logger.warning(f"Context '{key}' unavailable: {e}")
            return copy.deepcopy(spec.default), False

    async def _call_provider(self, name: str, provider: Callable[[], Any]) -> Any:
        """
        Call a provider under the context timeout.

        Sync providers run in a worker thread so a blocking call cannot
        stall the event loop.

        Raises:
            ContextUnavailableError: On timeout or provider error
        """
        try:
            if inspect.iscoroutinefunction(provider):
                pending = provider()
            else:
                pending = asyncio.to_thread(provider)
            value = await asyncio.wait_for(pending, timeout=self.context_timeout)
            if inspect.isawaitable(value):
                value = await asyncio.wait_for(value, timeout=self.context_timeout)
            return value
        except asyncio.TimeoutError as e:
            raise ContextUnavailableError(
                f"provider {name} timed out after {self.context_timeout}s"
            ) from e
        except Exception as e:
            raise ContextUnavailableError(f"provider {name} failed: {e}") from e


__all__ = [
    "TaskFactory",
    "TaskTemplate",
    "DynamicKey",
    "DEFAULT_TEMPLATES",
    "templates_from_config",
]
