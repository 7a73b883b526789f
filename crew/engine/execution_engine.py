# =============================================================================
# LAW FIRM CREW ORCHESTRATOR - EXECUTION ENGINE
# =============================================================================
"""
Execution Engine

Runs queued tasks: one worker pool per category, each worker claiming a
task from its category queue, invoking the collaborator bound to the
capability under a deadline, handing the result to the category's
result handler and acking or nacking.

Features:
    - Category isolation (a slow category never blocks another)
    - Pool size = min(category concurrency, global cap)
    - Per-agent in-flight limits (max_concurrency of each agent)
    - Every collaborator call bounded by the task deadline or a default
    - Idle workers wait on the queue's wake-up event with growing poll
      intervals, never busy-spin
    - Dead letters reported to metrics, audit log and listeners
    - Cooperative drain with a grace period

Task execution flow:
    claim --> invoke collaborator (deadline) --> result handler --> ack
                      |                               |
                      +------------ failure ----------+--> nack
                                                            |
                                            retry ceiling --+--> dead letter
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Mapping, Optional

from crew.engine.collaborators import CollaboratorRegistry, HandlerOutcome
from crew.errors import (
    AgentNotFoundError,
    CollaboratorError,
    ConfigurationError,
    ExecutionError,
    ExecutionTimeoutError,
    ResultHandlerError,
)
from crew.registry.agent_registry import AgentRegistry
from crew.registry.models import AgentConfig, Capability, Task
from crew.scheduler.queue_manager import (
    DeadLetter,
    QueueError,
    TaskNotFoundError,
    TaskQueueStore,
)
from crew_monitoring.logger import AuditLogger, log_context
from crew_monitoring.metrics import MetricsRecorder


logger = logging.getLogger(__name__)


DeadLetterCallback = Callable[[DeadLetter], Any]


# =============================================================================
# ENGINE CONFIGURATION
# =============================================================================


DEFAULT_ENGINE_CONFIG: Dict[str, Any] = {
    "global_concurrency": 10,
    "default_deadline": 300.0,
    "handler_timeout": 60.0,
    "grace_period": 30.0,
    "poll_interval": 0.5,
    "max_poll_interval": 5.0,
    "categories": {},
}


# =============================================================================
# CATEGORY WORKER POOL
# =============================================================================


class CategoryWorkerPool:
    """
    Workers of one category.

    Claims are serialized by a dispatch lock so the per-agent in-flight
    check and the dequeue happen atomically.
    """

    def __init__(
        self,
        category: Capability,
        store: TaskQueueStore,
        engine: "ExecutionEngine",
        size: int,
        poll_interval: float = 0.5,
        max_poll_interval: float = 5.0,
    ):
        self.category = category
        self.store = store
        self.engine = engine
        self.size = size
        self.poll_interval = poll_interval
        self.max_poll_interval = max(max_poll_interval, poll_interval)

        self._workers: List[asyncio.Task] = []
        self._in_flight: Dict[str, int] = defaultdict(int)
        self._dispatch_lock = asyncio.Lock()
        self._stopping = False
        self.tasks_claimed = 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Spawn the workers."""
        self._stopping = False
        for index in range(self.size):
            worker = asyncio.create_task(
                self._worker(index), name=f"worker-{self.category.value}-{index}"
            )
            self._workers.append(worker)
        logger.info(f"Worker pool {self.category.value} started with {self.size} workers")

    def stop_claiming(self) -> None:
        """Refuse new claims and wake idle workers so they exit."""
        self._stopping = True
        self.store.notify()

    async def drain(self, grace_period: float) -> int:
        """
        Stop claiming and wait for in-flight executions.

        Executions still running after *grace_period* are cancelled; their
        tasks stay leased and are redelivered after the lease expires.

        Returns:
            Number of workers cancelled
        """
        self.stop_claiming()
        workers, self._workers = self._workers, []
        if not workers:
            return 0

        _, pending = await asyncio.wait(workers, timeout=grace_period)
        for worker in pending:
            worker.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                f"Cancelled {len(pending)} executions of {self.category.value} "
                f"after {grace_period}s grace period"
            )
        return len(pending)

    @property
    def alive_workers(self) -> int:
        return sum(1 for w in self._workers if not w.done())

    @property
    def stopping(self) -> bool:
        return self._stopping

    def in_flight(self, agent_id: Optional[str] = None) -> int:
        """In-flight executions of one agent, or of the whole pool."""
        if agent_id is not None:
            return self._in_flight.get(agent_id, 0)
        return sum(self._in_flight.values())

    # -------------------------------------------------------------------------
    # Worker loop
    # -------------------------------------------------------------------------

    async def _claim(self) -> Optional[Task]:
        async with self._dispatch_lock:
            if self._stopping:
                return None
            saturated = {
                agent_id
                for agent_id, count in self._in_flight.items()
                if count >= self.engine.agent_limit(agent_id)
            }
            task = await self.store.dequeue(exclude_agents=saturated)
            if task is not None:
                self._in_flight[task.agent_id] += 1
                self.tasks_claimed += 1
            return task

    def _release(self, task: Task) -> None:
        remaining = self._in_flight.get(task.agent_id, 0) - 1
        if remaining > 0:
            self._in_flight[task.agent_id] = remaining
        else:
            self._in_flight.pop(task.agent_id, None)
        # a saturated agent may have queued work
        self.store.notify()

    async def _idle_wait(self, backoff: float) -> None:
        wait = backoff
        try:
            ready_in = await self.store.seconds_until_ready()
        except QueueError:
            ready_in = None
        if ready_in is not None:
            wait = min(wait, max(ready_in, 0.001))
        await self.store.wait_for_work(wait)

    async def _worker(self, index: int) -> None:
        backoff = self.poll_interval
        while not self._stopping:
            try:
                self.store.clear_notification()
                task = await self._claim()
            except QueueError as e:
                logger.error(f"Worker {self.category.value}-{index} could not claim: {e}")
                self.engine.metrics.record_error("queue", type(e).__name__)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self.max_poll_interval)
                continue

            if task is None:
                if self._stopping:
                    break
                await self._idle_wait(backoff)
                backoff = min(backoff * 2, self.max_poll_interval)
                continue

            backoff = self.poll_interval
            try:
                await self.engine.run(task, self.store)
            except Exception as e:
                # run() handles task failures itself; this only guards the loop
                logger.error(f"Worker {self.category.value}-{index} error: {e}", exc_info=True)
                self.engine.metrics.record_error("worker", type(e).__name__)
            finally:
                self._release(task)

        logger.debug(f"Worker {self.category.value}-{index} exited")


# =============================================================================
# EXECUTION ENGINE
# =============================================================================


class ExecutionEngine:
    """
    Runs tasks from the category queues.

    Attributes:
        registry: Agent registry (capability and limits of each agent)
        stores: Category -> queue store
        collaborators: Capability bindings
        metrics: Metrics recorder
        audit: Optional audit logger
    """

    def __init__(
        self,
        registry: AgentRegistry,
        stores: Mapping[Capability, TaskQueueStore],
        collaborators: CollaboratorRegistry,
        metrics: MetricsRecorder,
        audit: Optional[AuditLogger] = None,
        config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the engine.

        Args:
            registry: Agent registry
            stores: Queue store per category
            collaborators: Collaborator / result handler bindings
            metrics: Metrics recorder
            audit: Audit logger for failures and dead letters
            config: ``engine`` config section
            clock: Epoch-seconds time source shared with the queue stores
        """
        self.registry = registry
        self.stores = dict(stores)
        self.collaborators = collaborators
        self.metrics = metrics
        self.audit = audit
        self.config = {**DEFAULT_ENGINE_CONFIG, **(config or {})}
        self.clock = clock

        self.global_concurrency = int(self.config["global_concurrency"])
        self.default_deadline = float(self.config["default_deadline"])
        self.handler_timeout = float(self.config["handler_timeout"])
        self.grace_period = float(self.config["grace_period"])

        self.pools: Dict[Capability, CategoryWorkerPool] = {}
        self._listeners: List[DeadLetterCallback] = []

        for store in self.stores.values():
            store.add_dead_letter_listener(self._on_dead_letter)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def pool_size(self, category: Capability) -> int:
        """
        Workers for a category: the configured category concurrency (or
        the sum of its agents' limits) capped by the global limit.
        """
        category_config = (self.config.get("categories") or {}).get(category.value) or {}
        configured = category_config.get("concurrency")
        if configured is None:
            configured = sum(
                agent.max_concurrency
                for agent in self.registry.list()
                if agent.category == category
            )
        return max(1, min(int(configured), self.global_concurrency))

    def start(self) -> None:
        """Start one worker pool per category that has registered agents."""
        categories = {agent.category for agent in self.registry.list()}
        for category in sorted(categories, key=lambda c: c.value):
            if category in self.pools:
                continue
            store = self.stores.get(category)
            if store is None:
                raise ConfigurationError(f"No queue store for category {category.value}")
            pool = CategoryWorkerPool(
                category,
                store,
                self,
                size=self.pool_size(category),
                poll_interval=float(self.config["poll_interval"]),
                max_poll_interval=float(self.config["max_poll_interval"]),
            )
            self.pools[category] = pool
            pool.start()

    async def drain(self, grace_period: Optional[float] = None) -> int:
        """
        Stop all pools: refuse new claims at once, wait for in-flight work.

        Returns:
            Number of executions cancelled after the grace period
        """
        grace = self.grace_period if grace_period is None else grace_period
        pools, self.pools = list(self.pools.values()), {}
        for pool in pools:
            pool.stop_claiming()
        cancelled = await asyncio.gather(*(pool.drain(grace) for pool in pools))
        return sum(cancelled)

    def add_dead_letter_listener(self, listener: DeadLetterCallback) -> None:
        """Register a callback invoked with every dead letter."""
        self._listeners.append(listener)

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    async def submit(self, task: Task) -> None:
        """Enqueue a task on its category queue."""
        store = self.stores.get(task.category)
        if store is None:
            raise ConfigurationError(f"No queue store for category {task.category.value}")
        await store.enqueue(task)

    def agent_limit(self, agent_id: str) -> int:
        """Max concurrent executions of an agent (1 for unknown agents)."""
        try:
            return self.registry.get(agent_id).max_concurrency
        except AgentNotFoundError:
            return 1

    def in_flight(self, agent_id: str) -> int:
        """In-flight executions of an agent across all pools."""
        return sum(pool.in_flight(agent_id) for pool in self.pools.values())

    # =========================================================================
    # TASK EXECUTION
    # =========================================================================

    async def run(self, task: Task, store: TaskQueueStore) -> bool:
        """
        Execute one claimed task and settle it on *store*.

        Task failures never propagate: they are recorded and nacked.
        Cancellation (drain timeout) propagates without settling, so the
        lease expires and the task is redelivered.

        Returns:
            True if the task was executed successfully
        """
        category = task.category.value
        started = time.monotonic()

        with log_context(task_id=task.id, agent_id=task.agent_id, category=category):
            self.metrics.execution_started(category)
            try:
                outcome = await self._execute(task)
            except ExecutionError as e:
                await self._fail(task, store, e, time.monotonic() - started)
                return False
            except Exception as e:
                error = CollaboratorError(f"unexpected {type(e).__name__}: {e}")
                await self._fail(task, store, error, time.monotonic() - started)
                return False
            finally:
                self.metrics.execution_finished(category)

            duration_ms = (time.monotonic() - started) * 1000.0
            try:
                await store.ack(task.id)
            except QueueError as e:
                logger.error(f"Could not ack task {task.id}: {e}")
                self.metrics.record_error("queue", type(e).__name__)

            self.metrics.record_success(
                task.agent_id,
                duration_ms,
                items_produced=outcome.items_produced,
                engagement=outcome.engagement,
            )
            logger.info(
                f"Task {task.id} of agent {task.agent_id} succeeded in {duration_ms:.1f}ms"
            )
            return True

    async def _execute(self, task: Task) -> HandlerOutcome:
        """
        Invoke the collaborator and the result handler.

        Raises:
            ExecutionTimeoutError: Deadline exceeded
            CollaboratorError: Collaborator missing or raised
            ResultHandlerError: Handler missing, raised or reported failure
        """
        try:
            agent = self.registry.get(task.agent_id)
        except AgentNotFoundError as e:
            raise CollaboratorError(str(e)) from e

        try:
            collaborator = self.collaborators.collaborator_for(task.category)
        except ConfigurationError as e:
            raise CollaboratorError(str(e)) from e
        try:
            handler = self.collaborators.handler_for(task.category)
        except ConfigurationError as e:
            raise ResultHandlerError(str(e)) from e

        deadline = self._deadline_for(task, agent)
        timeout = deadline - self.clock()
        if timeout <= 0:
            raise ExecutionTimeoutError(f"deadline of task {task.id} passed before execution")

        context = self._invocation_context(task, agent)
        try:
            result = await asyncio.wait_for(collaborator.invoke(context, deadline), timeout)
        except asyncio.TimeoutError as e:
            raise ExecutionTimeoutError(
                f"collaborator for {task.category.value} exceeded {timeout:.2f}s deadline"
            ) from e
        except ExecutionError:
            raise
        except Exception as e:
            raise CollaboratorError(f"{type(e).__name__}: {e}") from e

        try:
            raw = await asyncio.wait_for(handler.handle(task, result), self.handler_timeout)
            outcome = HandlerOutcome.coerce(raw)
        except asyncio.TimeoutError as e:
            raise ResultHandlerError(
                f"result handler exceeded {self.handler_timeout}s"
            ) from e
        except ResultHandlerError:
            raise
        except Exception as e:
            raise ResultHandlerError(f"{type(e).__name__}: {e}") from e

        if not outcome.success:
            raise ResultHandlerError(outcome.message or "result handler reported failure")
        return outcome

    def _deadline_for(self, task: Task, agent: AgentConfig) -> float:
        if task.deadline is not None:
            return task.deadline
        seconds = agent.deadline_seconds or self.default_deadline
        return self.clock() + seconds

    @staticmethod
    def _invocation_context(task: Task, agent: AgentConfig) -> Dict[str, Any]:
        return {
            "task_id": task.id,
            "agent_id": task.agent_id,
            "agent_name": agent.name,
            "category": task.category.value,
            "title": task.title,
            "description": task.description,
            "priority": task.priority,
            "attempt": task.retry_count + 1,
            "parameters": copy.deepcopy(dict(agent.parameters)),
            "tools": list(agent.tools),
            "memory": agent.memory,
            "learning": agent.learning,
            "data": dict(task.context),
            "degraded_context": list(task.degraded_context),
        }

    async def _fail(
        self,
        task: Task,
        store: TaskQueueStore,
        error: ExecutionError,
        duration: float,
    ) -> None:
        reason = f"{type(error).__name__}: {error}"
        logger.warning(
            f"Task {task.id} of agent {task.agent_id} failed "
            f"(attempt {task.retry_count + 1}/{task.max_retries}): {reason}"
        )
        self.metrics.record_failure(task.agent_id, reason)
        if self.audit is not None:
            self.audit.log_task_failure(
                task.id,
                task.agent_id,
                type(error).__name__,
                str(error),
                attempt=task.retry_count + 1,
                duration=duration,
            )

        try:
            await store.nack(task.id, reason)
        except TaskNotFoundError:
            logger.warning(f"Task {task.id} no longer held by its queue, nack skipped")
        except QueueError as e:
            logger.error(f"Could not nack task {task.id}: {e}")
            self.metrics.record_error("queue", type(e).__name__)

    # =========================================================================
    # DEAD LETTERS
    # =========================================================================

    def _on_dead_letter(self, record: DeadLetter) -> None:
        task = record.task
        logger.error(
            f"Dead letter: task {task.id} of agent {task.agent_id} "
            f"({task.category.value}) after {record.attempts} attempts: {record.reason}"
        )
        self.metrics.record_dead_letter(task.agent_id)
        if self.audit is not None:
            self.audit.log_dead_letter(
                task.id,
                task.agent_id,
                task.category.value,
                record.reason,
                record.attempts,
                details={"title": task.title},
            )
        for listener in self._listeners:
            try:
                listener(record)
            except Exception as e:
                logger.error(f"Dead-letter listener failed: {e}")

    # =========================================================================
    # STATUS
    # =========================================================================

    def status(self) -> Dict[str, Any]:
        """Pool sizes, alive workers and in-flight counts per category."""
        return {
            category.value: {
                "size": pool.size,
                "alive_workers": pool.alive_workers,
                "in_flight": pool.in_flight(),
                "tasks_claimed": pool.tasks_claimed,
                "stopping": pool.stopping,
            }
            for category, pool in self.pools.items()
        }


__all__ = [
    "ExecutionEngine",
    "CategoryWorkerPool",
    "DeadLetterCallback",
    "DEFAULT_ENGINE_CONFIG",
]
