# =============================================================================
# LAW FIRM CREW ORCHESTRATOR - TASK QUEUE STORE
# =============================================================================
"""
Task Queue Store

One queue per task category, holding tasks between the trigger that
produced them and the worker that runs them.

Features:
    - Priority-based ordering (higher priority first)
    - FIFO within the same priority (enqueue sequence)
    - At-least-once delivery via leases (visibility timeout)
    - Retry with exponential backoff on nack
    - Dead-lettering after the retry ceiling
    - Dependency-gated dequeue
    - Multiple backend support (memory, Redis)

Delivery lifecycle:
    enqueue -> READY --dequeue--> LEASED --ack--> removed
                 ^                  |
                 |                  +--nack--> READY (after backoff)
                 |                  +--nack (ceiling)--> dead letter
                 +--lease expired---+
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import (
    Any,
    Callable,
    Deque,
    Dict,
    Iterable,
    List,
    Optional,
)

import redis.asyncio as redis
from redis.exceptions import RedisError

from crew.errors import CrewError
from crew.registry.models import Capability, Task


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# ENUMS AND CONSTANTS
# =============================================================================


class QueueStatus(Enum):
    """Delivery status of an item in the queue."""
    READY = "ready"
    LEASED = "leased"


class TaskOutcome(Enum):
    """Terminal outcome recorded in the completion ledger."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"


REASON_DEADLINE_EXPIRED = "deadline expired"
REASON_DEPENDENCY_FAILED = "dependency failed"


# =============================================================================
# EXCEPTIONS
# =============================================================================


class QueueError(CrewError):
    """Base exception for queue errors."""
    pass


class QueueUnavailableError(QueueError):
    """The queue backend cannot be reached."""
    pass


class TaskNotFoundError(QueueError):
    """No task with the given id is held by the queue."""
    pass


# =============================================================================
# DATA STRUCTURES
# =============================================================================


@dataclass
class BackoffPolicy:
    """
    Retry and lease configuration for one category.

    Attributes:
        base_delay: Delay before the first retry (seconds)
        multiplier: Growth factor per further retry
        max_delay: Upper bound for a single delay
        max_retries: Failed attempts before dead-lettering
        visibility_timeout: Lease duration of a dequeued task
    """
    base_delay: float = 2.0
    multiplier: float = 2.0
    max_delay: float = 300.0
    max_retries: int = 3
    visibility_timeout: float = 600.0

    def delay_for(self, previous_retries: int) -> float:
        """Delay before the next attempt: base * multiplier^previous_retries, capped."""
        delay = self.base_delay * (self.multiplier ** max(0, previous_retries))
        return min(delay, self.max_delay)

    @classmethod
    def from_config(
        cls,
        config: Optional[Dict[str, Any]] = None,
        defaults: Optional["BackoffPolicy"] = None,
    ) -> "BackoffPolicy":
        """Build a policy from a config section, falling back to *defaults*."""
        config = config or {}
        base = defaults or cls()
        return cls(
            base_delay=float(config.get("base_delay", base.base_delay)),
            multiplier=float(config.get("multiplier", base.multiplier)),
            max_delay=float(config.get("max_delay", base.max_delay)),
            max_retries=int(config.get("max_retries", base.max_retries)),
            visibility_timeout=float(
                config.get("visibility_timeout", base.visibility_timeout)
            ),
        )


@dataclass
class QueueItem:
    """
    A task together with its delivery state.

    Ordering key is (-priority, sequence): higher priority first, then
    the order in which tasks were enqueued.
    """
    task: Task
    sequence: int
    status: str = QueueStatus.READY.value
    available_at: float = 0.0
    lease_expires_at: Optional[float] = None
    enqueued_at: float = field(default_factory=time.time)
    deliveries: int = 0

    @property
    def task_id(self) -> str:
        return self.task.id

    def sort_key(self) -> tuple:
        return (-self.task.priority, self.sequence)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "task": self.task.to_dict(),
            "sequence": self.sequence,
            "status": self.status,
            "available_at": self.available_at,
            "lease_expires_at": self.lease_expires_at,
            "enqueued_at": self.enqueued_at,
            "deliveries": self.deliveries,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueItem":
        """Create from dictionary."""
        return cls(
            task=Task.from_dict(data["task"]),
            sequence=data["sequence"],
            status=data.get("status", QueueStatus.READY.value),
            available_at=data.get("available_at", 0.0),
            lease_expires_at=data.get("lease_expires_at"),
            enqueued_at=data.get("enqueued_at", time.time()),
            deliveries=data.get("deliveries", 0),
        )


@dataclass
class DeadLetter:
    """A task that exhausted its retries or could never run."""
    task: Task
    reason: str
    attempts: int
    failed_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    @property
    def category(self) -> Capability:
        return self.task.category

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task": self.task.to_dict(),
            "reason": self.reason,
            "attempts": self.attempts,
            "failed_at": self.failed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeadLetter":
        return cls(
            task=Task.from_dict(data["task"]),
            reason=data.get("reason", ""),
            attempts=data.get("attempts", 0),
            failed_at=data.get("failed_at", ""),
        )


@dataclass
class QueueStats:
    """Queue statistics."""
    category: str = ""
    ready_items: int = 0
    delayed_items: int = 0
    leased_items: int = 0
    dead_letters: int = 0
    enqueued_total: int = 0
    acked_total: int = 0
    nacked_total: int = 0
    dead_lettered_total: int = 0
    redelivered_total: int = 0

    @property
    def depth(self) -> int:
        """Tasks waiting for a worker (ready or backing off)."""
        return self.ready_items + self.delayed_items

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "depth": self.depth,
            "ready": self.ready_items,
            "delayed": self.delayed_items,
            "leased": self.leased_items,
            "dead_letters": self.dead_letters,
            "enqueued_total": self.enqueued_total,
            "acked_total": self.acked_total,
            "nacked_total": self.nacked_total,
            "dead_lettered_total": self.dead_lettered_total,
            "redelivered_total": self.redelivered_total,
        }


# =============================================================================
# COMPLETION LEDGER
# =============================================================================


class CompletionLedger:
    """
    Terminal outcomes of recent tasks, shared by all category queues.

    Used to gate dependent tasks. Bounded: the oldest entries are
    forgotten once max_entries is exceeded.
    """

    def __init__(self, max_entries: int = 10000):
        self.max_entries = max_entries
        self._outcomes: "OrderedDict[str, TaskOutcome]" = OrderedDict()

    def record(self, task_id: str, outcome: TaskOutcome) -> None:
        self._outcomes[task_id] = outcome
        self._outcomes.move_to_end(task_id)
        while len(self._outcomes) > self.max_entries:
            self._outcomes.popitem(last=False)

    def outcome(self, task_id: str) -> Optional[TaskOutcome]:
        return self._outcomes.get(task_id)

    def __len__(self) -> int:
        return len(self._outcomes)


# =============================================================================
# QUEUE BACKEND INTERFACE
# =============================================================================


class QueueBackendInterface(ABC):
    """Abstract storage interface for one category queue."""

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the backend."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the backend connection."""
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """Check the backend is reachable."""
        pass

    @abstractmethod
    async def next_sequence(self) -> int:
        """Return a monotonically increasing enqueue sequence number."""
        pass

    @abstractmethod
    async def put(self, item: QueueItem) -> None:
        """Insert or replace an item."""
        pass

    @abstractmethod
    async def get(self, task_id: str) -> Optional[QueueItem]:
        """Get a specific item by task id."""
        pass

    @abstractmethod
    async def remove(self, task_id: str) -> bool:
        """Remove an item."""
        pass

    @abstractmethod
    async def list_all(self, status: Optional[str] = None) -> List[QueueItem]:
        """List items in dequeue order, optionally filtered by status."""
        pass

    @abstractmethod
    async def add_dead_letter(self, dead_letter: DeadLetter) -> None:
        """Append a dead-letter record."""
        pass

    @abstractmethod
    async def list_dead_letters(self, limit: Optional[int] = None) -> List[DeadLetter]:
        """List dead-letter records, newest first."""
        pass

    @abstractmethod
    async def count_dead_letters(self) -> int:
        """Count dead-letter records."""
        pass

    @abstractmethod
    async def clear(self) -> int:
        """Clear all items and dead letters."""
        pass


# =============================================================================
# IN-MEMORY QUEUE BACKEND
# =============================================================================


class MemoryQueueBackend(QueueBackendInterface):
    """
    In-memory backend.

    Items live in a dict keyed by task id; ordering is computed on
    listing. Dead letters are kept in a bounded deque.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """Initialize memory backend."""
        self.config = config or {}
        self._items: Dict[str, QueueItem] = {}
        self._dead: Deque[DeadLetter] = deque(
            maxlen=int(self.config.get("max_dead_letters", 1000))
        )
        self._sequence = 0

    async def initialize(self) -> None:
        logger.debug("Memory queue backend initialized")

    async def close(self) -> None:
        pass

    async def ping(self) -> bool:
        return True

    async def next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    async def put(self, item: QueueItem) -> None:
        self._items[item.task_id] = item

    async def get(self, task_id: str) -> Optional[QueueItem]:
        return self._items.get(task_id)

    async def remove(self, task_id: str) -> bool:
        return self._items.pop(task_id, None) is not None

    async def list_all(self, status: Optional[str] = None) -> List[QueueItem]:
        items = list(self._items.values())
        if status:
            items = [i for i in items if i.status == status]
        return sorted(items, key=QueueItem.sort_key)

    async def add_dead_letter(self, dead_letter: DeadLetter) -> None:
        self._dead.appendleft(dead_letter)

    async def list_dead_letters(self, limit: Optional[int] = None) -> List[DeadLetter]:
        records = list(self._dead)
        return records[:limit] if limit is not None else records

    async def count_dead_letters(self) -> int:
        return len(self._dead)

    async def clear(self) -> int:
        count = len(self._items)
        self._items.clear()
        self._dead.clear()
        return count


# =============================================================================
# REDIS QUEUE BACKEND
# =============================================================================


class RedisQueueBackend(QueueBackendInterface):
    """
    Redis-based backend.

    Keys (per category):
        {prefix}:{category}:items  hash task_id -> item JSON
        {prefix}:{category}:seq    enqueue sequence counter
        {prefix}:{category}:dead   list of dead-letter JSON, newest first

    Queue state survives a restart; leased items whose lease expired
    while the process was down are redelivered on the next dequeue.
    """

    def __init__(self, category: str, config: Optional[Dict[str, Any]] = None):
        """Initialize Redis backend."""
        self.category = category
        self.config = config or {}
        self._client: Optional[redis.Redis] = None
        self._prefix = self.config.get("redis_prefix", "crew")
        self._max_dead = int(self.config.get("max_dead_letters", 1000))

    async def initialize(self) -> None:
        """Initialize Redis connection."""
        redis_url = self.config.get("redis_url", "redis://localhost:6379/0")
        self._client = redis.from_url(redis_url, decode_responses=True)
        try:
            await self._client.ping()
        except RedisError as e:
            raise QueueUnavailableError(f"Redis unreachable at {redis_url}: {e}") from e
        logger.info(f"Redis queue backend initialized for {self.category}")

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _key(self, suffix: str) -> str:
        return f"{self._prefix}:{self.category}:{suffix}"

    def _require_client(self) -> redis.Redis:
        if not self._client:
            raise QueueUnavailableError("Redis not initialized")
        return self._client

    async def ping(self) -> bool:
        client = self._require_client()
        try:
            return bool(await client.ping())
        except RedisError as e:
            raise QueueUnavailableError(f"Redis ping failed: {e}") from e

    async def next_sequence(self) -> int:
        client = self._require_client()
        try:
            return int(await client.incr(self._key("seq")))
        except RedisError as e:
            raise QueueUnavailableError(str(e)) from e

    async def put(self, item: QueueItem) -> None:
        client = self._require_client()
        try:
            await client.hset(
                self._key("items"), item.task_id, json.dumps(item.to_dict(), default=str)
            )
        except RedisError as e:
            raise QueueUnavailableError(str(e)) from e

    async def get(self, task_id: str) -> Optional[QueueItem]:
        client = self._require_client()
        try:
            data = await client.hget(self._key("items"), task_id)
        except RedisError as e:
            raise QueueUnavailableError(str(e)) from e
        if not data:
            return None
        return QueueItem.from_dict(json.loads(data))

    async def remove(self, task_id: str) -> bool:
        client = self._require_client()
        try:
            return bool(await client.hdel(self._key("items"), task_id))
        except RedisError as e:
            raise QueueUnavailableError(str(e)) from e

    async def list_all(self, status: Optional[str] = None) -> List[QueueItem]:
        client = self._require_client()
        try:
            values = await client.hvals(self._key("items"))
        except RedisError as e:
            raise QueueUnavailableError(str(e)) from e

        items = [QueueItem.from_dict(json.loads(v)) for v in values]
        if status:
            items = [i for i in items if i.status == status]
        return sorted(items, key=QueueItem.sort_key)

    async def add_dead_letter(self, dead_letter: DeadLetter) -> None:
        client = self._require_client()
        try:
            await client.lpush(
                self._key("dead"), json.dumps(dead_letter.to_dict(), default=str)
            )
            await client.ltrim(self._key("dead"), 0, self._max_dead - 1)
        except RedisError as e:
            raise QueueUnavailableError(str(e)) from e

    async def list_dead_letters(self, limit: Optional[int] = None) -> List[DeadLetter]:
        client = self._require_client()
        end = -1 if limit is None else limit - 1
        try:
            values = await client.lrange(self._key("dead"), 0, end)
        except RedisError as e:
            raise QueueUnavailableError(str(e)) from e
        return [DeadLetter.from_dict(json.loads(v)) for v in values]

    async def count_dead_letters(self) -> int:
        client = self._require_client()
        try:
            return int(await client.llen(self._key("dead")))
        except RedisError as e:
            raise QueueUnavailableError(str(e)) from e

    async def clear(self) -> int:
        client = self._require_client()
        try:
            count = int(await client.hlen(self._key("items")))
            await client.delete(self._key("items"), self._key("dead"), self._key("seq"))
        except RedisError as e:
            raise QueueUnavailableError(str(e)) from e
        return count


# =============================================================================
# TASK QUEUE STORE
# =============================================================================


DeadLetterListener = Callable[[DeadLetter], Any]


class TaskQueueStore:
    """
    Queue of tasks for one category.

    All operations are serialized by an asyncio lock, so a task is never
    leased to two workers at once unless its lease expired.

    Attributes:
        category: Category served by this queue
        backend: Storage backend
        policy: Retry / lease policy
        ledger: Shared completion ledger (dependency gating)
    """

    def __init__(
        self,
        category: Capability,
        backend: Optional[QueueBackendInterface] = None,
        policy: Optional[BackoffPolicy] = None,
        ledger: Optional[CompletionLedger] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the store.

        Args:
            category: Category served by this queue
            backend: Optional backend (defaults to memory)
            policy: Optional backoff policy (defaults to BackoffPolicy())
            ledger: Optional shared ledger (defaults to a private one)
            clock: Epoch-seconds time source
        """
        self.category = category
        self.backend = backend or MemoryQueueBackend()
        self.policy = policy or BackoffPolicy()
        self.ledger = ledger if ledger is not None else CompletionLedger()
        self._clock = clock

        self._lock = asyncio.Lock()
        self._work_available = asyncio.Event()
        self._listeners: List[DeadLetterListener] = []

        self._enqueued = 0
        self._acked = 0
        self._nacked = 0
        self._dead_lettered = 0
        self._redelivered = 0

    async def initialize(self) -> None:
        """Initialize the backend."""
        await self.backend.initialize()
        logger.info(f"Queue {self.category.value} initialized")

    async def close(self) -> None:
        """Close the backend."""
        await self.backend.close()

    def add_dead_letter_listener(self, listener: DeadLetterListener) -> None:
        """Register a callback invoked with every new dead letter."""
        self._listeners.append(listener)

    # =========================================================================
    # QUEUE OPERATIONS
    # =========================================================================

    async def enqueue(self, task: Task) -> QueueItem:
        """
        Add a task to the queue.

        Args:
            task: Task to enqueue (its category must match the queue)

        Returns:
            Created queue item
        """
        if task.category != self.category:
            raise QueueError(
                f"Task {task.id} belongs to {task.category.value}, "
                f"not {self.category.value}"
            )

        async with self._lock:
            now = self._clock()
            item = QueueItem(
                task=task,
                sequence=await self.backend.next_sequence(),
                available_at=now,
                enqueued_at=now,
            )
            await self.backend.put(item)
            self._enqueued += 1

        logger.debug(
            f"Enqueued task {task.id} for agent {task.agent_id} "
            f"on {self.category.value} (priority={task.priority})"
        )
        self.notify()
        return item

    async def dequeue(self, exclude_agents: Iterable[str] = ()) -> Optional[Task]:
        """
        Lease the next runnable task.

        Returns the highest-priority, earliest-enqueued task that:
        - is ready (not backing off, not leased or lease expired)
        - has all dependencies acked
        - belongs to an agent not listed in *exclude_agents*

        Expired tasks and tasks whose dependency failed are dead-lettered
        on the way.

        Returns:
            Leased task or None if nothing is runnable
        """
        excluded = set(exclude_agents)

        async with self._lock:
            now = self._clock()
            for item in await self.backend.list_all():
                if item.status == QueueStatus.LEASED.value:
                    if item.lease_expires_at is None or item.lease_expires_at > now:
                        continue
                    logger.warning(
                        f"Lease of task {item.task_id} expired, making it redeliverable"
                    )
                    item.status = QueueStatus.READY.value
                    item.lease_expires_at = None
                    self._redelivered += 1
                    await self.backend.put(item)

                if item.available_at > now:
                    continue

                if item.task.is_expired(now):
                    await self._dead_letter(item, REASON_DEADLINE_EXPIRED)
                    continue

                dependency_state = self._dependency_state(item.task)
                if dependency_state is TaskOutcome.FAILED:
                    await self._dead_letter(item, REASON_DEPENDENCY_FAILED)
                    continue
                if dependency_state is None:
                    continue

                if item.task.agent_id in excluded:
                    continue

                item.status = QueueStatus.LEASED.value
                item.lease_expires_at = now + self.policy.visibility_timeout
                item.deliveries += 1
                await self.backend.put(item)

                logger.debug(
                    f"Dequeued task {item.task_id} from {self.category.value} "
                    f"(delivery {item.deliveries})"
                )
                return item.task

            return None

    async def ack(self, task_id: str) -> bool:
        """
        Remove a task permanently after successful execution.

        Returns:
            True if the task was held by the queue
        """
        async with self._lock:
            removed = await self.backend.remove(task_id)
            if not removed:
                logger.debug(f"Ack for unknown task {task_id} on {self.category.value}")
                return False
            self.ledger.record(task_id, TaskOutcome.SUCCEEDED)
            self._acked += 1

        self.notify()
        return True

    async def nack(self, task_id: str, reason: str = "") -> bool:
        """
        Report a failed attempt.

        The retry count is incremented. Below the ceiling the task becomes
        ready again after the backoff delay; at the ceiling it is moved to
        the dead-letter list and never redelivered.

        Args:
            task_id: Task that failed
            reason: Failure reason

        Returns:
            True if the task was dead-lettered

        Raises:
            TaskNotFoundError: If the queue does not hold the task
        """
        async with self._lock:
            item = await self.backend.get(task_id)
            if item is None:
                raise TaskNotFoundError(
                    f"Task {task_id} not held by queue {self.category.value}"
                )

            self._nacked += 1
            item.task.retry_count += 1
            item.task.last_error = reason

            if item.task.retry_count >= item.task.max_retries:
                await self._dead_letter(item, reason)
                dead = True
            else:
                delay = self.policy.delay_for(item.task.retry_count - 1)
                item.status = QueueStatus.READY.value
                item.lease_expires_at = None
                item.available_at = self._clock() + delay
                await self.backend.put(item)
                dead = False
                logger.info(
                    f"Task {task_id} requeued for retry "
                    f"({item.task.retry_count}/{item.task.max_retries}) in {delay:.2f}s: {reason}"
                )

        self.notify()
        return dead

    async def dead_letters(self, limit: Optional[int] = None) -> List[DeadLetter]:
        """List dead-lettered tasks, newest first."""
        return await self.backend.list_dead_letters(limit)

    async def get(self, task_id: str) -> Optional[QueueItem]:
        """Get a queue item by task id."""
        return await self.backend.get(task_id)

    # =========================================================================
    # DEPENDENCY MANAGEMENT
    # =========================================================================

    def _dependency_state(self, task: Task) -> Optional[TaskOutcome]:
        """
        Aggregate state of a task's dependencies.

        Returns:
            SUCCEEDED when all dependencies were acked, FAILED when any was
            dead-lettered, None while some are still pending
        """
        state = TaskOutcome.SUCCEEDED
        for dependency_id in task.dependencies:
            outcome = self.ledger.outcome(dependency_id)
            if outcome is TaskOutcome.FAILED:
                return TaskOutcome.FAILED
            if outcome is None:
                state = None
        return state

    async def _dead_letter(self, item: QueueItem, reason: str) -> None:
        """Move an item to the dead-letter list. Caller holds the lock."""
        await self.backend.remove(item.task_id)
        record = DeadLetter(task=item.task, reason=reason, attempts=item.task.retry_count)
        await self.backend.add_dead_letter(record)
        self.ledger.record(item.task_id, TaskOutcome.FAILED)
        self._dead_lettered += 1

        logger.warning(
            f"Task {item.task_id} of agent {item.task.agent_id} dead-lettered "
            f"after {record.attempts} attempts: {reason}"
        )

        for listener in self._listeners:
            try:
                listener(record)
            except Exception as e:
                logger.error(f"Dead-letter listener failed: {e}")

    # =========================================================================
    # WAITING
    # =========================================================================

    def notify(self) -> None:
        """Wake workers waiting for this queue."""
        self._work_available.set()

    def clear_notification(self) -> None:
        """Reset the wake-up flag before looking for work."""
        self._work_available.clear()

    async def wait_for_work(self, timeout: float) -> bool:
        """
        Wait until notify() is called or *timeout* elapses.

        Returns:
            True if woken by a notification
        """
        try:
            await asyncio.wait_for(self._work_available.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def seconds_until_ready(self) -> Optional[float]:
        """Seconds until the next backing-off or leased item becomes runnable."""
        now = self._clock()
        upcoming: List[float] = []
        for item in await self.backend.list_all():
            if item.status == QueueStatus.LEASED.value:
                if item.lease_expires_at is not None:
                    upcoming.append(item.lease_expires_at)
            elif item.available_at > now:
                upcoming.append(item.available_at)
        if not upcoming:
            return None
        return max(0.0, min(upcoming) - now)

    # =========================================================================
    # STATS AND MONITORING
    # =========================================================================

    async def ping(self) -> bool:
        """
        Check backend reachability.

        Raises:
            QueueUnavailableError: If the backend cannot be reached
        """
        try:
            reachable = await self.backend.ping()
        except QueueUnavailableError:
            raise
        except Exception as e:
            raise QueueUnavailableError(
                f"Queue {self.category.value} unreachable: {e}"
            ) from e
        if not reachable:
            raise QueueUnavailableError(f"Queue {self.category.value} unreachable")
        return True

    async def stats(self) -> QueueStats:
        """Get queue statistics."""
        now = self._clock()
        ready = delayed = leased = 0
        for item in await self.backend.list_all():
            if item.status == QueueStatus.LEASED.value:
                leased += 1
            elif item.available_at > now:
                delayed += 1
            else:
                ready += 1

        return QueueStats(
            category=self.category.value,
            ready_items=ready,
            delayed_items=delayed,
            leased_items=leased,
            dead_letters=await self.backend.count_dead_letters(),
            enqueued_total=self._enqueued,
            acked_total=self._acked,
            nacked_total=self._nacked,
            dead_lettered_total=self._dead_lettered,
            redelivered_total=self._redelivered,
        )


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================


def create_queue_store(
    category: Capability,
    config: Optional[Dict[str, Any]] = None,
    ledger: Optional[CompletionLedger] = None,
    clock: Callable[[], float] = time.time,
) -> TaskQueueStore:
    """
    Create a queue store for a category from the queue config section.

    The backoff policy is the section's ``backoff`` defaults overridden
    by ``categories.<category>.backoff``.

    Args:
        category: Category served by the queue
        config: Queue configuration
        ledger: Shared completion ledger
        clock: Epoch-seconds time source

    Returns:
        Uninitialized TaskQueueStore
    """
    config = config or {}
    backend_type = config.get("backend", "memory")
    if backend_type == "redis":
        backend: QueueBackendInterface = RedisQueueBackend(category.value, config)
    elif backend_type == "memory":
        backend = MemoryQueueBackend(config)
    else:
        raise QueueError(f"Unknown queue backend: {backend_type}")

    defaults = BackoffPolicy.from_config(config.get("backoff"))
    category_config = (config.get("categories") or {}).get(category.value) or {}
    policy = BackoffPolicy.from_config(category_config.get("backoff"), defaults)

    return TaskQueueStore(category, backend=backend, policy=policy, ledger=ledger, clock=clock)


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    # Main class
    "TaskQueueStore",
    "create_queue_store",
    # Backend interface
    "QueueBackendInterface",
    "MemoryQueueBackend",
    "RedisQueueBackend",
    # Data structures
    "QueueItem",
    "QueueStats",
    "DeadLetter",
    "BackoffPolicy",
    "CompletionLedger",
    # Enums
    "QueueStatus",
    "TaskOutcome",
    # Exceptions
    "QueueError",
    "QueueUnavailableError",
    "TaskNotFoundError",
    # Constants
    "REASON_DEADLINE_EXPIRED",
    "REASON_DEPENDENCY_FAILED",
]
