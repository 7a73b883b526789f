# =============================================================================
# LAW FIRM CREW ORCHESTRATOR - SCHEDULER PACKAGE
# =============================================================================
"""
Scheduler Package

Time sources, cron triggers and the per-category task queues.

Components:
    - Clock / SystemClock / ManualClock: Injectable time sources
    - ScheduleTrigger: Fires a callback on every cron match
    - TaskQueueStore: Priority queue with leases, retries and dead letters

Usage:
    from crew.scheduler import ScheduleTrigger, SystemClock

    trigger = ScheduleTrigger("0 9 * * *", on_fire, clock=SystemClock())
    trigger.start()
    ...
    trigger.cancel()
"""

from crew.scheduler.clock import Clock, ManualClock, SystemClock
from crew.scheduler.cron_trigger import ScheduleTrigger, next_fire_after, validate_schedule
from crew.scheduler.queue_manager import (
    # Main class
    TaskQueueStore,
    create_queue_store,
    # Backends
    QueueBackendInterface,
    MemoryQueueBackend,
    RedisQueueBackend,
    # Data structures
    BackoffPolicy,
    CompletionLedger,
    DeadLetter,
    QueueItem,
    QueueStats,
    # Enums
    QueueStatus,
    TaskOutcome,
    # Exceptions
    QueueError,
    QueueUnavailableError,
    TaskNotFoundError,
)

__all__ = [
    # Clocks
    "Clock",
    "ManualClock",
    "SystemClock",
    # Triggers
    "ScheduleTrigger",
    "next_fire_after",
    "validate_schedule",
    # Queue
    "TaskQueueStore",
    "create_queue_store",
    "QueueBackendInterface",
    "MemoryQueueBackend",
    "RedisQueueBackend",
    "BackoffPolicy",
    "CompletionLedger",
    "DeadLetter",
    "QueueItem",
    "QueueStats",
    "QueueStatus",
    "TaskOutcome",
    "QueueError",
    "QueueUnavailableError",
    "TaskNotFoundError",
]
