# =============================================================================
# LAW FIRM CREW ORCHESTRATOR - SCHEDULE TRIGGER
# =============================================================================
"""
Schedule Trigger

Fires a callback at every wall-clock instant matching a cron expression.

The trigger owns no business logic. It computes the next fire time from
the current clock time, sleeps until then and fires. A coroutine
callback is scheduled as a background task, so a slow callback never
delays the next computation.

Supported syntax:
    5 fields: minute hour day-of-month month day-of-week
    6 fields: seconds first, then the five fields above
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Set

from croniter import croniter

from crew.errors import ConfigurationError
from crew.scheduler.clock import Clock, SystemClock


logger = logging.getLogger(__name__)


TriggerCallback = Callable[[datetime], Any]


# =============================================================================
# VALIDATION
# =============================================================================


def validate_schedule(expression: str) -> str:
    """
    Validate a cron expression.

    Args:
        expression: 5- or 6-field cron string

    Returns:
        The normalized expression (surrounding whitespace stripped)

    Raises:
        ConfigurationError: If the expression does not parse or has no
            future fire time
    """
    if not isinstance(expression, str) or not expression.strip():
        raise ConfigurationError("Schedule expression must be a non-empty string")

    normalized = " ".join(expression.split())
    field_count = len(normalized.split(" "))
    if field_count not in (5, 6):
        raise ConfigurationError(
            f"Schedule {expression!r} has {field_count} fields, expected 5 or 6"
        )

    try:
        if not croniter.is_valid(normalized, second_at_beginning=True):
            raise ConfigurationError(f"Invalid cron expression: {expression!r}")
        now = datetime.now(timezone.utc)
        croniter(normalized, now, second_at_beginning=True).get_next(datetime)
    except (ValueError, KeyError) as e:
        raise ConfigurationError(
            f"Cron expression {expression!r} has no future fire time: {e}"
        ) from e

    return normalized


def next_fire_after(expression: str, base: datetime) -> datetime:
    """Return the first matching instant strictly after *base*."""
    return croniter(expression, base, second_at_beginning=True).get_next(datetime)


# =============================================================================
# SCHEDULE TRIGGER
# =============================================================================


class ScheduleTrigger:
    """
    Cron-driven trigger.

    Attributes:
        expression: Normalized cron expression
        callback: Called with the scheduled fire time
        clock: Time source
        name: Used in logs and asyncio task names
        fire_count: Number of fires so far
    """

    def __init__(
        self,
        expression: str,
        callback: TriggerCallback,
        clock: Optional[Clock] = None,
        name: Optional[str] = None,
    ):
        """
        Initialize the trigger.

        Raises:
            ConfigurationError: If the expression is invalid
        """
        self.expression = validate_schedule(expression)
        self.callback = callback
        self.clock = clock or SystemClock()
        self.name = name or self.expression
        self.fire_count = 0

        self._task: Optional[asyncio.Task] = None
        self._cancelled = False
        self._next_fire: Optional[datetime] = None
        self._pending: Set[asyncio.Future] = set()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """Start the trigger loop on the running event loop."""
        if self._cancelled:
            raise RuntimeError(f"Trigger {self.name} was cancelled and cannot restart")
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name=f"trigger-{self.name}")
        logger.debug(f"Trigger {self.name} started ({self.expression})")

    def cancel(self) -> None:
        """
        Cancel the trigger.

        Idempotent. Once this returns no further callback is issued;
        callbacks already scheduled as background tasks keep running.
        """
        if self._cancelled:
            return
        self._cancelled = True
        self._next_fire = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.debug(f"Trigger {self.name} cancelled after {self.fire_count} fires")

    @property
    def active(self) -> bool:
        """True while the trigger loop is running."""
        return (
            not self._cancelled
            and self._task is not None
            and not self._task.done()
        )

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def next_fire_time(self) -> Optional[datetime]:
        """Next scheduled fire, or None when not running."""
        if self._cancelled:
            return None
        if self._next_fire is not None:
            return self._next_fire
        return next_fire_after(self.expression, self.clock.now())

    # =========================================================================
    # LOOP
    # =========================================================================

    async def _run(self) -> None:
        try:
            while not self._cancelled:
                fire_at = next_fire_after(self.expression, self.clock.now())
                self._next_fire = fire_at
                await self.clock.sleep_until(fire_at)
                if self._cancelled:
                    break
                self._fire(fire_at)
        except asyncio.CancelledError:
            pass

    def _fire(self, fire_at: datetime) -> None:
        self.fire_count += 1
        try:
            result = self.callback(fire_at)
        except Exception as e:
            logger.error(f"Trigger {self.name} callback failed: {e}", exc_info=True)
            return

        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._pending.add(future)
            future.add_done_callback(self._callback_done)

    def _callback_done(self, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Trigger {self.name} callback failed: {error}")


__all__ = [
    "ScheduleTrigger",
    "TriggerCallback",
    "validate_schedule",
    "next_fire_after",
]
