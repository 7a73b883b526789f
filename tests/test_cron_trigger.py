"""Tests for cron validation and ScheduleTrigger on a virtual clock."""

import asyncio
from datetime import timedelta

import pytest

from crew.errors import ConfigurationError
from crew.scheduler.cron_trigger import ScheduleTrigger, next_fire_after, validate_schedule


def brute_force_matches(start, hours, predicate):
    """Every whole minute in (start, start + hours] accepted by *predicate*."""
    minutes = hours * 60
    return [
        start + timedelta(minutes=k)
        for k in range(1, minutes + 1)
        if predicate(start + timedelta(minutes=k))
    ]


# =============================================================================
# VALIDATION
# =============================================================================


class TestValidateSchedule:
    def test_accepts_five_fields(self):
        assert validate_schedule("0 */2 * * *") == "0 */2 * * *"

    def test_accepts_six_fields_with_seconds(self):
        assert validate_schedule("*/10 * * * * *") == "*/10 * * * * *"

    def test_normalizes_whitespace(self):
        assert validate_schedule("  0   9,13,17 * *  * ") == "0 9,13,17 * * *"

    @pytest.mark.parametrize(
        "expression",
        ["", "   ", "not a cron", "* * *", "61 * * * *", "0 25 * * *", "* * * * * * *"],
    )
    def test_rejects_invalid(self, expression):
        with pytest.raises(ConfigurationError):
            validate_schedule(expression)

    def test_next_fire_is_strictly_after_base(self, start_time):
        assert next_fire_after("0 * * * *", start_time) == start_time + timedelta(hours=1)

    def test_six_field_seconds_lead(self, start_time):
        assert next_fire_after("0 */5 * * * *", start_time) == start_time + timedelta(minutes=5)


# =============================================================================
# TRIGGER
# =============================================================================


class TestScheduleTrigger:
    @pytest.mark.parametrize(
        "expression, predicate",
        [
            ("0 */2 * * *", lambda t: t.minute == 0 and t.hour % 2 == 0),
            ("0 9,13,17 * * *", lambda t: t.minute == 0 and t.hour in (9, 13, 17)),
            ("0 8,12,16,20 * * *", lambda t: t.minute == 0 and t.hour in (8, 12, 16, 20)),
            ("*/30 * * * 1-5", lambda t: t.minute % 30 == 0 and t.weekday() < 5),
            ("15 2 * * *", lambda t: t.minute == 15 and t.hour == 2),
        ],
    )
    @pytest.mark.anyio
    async def test_fires_exactly_at_matches_over_48_hours(
        self, clock, start_time, expression, predicate
    ):
        fired = []
        trigger = ScheduleTrigger(expression, fired.append, clock=clock)
        trigger.start()
        await clock.advance(0)

        await clock.advance(48 * 3600)
        trigger.cancel()

        assert fired == brute_force_matches(start_time, 48, predicate)
        assert trigger.fire_count == len(fired)

    @pytest.mark.anyio
    async def test_six_field_expression_fires_on_seconds(self, clock):
        fired = []
        trigger = ScheduleTrigger("*/10 * * * * *", fired.append, clock=clock)
        trigger.start()
        await clock.advance(0)

        await clock.advance(60)
        trigger.cancel()

        assert len(fired) == 6

    @pytest.mark.anyio
    async def test_six_field_expression_reads_seconds_first(self, clock, start_time):
        fired = []
        trigger = ScheduleTrigger("30 */5 * * * *", fired.append, clock=clock)
        trigger.start()
        await clock.advance(0)

        await clock.advance(3600)
        trigger.cancel()

        assert len(fired) == 12
        assert fired[0] == start_time + timedelta(seconds=30)
        assert fired[1] == start_time + timedelta(minutes=5, seconds=30)

    @pytest.mark.anyio
    async def test_no_fire_after_cancel(self, clock):
        fired = []
        trigger = ScheduleTrigger("0 * * * *", fired.append, clock=clock)
        trigger.start()
        await clock.advance(0)

        await clock.advance(2 * 3600)
        assert len(fired) == 2

        trigger.cancel()
        trigger.cancel()
        await clock.advance(10 * 3600)

        assert len(fired) == 2
        assert trigger.cancelled
        assert not trigger.active
        assert trigger.next_fire_time() is None

    @pytest.mark.anyio
    async def test_cancelled_trigger_cannot_restart(self, clock):
        trigger = ScheduleTrigger("0 * * * *", lambda t: None, clock=clock)
        trigger.start()
        trigger.cancel()

        with pytest.raises(RuntimeError):
            trigger.start()

    @pytest.mark.anyio
    async def test_next_fire_time(self, clock, start_time):
        trigger = ScheduleTrigger("0 9 * * *", lambda t: None, clock=clock)
        trigger.start()
        await clock.advance(0)

        assert trigger.next_fire_time() == start_time + timedelta(hours=9)
        trigger.cancel()

    @pytest.mark.anyio
    async def test_callback_error_does_not_stop_trigger(self, clock):
        calls = []

        def flaky(fire_at):
            calls.append(fire_at)
            raise RuntimeError("boom")

        trigger = ScheduleTrigger("0 * * * *", flaky, clock=clock)
        trigger.start()
        await clock.advance(0)

        await clock.advance(3 * 3600)
        trigger.cancel()

        assert len(calls) == 3

    @pytest.mark.anyio
    async def test_coroutine_callback_runs_in_background(self, clock):
        release = asyncio.Event()
        finished = []

        async def slow(fire_at):
            await release.wait()
            finished.append(fire_at)

        trigger = ScheduleTrigger("0 * * * *", slow, clock=clock)
        trigger.start()
        await clock.advance(0)

        # callbacks are still blocked, the trigger keeps firing
        await clock.advance(3 * 3600)
        assert trigger.fire_count == 3
        assert finished == []

        release.set()
        for _ in range(5):
            await asyncio.sleep(0)
        trigger.cancel()

        assert len(finished) == 3

    @pytest.mark.anyio
    async def test_invalid_expression_rejected_at_construction(self, clock):
        with pytest.raises(ConfigurationError):
            ScheduleTrigger("every hour", lambda t: None, clock=clock)

    @pytest.mark.anyio
    async def test_manual_clock_tracks_sleepers(self, clock):
        trigger = ScheduleTrigger("0 * * * *", lambda t: None, clock=clock)
        trigger.start()
        await clock.advance(0)

        assert clock.pending_sleepers == 1

        trigger.cancel()
        await clock.advance(0)
        assert clock.pending_sleepers == 0
