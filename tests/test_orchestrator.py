"""Tests for the orchestrator lifecycle, admin surface and end-to-end flows."""

import asyncio
import json

import pytest

from crew.engine.collaborators import CollaboratorRegistry, LoggingResultHandler
from crew.errors import AgentNotFoundError, ConfigurationError
from crew.main import Orchestrator, OrchestratorState, create_orchestrator, load_config
from crew.registry.models import Capability
from crew.scheduler.queue_manager import REASON_DEADLINE_EXPIRED
from tests.helpers import eventually, make_agent


def crew_config(tmp_path=None, **engine):
    config = load_config(None, environ={})
    config["queue"]["backoff"].update(base_delay=0.0, max_retries=2)
    config["engine"].update(poll_interval=0.01, max_poll_interval=0.05, **engine)
    config["health"].update(memory_warning_percent=101, memory_critical_percent=101)
    config["audit"]["path"] = str(tmp_path / "audit.jsonl") if tmp_path else None
    return config


def bindings(collaborator):
    registry = CollaboratorRegistry()
    registry.bind_all(collaborator, LoggingResultHandler())
    return registry


async def succeed(context, deadline):
    await asyncio.sleep(0.005)
    return {"content": context["title"]}


async def hang(context, deadline):
    await asyncio.sleep(60)


def every_minute_agent(**overrides):
    return make_agent("content-creator-001", schedule="*/1 * * * *",
                      **{"max_concurrency": 1, **overrides})


# =============================================================================
# END-TO-END
# =============================================================================


class TestEndToEnd:
    @pytest.mark.anyio
    async def test_three_minutes_three_successful_tasks(self, clock):
        orchestrator = Orchestrator(crew_config(), collaborators=bindings(succeed), clock=clock)
        agent = orchestrator.register_agent(every_minute_agent())
        await orchestrator.start()
        await clock.advance(0)

        await clock.advance(180)
        await eventually(lambda: orchestrator.metrics.snapshot(agent.id).tasks_completed == 3)
        await orchestrator.stop()

        snapshot = orchestrator.metrics.snapshot(agent.id)
        assert snapshot.tasks_completed == 3
        assert snapshot.success_rate == 100
        assert orchestrator.tasks_built(agent.id) == 3
        stats = await orchestrator.stores[Capability.CONTENT_CREATION].stats()
        assert stats.enqueued_total == 3
        assert stats.acked_total == 3
        assert stats.depth == 0

    @pytest.mark.anyio
    async def test_three_minutes_of_timeouts_dead_letter_each_fire(self, clock):
        config = crew_config(default_deadline=0.02)
        orchestrator = Orchestrator(config, collaborators=bindings(hang), clock=clock)
        agent = orchestrator.register_agent(every_minute_agent())
        await orchestrator.start()
        await clock.advance(0)

        await clock.advance(180)
        await eventually(
            lambda: orchestrator.metrics.snapshot(agent.id).tasks_dead_lettered == 3
        )

        pools = orchestrator.engine.status()
        assert pools["content_creation"]["alive_workers"] == pools["content_creation"]["size"]
        await orchestrator.stop()

        dead = await orchestrator.dead_letters(Capability.CONTENT_CREATION)
        assert len(dead) == 3
        assert len({record.task.id for record in dead}) == 3
        assert all(record.attempts == 2 for record in dead)
        assert all("ExecutionTimeoutError" in record.reason for record in dead)
        snapshot = orchestrator.metrics.snapshot(agent.id)
        assert snapshot.tasks_failed == 6
        assert snapshot.success_rate == 0

    @pytest.mark.anyio
    async def test_task_deadline_expiring_in_queue(self, clock):
        config = crew_config()
        orchestrator = Orchestrator(config, collaborators=bindings(hang), clock=clock)
        agent = orchestrator.register_agent(every_minute_agent(deadline_seconds=0.02))
        await orchestrator.start()
        await clock.advance(0)

        await clock.advance(60)
        await eventually(
            lambda: orchestrator.metrics.snapshot(agent.id).tasks_dead_lettered == 1
        )
        await orchestrator.stop()

        dead = await orchestrator.dead_letters()
        assert dead[0].reason == REASON_DEADLINE_EXPIRED


# =============================================================================
# LIFECYCLE
# =============================================================================


class TestLifecycle:
    @pytest.mark.anyio
    async def test_stop_is_idempotent(self, clock):
        orchestrator = Orchestrator(crew_config(), collaborators=bindings(succeed), clock=clock)
        orchestrator.register_agent(every_minute_agent())

        await orchestrator.stop()
        assert orchestrator.state is OrchestratorState.STOPPED

        await orchestrator.start()
        assert orchestrator.state is OrchestratorState.RUNNING
        assert orchestrator.registry.active_trigger_count == 1

        await orchestrator.stop()
        await orchestrator.stop()

        assert orchestrator.state is OrchestratorState.STOPPED
        assert orchestrator.registry.active_trigger_count == 0
        assert orchestrator.engine.status() == {}
        assert not orchestrator.health.running

    @pytest.mark.anyio
    async def test_start_twice_is_a_no_op(self, clock):
        orchestrator = Orchestrator(crew_config(), collaborators=bindings(succeed), clock=clock)
        orchestrator.register_agent(every_minute_agent(max_concurrency=2))
        await orchestrator.start()
        pools = orchestrator.engine.status()

        await orchestrator.start()

        assert orchestrator.state is OrchestratorState.RUNNING
        assert orchestrator.engine.status() == pools
        await orchestrator.stop()

    @pytest.mark.anyio
    async def test_missing_binding_rolls_back(self, clock):
        bound = CollaboratorRegistry()
        bound.bind_all(succeed, LoggingResultHandler(), capabilities=[Capability.SOCIAL_POSTING])
        orchestrator = Orchestrator(crew_config(), collaborators=bound, clock=clock)
        orchestrator.register_agent(every_minute_agent())

        with pytest.raises(ConfigurationError, match="content_creation"):
            await orchestrator.start()

        assert orchestrator.state is OrchestratorState.STOPPED
        assert orchestrator.registry.active_trigger_count == 0
        assert orchestrator.engine.status() == {}

    @pytest.mark.anyio
    async def test_restart_after_stop(self, clock):
        orchestrator = Orchestrator(crew_config(), collaborators=bindings(succeed), clock=clock)
        agent = orchestrator.register_agent(every_minute_agent())

        await orchestrator.start()
        await orchestrator.stop()
        await orchestrator.start()
        await clock.advance(0)

        await clock.advance(60)
        await eventually(lambda: orchestrator.metrics.snapshot(agent.id).tasks_succeeded == 1)
        await orchestrator.stop()

    @pytest.mark.anyio
    async def test_register_while_running_rejected(self, clock):
        orchestrator = Orchestrator(crew_config(), collaborators=bindings(succeed), clock=clock)
        orchestrator.register_agent(every_minute_agent())
        await orchestrator.start()

        with pytest.raises(ConfigurationError):
            orchestrator.register_agent(make_agent("late-001"))
        await orchestrator.stop()

    @pytest.mark.anyio
    async def test_stop_cancels_pending_builds(self, clock):
        never = asyncio.Event()

        async def stuck_keywords():
            await never.wait()

        collaborators = bindings(succeed)
        collaborators.register_provider("seo_keywords", stuck_keywords)
        config = crew_config()
        config["factory"]["context_timeout"] = 60.0
        orchestrator = Orchestrator(config, collaborators=collaborators, clock=clock)
        agent = orchestrator.register_agent(every_minute_agent())
        await orchestrator.start()
        await clock.advance(0)

        await clock.advance(60)
        assert (await orchestrator.get_status())["pending_builds"] == 1

        await orchestrator.stop()

        assert (await orchestrator.get_status())["pending_builds"] == 0
        assert orchestrator.tasks_built(agent.id) == 0
        stats = await orchestrator.stores[Capability.CONTENT_CREATION].stats()
        assert stats.enqueued_total == 0

    @pytest.mark.anyio
    async def test_audit_records_transitions(self, clock, tmp_path):
        config = crew_config(tmp_path)
        orchestrator = Orchestrator(config, collaborators=bindings(succeed), clock=clock)
        orchestrator.register_agent(every_minute_agent())

        await orchestrator.start()
        await orchestrator.stop()
        orchestrator.audit.close()

        lines = (tmp_path / "audit.jsonl").read_text().splitlines()
        transitions = [
            (event["from_state"], event["to_state"])
            for event in map(json.loads, lines)
            if event["event_type"] == "orchestrator_state"
        ]
        assert transitions == [
            ("stopped", "starting"),
            ("starting", "running"),
            ("running", "stopping"),
            ("stopping", "stopped"),
        ]


# =============================================================================
# ADMINISTRATIVE SURFACE
# =============================================================================


class TestAdmin:
    @pytest.mark.anyio
    async def test_toggle_agent(self, clock, tmp_path):
        orchestrator = Orchestrator(
            crew_config(tmp_path), collaborators=bindings(succeed), clock=clock
        )
        agent = orchestrator.register_agent(every_minute_agent())
        await orchestrator.start()

        disabled = await orchestrator.toggle_agent(agent.id, False)
        assert disabled.enabled is False
        await clock.advance(180)
        assert orchestrator.tasks_built(agent.id) == 0

        await orchestrator.toggle_agent(agent.id, True)
        await clock.advance(0)
        await clock.advance(60)
        await eventually(lambda: orchestrator.metrics.snapshot(agent.id).tasks_succeeded == 1)
        await orchestrator.stop()
        orchestrator.audit.close()

        events = [json.loads(line) for line in (tmp_path / "audit.jsonl").read_text().splitlines()]
        toggles = [(e["enabled"], e["trigger_armed"]) for e in events
                   if e["event_type"] == "agent_toggled"]
        assert toggles == [(False, False), (True, True)]

    @pytest.mark.anyio
    async def test_toggle_unknown_agent(self, clock):
        orchestrator = Orchestrator(crew_config(), collaborators=bindings(succeed), clock=clock)
        with pytest.raises(AgentNotFoundError):
            await orchestrator.toggle_agent("ghost", True)

    @pytest.mark.anyio
    async def test_agent_status(self, clock):
        orchestrator = Orchestrator(crew_config(), collaborators=bindings(succeed), clock=clock)
        agent = orchestrator.register_agent(every_minute_agent())
        await orchestrator.start()
        await clock.advance(0)

        status = await orchestrator.get_agent_status(agent.id)
        await orchestrator.stop()

        assert status["config"]["id"] == agent.id
        assert status["enabled"] is True
        assert status["trigger_armed"] is True
        assert status["next_fire"] == "2026-01-05T00:01:00+00:00"
        assert status["in_flight"] == 0
        assert status["metrics"]["tasks_completed"] == 0
        assert status["dead_letters"] == []

    @pytest.mark.anyio
    async def test_metrics_for_every_agent(self, clock):
        orchestrator = Orchestrator(crew_config(), collaborators=bindings(succeed), clock=clock)
        orchestrator.register_agent(every_minute_agent())
        orchestrator.register_agent(make_agent("seo-dominator-001",
                                               capability=Capability.SEO_OPTIMIZATION))

        metrics = orchestrator.get_metrics()

        assert set(metrics) == {"content-creator-001", "seo-dominator-001"}
        assert metrics["seo-dominator-001"]["category"] == "seo_optimization"

    @pytest.mark.anyio
    async def test_health_snapshot_after_start(self, clock):
        orchestrator = Orchestrator(crew_config(), collaborators=bindings(succeed), clock=clock)
        orchestrator.register_agent(every_minute_agent())
        assert orchestrator.get_health() is None

        await orchestrator.start()
        await eventually(lambda: orchestrator.get_health() is not None)
        snapshot = orchestrator.get_health()
        await orchestrator.stop()

        assert snapshot.status == "healthy"
        assert set(snapshot.queues) == {"content_creation"}


# =============================================================================
# CONFIGURATION
# =============================================================================


class TestCreateOrchestrator:
    @pytest.mark.anyio
    async def test_dry_run_binds_every_capability(self, clock):
        config = crew_config()
        config["agents"] = [
            {"id": "social-media-001", "capability": "social_posting",
             "schedule": "*/1 * * * *"},
            {"id": "seo-dominator-001", "capability": "seo_optimization",
             "schedule": "0 2 * * *", "enabled": False},
        ]
        orchestrator = create_orchestrator(config, dry_run=True, clock=clock)

        assert len(orchestrator.registry) == 2
        assert orchestrator.collaborators.missing_bindings(Capability) == []

        await orchestrator.start()
        await clock.advance(0)
        await clock.advance(60)
        await eventually(
            lambda: orchestrator.metrics.snapshot("social-media-001").tasks_succeeded == 1
        )
        await orchestrator.stop()

        assert orchestrator.registry.trigger_fire_count("seo-dominator-001") == 0

    def test_bindings_loaded_from_config(self, clock):
        config = crew_config()
        config["collaborators"] = {
            "review_response": "crew.engine.collaborators:DryRunCollaborator",
        }
        config["result_handlers"] = {
            "review_response": {"path": "crew.engine.collaborators:LoggingResultHandler"},
        }

        orchestrator = create_orchestrator(config, clock=clock)

        assert orchestrator.collaborators.missing_bindings([Capability.REVIEW_RESPONSE]) == []

    def test_bad_binding_path(self, clock):
        config = crew_config()
        config["collaborators"] = {"review_response": "crew.nowhere:Missing"}

        with pytest.raises(ConfigurationError):
            create_orchestrator(config, clock=clock)
