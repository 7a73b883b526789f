"""Tests for the agent registry."""

import pytest

from crew.errors import AgentNotFoundError, ConfigurationError, DuplicateAgentError
from crew.registry.agent_registry import AgentRegistry, agents_from_config
from crew.registry.models import AgentConfig, Capability
from tests.helpers import make_agent


@pytest.fixture
def registry(clock):
    return AgentRegistry(clock=clock)


class TestRegistration:
    def test_register_and_get(self, registry):
        stored = registry.register(make_agent("seo-001", schedule=" 0  2 * * * "))

        assert registry.get("seo-001") == stored
        assert stored.schedule == "0 2 * * *"
        assert "seo-001" in registry
        assert len(registry) == 1

    def test_duplicate_id_rejected(self, registry):
        registry.register(make_agent("seo-001"))
        with pytest.raises(DuplicateAgentError):
            registry.register(make_agent("seo-001", priority=9))

    def test_unknown_agent(self, registry):
        with pytest.raises(AgentNotFoundError):
            registry.get("ghost")

    @pytest.mark.parametrize(
        "overrides",
        [
            {"schedule": "whenever"},
            {"max_concurrency": 0},
            {"max_retries": 0},
            {"deadline_seconds": 0},
            {"id": ""},
        ],
    )
    def test_invalid_config_rejected(self, registry, overrides):
        with pytest.raises(ConfigurationError):
            registry.register(make_agent(**overrides))
        assert len(registry) == 0

    def test_list_is_a_copy(self, registry):
        registry.register(make_agent("a"))
        agents = registry.list()
        agents.clear()

        assert len(registry.list()) == 1

    def test_snapshot_fields_cannot_be_mutated(self, registry):
        parameters = {"model": "gpt-4", "limits": {"posts": 3}}
        registry.register(make_agent("a", parameters=parameters, tools=["web_search"]))
        parameters["model"] = "changed by caller"
        snapshot = registry.list()[0]

        with pytest.raises(TypeError):
            snapshot.parameters["model"] = "hijacked"
        with pytest.raises(AttributeError):
            snapshot.tools.append("rm_rf")
        snapshot.to_dict()["parameters"]["limits"]["posts"] = 99

        live = registry.get("a")
        assert live.parameters == {"model": "gpt-4", "limits": {"posts": 3}}
        assert live.tools == ("web_search",)


class TestTriggers:
    @pytest.mark.anyio
    async def test_arm_starts_triggers_for_enabled_agents(self, registry, clock):
        fired = []
        registry.register(make_agent("hourly", schedule="0 * * * *"))
        registry.register(make_agent("off", schedule="0 * * * *", enabled=False))

        assert registry.arm(lambda agent_id, at: fired.append(agent_id)) == 1
        await clock.advance(0)
        await clock.advance(2 * 3600)

        assert fired == ["hourly", "hourly"]
        assert registry.is_armed("hourly")
        assert not registry.is_armed("off")
        assert registry.next_fire_time("off") is None

        assert registry.disarm() == 1
        assert registry.disarm() == 0

    @pytest.mark.anyio
    async def test_disable_cancels_and_enable_rearms(self, registry, clock):
        fired = []
        registry.register(make_agent("hourly", schedule="0 * * * *"))
        registry.arm(lambda agent_id, at: fired.append(at))
        await clock.advance(0)
        await clock.advance(3600)

        updated = await registry.set_enabled("hourly", False)
        assert updated.enabled is False
        assert not registry.is_armed("hourly")
        await clock.advance(5 * 3600)
        assert len(fired) == 1

        await registry.set_enabled("hourly", True)
        await clock.advance(0)
        assert registry.is_armed("hourly")
        await clock.advance(3600)
        assert len(fired) == 2

        registry.disarm()

    @pytest.mark.anyio
    async def test_enable_while_disarmed_only_flips_flag(self, registry):
        registry.register(make_agent("a", enabled=False))

        updated = await registry.set_enabled("a", True)

        assert updated.enabled
        assert registry.get("a").enabled
        assert not registry.is_armed("a")

    @pytest.mark.anyio
    async def test_register_while_armed_starts_trigger(self, registry, clock):
        registry.arm(lambda agent_id, at: None)
        registry.register(make_agent("late"))
        await clock.advance(0)

        assert registry.is_armed("late")
        assert registry.active_trigger_count == 1
        registry.disarm()

    @pytest.mark.anyio
    async def test_set_enabled_unknown_agent(self, registry):
        with pytest.raises(AgentNotFoundError):
            await registry.set_enabled("ghost", True)

    @pytest.mark.anyio
    async def test_trigger_fire_count(self, registry, clock):
        registry.register(make_agent("every-15", schedule="*/15 * * * *"))
        registry.arm(lambda agent_id, at: None)
        await clock.advance(0)
        await clock.advance(3600)

        assert registry.trigger_fire_count("every-15") == 4
        registry.disarm()


class TestAgentsFromConfig:
    def test_builds_configs(self):
        configs = agents_from_config([
            {
                "id": "social-media-001",
                "capability": "social_posting",
                "schedule": "0 9,13,17 * * *",
                "max_concurrency": 2,
                "priority": 8,
                "tools": ["social_apis"],
                "parameters": {"temperature": 0.8},
            }
        ])

        assert configs == [
            AgentConfig(
                id="social-media-001",
                name="social-media-001",
                capability=Capability.SOCIAL_POSTING,
                schedule="0 9,13,17 * * *",
                max_concurrency=2,
                priority=8,
                tools=["social_apis"],
                parameters={"temperature": 0.8},
            )
        ]

    def test_missing_key(self):
        with pytest.raises(ConfigurationError, match="missing"):
            agents_from_config([{"id": "x", "capability": "seo_optimization"}])

    def test_unknown_capability(self):
        with pytest.raises(ConfigurationError):
            agents_from_config([{"id": "x", "capability": "astrology", "schedule": "0 * * * *"}])

    def test_capability_accepts_enum_name(self):
        assert Capability.parse("SEO_OPTIMIZATION") is Capability.SEO_OPTIMIZATION
