"""Tests for agent metrics and the Prometheus mirror."""

import threading

import pytest

from crew_monitoring.metrics import AgentMetrics, MetricsRecorder, create_metrics_recorder, percent


class TestPercent:
    @pytest.mark.parametrize(
        "part, whole, expected",
        [(0, 0, 0), (7, 10, 70), (1, 3, 33), (2, 3, 67), (1, 8, 13), (1, 200, 1), (10, 10, 100)],
    )
    def test_rounds_half_up(self, part, whole, expected):
        assert percent(part, whole) == expected


class TestAgentMetrics:
    def test_seven_successes_three_failures(self):
        metrics = MetricsRecorder()
        metrics.register_agent("social-media-001", "social_posting")

        for _ in range(7):
            metrics.record_success("social-media-001", 100.0)
        for _ in range(3):
            metrics.record_failure("social-media-001", "rate limited")

        snapshot = metrics.snapshot("social-media-001")
        assert snapshot.success_rate == 70
        assert snapshot.error_rate == 30
        assert snapshot.tasks_completed == 10
        assert snapshot.last_error == "rate limited"

    def test_rates_are_zero_without_completions(self):
        snapshot = MetricsRecorder().snapshot("never-ran")

        assert snapshot == AgentMetrics(agent_id="never-ran")
        assert snapshot.success_rate == 0
        assert snapshot.error_rate == 0

    def test_first_sample_seeds_average_then_ema(self):
        metrics = MetricsRecorder(ema_weight=0.5)

        metrics.record_success("a", 1000.0)
        assert metrics.snapshot("a").average_execution_ms == 1000.0

        metrics.record_success("a", 2000.0)
        assert metrics.snapshot("a").average_execution_ms == 1500.0

        metrics.record_success("a", 500.0)
        assert metrics.snapshot("a").average_execution_ms == 1000.0

    def test_failures_do_not_move_average(self):
        metrics = MetricsRecorder()
        metrics.record_success("a", 400.0)
        metrics.record_failure("a", "boom")

        assert metrics.snapshot("a").average_execution_ms == 400.0

    def test_domain_counters_accumulate(self):
        metrics = MetricsRecorder()
        metrics.record_success("a", 1.0, items_produced=3, engagement=10)
        metrics.record_success("a", 1.0, items_produced=2, engagement=5)

        snapshot = metrics.snapshot("a")
        assert snapshot.items_produced == 5
        assert snapshot.engagement_generated == 15
        assert snapshot.last_active is not None

    def test_snapshot_is_a_copy(self):
        metrics = MetricsRecorder()
        metrics.record_success("a", 1.0)

        snapshot = metrics.snapshot("a")
        snapshot.tasks_succeeded = 99

        assert metrics.snapshot("a").tasks_succeeded == 1

    def test_invalid_ema_weight(self):
        with pytest.raises(ValueError):
            MetricsRecorder(ema_weight=0)

    def test_concurrent_updates_are_not_lost(self):
        metrics = MetricsRecorder()

        def work():
            for _ in range(500):
                metrics.record_success("a", 1.0)
                metrics.record_failure("a")

        threads = [threading.Thread(target=work) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        snapshot = metrics.snapshot("a")
        assert snapshot.tasks_succeeded == 2000
        assert snapshot.tasks_failed == 2000
        assert snapshot.tasks_completed == 4000


class TestPrometheus:
    def test_registries_are_isolated(self):
        first, second = MetricsRecorder(), MetricsRecorder()
        first.register_agent("a", "seo_optimization")
        first.record_success("a", 250.0, items_produced=2)

        sample = first.registry.get_sample_value(
            "crew_task_executions_total",
            {"agent_id": "a", "category": "seo_optimization", "result": "success"},
        )
        assert sample == 1.0
        assert second.registry.get_sample_value(
            "crew_task_executions_total",
            {"agent_id": "a", "category": "seo_optimization", "result": "success"},
        ) is None

    def test_dead_letters_and_queue_depth(self):
        metrics = MetricsRecorder()
        metrics.register_agent("a", "lead_follow_up")
        metrics.record_dead_letter("a")
        metrics.set_queue_depth("lead_follow_up", 4)

        assert metrics.snapshot("a").tasks_dead_lettered == 1
        assert metrics.registry.get_sample_value(
            "crew_dead_letters_total", {"agent_id": "a", "category": "lead_follow_up"}
        ) == 1.0
        assert metrics.registry.get_sample_value(
            "crew_queue_depth", {"category": "lead_follow_up"}
        ) == 4.0

    def test_exposition_contains_series(self):
        metrics = MetricsRecorder()
        metrics.record_success("a", 10.0)

        text = metrics.exposition().decode()

        assert "crew_task_executions_total" in text
        assert "crew_agent_success_rate_percent" in text

    def test_summary(self):
        metrics = MetricsRecorder()
        metrics.record_success("a", 10.0)
        metrics.record_failure("b", "boom")

        summary = metrics.summary()

        assert summary["tasks_completed"] == 2
        assert summary["success_rate"] == 50
        assert set(summary["agents"]) == {"a", "b"}

    def test_factory_reads_config(self):
        metrics = create_metrics_recorder({"ema_weight": 0.25, "export": {"enabled": False}})
        assert metrics.ema_weight == 0.25
