# =============================================================================
# LAW FIRM CREW ORCHESTRATOR - TEST PACKAGE
# =============================================================================
"""
Test Package

Tests for the crew orchestrator.

Test Structure:
    tests/
    ├── __init__.py               # This file
    ├── conftest.py               # Shared fixtures (anyio backend, clock)
    ├── helpers.py                # Agent builders, fake time, polling
    ├── test_cron_trigger.py      # Cron triggers on a virtual clock
    ├── test_queue_manager.py     # Ordering, backoff, leases, dead letters
    ├── test_agent_registry.py    # Registration, enable/disable, triggers
    ├── test_task_factory.py      # Templates and context degradation
    ├── test_execution_engine.py  # Worker pools and concurrency bounds
    ├── test_metrics.py           # Agent metrics and Prometheus export
    ├── test_health.py            # Health snapshots
    ├── test_orchestrator.py      # Lifecycle and end-to-end scenarios
    └── test_config.py            # YAML / environment configuration

Running Tests:
    # Run all tests
    pytest tests/ -v

    # Run a specific test file
    pytest tests/test_queue_manager.py -v

Test Categories:
    - Unit tests: Test individual components in isolation
    - Integration tests: Engine and queue together
    - End-to-end tests: Full orchestrator on a virtual clock
"""
