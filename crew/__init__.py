# =============================================================================
# LAW FIRM CREW ORCHESTRATOR - PACKAGE
# =============================================================================
"""
Crew Orchestrator Package

Runs a fixed roster of autonomous marketing and business-development
agents for a law firm on their own schedules. The orchestrator is
responsible for:

1. Holding the agent roster and arming a schedule trigger per agent
2. Turning every trigger fire into a task with live context
3. Queuing tasks per category with priorities, dependencies and retries
4. Executing tasks with bounded concurrency through pluggable collaborators
5. Recording per-agent metrics and periodic health snapshots

Package Structure:
    - main.py: Entry point, configuration and the Orchestrator
    - errors.py: Exception hierarchy
    - registry/: Agent configurations, capabilities and tasks
    - scheduler/: Clocks, cron triggers and the category queues
    - engine/: Task factory, collaborator bindings and worker pools

Usage:
    ```python
    from crew.main import create_orchestrator, load_config

    config = load_config("config/crew.yaml")
    orchestrator = create_orchestrator(config, dry_run=True)
    await orchestrator.start()
    ```

For detailed configuration, see config/crew.yaml
"""

__version__ = "1.0.0"
__author__ = "Law Firm Crew Orchestrator"
