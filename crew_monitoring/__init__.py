# =============================================================================
# LAW FIRM CREW ORCHESTRATOR - MONITORING PACKAGE
# =============================================================================
"""
Monitoring Package

Logging, metrics and health infrastructure for the crew orchestrator.

Components:
    - Logger: Structured logging with structlog
    - Metrics: Per-agent metrics mirrored into Prometheus
    - Audit: Audit trail recording to JSONL
    - Health: Periodic health snapshots

Usage:
    from crew_monitoring import setup_logging, MetricsRecorder, AuditLogger

    # Setup logging
    setup_logging(level="INFO", fmt="json", log_dir="./logs")

    # Metrics
    metrics = MetricsRecorder()
    metrics.register_agent("seo-optimizer-001", "seo_optimization")
    metrics.record_success("seo-optimizer-001", duration_ms=1200, items_produced=3)

    # Audit trail
    audit = AuditLogger("./logs/audit.jsonl")
    audit.log_agent_toggled("seo-optimizer-001", enabled=False, armed=False)
"""

# Logger
from crew_monitoring.logger import (
    AuditLogger,
    LogContext,
    get_logger,
    log_context,
    mask_dict,
    mask_sensitive_data,
    setup_logging,
)

# Metrics
from crew_monitoring.metrics import (
    AgentMetrics,
    MetricsRecorder,
    create_metrics_recorder,
    percent,
)

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "AuditLogger",
    "LogContext",
    "log_context",
    "mask_sensitive_data",
    "mask_dict",
    # Metrics
    "AgentMetrics",
    "MetricsRecorder",
    "create_metrics_recorder",
    "percent",
]
