# =============================================================================
# LAW FIRM CREW ORCHESTRATOR - STRUCTURED LOGGING
# =============================================================================
"""
Structured Logging Module

Provides consistent, structured logging across all components.

Module loggers stay plain ``logging.getLogger(__name__)``; their records
are routed through structlog's ProcessorFormatter so they carry the
context bound with LogContext (task_id, agent_id, category) and are
rendered as JSON or console lines.

Features:
    - JSON-formatted logs for easy parsing
    - Contextual information bound per task execution
    - Sensitive data masking
    - File output with rotation
    - Audit trail logger (JSONL)
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from structlog.contextvars import bind_contextvars, merge_contextvars, unbind_contextvars


# =============================================================================
# SENSITIVE DATA MASKING
# =============================================================================

# Keys whose values should be masked
SENSITIVE_KEYS = frozenset([
    "token", "api_key", "password", "secret", "credential",
    "private_key", "access_token", "refresh_token", "authorization",
    "openai_api_key", "redis_password", "smtp_password",
])


def _is_sensitive(key: str) -> bool:
    """Check if a key name indicates sensitive data."""
    key_lower = key.lower().replace("-", "_")
    return any(s in key_lower for s in SENSITIVE_KEYS)


def _mask_value(value: Any) -> str:
    """Mask a sensitive value, keeping first/last 4 chars if long enough."""
    if not isinstance(value, str):
        return "****"
    if len(value) > 8:
        return value[:4] + "****" + value[-4:]
    return "****"


def mask_sensitive_data(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Structlog processor that masks sensitive data in log events.

    Recursively processes dictionaries to mask values whose keys
    match known sensitive patterns.
    """

    def _process(d: Dict[str, Any]) -> Dict[str, Any]:
        result = {}
        for key, value in d.items():
            if _is_sensitive(key):
                result[key] = _mask_value(value)
            elif isinstance(value, dict):
                result[key] = _process(value)
            else:
                result[key] = value
        return result

    return _process(event_dict)


def mask_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """Mask sensitive data in an arbitrary dict (audit events, config dumps)."""
    return mask_sensitive_data(None, "", data)


# =============================================================================
# LOGGING SETUP
# =============================================================================


def _shared_processors(mask_sensitive: bool) -> List[Any]:
    processors: List[Any] = [
        merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if mask_sensitive:
        processors.append(mask_sensitive_data)
    return processors


def _formatter(renderer: Any, mask_sensitive: bool) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_processors(mask_sensitive),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )


def setup_logging(
    level: str = "INFO",
    fmt: str = "json",
    log_file: Optional[str] = None,
    log_dir: Optional[str] = None,
    mask_sensitive: bool = True,
    max_bytes: int = 100 * 1024 * 1024,  # 100 MB
    backup_count: int = 10,
) -> logging.Logger:
    """
    Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        fmt: Output format, ``"json"`` or ``"text"``.
        log_file: Explicit log file path. Overrides *log_dir*.
        log_dir: Directory for log files. When set (and *log_file* is
            ``None``), logs are written to ``<log_dir>/crew.log``.
        mask_sensitive: Mask sensitive values in logs.
        max_bytes: Max file size before rotation.
        backup_count: Number of rotated files to keep.

    Returns:
        Root logger instance.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    resolved_log_file: Optional[str] = log_file
    if resolved_log_file is None and log_dir is not None:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        resolved_log_file = str(Path(log_dir) / "crew.log")

    # structlog loggers hand their event dict to stdlib; rendering happens
    # in the handlers' ProcessorFormatter
    structlog.configure(
        processors=_shared_processors(mask_sensitive) + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.setLevel(numeric_level)

    # Remove existing handlers to avoid duplicates on re-init
    root.handlers.clear()

    console_renderer = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(numeric_level)
    console.setFormatter(_formatter(console_renderer, mask_sensitive))
    root.addHandler(console)

    # File handler (with rotation), always JSON
    if resolved_log_file:
        Path(resolved_log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            resolved_log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            _formatter(structlog.processors.JSONRenderer(), mask_sensitive)
        )
        root.addHandler(file_handler)

    # Suppress noisy third-party loggers
    for name in ("asyncio", "urllib3", "redis"):
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def get_logger(name: Optional[str] = None, **initial_values: Any) -> Any:
    """Return a structlog logger bound to *initial_values*."""
    return structlog.get_logger(name, **initial_values)


# =============================================================================
# LOG CONTEXT MANAGER
# =============================================================================


class LogContext:
    """
    Context manager that binds key-value pairs to all logs emitted
    inside the block.

    Bindings live in contextvars, so each asyncio task sees its own
    context.

    Usage::

        with LogContext(task_id=task.id, agent_id=task.agent_id):
            logger.info("Executing task")
            # All logs include task_id and agent_id
    """

    def __init__(self, **kwargs: Any):
        self.context = kwargs

    def __enter__(self) -> "LogContext":
        bind_contextvars(**self.context)
        return self

    def __exit__(self, *args: Any) -> None:
        unbind_contextvars(*self.context.keys())


@contextmanager
def log_context(**kwargs: Any):
    """Functional alias for :class:`LogContext`."""
    ctx = LogContext(**kwargs)
    ctx.__enter__()
    try:
        yield ctx
    finally:
        ctx.__exit__(None, None, None)


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Special logger for audit trail events.

    Records structured events to a JSONL file (one JSON object per line)
    for operator review and post-mortem analysis.

    Event categories:
        - ``dead_letter``: Task exhausted its retries or could never run
        - ``task_execution``: Failed task attempts
        - ``agent_toggled``: Agent enabled / disabled at runtime
        - ``orchestrator_state``: Lifecycle transitions
        - ``error``: Component errors

    Usage::

        audit = AuditLogger("./logs/audit.jsonl")
        audit.log_dead_letter(task_id, agent_id, "seo_optimization", "timeout", 3)
    """

    def __init__(
        self,
        output_path: Optional[str] = "./logs/audit.jsonl",
        max_bytes: int = 500 * 1024 * 1024,  # 500 MB
        backup_count: int = 30,
    ):
        self.output_path = output_path
        self.events_written = 0
        self._logger = logging.getLogger(f"crew.audit.{id(self):x}")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        self._handler: Optional[logging.Handler] = None

        if output_path:
            Path(output_path).parent.mkdir(parents=True, exist_ok=True)
            self._handler = logging.handlers.RotatingFileHandler(
                output_path,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        else:
            self._handler = logging.NullHandler()
        self._handler.setFormatter(logging.Formatter("%(message)s"))
        self._logger.addHandler(self._handler)

    def close(self) -> None:
        """Flush and detach the file handler."""
        if self._handler is not None:
            self._handler.close()
            self._logger.removeHandler(self._handler)
            self._handler = None

    # -----------------------------------------------------------------
    # Event writers
    # -----------------------------------------------------------------

    def _write_event(self, event_type: str, data: Dict[str, Any]) -> None:
        """Write a single audit event."""
        event = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "event_type": event_type,
            **mask_dict(data),
        }
        self._logger.info(json.dumps(event, default=str))
        self.events_written += 1

    def log_dead_letter(
        self,
        task_id: str,
        agent_id: str,
        category: str,
        reason: str,
        attempts: int,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log a dead-lettered task."""
        self._write_event("dead_letter", {
            "task_id": task_id,
            "agent_id": agent_id,
            "category": category,
            "reason": reason,
            "attempts": attempts,
            **(details or {}),
        })

    def log_task_failure(
        self,
        task_id: str,
        agent_id: str,
        error_type: str,
        message: str,
        attempt: int,
        duration: float,
    ) -> None:
        """Log a failed task attempt."""
        self._write_event("task_execution", {
            "task_id": task_id,
            "agent_id": agent_id,
            "result": "failure",
            "error_type": error_type,
            "message": message,
            "attempt": attempt,
            "duration_seconds": round(duration, 3),
        })

    def log_agent_toggled(self, agent_id: str, enabled: bool, armed: bool) -> None:
        """Log an agent being enabled or disabled."""
        self._write_event("agent_toggled", {
            "agent_id": agent_id,
            "enabled": enabled,
            "trigger_armed": armed,
        })

    def log_state_transition(self, from_state: str, to_state: str, reason: str = "") -> None:
        """Log an orchestrator lifecycle transition."""
        self._write_event("orchestrator_state", {
            "from_state": from_state,
            "to_state": to_state,
            "reason": reason,
        })

    def log_error(
        self,
        component: str,
        error_type: str,
        message: str,
        agent_id: Optional[str] = None,
    ) -> None:
        """Log an error event."""
        self._write_event("error", {
            "component": component,
            "error_type": error_type,
            "message": message,
            "agent_id": agent_id,
        })


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    # Setup
    "setup_logging",
    "get_logger",
    # Data masking
    "mask_sensitive_data",
    "mask_dict",
    # Context
    "LogContext",
    "log_context",
    # Audit
    "AuditLogger",
]
