"""
Structured logging utilities.

Every invocation of the build gets a run ID so the JSON lines from one run
can be grouped in CloudWatch Logs Insights or a CI log.
"""

import json
import logging
import uuid
from contextvars import ContextVar
from typing import Optional

# Context variable for run correlation
run_id_var: ContextVar[str] = ContextVar("run_id", default="")

_RESERVED_ATTRS = frozenset(
    (
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "pathname", "process", "processName", "relativeCreated",
        "stack_info", "exc_info", "exc_text", "thread", "threadName",
        "message", "asctime", "taskName",
    )
)


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "run_id": run_id_var.get(""),
        }

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def configure_structured_logging(level: int = logging.INFO) -> logging.Logger:
    """
    Configure structured JSON logging on the root logger.

    Call this once at the start of an invocation.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(handler)

    # httpx logs every request at INFO; far too chatty at 20 requests/second
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root_logger


def set_run_id(run_id: Optional[str] = None) -> str:
    """
    Set the run ID for this invocation, generating one if not given.

    Args:
        run_id: Scheduler-provided ID (e.g. a Lambda request ID)

    Returns:
        Run ID string
    """
    run_id = run_id or str(uuid.uuid4())
    run_id_var.set(run_id)
    return run_id


def log_external_call(
    logger: logging.Logger,
    service: str,
    operation: str,
    success: bool,
    latency_ms: float,
    error: Optional[str] = None,
) -> None:
    """Log a call to a collaborator service (registry, npm CLI, S3)."""
    level = logging.INFO if success else logging.WARNING
    logger.log(
        level,
        f"External call to {service}: {operation} -> {'success' if success else 'failed'}",
        extra={
            "service": service,
            "operation": operation,
            "success": success,
            "latency_ms": latency_ms,
            "error": error,
        },
    )
