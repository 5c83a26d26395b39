"""
Structured logging configuration for Datadog integration
"""
import logging
import sys
import json
from datetime import datetime, timezone
from typing import Any, Dict
from ddtrace import tracer

SERVICE_NAME = "expgate"

# extra={...} keys copied verbatim into the JSON payload
EXTRA_FIELDS = (
    "exp_name",
    "installation_id",
    "source",
    "state",
    "attempt",
    "max_attempts",
    "delay_seconds",
    "status_code",
    "url",
    "entries",
    "dropped",
    "user_experiments",
    "age_seconds",
    "error",
)


class DatadogJSONFormatter(logging.Formatter):
    """
    Custom JSON formatter for Datadog logs.
    Automatically injects trace and span IDs for correlation.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON with Datadog fields"""

        # Get trace context from ddtrace
        span = tracer.current_span()

        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": SERVICE_NAME,
        }

        # Add trace correlation if available
        if span:
            log_data["dd.trace_id"] = str(span.trace_id)
            log_data["dd.span_id"] = str(span.span_id)

        for field_name in EXTRA_FIELDS:
            if hasattr(record, field_name):
                log_data[field_name] = getattr(record, field_name)

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """
    Configure structured JSON logging for the experiments engine.
    Logs will be automatically forwarded to Datadog when using ddtrace.

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(SERVICE_NAME)
    logger.setLevel(level)

    # Idempotent: every module calls this at import time
    if not any(isinstance(h.formatter, DatadogJSONFormatter) for h in logger.handlers):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(DatadogJSONFormatter())
        logger.addHandler(console_handler)

    # Prevent propagation to root logger
    logger.propagate = False

    return logger
