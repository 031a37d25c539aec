"""Observability helpers: logging, metrics, and health checks."""

from .logging_config import configure_logging, mask_code, mask_email, mask_phone
from .metrics import (
    increment_counter,
    set_gauge,
    observe_latency,
    record_event,
    get_metrics_snapshot,
)
from .health import check_database_health

__all__ = [
    "configure_logging",
    "mask_code",
    "mask_email",
    "mask_phone",
    "increment_counter",
    "set_gauge",
    "observe_latency",
    "record_event",
    "get_metrics_snapshot",
    "check_database_health",
]
