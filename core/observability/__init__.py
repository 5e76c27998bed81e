"""
Observability Module for the Event Pipeline

Provides:
- Structured logging with correlation IDs
- Metrics collection (intake, transitions, retries, processing times)
"""

from core.observability.metrics import (
    MetricsCollector,
    get_metrics,
    record_processing_time,
)

from core.observability.logging import (
    CorrelationContext,
    configure_logging,
    get_logger,
    sanitize_payload,
    with_correlation,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "record_processing_time",
    # Logging
    "CorrelationContext",
    "configure_logging",
    "get_logger",
    "sanitize_payload",
    "with_correlation",
]
