"""
Metrics Collection for the Event Pipeline

Collects and exposes metrics for:
- Webhook intake (accepted, duplicate, rejected, disabled)
- Event status transitions
- Retries (scheduled, exhausted, manual) and reversals
- Processing times per stage (average, p95)

Metrics are kept in-memory per process and exposed through the admin API.
"""

import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Optional


# =============================================================================
# Metric Data Classes
# =============================================================================

@dataclass
class WebhookMetrics:
    """Counters for webhook deliveries."""
    accepted: int = 0
    duplicate: int = 0
    rejected: int = 0
    disabled: int = 0

    by_reason: Dict[str, int] = field(default_factory=lambda: defaultdict(int))


@dataclass
class TransitionMetrics:
    """Counters for event status transitions."""
    total: int = 0
    by_status: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    failures_by_type: Dict[str, int] = field(default_factory=lambda: defaultdict(int))


@dataclass
class RetryMetrics:
    scheduled: int = 0
    exhausted: int = 0
    manual: int = 0
    executed: int = 0


@dataclass
class TimingMetrics:
    """Processing time metrics."""
    samples: List[float] = field(default_factory=list)
    max_samples: int = 1000

    by_stage: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    def add_sample(self, duration_ms: float, stage: str = None):
        """Add a timing sample."""
        self.samples.append(duration_ms)
        if len(self.samples) > self.max_samples:
            self.samples = self.samples[-self.max_samples:]

        if stage:
            self.by_stage[stage].append(duration_ms)
            if len(self.by_stage[stage]) > self.max_samples:
                self.by_stage[stage] = self.by_stage[stage][-self.max_samples:]

    def get_average(self, stage: str = None) -> float:
        samples = self.by_stage.get(stage, []) if stage else self.samples
        return statistics.mean(samples) if samples else 0.0

    def get_p95(self, stage: str = None) -> float:
        """Get 95th percentile processing time."""
        samples = self.by_stage.get(stage, []) if stage else self.samples
        if not samples:
            return 0.0
        sorted_samples = sorted(samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]


# =============================================================================
# Metrics Collector (Singleton)
# =============================================================================

class MetricsCollector:
    """
    Thread-safe metrics collector for the event pipeline.

    Usage:
        metrics = MetricsCollector.instance()
        metrics.record_webhook("accepted")
        metrics.record_transition("synced", duration_ms=350)
    """

    _instance: Optional["MetricsCollector"] = None
    _lock = Lock()

    def __init__(self):
        self._lock = Lock()
        self.reset()

    @classmethod
    def instance(cls) -> "MetricsCollector":
        """Get singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def reset(self) -> None:
        with self._lock:
            self.webhooks = WebhookMetrics()
            self.transitions = TransitionMetrics()
            self.retries = RetryMetrics()
            self.timings = TimingMetrics()
            self.reversals = 0
            self.reversal_failures = 0
            self.started_at = datetime.now(timezone.utc)

    # =========================================================================
    # Intake
    # =========================================================================

    def record_webhook(self, outcome: str, reason: Optional[str] = None):
        """Record a webhook outcome: accepted, duplicate, rejected or disabled."""
        with self._lock:
            if hasattr(self.webhooks, outcome):
                setattr(self.webhooks, outcome, getattr(self.webhooks, outcome) + 1)
            if reason:
                self.webhooks.by_reason[reason] += 1

    # =========================================================================
    # Processing
    # =========================================================================

    def record_transition(self, status: str, duration_ms: float = None, error_type: str = None):
        with self._lock:
            self.transitions.total += 1
            self.transitions.by_status[status] += 1
            if error_type:
                self.transitions.failures_by_type[error_type] += 1
            if duration_ms is not None:
                self.timings.add_sample(duration_ms, f"stage.{status}")

    def record_retry_scheduled(self):
        with self._lock:
            self.retries.scheduled += 1

    def record_retry_exhausted(self):
        with self._lock:
            self.retries.exhausted += 1

    def record_retry_executed(self, manual: bool = False):
        with self._lock:
            self.retries.executed += 1
            if manual:
                self.retries.manual += 1

    def record_reversal(self, success: bool = True):
        with self._lock:
            if success:
                self.reversals += 1
            else:
                self.reversal_failures += 1

    # =========================================================================
    # Timing
    # =========================================================================

    def record_processing_time(self, stage: str, duration_ms: float):
        """Record a processing time sample."""
        with self._lock:
            self.timings.add_sample(duration_ms, stage)

    def get_timing_stats(self, stage: str = None) -> Dict[str, float]:
        """Get timing statistics for a stage."""
        with self._lock:
            return {
                "average_ms": self.timings.get_average(stage),
                "p95_ms": self.timings.get_p95(stage),
                "sample_count": len(self.timings.by_stage.get(stage, []) if stage else self.timings.samples),
            }

    # =========================================================================
    # Summary
    # =========================================================================

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            return {
                "since": self.started_at.isoformat(),
                "webhooks": {
                    "accepted": self.webhooks.accepted,
                    "duplicate": self.webhooks.duplicate,
                    "rejected": self.webhooks.rejected,
                    "disabled": self.webhooks.disabled,
                    "by_reason": dict(self.webhooks.by_reason),
                },
                "transitions": {
                    "total": self.transitions.total,
                    "by_status": dict(self.transitions.by_status),
                    "failures_by_type": dict(self.transitions.failures_by_type),
                },
                "retries": {
                    "scheduled": self.retries.scheduled,
                    "executed": self.retries.executed,
                    "manual": self.retries.manual,
                    "exhausted": self.retries.exhausted,
                },
                "reversals": {
                    "succeeded": self.reversals,
                    "failed": self.reversal_failures,
                },
                "timings": {
                    "overall": {
                        "average_ms": self.timings.get_average(),
                        "p95_ms": self.timings.get_p95(),
                    },
                    "by_stage": {
                        stage: {
                            "average_ms": self.timings.get_average(stage),
                            "p95_ms": self.timings.get_p95(stage),
                        }
                        for stage in self.timings.by_stage.keys()
                    },
                },
            }


# =============================================================================
# Module-level convenience functions
# =============================================================================

def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return MetricsCollector.instance()


def record_processing_time(stage: str, duration_ms: float):
    """Record a processing time sample."""
    get_metrics().record_processing_time(stage, duration_ms)
