"""Store consistency checks and repairs."""

from reconciliation.engine import CheckResult, ReconciliationEngine, ReconciliationReport

__all__ = ["CheckResult", "ReconciliationEngine", "ReconciliationReport"]
