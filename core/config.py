"""Process settings and runtime pipeline configuration.

Two layers:
- ``Settings``: deployment settings read once from the environment
  (``.env`` is loaded if present). Secrets, endpoints, database path.
- ``PipelineConfig``: a snapshot of the operator-editable ``ConfigStore``
  taken at the start of each processing run, so admin changes apply to the
  next event without a restart.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

from core.storage.config_store import ConfigStore

env_path = Path(__file__).resolve().parents[1] / ".env"
if env_path.exists():
    load_dotenv(env_path)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _to_bool(value, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


# =============================================================================
# Deployment settings
# =============================================================================

@dataclass
class Settings:
    """Environment-driven settings.

    Attributes:
        database_path: SQLite file for events, transactions, audit and config
        webhook_secret: Shared signing secret (``whsec_`` base64 or raw)
        dispatch_mode: ``inline`` to process in the API process, ``temporal`` to start workflows
        sage_*: Sage X3 OAuth client and data-ingestion settings
        sync_timeout_seconds: Upper bound for one ERP submission
        lease_ttl_seconds: How long one processing run may hold an event
    """
    database_path: str = "event_pipeline.db"
    webhook_secret: str = ""
    dispatch_mode: str = "inline"

    sage_base_url: str = "https://api.sagex3.example.com"
    sage_client_id: str = ""
    sage_client_secret: str = ""
    sage_redirect_uri: str = "http://localhost:8000/api/v1/auth/sage/callback"
    sage_scope: str = "api.dataDelivery"
    sage_folder: str = "SEED"
    sage_company: str = ""
    sync_timeout_seconds: float = 30.0

    token_encryption_key: str = ""
    token_store_path: str = ".tokens"

    temporal_task_queue: str = "event-pipeline"
    lease_ttl_seconds: int = 120
    scheduler_poll_seconds: float = 5.0

    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_path=os.getenv("DATABASE_PATH", cls.database_path),
            webhook_secret=os.getenv("WEBHOOK_SECRET", ""),
            dispatch_mode=os.getenv("DISPATCH_MODE", cls.dispatch_mode).lower(),
            sage_base_url=os.getenv("SAGE_X3_BASE_URL", cls.sage_base_url),
            sage_client_id=os.getenv("SAGE_X3_CLIENT_ID", ""),
            sage_client_secret=os.getenv("SAGE_X3_CLIENT_SECRET", ""),
            sage_redirect_uri=os.getenv("SAGE_X3_REDIRECT_URI", cls.sage_redirect_uri),
            sage_scope=os.getenv("SAGE_X3_SCOPE", cls.sage_scope),
            sage_folder=os.getenv("SAGE_X3_FOLDER", cls.sage_folder),
            sage_company=os.getenv("SAGE_X3_COMPANY", ""),
            sync_timeout_seconds=float(os.getenv("SYNC_TIMEOUT_SECONDS", cls.sync_timeout_seconds)),
            token_encryption_key=os.getenv("TOKEN_ENCRYPTION_KEY", ""),
            token_store_path=os.getenv("TOKEN_STORE_PATH", cls.token_store_path),
            temporal_task_queue=os.getenv("TEMPORAL_TASK_QUEUE", cls.temporal_task_queue),
            lease_ttl_seconds=int(os.getenv("LEASE_TTL_SECONDS", cls.lease_ttl_seconds)),
            scheduler_poll_seconds=float(os.getenv("SCHEDULER_POLL_SECONDS", cls.scheduler_poll_seconds)),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            log_json=_env_bool("LOG_JSON", False),
        )


# =============================================================================
# Runtime pipeline configuration
# =============================================================================

@dataclass(frozen=True)
class PipelineConfig:
    """Snapshot of operator-editable settings used by one processing run."""
    max_attempts: int = 3
    retry_delay_ms: int = 5000
    exponential_backoff: bool = True
    auto_retry: bool = True
    timestamp_tolerance_seconds: int = 300
    currency_divisor: int = 100
    retention_days: int = 90
    features: Dict[str, bool] = field(default_factory=dict)

    def is_enabled(self, feature_key: str) -> bool:
        return self.features.get(feature_key, True)

    @classmethod
    def from_store(cls, store: Optional[ConfigStore]) -> "PipelineConfig":
        if store is None:
            return cls()
        values = store.as_dict()
        return cls(
            max_attempts=int(values.get("retry.maxAttempts", 3)),
            retry_delay_ms=int(values.get("retry.delayMs", 5000)),
            exponential_backoff=_to_bool(values.get("retry.exponentialBackoff"), True),
            auto_retry=_to_bool(values.get("feature.autoRetry"), True),
            timestamp_tolerance_seconds=int(values.get("webhook.timestampTolerance", 300)),
            currency_divisor=int(values.get("sage.currencyDivisor", 100)),
            retention_days=int(values.get("system.dataRetentionDays", 90)),
            features={
                key: _to_bool(value, True)
                for key, value in values.items()
                if key.startswith("feature.")
            },
        )
