"""Wiring of the pipeline components for one process.

The API, the Temporal worker and the scheduler script all build the same
object graph from ``Settings``. ``get_services`` holds one lazily built
instance per process; tests call ``build_services`` with in-memory stores.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from connectors.erp_base import ERPConfig, ERPConnector, create_connector
from core.audit import AuditRecorder, InMemoryAuditBackend, SQLiteAuditBackend
from core.config import Settings
from core.models import utcnow
from core.observability import get_logger
from core.security import FileTokenStore, TokenEncryption, TokenStore
from core.storage import (
    ConfigStore,
    EventStore,
    InMemoryConfigStore,
    InMemoryEventStore,
    SQLiteConfigStore,
    SQLiteEventStore,
)
from pipeline.dispatch import EventDispatcher, InlineDispatcher, TemporalDispatcher
from pipeline.intake import WebhookIntake
from pipeline.orchestrator import PipelineOrchestrator
from pipeline.reversal import ReversalCoordinator
from pipeline.scheduler import RetryScheduler
from reconciliation.engine import ReconciliationEngine

logger = get_logger(__name__)


@dataclass
class PipelineServices:
    settings: Settings
    store: EventStore
    config_store: ConfigStore
    audit: AuditRecorder
    connector: ERPConnector
    orchestrator: PipelineOrchestrator
    reversal: ReversalCoordinator
    intake: WebhookIntake
    dispatcher: EventDispatcher
    scheduler: RetryScheduler
    reconciliation: ReconciliationEngine


def build_connector(settings: Settings, token_store: Optional[TokenStore] = None) -> ERPConnector:
    """Sage X3 connector configured from settings.

    Tokens are encrypted at rest when ``TOKEN_ENCRYPTION_KEY`` is set.
    """
    auth_config = {
        "client_id": settings.sage_client_id,
        "client_secret": settings.sage_client_secret,
        "redirect_uri": settings.sage_redirect_uri,
        "scope": settings.sage_scope,
    }
    if settings.token_encryption_key:
        auth_config["token_encryption"] = TokenEncryption(settings.token_encryption_key)
        auth_config["token_store"] = token_store or FileTokenStore(settings.token_store_path)
    else:
        logger.warning("TOKEN_ENCRYPTION_KEY not set; Sage X3 tokens are kept in memory only")

    return create_connector(ERPConfig(
        connector_type="sage_x3",
        base_url=settings.sage_base_url,
        folder=settings.sage_folder,
        company_id=settings.sage_company or None,
        timeout_seconds=settings.sync_timeout_seconds,
        auth_config=auth_config,
    ))


def build_services(
    settings: Settings,
    connector: Optional[ERPConnector] = None,
    store: Optional[EventStore] = None,
    config_store: Optional[ConfigStore] = None,
    audit: Optional[AuditRecorder] = None,
    dispatcher: Optional[EventDispatcher] = None,
    clock: Callable[[], datetime] = utcnow,
) -> PipelineServices:
    """Assemble the pipeline.

    Stores default to SQLite at ``settings.database_path``; pass
    ``":memory:"`` as the path to get in-memory stores instead.
    """
    in_memory = settings.database_path == ":memory:"
    if store is None:
        store = InMemoryEventStore(clock) if in_memory else SQLiteEventStore(settings.database_path, clock)
    if config_store is None:
        config_store = InMemoryConfigStore() if in_memory else SQLiteConfigStore(settings.database_path)
    if audit is None:
        backend = InMemoryAuditBackend() if in_memory else SQLiteAuditBackend(settings.database_path)
        audit = AuditRecorder([backend])
    if connector is None:
        connector = build_connector(settings)

    orchestrator = PipelineOrchestrator(
        store,
        audit,
        connector,
        config_store=config_store,
        sync_timeout_seconds=settings.sync_timeout_seconds,
        lease_ttl_seconds=settings.lease_ttl_seconds,
        folder=settings.sage_folder,
        company=settings.sage_company or None,
        clock=clock,
    )
    if dispatcher is None:
        if settings.dispatch_mode == "temporal":
            dispatcher = TemporalDispatcher(settings.temporal_task_queue)
        else:
            dispatcher = InlineDispatcher(orchestrator)

    return PipelineServices(
        settings=settings,
        store=store,
        config_store=config_store,
        audit=audit,
        connector=connector,
        orchestrator=orchestrator,
        reversal=ReversalCoordinator(
            store,
            audit,
            connector,
            sync_timeout_seconds=settings.sync_timeout_seconds,
            lease_ttl_seconds=settings.lease_ttl_seconds,
            clock=clock,
        ),
        intake=WebhookIntake(store, audit, settings.webhook_secret, config_store=config_store, clock=clock),
        dispatcher=dispatcher,
        scheduler=RetryScheduler(store, orchestrator, clock=clock),
        reconciliation=ReconciliationEngine(
            store,
            audit,
            orchestrator=orchestrator,
            config_store=config_store,
            folder=settings.sage_folder,
            company=settings.sage_company or None,
            clock=clock,
        ),
    )


# =============================================================================
# Process-wide instance
# =============================================================================

_services: Optional[PipelineServices] = None


def get_services() -> PipelineServices:
    """Get or build the process-wide services from the environment."""
    global _services
    if _services is None:
        _services = build_services(Settings.from_env())
    return _services


def set_services(services: Optional[PipelineServices]) -> None:
    global _services
    _services = services


def reset_services() -> None:
    set_services(None)
