"""Abstract ERP Connector Interface.

This module defines the interface every ERP connector implements. It is
intentionally ERP-agnostic: the pipeline hands over an ``ExternalDocument``
and gets back a ``SubmissionResult`` or one of three classified errors.

Error classes drive the retry policy:
- ERPTransientError: timeout, 5xx, 429 or network failure. Retried with backoff.
- ERPPermanentError: any other 4xx, or a response without a document reference.
  Not retried; needs correction and a manual retry.
- ERPAuthExpiredError: the credential was refreshed once and the call replayed
  once, and the ERP still refused it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from core.models import ExternalDocument, SubmissionResult


# =============================================================================
# Errors
# =============================================================================

class ERPError(Exception):
    """Base exception for ERP API errors."""
    retryable: bool = False

    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_body = response_body

    def to_details(self) -> Dict[str, Any]:
        return {
            "error_class": type(self).__name__,
            "status_code": self.status_code,
            "response_body": self.response_body[:2000] if self.response_body else "",
        }


class ERPTransientError(ERPError):
    retryable = True


class ERPPermanentError(ERPError):
    pass


class ERPAuthExpiredError(ERPError):
    pass


# =============================================================================
# Configuration
# =============================================================================

class ERPConnectionStatus(str, Enum):
    """Connection status to ERP system."""
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    FAILED = "FAILED"


@dataclass
class ERPConfig:
    """Configuration for an ERP connector.

    Generic configuration that specific connectors read from.
    """
    connector_type: str                     # "sage_x3", ...
    environment: str = "production"
    base_url: Optional[str] = None
    folder: Optional[str] = None            # Data-ingestion folder / endpoint
    company_id: Optional[str] = None
    timeout_seconds: float = 30.0

    auth_config: Dict[str, Any] = field(default_factory=dict)
    custom_settings: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Abstract Connector Interface
# =============================================================================

class ERPConnector(ABC):
    """Abstract base class for ERP connectors.

    The orchestrator, the reversal coordinator and the API routes depend only
    on this interface. Implementations live in connector subpackages
    (``connectors/sage_x3``).
    """

    def __init__(self, config: ERPConfig):
        self.config = config
        self._connection_status = ERPConnectionStatus.DISCONNECTED

    # =========================================================================
    # Connection Management
    # =========================================================================

    @abstractmethod
    async def connect(self) -> bool:
        """Prepare the HTTP session and credentials.

        Returns:
            True if the connector holds a usable credential
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def test_connection(self) -> bool:
        """Check the ERP is reachable and the credential is accepted."""
        pass

    @property
    def connection_status(self) -> ERPConnectionStatus:
        return self._connection_status

    # =========================================================================
    # Submission
    # =========================================================================

    @abstractmethod
    async def submit(self, document: ExternalDocument) -> SubmissionResult:
        """Post a document to the ERP.

        Raises:
            ERPTransientError: Safe to retry later
            ERPPermanentError: Will fail again until the data is corrected
            ERPAuthExpiredError: Credential refresh did not restore access
        """
        pass

    def get_connector_name(self) -> str:
        return self.config.connector_type


# =============================================================================
# Connector Factory
# =============================================================================

_connector_registry: Dict[str, type] = {}


def register_connector(connector_type: str):
    """Decorator to register a connector implementation."""
    def decorator(cls):
        _connector_registry[connector_type] = cls
        return cls
    return decorator


def create_connector(config: ERPConfig, **kwargs) -> ERPConnector:
    """Create a connector instance from configuration.

    Raises:
        ValueError: If connector_type is not registered
    """
    connector_type = config.connector_type.lower()

    if connector_type not in _connector_registry:
        available = list(_connector_registry.keys())
        raise ValueError(
            f"Unknown connector type: {connector_type}. "
            f"Available: {available}"
        )

    return _connector_registry[connector_type](config, **kwargs)


def list_available_connectors() -> List[str]:
    """List all registered connector types."""
    return list(_connector_registry.keys())
