"""ERP Connectors - Pluggable ERP system integrations.

This package contains the abstract ERP interface and the Sage X3
implementation. The pipeline depends only on ``ERPConnector``.

To add a new ERP:
1. Create a new folder (e.g., sap/)
2. Implement the ERPConnector interface
3. Register it with the @register_connector decorator
"""

from connectors.erp_base import (
    ERPAuthExpiredError,
    ERPConfig,
    ERPConnectionStatus,
    ERPConnector,
    ERPError,
    ERPPermanentError,
    ERPTransientError,
    create_connector,
    list_available_connectors,
    register_connector,
)

# Importing the package registers the connector
import connectors.sage_x3  # noqa: F401

__all__ = [
    "ERPAuthExpiredError",
    "ERPConfig",
    "ERPConnectionStatus",
    "ERPConnector",
    "ERPError",
    "ERPPermanentError",
    "ERPTransientError",
    "create_connector",
    "list_available_connectors",
    "register_connector",
]
