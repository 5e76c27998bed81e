"""Sage X3 connector: OAuth provider, HTTP client and ERPConnector implementation."""

from connectors.sage_x3.sx3_oauth import (
    OAuthTokens,
    SageX3OAuthConfig,
    SageX3OAuthProvider,
)
from connectors.sage_x3.sx3_client import SageX3Client
from connectors.sage_x3.sx3_connector import CATEGORY_ENDPOINTS, SageX3Connector

__all__ = [
    "OAuthTokens",
    "SageX3OAuthConfig",
    "SageX3OAuthProvider",
    "SageX3Client",
    "SageX3Connector",
    "CATEGORY_ENDPOINTS",
]
