"""Sage X3 ERP Connector.

Implements the ERPConnector interface for Sage X3 data ingestion. Each
document category posts to its own endpoint under
``/dataingestion/{folder}/``.
"""

import logging
from typing import Dict, Optional

from connectors.erp_base import (
    ERPConfig,
    ERPConnectionStatus,
    ERPConnector,
    ERPError,
    ERPPermanentError,
    register_connector,
)
from connectors.sage_x3.sx3_client import SageX3Client
from connectors.sage_x3.sx3_oauth import SageX3OAuthConfig, SageX3OAuthProvider
from core.models import DocumentCategory, ExternalDocument, SubmissionResult

logger = logging.getLogger(__name__)

CATEGORY_ENDPOINTS: Dict[DocumentCategory, str] = {
    DocumentCategory.INVOICE: "invoices",
    DocumentCategory.PAYMENT: "payments",
    DocumentCategory.CREDIT_NOTE: "credit-notes",
    DocumentCategory.STOCK_MOVEMENT: "stock-movements",
    DocumentCategory.ITEM_MASTER: "items",
}


@register_connector("sage_x3")
class SageX3Connector(ERPConnector):
    """Sage X3 implementation of ERPConnector.

    Configuration:
        config = ERPConfig(
            connector_type="sage_x3",
            base_url="https://api.sagex3.example.com",
            folder="SEED",
            company_id="NG01",
            auth_config={
                "client_id": "...",
                "client_secret": "...",
                "redirect_uri": "https://.../api/v1/auth/sage/callback",
            },
        )
    """

    def __init__(
        self,
        config: ERPConfig,
        oauth: Optional[SageX3OAuthProvider] = None,
        client: Optional[SageX3Client] = None,
    ):
        super().__init__(config)
        if not config.base_url:
            raise ValueError("Sage X3 connector requires base_url")
        self.folder = config.folder or "SEED"

        if oauth is None:
            auth = config.auth_config
            oauth = SageX3OAuthProvider(
                SageX3OAuthConfig(
                    base_url=config.base_url,
                    client_id=auth.get("client_id", ""),
                    client_secret=auth.get("client_secret", ""),
                    redirect_uri=auth.get("redirect_uri", ""),
                    scope=auth.get("scope", "api.dataDelivery"),
                    timeout_seconds=config.timeout_seconds,
                ),
                account_id=self.folder,
                token_encryption=auth.get("token_encryption"),
                token_store=auth.get("token_store"),
            )
        self.oauth = oauth
        self.client = client or SageX3Client(oauth, config.base_url, config.timeout_seconds)

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> bool:
        await self.client.connect()
        if await self.oauth.is_connected():
            self._connection_status = ERPConnectionStatus.CONNECTED
            return True
        self._connection_status = ERPConnectionStatus.NOT_AUTHORIZED
        return False

    async def disconnect(self) -> None:
        await self.client.disconnect()
        self._connection_status = ERPConnectionStatus.DISCONNECTED

    async def test_connection(self) -> bool:
        try:
            await self.client.get_folders()
        except ERPError as e:
            logger.warning(f"Sage X3 connection test failed: {e}")
            self._connection_status = ERPConnectionStatus.FAILED
            return False
        self._connection_status = ERPConnectionStatus.CONNECTED
        return True

    # =========================================================================
    # Submission
    # =========================================================================

    def endpoint_for(self, category: DocumentCategory) -> str:
        return f"/dataingestion/{self.folder}/{CATEGORY_ENDPOINTS[category]}"

    async def submit(self, document: ExternalDocument) -> SubmissionResult:
        endpoint = self.endpoint_for(document.category)
        logger.info(
            f"Posting {document.document_type} to Sage X3 {endpoint} "
            f"(source {document.source_id or '-'})"
        )
        body = await self.client.post(endpoint, document.payload)

        reference = body.get("documentReference") or body.get("id")
        if not reference:
            raise ERPPermanentError(
                "Sage X3 response carried no document reference",
                200,
                str(body)[:2000],
            )
        logger.info(f"Sage X3 accepted {document.document_type} as {reference}")
        return SubmissionResult(
            document_reference=str(reference),
            document_category=document.category,
            raw_response=body,
        )
