"""OAuth Authentication Routes for Sage X3.

Implements:
- GET  /api/v1/auth/sage/start      - Returns the Sage authorization URL
- GET  /api/v1/auth/sage/callback   - Exchanges the authorization code
- GET  /api/v1/auth/sage/status     - Token status
- POST /api/v1/auth/sage/disconnect - Drop stored tokens

Tokens are encrypted at rest when TOKEN_ENCRYPTION_KEY is configured.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from api.deps import services
from connectors.sage_x3 import SageX3OAuthProvider
from core.observability import get_logger
from pipeline.services import PipelineServices

logger = get_logger(__name__)

router = APIRouter(prefix="/auth/sage")


# =============================================================================
# Request/Response Models
# =============================================================================

class StartAuthResponse(BaseModel):
    """Response with authorization URL."""
    auth_url: str
    state: str
    expires_in: int = 600  # 10 minutes


class DisconnectResponse(BaseModel):
    """Response after disconnect."""
    success: bool
    message: str


def _provider(svc: PipelineServices) -> SageX3OAuthProvider:
    oauth = getattr(svc.connector, "oauth", None)
    if not isinstance(oauth, SageX3OAuthProvider):
        raise HTTPException(status_code=501, detail="Configured ERP connector does not use Sage X3 OAuth")
    return oauth


# =============================================================================
# Routes
# =============================================================================

@router.get("/start", response_model=StartAuthResponse)
async def start_sage_auth(
    redirect: bool = Query(False, description="Redirect straight to Sage instead of returning the URL"),
    svc: PipelineServices = Depends(services),
):
    """Start the Sage X3 authorization-code flow."""
    provider = _provider(svc)
    if not provider.config.client_id:
        raise HTTPException(status_code=500, detail="SAGE_X3_CLIENT_ID not configured. Set environment variable.")

    auth_url, state = provider.start_auth_flow()
    if redirect:
        return RedirectResponse(url=auth_url, status_code=302)
    return StartAuthResponse(auth_url=auth_url, state=state)


@router.get("/callback")
async def sage_auth_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    svc: PipelineServices = Depends(services),
):
    """OAuth callback endpoint. Called by Sage, not by a frontend."""
    provider = _provider(svc)

    if error:
        raise HTTPException(status_code=400, detail=f"{error}: {error_description or 'Unknown error'}")
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state parameter")
    if not provider.validate_state(state):
        raise HTTPException(status_code=400, detail="Invalid or expired state. Please start the auth flow again.")

    tokens = await provider.exchange_code(code)
    await svc.connector.connect()
    return {
        "success": True,
        "message": "Sage X3 connected successfully",
        "expires_at": tokens.expires_at.isoformat(),
    }


@router.get("/status")
async def get_sage_auth_status(svc: PipelineServices = Depends(services)):
    provider = _provider(svc)
    return {
        "connector_status": svc.connector.connection_status.value,
        **(await provider.token_status()),
    }


@router.post("/disconnect", response_model=DisconnectResponse)
async def disconnect_sage(svc: PipelineServices = Depends(services)):
    """Remove stored tokens. Sync will fail until re-authorized."""
    provider = _provider(svc)
    success = await provider.disconnect()
    await svc.connector.disconnect()
    logger.warning("Sage X3 tokens removed")
    return DisconnectResponse(
        success=success,
        message="Disconnected from Sage X3" if success else "Not connected",
    )
