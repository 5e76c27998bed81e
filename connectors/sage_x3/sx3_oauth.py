"""OAuth 2.0 for the Sage X3 data-delivery API.

Implements:
- Authorization-code flow for the one-time connect (state checked on callback)
- Refresh-token exchange for the short-lived access token
- Encrypted token persistence through ``core.security``

Sage issues access tokens valid for five minutes; they are treated as
expired one minute early.
"""

import asyncio
import secrets
import urllib.parse
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import aiohttp

from connectors.erp_base import ERPAuthExpiredError, ERPPermanentError, ERPTransientError
from core.observability.logging import get_logger
from core.security.encryption import TokenEncryption
from core.security.token_store import StoredToken, TokenStore

logger = get_logger(__name__)

CONNECTOR_TYPE = "sage_x3"
ACCESS_TOKEN_LIFETIME_SECONDS = 300
EXPIRY_BUFFER_SECONDS = 60
FLOW_TIMEOUT = timedelta(minutes=10)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SageX3OAuthConfig:
    base_url: str
    client_id: str
    client_secret: str
    redirect_uri: str
    scope: str = "api.dataDelivery"
    timeout_seconds: float = 30.0

    @property
    def authorize_endpoint(self) -> str:
        return f"{self.base_url.rstrip('/')}/token/authorise"

    @property
    def token_endpoint(self) -> str:
        return f"{self.base_url.rstrip('/')}/token"


@dataclass
class OAuthTokens:
    """OAuth tokens with expiration tracking."""
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: int = ACCESS_TOKEN_LIFETIME_SECONDS
    obtained_at: datetime = field(default_factory=_now)

    @property
    def expires_at(self) -> datetime:
        return self.obtained_at + timedelta(seconds=self.expires_in)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or _now()
        return now >= self.expires_at - timedelta(seconds=EXPIRY_BUFFER_SECONDS)

    @property
    def authorization_header(self) -> str:
        return f"{self.token_type} {self.access_token}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "obtained_at": self.obtained_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OAuthTokens":
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type", "Bearer"),
            expires_in=data.get("expires_in", ACCESS_TOKEN_LIFETIME_SECONDS),
            obtained_at=datetime.fromisoformat(data["obtained_at"]) if "obtained_at" in data else _now(),
        )


class SageX3OAuthProvider:
    """Holds and refreshes the Sage X3 bearer credential.

    Flow:
    1. Operator opens /api/v1/auth/sage/start, gets the authorization URL
    2. Sage redirects to the callback with ``code`` and ``state``
    3. exchange_code() trades the code for tokens
    4. get_authorization_header() refreshes transparently from then on
    """

    def __init__(
        self,
        config: SageX3OAuthConfig,
        account_id: str,
        token_encryption: Optional[TokenEncryption] = None,
        token_store: Optional[TokenStore] = None,
    ):
        self.config = config
        self.account_id = account_id
        self._encryption = token_encryption
        self._store = token_store
        self._tokens: Optional[OAuthTokens] = None
        self._pending_states: Dict[str, datetime] = {}

    # =========================================================================
    # Authorization-code flow
    # =========================================================================

    def start_auth_flow(self) -> Tuple[str, str]:
        """Return (authorization_url, state)."""
        state = secrets.token_urlsafe(24)
        self._pending_states[state] = _now()
        params = {
            "client_id": self.config.client_id,
            "scope": self.config.scope,
            "redirect_uri": self.config.redirect_uri,
            "state": state,
        }
        return f"{self.config.authorize_endpoint}?{urllib.parse.urlencode(params)}", state

    def validate_state(self, state: Optional[str]) -> bool:
        """Consume a callback state. False if unknown or older than ten minutes."""
        if not state:
            return False
        started = self._pending_states.pop(state, None)
        return started is not None and _now() - started <= FLOW_TIMEOUT

    async def exchange_code(self, authorization_code: str) -> OAuthTokens:
        """Exchange an authorization code for tokens.

        Raises:
            ERPPermanentError: Sage refused the code
            ERPTransientError: Sage could not be reached
        """
        status, body = await self._post_token({
            "code": authorization_code,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "grant_type": "authorization_code",
            "redirect_uri": self.config.redirect_uri,
        })
        if status != 200 or "access_token" not in body:
            logger.error("Sage X3 code exchange failed", extra_fields={"status": status})
            raise ERPPermanentError("Failed to obtain access tokens from Sage X3", status, str(body))

        tokens = self._tokens_from(body)
        await self._store_tokens(tokens)
        logger.info("Sage X3 authorization completed", extra_fields={"account_id": self.account_id})
        return tokens

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self) -> OAuthTokens:
        """Exchange the refresh token for a new access token.

        Raises:
            ERPAuthExpiredError: No refresh token, or Sage rejected it
            ERPTransientError: Sage could not be reached
        """
        current = await self._load_tokens()
        if current is None or not current.refresh_token:
            raise ERPAuthExpiredError("No Sage X3 refresh token available; reconnect required")

        status, body = await self._post_token({
            "refresh_token": current.refresh_token,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "grant_type": "refresh_token",
        })
        if status >= 500 or status == 429:
            raise ERPTransientError(f"Sage X3 token endpoint returned {status}", status, str(body))
        if status != 200 or "access_token" not in body:
            logger.warning("Sage X3 token refresh rejected", extra_fields={"status": status})
            raise ERPAuthExpiredError("Failed to refresh Sage X3 access token", status, str(body))

        tokens = self._tokens_from(body, fallback_refresh=current.refresh_token)
        await self._store_tokens(tokens)
        logger.info("Refreshed Sage X3 access token")
        return tokens

    async def get_authorization_header(self, force_refresh: bool = False) -> str:
        tokens = await self._load_tokens()
        if tokens is None:
            raise ERPAuthExpiredError("Sage X3 is not connected")
        if force_refresh or tokens.is_expired():
            tokens = await self.refresh()
        return tokens.authorization_header

    async def is_connected(self) -> bool:
        return await self._load_tokens() is not None

    def set_tokens(self, access_token: str, refresh_token: Optional[str]) -> None:
        """Seed tokens directly, e.g. from a secrets manager."""
        self._tokens = OAuthTokens(access_token=access_token, refresh_token=refresh_token)

    async def token_status(self) -> Dict[str, Any]:
        tokens = await self._load_tokens()
        if tokens is None:
            return {"connected": False}
        return {
            "connected": True,
            "expires_at": tokens.expires_at.isoformat(),
            "expired": tokens.is_expired(),
            "has_refresh_token": bool(tokens.refresh_token),
        }

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _post_token(self, data: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as http:
                async with http.post(self.config.token_endpoint, json=data) as response:
                    try:
                        body = await response.json(content_type=None)
                    except ValueError:
                        body = {"raw": await response.text()}
                    return response.status, body if isinstance(body, dict) else {"raw": body}
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ERPTransientError(f"Sage X3 token endpoint unreachable: {e}")

    def _tokens_from(self, body: Dict[str, Any], fallback_refresh: Optional[str] = None) -> OAuthTokens:
        return OAuthTokens(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or fallback_refresh,
            token_type=body.get("token_type", "Bearer"),
            expires_in=int(body.get("expires_in", ACCESS_TOKEN_LIFETIME_SECONDS)),
        )

    # =========================================================================
    # Token Storage (encrypted)
    # =========================================================================

    async def _store_tokens(self, tokens: OAuthTokens) -> None:
        self._tokens = tokens
        if self._store and self._encryption:
            encrypted = self._encryption.encrypt(tokens.to_dict(), account_id=self.account_id)
            await self._store.store(StoredToken(
                account_id=self.account_id,
                connector_type=CONNECTOR_TYPE,
                encrypted_token=encrypted,
                scopes=self.config.scope.split(" "),
                expires_at=tokens.expires_at,
            ))

    async def _load_tokens(self) -> Optional[OAuthTokens]:
        if self._tokens is not None:
            return self._tokens
        if self._store and self._encryption:
            stored = await self._store.get(self.account_id, CONNECTOR_TYPE)
            if stored:
                try:
                    self._tokens = OAuthTokens.from_dict(self._encryption.decrypt(stored.encrypted_token))
                except ValueError as e:
                    logger.error(f"Failed to decrypt Sage X3 tokens: {e}")
                    return None
        return self._tokens

    async def disconnect(self) -> bool:
        self._tokens = None
        if self._store:
            return await self._store.delete(self.account_id, CONNECTOR_TYPE)
        return True
