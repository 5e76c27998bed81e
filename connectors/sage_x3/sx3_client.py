"""Sage X3 HTTP Client.

Low-level HTTP client for the Sage X3 data-delivery API. Handles the bearer
header, the single refresh-and-replay on 401, and classification of every
failure into transient or permanent.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Tuple

import aiohttp

from connectors.erp_base import ERPAuthExpiredError, ERPPermanentError, ERPTransientError
from connectors.sage_x3.sx3_oauth import SageX3OAuthProvider

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = (429, 500, 502, 503, 504)


class SageX3Client:
    """HTTP client for the Sage X3 API.

    Usage:
        client = SageX3Client(oauth_provider, "https://api.sagex3.example.com")
        await client.connect()
        body = await client.post("/dataingestion/SEED/invoices", payload)
    """

    def __init__(self, oauth: SageX3OAuthProvider, base_url: str, timeout_seconds: float = 30.0):
        self.oauth = oauth
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            )

    async def disconnect(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, str]:
        """Perform one HTTP exchange. Network failures become ERPTransientError."""
        await self.connect()
        try:
            async with self._session.request(method, url, headers=headers, json=payload) as response:
                return response.status, await response.text()
        except asyncio.TimeoutError:
            raise ERPTransientError(f"Sage X3 request timed out: {method} {url}")
        except aiohttp.ClientError as e:
            raise ERPTransientError(f"Sage X3 request failed: {type(e).__name__}: {e}")

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make an authenticated request.

        On 401 the credential is refreshed once and the same call replayed
        once; a second 401 raises ERPAuthExpiredError.

        Raises:
            ERPTransientError: Timeout, network error, 429 or 5xx
            ERPPermanentError: Any other 4xx
            ERPAuthExpiredError: Still unauthorized after one refresh
        """
        url = f"{self.base_url}{path}"
        refreshed = False

        while True:
            headers = {
                "Authorization": await self.oauth.get_authorization_header(force_refresh=refreshed),
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
            status, text = await self._send(method, url, headers, payload)

            if status < 400:
                if not text:
                    return {}
                try:
                    body = json.loads(text)
                except json.JSONDecodeError:
                    return {"raw": text}
                return body if isinstance(body, dict) else {"data": body}

            if status == 401:
                if not refreshed:
                    logger.warning("Got 401 from Sage X3, refreshing token and replaying once")
                    refreshed = True
                    continue
                raise ERPAuthExpiredError("Sage X3 rejected the refreshed credential", status, text)

            if status in TRANSIENT_STATUSES or status >= 500:
                raise ERPTransientError(f"Sage X3 error {status}", status, text)

            raise ERPPermanentError(f"Sage X3 rejected request with {status}", status, text)

    async def post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", path, payload)

    async def get(self, path: str) -> Dict[str, Any]:
        return await self._request("GET", path)

    async def get_folders(self) -> Dict[str, Any]:
        return await self.get("/folders")
