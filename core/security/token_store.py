"""Storage backends for encrypted ERP credentials.

- InMemoryTokenStore: tests and local runs
- FileTokenStore: single-server deployments, one JSON file per account
"""

import json
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.observability.logging import get_logger
from core.security.encryption import EncryptedToken

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StoredToken:
    """Encrypted credential record for one ERP account."""
    account_id: str
    connector_type: str  # e.g. "sage_x3"
    encrypted_token: EncryptedToken
    scopes: List[str] = field(default_factory=list)
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "connector_type": self.connector_type,
            "encrypted_token": self.encrypted_token.to_dict(),
            "scopes": self.scopes,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoredToken":
        return cls(
            account_id=data["account_id"],
            connector_type=data["connector_type"],
            encrypted_token=EncryptedToken.from_dict(data["encrypted_token"]),
            scopes=data.get("scopes", []),
            expires_at=datetime.fromisoformat(data["expires_at"]) if data.get("expires_at") else None,
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else _now(),
        )


class TokenStore(ABC):
    """Abstract base class for token storage."""

    @abstractmethod
    async def store(self, token: StoredToken) -> None:
        pass

    @abstractmethod
    async def get(self, account_id: str, connector_type: str) -> Optional[StoredToken]:
        pass

    @abstractmethod
    async def delete(self, account_id: str, connector_type: str) -> bool:
        pass


class InMemoryTokenStore(TokenStore):
    """Token storage that lives for the life of the process."""

    def __init__(self):
        self._tokens: Dict[str, StoredToken] = {}
        self._lock = threading.Lock()

    def _key(self, account_id: str, connector_type: str) -> str:
        return f"{connector_type}:{account_id}"

    async def store(self, token: StoredToken) -> None:
        with self._lock:
            self._tokens[self._key(token.account_id, token.connector_type)] = token

    async def get(self, account_id: str, connector_type: str) -> Optional[StoredToken]:
        with self._lock:
            return self._tokens.get(self._key(account_id, connector_type))

    async def delete(self, account_id: str, connector_type: str) -> bool:
        with self._lock:
            return self._tokens.pop(self._key(account_id, connector_type), None) is not None


class FileTokenStore(TokenStore):
    """Encrypted tokens as JSON files.

    Layout:
        {base_path}/{connector_type}/{account_id}.json
    """

    def __init__(self, base_path: str = ".tokens"):
        self._base_path = Path(base_path)
        self._base_path.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        try:
            os.chmod(self._base_path, 0o700)
        except OSError:
            pass  # not supported on every platform

    def _token_path(self, account_id: str, connector_type: str) -> Path:
        connector_dir = self._base_path / connector_type
        connector_dir.mkdir(parents=True, exist_ok=True)
        safe_account = "".join(c if c.isalnum() or c in "-_" else "_" for c in account_id)
        return connector_dir / f"{safe_account}.json"

    async def store(self, token: StoredToken) -> None:
        path = self._token_path(token.account_id, token.connector_type)
        with self._lock:
            with open(path, "w", encoding="utf-8") as f:
                json.dump(token.to_dict(), f, indent=2)
            try:
                os.chmod(path, 0o600)
            except OSError:
                pass

    async def get(self, account_id: str, connector_type: str) -> Optional[StoredToken]:
        path = self._token_path(account_id, connector_type)
        if not path.exists():
            return None
        with self._lock:
            try:
                with open(path, "r", encoding="utf-8") as f:
                    return StoredToken.from_dict(json.load(f))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.error(f"Unreadable token file {path}: {e}")
                return None

    async def delete(self, account_id: str, connector_type: str) -> bool:
        path = self._token_path(account_id, connector_type)
        with self._lock:
            if path.exists():
                path.unlink()
                return True
            return False
