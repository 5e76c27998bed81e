"""AES-GCM encryption for ERP credentials at rest.

The Sage X3 refresh token grants long-lived access to the ERP ledger, so it
is never written to disk in clear. Each record is bound to the account it
belongs to through the GCM associated data.
"""

import base64
import json
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


def generate_encryption_key() -> str:
    """Generate a new base64-encoded 256-bit key for TOKEN_ENCRYPTION_KEY."""
    return base64.b64encode(secrets.token_bytes(32)).decode("utf-8")


@dataclass
class EncryptedToken:
    """Ciphertext plus what is needed to decrypt it."""
    ciphertext: str  # base64, GCM tag appended
    nonce: str       # base64, 96 bits
    account_id: str
    created_at: str
    key_version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ciphertext": self.ciphertext,
            "nonce": self.nonce,
            "account_id": self.account_id,
            "created_at": self.created_at,
            "key_version": self.key_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedToken":
        return cls(
            ciphertext=data["ciphertext"],
            nonce=data["nonce"],
            account_id=data["account_id"],
            created_at=data["created_at"],
            key_version=data.get("key_version", 1),
        )


class TokenEncryption:
    """AES-256-GCM encryption of credential dictionaries.

    Usage:
        enc = TokenEncryption(os.environ["TOKEN_ENCRYPTION_KEY"])
        sealed = enc.encrypt({"refresh_token": "..."}, account_id="SEED")
        tokens = enc.decrypt(sealed)
    """

    def __init__(self, encryption_key: str):
        """
        Args:
            encryption_key: Base64-encoded 32-byte key

        Raises:
            ValueError: The key is not valid base64 or not 32 bytes long
        """
        try:
            key = base64.b64decode(encryption_key, validate=True)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid encryption key: {e}")
        if len(key) != 32:
            raise ValueError("Invalid encryption key: must be 32 bytes (256 bits)")
        self._aesgcm = AESGCM(key)

    def encrypt(self, token_data: Dict[str, Any], account_id: str, key_version: int = 1) -> EncryptedToken:
        nonce = os.urandom(12)
        ciphertext = self._aesgcm.encrypt(
            nonce,
            json.dumps(token_data).encode("utf-8"),
            account_id.encode("utf-8"),
        )
        return EncryptedToken(
            ciphertext=base64.b64encode(ciphertext).decode("utf-8"),
            nonce=base64.b64encode(nonce).decode("utf-8"),
            account_id=account_id,
            created_at=datetime.now(timezone.utc).isoformat(),
            key_version=key_version,
        )

    def decrypt(self, encrypted: EncryptedToken) -> Dict[str, Any]:
        """Decrypt and authenticate a record.

        Raises:
            ValueError: Wrong key, tampered ciphertext or mismatched account
        """
        try:
            plaintext = self._aesgcm.decrypt(
                base64.b64decode(encrypted.nonce),
                base64.b64decode(encrypted.ciphertext),
                encrypted.account_id.encode("utf-8"),
            )
        except InvalidTag:
            raise ValueError("Token decryption failed: authentication tag mismatch")
        return json.loads(plaintext.decode("utf-8"))
