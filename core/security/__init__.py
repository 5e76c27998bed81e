"""Security module - credential encryption and token storage."""

from core.security.encryption import (
    TokenEncryption,
    EncryptedToken,
    generate_encryption_key,
)
from core.security.token_store import (
    TokenStore,
    StoredToken,
    InMemoryTokenStore,
    FileTokenStore,
)

__all__ = [
    "TokenEncryption",
    "EncryptedToken",
    "generate_encryption_key",
    "TokenStore",
    "StoredToken",
    "InMemoryTokenStore",
    "FileTokenStore",
]
