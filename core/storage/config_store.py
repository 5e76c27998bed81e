"""Versioned runtime configuration.

Keys are dotted (``retry.maxAttempts``). Every update bumps the entry's
version and keeps the previous value in its history so that administrative
changes can be traced and rolled back.
"""

import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from core.models import utcnow


class ConfigHistoryEntry(BaseModel):
    value: Any
    changed_at: datetime
    changed_by: str
    reason: Optional[str] = None


class ConfigEntry(BaseModel):
    """One configuration value with its change history."""
    key: str
    value: Any
    category: str = "system"
    description: Optional[str] = None
    version: int = 1
    last_modified_by: str = "system"
    last_modified_at: datetime = Field(default_factory=utcnow)
    history: List[ConfigHistoryEntry] = Field(default_factory=list)


DEFAULT_CONFIG: List[ConfigEntry] = [
    ConfigEntry(key="retry.maxAttempts", value=3, category="retry",
                description="Maximum automatic retry attempts for a failed event"),
    ConfigEntry(key="retry.delayMs", value=5000, category="retry",
                description="Base delay between retries in milliseconds"),
    ConfigEntry(key="retry.exponentialBackoff", value=True, category="retry",
                description="Double the retry delay on each attempt"),
    ConfigEntry(key="feature.autoRetry", value=True, category="feature",
                description="Schedule retries automatically for retryable failures"),
    ConfigEntry(key="feature.invoiceEvents", value=True, category="feature",
                description="Accept invoice.* events"),
    ConfigEntry(key="feature.paymentEvents", value=True, category="feature",
                description="Accept payment.* events"),
    ConfigEntry(key="feature.inventoryEvents", value=True, category="feature",
                description="Accept item.* and stock.* events"),
    ConfigEntry(key="webhook.timestampTolerance", value=300, category="webhook",
                description="Allowed webhook clock skew in seconds"),
    ConfigEntry(key="sage.currencyDivisor", value=100, category="sage",
                description="Divisor converting source subunits to major currency units"),
    ConfigEntry(key="system.dataRetentionDays", value=90, category="system",
                description="Days to keep synced and reversed events"),
]


class UnknownConfigKey(KeyError):
    pass


class ConfigStore(ABC):
    """Abstract versioned key/value store."""

    @abstractmethod
    def get_entry(self, key: str) -> Optional[ConfigEntry]:
        pass

    @abstractmethod
    def list_entries(self, category: Optional[str] = None) -> List[ConfigEntry]:
        pass

    @abstractmethod
    def _write(self, entry: ConfigEntry) -> None:
        pass

    def get(self, key: str, default: Any = None) -> Any:
        entry = self.get_entry(key)
        return entry.value if entry is not None else default

    def as_dict(self) -> Dict[str, Any]:
        return {e.key: e.value for e in self.list_entries()}

    def seed_defaults(self) -> int:
        """Insert missing default keys; never overwrites existing values."""
        added = 0
        for default in DEFAULT_CONFIG:
            if self.get_entry(default.key) is None:
                self._write(default.model_copy(deep=True))
                added += 1
        return added

    def set(
        self,
        key: str,
        value: Any,
        changed_by: str,
        reason: Optional[str] = None,
        create: bool = False,
    ) -> ConfigEntry:
        """Update a key, keeping the prior value in history.

        Raises:
            UnknownConfigKey: The key does not exist and ``create`` is False.
        """
        now = utcnow()
        entry = self.get_entry(key)
        if entry is None:
            if not create:
                raise UnknownConfigKey(key)
            entry = ConfigEntry(key=key, value=value, last_modified_by=changed_by, last_modified_at=now)
        else:
            entry.history.append(ConfigHistoryEntry(
                value=entry.value,
                changed_at=entry.last_modified_at,
                changed_by=entry.last_modified_by,
                reason=reason,
            ))
            entry.value = value
            entry.version += 1
            entry.last_modified_by = changed_by
            entry.last_modified_at = now
        self._write(entry)
        return entry


class InMemoryConfigStore(ConfigStore):
    """Dictionary-backed configuration for tests and local runs."""

    def __init__(self, seed: bool = True):
        self._entries: Dict[str, ConfigEntry] = {}
        self._lock = threading.Lock()
        if seed:
            self.seed_defaults()

    def get_entry(self, key: str) -> Optional[ConfigEntry]:
        with self._lock:
            entry = self._entries.get(key)
            return entry.model_copy(deep=True) if entry else None

    def list_entries(self, category: Optional[str] = None) -> List[ConfigEntry]:
        with self._lock:
            entries = [e.model_copy(deep=True) for e in self._entries.values()]
        if category:
            entries = [e for e in entries if e.category == category]
        return sorted(entries, key=lambda e: e.key)

    def _write(self, entry: ConfigEntry) -> None:
        with self._lock:
            self._entries[entry.key] = entry.model_copy(deep=True)


class SQLiteConfigStore(ConfigStore):
    """Configuration persisted in the pipeline database."""

    def __init__(self, db_path: Union[str, Path], seed: bool = True):
        self.db_path = str(db_path)
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS config_entries (
                    key TEXT PRIMARY KEY,
                    category TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    body TEXT NOT NULL
                )
            """)
            conn.commit()
        finally:
            conn.close()
        if seed:
            self.seed_defaults()

    def get_entry(self, key: str) -> Optional[ConfigEntry]:
        conn = sqlite3.connect(self.db_path)
        try:
            row = conn.execute("SELECT body FROM config_entries WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        return ConfigEntry.model_validate_json(row[0]) if row else None

    def list_entries(self, category: Optional[str] = None) -> List[ConfigEntry]:
        conn = sqlite3.connect(self.db_path)
        try:
            if category:
                rows = conn.execute(
                    "SELECT body FROM config_entries WHERE category = ? ORDER BY key", (category,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT body FROM config_entries ORDER BY key").fetchall()
        finally:
            conn.close()
        return [ConfigEntry.model_validate_json(r[0]) for r in rows]

    def _write(self, entry: ConfigEntry) -> None:
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO config_entries (key, category, version, body) VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET category = excluded.category,
                                               version = excluded.version,
                                               body = excluded.body
                """,
                (entry.key, entry.category, entry.version, entry.model_dump_json()),
            )
            conn.commit()
        finally:
            conn.close()
