"""Core storage - events, transactions, scheduled retries and configuration."""

from core.storage.base import (
    DuplicateKeyError,
    EventQuery,
    EventStore,
    ScheduledRetry,
    StaleRecordError,
    StorageError,
    StoreStats,
    TransactionQuery,
)
from core.storage.memory import InMemoryEventStore
from core.storage.sqlite import SQLiteEventStore
from core.storage.config_store import (
    DEFAULT_CONFIG,
    ConfigEntry,
    ConfigStore,
    InMemoryConfigStore,
    SQLiteConfigStore,
    UnknownConfigKey,
)

__all__ = [
    "DuplicateKeyError",
    "EventQuery",
    "EventStore",
    "ScheduledRetry",
    "StaleRecordError",
    "StorageError",
    "StoreStats",
    "TransactionQuery",
    "InMemoryEventStore",
    "SQLiteEventStore",
    "DEFAULT_CONFIG",
    "ConfigEntry",
    "ConfigStore",
    "InMemoryConfigStore",
    "SQLiteConfigStore",
    "UnknownConfigKey",
]
