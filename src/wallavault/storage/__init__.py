# Durable key-value storage backends.
# Created: 2026-10-03

from wallavault.storage.file_store import FileKeyValueStore
from wallavault.storage.memory_store import MemoryKeyValueStore
from wallavault.storage.protocol import (
    CREDENTIAL_KEY,
    MASTER_KEY_KEY,
    MIGRATION_KEY,
    ChangeListener,
    KeyValueStoreProtocol,
    StorageChange,
    namespaced,
)

__all__ = [
    "CREDENTIAL_KEY",
    "MASTER_KEY_KEY",
    "MIGRATION_KEY",
    "ChangeListener",
    "FileKeyValueStore",
    "KeyValueStoreProtocol",
    "MemoryKeyValueStore",
    "StorageChange",
    "namespaced",
]
