# Key-value storage protocol - the durable store the credential layer sits on.
# Created: 2026-10-03

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

# Logical record keys
CREDENTIAL_KEY = "credential_record"
MIGRATION_KEY = "migration_marker"
MASTER_KEY_KEY = "master_key"


@dataclass(frozen=True)
class StorageChange:
    """One key's transition inside a single write."""

    key: str
    old_value: Any = None
    new_value: Any = None


# listener(changes, area)
ChangeListener = Callable[[dict[str, StorageChange], str], Any]


class KeyValueStoreProtocol(Protocol):
    """Protocol for durable key-value backends.

    Each store belongs to one named area ("local", "sync", ...). Values are
    JSON-serialisable. Implementations raise ``PersistenceError`` when a
    read, write or delete cannot be completed.
    """

    area: str

    async def get(self, key: str) -> Any | None:
        """Return the value stored under *key*, or None."""
        ...

    async def set(self, key: str, value: Any) -> None:
        """Store *value* under *key*, notifying listeners."""
        ...

    async def remove(self, key: str) -> bool:
        """Delete *key*. Returns True if something was deleted."""
        ...

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Subscribe to change notifications. Returns an unsubscribe callable."""
        ...


def namespaced(key: str, namespace: str = "") -> str:
    """Prefix a logical key with an installation namespace, if any."""
    return f"{namespace}:{key}" if namespace else key
