# Memory Store: in-process key-value store.
# Created: 2026-10-05
#
# Used for ephemeral sessions and as the test double for the durable store.
# Values are deep-copied on the way in and out; callers never hold a
# reference to stored state.

from __future__ import annotations

import copy
from typing import Any

from wallavault.storage.base import ListenerMixin


class MemoryKeyValueStore(ListenerMixin):
    def __init__(self, area: str = "local", initial: dict[str, Any] | None = None):
        self.area = area
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._init_listeners()

    async def get(self, key: str) -> Any | None:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        old_value = self._data.get(key)
        self._data[key] = copy.deepcopy(value)
        self._notify(key, old_value, copy.deepcopy(value))

    async def remove(self, key: str) -> bool:
        if key not in self._data:
            return False
        old_value = self._data.pop(key)
        self._notify(key, old_value, None)
        return True

    def keys(self) -> list[str]:
        return list(self._data)

    def raw(self, key: str) -> Any | None:
        """Synchronous peek at the stored value (no copy)."""
        return self._data.get(key)
