# File Store: JSON-file key-value store at ~/.wallavault/{area}.json.
# Created: 2026-10-03
#
# One JSON document per storage area. Writes are atomic (temp file +
# rename) and the file is chmod 0600 (owner-only read/write).

from __future__ import annotations

import copy
import json
import logging
import os
import stat
from pathlib import Path
from typing import Any

from wallavault.exceptions import PersistenceError
from wallavault.storage.base import ListenerMixin

logger = logging.getLogger(__name__)


class FileKeyValueStore(ListenerMixin):
    """File-backed store for one storage area.

    The whole document is read on every ``get`` so that other processes
    writing the same file are observed. No locking: concurrent writers are
    last-write-wins.
    """

    def __init__(self, base_path: Path, area: str = "local"):
        self.base_path = base_path
        self.area = area
        self.path = base_path / f"{area}.json"
        self._init_listeners()

    # =========================================================================
    # File I/O Helpers
    # =========================================================================

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            raise PersistenceError(f"Cannot read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(f"Unexpected document in {self.path}")
        return data

    def _save(self, data: dict[str, Any]) -> None:
        temp_path = self.path.with_suffix(".tmp")
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.chmod(temp_path, stat.S_IRUSR | stat.S_IWUSR)
            temp_path.replace(self.path)
        except (OSError, TypeError, ValueError) as e:
            if temp_path.exists():
                temp_path.unlink()
            raise PersistenceError(f"Cannot write {self.path}: {e}") from e

    # =========================================================================
    # Store Operations
    # =========================================================================

    async def get(self, key: str) -> Any | None:
        return copy.deepcopy(self._load().get(key))

    async def set(self, key: str, value: Any) -> None:
        data = self._load()
        old_value = data.get(key)
        data[key] = copy.deepcopy(value)
        self._save(data)
        logger.debug("Stored %s in %s", key, self.path)
        self._notify(key, old_value, copy.deepcopy(value))

    async def remove(self, key: str) -> bool:
        data = self._load()
        if key not in data:
            return False
        old_value = data.pop(key)
        self._save(data)
        logger.debug("Removed %s from %s", key, self.path)
        self._notify(key, old_value, None)
        return True

    def keys(self) -> list[str]:
        return list(self._load())
