# Listener plumbing shared by the key-value store implementations.
# Created: 2026-10-05

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from wallavault.storage.protocol import ChangeListener, StorageChange

logger = logging.getLogger(__name__)


class ListenerMixin:
    """Fan-out of ``StorageChange`` events to subscribed listeners.

    Listener errors are logged and never propagate into the writer.
    Coroutine listeners are scheduled on the running loop.
    """

    area: str

    def _init_listeners(self) -> None:
        self._listeners: list[ChangeListener] = []
        self._pending: set[asyncio.Task] = set()

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, key: str, old_value: Any, new_value: Any) -> None:
        if not self._listeners:
            return
        changes = {key: StorageChange(key=key, old_value=old_value, new_value=new_value)}
        for listener in list(self._listeners):
            try:
                result = listener(changes, self.area)
                if asyncio.iscoroutine(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._pending.discard)
            except Exception:
                logger.warning("Storage listener failed for %s", key, exc_info=True)
