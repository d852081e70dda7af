"""Process-wide teardown for cached services.

The settings singleton, the master-key cache, the message service and every
open HTTP client register here. ``shutdown_all()`` closes them newest first,
so clients created by a service are closed before the service itself; tests
call ``reset_all()`` to drop cached state between cases.

Created: 2026-10-04
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

# name -> (shutdown callback, reset callback), in registration order
_registry: dict[str, tuple[Callable | None, Callable | None]] = {}


def register(
    name: str,
    *,
    shutdown: Callable[[], Any] | None = None,
    reset: Callable[[], Any] | None = None,
) -> None:
    """Register teardown callbacks under *name*.

    Re-registering a name replaces its callbacks and moves it to the end of
    the shutdown order.

    Args:
        name: Unique identifier (e.g. ``"settings"``, ``"http_client-<id>"``).
        shutdown: Async or sync callable releasing resources.
        reset: Sync callable dropping cached state.
    """
    _registry.pop(name, None)
    _registry[name] = (shutdown, reset)


def unregister(name: str) -> None:
    """Forget *name*; used by objects that already released themselves."""
    _registry.pop(name, None)


def registered() -> list[str]:
    return list(_registry)


async def shutdown_all() -> list[str]:
    """Run shutdown callbacks newest first and forget them.

    A failing callback is logged and does not stop the others. Entries that
    also carry a reset callback stay registered.

    Returns:
        Names whose shutdown callback raised.
    """
    failed: list[str] = []
    for name in reversed(list(_registry)):
        shutdown_cb, reset_cb = _registry.get(name, (None, None))
        if shutdown_cb is None:
            continue
        try:
            result = shutdown_cb()
            if asyncio.iscoroutine(result):
                await result
            logger.debug("Shut down %s", name)
        except Exception:
            logger.warning("Error shutting down %s", name, exc_info=True)
            failed.append(name)
        if reset_cb is None:
            _registry.pop(name, None)
        else:
            _registry[name] = (None, reset_cb)
    return failed


def reset_all() -> None:
    """Run every reset callback and empty the registry."""
    for name, (_, reset_cb) in list(_registry.items()):
        if reset_cb is None:
            continue
        try:
            reset_cb()
            logger.debug("Reset %s", name)
        except Exception:
            logger.warning("Error resetting %s", name, exc_info=True)
    _registry.clear()
