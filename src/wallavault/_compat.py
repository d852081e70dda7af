"""Optional dependency helpers."""

import importlib
from types import ModuleType


def import_extra(module: str, extra: str) -> ModuleType:
    """Import *module*, or explain which wallavault extra provides it.

    Raises:
        ImportError: the module is missing; the message names the extra.
    """
    try:
        return importlib.import_module(module)
    except ImportError as e:
        raise ImportError(
            f"'{module}' is required for this feature but not installed. "
            f"Install it with: pip install 'wallavault[{extra}]'"
        ) from e
