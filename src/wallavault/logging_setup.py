"""Console logging with Rich, plus secret redaction.

``setup_logging()`` is called once by the CLI entry point. Library code only
ever does ``logging.getLogger(__name__)``.
"""

from __future__ import annotations

import logging
import re

from rich.console import Console
from rich.logging import RichHandler

_REDACT_PATTERNS = [
    re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE),
    re.compile(
        r"((?:password|client_secret|refresh_token|access_token)[\"']?\s*[=:]\s*[\"']?)"
        r"[^\s&\"',}]+",
        re.IGNORECASE,
    ),
]


def redact(text: str) -> str:
    """Mask bearer tokens and credential assignments in *text*."""
    for pattern in _REDACT_PATTERNS:
        text = pattern.sub(r"\1[REDACTED]", text)
    return text


class SecretRedactingFilter(logging.Filter):
    """Rewrites log records so secrets never reach a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


def setup_logging(level: str = "INFO", *, stderr: bool = True) -> None:
    """Install a Rich console handler on the root logger.

    Safe to call repeatedly: existing Rich handlers are replaced.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)

    handler = RichHandler(
        console=Console(stderr=stderr),
        rich_tracebacks=True,
        show_path=False,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s", datefmt="[%X]"))
    handler.addFilter(SecretRedactingFilter())
    root.addHandler(handler)
    root.setLevel(level.upper())

    # httpx logs every request URL at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
