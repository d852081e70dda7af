"""Wallabag session client and HTTP execution."""

from wallavault.client.http import HttpExecutor, RetryPolicy, is_retryable
from wallavault.client.session import (
    ConnectionReport,
    WallabagClient,
    classify_failure,
    create_client,
)

__all__ = [
    "ConnectionReport",
    "HttpExecutor",
    "RetryPolicy",
    "WallabagClient",
    "classify_failure",
    "create_client",
    "is_retryable",
]
