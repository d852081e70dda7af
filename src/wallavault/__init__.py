"""wallavault: encrypted wallabag credentials and an authenticated session client."""

from wallavault.client import ConnectionReport, RetryPolicy, WallabagClient, create_client
from wallavault.credentials import CredentialManager
from wallavault.migration import MigrationEngine
from wallavault.models import CredentialRecord
from wallavault.security import EncryptedStore
from wallavault.service import WallabagService, create_service

__version__ = "0.3.0"

__all__ = [
    "ConnectionReport",
    "CredentialManager",
    "CredentialRecord",
    "EncryptedStore",
    "MigrationEngine",
    "RetryPolicy",
    "WallabagClient",
    "WallabagService",
    "create_client",
    "create_service",
]
