# Error taxonomy for the credential and session layer.
# Created: 2026-10-02
#
# Every error carries an ``error_type`` string so callers (message service,
# CLI) can report a specific reason without isinstance ladders.

from __future__ import annotations

from typing import Any


class WallavaultError(Exception):
    """Base class for all wallavault errors."""

    error_type = "unknown_error"


# ---------------------------------------------------------------------------
# Crypto
# ---------------------------------------------------------------------------


class CryptoError(WallavaultError):
    """Base class for Encrypted Store failures."""

    error_type = "crypto_error"


class EmptyInputError(CryptoError):
    """Encrypt/decrypt called with an empty string."""


class MalformedInputError(CryptoError):
    """Blob is not valid base64 or too short to hold IV + tag."""


class AuthenticationFailedError(CryptoError):
    """AEAD tag verification failed (corrupted data or wrong key)."""


class KeyUnavailableError(CryptoError):
    """The master key could not be loaded or generated."""


# ---------------------------------------------------------------------------
# Persistence / configuration
# ---------------------------------------------------------------------------


class PersistenceError(WallavaultError):
    """The durable store rejected a read, write or delete."""

    error_type = "config_error"


class ValidationError(WallavaultError):
    """User-supplied configuration is unusable."""

    error_type = "config_error"

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class MigrationError(WallavaultError):
    """Legacy-secret migration failed; the original record is untouched."""

    error_type = "config_error"


# ---------------------------------------------------------------------------
# Remote API
# ---------------------------------------------------------------------------


class WallabagError(WallavaultError):
    """Base class for failures talking to the wallabag server."""

    retryable = False


class TransportError(WallabagError):
    """The request never produced an HTTP response."""

    error_type = "network_error"
    retryable = True


class NetworkError(TransportError):
    """Connection refused, DNS failure, reset, etc."""


class RequestTimeoutError(TransportError):
    """The request was cancelled after the configured timeout."""


class InvalidServerUrlError(WallabagError):
    """The configured server URL cannot be requested at all."""

    error_type = "config_error"


class HttpStatusError(WallabagError):
    """The server answered with a non-2xx status."""

    error_type = "api_error"

    def __init__(
        self,
        message: str,
        status: int,
        body: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.body = body

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status >= 500 or self.status == 429


class ApiFormatError(WallabagError):
    """A successful response did not carry JSON."""

    error_type = "api_error"


class AuthError(WallabagError):
    """OAuth2 credential or token rejection, or missing credentials."""

    error_type = "auth_error"

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class ApiError(WallabagError):
    """Non-auth REST failure, carrying the server's error_description."""

    error_type = "api_error"

    def __init__(
        self,
        message: str,
        status: int | None = None,
        error_type: str | None = None,
    ):
        super().__init__(message)
        self.status = status
        if error_type:
            self.error_type = error_type


def describe_cause(exc: BaseException) -> str:
    """Return the server's error_description from the cause chain, if any.

    Falls back to ``str(exc)``.
    """
    current: BaseException | None = exc
    while current is not None:
        if isinstance(current, HttpStatusError) and current.body:
            description = current.body.get("error_description")
            if description:
                return str(description)
        current = current.__cause__
    return str(exc)
