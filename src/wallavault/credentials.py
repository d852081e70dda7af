# Credential Manager: encrypted persistence of the wallabag credential record.
# Created: 2026-10-06
#
# The record lives under one key of the durable store. The sensitive subset
# (client secret, password, tokens) is encrypted field by field; everything
# else is stored as-is.
#
# Writes are last-write-wins with no concurrency control: two overlapping
# update_config() calls can lose one update. Writes come from one logical
# session, so this is accepted rather than locked.

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any
from urllib.parse import urlsplit

from wallavault.config import TransportPolicy
from wallavault.exceptions import CryptoError, PersistenceError
from wallavault.models import (
    REQUIRED_FIELDS,
    SENSITIVE_FIELDS,
    CredentialRecord,
    ValidationResult,
)
from wallavault.security.crypto import EncryptedStore
from wallavault.storage.protocol import (
    CREDENTIAL_KEY,
    KeyValueStoreProtocol,
    StorageChange,
    namespaced,
)

logger = logging.getLogger(__name__)

# Tokens this close to expiry are treated as already expired
TOKEN_EXPIRY_MARGIN_MS = 5 * 60 * 1000

FIELD_LABELS = {
    "server_url": "Server URL",
    "client_id": "Client ID",
    "client_secret": "Client secret",
    "username": "Username",
    "password": "Password",
    "access_token": "Access token",
    "refresh_token": "Refresh token",
    "token_expires_at": "Token expiry",
}

RecordLike = CredentialRecord | dict[str, Any]


def _as_record(value: RecordLike) -> CredentialRecord:
    if isinstance(value, CredentialRecord):
        return value
    return CredentialRecord.from_dict(value)


def is_absolute_url(url: str) -> bool:
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


class CredentialManager:
    """Reads, writes and validates the credential record.

    Args:
        store: Durable store holding the record.
        crypto: Encrypted Store used for the sensitive subset.
        transport_policy: Whether plain-HTTP server URLs fail validation.
        namespace: Optional prefix for the record key.
        clock: Returns the current Unix time in seconds (for tests).
    """

    def __init__(
        self,
        store: KeyValueStoreProtocol,
        crypto: EncryptedStore,
        *,
        transport_policy: TransportPolicy = TransportPolicy.HARDENED,
        namespace: str = "",
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.crypto = crypto
        self.transport_policy = transport_policy
        self.storage_key = namespaced(CREDENTIAL_KEY, namespace)
        self._clock = clock

    # =========================================================================
    # Read / write
    # =========================================================================

    async def get_config(self) -> CredentialRecord:
        """Return the decrypted record, or an empty one.

        A store failure is logged and yields an empty record. A sensitive
        field that cannot be decrypted is dropped so the user re-enters it;
        its ciphertext is never handed out as a value.
        """
        try:
            raw = await self.store.get(self.storage_key)
        except Exception as e:
            logger.error("Failed to read credential record: %s", e)
            return CredentialRecord()

        if not isinstance(raw, dict):
            if raw is not None:
                logger.warning("Ignoring malformed credential record (%s)", type(raw).__name__)
            return CredentialRecord()

        record = CredentialRecord.from_dict(raw)
        for name in SENSITIVE_FIELDS:
            value = getattr(record, name)
            if not value or not isinstance(value, str):
                continue
            try:
                setattr(record, name, await self.crypto.decrypt(value))
            except CryptoError as e:
                logger.warning(
                    "Cannot decrypt %s (%s); cleared, it must be entered again",
                    name,
                    type(e).__name__,
                )
                setattr(record, name, None)
        return record

    async def set_config(self, config: RecordLike) -> None:
        """Encrypt the sensitive subset and overwrite the stored record.

        Raises:
            PersistenceError: encryption or the store write failed.
        """
        record = _as_record(config)
        data = record.to_dict()
        for name in SENSITIVE_FIELDS:
            value = data.get(name)
            if value == "":
                del data[name]
            elif isinstance(value, str):
                try:
                    data[name] = await self.crypto.encrypt(value)
                except CryptoError as e:
                    raise PersistenceError(f"Failed to encrypt {FIELD_LABELS[name]}: {e}") from e

        try:
            await self.store.set(self.storage_key, data)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to save credentials: {e}") from e
        logger.info("Credential record saved")

    async def update_config(self, updates: RecordLike) -> None:
        """Merge *updates* into the stored record (read, merge, write)."""
        current = await self.get_config()
        await self.set_config(current.merged(_as_record(updates)))

    async def clear_config(self) -> None:
        try:
            await self.store.remove(self.storage_key)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to clear credentials: {e}") from e
        logger.info("Credential record cleared")

    async def export_config(self) -> CredentialRecord:
        """The record without its sensitive subset, safe to display or share."""
        return (await self.get_config()).without_secrets()

    async def debug_config(self) -> dict[str, Any]:
        masked = (await self.get_config()).masked()
        logger.debug("Current credential record: %s", masked)
        return masked

    # =========================================================================
    # Validation
    # =========================================================================

    def validate_config(self, config: RecordLike) -> ValidationResult:
        record = _as_record(config)
        errors: list[str] = []
        warnings: list[str] = []

        for name in REQUIRED_FIELDS:
            value = getattr(record, name)
            if not value or not str(value).strip():
                errors.append(f"{FIELD_LABELS[name]} is required")

        if record.server_url:
            if not is_absolute_url(record.server_url):
                errors.append(
                    "Server URL is not a valid absolute URL "
                    "(expected something like https://wallabag.example.com)"
                )
            elif urlsplit(record.server_url).scheme != "https":
                if self.transport_policy is TransportPolicy.HARDENED:
                    errors.append("Server URL must use HTTPS; plain HTTP is not allowed")
                else:
                    warnings.append("Server URL uses plain HTTP; credentials are sent unencrypted")

        if record.client_id and len(record.client_id) < 8:
            warnings.append("Client ID looks too short")
        if record.client_secret and len(record.client_secret) < 16:
            warnings.append("Client secret looks too short")
        if record.username and len(record.username) < 3:
            errors.append("Username must be at least 3 characters")
        if record.password and len(record.password) < 4:
            warnings.append("Password looks too short")

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    async def is_configured(self) -> bool:
        return self.validate_config(await self.get_config()).valid

    async def has_auth_credentials(self) -> bool:
        record = await self.get_config()
        return all(getattr(record, name) for name in REQUIRED_FIELDS)

    # =========================================================================
    # Tokens
    # =========================================================================

    def token_valid_in(self, record: CredentialRecord) -> bool:
        """True if *record* holds an access token outside the expiry margin."""
        if not record.access_token or not record.token_expires_at:
            return False
        now_ms = self._clock() * 1000
        return record.token_expires_at * 1000 - now_ms > TOKEN_EXPIRY_MARGIN_MS

    async def is_token_valid(self) -> bool:
        return self.token_valid_in(await self.get_config())

    async def save_tokens(
        self,
        access_token: str,
        expires_in: int,
        refresh_token: str | None = None,
    ) -> None:
        """Store a new access token; the refresh token is kept unless replaced."""
        updates = CredentialRecord(
            access_token=access_token,
            token_expires_at=int(self._clock()) + int(expires_in),
            refresh_token=refresh_token or None,
        )
        await self.update_config(updates)

    async def clear_tokens(self) -> None:
        """Drop the OAuth2 session, keeping server identity and credentials."""
        record = await self.get_config()
        await self.set_config(record.without_tokens())
        logger.info("Stored tokens cleared")

    # =========================================================================
    # Change notifications / key rotation
    # =========================================================================

    def on_change(self, callback: Callable[[StorageChange], Any]) -> Callable[[], None]:
        """Call *callback* when the credential record changes in this store's area.

        Returns an unsubscribe callable.
        """
        area = self.store.area

        def listener(changes: dict[str, StorageChange], changed_area: str) -> Any:
            if changed_area != area or self.storage_key not in changes:
                return None
            return callback(changes[self.storage_key])

        return self.store.add_listener(listener)

    async def rotate_key(self) -> None:
        """Re-encrypt the record under a freshly generated master key.

        Order: decrypt everything with the old key, delete the old key,
        write the record (which generates and uses the new key). A crash
        between the delete and the write loses the sensitive fields; they
        then have to be entered again.
        """
        record = await self.get_config()
        await self.crypto.rotate_key()
        await self.set_config(record)
        logger.info("Master key rotated; credential record re-encrypted")
