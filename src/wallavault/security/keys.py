# Master-key custody: where the 256-bit AES key lives between processes.
# Created: 2026-10-05
#
# Two backends:
#   StoreKeyProvider:   raw key in the same durable store as the ciphertext.
#                       Anyone who can read the store can decrypt it. This is
#                       the fallback when no OS key store is available.
#   KeyringKeyProvider: key held by the OS key store (Keychain, Secret
#                       Service, Windows Credential Manager) via `keyring`.

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from typing import Any, Protocol

from wallavault._compat import import_extra
from wallavault.exceptions import KeyUnavailableError
from wallavault.storage.protocol import MASTER_KEY_KEY, KeyValueStoreProtocol, namespaced

logger = logging.getLogger(__name__)

KEY_BYTES = 32


class KeyProvider(Protocol):
    """Persists exactly one raw master key."""

    co_located: bool

    async def load(self) -> bytes | None:
        """Return the stored key, or None if none has been generated yet."""
        ...

    async def save(self, key: bytes) -> None: ...

    async def delete(self) -> None: ...


def _decode_key(value: Any) -> bytes:
    # Browser exports store the key as a list of byte values
    if isinstance(value, list):
        try:
            return bytes(value)
        except (TypeError, ValueError) as e:
            raise KeyUnavailableError("Stored master key is corrupt") from e
    if isinstance(value, str):
        try:
            return base64.b64decode(value, validate=True)
        except binascii.Error as e:
            raise KeyUnavailableError("Stored master key is corrupt") from e
    raise KeyUnavailableError(f"Unsupported master key format: {type(value).__name__}")


class StoreKeyProvider:
    """Keeps the raw key next to the data it protects.

    Kept for installations without an OS key store. It offers no protection
    against an attacker who can read the store; it only keeps secrets from
    appearing in cleartext.
    """

    co_located = True

    def __init__(self, store: KeyValueStoreProtocol, namespace: str = ""):
        self._store = store
        self._key = namespaced(MASTER_KEY_KEY, namespace)
        self._warned = False

    async def load(self) -> bytes | None:
        value = await self._store.get(self._key)
        if value is None:
            return None
        if not self._warned:
            logger.warning(
                "Master key is stored alongside encrypted data; "
                "install 'wallavault[keyring]' to keep it in the OS key store"
            )
            self._warned = True
        return _decode_key(value)

    async def save(self, key: bytes) -> None:
        await self._store.set(self._key, list(key))

    async def delete(self) -> None:
        await self._store.remove(self._key)


class KeyringKeyProvider:
    """Keeps the key in the OS key store."""

    co_located = False

    def __init__(self, service: str = "wallavault", username: str = MASTER_KEY_KEY):
        self._keyring = import_extra("keyring", "keyring")
        self.service = service
        self.username = username

    async def load(self) -> bytes | None:
        value = await asyncio.to_thread(self._keyring.get_password, self.service, self.username)
        if value is None:
            return None
        return _decode_key(value)

    async def save(self, key: bytes) -> None:
        encoded = base64.b64encode(key).decode("ascii")
        await asyncio.to_thread(self._keyring.set_password, self.service, self.username, encoded)
        logger.info("Stored master key in OS key store (service=%s)", self.service)

    async def delete(self) -> None:
        from keyring.errors import PasswordDeleteError

        try:
            await asyncio.to_thread(self._keyring.delete_password, self.service, self.username)
        except PasswordDeleteError:
            logger.debug("No master key in OS key store to delete")
