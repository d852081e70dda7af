# Encrypted Store: AES-256-GCM encryption of individual credential fields.
# Created: 2026-10-05
#
# Blob format (steady state):
#   wv1$ + base64(IV[12] || ciphertext || tag[16])
#
# The wv1$ prefix names the format version. Untagged blobs
# (base64(IV || ciphertext || tag), as written by the browser extension)
# still decrypt so imported data keeps working; the migration engine
# re-tags them.
#
# is_legacy_encoded and is_strong_encrypted are heuristics. Plain base64
# carries no format marker, so a short password such as "abcd" reads as
# base64 text, and an untagged blob is only recognised by decrypting it.

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import os
import re
import secrets
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from wallavault.exceptions import (
    AuthenticationFailedError,
    EmptyInputError,
    KeyUnavailableError,
    MalformedInputError,
    WallavaultError,
)
from wallavault.security.keys import KEY_BYTES, KeyProvider

logger = logging.getLogger(__name__)

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")


class EncryptedStore:
    """Authenticated encryption of strings under a lazily loaded master key.

    The key is loaded (or generated) on first use and cached as an ``AESGCM``
    instance for the life of the object; the raw bytes are not retained.
    """

    ALGORITHM = "AES-GCM"
    KEY_BITS = KEY_BYTES * 8
    IV_LENGTH = 12  # 96 bits, recommended for GCM
    TAG_LENGTH = 16
    FORMAT_PREFIX = "wv1$"

    def __init__(self, key_provider: KeyProvider):
        self._keys = key_provider
        self._cipher: AESGCM | None = None
        self._key_lock = asyncio.Lock()

    # =========================================================================
    # Key lifecycle
    # =========================================================================

    async def _get_cipher(self) -> AESGCM:
        if self._cipher is not None:
            return self._cipher

        async with self._key_lock:
            if self._cipher is not None:
                return self._cipher
            try:
                raw = await self._keys.load()
                if raw is None:
                    raw = AESGCM.generate_key(bit_length=self.KEY_BITS)
                    await self._keys.save(raw)
                    logger.info("Generated new master key")
                elif len(raw) != KEY_BYTES:
                    raise KeyUnavailableError(
                        f"Stored master key has {len(raw)} bytes, expected {KEY_BYTES}"
                    )
                else:
                    logger.debug("Loaded existing master key")
                self._cipher = AESGCM(raw)
            except KeyUnavailableError:
                raise
            except Exception as e:
                raise KeyUnavailableError(f"Master key unavailable: {e}") from e
            return self._cipher

    async def rotate_key(self) -> None:
        """Delete the persisted key and drop the cache.

        Everything encrypted under the old key becomes unreadable. Callers
        must decrypt their data first and re-encrypt it afterwards (see
        ``CredentialManager.rotate_key``).
        """
        async with self._key_lock:
            await self._keys.delete()
            self._cipher = None
        logger.info("Master key deleted; a new key will be generated on next use")

    def clear_key_cache(self) -> None:
        self._cipher = None
        logger.debug("Master key cache cleared")

    # =========================================================================
    # Encrypt / decrypt
    # =========================================================================

    async def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise EmptyInputError("Nothing to encrypt")
        cipher = await self._get_cipher()
        iv = os.urandom(self.IV_LENGTH)
        ciphertext = cipher.encrypt(iv, plaintext.encode("utf-8"), None)
        return self.FORMAT_PREFIX + base64.b64encode(iv + ciphertext).decode("ascii")

    async def decrypt(self, blob: str) -> str:
        if not blob:
            raise EmptyInputError("Nothing to decrypt")
        combined = self._unpack(blob)
        cipher = await self._get_cipher()
        iv, ciphertext = combined[: self.IV_LENGTH], combined[self.IV_LENGTH :]
        try:
            plaintext = cipher.decrypt(iv, ciphertext, None)
        except InvalidTag as e:
            raise AuthenticationFailedError("Encrypted data is corrupt or the key is wrong") from e
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise AuthenticationFailedError("Decrypted data is not text") from e

    def _unpack(self, blob: str) -> bytes:
        data = blob[len(self.FORMAT_PREFIX) :] if self.is_tagged(blob) else blob
        try:
            combined = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedInputError("Encrypted data is not valid base64") from e
        if len(combined) < self.IV_LENGTH + self.TAG_LENGTH:
            raise MalformedInputError("Encrypted data is too short")
        return combined

    # =========================================================================
    # Format detection
    # =========================================================================

    def is_tagged(self, data: str) -> bool:
        return data.startswith(self.FORMAT_PREFIX)

    @staticmethod
    def is_legacy_encoded(data: str) -> bool:
        """True if *data* is canonical base64 text (charset + round trip)."""
        if not data or not _BASE64_RE.match(data):
            return False
        try:
            decoded = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError):
            return False
        return base64.b64encode(decoded).decode("ascii") == data

    async def is_strong_encrypted(self, data: str) -> bool:
        """True if *data* decrypts under the current key."""
        if not data:
            return False
        try:
            await self.decrypt(data)
        except WallavaultError:
            return False
        return True

    # =========================================================================
    # Diagnostics
    # =========================================================================

    async def health_check(self) -> bool:
        """Round-trip a synthetic payload through encrypt/decrypt."""
        sample = f"health-check-{secrets.token_hex(8)}"
        try:
            result = await self.decrypt(await self.encrypt(sample))
        except Exception:
            logger.error("Encryption health check failed", exc_info=True)
            return False
        if result != sample:
            logger.error("Encryption health check failed: round trip mismatch")
            return False
        logger.debug("Encryption health check passed")
        return True

    @staticmethod
    def crypto_available() -> bool:
        """True if the AES-GCM primitive works on this host."""
        try:
            cipher = AESGCM(bytes(KEY_BYTES))
            cipher.decrypt(bytes(12), cipher.encrypt(bytes(12), b"self-test", None), None)
        except Exception:
            logger.error("AES-GCM is not usable on this host", exc_info=True)
            return False
        return True

    async def encryption_info(self) -> dict[str, Any]:
        return {
            "algorithm": self.ALGORITHM,
            "key_bits": self.KEY_BITS,
            "iv_bytes": self.IV_LENGTH,
            "format": self.FORMAT_PREFIX,
            "has_stored_key": await self._keys.load() is not None,
            "key_co_located": self._keys.co_located,
            "cache_status": self._cipher is not None,
        }
