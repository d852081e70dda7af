# Migration Engine: legacy base64-encoded secrets to AES-GCM.
# Created: 2026-10-07
#
# Older releases stored the sensitive fields as plain base64. On startup
# auto_migrate() checks the prerequisites and, when the migration marker is
# missing or stale, rewrites the record so every sensitive field is
# encrypted in the current wv1$ format.
#
# State per run:
#   Unknown -> LegacyPresent -> Migrating -> Migrated | MigrationError
#   Unknown -> AlreadyCurrent

from __future__ import annotations

import base64
import binascii
import logging

from wallavault.credentials import CredentialManager
from wallavault.exceptions import MigrationError
from wallavault.models import (
    SENSITIVE_FIELDS,
    CompatibilityReport,
    CompatibilityStatus,
    CredentialRecord,
    MigrationMarker,
    MigrationReport,
    MigrationStatus,
    now_iso,
)
from wallavault.security.crypto import EncryptedStore
from wallavault.storage.protocol import (
    CREDENTIAL_KEY,
    MIGRATION_KEY,
    KeyValueStoreProtocol,
    namespaced,
)

logger = logging.getLogger(__name__)

CURRENT_VERSION = "2.0.0"
MIGRATION_METHOD = "base64_to_aesgcm"


class MigrationEngine:
    def __init__(
        self,
        store: KeyValueStoreProtocol,
        crypto: EncryptedStore,
        credentials: CredentialManager,
        *,
        namespace: str = "",
    ):
        self.store = store
        self.crypto = crypto
        self.credentials = credentials
        self.marker_key = namespaced(MIGRATION_KEY, namespace)
        self.record_key = namespaced(CREDENTIAL_KEY, namespace)

    # =========================================================================
    # Status
    # =========================================================================

    async def needs_migration(self) -> bool:
        """True if no marker exists, it names another version, or the last run failed."""
        try:
            raw = await self.store.get(self.marker_key)
        except Exception as e:
            logger.warning("Cannot read migration marker (%s); assuming migration needed", e)
            return True
        if not isinstance(raw, dict):
            return True
        marker = MigrationMarker.from_dict(raw)
        return marker.version != CURRENT_VERSION or marker.status is MigrationStatus.ERROR

    async def get_status(self) -> MigrationMarker:
        try:
            raw = await self.store.get(self.marker_key)
        except Exception as e:
            logger.warning("Cannot read migration marker: %s", e)
            return MigrationMarker(
                version="unknown",
                status=MigrationStatus.ERROR,
                error="Failed to read migration status",
            )
        if not isinstance(raw, dict):
            return MigrationMarker(version="unknown", status=MigrationStatus.PENDING)
        return MigrationMarker.from_dict(raw)

    async def compatibility_check(self) -> CompatibilityReport:
        report = CompatibilityReport()
        try:
            report.crypto_available = self.crypto.crypto_available()
            sample = base64.b64encode(b"test-data").decode("ascii")
            report.legacy_detection_available = self.crypto.is_legacy_encoded(sample)
            report.encryption_healthy = await self.crypto.health_check()

            if (
                report.crypto_available
                and report.legacy_detection_available
                and report.encryption_healthy
            ):
                report.status = (
                    CompatibilityStatus.NEEDS_MIGRATION
                    if await self.needs_migration()
                    else CompatibilityStatus.READY
                )
        except Exception:
            logger.error("Compatibility check failed", exc_info=True)
            report.status = CompatibilityStatus.ERROR
        return report

    # =========================================================================
    # Migration
    # =========================================================================

    async def migrate(self) -> MigrationReport:
        """Rewrite every sensitive field in the current encrypted format.

        The raw record is read straight from the store (not through
        ``get_config``) so undecryptable values can be classified. All
        changes are written in one ``set_config`` call; if anything fails
        before that write the stored record is left as it was.

        Raises:
            MigrationError: after recording an error marker.
        """
        report = MigrationReport()
        try:
            raw = await self.store.get(self.record_key)
            if not raw:
                logger.info("No stored credentials; nothing to migrate")
                await self._write_marker(MigrationStatus.COMPLETED)
                return report
            if not isinstance(raw, dict):
                raise MigrationError(f"Credential record is a {type(raw).__name__}, not a mapping")
            # Without a working key every field would classify as unrecognised
            if not await self.crypto.health_check():
                raise MigrationError("Encryption is not working; migration aborted")

            original = CredentialRecord.from_dict(raw)
            staged = CredentialRecord.from_dict(raw)
            for name in SENSITIVE_FIELDS:
                value = getattr(original, name)
                if not value or not isinstance(value, str):
                    continue
                setattr(staged, name, await self._stage_field(name, value, report))

            if report.changed:
                await self.credentials.set_config(staged)
                report.written = True
                logger.info(
                    "Migrated credential record (migrated=%s, retagged=%s, blanked=%s)",
                    report.migrated,
                    report.retagged,
                    report.blanked,
                )
            else:
                logger.info("Credential record already uses the current format")

            await self._write_marker(MigrationStatus.COMPLETED)
            return report

        except Exception as e:
            logger.error("Credential migration failed: %s", e)
            try:
                await self._write_marker(MigrationStatus.ERROR, error=str(e))
            except Exception:
                logger.error("Could not record migration failure", exc_info=True)
            if isinstance(e, MigrationError):
                raise
            raise MigrationError(f"Credential migration failed: {e}") from e

    async def _stage_field(self, name: str, value: str, report: MigrationReport) -> str | None:
        """Return the plaintext to re-encrypt for *value*, or None to blank it."""
        # Strong blobs are checked first: an untagged AES-GCM blob is also
        # valid base64 and would otherwise be "decoded" into garbage.
        if await self.crypto.is_strong_encrypted(value):
            plaintext = await self.crypto.decrypt(value)
            if not self.crypto.is_tagged(value):
                report.retagged.append(name)
            return plaintext

        if self.crypto.is_legacy_encoded(value):
            try:
                plaintext = base64.b64decode(value, validate=True).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError):
                plaintext = ""
            if plaintext:
                report.migrated.append(name)
                return plaintext

        logger.warning("Field %s is in an unrecognised format; cleared for re-entry", name)
        report.blanked.append(name)
        return None

    async def _write_marker(self, status: MigrationStatus, error: str | None = None) -> None:
        marker = MigrationMarker(
            version=CURRENT_VERSION,
            status=status,
            timestamp=now_iso(),
            method=MIGRATION_METHOD,
            error=error,
        )
        await self.store.set(self.marker_key, marker.to_dict())

    async def auto_migrate(self) -> MigrationReport | None:
        """Startup gate. Never raises.

        An unhealthy environment or a failed migration is logged and
        startup continues with the record as it is.
        """
        compatibility = await self.compatibility_check()

        if compatibility.status is CompatibilityStatus.ERROR:
            logger.error(
                "Skipping credential migration: crypto=%s legacy_detection=%s healthy=%s",
                compatibility.crypto_available,
                compatibility.legacy_detection_available,
                compatibility.encryption_healthy,
            )
            return None

        if compatibility.status is CompatibilityStatus.READY:
            logger.debug("Credential storage is current")
            return None

        try:
            return await self.migrate()
        except MigrationError as e:
            logger.error("Automatic migration failed; run 'wallavault migrate' to retry: %s", e)
            return None

    async def force_full_migration(self) -> None:
        """Wipe the credential record, master key and marker.

        Forces full re-enrollment. Only for when ``migrate()`` keeps failing.
        """
        if not await self.crypto.health_check():
            raise MigrationError("Encryption is not working; refusing to reset credentials")

        await self.credentials.clear_config()
        await self.crypto.rotate_key()
        await self.store.remove(self.marker_key)
        logger.warning("Credentials, master key and migration marker wiped")
