# Tests for migration.py (legacy base64 -> AES-GCM)
# Created: 2026-10-07

import base64
from unittest.mock import AsyncMock, patch

import pytest

from wallavault.exceptions import MigrationError
from wallavault.migration import CURRENT_VERSION, MIGRATION_METHOD
from wallavault.models import CompatibilityStatus, MigrationStatus
from wallavault.storage.protocol import CREDENTIAL_KEY, MASTER_KEY_KEY, MIGRATION_KEY


def b64(text: str) -> str:
    return base64.b64encode(text.encode()).decode()


@pytest.fixture
def legacy_record(full_record):
    return {
        **full_record,
        "client_secret": b64(full_record["client_secret"]),
        "password": b64(full_record["password"]),
        "access_token": b64("legacy-access-token"),
    }


class TestStatus:
    @pytest.mark.asyncio
    async def test_needs_migration_without_marker(self, engine):
        assert await engine.needs_migration()
        status = await engine.get_status()
        assert status.status is MigrationStatus.PENDING
        assert status.version == "unknown"

    @pytest.mark.asyncio
    async def test_completed_marker_is_current(self, kv, engine):
        await kv.set(MIGRATION_KEY, {"version": CURRENT_VERSION, "status": "completed"})
        assert not await engine.needs_migration()

    @pytest.mark.asyncio
    async def test_old_version_needs_migration(self, kv, engine):
        await kv.set(MIGRATION_KEY, {"version": "1.0.0", "status": "completed"})
        assert await engine.needs_migration()

    @pytest.mark.asyncio
    async def test_error_marker_needs_migration(self, kv, engine):
        await kv.set(
            MIGRATION_KEY,
            {"version": CURRENT_VERSION, "status": "error", "errorAt": "2026-01-01T00:00:00Z"},
        )
        assert await engine.needs_migration()
        status = await engine.get_status()
        assert status.status is MigrationStatus.ERROR
        assert status.timestamp == "2026-01-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_compatibility_check(self, engine):
        report = await engine.compatibility_check()
        assert report.crypto_available
        assert report.legacy_detection_available
        assert report.encryption_healthy
        assert report.status is CompatibilityStatus.NEEDS_MIGRATION

    @pytest.mark.asyncio
    async def test_compatibility_check_unhealthy(self, engine):
        with patch.object(engine.crypto, "health_check", AsyncMock(return_value=False)):
            report = await engine.compatibility_check()
        assert report.status is CompatibilityStatus.ERROR
        assert not report.encryption_healthy


class TestMigrate:
    @pytest.mark.asyncio
    async def test_empty_store(self, kv, engine):
        report = await engine.migrate()
        assert not report.changed
        marker = kv.raw(MIGRATION_KEY)
        assert marker["status"] == "completed"
        assert marker["version"] == CURRENT_VERSION
        assert marker["method"] == MIGRATION_METHOD
        assert "timestamp" in marker

    @pytest.mark.asyncio
    async def test_legacy_fields_migrated(self, kv, engine, manager, legacy_record, full_record):
        await kv.set(CREDENTIAL_KEY, legacy_record)

        report = await engine.migrate()

        assert sorted(report.migrated) == ["access_token", "client_secret", "password"]
        assert report.written
        stored = kv.raw(CREDENTIAL_KEY)
        for name in ("client_secret", "password", "access_token"):
            assert stored[name].startswith("wv1$")
        record = await manager.get_config()
        assert record.password == full_record["password"]
        assert record.client_secret == full_record["client_secret"]
        assert record.access_token == "legacy-access-token"
        assert record.username == full_record["username"]

    @pytest.mark.asyncio
    async def test_idempotent(self, kv, engine, manager, legacy_record):
        await kv.set(CREDENTIAL_KEY, legacy_record)
        await engine.migrate()
        after_first = await manager.get_config()
        stored_first = dict(kv.raw(CREDENTIAL_KEY))

        report = await engine.migrate()

        assert not report.changed
        assert not report.written
        assert kv.raw(CREDENTIAL_KEY) == stored_first
        assert await manager.get_config() == after_first

    @pytest.mark.asyncio
    async def test_untagged_blob_is_retagged(self, kv, engine, manager, crypto):
        blob = await crypto.encrypt("from the extension")
        await kv.set(CREDENTIAL_KEY, {"password": blob[len("wv1$") :]})

        report = await engine.migrate()

        assert report.retagged == ["password"]
        assert report.migrated == []
        assert kv.raw(CREDENTIAL_KEY)["password"].startswith("wv1$")
        assert (await manager.get_config()).password == "from the extension"

    @pytest.mark.asyncio
    async def test_unrecognised_field_is_blanked(self, kv, engine, manager):
        await kv.set(CREDENTIAL_KEY, {"username": "reader", "password": "not base64 at all!"})

        report = await engine.migrate()

        assert report.blanked == ["password"]
        assert "password" not in kv.raw(CREDENTIAL_KEY)
        assert (await manager.get_config()).username == "reader"

    @pytest.mark.asyncio
    async def test_no_double_encryption(self, kv, engine, manager, crypto, legacy_record):
        # Mixed record: one field already current, the rest legacy
        legacy_record["refresh_token"] = await crypto.encrypt("current-refresh")
        await kv.set(CREDENTIAL_KEY, legacy_record)

        await engine.migrate()

        record = await manager.get_config()
        assert record.refresh_token == "current-refresh"
        assert record.access_token == "legacy-access-token"

    @pytest.mark.asyncio
    async def test_failure_leaves_record_and_writes_error_marker(
        self, kv, engine, manager, legacy_record
    ):
        await kv.set(CREDENTIAL_KEY, legacy_record)
        with patch.object(manager, "set_config", AsyncMock(side_effect=OSError("disk full"))):
            with pytest.raises(MigrationError):
                await engine.migrate()

        assert kv.raw(CREDENTIAL_KEY) == legacy_record
        marker = kv.raw(MIGRATION_KEY)
        assert marker["status"] == "error"
        assert "disk full" in marker["error"]
        assert await engine.needs_migration()

    @pytest.mark.asyncio
    async def test_unhealthy_crypto_aborts(self, kv, engine, legacy_record):
        await kv.set(CREDENTIAL_KEY, legacy_record)
        with patch.object(engine.crypto, "health_check", AsyncMock(return_value=False)):
            with pytest.raises(MigrationError, match="Encryption is not working"):
                await engine.migrate()
        assert kv.raw(CREDENTIAL_KEY) == legacy_record

    @pytest.mark.asyncio
    async def test_non_mapping_record(self, kv, engine):
        await kv.set(CREDENTIAL_KEY, "garbage")
        with pytest.raises(MigrationError):
            await engine.migrate()


class TestAutoMigrate:
    @pytest.mark.asyncio
    async def test_runs_when_needed(self, kv, engine, legacy_record):
        await kv.set(CREDENTIAL_KEY, legacy_record)
        report = await engine.auto_migrate()
        assert report is not None and report.written
        assert not await engine.needs_migration()

    @pytest.mark.asyncio
    async def test_skips_when_current(self, kv, engine):
        await kv.set(MIGRATION_KEY, {"version": CURRENT_VERSION, "status": "completed"})
        assert await engine.auto_migrate() is None

    @pytest.mark.asyncio
    async def test_never_raises(self, kv, engine):
        await kv.set(CREDENTIAL_KEY, "garbage")
        assert await engine.auto_migrate() is None
        assert kv.raw(MIGRATION_KEY)["status"] == "error"


class TestForceFullMigration:
    @pytest.mark.asyncio
    async def test_wipes_everything(self, kv, engine, manager, full_record):
        await manager.set_config(full_record)
        await engine.migrate()

        await engine.force_full_migration()

        assert kv.raw(CREDENTIAL_KEY) is None
        assert kv.raw(MIGRATION_KEY) is None
        # Key rotation removed the master key too
        assert kv.raw(MASTER_KEY_KEY) is None
