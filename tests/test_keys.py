# Tests for security/keys.py
# Created: 2026-10-05

import base64
import logging
import sys

import pytest

from wallavault.exceptions import KeyUnavailableError
from wallavault.security.keys import KeyringKeyProvider, StoreKeyProvider
from wallavault.storage.protocol import MASTER_KEY_KEY


class TestStoreKeyProvider:
    @pytest.mark.asyncio
    async def test_missing_key_loads_none(self, kv):
        assert await StoreKeyProvider(kv).load() is None

    @pytest.mark.asyncio
    async def test_save_stores_byte_list(self, kv):
        provider = StoreKeyProvider(kv)
        await provider.save(bytes(range(32)))
        assert kv.raw(MASTER_KEY_KEY) == list(range(32))
        assert await provider.load() == bytes(range(32))

    @pytest.mark.asyncio
    async def test_accepts_base64_string(self, kv):
        await kv.set(MASTER_KEY_KEY, base64.b64encode(b"k" * 32).decode())
        assert await StoreKeyProvider(kv).load() == b"k" * 32

    @pytest.mark.asyncio
    async def test_corrupt_key(self, kv):
        await kv.set(MASTER_KEY_KEY, {"not": "a key"})
        with pytest.raises(KeyUnavailableError):
            await StoreKeyProvider(kv).load()

        await kv.set(MASTER_KEY_KEY, [300, 1, 2])
        with pytest.raises(KeyUnavailableError):
            await StoreKeyProvider(kv).load()

    @pytest.mark.asyncio
    async def test_namespace(self, kv):
        provider = StoreKeyProvider(kv, namespace="work")
        await provider.save(b"\x00" * 32)
        assert kv.raw(f"work:{MASTER_KEY_KEY}") is not None
        assert kv.raw(MASTER_KEY_KEY) is None

    @pytest.mark.asyncio
    async def test_warns_once_about_co_location(self, kv, caplog):
        provider = StoreKeyProvider(kv)
        await provider.save(b"\x01" * 32)
        with caplog.at_level(logging.WARNING, logger="wallavault.security.keys"):
            await provider.load()
            await provider.load()
        warnings = [r for r in caplog.records if "alongside" in r.getMessage()]
        assert len(warnings) == 1

    @pytest.mark.asyncio
    async def test_delete(self, kv):
        provider = StoreKeyProvider(kv)
        await provider.save(b"\x02" * 32)
        await provider.delete()
        assert await provider.load() is None


class FakeKeyring:
    def __init__(self):
        self.passwords = {}

    def get_password(self, service, username):
        return self.passwords.get((service, username))

    def set_password(self, service, username, password):
        self.passwords[(service, username)] = password

    def delete_password(self, service, username):
        from keyring.errors import PasswordDeleteError

        if (service, username) not in self.passwords:
            raise PasswordDeleteError("not found")
        del self.passwords[(service, username)]


class TestKeyringKeyProvider:
    @pytest.fixture
    def provider(self):
        pytest.importorskip("keyring")
        provider = KeyringKeyProvider(service="wallavault-test")
        provider._keyring = FakeKeyring()
        return provider

    @pytest.mark.asyncio
    async def test_round_trip(self, provider):
        assert provider.co_located is False
        assert await provider.load() is None
        await provider.save(b"\x07" * 32)
        assert await provider.load() == b"\x07" * 32
        stored = provider._keyring.passwords[("wallavault-test", MASTER_KEY_KEY)]
        assert stored == base64.b64encode(b"\x07" * 32).decode()

    @pytest.mark.asyncio
    async def test_delete_missing_is_quiet(self, provider):
        await provider.delete()
        await provider.save(b"\x08" * 32)
        await provider.delete()
        assert await provider.load() is None

    def test_missing_extra(self, monkeypatch):
        monkeypatch.setitem(sys.modules, "keyring", None)
        with pytest.raises(ImportError, match=r"wallavault\[keyring\]"):
            KeyringKeyProvider()
