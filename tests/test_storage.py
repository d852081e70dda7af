# Tests for storage/ (file and memory key-value stores)
# Created: 2026-10-03

import asyncio
import json
import stat

import pytest

from wallavault.exceptions import PersistenceError
from wallavault.storage import FileKeyValueStore, MemoryKeyValueStore, namespaced


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryKeyValueStore()
    return FileKeyValueStore(tmp_path)


class TestKeyValueStore:
    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get("nope") is None

    @pytest.mark.asyncio
    async def test_set_get_remove(self, store):
        await store.set("k", {"a": 1, "b": [1, 2]})
        assert await store.get("k") == {"a": 1, "b": [1, 2]}
        assert await store.remove("k") is True
        assert await store.get("k") is None
        assert await store.remove("k") is False

    @pytest.mark.asyncio
    async def test_returned_values_are_copies(self, store):
        await store.set("k", {"nested": {"x": 1}})
        value = await store.get("k")
        value["nested"]["x"] = 99
        assert await store.get("k") == {"nested": {"x": 1}}

    @pytest.mark.asyncio
    async def test_listener_receives_changes(self, store):
        seen = []
        unsubscribe = store.add_listener(lambda changes, area: seen.append((changes, area)))

        await store.set("k", "v1")
        await store.set("k", "v2")
        await store.remove("k")
        unsubscribe()
        await store.set("k", "v3")

        assert len(seen) == 3
        changes, area = seen[1]
        assert area == "local"
        assert changes["k"].old_value == "v1"
        assert changes["k"].new_value == "v2"
        assert seen[2][0]["k"].new_value is None

    @pytest.mark.asyncio
    async def test_async_listener_is_scheduled(self, store):
        seen = asyncio.Event()

        async def listener(changes, area):
            seen.set()

        store.add_listener(listener)
        await store.set("k", "v")
        await asyncio.wait_for(seen.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_writes(self, store):
        def boom(changes, area):
            raise RuntimeError("listener bug")

        store.add_listener(boom)
        await store.set("k", "v")
        assert await store.get("k") == "v"


class TestFileKeyValueStore:
    @pytest.mark.asyncio
    async def test_one_document_per_area(self, tmp_path):
        local = FileKeyValueStore(tmp_path, area="local")
        sync = FileKeyValueStore(tmp_path, area="sync")
        await local.set("k", 1)
        await sync.set("k", 2)
        assert json.loads((tmp_path / "local.json").read_text()) == {"k": 1}
        assert json.loads((tmp_path / "sync.json").read_text()) == {"k": 2}
        assert sync.area == "sync"

    @pytest.mark.asyncio
    async def test_file_permissions(self, tmp_path):
        store = FileKeyValueStore(tmp_path)
        await store.set("secret", "x")
        mode = store.path.stat().st_mode
        assert mode & stat.S_IRUSR
        assert mode & stat.S_IWUSR
        assert not (mode & stat.S_IRGRP)
        assert not (mode & stat.S_IROTH)
        assert not store.path.with_suffix(".tmp").exists()

    @pytest.mark.asyncio
    async def test_corrupt_document_raises(self, tmp_path):
        store = FileKeyValueStore(tmp_path)
        store.path.write_text("{not json")
        with pytest.raises(PersistenceError):
            await store.get("k")

    @pytest.mark.asyncio
    async def test_unserialisable_value_raises(self, tmp_path):
        store = FileKeyValueStore(tmp_path)
        with pytest.raises(PersistenceError):
            await store.set("k", object())
        assert not store.path.exists()

    @pytest.mark.asyncio
    async def test_sees_writes_from_other_instances(self, tmp_path):
        writer = FileKeyValueStore(tmp_path)
        reader = FileKeyValueStore(tmp_path)
        await writer.set("k", "fresh")
        assert await reader.get("k") == "fresh"
        assert reader.keys() == ["k"]


def test_namespaced():
    assert namespaced("credential_record") == "credential_record"
    assert namespaced("credential_record", "work") == "work:credential_record"
