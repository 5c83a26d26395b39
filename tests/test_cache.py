"""
Tests for the manifest cache and persistent stores.
"""
import json

import pytest

from expgate.cache import MANIFEST_CACHE_KEY, ManifestCache
from expgate.errors import CacheUnavailable
from expgate.store import InMemoryStore, JsonFileStore
from tests.fakes import BrokenStore, FakeClock, PermissionDeniedStore, descriptor, seed_cache

DAY = 24 * 60 * 60
MANIFEST = [descriptor("A", "s", 0, 100), descriptor("B", "s", 0, 0)]


@pytest.mark.asyncio
async def test_missing_cache_loads_none():
    cache = ManifestCache(InMemoryStore())
    assert await cache.load() is None


@pytest.mark.asyncio
async def test_saved_manifest_is_fresh_within_ttl():
    clock = FakeClock()
    cache = ManifestCache(InMemoryStore(clock=clock), ttl_seconds=DAY, clock=clock)

    assert await cache.save(MANIFEST) is True
    clock.advance(DAY - 1)
    cached = await cache.load()

    assert cached.manifest == MANIFEST
    assert cached.is_fresh
    assert cached.age_seconds(clock()) == DAY - 1


@pytest.mark.asyncio
async def test_manifest_older_than_ttl_is_stale_but_returned():
    clock = FakeClock()
    store = InMemoryStore(clock=clock)
    seed_cache(store, MANIFEST, written_at=clock() - DAY)

    cached = await ManifestCache(store, ttl_seconds=DAY, clock=clock).load()

    assert cached.manifest == MANIFEST
    assert not cached.is_fresh


@pytest.mark.asyncio
async def test_corrupt_cached_value_is_ignored():
    store = InMemoryStore()
    await store.set(MANIFEST_CACHE_KEY, {"not": "a list"})
    assert await ManifestCache(store).load() is None


@pytest.mark.asyncio
async def test_malformed_cached_entries_are_dropped():
    store = InMemoryStore()
    await store.set(MANIFEST_CACHE_KEY, [
        {"name": "A", "salt": "s", "min": 0, "max": 100},
        {"name": "Broken", "salt": "s", "min": 90, "max": 10},
    ])
    cached = await ManifestCache(store).load()
    assert [d.name for d in cached.manifest] == ["A"]


@pytest.mark.asyncio
async def test_unavailable_store_behaves_like_missing_cache():
    cache = ManifestCache(BrokenStore())
    assert await cache.load() is None
    assert await cache.save(MANIFEST) is False


@pytest.mark.asyncio
async def test_json_file_store_persists_across_instances(tmp_path):
    path = tmp_path / "state" / "experiments.json"
    clock = FakeClock()
    await ManifestCache(JsonFileStore(path, clock=clock), clock=clock).save(MANIFEST)

    reopened = ManifestCache(JsonFileStore(path, clock=clock), clock=clock)
    cached = await reopened.load()

    assert cached.manifest == MANIFEST
    assert cached.fetched_at == clock()
    assert cached.is_fresh


@pytest.mark.asyncio
async def test_json_file_store_keeps_other_keys(tmp_path):
    store = JsonFileStore(tmp_path / "store.json")
    await store.set("one", 1)
    await store.set("two", [2])

    assert await store.get("one") == (1, True)
    assert await store.get("two") == ([2], True)
    assert await store.get("three") == (None, False)
    assert await store.written_at("three") is None


@pytest.mark.asyncio
async def test_json_file_store_reports_corrupt_file(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(CacheUnavailable):
        await JsonFileStore(path).get("anything")


@pytest.mark.asyncio
async def test_json_file_store_document_layout(tmp_path):
    path = tmp_path / "store.json"
    await JsonFileStore(path, clock=FakeClock(42.0)).set("key", "value")

    assert json.loads(path.read_text(encoding="utf-8")) == {
        "key": {"value": "value", "written_at": 42.0}
    }


@pytest.mark.asyncio
async def test_store_leaking_os_errors_behaves_like_missing_cache():
    cache = ManifestCache(PermissionDeniedStore())
    assert await cache.load() is None
    assert await cache.save(MANIFEST) is False


@pytest.mark.asyncio
async def test_json_file_store_wraps_filesystem_errors(tmp_path):
    store = JsonFileStore(tmp_path / ("a" * 300))

    with pytest.raises(CacheUnavailable):
        await store.set("key", "value")


@pytest.mark.asyncio
async def test_json_file_store_replaces_corrupt_document_on_write(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{not json", encoding="utf-8")
    store = JsonFileStore(path, clock=FakeClock(7.0))

    await store.set("key", "value")

    assert await store.get("key") == ("value", True)
    assert json.loads(path.read_text(encoding="utf-8")) == {
        "key": {"value": "value", "written_at": 7.0}
    }


@pytest.mark.asyncio
async def test_json_file_store_replaces_non_object_document_on_write(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("[1, 2, 3]", encoding="utf-8")
    store = JsonFileStore(path)

    await store.set("key", "value")

    assert await store.get("key") == ("value", True)
