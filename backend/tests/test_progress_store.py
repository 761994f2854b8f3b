import asyncio
import threading

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from repoinsight.cache import FileSystemBackend, RedisBackend, ResultCache
from repoinsight.errors import CacheError, InvalidInput
from repoinsight.status import ProgressStore, decode_identity, job_identity


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_identity_is_deterministic_and_reversible():
    url = "https://github.com/acme/widgets"
    assert job_identity(url) == job_identity(url)
    assert job_identity("  " + url + " ") == job_identity(url)
    assert job_identity(url) != job_identity("https://github.com/acme/widgets2")
    assert decode_identity(job_identity(url)) == url
    # usable as a single URL path segment
    assert "/" not in job_identity("https://github.com/a/b?x=1&y=~~~")


def test_identity_rejects_empty_reference():
    with pytest.raises(InvalidInput):
        job_identity("   ")


def test_create_update_get_delete(tmp_path):
    store = ProgressStore(FileSystemBackend(tmp_path))

    async def scenario():
        created = await store.create("https://github.com/acme/widgets")
        updated = await store.update(created.id, status="analyzing", progress=15, stage="metadata")
        fetched = await store.get(created.id)
        by_ref = await store.get_by_reference("https://github.com/acme/widgets")
        await store.delete(created.id)
        gone = await store.get(created.id)
        return created, updated, fetched, by_ref, gone

    created, updated, fetched, by_ref, gone = asyncio.run(scenario())

    assert created.status == "pending" and created.progress == 0
    assert updated.progress == 15 and updated.stage == "metadata"
    assert updated.createdAt == created.createdAt
    assert updated.updatedAt >= created.updatedAt
    assert fetched == updated
    assert by_ref == updated
    assert gone is None


def test_update_never_resurrects(tmp_path):
    store = ProgressStore(FileSystemBackend(tmp_path))
    identity = job_identity("https://github.com/acme/widgets")

    async def scenario():
        result = await store.update(identity, status="analyzing", progress=50)
        return result, await store.get(identity)

    assert asyncio.run(scenario()) == (None, None)


def test_terminal_records_are_frozen(tmp_path):
    store = ProgressStore(FileSystemBackend(tmp_path))

    async def scenario():
        record = await store.create("https://github.com/acme/widgets")
        await store.update(record.id, status="failed", details="cancelled: Analysis cancelled by user")
        late = await store.update(record.id, status="completed", progress=100)
        return late, await store.get(record.id)

    late, stored = asyncio.run(scenario())
    assert late.status == "failed"
    assert stored.status == "failed"
    assert stored.details == "cancelled: Analysis cancelled by user"


def test_expired_record_reads_as_not_found(tmp_path):
    clock = Clock()
    store = ProgressStore(FileSystemBackend(tmp_path, clock=clock), ttl_seconds=60)

    async def scenario():
        record = await store.create("https://github.com/acme/widgets")
        clock.now += 30
        still_there = await store.get(record.id)
        clock.now += 61
        expired = await store.get(record.id)
        after_update = await store.update(record.id, progress=40)
        return still_there, expired, after_update

    still_there, expired, after_update = asyncio.run(scenario())
    assert still_there is not None
    assert expired is None
    assert after_update is None
    assert list(tmp_path.glob("*.json")) == []


def test_file_backend_clear_expired(tmp_path):
    clock = Clock()
    backend = FileSystemBackend(tmp_path, clock=clock)

    async def scenario():
        await backend.set("a", {"v": 1}, 10)
        await backend.set("b", {"v": 2}, 1000)
        clock.now += 100
        removed = await backend.clear_expired()
        return removed, await backend.get("a"), await backend.get("b")

    removed, a, b = asyncio.run(scenario())
    assert removed == 1
    assert a is None
    assert b == {"v": 2}


def test_file_backend_runs_file_access_off_the_event_loop(tmp_path):
    threads = []

    def clock():
        threads.append(threading.get_ident())
        return 1_000_000.0

    backend = FileSystemBackend(tmp_path, clock=clock)

    async def scenario():
        await backend.set("a", {"v": 1}, 10)
        await backend.get("a")
        await backend.clear_expired()
        return threading.get_ident()

    loop_thread = asyncio.run(scenario())
    assert len(threads) == 3
    assert loop_thread not in threads


def test_unreadable_record_reads_as_not_found(tmp_path):
    backend = FileSystemBackend(tmp_path)
    store = ProgressStore(backend)
    identity = job_identity("https://github.com/acme/widgets")

    async def scenario():
        await backend.set(f"progress:{identity}", {"id": identity, "progress": "lots"}, 60)
        return await store.get(identity), await store.update(identity, progress=10)

    assert asyncio.run(scenario()) == (None, None)


def test_result_cache_keys_by_reference_and_mode(tmp_path):
    cache = ResultCache(FileSystemBackend(tmp_path))
    url = "https://github.com/acme/widgets"

    async def scenario():
        await cache.set(url, "full", {"status": "completed"}, 3600)
        hit = await cache.get(url, "full")
        other_mode = await cache.get(url, "structure")
        await cache.invalidate(url, "full")
        return hit, other_mode, await cache.get(url, "full")

    hit, other_mode, after = asyncio.run(scenario())
    assert ResultCache.cache_key(url, "full") == f"analysis:{url}:full"
    assert hit == {"status": "completed"}
    assert other_mode is None
    assert after is None


class FakeRedis:
    def __init__(self, fail=False):
        self.data = {}
        self.expiries = {}
        self.fail = fail

    async def get(self, key):
        if self.fail:
            raise RedisConnectionError("connection refused")
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        if self.fail:
            raise RedisConnectionError("connection refused")
        self.data[key] = value
        self.expiries[key] = ex

    async def delete(self, key):
        self.data.pop(key, None)

    async def aclose(self):
        pass


def test_redis_backend_round_trip_and_ttl():
    client = FakeRedis()
    backend = RedisBackend("redis://test", client=client)

    async def scenario():
        await backend.set("progress:abc", {"progress": 5}, 86400)
        return await backend.get("progress:abc")

    assert asyncio.run(scenario()) == {"progress": 5}
    assert client.expiries["progress:abc"] == 86400


def test_redis_errors_become_cache_errors():
    backend = RedisBackend("redis://test", client=FakeRedis(fail=True))
    with pytest.raises(CacheError):
        asyncio.run(backend.get("progress:abc"))
    with pytest.raises(CacheError):
        asyncio.run(backend.set("progress:abc", {}, 10))
