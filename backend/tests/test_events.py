import asyncio
import json

from repoinsight.cache import FileSystemBackend, KeyValueBackend
from repoinsight.errors import CacheError
from repoinsight.events import format_event, progress_events
from repoinsight.status import ProgressStore, job_identity

URL = "https://github.com/acme/widgets"


def parse(chunks):
    events = []
    for chunk in chunks:
        assert chunk.startswith("data: ") and chunk.endswith("\n\n")
        events.append(json.loads(chunk[len("data: "):]))
    return events


async def collect(store, identity, **kwargs):
    return [chunk async for chunk in progress_events(store, identity, poll_interval=0.01, **kwargs)]


def test_format_event_shape():
    event = parse([format_event("progress", "abc", {"progress": 5})])[0]
    assert event["type"] == "progress"
    assert event["job_id"] == "abc"
    assert event["data"] == {"progress": 5}
    assert event["timestamp"]


def test_unknown_job_yields_not_found(tmp_path):
    store = ProgressStore(FileSystemBackend(tmp_path))
    events = parse(asyncio.run(collect(store, "bm9wZQ==")))
    assert [e["type"] for e in events] == ["not_found"]


def test_stream_follows_job_until_terminal(tmp_path):
    store = ProgressStore(FileSystemBackend(tmp_path))
    identity = job_identity(URL)

    async def scenario():
        await store.create(URL)

        async def advance():
            await asyncio.sleep(0.02)
            await store.update(identity, status="analyzing", progress=40, stage="cloning")
            await asyncio.sleep(0.02)
            await store.update(identity, status="completed", progress=100, stage="completed")

        writer = asyncio.create_task(advance())
        chunks = await collect(store, identity)
        await writer
        return chunks

    events = parse(asyncio.run(scenario()))

    assert events[-1]["type"] == "end"
    assert events[-1]["data"] == {"status": "completed"}
    progress = [e["data"]["progress"] for e in events if e["type"] == "progress"]
    assert progress[0] == 0
    assert progress[-1] == 100
    assert progress == sorted(progress)


def test_stream_stops_when_client_disconnects(tmp_path):
    store = ProgressStore(FileSystemBackend(tmp_path))
    checks = []

    async def is_disconnected():
        checks.append(1)
        return len(checks) > 2

    async def scenario():
        await store.create(URL)
        return await collect(store, job_identity(URL), is_disconnected=is_disconnected)

    events = parse(asyncio.run(scenario()))
    assert [e["type"] for e in events] == ["progress", "progress"]


class BrokenBackend(KeyValueBackend):
    async def get(self, key):
        raise CacheError("connection refused")


def test_store_failure_ends_stream_with_error():
    events = parse(asyncio.run(collect(ProgressStore(BrokenBackend()), "abc")))
    assert [e["type"] for e in events] == ["error"]
    assert events[0]["data"]["detail"].startswith("storage-failure:")


def test_unreadable_record_ends_stream_as_not_found(tmp_path):
    backend = FileSystemBackend(tmp_path)
    identity = job_identity(URL)

    async def scenario():
        await backend.set(f"progress:{identity}", {"id": identity, "status": "exploded"}, 60)
        return await collect(ProgressStore(backend), identity)

    events = parse(asyncio.run(scenario()))
    assert [e["type"] for e in events] == ["not_found"]
