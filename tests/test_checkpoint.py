"""Tests for the checkpoint store."""

import asyncio
import json
import os

import pytest

from rankcrawl.services.checkpoint import CheckpointStore, ReadWriteLock, load_seed, write_seed
from rankcrawl.services.crawler.errors import CheckpointError


@pytest.mark.asyncio
async def test_force_flush_then_reload_reproduces_working_set(tmp_path):
    path = tmp_path / "users.json"
    store = CheckpointStore(path)
    await store.discover(["alice", "bob", "carol"])
    await store.mark_collected("bob")
    await store.discover(["bob", "dave"])
    store.force_flush()

    reloaded = CheckpointStore(path)
    assert reloaded.load()
    assert reloaded.working_set == {"alice": False, "bob": True, "carol": False, "dave": False}
    assert list(reloaded.working_set) == ["alice", "bob", "carol", "dave"]


@pytest.mark.asyncio
async def test_discover_counts_only_new_ids(tmp_path):
    store = CheckpointStore(tmp_path / "users.json")
    assert await store.discover(["alice", "bob"]) == 2
    assert await store.discover(["bob", "carol", "carol"]) == 1
    assert await store.counts() == (0, 3)


@pytest.mark.asyncio
async def test_discover_never_resets_collected_flag(tmp_path):
    store = CheckpointStore(tmp_path / "users.json")
    await store.discover(["alice"])
    await store.mark_collected("alice")
    await store.discover(["alice"])
    assert await store.is_collected("alice")
    assert await store.counts() == (1, 1)


def test_load_missing_file_leaves_set_empty(tmp_path):
    store = CheckpointStore(tmp_path / "nope.json")
    assert not store.load()
    assert store.working_set == {}


def test_load_merges_over_seed(tmp_path):
    path = tmp_path / "users.json"
    path.write_text(json.dumps({"version": 1, "working_set": {"alice": True}}))
    store = CheckpointStore(path)
    store.seed(["alice", "bob"])
    store.load()
    assert store.working_set == {"alice": True, "bob": False}


@pytest.mark.parametrize(
    "content",
    ["{not json", json.dumps([1, 2]), json.dumps({"version": 99, "working_set": {}}), json.dumps({"version": 1})],
)
def test_load_rejects_bad_snapshot(tmp_path, content):
    path = tmp_path / "users.json"
    path.write_text(content)
    with pytest.raises(CheckpointError):
        CheckpointStore(path).load()


@pytest.mark.asyncio
async def test_interrupted_flush_keeps_previous_snapshot(tmp_path, monkeypatch):
    path = tmp_path / "users.json"
    store = CheckpointStore(path)
    await store.discover(["alice"])
    store.force_flush()
    before = path.read_bytes()

    await store.discover(["bob"])

    def crash(src, dst):
        raise OSError("disk pulled out")

    monkeypatch.setattr(os, "replace", crash)
    with pytest.raises(OSError):
        store.force_flush()
    monkeypatch.undo()

    assert path.read_bytes() == before
    assert CheckpointStore(path).load()
    assert os.listdir(tmp_path) == ["users.json"]


@pytest.mark.asyncio
async def test_flush_writes_snapshot(tmp_path):
    path = tmp_path / "sub" / "users.json"
    store = CheckpointStore(path)
    await store.discover(["alice"])
    await store.flush()
    assert json.loads(path.read_text()) == {"version": 1, "working_set": {"alice": False}}
    assert oct(path.stat().st_mode & 0o777) == oct(0o644)


@pytest.mark.asyncio
async def test_periodic_flush_ticks_and_stops(tmp_path):
    path = tmp_path / "users.json"
    store = CheckpointStore(path)
    await store.discover(["alice"])
    store.start_periodic_flush(0.01)
    for _ in range(100):
        if path.exists():
            break
        await asyncio.sleep(0.01)
    await store.stop_periodic_flush()

    assert json.loads(path.read_text())["working_set"] == {"alice": False}
    with pytest.raises(RuntimeError):
        store.start_periodic_flush(0.01)
        store.start_periodic_flush(0.01)
    await store.stop_periodic_flush()


@pytest.mark.asyncio
async def test_periodic_flush_survives_write_errors(tmp_path, caplog):
    blocker = tmp_path / "file"
    blocker.write_text("")
    # parent "directory" is a regular file, so every write fails
    store = CheckpointStore(blocker / "users.json")
    store.start_periodic_flush(0.01)
    await asyncio.sleep(0.05)
    await store.stop_periodic_flush()
    assert "Periodic checkpoint flush failed" in caplog.text


@pytest.mark.asyncio
async def test_write_lock_excludes_readers():
    lock = ReadWriteLock()
    events = []

    async def writer():
        async with lock.write():
            events.append("write-start")
            await asyncio.sleep(0.01)
            events.append("write-end")

    async def reader():
        await asyncio.sleep(0)
        async with lock.read():
            events.append("read")

    await asyncio.gather(writer(), reader())
    assert events == ["write-start", "write-end", "read"]


@pytest.mark.asyncio
async def test_readers_share_the_lock():
    lock = ReadWriteLock()
    inside = 0
    peak = 0

    async def reader():
        nonlocal inside, peak
        async with lock.read():
            inside += 1
            peak = max(peak, inside)
            await asyncio.sleep(0.01)
            inside -= 1

    await asyncio.gather(reader(), reader(), reader())
    assert peak == 3


def test_seed_file_roundtrip(tmp_path):
    path = tmp_path / "allusers.json"
    assert load_seed(path) == []
    write_seed(path, ["alice", "bob"])
    assert load_seed(path) == ["alice", "bob"]


def test_seed_file_must_be_a_list(tmp_path):
    path = tmp_path / "allusers.json"
    path.write_text('{"alice": false}')
    with pytest.raises(CheckpointError):
        load_seed(path)
