"""Durable working set for resumable crawls.

The working set maps participant id -> collected flag. It lives in memory,
is guarded by a reader/writer lock, and is snapshotted to disk atomically
on a timer and on shutdown, so a crash loses at most one flush interval.
"""

import asyncio
import json
import logging
from collections.abc import Iterable
from contextlib import asynccontextmanager
from pathlib import Path

from rankcrawl.services.crawler.errors import CheckpointError
from rankcrawl.utils.files import atomic_write_bytes

SNAPSHOT_VERSION = 1


class ReadWriteLock:
    """asyncio lock with a shared (read) side and an exclusive (write) side."""

    def __init__(self):
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False

    @asynccontextmanager
    async def read(self):
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self):
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


def encode_snapshot(working_set: dict[str, bool]) -> bytes:
    return json.dumps(
        {"version": SNAPSHOT_VERSION, "working_set": working_set},
        separators=(",", ":"),
    ).encode("utf-8")


def decode_snapshot(data: bytes) -> dict[str, bool]:
    try:
        payload = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CheckpointError(f"Unreadable checkpoint: {e}") from e
    if not isinstance(payload, dict) or payload.get("version") != SNAPSHOT_VERSION:
        raise CheckpointError("Unsupported checkpoint format")
    working_set = payload.get("working_set")
    if not isinstance(working_set, dict):
        raise CheckpointError("Checkpoint has no working set")
    return {str(k): bool(v) for k, v in working_set.items()}


def load_seed(path: str | Path) -> list[str]:
    """Read the list of every id seen by earlier runs; empty if there is none."""
    path = Path(path)
    if not path.exists():
        return []
    try:
        ids = json.loads(path.read_bytes())
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CheckpointError(f"Unreadable seed file {path}: {e}") from e
    if not isinstance(ids, list):
        raise CheckpointError(f"Seed file {path} is not a list")
    return [str(i) for i in ids]


def write_seed(path: str | Path, ids: Iterable[str]) -> None:
    atomic_write_bytes(path, json.dumps(list(ids)).encode("utf-8"))


class CheckpointStore:
    """Owns the working set and its on-disk snapshot."""

    def __init__(self, path: str | Path, logger: logging.Logger | None = None):
        self.path = Path(path)
        self.working_set: dict[str, bool] = {}
        self.lock = ReadWriteLock()
        self.logger = logger or logging.getLogger("rankcrawl.checkpoint")
        self._stop: asyncio.Event | None = None
        self._flusher: asyncio.Task | None = None

    # -- startup, single-threaded --

    def load(self) -> bool:
        """Merge the snapshot at self.path into the working set, if there is one."""
        if not self.path.exists():
            self.logger.debug("No checkpoint at %s, starting fresh", self.path)
            return False
        self.working_set.update(decode_snapshot(self.path.read_bytes()))
        self.logger.info("Loaded checkpoint path=%s users=%d", self.path, len(self.working_set))
        return True

    def seed(self, ids: Iterable[str]) -> int:
        added = 0
        for user_id in ids:
            if user_id not in self.working_set:
                self.working_set[user_id] = False
                added += 1
        return added

    # -- locked access --

    async def discover(self, ids: Iterable[str]) -> int:
        """Insert unseen ids as not collected. Returns how many were new."""
        added = 0
        for user_id in ids:
            async with self.lock.read():
                known = user_id in self.working_set
            if known:
                continue
            async with self.lock.write():
                if user_id not in self.working_set:
                    self.working_set[user_id] = False
                    added += 1
        return added

    async def mark_collected(self, user_id: str) -> None:
        async with self.lock.write():
            self.working_set[user_id] = True

    async def is_collected(self, user_id: str) -> bool:
        async with self.lock.read():
            return self.working_set.get(user_id, False)

    async def ids(self) -> list[str]:
        async with self.lock.read():
            return list(self.working_set)

    async def counts(self) -> tuple[int, int]:
        """Return (collected, total)."""
        async with self.lock.read():
            return sum(self.working_set.values()), len(self.working_set)

    # -- persistence --

    async def flush(self) -> None:
        async with self.lock.read():
            data = encode_snapshot(self.working_set)
        await asyncio.to_thread(atomic_write_bytes, self.path, data)
        self.logger.debug("Checkpoint flushed path=%s bytes=%d", self.path, len(data))

    def force_flush(self) -> None:
        """Snapshot without taking the lock.

        For fatal and interrupt paths, where the lock may be held by a task
        that will never release it. Not race-free against a concurrent writer.
        """
        data = encode_snapshot(dict(self.working_set))
        atomic_write_bytes(self.path, data)
        self.logger.info("Checkpoint force-flushed path=%s users=%d", self.path, len(self.working_set))

    def start_periodic_flush(self, interval: float) -> asyncio.Task:
        if self._flusher is not None and not self._flusher.done():
            raise RuntimeError("periodic flush already running")
        self._stop = asyncio.Event()
        self._flusher = asyncio.create_task(self._flush_every(interval, self._stop))
        return self._flusher

    async def stop_periodic_flush(self) -> None:
        if self._flusher is None:
            return
        self._stop.set()
        await self._flusher
        self._flusher = None

    async def _flush_every(self, interval: float, stop: asyncio.Event) -> None:
        while True:
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await self.flush()
            except (OSError, TypeError, ValueError) as e:
                self.logger.error("Periodic checkpoint flush failed: %s", e)
