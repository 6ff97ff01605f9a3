import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from pathlib import Path

import redis.asyncio as aioredis

from rankcrawl.utils.files import atomic_write_bytes

logger = logging.getLogger("rankcrawl.cache")

REDIS_KEY_PREFIX = "httpcache:"


class CacheStore(ABC):
    """Key -> bytes store used by the caching transport.

    Implementations never raise on backend failures: errors are logged and a
    get reports a miss, so a broken cache degrades to plain network access.
    """

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Return the stored bytes for key, or None on a miss."""
        ...

    @abstractmethod
    async def set(self, key: str, value: bytes) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    async def close(self) -> None:
        return None


class MemoryCacheStore(CacheStore):
    """Process-local store, mostly useful for tests and dry runs."""

    def __init__(self):
        self._items: dict[str, bytes] = {}

    async def get(self, key: str) -> bytes | None:
        return self._items.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self._items[key] = bytes(value)

    async def delete(self, key: str) -> None:
        self._items.pop(key, None)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: str) -> bool:
        return key in self._items


class DiskCacheStore(CacheStore):
    """One file per key under base_path, named by the SHA-256 of the key.

    Writes go through a temp file and rename, so a reader never sees a
    half-written entry.
    """

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)

    def path_for(self, key: str) -> Path:
        return self.base_path / hashlib.sha256(key.encode("utf-8")).hexdigest()

    async def get(self, key: str) -> bytes | None:
        path = self.path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Cache get error for key=%s: %s", key, e)
            return None

    async def set(self, key: str, value: bytes) -> None:
        try:
            await asyncio.to_thread(atomic_write_bytes, self.path_for(key), value)
        except OSError as e:
            logger.warning("Cache set error for key=%s: %s", key, e)

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self.path_for(key).unlink, missing_ok=True)
        except OSError as e:
            logger.warning("Cache delete error for key=%s: %s", key, e)


class RedisCacheStore(CacheStore):
    """Store responses in Redis under a common key prefix."""

    def __init__(self, redis: aioredis.Redis, prefix: str = REDIS_KEY_PREFIX):
        self.redis = redis
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = REDIS_KEY_PREFIX) -> "RedisCacheStore":
        # Responses are raw bytes, so keep redis from decoding them
        return cls(aioredis.from_url(url, decode_responses=False), prefix=prefix)

    async def get(self, key: str) -> bytes | None:
        try:
            return await self.redis.get(f"{self.prefix}{key}")
        except Exception as e:
            logger.warning("Cache get error for key=%s: %s", key, e)
            return None

    async def set(self, key: str, value: bytes) -> None:
        try:
            await self.redis.set(f"{self.prefix}{key}", value)
        except Exception as e:
            logger.warning("Cache set error for key=%s: %s", key, e)

    async def delete(self, key: str) -> None:
        try:
            await self.redis.delete(f"{self.prefix}{key}")
        except Exception as e:
            logger.warning("Cache delete error for key=%s: %s", key, e)

    async def close(self) -> None:
        await self.redis.aclose()
