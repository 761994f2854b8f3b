"""
Key/value backends with per-key TTL, and the analysis result cache built on them.

Redis is used when REDIS_URL is configured; otherwise entries live as JSON
files under DATA_DIR/kv so a single-process deployment needs no extra service.
"""
import asyncio
import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .config import Settings, settings as default_settings
from .errors import CacheError
from .utils.io import dumps, read_json, write_json_atomic

logger = logging.getLogger(__name__)


class KeyValueBackend:
    """Async key/value store with expiry. Operations are atomic per key."""

    async def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def clear_expired(self) -> int:
        return 0

    async def close(self) -> None:
        return None


class RedisBackend(KeyValueBackend):
    """JSON values stored with SET ... EX; Redis handles expiry."""

    def __init__(self, redis_url: str, client: Optional[aioredis.Redis] = None):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(redis_url, decode_responses=True)
        logger.info(f"Using Redis key/value backend at {redis_url}")

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(key)
        except RedisError as e:
            raise CacheError(f"Redis read failed for {key}: {e}")
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding undecodable value at {key}")
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            await self.client.set(key, dumps(value), ex=max(1, int(ttl_seconds)))
        except RedisError as e:
            raise CacheError(f"Redis write failed for {key}: {e}")

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as e:
            raise CacheError(f"Redis delete failed for {key}: {e}")

    async def close(self) -> None:
        await self.client.aclose()


class FileSystemBackend(KeyValueBackend):
    """One JSON file per key holding ``{"value": ..., "expiry": epoch}``.

    File access runs in a worker thread."""

    def __init__(self, base_dir: Path, clock: Callable[[], float] = time.time):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.clock = clock

    def _path(self, key: str) -> Path:
        # Keys contain ':' and URL characters; hash them into safe file names
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.base_dir / f"{digest}.json"

    # ---- sync implementations ----
    def _get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        entry = read_json(path)
        if not isinstance(entry, dict):
            return None
        if self.clock() > entry.get("expiry", 0):
            path.unlink(missing_ok=True)
            return None
        return entry.get("value")

    def _set(self, key: str, value: Any, ttl_seconds: int) -> None:
        write_json_atomic(self._path(key), {
            "key": key,
            "value": value,
            "expiry": self.clock() + ttl_seconds,
        })

    def _clear_expired(self) -> int:
        now = self.clock()
        removed = 0
        for path in self.base_dir.glob("*.json"):
            entry = read_json(path)
            if not isinstance(entry, dict) or now > entry.get("expiry", 0):
                path.unlink(missing_ok=True)
                removed += 1
        return removed

    # ---- async API ----
    async def get(self, key: str) -> Optional[Any]:
        try:
            return await asyncio.to_thread(self._get, key)
        except OSError as e:
            raise CacheError(f"Cache read failed for {key}: {e}")

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            await asyncio.to_thread(self._set, key, value, ttl_seconds)
        except OSError as e:
            raise CacheError(f"Cache write failed for {key}: {e}")

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._path(key).unlink, missing_ok=True)
        except OSError as e:
            raise CacheError(f"Cache delete failed for {key}: {e}")

    async def clear_expired(self) -> int:
        try:
            removed = await asyncio.to_thread(self._clear_expired)
        except OSError as e:
            raise CacheError(f"Cache sweep failed: {e}")
        if removed:
            logger.info(f"Removed {removed} expired cache entries")
        return removed


def create_backend(config: Optional[Settings] = None) -> KeyValueBackend:
    """Redis when REDIS_URL is set, JSON files under DATA_DIR otherwise."""
    config = config or default_settings
    if config.REDIS_URL:
        return RedisBackend(config.REDIS_URL)
    return FileSystemBackend(Path(config.DATA_DIR) / "kv")


class ResultCache:
    """Short-lived memo of completed analysis payloads keyed by (repository, mode)."""

    def __init__(self, backend: KeyValueBackend):
        self.backend = backend

    @staticmethod
    def cache_key(repository_url: str, analysis_type: str) -> str:
        return f"analysis:{repository_url}:{analysis_type}"

    async def get(self, repository_url: str, analysis_type: str) -> Optional[Dict[str, Any]]:
        payload = await self.backend.get(self.cache_key(repository_url, analysis_type))
        if payload is not None:
            logger.info(f"Result cache hit for {repository_url} ({analysis_type})")
        return payload

    async def set(self, repository_url: str, analysis_type: str,
                  payload: Dict[str, Any], ttl_seconds: int) -> None:
        await self.backend.set(self.cache_key(repository_url, analysis_type), payload, ttl_seconds)
        logger.debug(f"Cached result for {repository_url} ({analysis_type}) for {ttl_seconds}s")

    async def invalidate(self, repository_url: str, analysis_type: str) -> None:
        await self.backend.delete(self.cache_key(repository_url, analysis_type))
