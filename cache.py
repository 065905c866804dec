"""In-process caching for embeddings and query answers.

Two independent tiers live here:

* ``CacheManager`` - a generic TTL store swept on an interval, with
  helpers for embeddings (24h) and full query results (30 min).
* ``QueryAnswerCache`` - a short-lived (5 min) answer tier with a soft
  size bound, trimmed by sampling a few entries on insert instead of a
  full sweep.

Neither tier is shared between processes.
"""

import asyncio
import hashlib
import time
from dataclasses import dataclass
from itertools import islice
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from loguru import logger

from utils import stable_hash

T = TypeVar("T")

DEFAULT_TTL_SEC = 3600
EMBEDDING_TTL_SEC = 86400
QUERY_TTL_SEC = 1800
SWEEP_INTERVAL_SEC = 300


@dataclass
class CacheEntry(Generic[T]):
    key: str
    data: T
    timestamp: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.timestamp >= self.ttl


class CacheManager:
    """Generic TTL key-value store with an interval sweep."""

    def __init__(
        self,
        sweep_interval_sec: float = SWEEP_INTERVAL_SEC,
        embedding_ttl_sec: float = EMBEDDING_TTL_SEC,
        query_ttl_sec: float = QUERY_TTL_SEC,
        clock: Callable[[], float] = time.time,
    ):
        self._entries: Dict[str, CacheEntry[Any]] = {}
        self.sweep_interval_sec = sweep_interval_sec
        self.embedding_ttl_sec = embedding_ttl_sec
        self.query_ttl_sec = query_ttl_sec
        self.clock = clock
        self.running = False
        self._sweep_task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the background sweep."""
        if self.running:
            return
        self.running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Cache sweep started (every {self.sweep_interval_sec}s)")

    async def stop(self):
        """Stop the background sweep."""
        self.running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        logger.info("Cache sweep stopped")

    async def _sweep_loop(self):
        while self.running:
            await asyncio.sleep(self.sweep_interval_sec)
            try:
                removed = self.cleanup_expired()
                if removed:
                    logger.debug(f"Cache sweep removed {removed} expired entries")
            except Exception as e:
                logger.error(f"Error in cache sweep: {e}")

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None when missing or stale."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self.clock()):
            self._entries.pop(key, None)
            return None
        return entry.data

    def set(self, key: str, data: Any, ttl: float = DEFAULT_TTL_SEC) -> None:
        """Store `data` under `key` for `ttl` seconds."""
        self._entries[key] = CacheEntry(key=key, data=data, timestamp=self.clock(), ttl=ttl)

    def cleanup_expired(self) -> int:
        """Remove every expired entry; returns how many were removed."""
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)

    @staticmethod
    def _key(*parts: str) -> str:
        return ":".join(parts)

    def cache_embedding(self, text: str, embedding: List[float]) -> None:
        self.set(self._key("embedding", stable_hash(text)), embedding, self.embedding_ttl_sec)

    def get_cached_embedding(self, text: str) -> Optional[List[float]]:
        return self.get(self._key("embedding", stable_hash(text)))

    def cache_query(self, project_id: str, question: str, result: Any) -> None:
        self.set(
            self._key("query", project_id, stable_hash(question)),
            result,
            self.query_ttl_sec,
        )

    def get_cached_query(self, project_id: str, question: str) -> Optional[Any]:
        return self.get(self._key("query", project_id, stable_hash(question)))

    def invalidate_project(self, project_id: str) -> int:
        """Drop every query entry of a project."""
        prefix = self._key("query", project_id, "")
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            self._entries.pop(key, None)
        return len(keys)

    def get_stats(self) -> Dict[str, Any]:
        return {"size": len(self._entries), "type": "in-memory"}

    def __len__(self) -> int:
        return len(self._entries)


class QueryAnswerCache:
    """Short-lived answer tier with sampled eviction past a soft size bound."""

    def __init__(
        self,
        ttl_sec: float = 300,
        soft_limit: int = 100,
        sample_size: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_sec = ttl_sec
        self.soft_limit = soft_limit
        self.sample_size = sample_size
        self.clock = clock
        self._entries: Dict[str, CacheEntry[Any]] = {}

    @staticmethod
    def _key(project_id: str, question: str) -> str:
        digest = hashlib.sha256(question.strip().encode()).hexdigest()[:16]
        return f"{project_id}:{digest}"

    def get(self, project_id: str, question: str) -> Optional[Any]:
        key = self._key(project_id, question)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self.clock()):
            del self._entries[key]
            return None
        return entry.data

    def set(self, project_id: str, question: str, result: Any) -> None:
        key = self._key(project_id, question)
        self._entries[key] = CacheEntry(
            key=key, data=result, timestamp=self.clock(), ttl=self.ttl_sec
        )
        if len(self._entries) > self.soft_limit:
            self._evict_sample()

    def _evict_sample(self) -> None:
        # Only the oldest few inserts are inspected; the bound is soft.
        now = self.clock()
        sample = list(islice(self._entries.items(), self.sample_size))
        for key, entry in sample:
            if entry.is_expired(now):
                del self._entries[key]

    def invalidate_project(self, project_id: str) -> int:
        keys = [key for key in self._entries if key.startswith(f"{project_id}:")]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def __len__(self) -> int:
        return len(self._entries)
