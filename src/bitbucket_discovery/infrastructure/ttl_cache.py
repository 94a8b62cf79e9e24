"""Expiring key/value cache with single-flight loading."""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Hashable, TypeVar


logger = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass(frozen=True)
class CacheStats:
    """Counters exposed for observability."""
    hits: int
    misses: int
    evictions: int
    load_failures: int
    size: int


@dataclass(frozen=True)
class _Entry:
    value: Any
    expires_at: float


class TTLCache(Generic[V]):
    """Cache whose entries expire a fixed duration after insertion.

    Concurrent ``get`` calls for the same missing key share one loader call.
    ``None`` is a legitimate cached value; a loader that raises caches nothing.
    """

    def __init__(
        self,
        ttl_seconds: float,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize the cache.

        Args:
            ttl_seconds: Lifetime of an entry, measured from insertion
            name: Label used in log messages
            clock: Monotonic time source in seconds
        """
        self._ttl = ttl_seconds
        self._name = name
        self._clock = clock
        self._entries: Dict[Hashable, _Entry] = {}
        self._inflight: Dict[Hashable, "asyncio.Future[V]"] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._load_failures = 0
        self._generation = 0

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def set_ttl(self, ttl_seconds: float) -> None:
        """Change the entry lifetime; existing entries are dropped."""
        self._ttl = ttl_seconds
        self.evict_all()

    async def get(self, key: Hashable, loader: Callable[[], Awaitable[V]]) -> V:
        """Returns the cached value for ``key``, loading it if absent or expired.

        Args:
            key: Cache key
            loader: Coroutine function producing the value

        Returns:
            The cached or freshly loaded value

        Raises:
            Whatever ``loader`` raises; nothing is cached in that case
        """
        entry = self._entries.get(key)
        if entry is not None:
            if self._clock() < entry.expires_at:
                self._hits += 1
                return entry.value
            del self._entries[key]
            self._evictions += 1
            logger.debug(f"{self._name}: entry {key!r} expired")

        task = self._inflight.get(key)
        if task is None:
            self._misses += 1
            task = asyncio.ensure_future(self._load(key, loader))
            self._inflight[key] = task
        else:
            logger.debug(f"{self._name}: joining in-flight load of {key!r}")
        # A cancelled waiter must not cancel the load other callers share.
        return await asyncio.shield(task)

    async def _load(self, key: Hashable, loader: Callable[[], Awaitable[V]]) -> V:
        generation = self._generation
        task = asyncio.current_task()
        try:
            value = await loader()
        except BaseException:
            self._load_failures += 1
            raise
        else:
            # Values loaded across an eviction are handed out but not kept.
            if generation == self._generation:
                self._entries[key] = _Entry(value, self._clock() + self._ttl)
            return value
        finally:
            if self._inflight.get(key) is task:
                del self._inflight[key]

    def evict(self, key: Hashable) -> None:
        if self._entries.pop(key, None) is not None:
            self._evictions += 1

    def evict_all(self) -> None:
        """Drop every entry, e.g. after a configuration change."""
        self._evictions += len(self._entries)
        self._entries.clear()
        self._inflight.clear()
        self._generation += 1
        logger.debug(f"{self._name}: evicted all entries")

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            load_failures=self._load_failures,
            size=len(self._entries),
        )
