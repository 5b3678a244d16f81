"""Bounded LRU cache of loaded model instances with pin-count guards."""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable

from .errors import CacheFullError, InUseError, NotFoundError
from .instance import CacheKey, ModelInstance

logger = logging.getLogger(__name__)

# Returns the loaded instance and its accounting cost.
CacheLoader = Callable[[CacheKey], tuple[ModelInstance, int]]


@dataclass
class CacheEntry:
    """A resident instance and its eviction bookkeeping."""
    key: CacheKey
    instance: ModelInstance
    cost: int = 1
    priority: int = 0
    pin_count: int = 0
    last_access_time: float = field(default_factory=time.monotonic)

    @property
    def pinned(self) -> bool:
        return self.pin_count > 0

    def touch(self) -> None:
        self.last_access_time = time.monotonic()

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.key[0],
            "version": self.key[1],
            "cost": self.cost,
            "priority": self.priority,
            "pin_count": self.pin_count,
            "idle_seconds": round(time.monotonic() - self.last_access_time, 1),
        }


class ModelCache:
    """Thread-safe, capacity-bounded store of loaded instances.

    Eviction follows least-recently-used order within priority, and never
    selects an entry whose pin count is non-zero. A put that cannot be
    satisfied by evicting unpinned entries fails with CacheFullError and
    leaves the cache untouched.
    """

    def __init__(
        self,
        capacity: int = 4,
        loader: CacheLoader | None = None,
        max_workers: int = 2,
    ):
        if capacity < 1:
            raise ValueError("Cache capacity must be at least 1")
        self.capacity = capacity
        self._loader = loader
        self._lock = threading.RLock()
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._loading: dict[CacheKey, Future] = {}
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="model-preload")
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def resident_cost(self) -> int:
        with self._lock:
            return sum(e.cost for e in self._entries.values())

    def __contains__(self, key: CacheKey) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> list[CacheKey]:
        with self._lock:
            return list(self._entries)

    def get(self, key: CacheKey) -> ModelInstance | None:
        """Return the resident instance for key, or None on a miss."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            entry.touch()
            self._hits += 1
            return entry.instance

    def put(self, key: CacheKey, instance: ModelInstance, cost: int = 1, priority: int = 0) -> None:
        """Insert an instance, evicting unpinned entries if needed."""
        if cost < 0:
            raise ValueError("Cache cost must be non-negative")

        with self._lock:
            existing = self._entries.get(key)
            same_instance = existing is not None and existing.instance is instance

            available = self.capacity - sum(
                e.cost for k, e in self._entries.items() if k != key
            )
            victims: list[CacheEntry] = []
            if cost > available:
                freed = 0
                for candidate in self._candidates():
                    if candidate.key == key:
                        continue
                    victims.append(candidate)
                    freed += candidate.cost
                    if cost <= available + freed:
                        break
                else:
                    raise CacheFullError(
                        f"Cannot fit {key[0]}:{key[1]} (cost {cost}) into cache "
                        f"of capacity {self.capacity}: remaining entries are pinned"
                    )

            replaced = None
            if existing is not None and not same_instance:
                if existing.pinned:
                    raise InUseError(f"Cannot replace pinned entry {key[0]}:{key[1]}")
                replaced = existing.instance

            for victim in victims:
                del self._entries[victim.key]
                self._evictions += 1

            if same_instance:
                existing.cost = cost
                existing.priority = max(existing.priority, priority)
                existing.touch()
            else:
                self._entries[key] = CacheEntry(key=key, instance=instance, cost=cost, priority=priority)

        for victim in victims:
            logger.info(f"Evicted {victim.key[0]}:{victim.key[1]} from model cache")
            victim.instance.unload()
        if replaced is not None:
            replaced.unload()

    def _candidates(self) -> list[CacheEntry]:
        return sorted(
            (e for e in self._entries.values() if not e.pinned),
            key=lambda e: (e.priority, e.last_access_time),
        )

    def evict_candidates(self) -> list[CacheKey]:
        """Unpinned keys in eviction order (lowest priority, least recent first)."""
        with self._lock:
            return [e.key for e in self._candidates()]

    def evict(self, key: CacheKey, unload: bool = True) -> bool:
        """Explicitly remove an entry.

        Returns:
            True if an entry was removed.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.pinned:
                raise InUseError(f"Cannot evict pinned entry {key[0]}:{key[1]}")
            del self._entries[key]
            self._evictions += 1

        if unload:
            entry.instance.unload()
        logger.info(f"Removed {key[0]}:{key[1]} from model cache")
        return True

    def pin(self, key: CacheKey) -> int:
        """Increment the pin count of a resident entry."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                raise NotFoundError(f"{key[0]}:{key[1]} is not resident")
            entry.pin_count += 1
            entry.touch()
            return entry.pin_count

    def unpin(self, key: CacheKey) -> int:
        """Decrement the pin count; unknown keys are ignored."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return 0
            entry.pin_count = max(0, entry.pin_count - 1)
            return entry.pin_count

    def pin_count(self, key: CacheKey) -> int:
        with self._lock:
            entry = self._entries.get(key)
            return entry.pin_count if entry else 0

    def preload(
        self,
        key: CacheKey,
        priority: int = 0,
        loader: CacheLoader | None = None,
    ) -> Future:
        """Load key in the background and insert it.

        Returns immediately with a future resolving to the instance.
        Concurrent preloads of the same key share one load.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.priority = max(entry.priority, priority)
                done: Future = Future()
                done.set_result(entry.instance)
                return done

            pending = self._loading.get(key)
            if pending is not None:
                return pending

            load = loader or self._loader
            if load is None:
                raise RuntimeError("No loader configured for model cache")

            future = self._executor.submit(self._load_and_put, key, priority, load)
            self._loading[key] = future
            return future

    def _load_and_put(self, key: CacheKey, priority: int, load: CacheLoader) -> ModelInstance:
        try:
            start_time = time.perf_counter()
            instance, cost = load(key)
            try:
                self.put(key, instance, cost=cost, priority=priority)
            except Exception:
                instance.unload()
                raise
            logger.info(
                f"Loaded {key[0]}:{key[1]} into cache in "
                f"{(time.perf_counter() - start_time) * 1000:.1f}ms"
            )
            return instance
        finally:
            with self._lock:
                self._loading.pop(key, None)

    def load(
        self,
        key: CacheKey,
        loader: CacheLoader | None = None,
        timeout: float | None = None,
    ) -> ModelInstance:
        """Return the resident instance, loading it and blocking on a miss."""
        instance = self.get(key)
        if instance is not None:
            return instance
        return self.preload(key, loader=loader).result(timeout=timeout)

    def stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            return {
                "capacity": self.capacity,
                "resident_cost": sum(e.cost for e in self._entries.values()),
                "entries": [e.to_dict() for e in self._entries.values()],
                "loading": [f"{k[0]}:{k[1]}" for k in self._loading],
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }

    def clear(self) -> None:
        """Unload every unpinned entry."""
        for key in self.evict_candidates():
            self.evict(key)

    def shutdown(self) -> None:
        """Stop the preload pool and unload all entries."""
        self._executor.shutdown(wait=True, cancel_futures=True)
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            entry.instance.unload()
