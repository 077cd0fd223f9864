"""Bounded in-memory cache for parsed trees, detected elements and mappings."""

from __future__ import annotations

import dataclasses
import logging
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel

from eltag.config.models import CacheConfig

LOGGER = logging.getLogger("eltag.cache")

T = TypeVar("T")
CacheKind = Literal["tree", "elements", "mappings", "general"]
CACHE_KINDS: tuple[CacheKind, ...] = ("tree", "elements", "mappings", "general")
FILE_KINDS: tuple[CacheKind, ...] = ("tree", "elements", "mappings")
EVICTION_TARGET_RATIO = 0.8


@dataclass
class CacheEntry(Generic[T]):
    key: str
    kind: CacheKind
    value: T
    timestamp: float
    last_accessed: float
    size: int
    ttl: float | None = None
    access_count: int = 1
    order: int = 0

    def expired(self, now: float) -> bool:
        return self.ttl is not None and now - self.timestamp >= self.ttl


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    evictions: int
    size: int
    count: int
    by_kind: dict[str, int] = field(default_factory=dict)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return round(self.hits / total, 2) if total else 0.0


class CacheLayer:
    """TTL + LRU cache partitioned by kind.

    Eviction looks at all partitions together: when the byte or entry ceiling
    is exceeded, least recently accessed entries go first until usage is at or
    below 80% of that ceiling.
    """

    def __init__(
        self,
        *,
        max_bytes: int = 100 * 1024 * 1024,
        max_entries: int = 1000,
        default_ttl: float | None = 30 * 60,
        sweep_interval: float | None = 5 * 60,
        clock: Callable[[], float] = time.monotonic,
        sizer: Callable[[Any], int] | None = None,
    ) -> None:
        self.max_bytes = max_bytes
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self._clock = clock
        self._sizer = sizer or estimate_size
        self._lock = threading.RLock()
        self._partitions: dict[str, dict[str, CacheEntry[Any]]] = {kind: {} for kind in CACHE_KINDS}
        self._total_size = 0
        self._sequence = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None
        if sweep_interval:
            self._sweeper = threading.Thread(
                target=self._sweep_loop,
                args=(sweep_interval,),
                name="eltag-cache-sweeper",
                daemon=True,
            )
            self._sweeper.start()

    @classmethod
    def from_config(cls, config: CacheConfig, **kwargs: Any) -> CacheLayer:
        return cls(
            max_bytes=config.max_bytes,
            max_entries=config.max_entries,
            default_ttl=config.default_ttl_seconds,
            sweep_interval=config.sweep_interval_seconds,
            **kwargs,
        )

    def put(self, kind: CacheKind, key: str, value: Any, ttl: float | None = None) -> None:
        partition = self._partition(kind)
        size = self._sizer(value)
        with self._lock:
            now = self._clock()
            previous = partition.pop(key, None)
            if previous is not None:
                self._total_size -= previous.size
            partition[key] = CacheEntry(
                key=key,
                kind=kind,
                value=value,
                timestamp=now,
                last_accessed=now,
                size=size,
                ttl=ttl if ttl is not None else self.default_ttl,
                order=self._next_order(),
            )
            self._total_size += size
            self._enforce_limits()
        LOGGER.debug("Cached %s entry %s (%s bytes)", kind, key, size)

    def get(self, kind: CacheKind, key: str) -> Any | None:
        partition = self._partition(kind)
        with self._lock:
            entry = partition.get(key)
            if entry is None:
                self._misses += 1
                return None
            now = self._clock()
            if entry.expired(now):
                self._drop(partition, key)
                self._misses += 1
                return None
            entry.access_count += 1
            entry.last_accessed = now
            entry.order = self._next_order()
            self._hits += 1
            return entry.value

    def invalidate(self, key: str, kind: CacheKind | None = None) -> int:
        """Drop `key` from one partition, or from all when `kind` is None."""

        kinds = CACHE_KINDS if kind is None else (kind,)
        removed = 0
        with self._lock:
            for name in kinds:
                if self._drop(self._partition(name), key):
                    removed += 1
        return removed

    def invalidate_file(self, file_path: str) -> int:
        removed = 0
        with self._lock:
            for kind in FILE_KINDS:
                if self._drop(self._partition(kind), file_path):
                    removed += 1
        LOGGER.debug("Invalidated cache for %s", file_path)
        return removed

    def clear(self) -> None:
        with self._lock:
            for partition in self._partitions.values():
                partition.clear()
            self._total_size = 0
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    def stats(self) -> CacheStats:
        with self._lock:
            by_kind = {kind: len(partition) for kind, partition in self._partitions.items()}
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                size=self._total_size,
                count=sum(by_kind.values()),
                by_kind=by_kind,
            )

    def sweep_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [
                (partition, key)
                for partition in self._partitions.values()
                for key, entry in partition.items()
                if entry.expired(now)
            ]
            for partition, key in expired:
                self._drop(partition, key)
        if expired:
            LOGGER.debug("Swept %s expired cache entries", len(expired))
        return len(expired)

    def close(self) -> None:
        self._stop.set()
        if self._sweeper is not None and self._sweeper is not threading.current_thread():
            self._sweeper.join(timeout=1)
        self._sweeper = None

    def __enter__(self) -> CacheLayer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _sweep_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            self.sweep_expired()

    def _partition(self, kind: str) -> dict[str, CacheEntry[Any]]:
        try:
            return self._partitions[kind]
        except KeyError:
            raise ValueError(f"Unknown cache kind: {kind}") from None

    def _next_order(self) -> int:
        self._sequence += 1
        return self._sequence

    def _drop(self, partition: dict[str, CacheEntry[Any]], key: str) -> bool:
        entry = partition.pop(key, None)
        if entry is None:
            return False
        self._total_size -= entry.size
        return True

    def _count(self) -> int:
        return sum(len(partition) for partition in self._partitions.values())

    def _enforce_limits(self) -> None:
        if self._total_size > self.max_bytes:
            target_bytes = self.max_bytes * EVICTION_TARGET_RATIO
            self._evict_while(lambda: self._total_size > target_bytes)
        if self._count() > self.max_entries:
            target_count = int(self.max_entries * EVICTION_TARGET_RATIO)
            self._evict_while(lambda: self._count() > target_count)

    def _evict_while(self, condition: Callable[[], bool]) -> None:
        candidates = sorted(
            (entry for partition in self._partitions.values() for entry in partition.values()),
            key=lambda entry: entry.order,
        )
        evicted = 0
        for entry in candidates:
            if not condition():
                break
            self._drop(self._partitions[entry.kind], entry.key)
            self._evictions += 1
            evicted += 1
        if evicted:
            LOGGER.debug("Evicted %s cache entries", evicted)


def estimate_size(value: Any) -> int:
    """Approximate deep size of `value` in bytes."""

    seen: set[int] = set()
    stack = [value]
    total = 0
    while stack:
        current = stack.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        total += sys.getsizeof(current, 64)
        if isinstance(current, (str, bytes, bytearray, int, float, bool)) or current is None:
            continue
        if isinstance(current, dict):
            stack.extend(current.keys())
            stack.extend(current.values())
        elif isinstance(current, (list, tuple, set, frozenset)):
            stack.extend(current)
        elif isinstance(current, BaseModel) or dataclasses.is_dataclass(current):
            stack.extend(vars(current).values())
    return total
