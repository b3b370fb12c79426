"""Process-local TTL caches shared by the image, PDF and QR-code caches."""

from __future__ import annotations

import hashlib
import json
import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterable, TypeVar

logger = logging.getLogger("certforms.cache")

T = TypeVar("T")
R = TypeVar("R")

EVICTION_RATIO = 0.1


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: Any
    created_at: float
    meta: str = ""


@dataclass(frozen=True)
class Settled(Generic[R]):
    value: R | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def fingerprint(payload: Any) -> str:
    """Canonical JSON: key order never changes the result."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def sha256_hex(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def batch_size(max_entries: int) -> int:
    return max(1, math.ceil(max_entries * EVICTION_RATIO))


def settle_all(
    fn: Callable[[T], R],
    items: Iterable[T],
    *,
    max_workers: int = 8,
) -> list[Settled[R]]:
    """Run ``fn`` over ``items`` concurrently and wait for every call.

    Results keep the input order. A failing call is reported in its slot and
    never cancels the others.
    """
    items = list(items)
    if not items:
        return []
    results: list[Settled[R] | None] = [None] * len(items)
    workers = max(1, min(max_workers, len(items)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="settle") as pool:
        futures = {pool.submit(fn, item): index for index, item in enumerate(items)}
        for future in as_completed(futures):
            index = futures[future]
            try:
                results[index] = Settled(value=future.result())
            except Exception as exc:
                results[index] = Settled(error=exc)
    return [result for result in results if result is not None]


class TTLCache:
    """Insertion-timestamped map with TTL expiry and oldest-first eviction.

    ``eviction_batch`` entries are removed at once when an insert would
    exceed ``max_entries``; defaults to ten percent of the capacity.
    """

    name = "cache"

    def __init__(
        self,
        *,
        ttl_seconds: float,
        max_entries: int,
        eviction_batch: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = int(max_entries)
        self.eviction_batch = eviction_batch or batch_size(self.max_entries)
        self.clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not self._expired(entry, self.clock())

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > self.ttl_seconds

    def _lookup(self, key: str) -> Any | None:
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._expired(entry, now):
                del self._entries[key]
                entry = None
            if entry is None:
                self.misses += 1
                return None
            self.hits += 1
            return entry.payload

    def _store(self, key: str, payload: Any, meta: str = "") -> None:
        now = self.clock()
        with self._lock:
            self._entries.pop(key, None)
            if len(self._entries) >= self.max_entries:
                self._evict_oldest_locked()
            self._entries[key] = CacheEntry(key=key, payload=payload, created_at=now, meta=meta)

    def _evict_oldest_locked(self) -> int:
        count = min(self.eviction_batch, len(self._entries))
        oldest = sorted(self._entries.values(), key=lambda entry: entry.created_at)[:count]
        for entry in oldest:
            del self._entries[entry.key]
        logger.info("[CACHE-EVICT] cache=%s removed=%s", self.name, len(oldest))
        return len(oldest)

    def _remove_where(self, predicate: Callable[[CacheEntry], bool]) -> int:
        with self._lock:
            doomed = [key for key, entry in self._entries.items() if predicate(entry)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clean_expired(self) -> int:
        now = self.clock()
        removed = self._remove_where(lambda entry: self._expired(entry, now))
        if removed:
            logger.info("[CACHE-CLEAN] cache=%s removed=%s", self.name, removed)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def stats(self) -> dict[str, Any]:
        now = self.clock()
        with self._lock:
            ages = [now - entry.created_at for entry in self._entries.values()]
            lookups = self.hits + self.misses
            return {
                "name": self.name,
                "size": len(self._entries),
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl_seconds,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": round(self.hits / lookups, 4) if lookups else 0.0,
                "oldest_age_seconds": round(max(ages), 3) if ages else None,
                "newest_age_seconds": round(min(ages), 3) if ages else None,
            }
