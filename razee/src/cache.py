from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, NamedTuple

from razee.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class CacheKey(NamedTuple):
    identity: str
    api_version: str
    kind: str
    namespace: str
    name: str

    @classmethod
    def build(
        cls,
        api_version: str,
        kind: str,
        namespace: str | None,
        name: str,
        identity: str | None = None,
    ) -> CacheKey:
        return cls(identity or "", api_version, kind, namespace or "", name)


@dataclass
class _Entry:
    value: Any
    stored_at: float


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    fetches: int
    entries: int


class ResourceCache:
    """Process-wide cache of single-resource lookups.

    Entries are keyed by :class:`CacheKey` (acting identity included, so two
    impersonated users never share a view) and bounded both by count (least
    recently used entries are evicted first) and by age.

    Thread-safety contract: every method may be called from any thread.
    Concurrent :meth:`get_or_fetch` calls for the same uncached key coalesce
    into a single call of ``fetch``; every waiter receives the leader's result
    or its exception.  :meth:`invalidate` during an in-flight fetch prevents
    that fetch's result from being stored, so a change observed by the
    dependency tracker is never overwritten by an older read.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.logger = logger or LOGGER

        self._lock = threading.Lock()
        self._entries: OrderedDict[CacheKey, _Entry] = OrderedDict()
        self._inflight: dict[CacheKey, Future[Any]] = {}
        # In-flight keys invalidated before their fetch returned; the result of
        # such a fetch is handed to waiters but not stored.
        self._stale_inflight: set[CacheKey] = set()
        self._hits = 0
        self._misses = 0
        self._fetches = 0

    def _expired(self, entry: _Entry, now: float) -> bool:
        return self.ttl_seconds > 0 and now - entry.stored_at >= self.ttl_seconds

    def get(self, key: CacheKey) -> Any | None:
        """Return the cached value for *key*, or ``None`` when absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._expired(entry, self.clock()):
                del self._entries[key]
                METRICS.cache_entries.set(len(self._entries))
                return None
            self._entries.move_to_end(key)
            return entry.value

    def put(self, key: CacheKey, value: Any) -> None:
        with self._lock:
            self._store(key, value)

    def _store(self, key: CacheKey, value: Any) -> None:
        self._entries[key] = _Entry(value=value, stored_at=self.clock())
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self.logger.debug("Evicted %s from resource cache", evicted)
        METRICS.cache_entries.set(len(self._entries))

    def get_or_fetch(self, key: CacheKey, fetch: Callable[[], Any]) -> Any:
        """Return the cached value for *key*, fetching it once on a miss.

        ``None`` results (resource absent) are handed to every waiter but not
        stored, so a resource created later is seen on the next lookup.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not self._expired(entry, self.clock()):
                self._entries.move_to_end(key)
                self._hits += 1
                METRICS.cache_requests_total.labels(result="hit").inc()
                return entry.value
            if entry is not None:
                del self._entries[key]

            self._misses += 1
            METRICS.cache_requests_total.labels(result="miss").inc()
            future = self._inflight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[key] = future
                self._fetches += 1

        if not leader:
            return future.result()

        try:
            value = fetch()
        except BaseException as exc:
            with self._lock:
                self._inflight.pop(key, None)
                self._stale_inflight.discard(key)
            future.set_exception(exc)
            raise

        with self._lock:
            self._inflight.pop(key, None)
            stale = key in self._stale_inflight
            self._stale_inflight.discard(key)
            if value is not None and not stale:
                self._store(key, value)
        future.set_result(value)
        return value

    def invalidate(
        self,
        api_version: str,
        kind: str,
        namespace: str | None,
        name: str,
    ) -> int:
        """Drop every identity's entry for one resource; return how many were dropped."""
        namespace = namespace or ""
        dropped = 0
        with self._lock:
            matching = [
                key
                for key in set(self._entries) | set(self._inflight)
                if (key.api_version, key.kind, key.namespace, key.name)
                == (api_version, kind, namespace, name)
            ]
            for key in matching:
                if key in self._inflight:
                    self._stale_inflight.add(key)
                if self._entries.pop(key, None) is not None:
                    dropped += 1
            METRICS.cache_entries.set(len(self._entries))
        if dropped:
            self.logger.debug(
                "Invalidated %d cache entr(ies) for %s/%s %s/%s",
                dropped,
                api_version,
                kind,
                namespace,
                name,
            )
        return dropped

    def clear(self) -> None:
        with self._lock:
            self._stale_inflight.update(self._inflight)
            self._entries.clear()
            METRICS.cache_entries.set(0)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                fetches=self._fetches,
                entries=len(self._entries),
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
