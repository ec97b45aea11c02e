"""Memoized aggregate totals for filtered transaction sets.

Entries are addressed by ``(scope, mutation version, filter digest)``. Nothing
is ever invalidated explicitly: every write in a scope advances its mutation
version, so later lookups build a different key and the stale entries simply
age out through the LRU bound or their TTL.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional

from config import get_settings
from filters import filter_digest
from schemas import FilterSpec, Totals

logger = logging.getLogger(__name__)


class AggregationComputeFailure(RuntimeError):
    pass


@dataclass(frozen=True)
class CacheKey:
    scope_id: int
    mutation_version: str
    filter_digest: str


@dataclass(frozen=True)
class _Entry:
    totals: Totals
    expires_at: Optional[float]


class TotalsCache:
    def __init__(
        self,
        max_entries: int = 1024,
        ttl_seconds: Optional[float] = 3600,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds if ttl_seconds and ttl_seconds > 0 else None
        self._clock = clock
        self._entries: OrderedDict[CacheKey, _Entry] = OrderedDict()
        self._lock = threading.Lock()
        self._key_locks: dict[CacheKey, threading.Lock] = {}

    @staticmethod
    def build_key(scope_id: int, mutation_version: str, spec: FilterSpec) -> CacheKey:
        return CacheKey(scope_id, str(mutation_version), filter_digest(spec))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _lookup(self, key: CacheKey) -> Optional[Totals]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at is not None and entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry.totals

    def _store(self, key: CacheKey, totals: Totals) -> None:
        expires_at = (
            self._clock() + self.ttl_seconds if self.ttl_seconds is not None else None
        )
        with self._lock:
            self._entries[key] = _Entry(totals, expires_at)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def _key_lock(self, key: CacheKey) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def _release_key_lock(self, key: CacheKey, lock: threading.Lock) -> None:
        with self._lock:
            if self._key_locks.get(key) is lock:
                del self._key_locks[key]

    def get_totals(
        self,
        scope_id: int,
        mutation_version: str,
        spec: FilterSpec,
        compute: Callable[[], Totals],
    ) -> Totals:
        key = self.build_key(scope_id, mutation_version, spec)
        cached = self._lookup(key)
        if cached is not None:
            logger.debug(
                f"totals_cache: hit scope={scope_id} version={mutation_version}"
            )
            return cached

        lock = self._key_lock(key)
        with lock:
            try:
                # another request may have landed the value while we waited
                cached = self._lookup(key)
                if cached is not None:
                    return cached
                logger.info(
                    f"totals_cache: miss scope={scope_id} version={mutation_version} "
                    f"digest={key.filter_digest[:12]}"
                )
                try:
                    totals = compute()
                except Exception as exc:
                    logger.error(
                        f"totals_cache: compute failed scope={scope_id} error={exc!r}"
                    )
                    raise AggregationComputeFailure(
                        "Failed to compute transaction totals"
                    ) from exc
                self._store(key, totals)
            finally:
                self._release_key_lock(key, lock)
        return totals

    def prune(self) -> int:
        """Drop expired entries and return how many were removed."""
        if self.ttl_seconds is None:
            return 0
        now = self._clock()
        with self._lock:
            expired = [
                key
                for key, entry in self._entries.items()
                if entry.expires_at is not None and entry.expires_at <= now
            ]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


@lru_cache(maxsize=1)
def get_totals_cache() -> TotalsCache:
    settings = get_settings()
    return TotalsCache(
        max_entries=settings.totals_cache_max_entries,
        ttl_seconds=settings.totals_cache_ttl_secs,
    )
