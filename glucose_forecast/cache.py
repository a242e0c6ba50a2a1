"""
Prediction cache keyed by (model variant, reading timestamp, horizon).

One entry exists at a time: the entry for the latest reading of the active
model variant. It owns the feature tensor, one PMF per horizon and every
reduction derived from those PMFs. When the reading timestamp or the variant
changes the entry is replaced wholesale, so a stale PMF is never returned.
A request for an older reading of the same variant is computed but neither
stored nor allowed to evict the newer entry.

Concurrent requests for the same missing value wait on one in-flight
computation (a Future) instead of running the model twice. Failures are
handed to every waiter and are not cached.
"""
import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)

FEATURES_SLOT = ('features',)


class CacheEntry:
    def __init__(self, variant: str, reading_timestamp: int):
        self.variant = variant
        self.reading_timestamp = reading_timestamp
        self.values: Dict[Hashable, Any] = {}
        self.inflight: Dict[Hashable, Future] = {}

    @property
    def key(self) -> Tuple[str, int]:
        return self.variant, self.reading_timestamp


class PredictionCache:

    def __init__(self):
        self._lock = threading.Lock()
        self._entry: Optional[CacheEntry] = None
        self.hits = 0
        self.misses = 0
        self.coalesced = 0

    def _entry_for(self, variant: str, reading_timestamp: int) -> Optional[CacheEntry]:
        """Current entry for the key; None for an older reading of the current variant."""
        # Caller holds self._lock
        entry = self._entry
        if entry is not None and entry.variant == variant \
                and reading_timestamp < entry.reading_timestamp:
            return None
        if entry is None or entry.key != (variant, reading_timestamp):
            if entry is not None:
                logger.debug("Reading changed (%s -> %s), invalidating cache",
                             entry.key, (variant, reading_timestamp))
            entry = CacheEntry(variant, reading_timestamp)
            self._entry = entry
        return entry

    def _get_or_compute(self, variant: str, reading_timestamp: int, slot: Hashable,
                        compute: Callable[[], Any]) -> Any:
        with self._lock:
            entry = self._entry_for(variant, reading_timestamp)
            if entry is None:
                self.misses += 1
            elif slot in entry.values:
                self.hits += 1
                return entry.values[slot]
            else:
                future = entry.inflight.get(slot)
                owner = future is None
                if owner:
                    self.misses += 1
                    future = Future()
                    entry.inflight[slot] = future
                else:
                    self.coalesced += 1

        if entry is None:
            # Superseded reading: computed for this caller only, never stored
            logger.debug("Reading %d is older than the cached one, not caching %s",
                         reading_timestamp, slot)
            return compute()

        if not owner:
            logger.debug("Waiting for in-flight computation of %s", slot)
            return future.result()

        try:
            value = compute()
        except BaseException as e:
            with self._lock:
                entry.inflight.pop(slot, None)
            future.set_exception(e)
            raise

        with self._lock:
            entry.inflight.pop(slot, None)
            # Only store into the entry that is still current
            if self._entry is entry:
                entry.values[slot] = value
        future.set_result(value)
        return value

    def get_features(self, variant: str, reading_timestamp: int, compute: Callable[[], Any]):
        return self._get_or_compute(variant, reading_timestamp, FEATURES_SLOT, compute)

    def get_pmf(self, variant: str, reading_timestamp: int, horizon: int,
                compute: Callable[[], Any]):
        """Return the PMF for (variant, reading, horizon), computing it at most once."""
        return self._get_or_compute(variant, reading_timestamp, ('pmf', horizon), compute)

    def get_aggregate(self, variant: str, reading_timestamp: int, key: Tuple,
                      compute: Callable[[], Any]):
        """Memoize a reduction of a cached PMF; `key` must identify all of its inputs."""
        return self._get_or_compute(variant, reading_timestamp, ('aggregate',) + tuple(key), compute)

    def invalidate(self) -> None:
        with self._lock:
            if self._entry is not None:
                logger.debug("Cache cleared (%s)", self._entry.key)
            self._entry = None

    @property
    def current_key(self) -> Optional[Tuple[str, int]]:
        with self._lock:
            return self._entry.key if self._entry is not None else None

    def __contains__(self, key) -> bool:
        """`(variant, reading_timestamp, horizon) in cache` - is that PMF cached."""
        variant, reading_timestamp, horizon = key
        with self._lock:
            entry = self._entry
            return (entry is not None and entry.key == (variant, reading_timestamp)
                    and ('pmf', horizon) in entry.values)
