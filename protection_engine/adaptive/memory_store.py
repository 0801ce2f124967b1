# =============================================================================
# memory_store.py — Single-process KVStore used when no remote store is set
#
# Entries are (value, expires_at) pairs in a dict guarded by one RLock.
# Expiry is enforced twice:
#   - lazily, on every read of a key
#   - by a background sweep thread every SWEEP_INTERVAL_SECS
#
# Sorted sets are deliberately unsupported: the event log keeps its own
# bounded buffer when running on this backend (see event_log.py).
# =============================================================================

import fnmatch
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from protection_engine import config
from protection_engine.adaptive.kv_store import KVStore
from protection_engine.errors import StoreError

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value:      Any                    # str, or dict[str, str] for hashes
    expires_at: float | None = None    # epoch seconds


class InMemoryStore(KVStore):
    """Thread-safe dict-backed store with TTLs and a background expiry sweep."""

    name = "memory"
    supports_sorted_sets = False

    def __init__(
        self,
        sweep_interval: float | None = config.SWEEP_INTERVAL_SECS,
        clock: Callable[[], float] = time.time,
    ):
        self._data: dict[str, _Entry] = {}
        self._lock  = threading.RLock()
        self._clock = clock
        self._stop  = threading.Event()
        self._sweeper: threading.Thread | None = None

        if sweep_interval:
            self._sweeper = threading.Thread(
                target=self._sweep_loop,
                args=(sweep_interval,),
                name="memory-store-sweeper",
                daemon=True,
            )
            self._sweeper.start()
        logger.info("Using in-memory KV store")

    # ── Expiry ────────────────────────────────────────────────────────────────

    def _is_expired(self, entry: _Entry, now: float) -> bool:
        return entry.expires_at is not None and entry.expires_at <= now

    def _live(self, key: str) -> _Entry | None:
        """Entry for key, evicting it first if it has expired. Caller holds the lock."""
        entry = self._data.get(key)
        if entry is None:
            return None
        if self._is_expired(entry, self._clock()):
            del self._data[key]
            return None
        return entry

    def sweep(self) -> int:
        """Evict every expired entry. Returns the number evicted."""
        with self._lock:
            now     = self._clock()
            expired = [k for k, e in self._data.items() if self._is_expired(e, now)]
            for key in expired:
                del self._data[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired keys")
        return len(expired)

    def _sweep_loop(self, interval: float):
        while not self._stop.wait(interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Expiry sweep failed")

    def _string(self, key: str) -> _Entry | None:
        entry = self._live(key)
        if entry is not None and not isinstance(entry.value, str):
            raise StoreError(self.name, f"WRONGTYPE key {key!r} does not hold a string")
        return entry

    # ── Strings / counters ────────────────────────────────────────────────────

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._string(key)
            return entry.value if entry else None

    def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        if ttl is not None and ttl <= 0:
            raise StoreError(self.name, f"invalid expire time {ttl} for {key!r}")
        with self._lock:
            expires_at = self._clock() + ttl if ttl is not None else None
            self._data[key] = _Entry(str(value), expires_at)
        return True

    def delete(self, key: str) -> int:
        with self._lock:
            if self._live(key) is None:
                return 0
            del self._data[key]
            return 1

    def increment(self, key: str) -> int:
        with self._lock:
            entry = self._string(key)
            if entry is None:
                self._data[key] = _Entry("1")
                return 1
            try:
                value = int(entry.value) + 1
            except ValueError as e:
                raise StoreError(self.name, f"value at {key!r} is not an integer", e) from e
            entry.value = str(value)
            return value

    def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            entry.expires_at = self._clock() + ttl_seconds
            return True

    def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            if entry.expires_at is None:
                return -1
            return max(0, math.ceil(entry.expires_at - self._clock()))

    # ── Sorted sets (unsupported) ─────────────────────────────────────────────

    def sorted_set_add(self, key, score, member):
        self._unsupported("sorted_set_add")

    def sorted_set_range(self, key, start, stop):
        self._unsupported("sorted_set_range")

    def sorted_set_range_by_score(self, key, min_score, max_score):
        self._unsupported("sorted_set_range_by_score")

    def sorted_set_trim_by_rank(self, key, start, stop):
        self._unsupported("sorted_set_trim_by_rank")

    def sorted_set_remove_by_score(self, key, min_score, max_score):
        self._unsupported("sorted_set_remove_by_score")

    # ── Hashes ────────────────────────────────────────────────────────────────

    def hash_increment(self, key: str, field: str, amount: int = 1) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                entry = self._data[key] = _Entry({})
            elif not isinstance(entry.value, dict):
                raise StoreError(self.name, f"WRONGTYPE key {key!r} does not hold a hash")
            value = int(entry.value.get(field, "0")) + amount
            entry.value[field] = str(value)
            return value

    def hash_get_all(self, key: str) -> dict[str, str]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return {}
            if not isinstance(entry.value, dict):
                raise StoreError(self.name, f"WRONGTYPE key {key!r} does not hold a hash")
            return dict(entry.value)

    # ── Keys ──────────────────────────────────────────────────────────────────

    def keys(self, pattern: str) -> list[str]:
        with self._lock:
            return [
                key for key in list(self._data)
                if fnmatch.fnmatchcase(key, pattern) and self._live(key) is not None
            ]

    # ── Batching / lifecycle ──────────────────────────────────────────────────

    def execute_pipeline(self, commands, transaction=True):
        with self._lock:
            return super().execute_pipeline(commands, transaction)

    def close(self) -> None:
        self._stop.set()
        if self._sweeper is not None and self._sweeper is not threading.current_thread():
            self._sweeper.join(timeout=5)
        self._sweeper = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
