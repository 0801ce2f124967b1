# =============================================================================
# kv_store.py — Key-value + sorted-set store contract shared by all backends
#
# Every component of the engine talks to storage through KVStore only.
# Backends:
#   - InMemoryStore  (memory_store.py)  — single process, no sorted sets
#   - RemoteStore    (remote_store.py)  — hosted REST store, full contract
#
# TTL conventions follow Redis: ttl() returns -2 for a missing key and -1
# for a key without expiry.
# =============================================================================

from abc import ABC, abstractmethod
from typing import Any

from protection_engine.errors import StoreNotImplemented


class StorePipeline:
    """
    Queues store commands and runs them as one unit with execute().

    Commands are recorded as (operation, args) pairs; each backend decides
    how to apply the batch atomically.
    """

    def __init__(self, store: "KVStore", transaction: bool = True):
        self._store       = store
        self._transaction = transaction
        self._commands: list[tuple[str, tuple]] = []

    def _queue(self, op: str, *args) -> "StorePipeline":
        self._commands.append((op, args))
        return self

    def set(self, key: str, value: str, ttl: int | None = None) -> "StorePipeline":
        return self._queue("set", key, value, ttl)

    def delete(self, key: str) -> "StorePipeline":
        return self._queue("delete", key)

    def increment(self, key: str) -> "StorePipeline":
        return self._queue("increment", key)

    def expire(self, key: str, ttl_seconds: int) -> "StorePipeline":
        return self._queue("expire", key, ttl_seconds)

    def sorted_set_add(self, key: str, score: float, member: str) -> "StorePipeline":
        return self._queue("sorted_set_add", key, score, member)

    def sorted_set_trim_by_rank(self, key: str, start: int, stop: int) -> "StorePipeline":
        return self._queue("sorted_set_trim_by_rank", key, start, stop)

    def sorted_set_remove_by_score(self, key: str, min_score: float, max_score: float) -> "StorePipeline":
        return self._queue("sorted_set_remove_by_score", key, min_score, max_score)

    def hash_increment(self, key: str, field: str, amount: int = 1) -> "StorePipeline":
        return self._queue("hash_increment", key, field, amount)

    def __len__(self) -> int:
        return len(self._commands)

    def execute(self) -> list[Any]:
        """Run every queued command. Returns one result per command."""
        if not self._commands:
            return []
        commands, self._commands = self._commands, []
        return self._store.execute_pipeline(commands, transaction=self._transaction)


class KVStore(ABC):
    """Contract every storage backend must satisfy."""

    name: str = "kv"
    supports_sorted_sets: bool = True

    # ── Strings / counters ────────────────────────────────────────────────────

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Value for key, or None when absent or expired."""

    @abstractmethod
    def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        """Store value. ttl=None means no expiry."""

    @abstractmethod
    def delete(self, key: str) -> int:
        """Remove key. Returns the number of keys removed (0 or 1)."""

    @abstractmethod
    def increment(self, key: str) -> int:
        """Atomically add 1 to an integer value (missing keys start at 0)."""

    @abstractmethod
    def expire(self, key: str, ttl_seconds: int) -> bool:
        """Set a TTL on an existing key. False if the key does not exist."""

    @abstractmethod
    def ttl(self, key: str) -> int:
        """Seconds remaining, -1 if the key has no TTL, -2 if absent."""

    # ── Sorted sets ───────────────────────────────────────────────────────────

    @abstractmethod
    def sorted_set_add(self, key: str, score: float, member: str) -> int:
        """Add or re-score a member. Returns 1 if it was new."""

    @abstractmethod
    def sorted_set_range(self, key: str, start: int, stop: int) -> list[str]:
        """Members ranked start..stop inclusive, ascending by score. Negative ranks count from the end."""

    @abstractmethod
    def sorted_set_range_by_score(self, key: str, min_score: float, max_score: float) -> list[str]:
        """Members with min_score <= score <= max_score, ascending."""

    @abstractmethod
    def sorted_set_trim_by_rank(self, key: str, start: int, stop: int) -> int:
        """Remove members ranked start..stop inclusive. Returns the count removed."""

    @abstractmethod
    def sorted_set_remove_by_score(self, key: str, min_score: float, max_score: float) -> int:
        """Remove members scored within [min_score, max_score]. Returns the count removed."""

    # ── Hashes ────────────────────────────────────────────────────────────────

    @abstractmethod
    def hash_increment(self, key: str, field: str, amount: int = 1) -> int:
        """Atomically add amount to a hash field."""

    @abstractmethod
    def hash_get_all(self, key: str) -> dict[str, str]:
        """All fields of a hash ({} when absent)."""

    # ── Keys ──────────────────────────────────────────────────────────────────

    @abstractmethod
    def keys(self, pattern: str) -> list[str]:
        """Keys matching a glob pattern. O(n) over the key space."""

    # ── Batching / lifecycle ──────────────────────────────────────────────────

    def pipeline(self, transaction: bool = True) -> StorePipeline:
        return StorePipeline(self, transaction=transaction)

    def execute_pipeline(self, commands: list[tuple[str, tuple]], transaction: bool = True) -> list[Any]:
        """Default: apply commands one by one. Backends override to make the batch atomic."""
        return [getattr(self, op)(*args) for op, args in commands]

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _unsupported(self, operation: str):
        raise StoreNotImplemented(self.name, f"{operation} is not implemented")
