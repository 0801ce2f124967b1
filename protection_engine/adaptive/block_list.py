# =============================================================================
# block_list.py — Actor (IP) blocking with expiring holds
#
# A block is a plain "1" value at {prefix}blocked:{actor} with a TTL, so
# expiry is enforced by the store itself. Re-blocking resets the TTL to the
# new duration; holds never stack.
#
# Reads fail open: if the store cannot answer, the actor is not blocked.
# =============================================================================

import hashlib
import logging
import time
from typing import Callable

from protection_engine import config
from protection_engine.adaptive.event_log import EventLog
from protection_engine.adaptive.kv_store import KVStore
from protection_engine.errors import StoreError
from protection_engine.models import RateLimitEvent

logger = logging.getLogger(__name__)


def fingerprint(actor: str) -> str:
    """Short stable hash of an actor, safe to put in log lines."""
    return hashlib.sha256(actor.encode("utf-8")).hexdigest()[:12]


class BlockList:

    def __init__(
        self,
        store: KVStore,
        event_log: EventLog | None = None,
        prefix: str = config.KEY_PREFIX,
        clock: Callable[[], float] = time.time,
    ):
        self.store      = store
        self.event_log  = event_log
        self.key_prefix = f"{prefix}blocked:"
        self._clock     = clock

    def block_key(self, actor: str) -> str:
        return self.key_prefix + actor

    def _audit(self, actor: str, method: str, blocked: bool, reset_time: int):
        if self.event_log is None:
            return
        self.event_log.log_event(RateLimitEvent(
            actor=actor,
            resource="system",
            method=method,
            category="system",
            exceeded=blocked,
            blocked=blocked,
            suspicious=blocked,
            reset_time=reset_time,
        ))

    # ── Administrative ────────────────────────────────────────────────────────

    def block(self, actor: str, duration_seconds: int = config.DEFAULT_BLOCK_SECS) -> bool:
        """Block actor for duration_seconds from now. Returns False if the store failed."""
        if duration_seconds <= 0:
            raise ValueError("Block duration must be positive")
        try:
            self.store.set(self.block_key(actor), "1", ttl=duration_seconds)
        except StoreError as e:
            logger.error(f"Failed to block actor {fingerprint(actor)}: {e}")
            return False

        logger.warning(f"Blocked actor {fingerprint(actor)} for {duration_seconds}s")
        self._audit(actor, "BLOCK", True, int((self._clock() + duration_seconds) * 1000))
        return True

    def unblock(self, actor: str) -> bool:
        """Remove a block. True if one existed."""
        try:
            removed = self.store.delete(self.block_key(actor)) > 0
        except StoreError as e:
            logger.error(f"Failed to unblock actor {fingerprint(actor)}: {e}")
            return False

        if removed:
            logger.info(f"Unblocked actor {fingerprint(actor)}")
            self._audit(actor, "UNBLOCK", False, int(self._clock() * 1000))
        return removed

    # ── Queries ───────────────────────────────────────────────────────────────

    def is_blocked(self, actor: str) -> bool:
        try:
            return self.store.get(self.block_key(actor)) is not None
        except StoreError as e:
            logger.error(f"Could not determine block state for {fingerprint(actor)}, failing open: {e}")
            return False

    def block_ttl(self, actor: str) -> int | None:
        """Seconds left on the actor's block, or None when not blocked."""
        try:
            remaining = self.store.ttl(self.block_key(actor))
        except StoreError as e:
            logger.error(f"Failed to read block TTL for {fingerprint(actor)}: {e}")
            return None
        return remaining if remaining >= 0 else None

    def list_blocked(self) -> list[str]:
        try:
            keys = self.store.keys(self.key_prefix + "*")
        except StoreError as e:
            logger.error(f"Failed to list blocked actors: {e}")
            return []
        return sorted(key[len(self.key_prefix):] for key in keys)
