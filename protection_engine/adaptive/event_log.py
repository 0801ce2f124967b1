# =============================================================================
# event_log.py — Time-windowed storage and aggregation of engine events
#
# Two streams, one sorted set each (score = timestamp in ms):
#   {prefix}events:ratelimit   — rate-limiter hits, 7-day retention
#   {prefix}events:security    — security incidents, 30-day retention
#
# Security events also bump per-UTC-day counters in
# {prefix}counters:YYYY-MM-DD so that stats never scan the event log.
#
# On a store without sorted sets (InMemoryStore) each stream degrades to a
# bounded in-process buffer; queries then run directly over that buffer.
# =============================================================================

import logging
import math
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from pydantic import ValidationError

from protection_engine import config
from protection_engine.adaptive.kv_store import KVStore
from protection_engine.errors import InvalidEventError, StoreError
from protection_engine.models import (
    EVENT_ADAPTER, Event, EventStats, RateLimitEvent, SecurityEvent,
    Severity, SuspiciousActor,
)

logger = logging.getLogger(__name__)

STREAM_RATELIMIT = "ratelimit"
STREAM_SECURITY  = "security"
STREAMS          = (STREAM_RATELIMIT, STREAM_SECURITY)


def _utc_day(ts_ms: int) -> str:
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def aggregate_suspicious(
    events: list[RateLimitEvent],
    limit: int = 20,
    per_actor: int = config.SUSPICIOUS_RECENT_EVENTS,
) -> list[SuspiciousActor]:
    """
    Group suspicious/exceeded events by actor and rank by count.

    `events` must be newest first. Actors with equal counts keep the order in
    which they were first seen in that scan (sorted() is stable).
    """
    groups: dict[str, SuspiciousActor] = {}
    for event in events:
        if not event.is_suspicious:
            continue
        group = groups.get(event.actor)
        if group is None:
            group = groups[event.actor] = SuspiciousActor(actor=event.actor, count=0)
        group.count += 1
        if len(group.recent_events) < per_actor:
            group.recent_events.append(event)

    ranked = sorted(groups.values(), key=lambda g: g.count, reverse=True)
    return ranked[:limit]


class EventLog:
    """Ingests rate-limit and security events and answers windowed queries."""

    def __init__(
        self,
        store: KVStore,
        prefix: str = config.KEY_PREFIX,
        max_entries: int = config.EVENT_LOG_MAX_ENTRIES,
        buffer_size: int = config.MEMORY_EVENT_BUFFER_SIZE,
        rate_limit_ttl: int = config.RATE_LIMIT_EVENT_TTL_SECS,
        security_ttl: int = config.SECURITY_EVENT_TTL_SECS,
        scan_window: int = config.SUSPICIOUS_SCAN_WINDOW,
        clock: Callable[[], float] = time.time,
    ):
        self.store       = store
        self.prefix      = prefix
        self.max_entries = max_entries
        self.scan_window = scan_window
        self._ttls  = {STREAM_RATELIMIT: rate_limit_ttl, STREAM_SECURITY: security_ttl}
        self._clock = clock

        self._buffers: dict[str, deque] | None = None
        self._buffer_lock = threading.Lock()
        if not store.supports_sorted_sets:
            self._buffers = {s: deque(maxlen=buffer_size) for s in STREAMS}
            logger.info(
                f"Store '{store.name}' has no sorted sets — event log buffers "
                f"the last {buffer_size} events per stream in memory"
            )

    # ── Keys / helpers ────────────────────────────────────────────────────────

    def stream_key(self, stream: str) -> str:
        return f"{self.prefix}events:{stream}"

    def counters_key(self, day: str) -> str:
        return f"{self.prefix}counters:{day}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @property
    def buffered(self) -> bool:
        return self._buffers is not None

    def prepare(self, event: Event | dict[str, Any]) -> Event:
        """
        Validate and stamp an incoming event with an id and timestamp.

        Already-stamped events come back unchanged, so callers can prepare an
        event once and hand the same object to log_event and to alerting.
        """
        if isinstance(event, dict):
            try:
                event = EVENT_ADAPTER.validate_python(event)
            except ValidationError as e:
                raise InvalidEventError(f"Malformed event: {e}") from e
        if not isinstance(event, (RateLimitEvent, SecurityEvent)):
            raise InvalidEventError(f"Unsupported event type: {type(event).__name__}")

        update = {}
        if event.timestamp is None:
            update["timestamp"] = self._now_ms()
        if not event.id:
            update["id"] = uuid.uuid4().hex
        return event.model_copy(update=update) if update else event

    # ── Ingestion ─────────────────────────────────────────────────────────────

    def log_event(self, event: Event | dict[str, Any]) -> bool:
        """
        Store one event. Returns True once the event detail is persisted.

        Raises InvalidEventError for malformed input; storage failures are
        logged and reported as False.
        """
        event  = self.prepare(event)
        stream = event.kind

        try:
            if self._buffers is not None:
                with self._buffer_lock:
                    self._buffers[stream].append(event)
            else:
                key = self.stream_key(stream)
                (self.store.pipeline()
                    .sorted_set_add(key, event.timestamp, event.model_dump_json())
                    .sorted_set_trim_by_rank(key, 0, -(self.max_entries + 1))
                    .expire(key, self._ttls[stream])
                    .execute())
        except StoreError as e:
            logger.error(f"Failed to log {stream} event {event.id}: {e}")
            return False

        if isinstance(event, SecurityEvent):
            self._count(event)
        return True

    def _count(self, event: SecurityEvent):
        key = self.counters_key(_utc_day(event.timestamp))
        try:
            (self.store.pipeline()
                .hash_increment(key, "total")
                .hash_increment(key, f"severity_{event.severity.value}")
                .hash_increment(key, f"type_{event.category or 'unknown'}")
                .expire(key, self._ttls[STREAM_SECURITY])
                .execute())
        except StoreError as e:
            logger.error(f"Failed to update security counters for {event.id}: {e}")

    # ── Reads ─────────────────────────────────────────────────────────────────

    def _read_stream(self, stream: str, limit: int) -> list[Event]:
        """Most recent `limit` events of one stream, newest first."""
        if self._buffers is not None:
            cutoff = self._now_ms() - self._ttls[stream] * 1000
            with self._buffer_lock:
                items = list(self._buffers[stream])
            live = [e for e in reversed(items) if e.timestamp > cutoff]
            return sorted(live, key=lambda e: e.timestamp, reverse=True)[:limit]

        raw = self.store.sorted_set_range(self.stream_key(stream), -limit, -1)
        events = []
        for member in reversed(raw):
            try:
                events.append(EVENT_ADAPTER.validate_json(member))
            except ValidationError:
                logger.debug(f"Skipping undecodable {stream} event member")
        return events

    def recent_events(
        self,
        limit: int = 100,
        severity: Severity | str | None = None,
        stream: str | None = None,
        category: str | None = None,
    ) -> list[Event]:
        """Newest-first events, optionally filtered by severity, stream or category."""
        if limit <= 0:
            return []
        streams = [stream] if stream else list(STREAMS)
        try:
            events = [e for s in streams for e in self._read_stream(s, limit)]
        except StoreError as e:
            logger.error(f"Failed to read recent events: {e}")
            return []

        if len(streams) > 1:
            events.sort(key=lambda e: e.timestamp, reverse=True)
        if severity is not None:
            try:
                severity = Severity(severity)
            except ValueError:
                logger.warning(f"Ignoring query for unknown severity {severity!r}")
                return []
            events = [e for e in events if getattr(e, "severity", None) == severity]
        if category is not None:
            events = [e for e in events if e.category == category]
        return events[:limit]

    def clear_older_than(self, max_age_ms: int = config.DEFAULT_CLEAR_AGE_MS) -> int:
        """Drop events timestamped before now - max_age_ms. Returns the count removed."""
        cutoff  = self._now_ms() - max_age_ms
        removed = 0
        try:
            for stream in STREAMS:
                if self._buffers is not None:
                    with self._buffer_lock:
                        buf  = self._buffers[stream]
                        keep = [e for e in buf if e.timestamp >= cutoff]
                        removed += len(buf) - len(keep)
                        buf.clear()
                        buf.extend(keep)
                else:
                    removed += self.store.sorted_set_remove_by_score(
                        self.stream_key(stream), float("-inf"), cutoff - 1,
                    )
        except StoreError as e:
            logger.error(f"Failed to clear old events: {e}")
        if removed:
            logger.info(f"Cleared {removed} events older than {max_age_ms} ms")
        return removed

    def suspicious_actors(self, limit: int = 20) -> list[SuspiciousActor]:
        """Top actors by count of suspicious/exceeded rate-limit events."""
        try:
            events = self._read_stream(STREAM_RATELIMIT, self.scan_window)
        except StoreError as e:
            logger.error(f"Failed to read events for suspicious actors: {e}")
            return []
        return aggregate_suspicious(events, limit)

    def event_stats(self, window_seconds: int = 86400) -> EventStats:
        """Security event counters summed over the UTC days covering the window."""
        stats = EventStats()
        days  = max(1, math.ceil(window_seconds / 86400))
        today = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        try:
            for offset in range(days):
                day = (today - timedelta(days=offset)).strftime("%Y-%m-%d")
                for field, value in self.store.hash_get_all(self.counters_key(day)).items():
                    n = int(value)
                    if field == "total":
                        stats.total += n
                    elif field.startswith("severity_"):
                        sev = field[len("severity_"):]
                        stats.by_severity[sev] = stats.by_severity.get(sev, 0) + n
                    elif field.startswith("type_"):
                        typ = field[len("type_"):]
                        stats.by_type[typ] = stats.by_type.get(typ, 0) + n
        except StoreError as e:
            logger.error(f"Failed to read event stats: {e}")
            return EventStats()
        return stats
