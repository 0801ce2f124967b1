# =============================================================================
# protection_pipeline.py — Wires the engine components around one KV store
#
# Flow:
#   caller events
#       → EventLog             (persist, trim, count)
#       → BlockList            (defensive blocks for high/critical incidents,
#                               enforcement over suspicious actors)
#       → ThreatDetector       (windowed counters → threats → block or watch list)
#       → AlertDispatcher      (high and critical incidents only)
#   performance issues
#       → RemediationWorker    (bounded queue)
#       → RemediationEngine    (rules, cooldowns, mitigation flags)
#
# The store is built once by create_store() and handed to every component;
# close() tears everything down in reverse order.
# =============================================================================

import logging
from typing import Any

from protection_engine import config
from protection_engine.adaptive.alert_dispatcher import AlertDispatcher
from protection_engine.adaptive.block_list import BlockList
from protection_engine.adaptive.event_log import EventLog
from protection_engine.adaptive.kv_store import KVStore
from protection_engine.adaptive.memory_store import InMemoryStore
from protection_engine.adaptive.remediation import RemediationEngine, RemediationWorker
from protection_engine.adaptive.remote_store import RemoteStore
from protection_engine.adaptive.threat_detector import ThreatDetector, WatchList
from protection_engine.errors import InvalidEventError
from protection_engine.models import (
    Event, EventStats, PerformanceIssue, RateLimitEvent, RemediationRule,
    RemediationStats, SecurityEvent, Severity, SuspiciousActor, Threat,
)

logger = logging.getLogger(__name__)


def create_store(
    backend: str = config.STORE_BACKEND,
    url: str = config.REMOTE_STORE_URL,
    token: str = config.REMOTE_STORE_TOKEN,
) -> KVStore:
    """Build the configured store; a remote backend without credentials falls back to memory."""
    if backend == "remote":
        if url and token:
            return RemoteStore(url=url, token=token)
        logger.warning("Remote store selected without URL/token — using in-memory store")
    elif backend != "memory":
        raise ValueError(f"Unknown store backend: {backend!r}")
    return InMemoryStore()


def _should_alert(event: SecurityEvent) -> bool:
    return event.severity.rank >= Severity.HIGH.rank


# ── Engine ────────────────────────────────────────────────────────────────────

class ProtectionEngine:
    """
    Entry point for callers: ingestion, queries and administration of the
    adaptive protection engine.
    """

    def __init__(
        self,
        store: KVStore,
        event_log: EventLog | None = None,
        block_list: BlockList | None = None,
        remediation: RemediationEngine | None = None,
        alerts: AlertDispatcher | None = None,
        queue_size: int = config.REMEDIATION_QUEUE_SIZE,
        start_worker: bool = True,
    ):
        self.store       = store
        self.event_log   = event_log or EventLog(store)
        self.block_list  = block_list or BlockList(store, event_log=self.event_log)
        self.remediation = remediation or RemediationEngine(store)
        self.alerts      = alerts or AlertDispatcher()
        self.watch_list  = WatchList(store)
        self.threats     = ThreatDetector(store, self.block_list, self.watch_list, self.event_log)
        self.worker      = RemediationWorker(self.remediation, maxsize=queue_size)
        if start_worker:
            self.worker.start()

    @classmethod
    def from_config(cls, **kwargs) -> "ProtectionEngine":
        return cls(create_store(), **kwargs)

    # ── Ingestion ─────────────────────────────────────────────────────────────

    def log_event(self, event: Event | dict[str, Any]) -> bool:
        """Route an event by kind; security events also trigger blocks and alerts."""
        kind = event.get("kind") if isinstance(event, dict) else getattr(event, "kind", None)
        if kind == "security":
            return self.log_security_event(event)
        return self.event_log.log_event(event)

    def log_rate_limit_event(self, event: RateLimitEvent | dict[str, Any]) -> bool:
        if isinstance(event, dict):
            event = {"kind": "ratelimit", **event}
        return self.event_log.log_event(event)

    def log_security_event(self, event: SecurityEvent | dict[str, Any]) -> bool:
        """
        Record a security incident, apply the defensive block its severity
        calls for, run threat detection over it, and notify external channels
        when it is high or critical.

        The event is stamped once up front; blocking, detection and alerting
        all see the same id and timestamp that were stored.
        """
        if isinstance(event, dict):
            event = {"kind": "security", **event}
        event = self.event_log.prepare(event)
        if not isinstance(event, SecurityEvent):
            raise InvalidEventError(f"Expected a security event, got {event.kind!r}")
        stored = self.event_log.log_event(event)

        if event.severity == Severity.CRITICAL:
            self.block_list.block(event.actor, config.CRITICAL_BLOCK_SECS)
        elif event.severity == Severity.HIGH:
            self.block_list.block(event.actor, config.HIGH_BLOCK_SECS)

        threat = self.threats.analyze(event)
        if threat is not None:
            self._record_threat(threat)

        if _should_alert(event):
            self.alerts.dispatch(event)
        return stored

    def _record_threat(self, threat: Threat):
        """Log a detected threat as its own security event and alert on it."""
        event = self.event_log.prepare(threat.to_event())
        self.event_log.log_event(event)
        if _should_alert(event):
            self.alerts.dispatch(event)

    def report_issue(self, issue: PerformanceIssue) -> bool:
        """Queue a performance issue for remediation."""
        return self.worker.submit(issue)

    # ── Queries ───────────────────────────────────────────────────────────────

    def recent_events(self, limit: int = 100, severity: Severity | str | None = None, **filters) -> list[Event]:
        return self.event_log.recent_events(limit=limit, severity=severity, **filters)

    def suspicious_actors(self, limit: int = 20) -> list[SuspiciousActor]:
        return self.event_log.suspicious_actors(limit)

    def event_stats(self, window_seconds: int = 86400) -> EventStats:
        return self.event_log.event_stats(window_seconds)

    def is_blocked(self, actor: str) -> bool:
        return self.block_list.is_blocked(actor)

    def list_blocked(self) -> list[str]:
        return self.block_list.list_blocked()

    def is_watched(self, actor: str) -> bool:
        return self.watch_list.is_watched(actor)

    def list_watched(self) -> list[str]:
        return self.watch_list.list_actors()

    def detect_suspicious_activity(self, user_id: str) -> bool:
        return self.threats.detect_suspicious_activity(user_id)

    def remediation_stats(self) -> RemediationStats:
        return self.remediation.stats()

    # ── Administration ────────────────────────────────────────────────────────

    def block(self, actor: str, duration_seconds: int = config.DEFAULT_BLOCK_SECS) -> bool:
        return self.block_list.block(actor, duration_seconds)

    def unblock(self, actor: str) -> bool:
        return self.block_list.unblock(actor)

    def enforce_suspicious_actors(
        self,
        min_count: int = 10,
        duration_seconds: int = config.DEFAULT_BLOCK_SECS,
    ) -> list[str]:
        """Block every suspicious actor with at least min_count flagged events."""
        blocked = []
        for entry in self.event_log.suspicious_actors(limit=self.event_log.scan_window):
            if entry.count < min_count:
                break
            if not self.block_list.is_blocked(entry.actor) and self.block_list.block(entry.actor, duration_seconds):
                blocked.append(entry.actor)
        if blocked:
            logger.warning(f"Auto-blocked {len(blocked)} suspicious actors (threshold={min_count})")
        return blocked

    def add_or_replace_rule(self, rule: RemediationRule):
        self.remediation.add_or_replace_rule(rule)

    def remove_rule(self, rule_id: str) -> bool:
        return self.remediation.remove_rule(rule_id)

    def reset_rules(self):
        self.remediation.reset_rules()

    def clear_remediation_attempts(self):
        self.remediation.clear_attempts()

    def clear_older_than(self, max_age_ms: int = config.DEFAULT_CLEAR_AGE_MS) -> int:
        return self.event_log.clear_older_than(max_age_ms)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def close(self):
        self.worker.stop()
        self.alerts.close()
        self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)

    from protection_engine.adaptive.event_simulator import (
        simulate_performance_issue, simulate_rate_limit_events, simulate_security_events,
    )

    print("Running adaptive protection engine demo...\n")
    with ProtectionEngine.from_config() as engine:
        for event in simulate_rate_limit_events(total=400, attack_fraction=0.2):
            engine.log_rate_limit_event(event)
        for event in simulate_security_events(total=20, severity=Severity.MEDIUM):
            engine.log_security_event(event)

        newly_blocked = engine.enforce_suspicious_actors(min_count=10, duration_seconds=600)
        engine.report_issue(simulate_performance_issue(exceed_percent=120))
        engine.worker.join()

        stats = engine.event_stats()
        print(f"\n{'='*55}")
        print(f"  Recent events       : {len(engine.recent_events(limit=1000))}")
        print(f"  Security events     : {stats.total}")
        print(f"  Suspicious actors   : {len(engine.suspicious_actors())}")
        print(f"  Newly blocked       : {len(newly_blocked)}")
        print(f"  Watch-listed actors : {len(engine.list_watched())}")
        print(f"  Remediation attempts: {engine.remediation_stats().total_attempts}")
        print(f"{'='*55}")
        top = engine.suspicious_actors(limit=1)
        if top:
            print(f"\nTop suspicious actor: {top[0].actor}  ({top[0].count} flagged events)")
