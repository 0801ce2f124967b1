# =============================================================================
# remediation.py — Rule-driven automatic mitigation of performance issues
#
# Per issue key (`{type}_{name}`) the engine walks:
#   Unseen -> Attempted(n) -> Cooling(n) -> Exhausted
#
#   1. pick the matching enabled rule with the highest threshold
#   2. skip while the cooldown since the last attempt has not elapsed
#   3. skip once attempt_count has reached the rule's max_attempts
#   4. otherwise apply the rule's strategy and record the outcome
#
# Each issue key has its own lock so concurrent identical issues cannot
# both pass the cooldown check. Issues normally arrive through
# RemediationWorker, a bounded drop-oldest queue drained by one thread.
# =============================================================================

import json
import logging
import queue
import re
import threading
import time
from typing import Callable

from protection_engine import config
from protection_engine.adaptive.kv_store import KVStore
from protection_engine.errors import StoreError
from protection_engine.models import (
    MetricType, PerformanceIssue, RemediationAttempt, RemediationNotice,
    RemediationRule, RemediationStats, RemediationStrategy,
)

logger = logging.getLogger(__name__)

Listener = Callable[[RemediationNotice], None]


DEFAULT_RULES: list[RemediationRule] = [
    RemediationRule(
        id="api-caching",
        pattern=r"^api\.",
        type=MetricType.API,
        strategy=RemediationStrategy.CACHE,
        threshold=50,               # 50% above the issue threshold
        max_attempts=3,
        cooldown_period=5 * 60,
    ),
    RemediationRule(
        id="render-throttling",
        pattern=r"^render\.",
        type=MetricType.RENDER,
        strategy=RemediationStrategy.THROTTLE,
        threshold=100,
        max_attempts=2,
        cooldown_period=2 * 60,
    ),
    RemediationRule(
        id="database-circuit-breaker",
        pattern=r"^db\.",
        type=MetricType.DATABASE,
        strategy=RemediationStrategy.CIRCUIT_BREAKER,
        threshold=200,
        max_attempts=1,
        cooldown_period=10 * 60,
    ),
]


def rule_matches(rule: RemediationRule, issue: PerformanceIssue) -> bool:
    if not rule.enabled or rule.type != issue.type:
        return False
    if issue.exceed_percentage < rule.threshold:
        return False
    if rule.regex:
        return re.search(rule.pattern, issue.name) is not None
    return rule.pattern in issue.name


# ── Strategy handlers ─────────────────────────────────────────────────────────
# Each handler raises a global flag and a per-issue flag. Setting a flag that
# is already set changes nothing, so handlers are idempotent.

class MitigationFlags:
    """Reads and writes mitigation flags in the KV store."""

    def __init__(self, store: KVStore, prefix: str = config.KEY_PREFIX):
        self.store  = store
        self.prefix = f"{prefix}mitigation:"

    def global_key(self, strategy: RemediationStrategy) -> str:
        return f"{self.prefix}{strategy.value}"

    def issue_key(self, strategy: RemediationStrategy, issue: PerformanceIssue) -> str:
        return f"{self.prefix}{strategy.value}:{issue.type.value}:{issue.name}"

    def raise_flags(self, strategy: RemediationStrategy, issue: PerformanceIssue) -> bool:
        (self.store.pipeline()
            .set(self.global_key(strategy), "1")
            .set(self.issue_key(strategy, issue), "1")
            .execute())
        return True

    def is_enabled(self, strategy: RemediationStrategy, issue: PerformanceIssue | None = None) -> bool:
        key = self.global_key(strategy) if issue is None else self.issue_key(strategy, issue)
        try:
            return self.store.get(key) is not None
        except StoreError as e:
            logger.error(f"Failed to read mitigation flag {key}: {e}")
            return False


def _enable_caching(flags: MitigationFlags, issue: PerformanceIssue) -> bool:
    flags.raise_flags(RemediationStrategy.CACHE, issue)
    logger.info(f"Enhanced caching enabled for {issue.name}")
    return True


def _enable_throttling(flags: MitigationFlags, issue: PerformanceIssue) -> bool:
    flags.raise_flags(RemediationStrategy.THROTTLE, issue)
    logger.info(f"Enhanced throttling enabled for {issue.name}")
    return True


def _enable_lazy_loading(flags: MitigationFlags, issue: PerformanceIssue) -> bool:
    flags.raise_flags(RemediationStrategy.LAZY_LOAD, issue)
    logger.info(f"Lazy loading enabled for {issue.name}")
    return True


def _reduce_quality(flags: MitigationFlags, issue: PerformanceIssue) -> bool:
    flags.raise_flags(RemediationStrategy.REDUCE_QUALITY, issue)
    logger.info(f"Reduced quality mode enabled for {issue.name}")
    return True


def _enable_circuit_breaker(flags: MitigationFlags, issue: PerformanceIssue) -> bool:
    flags.raise_flags(RemediationStrategy.CIRCUIT_BREAKER, issue)
    logger.info(f"Circuit breaker enabled for {issue.name}")
    return True


def apply_strategy(strategy: RemediationStrategy, flags: MitigationFlags, issue: PerformanceIssue) -> bool:
    """Run the handler for one strategy. Never raises; failures return False."""
    logger.info(f"Applying {strategy.value} remediation for {issue.type.value} issue: {issue.name}")
    try:
        match strategy:
            case RemediationStrategy.CACHE:
                return _enable_caching(flags, issue)
            case RemediationStrategy.THROTTLE:
                return _enable_throttling(flags, issue)
            case RemediationStrategy.LAZY_LOAD:
                return _enable_lazy_loading(flags, issue)
            case RemediationStrategy.REDUCE_QUALITY:
                return _reduce_quality(flags, issue)
            case RemediationStrategy.CIRCUIT_BREAKER:
                return _enable_circuit_breaker(flags, issue)
            case RemediationStrategy.NONE:
                logger.info("No remediation strategy applied")
                return False
    except Exception as e:
        logger.error(f"Error applying {strategy.value} remediation for {issue.name}: {e}")
        return False
    raise ValueError(f"Unknown remediation strategy: {strategy!r}")


# ── Engine ────────────────────────────────────────────────────────────────────

class RemediationEngine:
    """Matches performance issues against rules and applies mitigations."""

    def __init__(
        self,
        store: KVStore,
        rules: list[RemediationRule] | None = None,
        prefix: str = config.KEY_PREFIX,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.store   = store
        self.prefix  = prefix
        self.flags   = MitigationFlags(store, prefix)
        self.enabled = enabled
        self._clock  = clock

        self._rules: list[RemediationRule] = list(rules if rules is not None else DEFAULT_RULES)
        self._attempts: dict[str, RemediationAttempt] = {}
        self._listeners: list[Listener] = []

        self._state_lock = threading.Lock()      # rules, attempts, listeners, key locks
        self._key_locks: dict[str, threading.Lock] = {}

    # ── Rule management ───────────────────────────────────────────────────────

    def set_enabled(self, is_enabled: bool):
        self.enabled = is_enabled
        logger.info(f"Performance auto-remediation {'enabled' if is_enabled else 'disabled'}")

    def add_or_replace_rule(self, rule: RemediationRule):
        """Upsert by rule id; a replaced rule keeps its position."""
        with self._state_lock:
            for i, existing in enumerate(self._rules):
                if existing.id == rule.id:
                    self._rules[i] = rule
                    return
            self._rules.append(rule)

    def remove_rule(self, rule_id: str) -> bool:
        with self._state_lock:
            before = len(self._rules)
            self._rules = [r for r in self._rules if r.id != rule_id]
            return len(self._rules) < before

    def get_rules(self) -> list[RemediationRule]:
        with self._state_lock:
            return list(self._rules)

    def reset_rules(self):
        with self._state_lock:
            self._rules = list(DEFAULT_RULES)

    def select_rule(self, issue: PerformanceIssue) -> RemediationRule | None:
        """Highest-threshold matching rule; equal thresholds keep rule order."""
        applicable = [r for r in self.get_rules() if rule_matches(r, issue)]
        if not applicable:
            return None
        applicable.sort(key=lambda r: r.threshold, reverse=True)
        return applicable[0]

    # ── Notifications ─────────────────────────────────────────────────────────

    def subscribe(self, listener: Listener):
        with self._state_lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener):
        with self._state_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, notice: RemediationNotice):
        with self._state_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(notice)
            except Exception:
                logger.exception("Remediation listener failed")

    def _audit(self, notice: RemediationNotice, at: float):
        ms  = int(at * 1000)
        key = f"{self.prefix}remediation:audit:{notice.issue.key}:{ms}"
        entry = {
            "issue_key":     notice.issue.key,
            "rule_id":       notice.rule.id,
            "strategy":      notice.rule.strategy.value,
            "success":       notice.success,
            "attempt_count": notice.attempt_count,
            "timestamp":     ms,
        }
        try:
            self.store.set(key, json.dumps(entry), ttl=config.REMEDIATION_AUDIT_TTL_SECS)
        except StoreError as e:
            logger.error(f"Failed to persist remediation audit entry for {notice.issue.key}: {e}")

    # ── Issue handling ────────────────────────────────────────────────────────

    def _lock_for(self, issue_key: str) -> threading.Lock:
        with self._state_lock:
            lock = self._key_locks.get(issue_key)
            if lock is None:
                lock = self._key_locks[issue_key] = threading.Lock()
            return lock

    def handle_issue(self, issue: PerformanceIssue) -> RemediationAttempt | None:
        """
        Decide on and apply remediation for one issue.

        Returns the updated attempt record, or None when nothing was applied
        (engine disabled, no matching rule, cooling down, or exhausted).
        """
        if not self.enabled:
            return None

        rule = self.select_rule(issue)
        if rule is None:
            logger.debug(f"No applicable remediation rules found for issue: {issue.name}")
            return None

        key = issue.key
        with self._lock_for(key):
            now = self._clock()
            with self._state_lock:
                previous = self._attempts.get(key)

            if previous is None:
                attempt = RemediationAttempt(
                    issue_key=key,
                    rule_id=rule.id,
                    strategy=rule.strategy,
                    attempt_count=1,
                    last_attempt_time=now,
                )
            else:
                if now - previous.last_attempt_time < rule.cooldown_period:
                    logger.debug(f"Remediation for {key} is in cooldown period")
                    return None
                if previous.attempt_count >= rule.max_attempts:
                    logger.debug(f"Max remediation attempts ({rule.max_attempts}) reached for {key}")
                    return None
                attempt = previous.model_copy(update={
                    "rule_id":           rule.id,
                    "strategy":          rule.strategy,
                    "attempt_count":     previous.attempt_count + 1,
                    "last_attempt_time": now,
                })

            attempt.successful = apply_strategy(rule.strategy, self.flags, issue)
            with self._state_lock:
                self._attempts[key] = attempt

        notice = RemediationNotice(
            issue=issue, rule=rule, success=attempt.successful,
            attempt_count=attempt.attempt_count,
        )
        self._notify(notice)
        self._audit(notice, now)
        return attempt

    # ── State / stats ─────────────────────────────────────────────────────────

    def get_attempt(self, issue_key: str) -> RemediationAttempt | None:
        with self._state_lock:
            attempt = self._attempts.get(issue_key)
            return attempt.model_copy() if attempt else None

    def clear_attempts(self):
        with self._state_lock:
            self._attempts.clear()
            self._key_locks.clear()

    def is_mitigation_enabled(self, strategy: RemediationStrategy, issue: PerformanceIssue | None = None) -> bool:
        return self.flags.is_enabled(strategy, issue)

    def stats(self) -> RemediationStats:
        stats = RemediationStats()
        with self._state_lock:
            attempts = list(self._attempts.values())
        for attempt in attempts:
            stats.total_attempts += 1
            if attempt.successful:
                stats.successful_attempts += 1
            strategy = attempt.strategy.value
            stats.by_strategy[strategy] = stats.by_strategy.get(strategy, 0) + 1
            issue_type = attempt.issue_key.split("_", 1)[0]
            stats.by_type[issue_type] = stats.by_type.get(issue_type, 0) + 1
        return stats


# ── Worker ────────────────────────────────────────────────────────────────────

_STOP = object()


class RemediationWorker:
    """
    Bounded issue queue drained by a single daemon thread.

    When the queue is full the oldest pending issue is dropped so producers
    never block. Once stop() has begun, submit() refuses new issues so the
    stop marker can never be pushed out of the queue.
    """

    def __init__(self, engine: RemediationEngine, maxsize: int = config.REMEDIATION_QUEUE_SIZE):
        self.engine  = engine
        self.dropped = 0
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._thread: threading.Thread | None = None
        self._submit_lock = threading.Lock()
        self._stopping    = threading.Event()

    def start(self) -> "RemediationWorker":
        if self._thread is None:
            self._stopping.clear()
            self._thread = threading.Thread(target=self._run, name="remediation-worker", daemon=True)
            self._thread.start()
        return self

    def submit(self, issue: PerformanceIssue) -> bool:
        """
        Enqueue an issue. Returns False if an older issue had to be dropped,
        or if the worker is stopping and the issue was refused.
        """
        with self._submit_lock:
            if self._stopping.is_set():
                logger.warning(f"Remediation worker stopping, refused issue {issue.key}")
                return False
            dropped = False
            while True:
                try:
                    self._queue.put_nowait(issue)
                    return not dropped
                except queue.Full:
                    try:
                        old = self._queue.get_nowait()
                        self._queue.task_done()
                    except queue.Empty:
                        continue
                    dropped = True
                    self.dropped += 1
                    logger.warning(f"Remediation queue full, dropped issue {getattr(old, 'key', old)}")

    def _run(self):
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self.engine.handle_issue(item)
            except Exception:
                logger.exception("Remediation worker failed to handle issue")
            finally:
                self._queue.task_done()

    def join(self):
        """Block until every queued issue has been handled."""
        self._queue.join()

    def stop(self, timeout: float | None = 5.0):
        if self._thread is None:
            return
        with self._submit_lock:
            self._stopping.set()
        self._queue.put(_STOP)
        self._thread.join(timeout=timeout)
        self._thread = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()
