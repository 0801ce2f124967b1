# =============================================================================
# threat_detector.py — Counter-based threat detection over security events
#
#   failed_login      -> brute force          (>= 5 per 15 min per actor)   high
#   mfa_failure       -> MFA abuse            (>= 3 per hour per user)      high
#   api_abuse         -> API abuse            (> 100 per 5 min per actor)   medium
#   successful_login  -> concurrent sessions  (>= 3 other actors per user)  medium
#
# Each counter is an INCR + EXPIRE pair sent as one transactional pipeline,
# so engine instances sharing a remote store share the same counts.
#
# Defensive action by threat severity:
#   critical -> block 24h     high -> block 1h     medium -> watch list
# =============================================================================

import logging

from protection_engine import config
from protection_engine.adaptive.block_list import BlockList, fingerprint
from protection_engine.adaptive.event_log import EventLog
from protection_engine.adaptive.kv_store import KVStore
from protection_engine.errors import StoreError
from protection_engine.models import SecurityEvent, Severity, Threat

logger = logging.getLogger(__name__)


class WatchList:
    """Actors and users under observation; entries expire after WATCHLIST_TTL_SECS."""

    def __init__(self, store: KVStore, prefix: str = config.KEY_PREFIX, ttl: int = config.WATCHLIST_TTL_SECS):
        self.store       = store
        self.ttl         = ttl
        self.ip_prefix   = f"{prefix}watchlist:ips:"
        self.user_prefix = f"{prefix}watchlist:users:"

    def add(self, actor: str, user_id: str | None = None) -> bool:
        pipe = self.store.pipeline().set(self.ip_prefix + actor, "1", ttl=self.ttl)
        if user_id:
            pipe.set(self.user_prefix + user_id, "1", ttl=self.ttl)
        try:
            pipe.execute()
        except StoreError as e:
            logger.error(f"Failed to watch-list actor {fingerprint(actor)}: {e}")
            return False
        logger.info(f"Added actor {fingerprint(actor)} to watch list")
        return True

    def is_watched(self, actor: str) -> bool:
        try:
            return self.store.get(self.ip_prefix + actor) is not None
        except StoreError as e:
            logger.error(f"Could not read watch list for {fingerprint(actor)}: {e}")
            return False

    def _list(self, prefix: str) -> list[str]:
        try:
            keys = self.store.keys(prefix + "*")
        except StoreError as e:
            logger.error(f"Failed to list watch list: {e}")
            return []
        return sorted(key[len(prefix):] for key in keys)

    def list_actors(self) -> list[str]:
        return self._list(self.ip_prefix)

    def list_users(self) -> list[str]:
        return self._list(self.user_prefix)


class ThreatDetector:
    """Turns streams of security events into threats and defensive actions."""

    def __init__(
        self,
        store: KVStore,
        block_list: BlockList,
        watch_list: WatchList | None = None,
        event_log: EventLog | None = None,
        prefix: str = config.KEY_PREFIX,
        max_login_attempts: int = config.MAX_LOGIN_ATTEMPTS,
        login_window: int = config.LOGIN_ATTEMPTS_WINDOW_SECS,
        max_mfa_failures: int = config.MAX_MFA_FAILURES,
        mfa_window: int = config.MFA_FAILURE_WINDOW_SECS,
        max_requests: int = config.MAX_REQUESTS_PER_WINDOW,
        request_window: int = config.REQUEST_WINDOW_SECS,
        max_sessions: int = config.MAX_CONCURRENT_SESSIONS,
        session_window: int = config.SESSION_WINDOW_SECS,
    ):
        self.store      = store
        self.block_list = block_list
        self.watch_list = watch_list or WatchList(store, prefix)
        self.event_log  = event_log
        self.key_prefix = f"{prefix}threat:"

        self.max_login_attempts = max_login_attempts
        self.login_window       = login_window
        self.max_mfa_failures   = max_mfa_failures
        self.mfa_window         = mfa_window
        self.max_requests       = max_requests
        self.request_window     = request_window
        self.max_sessions       = max_sessions
        self.session_window     = session_window

    # ── Counters ──────────────────────────────────────────────────────────────

    def _count(self, name: str, subject: str, window: int) -> int:
        """Bump a windowed counter and return its new value."""
        key = f"{self.key_prefix}{name}:{subject}"
        count, _ = self.store.pipeline().increment(key).expire(key, window).execute()
        return count

    # ── Detectors ─────────────────────────────────────────────────────────────

    def _detect_brute_force(self, event: SecurityEvent) -> Threat | None:
        attempts = self._count("failed_login", event.actor, self.login_window)
        if attempts < self.max_login_attempts:
            return None
        return Threat(
            type="brute_force_detected", severity=Severity.HIGH,
            actor=event.actor, user_id=event.user_id,
            metadata={"attempts": attempts, "window_secs": self.login_window,
                      "user_agent": event.user_agent},
        )

    def _detect_mfa_abuse(self, event: SecurityEvent) -> Threat | None:
        failures = self._count("mfa_failures", event.user_id or event.actor, self.mfa_window)
        if failures < self.max_mfa_failures:
            return None
        return Threat(
            type="mfa_abuse_detected", severity=Severity.HIGH,
            actor=event.actor, user_id=event.user_id,
            metadata={"failures": failures, "window_secs": self.mfa_window},
        )

    def _detect_api_abuse(self, event: SecurityEvent) -> Threat | None:
        requests = self._count("api_requests", event.actor, self.request_window)
        if requests <= self.max_requests:
            return None
        return Threat(
            type="api_abuse_detected", severity=Severity.MEDIUM,
            actor=event.actor, user_id=event.user_id,
            metadata={"requests": requests, "window_secs": self.request_window,
                      "threshold": self.max_requests},
        )

    def _detect_concurrent_sessions(self, event: SecurityEvent) -> Threat | None:
        if not event.user_id:
            return None
        key = f"{self.key_prefix}user_sessions:{event.user_id}"
        sessions = self.store.hash_get_all(key)
        others   = len(set(sessions) - {event.actor})
        (self.store.pipeline()
            .hash_increment(key, event.actor)
            .expire(key, self.session_window)
            .execute())
        if others < self.max_sessions:
            return None
        return Threat(
            type="concurrent_sessions_exceeded", severity=Severity.MEDIUM,
            actor=event.actor, user_id=event.user_id,
            metadata={"current_sessions": others, "max_allowed": self.max_sessions},
        )

    # ── Public API ────────────────────────────────────────────────────────────

    def analyze(self, event: SecurityEvent) -> Threat | None:
        """
        Update the counters an event feeds and return the threat it completes,
        after applying the defensive action. Store failures are logged and
        yield None.
        """
        try:
            match event.category:
                case "failed_login":
                    threat = self._detect_brute_force(event)
                case "mfa_failure":
                    threat = self._detect_mfa_abuse(event)
                case "api_abuse":
                    threat = self._detect_api_abuse(event)
                case "successful_login":
                    threat = self._detect_concurrent_sessions(event)
                case _:
                    return None
        except StoreError as e:
            logger.error(f"Threat analysis failed for {event.category} event {event.id}: {e}")
            return None

        if threat is not None:
            logger.warning(
                f"Security threat detected: {threat.type} severity={threat.severity.value} "
                f"actor={fingerprint(threat.actor)}"
            )
            self.take_defensive_action(threat)
        return threat

    def take_defensive_action(self, threat: Threat):
        match threat.severity:
            case Severity.CRITICAL:
                self.block_list.block(threat.actor, config.CRITICAL_BLOCK_SECS)
            case Severity.HIGH:
                self.block_list.block(threat.actor, config.HIGH_BLOCK_SECS)
            case Severity.MEDIUM:
                self.watch_list.add(threat.actor, threat.user_id)
            case _:
                pass

    def detect_suspicious_activity(self, user_id: str) -> bool:
        """True when a user's recent security events show a takeover pattern."""
        if self.event_log is None:
            return False
        events = self.event_log.recent_events(limit=config.USER_ACTIVITY_SCAN, stream="security")
        counts: dict[str, int] = {}
        for event in events:
            if getattr(event, "user_id", None) == user_id:
                counts[event.category] = counts.get(event.category, 0) + 1
        return (
            counts.get("failed_login", 0) >= self.max_login_attempts
            or counts.get("mfa_failure", 0) >= self.max_mfa_failures
            or counts.get("password_reset", 0) >= config.MAX_PASSWORD_RESETS
        )
