# protection_engine/config.py
# Global configuration for the adaptive protection engine.
# Every value can be overridden from the environment.

import os

# ── Store backend ──────────────────────────────────────────────────────────────
STORE_BACKEND             = os.getenv("PROTECTION_STORE_BACKEND", "memory")   # memory | remote
REMOTE_STORE_URL          = os.getenv("UPSTASH_REDIS_REST_URL", "")
REMOTE_STORE_TOKEN        = os.getenv("UPSTASH_REDIS_REST_TOKEN", "")
REMOTE_STORE_TIMEOUT_SECS = float(os.getenv("PROTECTION_STORE_TIMEOUT", "5.0"))
KEY_PREFIX                = os.getenv("PROTECTION_KEY_PREFIX", "protection:")
SWEEP_INTERVAL_SECS       = 1.0      # In-memory expiry sweep period

# ── Event log ──────────────────────────────────────────────────────────────────
RATE_LIMIT_EVENT_TTL_SECS = int(os.getenv("RATE_LIMIT_EVENT_TTL", str(7 * 24 * 3600)))
SECURITY_EVENT_TTL_SECS   = int(os.getenv("SECURITY_EVENT_TTL", str(30 * 24 * 3600)))
EVENT_LOG_MAX_ENTRIES     = 10_000   # Sorted-set trim bound per stream
MEMORY_EVENT_BUFFER_SIZE  = 1_000    # Append-only buffer bound on the in-memory backend
SUSPICIOUS_SCAN_WINDOW    = 1_000    # Most recent events scanned for suspicious actors
SUSPICIOUS_RECENT_EVENTS  = 10       # Events kept per suspicious actor
DEFAULT_CLEAR_AGE_MS      = 24 * 60 * 60 * 1000

# ── Block list ─────────────────────────────────────────────────────────────────
DEFAULT_BLOCK_SECS  = 3600
CRITICAL_BLOCK_SECS = 24 * 3600      # Defensive block for critical security events
HIGH_BLOCK_SECS     = 3600           # Defensive block for high security events

# ── Threat detection ───────────────────────────────────────────────────────────
# Windowed per-actor counters; crossing a threshold raises a Threat.
MAX_LOGIN_ATTEMPTS         = int(os.getenv("MAX_LOGIN_ATTEMPTS", "5"))
LOGIN_ATTEMPTS_WINDOW_SECS = 15 * 60
MAX_MFA_FAILURES           = 3
MFA_FAILURE_WINDOW_SECS    = 3600
MAX_REQUESTS_PER_WINDOW    = int(os.getenv("MAX_REQUESTS_PER_WINDOW", "100"))
REQUEST_WINDOW_SECS        = 5 * 60
MAX_CONCURRENT_SESSIONS    = 3
SESSION_WINDOW_SECS        = 24 * 3600
WATCHLIST_TTL_SECS         = 7 * 24 * 3600
USER_ACTIVITY_SCAN         = 50      # Recent security events checked per user
MAX_PASSWORD_RESETS        = 3

# ── Remediation ────────────────────────────────────────────────────────────────
REMEDIATION_QUEUE_SIZE     = int(os.getenv("REMEDIATION_QUEUE_SIZE", "256"))
REMEDIATION_AUDIT_TTL_SECS = 30 * 24 * 3600

# ── Alert channels ─────────────────────────────────────────────────────────────
# An empty value disables the channel (a warning is logged on dispatch).
ALERT_EMAIL_TO        = os.getenv("SECURITY_ALERT_EMAIL", "")
ALERT_EMAIL_FROM      = os.getenv("SECURITY_ALERT_FROM", "security-alerts@localhost")
SMTP_HOST             = os.getenv("SMTP_HOST", "")
SMTP_PORT             = int(os.getenv("SMTP_PORT", "25"))
SLACK_WEBHOOK_URL     = os.getenv("SLACK_SECURITY_WEBHOOK_URL", "")
PAGERDUTY_ROUTING_KEY = os.getenv("PAGERDUTY_ROUTING_KEY", "")
PAGERDUTY_EVENTS_URL  = "https://events.pagerduty.com/v2/enqueue"
DASHBOARD_URL         = os.getenv("PROTECTION_DASHBOARD_URL", "http://localhost:3000/admin/security")
ALERT_TIMEOUT_SECS    = 10.0

# ── Logging ────────────────────────────────────────────────────────────────────
LOG_LEVEL  = os.getenv("PROTECTION_LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s  [%(levelname)s]  %(name)s: %(message)s"
