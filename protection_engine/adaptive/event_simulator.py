# =============================================================================
# event_simulator.py — Generates realistic synthetic engine traffic
# Produces normal rate-limiter hits plus injected abuse patterns:
#   - Credential stuffing against the login limiter
#   - API scraping bursts
#   - Booking spam
# and security incidents / performance issues for the other components.
# =============================================================================

import random
import time

from faker import Faker

from protection_engine.models import (
    MetricType, PerformanceIssue, RateLimitEvent, SecurityEvent, Severity,
)

fake = Faker("en_GB")
Faker.seed(42)
_rng = random.Random(42)

# ── Traffic pools ─────────────────────────────────────────────────────────────
CLIENT_IPS   = [fake.ipv4_public() for _ in range(40)]
ATTACKER_IPS = [fake.ipv4_public() for _ in range(8)]

LIMITERS = {
    "api":      ["/api/v1/providers", "/api/v1/services", "/api/v1/reviews"],
    "auth":     ["/api/auth/login", "/api/auth/reset-password", "/api/auth/mfa"],
    "booking":  ["/api/bookings", "/api/bookings/availability"],
    "messages": ["/api/messages", "/api/messages/threads"],
}

SECURITY_EVENT_TYPES = {
    Severity.LOW:      ["successful_login", "password_reset"],
    Severity.MEDIUM:   ["failed_login", "mfa_challenge", "unusual_location", "multiple_devices"],
    Severity.HIGH:     ["brute_force_attempt", "mfa_failure", "api_abuse"],
    Severity.CRITICAL: ["suspicious_activity", "data_access_pattern"],
}


def _now_ms() -> int:
    return int(time.time() * 1000)


# ── Normal traffic ────────────────────────────────────────────────────────────

def _gen_normal_hit(ts: int) -> RateLimitEvent:
    limiter = _rng.choice(list(LIMITERS))
    limit   = _rng.choice([30, 60, 100])
    count   = _rng.randint(1, int(limit * 0.7))
    return RateLimitEvent(
        actor=_rng.choice(CLIENT_IPS),
        resource=_rng.choice(LIMITERS[limiter]),
        method=_rng.choice(["GET", "GET", "POST"]),
        category=limiter,
        timestamp=ts,
        count=count,
        limit=limit,
        remaining=limit - count,
        reset_time=ts + 60_000,
        user_id=fake.uuid4() if _rng.random() < 0.5 else None,
        metadata={"user_agent": fake.user_agent()},
    )


# ── Abuse pattern generators ──────────────────────────────────────────────────

def _gen_burst(ip: str, limiter: str, method: str, start: int, size: int, limit: int) -> list[RateLimitEvent]:
    events = []
    ts = start
    for i in range(size):
        ts += _rng.randint(50, 800)
        count = limit + i + 1
        events.append(RateLimitEvent(
            actor=ip,
            resource=_rng.choice(LIMITERS[limiter]),
            method=method,
            category=limiter,
            timestamp=ts,
            exceeded=True,
            suspicious=count > limit * 2,
            count=count,
            limit=limit,
            remaining=0,
            retry_after=60,
            reset_time=ts + 60_000,
            over_limit_factor=round(count / limit, 2),
            metadata={"user_agent": fake.user_agent()},
        ))
    return events


def _gen_credential_stuffing(start: int) -> list[RateLimitEvent]:
    """Rapid login attempts from one IP far past the auth limit."""
    return _gen_burst(_rng.choice(ATTACKER_IPS), "auth", "POST", start, _rng.randint(15, 40), limit=5)


def _gen_api_scraping(start: int) -> list[RateLimitEvent]:
    """Catalogue scraping over the public API."""
    return _gen_burst(_rng.choice(ATTACKER_IPS), "api", "GET", start, _rng.randint(20, 60), limit=100)


def _gen_booking_spam(start: int) -> list[RateLimitEvent]:
    """Repeated booking creation from one client."""
    return _gen_burst(_rng.choice(ATTACKER_IPS), "booking", "POST", start, _rng.randint(5, 15), limit=10)


# ── Public API ────────────────────────────────────────────────────────────────

def simulate_rate_limit_events(
    total: int = 500,
    attack_fraction: float = 0.1,
    start_ms: int | None = None,
) -> list[RateLimitEvent]:
    """
    Generate a time-ordered mix of normal and abusive rate-limit hits.

    Args:
        total:            Number of events to generate.
        attack_fraction:  Fraction of events coming from abuse bursts (0.0–1.0).
        start_ms:         Epoch ms of the first event (default: ten minutes ago).
    """
    if start_ms is None:
        start_ms = _now_ms() - 10 * 60 * 1000

    num_attacks = int(total * attack_fraction)
    generators  = [_gen_credential_stuffing, _gen_api_scraping, _gen_booking_spam]

    attack: list[RateLimitEvent] = []
    while len(attack) < num_attacks:
        attack.extend(_rng.choice(generators)(start_ms + _rng.randint(0, 300_000)))
    attack = attack[:num_attacks]

    normal = [
        _gen_normal_hit(start_ms + _rng.randint(0, 600_000))
        for _ in range(total - len(attack))
    ]
    return sorted(attack + normal, key=lambda e: e.timestamp)


def simulate_security_events(
    total: int = 50,
    severity: Severity | None = None,
    start_ms: int | None = None,
) -> list[SecurityEvent]:
    """Security incidents spread across severities (or pinned to one)."""
    if start_ms is None:
        start_ms = _now_ms() - 60 * 1000
    events = []
    for i in range(total):
        sev  = severity or _rng.choice(list(Severity))
        kind = _rng.choice(SECURITY_EVENT_TYPES[sev])
        events.append(SecurityEvent(
            actor=_rng.choice(ATTACKER_IPS + CLIENT_IPS),
            resource=_rng.choice(LIMITERS["auth"]),
            method="POST",
            category=kind,
            severity=sev,
            timestamp=start_ms + i * 100,
            description=f"{kind.replace('_', ' ')} for {fake.user_name()}",
            user_id=fake.uuid4(),
            user_agent=fake.user_agent(),
            metadata={"country": fake.country_code(), "city": fake.city()},
        ))
    return events


def simulate_performance_issue(
    metric: MetricType = MetricType.API,
    name: str | None = None,
    exceed_percent: float = 80.0,
    threshold: float = 200.0,
) -> PerformanceIssue:
    """An issue whose duration exceeds `threshold` by `exceed_percent` %."""
    prefixes = {
        MetricType.API: "api.", MetricType.RENDER: "render.", MetricType.DATABASE: "db.",
        MetricType.COMPUTATION: "compute.", MetricType.NETWORK: "net.",
    }
    return PerformanceIssue(
        type=metric,
        name=name or f"{prefixes[metric]}{fake.word()}",
        duration=threshold * (1 + exceed_percent / 100),
        threshold=threshold,
        timestamp=_now_ms(),
        metadata={"host": fake.hostname()},
    )


if __name__ == "__main__":
    events = simulate_rate_limit_events(total=100, attack_fraction=0.2)
    flagged = [e for e in events if e.is_suspicious]
    print(f"Generated {len(events)} events  |  Suspicious/exceeded: {len(flagged)}")
    print("\nSample event:")
    print(events[0].model_dump_json(indent=2))
