# protection_engine/models.py
# Shared Pydantic models used across all components

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# ── Events ─────────────────────────────────────────────────────────────────────

class Severity(str, Enum):
    LOW      = "low"
    MEDIUM   = "medium"
    HIGH     = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2, Severity.CRITICAL: 3,
}


class Event(BaseModel):
    """Common shape of every event recorded by the engine. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    id:        Optional[str] = None            # assigned at ingestion when absent
    actor:     str = Field(min_length=1)       # originating IP / identifier
    resource:  str = ""                        # path or operation
    method:    str = ""                        # verb or operation kind
    category:  str = ""                        # limiter name or security-event type
    timestamp: Optional[int] = None            # epoch ms, assigned at ingestion when absent
    metadata:  dict[str, Any] = Field(default_factory=dict)


class RateLimitEvent(Event):
    """A hit against one of the application's rate limiters."""
    kind:       Literal["ratelimit"] = "ratelimit"
    exceeded:   bool = False
    blocked:    bool = False
    suspicious: bool = False
    remaining:  Optional[int] = None
    count:      Optional[int] = None
    limit:      Optional[int] = None
    retry_after:       Optional[int] = None   # seconds
    reset_time:        Optional[int] = None   # epoch ms
    over_limit_factor: Optional[float] = None
    approaching:       Optional[bool] = None
    user_id:    Optional[str] = None

    @property
    def is_suspicious(self) -> bool:
        return self.suspicious or self.exceeded


class SecurityEvent(Event):
    """A security incident (failed login, API abuse, ...). `category` is the event type."""
    kind:        Literal["security"] = "security"
    severity:    Severity = Severity.LOW
    description: str = ""
    user_id:     Optional[str] = None
    user_agent:  Optional[str] = None


AnyEvent = Annotated[Union[RateLimitEvent, SecurityEvent], Field(discriminator="kind")]
EVENT_ADAPTER: TypeAdapter = TypeAdapter(AnyEvent)


class SuspiciousActor(BaseModel):
    """Aggregate of suspicious/exceeded rate-limit events for one actor."""
    actor:         str
    count:         int
    recent_events: list[RateLimitEvent] = []


class Threat(BaseModel):
    """A pattern detected across several security events from one actor or user."""
    type:     str                         # brute_force_detected, mfa_abuse_detected, ...
    severity: Severity
    actor:    str
    user_id:  Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_event(self) -> SecurityEvent:
        return SecurityEvent(
            actor=self.actor,
            resource="threat-detector",
            method="DETECT",
            category=self.type,
            severity=self.severity,
            description=f"{self.type.replace('_', ' ')} from {self.actor}",
            user_id=self.user_id,
            metadata=self.metadata,
        )


class EventStats(BaseModel):
    """Security event counters over a time window."""
    total:       int = 0
    by_severity: dict[str, int] = Field(
        default_factory=lambda: {s.value: 0 for s in Severity}
    )
    by_type:     dict[str, int] = Field(default_factory=dict)


# ── Remediation ────────────────────────────────────────────────────────────────

class MetricType(str, Enum):
    API         = "api"
    RENDER      = "render"
    DATABASE    = "database"
    COMPUTATION = "computation"
    NETWORK     = "network"


class RemediationStrategy(str, Enum):
    CACHE           = "cache"
    THROTTLE        = "throttle"
    LAZY_LOAD       = "lazy_load"
    REDUCE_QUALITY  = "reduce_quality"
    CIRCUIT_BREAKER = "circuit_breaker"
    NONE            = "none"


class PerformanceIssue(BaseModel):
    """A measured operation that ran slower than its threshold."""
    type:      MetricType
    name:      str
    duration:  float = Field(ge=0)    # ms
    threshold: float = Field(gt=0)    # ms
    timestamp: Optional[int] = None   # epoch ms
    metadata:  dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.type.value}_{self.name}"

    @property
    def exceed_percentage(self) -> float:
        return (self.duration / self.threshold) * 100 - 100


class RemediationRule(BaseModel):
    id:        str
    pattern:   str                    # regex when `regex` is set, substring otherwise
    regex:     bool = True
    type:      MetricType
    strategy:  RemediationStrategy
    threshold: float                  # % above the issue threshold needed to trigger
    max_attempts:    int = Field(ge=1)
    cooldown_period: float = Field(ge=0)   # seconds
    enabled:   bool = True
    metadata:  dict[str, Any] = Field(default_factory=dict)


class RemediationAttempt(BaseModel):
    issue_key:         str
    rule_id:           str
    strategy:          RemediationStrategy
    attempt_count:     int = 1
    last_attempt_time: float            # epoch seconds
    successful:        bool = False


class RemediationNotice(BaseModel):
    """Payload of the `remediation_attempt` notification."""
    issue:         PerformanceIssue
    rule:          RemediationRule
    success:       bool
    attempt_count: int


class RemediationStats(BaseModel):
    total_attempts:      int = 0
    successful_attempts: int = 0
    by_strategy:         dict[str, int] = Field(default_factory=dict)
    by_type:             dict[str, int] = Field(default_factory=dict)
