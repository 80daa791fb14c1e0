"""Shared value types for the moderation core."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, Mapping, Optional, Tuple


GLOBAL_SCOPE = "global"


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class ThreatLevel(str, Enum):
    """Ordered threat level: none < low < medium < high < critical."""

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    @classmethod
    def from_score(cls, score: float) -> "ThreatLevel":
        if score >= 80:
            return cls.CRITICAL
        if score >= 60:
            return cls.HIGH
        if score >= 40:
            return cls.MEDIUM
        if score >= 20:
            return cls.LOW
        return cls.NONE


_LEVEL_RANK = {
    ThreatLevel.NONE: 0,
    ThreatLevel.LOW: 1,
    ThreatLevel.MEDIUM: 2,
    ThreatLevel.HIGH: 3,
    ThreatLevel.CRITICAL: 4,
}


class ModerationAction(str, Enum):
    """Ordered moderation action: none < delete < warn < timeout < kick < ban."""

    NONE = "none"
    DELETE = "delete"
    WARN = "warn"
    TIMEOUT = "timeout"
    KICK = "kick"
    BAN = "ban"

    @property
    def severity(self) -> int:
        return _ACTION_SEVERITY[self]

    def outranks(self, other: "ModerationAction") -> bool:
        return self.severity > other.severity


_ACTION_SEVERITY = {
    ModerationAction.NONE: 0,
    ModerationAction.DELETE: 1,
    ModerationAction.WARN: 2,
    ModerationAction.TIMEOUT: 3,
    ModerationAction.KICK: 4,
    ModerationAction.BAN: 5,
}


def is_scam_category(category: Optional[str]) -> bool:
    """``scam`` itself or any ``scam_<kind>`` subtype."""

    if not category:
        return False
    return category == "scam" or category.startswith("scam_")


def most_severe(actions: Iterable[ModerationAction]) -> ModerationAction:
    """Return the most severe action, ``NONE`` for an empty iterable."""

    result = ModerationAction.NONE
    for action in actions:
        if action.outranks(result):
            result = action
    return result


class ReputationLevel(str, Enum):
    EXEMPLARY = "exemplary"
    TRUSTED = "trusted"
    NEUTRAL = "neutral"
    CAUTIOUS = "cautious"
    DANGEROUS = "dangerous"

    @classmethod
    def from_score(cls, score: float) -> "ReputationLevel":
        if score >= 85:
            return cls.EXEMPLARY
        if score >= 65:
            return cls.TRUSTED
        if score >= 35:
            return cls.NEUTRAL
        if score >= 15:
            return cls.CAUTIOUS
        return cls.DANGEROUS


# ---------------------------------------------------------------------------
# Threat fusion
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Threat:
    """Single threat contributed by one classifier layer."""

    type: str
    severity: float
    source: str
    confidence: float

    def as_dict(self) -> dict[str, object]:
        return {
            "type": self.type,
            "severity": round(self.severity, 2),
            "source": self.source,
            "confidence": round(self.confidence, 2),
        }


@dataclass(frozen=True)
class ThreatModifiers:
    """Additive adjustments applied on top of the fused threat score."""

    trust_score: float = 0.0
    profile_risk: float = 0.0
    provocation: float = 0.0
    context: float = 0.0

    @property
    def total(self) -> float:
        return self.trust_score + self.profile_risk + self.provocation + self.context

    def as_dict(self) -> dict[str, float]:
        return {
            "trust_score": self.trust_score,
            "profile_risk": round(self.profile_risk, 2),
            "provocation": round(self.provocation, 2),
            "context": self.context,
            "total": round(self.total, 2),
        }


@dataclass(frozen=True)
class AggregatedThreatResult:
    """Unified threat judgment for one analyzed message."""

    threat_level: ThreatLevel
    threat_score: float
    confidence: float
    recommended_action: ModerationAction
    action_reason: str
    threats: Tuple[Threat, ...] = ()
    modifiers: ThreatModifiers = field(default_factory=ThreatModifiers)
    layers: Mapping[str, object] = field(default_factory=dict)
    processing_time_ms: float = 0.0
    layer_timings_ms: Mapping[str, float] = field(default_factory=dict)

    @property
    def primary_threat(self) -> Optional[Threat]:
        if not self.threats:
            return None
        return max(self.threats, key=lambda threat: threat.severity * threat.confidence)

    def as_dict(self) -> dict[str, object]:
        return {
            "threat_level": self.threat_level.value,
            "threat_score": self.threat_score,
            "confidence": self.confidence,
            "recommended_action": self.recommended_action.value,
            "action_reason": self.action_reason,
            "threats": [threat.as_dict() for threat in self.threats],
            "modifiers": self.modifiers.as_dict(),
            "layers": sorted(self.layers),
            "processing_time_ms": round(self.processing_time_ms, 2),
            "layer_timings_ms": {name: round(value, 2) for name, value in self.layer_timings_ms.items()},
        }


# ---------------------------------------------------------------------------
# Reputation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReputationEvent:
    """Signed score change kept in a record's history."""

    timestamp: datetime
    delta: float
    reason: str
    category: Optional[str] = None
    context: Optional[str] = None

    def as_dict(self) -> dict[str, object]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "delta": self.delta,
            "reason": self.reason,
            "category": self.category,
            "context": self.context,
        }


@dataclass(frozen=True)
class ReputationRecord:
    """Trust standing of one user inside one scope."""

    user_id: str
    scope_id: str
    score: float = 50.0
    permanent_zero: bool = False
    history: Tuple[ReputationEvent, ...] = ()
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.user_id, self.scope_id)

    @property
    def level(self) -> ReputationLevel:
        return ReputationLevel.from_score(self.score)

    def has_category(self, category: str) -> bool:
        return any(event.category == category for event in self.history)

    def as_dict(self) -> dict[str, object]:
        return {
            "user_id": self.user_id,
            "scope_id": self.scope_id,
            "score": self.score,
            "level": self.level.value,
            "permanent_zero": self.permanent_zero,
            "history": [event.as_dict() for event in self.history],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class ReputationChange:
    """Notification delivered to reputation subscribers."""

    user_id: str
    scope_id: str
    old_score: float
    new_score: float
    delta: float
    reason: str
    level: ReputationLevel
    timestamp: datetime


@dataclass(frozen=True)
class BehaviorSignals:
    """Current-message behaviour used for redemption and trust escalation."""

    toxicity: float = 0.0
    manipulation: float = 0.0
    sentiment: str = "neutral"
    is_helpful: bool = False


@dataclass(frozen=True)
class RedemptionResult:
    granted: bool
    points: int
    reason: str

    def as_dict(self) -> dict[str, object]:
        return {"granted": self.granted, "points": self.points, "reason": self.reason}


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PolicyCondition:
    """When a policy fires: ``occurrences`` of ``category`` inside ``time_window``."""

    category: str
    occurrences: int
    time_window: timedelta
    channel_ids: Tuple[str, ...] = ()
    channel_types: Tuple[str, ...] = ()

    def matches(self, category: str, context: "PolicyContext") -> bool:
        if self.category != category:
            return False
        if self.channel_ids and context.channel_id not in self.channel_ids:
            return False
        if self.channel_types and context.channel_type not in self.channel_types:
            return False
        return True

    def as_dict(self) -> dict[str, object]:
        return {
            "category": self.category,
            "occurrences": self.occurrences,
            "time_window_ms": int(self.time_window.total_seconds() * 1000),
            "channel_ids": list(self.channel_ids),
            "channel_types": list(self.channel_types),
        }


@dataclass(frozen=True)
class PolicyAction:
    type: ModerationAction
    reason: str
    duration: Optional[timedelta] = None
    notify_moderators: bool = False

    def as_dict(self) -> dict[str, object]:
        return {
            "type": self.type.value,
            "reason": self.reason,
            "duration_ms": int(self.duration.total_seconds() * 1000) if self.duration else None,
            "notify_moderators": self.notify_moderators,
        }


@dataclass(frozen=True)
class PolicyEscalation:
    after_occurrences: int
    action: PolicyAction

    def as_dict(self) -> dict[str, object]:
        return {"after_occurrences": self.after_occurrences, "action": self.action.as_dict()}


@dataclass(frozen=True)
class PolicyDefinition:
    """A community rule with its escalation ladder."""

    id: str
    scope_id: str
    name: str
    condition: PolicyCondition
    initial_action: PolicyAction
    escalations: Tuple[PolicyEscalation, ...] = ()
    description: str = ""
    enabled: bool = True
    created_by: str = "system"
    created_at: datetime = field(default_factory=utcnow)
    modified_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "scope_id": self.scope_id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "condition": self.condition.as_dict(),
            "initial_action": self.initial_action.as_dict(),
            "escalations": [escalation.as_dict() for escalation in self.escalations],
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "modified_at": self.modified_at.isoformat(),
        }


@dataclass(frozen=True)
class PolicyContext:
    """Contextual references for a policy check."""

    channel_id: Optional[str] = None
    channel_type: Optional[str] = None
    message_id: Optional[str] = None


@dataclass(frozen=True)
class ViolationEvent:
    """Append-only record used purely for windowed counting."""

    user_id: str
    policy_id: str
    category: str
    timestamp: datetime
    scope_id: str
    channel_id: Optional[str] = None
    message_id: Optional[str] = None

    def as_dict(self) -> dict[str, object]:
        return {
            "user_id": self.user_id,
            "policy_id": self.policy_id,
            "category": self.category,
            "timestamp": self.timestamp.isoformat(),
            "scope_id": self.scope_id,
            "channel_id": self.channel_id,
            "message_id": self.message_id,
        }


@dataclass(frozen=True)
class ActionDecision:
    """Authoritative output handed to the external actuator."""

    action: ModerationAction
    reason: str
    violation_count: int = 0
    policy: Optional[PolicyDefinition] = None
    duration: Optional[timedelta] = None
    source: str = "policy"

    def as_dict(self) -> dict[str, object]:
        return {
            "action": self.action.value,
            "reason": self.reason,
            "violation_count": self.violation_count,
            "policy_id": self.policy.id if self.policy is not None else None,
            "policy_name": self.policy.name if self.policy is not None else None,
            "duration_ms": int(self.duration.total_seconds() * 1000) if self.duration else None,
            "source": self.source,
        }


__all__ = [
    "ActionDecision",
    "AggregatedThreatResult",
    "BehaviorSignals",
    "GLOBAL_SCOPE",
    "ModerationAction",
    "PolicyAction",
    "PolicyCondition",
    "PolicyContext",
    "PolicyDefinition",
    "PolicyEscalation",
    "RedemptionResult",
    "ReputationChange",
    "ReputationEvent",
    "ReputationLevel",
    "ReputationRecord",
    "Threat",
    "ThreatLevel",
    "ThreatModifiers",
    "ViolationEvent",
    "is_scam_category",
    "most_severe",
    "utcnow",
]
