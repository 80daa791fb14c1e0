"""Global core-violation ledger with a rolling penalty score."""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .models import GLOBAL_SCOPE, ActionDecision, ModerationAction, utcnow
from .reputation import ReputationStore
from .storage import CoreViolationRepository, InMemoryCoreViolationRepository

logger = logging.getLogger(__name__)


class CoreViolationType(str, Enum):
    PROFANITY = "profanity"
    HATE_SPEECH = "hate_speech"
    HARASSMENT = "harassment"
    SPAM = "spam"
    SCAM = "scam"
    EXPLICIT_CONTENT = "explicit_content"
    DOXXING = "doxxing"
    RAIDING = "raiding"
    IMPERSONATION = "impersonation"


class CoreSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


def _row(low: float, medium: float, high: float, critical: float) -> Dict[CoreSeverity, float]:
    return {
        CoreSeverity.LOW: low,
        CoreSeverity.MEDIUM: medium,
        CoreSeverity.HIGH: high,
        CoreSeverity.CRITICAL: critical,
    }


PENALTY_TABLE: Mapping[CoreViolationType, Mapping[CoreSeverity, float]] = {
    CoreViolationType.PROFANITY: _row(5, 10, 20, 30),
    CoreViolationType.HATE_SPEECH: _row(15, 30, 50, 80),
    CoreViolationType.HARASSMENT: _row(10, 25, 40, 60),
    CoreViolationType.SPAM: _row(3, 7, 15, 25),
    CoreViolationType.SCAM: _row(20, 40, 60, 90),
    CoreViolationType.EXPLICIT_CONTENT: _row(15, 30, 50, 70),
    CoreViolationType.DOXXING: _row(40, 60, 80, 100),
    CoreViolationType.RAIDING: _row(30, 50, 70, 90),
    CoreViolationType.IMPERSONATION: _row(10, 20, 35, 50),
}

SEVERITY_ACTIONS: Mapping[CoreSeverity, Tuple[ModerationAction, Optional[timedelta]]] = {
    CoreSeverity.CRITICAL: (ModerationAction.BAN, None),
    CoreSeverity.HIGH: (ModerationAction.TIMEOUT, timedelta(hours=1)),
    CoreSeverity.MEDIUM: (ModerationAction.TIMEOUT, timedelta(minutes=10)),
    CoreSeverity.LOW: (ModerationAction.NONE, None),
}

RECENT_LIMIT = 50


@dataclass(frozen=True)
class CoreViolation:
    user_id: str
    scope_id: str
    type: CoreViolationType
    severity: CoreSeverity
    confidence: float
    penalty: float
    timestamp: datetime
    evidence: Optional[str] = None
    reasoning: Optional[str] = None

    def as_dict(self) -> dict[str, object]:
        return {
            "user_id": self.user_id,
            "scope_id": self.scope_id,
            "type": self.type.value,
            "severity": self.severity.value,
            "confidence": round(self.confidence, 2),
            "penalty": self.penalty,
            "timestamp": self.timestamp.isoformat(),
            "evidence": self.evidence,
            "reasoning": self.reasoning,
        }


@dataclass(frozen=True)
class CoreViolationSummary:
    user_id: str
    total: int
    total_penalty: float
    global_score: float
    by_type: Dict[str, int] = field(default_factory=dict)
    recent: Tuple[CoreViolation, ...] = ()

    def as_dict(self) -> dict[str, object]:
        return {
            "user_id": self.user_id,
            "total": self.total,
            "total_penalty": self.total_penalty,
            "global_score": self.global_score,
            "by_type": dict(self.by_type),
            "recent": [violation.as_dict() for violation in self.recent],
        }


class CoreViolationLedger:
    """Cross-community ledger; only core detections write here.

    The global score is ``max(0, 100 - sum of penalties in the window)`` and is
    mirrored into the user's ``"global"`` reputation record after every write.
    """

    def __init__(
        self,
        store: ReputationStore,
        repository: Optional[CoreViolationRepository] = None,
        *,
        window_days: int = 90,
        min_confidence: float = 0.7,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._repository = repository or InMemoryCoreViolationRepository()
        self._window = timedelta(days=window_days)
        self._min_confidence = min_confidence
        self._now = now

    @classmethod
    def from_settings(
        cls,
        settings,
        store: ReputationStore,
        repository: Optional[CoreViolationRepository] = None,
    ) -> "CoreViolationLedger":
        return cls(
            store,
            repository,
            window_days=settings.core_violation_window_days,
            min_confidence=settings.core_violation_min_confidence,
        )

    @property
    def repository(self) -> CoreViolationRepository:
        return self._repository

    async def record(
        self,
        user_id: str,
        scope_id: str,
        violation_type: CoreViolationType | str,
        severity: CoreSeverity | str,
        confidence: float,
        evidence: Optional[str] = None,
        reasoning: Optional[str] = None,
    ) -> Optional[CoreViolation]:
        """Append a detection and charge its penalty to the global record; ``None`` if ignored."""

        violation_type = CoreViolationType(violation_type)
        severity = CoreSeverity(severity)
        if confidence < self._min_confidence:
            logger.debug(
                "Ignoring %s detection for %s (confidence %.2f)", violation_type.value, user_id, confidence
            )
            return None

        violation = CoreViolation(
            user_id=user_id,
            scope_id=scope_id,
            type=violation_type,
            severity=severity,
            confidence=confidence,
            penalty=PENALTY_TABLE[violation_type][severity],
            timestamp=self._now(),
            evidence=evidence,
            reasoning=reasoning,
        )
        self._repository.append(violation)

        # The global record only ever moves down here; the ledger keeps its own score.
        await self._store.apply_delta(
            user_id,
            GLOBAL_SCOPE,
            -violation.penalty,
            f"Core violation: {violation_type.value} ({severity.value})",
            category=violation_type.value,
            context=scope_id,
        )
        score = self.global_score(user_id)
        logger.info(
            "Core violation %s/%s for %s in %s, penalty %s, global score %s",
            violation_type.value,
            severity.value,
            user_id,
            scope_id,
            violation.penalty,
            score,
        )
        return violation

    def global_score(self, user_id: str) -> float:
        penalties = sum(violation.penalty for violation in self._recent(user_id))
        return max(0.0, 100.0 - penalties)

    def summary(self, user_id: str) -> CoreViolationSummary:
        violations = self._recent(user_id)
        by_type = Counter(violation.type.value for violation in violations)
        return CoreViolationSummary(
            user_id=user_id,
            total=len(violations),
            total_penalty=sum(violation.penalty for violation in violations),
            global_score=self.global_score(user_id),
            by_type=dict(by_type),
            recent=tuple(violations[:RECENT_LIMIT]),
        )

    def has_category(self, user_id: str, violation_type: CoreViolationType | str) -> bool:
        violation_type = CoreViolationType(violation_type)
        return any(violation.type is violation_type for violation in self._repository.for_user(user_id))

    def action_for(self, severity: CoreSeverity | str) -> ActionDecision:
        severity = CoreSeverity(severity)
        action, duration = SEVERITY_ACTIONS[severity]
        return ActionDecision(
            action=action,
            reason=f"Core violation ({severity.value})",
            duration=duration,
            source="core",
        )

    def _recent(self, user_id: str) -> List[CoreViolation]:
        return self._repository.for_user(user_id, since=self._now() - self._window)


__all__ = [
    "CoreSeverity",
    "CoreViolation",
    "CoreViolationLedger",
    "CoreViolationSummary",
    "CoreViolationType",
    "PENALTY_TABLE",
]
