"""guardcore orchestration engine."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from .config import Settings
from .errors import PersistenceFailure
from .fusion import ANALYSIS_FAILED, ThreatAggregator
from .gateway import ResilienceGateway
from .models import (
    ActionDecision,
    AggregatedThreatResult,
    BehaviorSignals,
    ModerationAction,
    PolicyContext,
    RedemptionResult,
    ReputationRecord,
    ThreatLevel,
    is_scam_category,
)
from .policy import PolicyEngine
from .reputation import ReputationStore
from .signals import (
    FastClassification,
    FastResult,
    IntentResult,
    RiskIndicators,
    SignalProviders,
    UserProfile,
    gateway_providers,
)
from .storage import InMemoryCoreViolationRepository, InMemoryViolationLog
from .violations import CoreSeverity, CoreViolationLedger, CoreViolationType

logger = logging.getLogger(__name__)

# Threat type -> community policy category.
POLICY_CATEGORIES = {
    "toxic": "toxicity",
    "spam": "spam",
    "phishing": "scam",
    "manipulation": "manipulation",
    "suspicious": "suspicious",
}

# Policy categories that are also tracked in the global ledger.
CORE_TYPES = {
    "spam": CoreViolationType.SPAM,
    "scam": CoreViolationType.SCAM,
}


@dataclass(frozen=True)
class ModerationRequest:
    """One message to judge."""

    scope_id: str
    user_id: str
    content: str
    profile: Optional[UserProfile] = None
    context: PolicyContext = field(default_factory=PolicyContext)
    is_helpful: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "ModerationRequest":
        try:
            scope_id = str(payload["scope_id"])
            user_id = str(payload["user_id"])
            content = str(payload["content"])
        except KeyError as exc:
            raise ValueError(f"missing field {exc.args[0]!r}") from exc

        profile = None
        indicators = payload.get("risk_indicators")
        if isinstance(indicators, Mapping):
            profile = UserProfile(
                user_id=user_id,
                risk_indicators=RiskIndicators(
                    deception=float(indicators.get("deception", 0.0)),
                    manipulation=float(indicators.get("manipulation", 0.0)),
                    predatory_behavior=float(indicators.get("predatory_behavior", 0.0)),
                    impulsivity=float(indicators.get("impulsivity", 0.0)),
                ),
            )

        def _optional(key: str) -> Optional[str]:
            value = payload.get(key)
            return str(value) if value is not None else None

        return cls(
            scope_id=scope_id,
            user_id=user_id,
            content=content,
            profile=profile,
            context=PolicyContext(
                channel_id=_optional("channel_id"),
                channel_type=_optional("channel_type"),
                message_id=_optional("message_id"),
            ),
            is_helpful=bool(payload.get("is_helpful", False)),
        )


@dataclass(frozen=True)
class ModerationDecision:
    """Full decision artifact returned by :class:`ModerationEngine`."""

    request: ModerationRequest
    threat: AggregatedThreatResult
    reputation: ReputationRecord
    decision: ActionDecision
    category: Optional[str] = None
    policy_decision: Optional[ActionDecision] = None
    redemption: Optional[RedemptionResult] = None

    @property
    def action(self) -> ModerationAction:
        return self.decision.action

    def as_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "scope_id": self.request.scope_id,
            "user_id": self.request.user_id,
            "category": self.category,
            "threat": self.threat.as_dict(),
            "reputation": {
                "score": self.reputation.score,
                "level": self.reputation.level.value,
                "permanent_zero": self.reputation.permanent_zero,
            },
            "decision": self.decision.as_dict(),
        }
        if self.policy_decision is not None:
            payload["policy_decision"] = self.policy_decision.as_dict()
        if self.redemption is not None:
            payload["redemption"] = self.redemption.as_dict()
        return payload


class ModerationEngine:
    """Aggregator -> reputation -> policy pipeline for a single message."""

    def __init__(
        self,
        aggregator: ThreatAggregator,
        reputation: ReputationStore,
        policies: PolicyEngine,
        *,
        ledger: Optional[CoreViolationLedger] = None,
        penalties: Optional[Mapping[str, float]] = None,
        permanent_zero_on_scam: bool = True,
    ) -> None:
        self.aggregator = aggregator
        self.reputation = reputation
        self.policies = policies
        self.ledger = ledger
        self._penalties = dict(penalties or {"critical": 15.0, "high": 10.0, "medium": 5.0, "low": 2.0})
        self._permanent_zero_on_scam = permanent_zero_on_scam

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        providers: Optional[SignalProviders] = None,
        gateway: Optional[ResilienceGateway] = None,
    ) -> "ModerationEngine":
        """Wire an engine with in-memory persistence from ``settings``."""

        if providers is None:
            providers = gateway_providers(gateway or ResilienceGateway.from_settings(settings))
        violation_log = InMemoryViolationLog()
        core_repository = InMemoryCoreViolationRepository()
        store = ReputationStore.from_settings(
            settings, violation_log=violation_log, core_violations=core_repository
        )
        return cls(
            ThreatAggregator.from_settings(settings, providers),
            store,
            PolicyEngine(violations=violation_log),
            ledger=CoreViolationLedger.from_settings(settings, store, core_repository),
            penalties=settings.reputation_penalties,
            permanent_zero_on_scam=settings.permanent_zero_on_scam,
        )

    async def process(self, request: ModerationRequest) -> ModerationDecision:
        scope_id, user_id = request.scope_id, request.user_id
        record = self.reputation.safe_get(user_id, scope_id)

        threat = await self.aggregator.aggregate(request.content, request.profile, record)
        aggregator_decision = ActionDecision(
            action=threat.recommended_action,
            reason=threat.action_reason,
            source="aggregator",
        )

        category = _policy_category(threat)
        policy_decision: Optional[ActionDecision] = None
        redemption: Optional[RedemptionResult] = None

        # Stores degrade independently; a reputation outage still runs the policy check.
        if threat.recommended_action is not ModerationAction.NONE:
            try:
                record = await self._penalize(request, threat, category, record)
            except PersistenceFailure as exc:
                logger.warning("Reputation unavailable for %s@%s, penalty skipped: %s", user_id, scope_id, exc)
            if category is not None:
                try:
                    policy_decision = await self.policies.check_policies(
                        scope_id, user_id, category, request.context
                    )
                except PersistenceFailure as exc:
                    logger.warning("Policies unavailable for %s, using aggregator decision: %s", scope_id, exc)
        elif threat.threat_level is ThreatLevel.NONE and threat.action_reason != ANALYSIS_FAILED:
            try:
                redemption = await self.reputation.check_redemption(
                    user_id, scope_id, _behavior(threat, request.is_helpful)
                )
                if redemption.granted:
                    record = self.reputation.safe_get(user_id, scope_id)
            except PersistenceFailure as exc:
                logger.warning("Reputation unavailable for %s@%s, redemption skipped: %s", user_id, scope_id, exc)

        final = aggregator_decision
        if policy_decision is not None and not aggregator_decision.action.outranks(policy_decision.action):
            final = policy_decision

        if final.action is not ModerationAction.NONE:
            logger.info(
                "%s for %s in %s (%s): %s", final.action.value, user_id, scope_id, final.source, final.reason
            )

        return ModerationDecision(
            request=request,
            threat=threat,
            reputation=record,
            decision=final,
            category=category,
            policy_decision=policy_decision,
            redemption=redemption,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _penalize(
        self,
        request: ModerationRequest,
        threat: AggregatedThreatResult,
        category: Optional[str],
        record: ReputationRecord,
    ) -> ReputationRecord:
        penalty = self._penalties.get(threat.threat_level.value, 0.0)
        if penalty:
            record = await self.reputation.apply_delta(
                request.user_id,
                request.scope_id,
                -penalty,
                threat.action_reason,
                category=category,
                context=request.context.message_id,
            )

        core_type = CORE_TYPES.get(category or "")
        if self.ledger is not None and core_type is not None:
            severity = CoreSeverity.LOW
            if threat.threat_level.rank > ThreatLevel.LOW.rank:
                severity = CoreSeverity(threat.threat_level.value)
            await self.ledger.record(
                request.user_id,
                request.scope_id,
                core_type,
                severity,
                threat.confidence,
                evidence=request.content,
                reasoning=threat.action_reason,
            )

        if self._permanent_zero_on_scam and _is_forced_scam_ban(threat):
            record = await self.reputation.set_permanent_zero(
                request.user_id,
                request.scope_id,
                threat.action_reason,
                evidence=request.content,
                category="scam",
            )
        return record


def _policy_category(threat: AggregatedThreatResult) -> Optional[str]:
    primary = threat.primary_threat
    if primary is None:
        return None
    if is_scam_category(primary.type):
        return "scam"
    return POLICY_CATEGORIES.get(primary.type, primary.type)


def _is_forced_scam_ban(threat: AggregatedThreatResult) -> bool:
    if threat.recommended_action is not ModerationAction.BAN:
        return False
    return any(is_scam_category(item.type) for item in threat.threats)


def _behavior(threat: AggregatedThreatResult, is_helpful: bool) -> BehaviorSignals:
    intent = threat.layers.get("intent")
    if isinstance(intent, IntentResult):
        manipulation = intent.manipulation.confidence if intent.manipulation.is_manipulative else 0.0
        return BehaviorSignals(
            toxicity=intent.toxicity,
            manipulation=manipulation,
            sentiment=intent.sentiment,
            is_helpful=is_helpful,
        )
    fast = threat.layers.get("fast")
    toxicity = 0.0
    if isinstance(fast, FastResult) and fast.classification is FastClassification.TOXIC:
        toxicity = fast.confidence
    return BehaviorSignals(toxicity=toxicity, is_helpful=is_helpful)


__all__ = ["ModerationDecision", "ModerationEngine", "ModerationRequest"]
