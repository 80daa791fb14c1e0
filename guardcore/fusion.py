"""Threat fusion: staged classifier pipeline for a single message."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from .errors import ClassifierFailure
from .models import (
    AggregatedThreatResult,
    ModerationAction,
    ReputationRecord,
    Threat,
    ThreatLevel,
    ThreatModifiers,
    is_scam_category,
)
from .signals import (
    ContentResult,
    ContextResult,
    FastClassification,
    FastResult,
    IntentResult,
    SignalProviders,
    UserProfile,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLEAN_EXIT_CONFIDENCE = 0.8
IMMEDIATE_THRESHOLDS = {
    FastClassification.SCAM: 0.8,
    FastClassification.TOXIC: 0.9,
}
INTENT_TRIGGERS = frozenset(
    {
        FastClassification.SUSPICIOUS,
        FastClassification.SPAM,
        FastClassification.TOXIC,
        FastClassification.UNCERTAIN,
    }
)

# Maximum severity per source on the shared 0-10 scale.
FAST_WEIGHT = 8.0
MANIPULATION_WEIGHT = 7.0
SCAM_WEIGHT = 10.0
PHISHING_WEIGHT = 9.0

SCAM_BAN_CONFIDENCE = 0.75
PHISHING_BAN_CONFIDENCE = 0.7

ANALYSIS_FAILED = "Analysis failed"


class ThreatAggregator:
    """Runs the classifier layers in order and fuses what they report.

    The fast layer decides how much work is done: a confident clean verdict
    or a confident scam/toxic verdict ends the pipeline immediately. Otherwise
    intent and content layers run on demand, the context layer always runs,
    and every non-clean signal becomes a :class:`Threat` that feeds the score.
    """

    def __init__(
        self,
        providers: SignalProviders,
        *,
        layer_timeout: float = 30.0,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._providers = providers
        self._layer_timeout = layer_timeout
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, providers: SignalProviders) -> "ThreatAggregator":
        return cls(providers, layer_timeout=settings.layer_timeout)

    async def aggregate(
        self,
        content: str,
        profile: Optional[UserProfile] = None,
        reputation: Optional[ReputationRecord] = None,
    ) -> AggregatedThreatResult:
        """Return the fused judgment for ``content``; never raises."""

        started = self._clock()
        timings: Dict[str, float] = {}
        try:
            return await self._run(content, profile, reputation, started, timings)
        except Exception:  # fail-open
            logger.exception("Threat aggregation failed")
            return AggregatedThreatResult(
                threat_level=ThreatLevel.NONE,
                threat_score=0.0,
                confidence=0.0,
                recommended_action=ModerationAction.NONE,
                action_reason=ANALYSIS_FAILED,
                processing_time_ms=self._elapsed_ms(started),
                layer_timings_ms=dict(timings),
            )

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    async def _run(
        self,
        content: str,
        profile: Optional[UserProfile],
        reputation: Optional[ReputationRecord],
        started: float,
        timings: Dict[str, float],
    ) -> AggregatedThreatResult:
        fast = await self._call("fast", self._providers.fast.analyze(content, profile, reputation), timings)
        layers: Dict[str, object] = {"fast": fast}

        if fast.classification is FastClassification.CLEAN and fast.confidence >= CLEAN_EXIT_CONFIDENCE:
            logger.debug("Fast layer cleared message (%.2f)", fast.confidence)
            return AggregatedThreatResult(
                threat_level=ThreatLevel.NONE,
                threat_score=0.0,
                confidence=round(fast.confidence, 2),
                recommended_action=ModerationAction.NONE,
                action_reason="Fast layer: clean",
                layers=layers,
                processing_time_ms=self._elapsed_ms(started),
                layer_timings_ms=dict(timings),
            )

        threshold = IMMEDIATE_THRESHOLDS.get(fast.classification)
        if threshold is not None and fast.confidence >= threshold:
            return self._immediate(fast, layers, started, timings)

        intent: Optional[IntentResult] = None
        if fast.classification in INTENT_TRIGGERS:
            intent = await self._optional("intent", self._providers.intent.analyze(content, profile, reputation), timings)
            if intent is not None:
                layers["intent"] = intent

        content_result: Optional[ContentResult] = None
        manipulative = intent is not None and intent.manipulation.is_manipulative
        if manipulative or fast.classification is FastClassification.SCAM:
            content_result = await self._optional(
                "content", self._providers.content.analyze(content, profile, reputation), timings
            )
            if content_result is not None:
                layers["content"] = content_result

        context = await self._optional("context", self._providers.context.analyze(content, profile, reputation), timings)
        if context is not None:
            layers["context"] = context

        threats = _collect_threats(fast, intent, content_result)
        modifiers = _modifiers(profile, reputation, context)

        score = 0.0
        if threats:
            score = sum(threat.severity * threat.confidence for threat in threats) / len(threats) * 10
        score = max(0.0, min(100.0, score + modifiers.total))
        level = ThreatLevel.from_score(score)
        action, reason = _determine_action(level, score, threats)

        confidence = 0.5
        if threats:
            confidence = sum(threat.confidence for threat in threats) / len(threats)

        return AggregatedThreatResult(
            threat_level=level,
            threat_score=round(score, 1),
            confidence=round(confidence, 2),
            recommended_action=action,
            action_reason=reason,
            threats=tuple(threats),
            modifiers=modifiers,
            layers=layers,
            processing_time_ms=self._elapsed_ms(started),
            layer_timings_ms=dict(timings),
        )

    def _immediate(
        self,
        fast: FastResult,
        layers: Dict[str, object],
        started: float,
        timings: Dict[str, float],
    ) -> AggregatedThreatResult:
        kind = fast.classification.value
        action = ModerationAction.BAN if fast.classification is FastClassification.SCAM else ModerationAction.TIMEOUT
        threat = Threat(type=kind, severity=fast.confidence * 10, source="fast", confidence=fast.confidence)
        logger.info("Immediate %s on fast-layer %s (%.2f)", action.value, kind, fast.confidence)
        return AggregatedThreatResult(
            threat_level=ThreatLevel.CRITICAL,
            threat_score=round(fast.confidence * 100, 1),
            confidence=round(fast.confidence, 2),
            recommended_action=action,
            action_reason=f"Immediate action: {kind}" + (f" ({fast.reason})" if fast.reason else ""),
            threats=(threat,),
            layers=layers,
            processing_time_ms=self._elapsed_ms(started),
            layer_timings_ms=dict(timings),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _call(self, name: str, call: Awaitable[T], timings: Dict[str, float]) -> T:
        started = self._clock()
        try:
            return await asyncio.wait_for(call, timeout=self._layer_timeout)
        finally:
            timings[name] = self._elapsed_ms(started)

    async def _optional(self, name: str, call: Awaitable[T], timings: Dict[str, float]) -> Optional[T]:
        try:
            return await self._call(name, call, timings)
        except (ClassifierFailure, asyncio.TimeoutError) as exc:
            logger.warning("%s layer unavailable, continuing without it: %s", name, exc)
            return None

    def _elapsed_ms(self, started: float) -> float:
        return (self._clock() - started) * 1000.0


def _collect_threats(
    fast: FastResult,
    intent: Optional[IntentResult],
    content: Optional[ContentResult],
) -> List[Threat]:
    threats: List[Threat] = []
    if fast.classification not in (FastClassification.CLEAN, FastClassification.UNCERTAIN):
        threats.append(
            Threat(
                type=fast.classification.value,
                severity=fast.confidence * FAST_WEIGHT,
                source="fast",
                confidence=fast.confidence,
            )
        )
    if intent is not None and intent.manipulation.is_manipulative:
        signal = intent.manipulation
        threats.append(
            Threat(
                type="manipulation",
                severity=signal.confidence * MANIPULATION_WEIGHT,
                source="intent",
                confidence=signal.confidence,
            )
        )
    if content is not None:
        if content.scam.is_scam:
            threats.append(
                Threat(
                    type=f"scam_{content.scam.scam_type}",
                    severity=content.scam.confidence * SCAM_WEIGHT,
                    source="content",
                    confidence=content.scam.confidence,
                )
            )
        if content.phishing.is_phishing:
            threats.append(
                Threat(
                    type="phishing",
                    severity=content.phishing.confidence * PHISHING_WEIGHT,
                    source="content",
                    confidence=content.phishing.confidence,
                )
            )
    return threats


def _modifiers(
    profile: Optional[UserProfile],
    reputation: Optional[ReputationRecord],
    context: Optional[ContextResult],
) -> ThreatModifiers:
    trust = 0.0
    if reputation is not None:
        score = reputation.score
        if score >= 80:
            trust = -10.0
        elif score >= 60:
            trust = -5.0
        elif score <= 20:
            trust = 15.0
        elif score <= 40:
            trust = 10.0

    profile_risk = 0.0
    if profile is not None:
        indicators = profile.risk_indicators
        profile_risk = (
            indicators.deception * 15
            + indicators.manipulation * 12
            + indicators.predatory_behavior * 20
            + indicators.impulsivity * 8
        )

    provocation = 0.0
    context_modifier = 0.0
    if context is not None:
        if context.provocation.was_provoked:
            provocation = -context.provocation.severity * 15
        if context.conversation.is_escalating:
            context_modifier += 5.0
        if context.conversation.mood == "hostile":
            context_modifier += 5.0

    return ThreatModifiers(
        trust_score=trust,
        profile_risk=profile_risk,
        provocation=provocation,
        context=context_modifier,
    )


def _determine_action(
    level: ThreatLevel, score: float, threats: Sequence[Threat]
) -> Tuple[ModerationAction, str]:
    if any(is_scam_category(threat.type) and threat.confidence >= SCAM_BAN_CONFIDENCE for threat in threats):
        return ModerationAction.BAN, "High-confidence scam detected"
    if any(threat.type == "phishing" and threat.confidence >= PHISHING_BAN_CONFIDENCE for threat in threats):
        return ModerationAction.BAN, "Phishing attempt detected"

    if level is ThreatLevel.CRITICAL:
        return ModerationAction.TIMEOUT, f"Critical threat (score: {score:.0f})"
    if level is ThreatLevel.HIGH:
        return ModerationAction.TIMEOUT, f"High threat (score: {score:.0f})"
    if level is ThreatLevel.MEDIUM:
        return ModerationAction.WARN, f"Medium threat (score: {score:.0f})"
    if level is ThreatLevel.LOW:
        return ModerationAction.DELETE, f"Low threat (score: {score:.0f})"
    return ModerationAction.NONE, "No significant threats detected"


__all__ = ["ANALYSIS_FAILED", "ThreatAggregator"]
