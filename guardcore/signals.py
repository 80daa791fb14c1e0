"""Signal provider contract: typed classifier layer results."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, Mapping, Optional, Protocol, Tuple, Type, TypeVar

from .gateway import InferenceRequest, ResilienceGateway
from .models import ReputationRecord


class FastClassification(str, Enum):
    CLEAN = "clean"
    SPAM = "spam"
    SCAM = "scam"
    TOXIC = "toxic"
    SUSPICIOUS = "suspicious"
    UNCERTAIN = "uncertain"

    @classmethod
    def parse(cls, value: object) -> "FastClassification":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNCERTAIN


@dataclass(frozen=True)
class RiskIndicators:
    deception: float = 0.0
    manipulation: float = 0.0
    predatory_behavior: float = 0.0
    impulsivity: float = 0.0


@dataclass(frozen=True)
class UserProfile:
    """Behavioural profile of the message author, built outside the core."""

    user_id: str
    risk_indicators: RiskIndicators = field(default_factory=RiskIndicators)

    def as_dict(self) -> dict[str, object]:
        indicators = self.risk_indicators
        return {
            "user_id": self.user_id,
            "risk_indicators": {
                "deception": indicators.deception,
                "manipulation": indicators.manipulation,
                "predatory_behavior": indicators.predatory_behavior,
                "impulsivity": indicators.impulsivity,
            },
        }


# ---------------------------------------------------------------------------
# Layer results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FastResult:
    """Pattern/heuristic layer output."""

    classification: FastClassification
    confidence: float
    reason: str = ""

    @property
    def uncertain(self) -> bool:
        return self.classification is FastClassification.UNCERTAIN

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "FastResult":
        confidence = _coerce_confidence(payload.get("confidence"))
        classification = FastClassification.parse(payload.get("classification"))
        if confidence is None:
            classification = FastClassification.UNCERTAIN
        return cls(
            classification=classification,
            confidence=confidence or 0.0,
            reason=str(payload.get("reason") or ""),
        )


@dataclass(frozen=True)
class ManipulationSignal:
    is_manipulative: bool = False
    confidence: float = 0.0
    tactics: Tuple[str, ...] = ()


@dataclass(frozen=True)
class IntentResult:
    """Intent/sentiment layer output."""

    manipulation: ManipulationSignal = field(default_factory=ManipulationSignal)
    toxicity: float = 0.0
    sentiment: str = "neutral"
    confidence: float = 0.0

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "IntentResult":
        manipulation = _ensure_mapping(payload.get("manipulation"))
        tactics = manipulation.get("tactics")
        return cls(
            manipulation=ManipulationSignal(
                is_manipulative=bool(manipulation.get("is_manipulative", False)),
                confidence=_coerce_confidence(manipulation.get("confidence")) or 0.0,
                tactics=tuple(str(item) for item in tactics) if isinstance(tactics, (list, tuple)) else (),
            ),
            toxicity=_coerce_confidence(payload.get("toxicity")) or 0.0,
            sentiment=str(payload.get("sentiment") or "neutral").lower(),
            confidence=_coerce_confidence(payload.get("confidence")) or 0.0,
        )


@dataclass(frozen=True)
class ScamSignal:
    is_scam: bool = False
    confidence: float = 0.0
    scam_type: str = "generic"


@dataclass(frozen=True)
class PhishingSignal:
    is_phishing: bool = False
    confidence: float = 0.0


@dataclass(frozen=True)
class ContentResult:
    """Deep-content layer output (scam and phishing analysis)."""

    scam: ScamSignal = field(default_factory=ScamSignal)
    phishing: PhishingSignal = field(default_factory=PhishingSignal)

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "ContentResult":
        scam = _ensure_mapping(payload.get("scam"))
        phishing = _ensure_mapping(payload.get("phishing"))
        return cls(
            scam=ScamSignal(
                is_scam=bool(scam.get("is_scam", False)),
                confidence=_coerce_confidence(scam.get("confidence")) or 0.0,
                scam_type=str(scam.get("scam_type") or "generic").lower(),
            ),
            phishing=PhishingSignal(
                is_phishing=bool(phishing.get("is_phishing", False)),
                confidence=_coerce_confidence(phishing.get("confidence")) or 0.0,
            ),
        )


@dataclass(frozen=True)
class ProvocationSignal:
    was_provoked: bool = False
    severity: float = 0.0


@dataclass(frozen=True)
class ConversationSignal:
    is_escalating: bool = False
    mood: str = "neutral"


@dataclass(frozen=True)
class ContextResult:
    """Conversational-context layer output (fairness signal)."""

    provocation: ProvocationSignal = field(default_factory=ProvocationSignal)
    conversation: ConversationSignal = field(default_factory=ConversationSignal)

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "ContextResult":
        provocation = _ensure_mapping(payload.get("provocation"))
        conversation = _ensure_mapping(payload.get("conversation"))
        return cls(
            provocation=ProvocationSignal(
                was_provoked=bool(provocation.get("was_provoked", False)),
                severity=_coerce_confidence(provocation.get("severity")) or 0.0,
            ),
            conversation=ConversationSignal(
                is_escalating=bool(conversation.get("is_escalating", False)),
                mood=str(conversation.get("mood") or "neutral").lower(),
            ),
        )


# ---------------------------------------------------------------------------
# Classifier contract
# ---------------------------------------------------------------------------

ResultT = TypeVar("ResultT", covariant=True)


class Classifier(Protocol[ResultT]):
    """One external classifier layer."""

    async def analyze(
        self,
        content: str,
        profile: Optional[UserProfile] = None,
        reputation: Optional[ReputationRecord] = None,
    ) -> ResultT:
        ...


@dataclass(frozen=True)
class SignalProviders:
    """The four layers the aggregator consults, in pipeline order."""

    fast: Classifier[FastResult]
    intent: Classifier[IntentResult]
    content: Classifier[ContentResult]
    context: Classifier[ContextResult]


PayloadResult = TypeVar("PayloadResult", FastResult, IntentResult, ContentResult, ContextResult)


class GatewayClassifier(Generic[PayloadResult]):
    """Classifier backed by the inference service through the resilience gateway."""

    def __init__(self, gateway: ResilienceGateway, layer: str, result_type: Type[PayloadResult]) -> None:
        self._gateway = gateway
        self._layer = layer
        self._result_type = result_type

    async def analyze(
        self,
        content: str,
        profile: Optional[UserProfile] = None,
        reputation: Optional[ReputationRecord] = None,
    ) -> PayloadResult:
        request = InferenceRequest(
            layer=self._layer,
            content=content,
            profile=profile.as_dict() if profile is not None else None,
            reputation={"score": reputation.score, "level": reputation.level.value} if reputation else None,
        )
        payload = await self._gateway.invoke(request)
        return self._result_type.from_payload(payload)


def gateway_providers(gateway: ResilienceGateway) -> SignalProviders:
    """Build the four layers against one shared gateway."""

    return SignalProviders(
        fast=GatewayClassifier(gateway, "fast", FastResult),
        intent=GatewayClassifier(gateway, "intent", IntentResult),
        content=GatewayClassifier(gateway, "content", ContentResult),
        context=GatewayClassifier(gateway, "context", ContextResult),
    )


def _ensure_mapping(value: object) -> Mapping[str, object]:
    if isinstance(value, Mapping):
        return value
    return {}


def _coerce_confidence(value: object) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    # Backends occasionally answer on a 0-100 scale.
    if number > 1.0:
        number /= 100.0
    return max(0.0, min(1.0, number))


__all__ = [
    "Classifier",
    "ContentResult",
    "ContextResult",
    "ConversationSignal",
    "FastClassification",
    "FastResult",
    "GatewayClassifier",
    "IntentResult",
    "ManipulationSignal",
    "PhishingSignal",
    "ProvocationSignal",
    "RiskIndicators",
    "ScamSignal",
    "SignalProviders",
    "UserProfile",
    "gateway_providers",
]
