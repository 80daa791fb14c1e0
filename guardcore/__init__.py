"""guardcore exports."""

from .config import Settings, configure_logging, get_settings
from .engine import ModerationDecision, ModerationEngine, ModerationRequest
from .errors import (
    CircuitOpenError,
    ClassifierFailure,
    GatewayTimeout,
    GuardcoreError,
    InvariantViolation,
    PersistenceFailure,
)
from .fusion import ThreatAggregator
from .gateway import (
    CircuitBreaker,
    CircuitState,
    HttpInferenceBackend,
    InferenceRequest,
    ResilienceGateway,
    RetryPolicy,
)
from .models import (
    ActionDecision,
    AggregatedThreatResult,
    ModerationAction,
    PolicyAction,
    PolicyCondition,
    PolicyContext,
    PolicyDefinition,
    PolicyEscalation,
    ReputationLevel,
    ReputationRecord,
    ThreatLevel,
)
from .policy import PolicyEngine, default_policies, resolve_action
from .reputation import ReputationStore
from .signals import GatewayClassifier, SignalProviders, UserProfile, gateway_providers
from .violations import CoreSeverity, CoreViolationLedger, CoreViolationType

__all__ = [
    "ActionDecision",
    "AggregatedThreatResult",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "ClassifierFailure",
    "CoreSeverity",
    "CoreViolationLedger",
    "CoreViolationType",
    "GatewayClassifier",
    "GatewayTimeout",
    "GuardcoreError",
    "HttpInferenceBackend",
    "InferenceRequest",
    "InvariantViolation",
    "ModerationAction",
    "ModerationDecision",
    "ModerationEngine",
    "ModerationRequest",
    "PersistenceFailure",
    "PolicyAction",
    "PolicyCondition",
    "PolicyContext",
    "PolicyDefinition",
    "PolicyEngine",
    "PolicyEscalation",
    "ReputationLevel",
    "ReputationRecord",
    "ReputationStore",
    "ResilienceGateway",
    "RetryPolicy",
    "Settings",
    "SignalProviders",
    "ThreatAggregator",
    "ThreatLevel",
    "UserProfile",
    "configure_logging",
    "default_policies",
    "gateway_providers",
    "get_settings",
    "resolve_action",
]
