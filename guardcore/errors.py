"""Typed failure taxonomy for the moderation core."""
from __future__ import annotations


class GuardcoreError(RuntimeError):
    """Base error for every failure raised by guardcore."""


class ClassifierFailure(GuardcoreError):
    """Raised when a classifier layer errored or returned nothing usable."""

    def __init__(self, message: str, *, layer: str | None = None) -> None:
        super().__init__(message)
        self.layer = layer


class GatewayTimeout(ClassifierFailure, TimeoutError):
    """Raised when the inference backend did not answer within the hard timeout."""


class CircuitOpenError(ClassifierFailure):
    """Raised without touching the backend while the circuit breaker is open."""

    def __init__(self, name: str, retry_after: float) -> None:
        super().__init__(f"circuit '{name}' is open, retry in {retry_after:.1f}s")
        self.name = name
        self.retry_after = retry_after


class PersistenceFailure(GuardcoreError):
    """Raised when a reputation, policy or violation store is unreachable."""


class InvariantViolation(GuardcoreError):
    """Describes a rejected update that would break a reputation invariant.

    The reputation store builds and logs these at its boundary; they are not
    raised to callers.
    """

    def __init__(self, user_id: str, scope_id: str, reason: str) -> None:
        super().__init__(f"{user_id}@{scope_id}: {reason}")
        self.user_id = user_id
        self.scope_id = scope_id
        self.reason = reason


__all__ = [
    "CircuitOpenError",
    "ClassifierFailure",
    "GatewayTimeout",
    "GuardcoreError",
    "InvariantViolation",
    "PersistenceFailure",
]
