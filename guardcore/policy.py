"""Community policy rules, windowed violation counting and escalation ladders."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from .models import (
    ActionDecision,
    ModerationAction,
    PolicyAction,
    PolicyCondition,
    PolicyContext,
    PolicyDefinition,
    PolicyEscalation,
    ViolationEvent,
    utcnow,
)
from .storage import (
    InMemoryPolicyRepository,
    InMemoryViolationLog,
    KeyedLocks,
    PolicyRepository,
    ViolationLog,
)

logger = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = frozenset({"id", "created_at", "created_by"})


@dataclass(frozen=True)
class PolicyStats:
    total_policies: int
    enabled_policies: int
    total_violations: int

    def as_dict(self) -> dict[str, int]:
        return {
            "total_policies": self.total_policies,
            "enabled_policies": self.enabled_policies,
            "total_violations": self.total_violations,
        }


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def resolve_action(policy: PolicyDefinition, count: int) -> PolicyAction:
    """Return the action for ``count`` occurrences.

    Starts from ``initial_action`` and takes the escalation with the highest
    ``after_occurrences`` that ``count`` has reached.
    """

    for escalation in sorted(policy.escalations, key=lambda item: item.after_occurrences, reverse=True):
        if count >= escalation.after_occurrences:
            return escalation.action
    return policy.initial_action


def default_policies(scope_id: str, created_by: str = "system") -> List[PolicyDefinition]:
    """The three ladders every new community starts with."""

    anti_toxicity = _new_policy(
        scope_id,
        name="Anti-Toxicity",
        description="Escalating consequences for repeated toxic behavior",
        condition=PolicyCondition(category="toxicity", occurrences=3, time_window=timedelta(minutes=10)),
        initial_action=PolicyAction(
            type=ModerationAction.WARN,
            reason="Repeated toxic behavior detected. Please be respectful.",
        ),
        escalations=(
            PolicyEscalation(
                after_occurrences=5,
                action=PolicyAction(
                    type=ModerationAction.TIMEOUT,
                    reason="Continued toxic behavior. Timeout for 1 hour.",
                    duration=timedelta(hours=1),
                    notify_moderators=True,
                ),
            ),
            PolicyEscalation(
                after_occurrences=10,
                action=PolicyAction(
                    type=ModerationAction.BAN,
                    reason="Persistent toxic behavior. Banned.",
                    notify_moderators=True,
                ),
            ),
        ),
        created_by=created_by,
    )
    anti_spam = _new_policy(
        scope_id,
        name="Anti-Spam",
        description="Delete spam, time out repeat spammers",
        condition=PolicyCondition(category="spam", occurrences=2, time_window=timedelta(minutes=5)),
        initial_action=PolicyAction(type=ModerationAction.DELETE, reason="Spam detected. Message deleted."),
        escalations=(
            PolicyEscalation(
                after_occurrences=5,
                action=PolicyAction(
                    type=ModerationAction.TIMEOUT,
                    reason="Repeated spamming. Timeout for 30 minutes.",
                    duration=timedelta(minutes=30),
                    notify_moderators=True,
                ),
            ),
        ),
        created_by=created_by,
    )
    anti_scam = _new_policy(
        scope_id,
        name="Anti-Scam",
        description="Single strike: ban scammers and notify moderators",
        condition=PolicyCondition(category="scam", occurrences=1, time_window=timedelta(hours=24)),
        initial_action=PolicyAction(
            type=ModerationAction.BAN,
            reason="Scam attempt detected. Immediate ban.",
            notify_moderators=True,
        ),
        created_by=created_by,
    )
    return [anti_toxicity, anti_spam, anti_scam]


class PolicyEngine:
    """Evaluates community policies against the append-only violation log.

    Evaluation keeps no state of its own: every count is derived from
    :class:`ViolationEvent` records, and each check appends exactly one.
    """

    def __init__(
        self,
        policies: Optional[PolicyRepository] = None,
        violations: Optional[ViolationLog] = None,
        *,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._policies = policies or InMemoryPolicyRepository()
        self._violations = violations or InMemoryViolationLog()
        self._now = now
        self._locks = KeyedLocks()

    @property
    def violation_log(self) -> ViolationLog:
        return self._violations

    # ------------------------------------------------------------------
    # Policy management
    # ------------------------------------------------------------------
    def create_policy(
        self,
        scope_id: str,
        name: str,
        condition: PolicyCondition,
        initial_action: PolicyAction,
        *,
        escalations: Iterable[PolicyEscalation] = (),
        description: str = "",
        enabled: bool = True,
        created_by: str = "system",
    ) -> PolicyDefinition:
        timestamp = self._now()
        policy = _new_policy(
            scope_id,
            name=name,
            description=description,
            condition=condition,
            initial_action=initial_action,
            escalations=tuple(escalations),
            enabled=enabled,
            created_by=created_by,
            timestamp=timestamp,
        )
        _validate(policy)
        self._policies.save(policy)
        logger.info("Created policy %r (%s) for %s", policy.name, policy.id, scope_id)
        return policy

    def get_policy(self, policy_id: str) -> Optional[PolicyDefinition]:
        return self._policies.get(policy_id)

    def list_policies(self, scope_id: str, only_enabled: bool = False) -> List[PolicyDefinition]:
        policies = self._policies.list_scope(scope_id)
        if only_enabled:
            policies = [policy for policy in policies if policy.enabled]
        return sorted(policies, key=lambda policy: policy.created_at)

    def update_policy(self, policy_id: str, **changes: object) -> PolicyDefinition:
        policy = self._policies.get(policy_id)
        if policy is None:
            raise KeyError(policy_id)
        forbidden = _IMMUTABLE_FIELDS.intersection(changes)
        if forbidden:
            raise ValueError(f"cannot change {', '.join(sorted(forbidden))}")
        if "escalations" in changes:
            changes["escalations"] = tuple(changes["escalations"])  # type: ignore[arg-type]
        updated = replace(policy, modified_at=self._now(), **changes)
        _validate(updated)
        self._policies.save(updated)
        logger.info("Updated policy %s: %s", policy_id, ", ".join(sorted(changes)))
        return updated

    def set_enabled(self, policy_id: str, enabled: bool) -> PolicyDefinition:
        return self.update_policy(policy_id, enabled=enabled)

    def delete_policy(self, policy_id: str) -> bool:
        deleted = self._policies.delete(policy_id)
        if deleted:
            logger.info("Deleted policy %s", policy_id)
        return deleted

    def install_default_policies(self, scope_id: str, created_by: str = "system") -> List[PolicyDefinition]:
        installed = []
        for policy in default_policies(scope_id, created_by):
            installed.append(
                self.create_policy(
                    scope_id,
                    policy.name,
                    policy.condition,
                    policy.initial_action,
                    escalations=policy.escalations,
                    description=policy.description,
                    created_by=created_by,
                )
            )
        logger.info("Installed %s default policies for %s", len(installed), scope_id)
        return installed

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------
    async def check_policies(
        self,
        scope_id: str,
        user_id: str,
        category: str,
        context: Optional[PolicyContext] = None,
    ) -> Optional[ActionDecision]:
        """Count this occurrence against every matching policy.

        Returns the most severe triggered decision (earlier policies win
        ties), or ``None`` when no policy reached its threshold.
        """

        context = context or PolicyContext()
        async with self._locks.lock((scope_id, user_id, category)):
            candidates = [
                policy
                for policy in self.list_policies(scope_id, only_enabled=True)
                if policy.condition.matches(category, context)
            ]
            if not candidates:
                return None

            now = self._now()
            best: Optional[Tuple[PolicyDefinition, PolicyAction, int]] = None
            for policy in candidates:
                count = self._prior_count(scope_id, user_id, policy, now) + 1
                if count < policy.condition.occurrences:
                    continue
                action = resolve_action(policy, count)
                if best is None or action.type.outranks(best[1].type):
                    best = (policy, action, count)

            attributed = best[0] if best is not None else candidates[0]
            self.record_violation(
                ViolationEvent(
                    user_id=user_id,
                    policy_id=attributed.id,
                    category=category,
                    timestamp=now,
                    scope_id=scope_id,
                    channel_id=context.channel_id,
                    message_id=context.message_id,
                )
            )

        if best is None:
            return None
        policy, action, count = best
        logger.info(
            "Policy %r triggered for %s in %s: %s violations -> %s",
            policy.name,
            user_id,
            scope_id,
            count,
            action.type.value,
        )
        return ActionDecision(
            action=action.type,
            reason=action.reason,
            violation_count=count,
            policy=policy,
            duration=action.duration,
            source="policy",
        )

    def record_violation(self, event: ViolationEvent) -> None:
        self._violations.append(event)

    def get_user_violations(
        self,
        scope_id: str,
        user_id: str,
        category: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[ViolationEvent]:
        return self._violations.query(scope_id, user_id, category=category, since=since)

    def stats(self, scope_id: Optional[str] = None) -> PolicyStats:
        policies = self._policies.list_all() if scope_id is None else self._policies.list_scope(scope_id)
        return PolicyStats(
            total_policies=len(policies),
            enabled_policies=sum(1 for policy in policies if policy.enabled),
            total_violations=len(self._violations.list_events(scope_id)),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _prior_count(self, scope_id: str, user_id: str, policy: PolicyDefinition, now: datetime) -> int:
        # One event is stored per check, so occurrences are counted by category
        # rather than by the policy the event was attributed to.
        condition = policy.condition
        events = self._violations.query(scope_id, user_id, category=condition.category, since=now - condition.time_window)
        return sum(
            1
            for event in events
            if event.timestamp <= now and (not condition.channel_ids or event.channel_id in condition.channel_ids)
        )


def _new_policy(
    scope_id: str,
    *,
    name: str,
    condition: PolicyCondition,
    initial_action: PolicyAction,
    escalations: Sequence[PolicyEscalation] = (),
    description: str = "",
    enabled: bool = True,
    created_by: str = "system",
    timestamp: Optional[datetime] = None,
) -> PolicyDefinition:
    timestamp = timestamp or utcnow()
    return PolicyDefinition(
        id=uuid.uuid4().hex,
        scope_id=scope_id,
        name=name,
        description=description,
        enabled=enabled,
        condition=condition,
        initial_action=initial_action,
        escalations=tuple(escalations),
        created_by=created_by,
        created_at=timestamp,
        modified_at=timestamp,
    )


def _validate(policy: PolicyDefinition) -> None:
    if not policy.name.strip():
        raise ValueError("policy name must not be empty")
    if policy.condition.occurrences < 1:
        raise ValueError("condition.occurrences must be at least 1")
    if policy.condition.time_window <= timedelta(0):
        raise ValueError("condition.time_window must be positive")
    for escalation in policy.escalations:
        if escalation.after_occurrences < 1:
            raise ValueError("escalation thresholds must be at least 1")


__all__ = ["PolicyEngine", "PolicyStats", "default_policies", "resolve_action"]
