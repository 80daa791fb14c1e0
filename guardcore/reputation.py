"""Per-user reputation tracking with decay, redemption and permanent zero."""
from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .errors import InvariantViolation, PersistenceFailure
from .models import (
    GLOBAL_SCOPE,
    ActionDecision,
    BehaviorSignals,
    ModerationAction,
    RedemptionResult,
    ReputationChange,
    ReputationEvent,
    ReputationLevel,
    ReputationRecord,
    is_scam_category,
    utcnow,
)
from .storage import (
    CoreViolationRepository,
    InMemoryReputationRepository,
    KeyedLocks,
    ReputationRepository,
    ViolationLog,
)

logger = logging.getLogger(__name__)

Subscriber = Callable[[ReputationChange], Union[None, Awaitable[None]]]
DeltaFn = Callable[[ReputationRecord], Optional[float]]

# Low-trust escalation only applies when the current message crosses these.
BAD_TOXICITY = 0.4
BAD_MANIPULATION = 0.5

# Expired cache entries are swept once the cache reaches this many keys.
CACHE_SWEEP_SIZE = 1024


@dataclass(frozen=True)
class RedemptionProgress:
    can_redeem: bool
    current_score: float
    target_score: float
    points_needed: float
    recent_good_behaviors: int
    suggestion: str

    def as_dict(self) -> dict[str, object]:
        return {
            "can_redeem": self.can_redeem,
            "current_score": self.current_score,
            "target_score": self.target_score,
            "points_needed": self.points_needed,
            "recent_good_behaviors": self.recent_good_behaviors,
            "suggestion": self.suggestion,
        }


@dataclass(frozen=True)
class ScopeStats:
    scope_id: str
    total: int
    average_score: float
    by_level: Dict[str, int]

    def as_dict(self) -> dict[str, object]:
        return {
            "scope_id": self.scope_id,
            "total": self.total,
            "average_score": self.average_score,
            "by_level": dict(self.by_level),
        }


class ReputationStore:
    """Owns every write to :class:`ReputationRecord` objects.

    Updates for one ``(user_id, scope_id)`` pair are serialized through an
    async keyed lock and always follow read, clamp, persist, invalidate,
    notify. Reads go through a small TTL cache.
    """

    def __init__(
        self,
        repository: Optional[ReputationRepository] = None,
        *,
        violation_log: Optional[ViolationLog] = None,
        core_violations: Optional[CoreViolationRepository] = None,
        default_score: float = 50.0,
        decay_rate: float = 0.01,
        redemption_ceiling: float = 60.0,
        history_limit: int = 100,
        cache_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository or InMemoryReputationRepository()
        self._violation_log = violation_log
        self._core_violations = core_violations
        self._default_score = default_score
        self._decay_rate = decay_rate
        self._redemption_ceiling = redemption_ceiling
        self._history_limit = history_limit
        self._cache_ttl = cache_ttl
        self._clock = clock
        self._now = now

        self._locks = KeyedLocks()
        self._cache: Dict[Tuple[str, str], Tuple[float, ReputationRecord]] = {}
        self._subscribers: List[Subscriber] = []

    @classmethod
    def from_settings(
        cls,
        settings,
        repository: Optional[ReputationRepository] = None,
        *,
        violation_log: Optional[ViolationLog] = None,
        core_violations: Optional[CoreViolationRepository] = None,
    ) -> "ReputationStore":
        return cls(
            repository,
            violation_log=violation_log,
            core_violations=core_violations,
            default_score=settings.default_score,
            decay_rate=settings.decay_rate,
            redemption_ceiling=settings.redemption_ceiling,
            history_limit=settings.history_limit,
            cache_ttl=settings.reputation_cache_ttl,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_score(self, user_id: str, scope_id: str = GLOBAL_SCOPE) -> ReputationRecord:
        """Return the record, creating a default one on first observation.

        Raises :class:`PersistenceFailure` when the repository is unavailable.
        """

        key = (user_id, scope_id)
        now = self._clock()
        cached = self._cache.pop(key, None)
        if cached is not None and cached[0] > now:
            self._cache[key] = cached
            return cached[1]
        record = self._load(user_id, scope_id)
        if len(self._cache) >= CACHE_SWEEP_SIZE:
            self._evict_expired(now)
        self._cache[key] = (now + self._cache_ttl, record)
        return record

    get_reputation = get_score

    def safe_get(self, user_id: str, scope_id: str = GLOBAL_SCOPE) -> ReputationRecord:
        """Pipeline read: a neutral default stands in for an unreachable store."""

        try:
            return self.get_score(user_id, scope_id)
        except PersistenceFailure as exc:
            logger.warning("Reputation unavailable for %s@%s, using default: %s", user_id, scope_id, exc)
            return ReputationRecord(user_id=user_id, scope_id=scope_id, score=self._default_score)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def apply_delta(
        self,
        user_id: str,
        scope_id: str,
        delta: float,
        reason: str,
        *,
        category: Optional[str] = None,
        context: Optional[str] = None,
    ) -> ReputationRecord:
        return await self._update(user_id, scope_id, lambda record: delta, reason, category=category, context=context)

    async def set_permanent_zero(
        self,
        user_id: str,
        scope_id: str,
        reason: str,
        evidence: Optional[str] = None,
        *,
        category: str = "permanent_zero",
    ) -> ReputationRecord:
        """Pin the record at zero for good; repeated calls are no-ops."""

        async with self._locks.lock((user_id, scope_id)):
            record = self._load(user_id, scope_id)
            if record.permanent_zero:
                return record
            timestamp = self._now()
            event = ReputationEvent(
                timestamp=timestamp,
                delta=-record.score,
                reason=f"PERMANENT ZERO: {reason}",
                category=category,
                context=evidence,
            )
            updated = replace(
                record,
                score=0.0,
                permanent_zero=True,
                history=self._trim(record.history + (event,)),
                updated_at=timestamp,
            )
            self._persist(updated)
        logger.warning("Permanent zero set for %s@%s: %s", user_id, scope_id, reason)
        await self._notify(record, updated, reason)
        return updated

    async def manual_override(
        self,
        user_id: str,
        scope_id: str,
        new_score: float,
        moderator_id: str,
        reason: str,
    ) -> ReputationRecord:
        return await self.align_score(
            user_id,
            scope_id,
            new_score,
            f"manual_override by {moderator_id}: {reason}",
            category="manual_override",
        )

    async def align_score(
        self,
        user_id: str,
        scope_id: str,
        target: float,
        reason: str,
        *,
        category: Optional[str] = None,
    ) -> ReputationRecord:
        """Apply whatever delta moves the current score to ``target``."""

        target = _clamp(target)
        return await self._update(user_id, scope_id, lambda record: target - record.score, reason, category=category)

    async def apply_decay(self, user_id: str, scope_id: str = GLOBAL_SCOPE) -> ReputationRecord:
        """Move the score a fraction of the way back toward neutral."""

        def decay(record: ReputationRecord) -> Optional[float]:
            if record.permanent_zero:
                return None
            distance = self._default_score - record.score
            if abs(distance) < 0.1:
                return None
            return distance * self._decay_rate

        return await self._update(user_id, scope_id, decay, "Natural decay toward neutral", category="decay")

    async def decay_all(self, scope_id: Optional[str] = None) -> int:
        records = self._repository.list_all() if scope_id is None else self._repository.list_scope(scope_id)
        changed = 0
        for record in records:
            updated = await self.apply_decay(record.user_id, record.scope_id)
            if updated.score != record.score:
                changed += 1
        logger.info("Decay applied to %s of %s records", changed, len(records))
        return changed

    async def check_redemption(
        self, user_id: str, scope_id: str, signals: BehaviorSignals
    ) -> RedemptionResult:
        """Grant small positive deltas for good behaviour from low-trust users."""

        record = self.safe_get(user_id, scope_id)
        if record.permanent_zero:
            return RedemptionResult(False, 0, "Redemption blocked: permanent zero")
        if record.score >= self._redemption_ceiling:
            return RedemptionResult(False, 0, "Score above redemption range")
        if self._has_scam_history(record):
            return RedemptionResult(False, 0, "Redemption blocked: scam violation on record")

        points = 0
        reasons: List[str] = []
        if signals.toxicity < 0.1 and signals.sentiment == "positive":
            points += 2
            reasons.append("positive message")
        if signals.is_helpful:
            points += 3
            reasons.append("helpful behavior")
        if signals.manipulation < 0.1 and signals.toxicity < 0.2:
            points += 1
            reasons.append("respectful communication")

        if not points:
            return RedemptionResult(False, 0, "No redemption-worthy behavior")

        reason = "Redemption: " + ", ".join(reasons)
        await self.apply_delta(user_id, scope_id, points, reason, category="redemption")
        return RedemptionResult(True, points, reason)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a change listener; returns a function that removes it."""

        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def recommend_action(
        self,
        record: ReputationRecord,
        toxicity: float = 0.0,
        manipulation: float = 0.0,
    ) -> ActionDecision:
        if toxicity <= BAD_TOXICITY and manipulation <= BAD_MANIPULATION:
            return ActionDecision(ModerationAction.NONE, "", source="reputation")
        score = record.score
        if score <= 10:
            return ActionDecision(
                ModerationAction.BAN,
                f"Trust score critically low ({score}) with harmful behavior",
                source="reputation",
            )
        if score <= 25:
            return ActionDecision(
                ModerationAction.TIMEOUT,
                f"Trust score low ({score}) with harmful behavior",
                source="reputation",
            )
        if score <= 40:
            return ActionDecision(
                ModerationAction.WARN,
                f"Trust score declining ({score}) with harmful behavior",
                source="reputation",
            )
        return ActionDecision(ModerationAction.NONE, "", source="reputation")

    def redemption_progress(self, user_id: str, scope_id: str = GLOBAL_SCOPE) -> RedemptionProgress:
        record = self.get_score(user_id, scope_id)
        target = self._default_score
        if record.permanent_zero:
            return RedemptionProgress(
                can_redeem=False,
                current_score=0.0,
                target_score=target,
                points_needed=0.0,
                recent_good_behaviors=0,
                suggestion="Permanent zero, no redemption possible",
            )

        recent_good = sum(
            1 for event in record.history[-20:] if event.delta > 0 and event.category == "redemption"
        )
        if record.score < 30:
            suggestion = "Be helpful, stay positive and avoid toxicity."
        elif record.score < target:
            suggestion = "Keep it up, the score is recovering."
        else:
            suggestion = "Trust score is healthy."
        return RedemptionProgress(
            can_redeem=record.score < self._redemption_ceiling,
            current_score=record.score,
            target_score=target,
            points_needed=round(max(0.0, target - record.score), 2),
            recent_good_behaviors=recent_good,
            suggestion=suggestion,
        )

    def scope_stats(self, scope_id: str) -> ScopeStats:
        records = self._repository.list_scope(scope_id)
        by_level = {level.value: 0 for level in ReputationLevel}
        for record in records:
            by_level[record.level.value] += 1
        average = sum(record.score for record in records) / len(records) if records else 0.0
        return ScopeStats(scope_id=scope_id, total=len(records), average_score=round(average, 2), by_level=by_level)

    def top_users(self, scope_id: str, limit: int = 10) -> List[ReputationRecord]:
        records = sorted(self._repository.list_scope(scope_id), key=lambda record: record.score, reverse=True)
        return records[:limit]

    def low_trust_users(self, scope_id: str, threshold: float = 30.0) -> List[ReputationRecord]:
        records = [record for record in self._repository.list_scope(scope_id) if record.score < threshold]
        return sorted(records, key=lambda record: record.score)

    def report(self, user_id: str, scope_id: str = GLOBAL_SCOPE) -> str:
        record = self.get_score(user_id, scope_id)
        lines = [
            f"Trust report for {user_id} in {scope_id}",
            f"Score: {record.score} ({record.level.value})"
            + (" [PERMANENT ZERO]" if record.permanent_zero else ""),
            f"Member since: {record.created_at.date().isoformat()}",
            f"Last activity: {record.updated_at.date().isoformat()}",
            "",
            "Recent history:",
        ]
        for event in record.history[-10:]:
            sign = "+" if event.delta >= 0 else ""
            lines.append(f"- {event.timestamp.isoformat()}: {event.reason} ({sign}{event.delta})")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _update(
        self,
        user_id: str,
        scope_id: str,
        delta_fn: DeltaFn,
        reason: str,
        *,
        category: Optional[str] = None,
        context: Optional[str] = None,
    ) -> ReputationRecord:
        async with self._locks.lock((user_id, scope_id)):
            record = self._load(user_id, scope_id)
            delta = delta_fn(record)
            if delta is None:
                return record
            if record.permanent_zero and delta > 0:
                violation = InvariantViolation(user_id, scope_id, f"positive delta {delta:+.2f} on permanent-zero record")
                logger.warning("Rejected reputation update (%s): %s", reason, violation)
                return record

            new_score = round(_clamp(record.score + delta), 2)
            timestamp = self._now()
            event = ReputationEvent(
                timestamp=timestamp,
                delta=round(new_score - record.score, 2),
                reason=reason,
                category=category,
                context=context,
            )
            updated = replace(
                record,
                score=new_score,
                history=self._trim(record.history + (event,)),
                updated_at=timestamp,
            )
            self._persist(updated)
        logger.debug("Reputation %s@%s: %.2f -> %.2f (%s)", user_id, scope_id, record.score, new_score, reason)
        await self._notify(record, updated, reason)
        return updated

    def _load(self, user_id: str, scope_id: str) -> ReputationRecord:
        record = self._repository.get(user_id, scope_id)
        if record is None:
            timestamp = self._now()
            record = ReputationRecord(
                user_id=user_id,
                scope_id=scope_id,
                score=self._default_score,
                created_at=timestamp,
                updated_at=timestamp,
            )
            self._repository.save(record)
        return record

    def _persist(self, record: ReputationRecord) -> None:
        self._repository.save(record)
        self._cache.pop(record.key, None)

    def _evict_expired(self, now: float) -> None:
        for key in [key for key, (expires, _) in self._cache.items() if expires <= now]:
            del self._cache[key]

    def _trim(self, history: Tuple[ReputationEvent, ...]) -> Tuple[ReputationEvent, ...]:
        return history[-self._history_limit:]

    def _has_scam_history(self, record: ReputationRecord) -> bool:
        if any(is_scam_category(event.category) for event in record.history):
            return True
        try:
            if self._violation_log is not None:
                events = self._violation_log.query(record.scope_id, record.user_id)
                if any(is_scam_category(event.category) for event in events):
                    return True
            if self._core_violations is not None:
                violations = self._core_violations.for_user(record.user_id)
                if any(is_scam_category(violation.type.value) for violation in violations):
                    return True
        except PersistenceFailure as exc:
            # Without the violation history there is no way to rule out a scam.
            logger.warning("Violation history unavailable for %s, blocking redemption: %s", record.user_id, exc)
            return True
        return False

    async def _notify(self, old: ReputationRecord, new: ReputationRecord, reason: str) -> None:
        if not self._subscribers:
            return
        change = ReputationChange(
            user_id=new.user_id,
            scope_id=new.scope_id,
            old_score=old.score,
            new_score=new.score,
            delta=round(new.score - old.score, 2),
            reason=reason,
            level=new.level,
            timestamp=new.updated_at,
        )
        for callback in list(self._subscribers):
            try:
                result = callback(change)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Reputation subscriber %r failed", callback)


def _clamp(score: float) -> float:
    return max(0.0, min(100.0, score))


__all__ = ["RedemptionProgress", "ReputationStore", "ScopeStats"]
