from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from guardcore import reputation
from guardcore.errors import PersistenceFailure
from guardcore.models import BehaviorSignals, ModerationAction, ReputationLevel, ReputationRecord, ViolationEvent
from guardcore.reputation import ReputationStore
from guardcore.storage import (
    InMemoryCoreViolationRepository,
    InMemoryReputationRepository,
    InMemoryViolationLog,
    KeyedLocks,
)
from guardcore.violations import CoreSeverity, CoreViolation, CoreViolationType

GOOD_MESSAGE = BehaviorSignals(toxicity=0.0, manipulation=0.0, sentiment="positive", is_helpful=True)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class CountingRepository(InMemoryReputationRepository):
    def __init__(self) -> None:
        super().__init__()
        self.reads = 0

    def get(self, user_id, scope_id):
        self.reads += 1
        return super().get(user_id, scope_id)


class UnavailableRepository:
    def get(self, user_id, scope_id):
        raise PersistenceFailure("database offline")

    def save(self, record):
        raise PersistenceFailure("database offline")

    def list_scope(self, scope_id):
        raise PersistenceFailure("database offline")

    def list_all(self):
        raise PersistenceFailure("database offline")


def _store_at(score: float, **kwargs) -> ReputationStore:
    store = ReputationStore(**kwargs)
    asyncio.run(store.apply_delta("u1", "g1", score - 50, "setup"))
    return store


def test_first_observation_creates_default_record() -> None:
    store = ReputationStore()
    record = store.get_score("u1", "g1")
    assert record.score == 50
    assert record.level is ReputationLevel.NEUTRAL
    assert store.get_reputation("u1", "g1") is record


def test_cache_expires_with_injected_clock() -> None:
    clock = FakeClock()
    repository = CountingRepository()
    store = ReputationStore(repository, cache_ttl=10, clock=clock)

    first = store.get_score("u1", "g1")
    assert store.get_score("u1", "g1") is first
    assert repository.reads == 1

    clock.now = 11
    store.get_score("u1", "g1")
    assert repository.reads == 2


def test_expired_cache_entries_are_swept(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(reputation, "CACHE_SWEEP_SIZE", 2)
    clock = FakeClock()
    store = ReputationStore(cache_ttl=10, clock=clock)
    store.get_score("u1", "g1")
    store.get_score("u2", "g1")

    clock.now = 11
    store.get_score("u3", "g1")

    assert set(store._cache) == {("u3", "g1")}


def test_keyed_locks_drop_idle_keys() -> None:
    locks = KeyedLocks()

    async def scenario():
        async with locks.lock("u1"):
            held = len(locks)
        return held, len(locks)

    assert asyncio.run(scenario()) == (1, 0)


def test_score_stays_within_bounds() -> None:
    store = ReputationStore()

    async def scenario():
        high = await store.apply_delta("u1", "g1", 80, "praise")
        low = await store.apply_delta("u1", "g1", -250, "abuse")
        return high, low

    high, low = asyncio.run(scenario())
    assert high.score == 100
    assert low.score == 0
    assert low.history[-1].delta == -100


def test_permanent_zero_never_rises() -> None:
    store = ReputationStore()

    async def scenario():
        await store.set_permanent_zero("u1", "g1", "confirmed scammer", evidence="wallet drainer link")
        await store.apply_delta("u1", "g1", 10, "good deed")
        await store.manual_override("u1", "g1", 80, "mod-1", "appeal")
        await store.apply_decay("u1", "g1")
        await store.apply_delta("u1", "g1", -5, "more abuse")
        return store.get_score("u1", "g1")

    record = asyncio.run(scenario())
    assert record.permanent_zero
    assert record.score == 0
    assert [event.reason for event in record.history] == ["PERMANENT ZERO: confirmed scammer", "more abuse"]


def test_redemption_grants_points_below_ceiling() -> None:
    store = _store_at(45)

    result = asyncio.run(store.check_redemption("u1", "g1", GOOD_MESSAGE))

    assert result.granted
    assert result.points == 6
    assert store.get_score("u1", "g1").score == 51
    assert store.get_score("u1", "g1").history[-1].category == "redemption"


def test_redemption_blocked_by_scam_history() -> None:
    store = ReputationStore()

    async def scenario():
        await store.apply_delta("u1", "g1", -5, "scam link", category="scam_crypto")
        return await store.check_redemption("u1", "g1", GOOD_MESSAGE)

    result = asyncio.run(scenario())
    assert not result.granted
    assert result.points == 0
    assert "blocked" in result.reason
    assert store.get_score("u1", "g1").score == 45


def test_redemption_blocked_by_community_violation_log() -> None:
    log = InMemoryViolationLog()
    log.append(
        ViolationEvent(
            user_id="u1",
            policy_id="p1",
            category="scam",
            timestamp=datetime(2025, 1, 1, tzinfo=timezone.utc),
            scope_id="g1",
        )
    )
    store = _store_at(45, violation_log=log)

    result = asyncio.run(store.check_redemption("u1", "g1", GOOD_MESSAGE))

    assert not result.granted
    assert result.points == 0


def test_redemption_blocked_by_core_ledger() -> None:
    core = InMemoryCoreViolationRepository()
    core.append(
        CoreViolation(
            user_id="u1",
            scope_id="other-guild",
            type=CoreViolationType.SCAM,
            severity=CoreSeverity.HIGH,
            confidence=0.9,
            penalty=60,
            timestamp=datetime(2025, 1, 1, tzinfo=timezone.utc),
        )
    )
    store = _store_at(45, core_violations=core)

    result = asyncio.run(store.check_redemption("u1", "g1", GOOD_MESSAGE))

    assert not result.granted


def test_no_redemption_at_exactly_sixty() -> None:
    store = _store_at(60)
    result = asyncio.run(store.check_redemption("u1", "g1", GOOD_MESSAGE))
    assert not result.granted
    assert store.get_score("u1", "g1").score == 60


def test_no_redemption_without_good_behavior() -> None:
    store = _store_at(40)
    signals = BehaviorSignals(toxicity=0.3, manipulation=0.3, sentiment="negative")
    result = asyncio.run(store.check_redemption("u1", "g1", signals))
    assert not result.granted
    assert result.points == 0


def test_history_is_capped() -> None:
    store = ReputationStore(history_limit=5)

    async def scenario():
        for index in range(8):
            await store.apply_delta("u1", "g1", -1, f"event {index}")

    asyncio.run(scenario())
    history = store.get_score("u1", "g1").history
    assert len(history) == 5
    assert history[-1].reason == "event 7"


def test_manual_override_uses_delta_path() -> None:
    store = ReputationStore()
    record = asyncio.run(store.manual_override("u1", "g1", 72, "mod-1", "helpful contributor"))
    assert record.score == 72
    assert record.history[-1].category == "manual_override"
    assert record.history[-1].delta == 22
    assert "mod-1" in record.history[-1].reason


def test_decay_moves_toward_neutral() -> None:
    store = _store_at(30, decay_rate=0.1)

    async def scenario():
        await store.apply_delta("u2", "g1", 40, "praise")
        return await store.decay_all("g1")

    changed = asyncio.run(scenario())
    assert changed == 2
    assert store.get_score("u1", "g1").score == 32
    assert store.get_score("u2", "g1").score == 86


def test_subscribers_are_notified_and_isolated() -> None:
    store = ReputationStore()
    seen = []
    async_seen = []

    def broken(change):
        raise RuntimeError("listener bug")

    async def async_listener(change):
        async_seen.append(change.new_score)

    store.subscribe(broken)
    unsubscribe = store.subscribe(seen.append)
    store.subscribe(async_listener)

    async def scenario():
        await store.apply_delta("u1", "g1", -10, "spam")
        unsubscribe()
        await store.apply_delta("u1", "g1", -10, "spam")

    asyncio.run(scenario())
    assert len(seen) == 1
    assert seen[0].old_score == 50 and seen[0].new_score == 40
    assert seen[0].level is ReputationLevel.NEUTRAL
    assert async_seen == [40, 30]


def test_concurrent_updates_are_serialized() -> None:
    store = ReputationStore()

    async def scenario():
        await asyncio.gather(*(store.apply_delta("u1", "g1", -1, "spam") for _ in range(20)))

    asyncio.run(scenario())
    record = store.get_score("u1", "g1")
    assert record.score == 30
    assert len(record.history) == 20


def test_persistence_failure_handling() -> None:
    store = ReputationStore(UnavailableRepository())
    with pytest.raises(PersistenceFailure):
        store.get_score("u1", "g1")
    fallback = store.safe_get("u1", "g1")
    assert fallback.score == 50


def test_recommend_action_requires_bad_message() -> None:
    store = ReputationStore()

    def at(score):
        return ReputationRecord(user_id="u1", scope_id="g1", score=score)

    assert store.recommend_action(at(20), toxicity=0.1).action is ModerationAction.NONE
    assert store.recommend_action(at(20), toxicity=0.8).action is ModerationAction.TIMEOUT
    assert store.recommend_action(at(5), manipulation=0.9).action is ModerationAction.BAN
    assert store.recommend_action(at(38), toxicity=0.5).action is ModerationAction.WARN
    assert store.recommend_action(at(50), toxicity=0.9).action is ModerationAction.NONE


def test_scope_queries_and_report() -> None:
    store = ReputationStore()

    async def scenario():
        await store.apply_delta("alice", "g1", 40, "helpful")
        await store.apply_delta("bob", "g1", -30, "toxic")
        await store.apply_delta("carol", "g1", -45, "raid")
        await store.apply_delta("dave", "g2", 10, "other guild")

    asyncio.run(scenario())

    stats = store.scope_stats("g1")
    assert stats.total == 3
    assert stats.average_score == pytest.approx(38.33)
    assert stats.by_level["exemplary"] == 1
    assert stats.by_level["cautious"] == 1
    assert stats.by_level["dangerous"] == 1

    assert [record.user_id for record in store.top_users("g1", limit=2)] == ["alice", "bob"]
    assert [record.user_id for record in store.low_trust_users("g1")] == ["carol", "bob"]

    progress = store.redemption_progress("bob", "g1")
    assert progress.can_redeem
    assert progress.points_needed == 30

    report = store.report("bob", "g1")
    assert "Score: 20.0 (cautious)" in report
    assert "toxic (-30.0)" in report
