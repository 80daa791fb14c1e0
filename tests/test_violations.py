from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from guardcore.models import GLOBAL_SCOPE, ModerationAction
from guardcore.reputation import ReputationStore
from guardcore.violations import PENALTY_TABLE, CoreSeverity, CoreViolationLedger, CoreViolationType


class MovingClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def _ledger(clock=None):
    store = ReputationStore()
    ledger = CoreViolationLedger(store, now=clock or MovingClock())
    return ledger, store


def test_penalty_table_covers_every_type_and_severity() -> None:
    assert set(PENALTY_TABLE) == set(CoreViolationType)
    for row in PENALTY_TABLE.values():
        assert set(row) == set(CoreSeverity)
    assert [PENALTY_TABLE[CoreViolationType.SCAM][level] for level in CoreSeverity] == [20, 40, 60, 90]


def test_low_confidence_detection_is_ignored() -> None:
    ledger, store = _ledger()

    violation = asyncio.run(ledger.record("u1", "g1", "spam", "high", confidence=0.6))

    assert violation is None
    assert ledger.global_score("u1") == 100
    assert ledger.summary("u1").total == 0


def test_record_updates_global_reputation() -> None:
    ledger, store = _ledger()

    violation = asyncio.run(
        ledger.record("u1", "g1", CoreViolationType.SCAM, CoreSeverity.CRITICAL, 0.95, evidence="free nitro")
    )

    assert violation.penalty == 90
    assert ledger.global_score("u1") == 10
    record = store.get_score("u1", GLOBAL_SCOPE)
    assert record.score == 0
    assert record.history[-1].category == "scam"
    assert record.history[-1].delta == -50
    # Community records are untouched.
    assert store.get_score("u1", "g1").score == 50


def test_global_score_is_floored_and_windowed() -> None:
    clock = MovingClock()
    ledger, _ = _ledger(clock)

    async def scenario():
        await ledger.record("u1", "g1", "doxxing", "critical", 0.9)
        await ledger.record("u1", "g2", "raiding", "medium", 0.9)

    asyncio.run(scenario())
    assert ledger.global_score("u1") == 0

    clock.now += timedelta(days=91)
    assert ledger.global_score("u1") == 100
    assert ledger.summary("u1").total == 0
    assert ledger.has_category("u1", "doxxing")


def test_summary_groups_by_type() -> None:
    clock = MovingClock()
    ledger, _ = _ledger(clock)

    async def scenario():
        for _ in range(3):
            await ledger.record("u1", "g1", "spam", "low", 0.8)
            clock.now += timedelta(minutes=1)
        await ledger.record("u1", "g1", "profanity", "medium", 0.75)

    asyncio.run(scenario())
    summary = ledger.summary("u1")

    assert summary.total == 4
    assert summary.by_type == {"spam": 3, "profanity": 1}
    assert summary.total_penalty == 19
    assert summary.global_score == 81
    assert summary.recent[0].type is CoreViolationType.PROFANITY
    assert summary.as_dict()["recent"][0]["severity"] == "medium"


def test_action_for_severity() -> None:
    ledger, _ = _ledger()

    assert ledger.action_for("critical").action is ModerationAction.BAN
    high = ledger.action_for(CoreSeverity.HIGH)
    assert high.action is ModerationAction.TIMEOUT
    assert high.duration == timedelta(hours=1)
    assert ledger.action_for("medium").duration == timedelta(minutes=10)
    assert ledger.action_for("low").action is ModerationAction.NONE


def test_minor_violation_only_lowers_global_record() -> None:
    ledger, store = _ledger()

    asyncio.run(ledger.record("u1", "g1", "spam", "low", 0.9))

    assert ledger.global_score("u1") == 97
    record = store.get_score("u1", GLOBAL_SCOPE)
    assert record.score == 47
    assert record.history[-1].delta == -3
    assert record.history[-1].context == "g1"
