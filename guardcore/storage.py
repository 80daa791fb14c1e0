"""Persistence contracts and in-memory repositories."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from threading import RLock
from typing import TYPE_CHECKING, AsyncIterator, Dict, Hashable, List, Optional, Protocol, Tuple

from .models import PolicyDefinition, ReputationRecord, ViolationEvent

if TYPE_CHECKING:
    from .violations import CoreViolation


class ReputationRepository(Protocol):
    def get(self, user_id: str, scope_id: str) -> Optional[ReputationRecord]:
        ...

    def save(self, record: ReputationRecord) -> None:
        ...

    def list_scope(self, scope_id: str) -> List[ReputationRecord]:
        ...

    def list_all(self) -> List[ReputationRecord]:
        ...


class ViolationLog(Protocol):
    def append(self, event: ViolationEvent) -> None:
        ...

    def query(
        self,
        scope_id: str,
        user_id: str,
        *,
        category: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[ViolationEvent]:
        ...

    def list_events(self, scope_id: Optional[str] = None) -> List[ViolationEvent]:
        ...


class PolicyRepository(Protocol):
    def save(self, policy: PolicyDefinition) -> None:
        ...

    def get(self, policy_id: str) -> Optional[PolicyDefinition]:
        ...

    def delete(self, policy_id: str) -> bool:
        ...

    def list_scope(self, scope_id: str) -> List[PolicyDefinition]:
        ...

    def list_all(self) -> List[PolicyDefinition]:
        ...


class CoreViolationRepository(Protocol):
    def append(self, violation: "CoreViolation") -> None:
        ...

    def for_user(self, user_id: str, *, since: Optional[datetime] = None) -> List["CoreViolation"]:
        ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryReputationRepository:
    """Reputation records keyed by ``(user_id, scope_id)``."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._records: Dict[Tuple[str, str], ReputationRecord] = {}

    def get(self, user_id: str, scope_id: str) -> Optional[ReputationRecord]:
        with self._lock:
            return self._records.get((user_id, scope_id))

    def save(self, record: ReputationRecord) -> None:
        with self._lock:
            self._records[record.key] = record

    def list_scope(self, scope_id: str) -> List[ReputationRecord]:
        with self._lock:
            return [record for record in self._records.values() if record.scope_id == scope_id]

    def list_all(self) -> List[ReputationRecord]:
        with self._lock:
            return list(self._records.values())


class InMemoryViolationLog:
    """Append-only community violation log."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._events: List[ViolationEvent] = []

    def append(self, event: ViolationEvent) -> None:
        with self._lock:
            self._events.append(event)

    def query(
        self,
        scope_id: str,
        user_id: str,
        *,
        category: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[ViolationEvent]:
        with self._lock:
            events = [
                event
                for event in self._events
                if event.scope_id == scope_id
                and event.user_id == user_id
                and (category is None or event.category == category)
                and (since is None or event.timestamp >= since)
            ]
        events.sort(key=lambda event: event.timestamp, reverse=True)
        return events

    def list_events(self, scope_id: Optional[str] = None) -> List[ViolationEvent]:
        with self._lock:
            if scope_id is None:
                return list(self._events)
            return [event for event in self._events if event.scope_id == scope_id]


class InMemoryPolicyRepository:
    def __init__(self) -> None:
        self._lock = RLock()
        self._policies: Dict[str, PolicyDefinition] = {}

    def save(self, policy: PolicyDefinition) -> None:
        with self._lock:
            self._policies[policy.id] = policy

    def get(self, policy_id: str) -> Optional[PolicyDefinition]:
        with self._lock:
            return self._policies.get(policy_id)

    def delete(self, policy_id: str) -> bool:
        with self._lock:
            return self._policies.pop(policy_id, None) is not None

    def list_scope(self, scope_id: str) -> List[PolicyDefinition]:
        with self._lock:
            return [policy for policy in self._policies.values() if policy.scope_id == scope_id]

    def list_all(self) -> List[PolicyDefinition]:
        with self._lock:
            return list(self._policies.values())


class InMemoryCoreViolationRepository:
    def __init__(self) -> None:
        self._lock = RLock()
        self._violations: Dict[str, List["CoreViolation"]] = {}

    def append(self, violation: "CoreViolation") -> None:
        with self._lock:
            self._violations.setdefault(violation.user_id, []).append(violation)

    def for_user(self, user_id: str, *, since: Optional[datetime] = None) -> List["CoreViolation"]:
        with self._lock:
            violations = list(self._violations.get(user_id, ()))
        if since is not None:
            violations = [violation for violation in violations if violation.timestamp >= since]
        violations.sort(key=lambda violation: violation.timestamp, reverse=True)
        return violations


class KeyedLocks:
    """Registry of ``asyncio.Lock`` objects, one per key.

    A key's lock exists only while some task holds or waits for it.
    """

    def __init__(self) -> None:
        self._guard = RLock()
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def lock(self, key: Hashable) -> AsyncIterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


__all__ = [
    "CoreViolationRepository",
    "InMemoryCoreViolationRepository",
    "InMemoryPolicyRepository",
    "InMemoryReputationRepository",
    "InMemoryViolationLog",
    "KeyedLocks",
    "PolicyRepository",
    "ReputationRepository",
    "ViolationLog",
]
