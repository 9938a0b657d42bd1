"""
Typed access to allocation records stored in the key/value database.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import TypeVar

from shift_allocation.database import InMemoryKeyValueDatabase
from shift_allocation.errors import NotFoundError, StaleShiftError
from shift_allocation.models import (
    ACTIVE_ASSIGNMENT_STATUSES,
    Claim,
    ClaimStatus,
    NetworkSettings,
    RestaurantSettings,
    Shift,
    ShiftStatus,
    TimeOffRequest,
    TimeOffStatus,
    WorkerProfile,
)

Record = (
    Shift
    | WorkerProfile
    | Claim
    | RestaurantSettings
    | NetworkSettings
    | TimeOffRequest
)

_PREFIXES: dict[type, str] = {
    Shift: "shift",
    WorkerProfile: "worker",
    Claim: "claim",
    RestaurantSettings: "restaurant",
    NetworkSettings: "network",
    TimeOffRequest: "time_off",
}


T = TypeVar("T")


def _key(record_type: type, record_id: str) -> str:
    return f"{_PREFIXES[record_type]}:{record_id}"


class Repository:
    def __init__(
        self, db: InMemoryKeyValueDatabase[str, Record] | None = None
    ) -> None:
        self.db: InMemoryKeyValueDatabase[str, Record] = (
            db if db is not None else InMemoryKeyValueDatabase()
        )

    def add(self, record: Record) -> None:
        self.db.put(_key(type(record), record.id), record)

    def _get(self, record_type: type[T], record_id: str | None) -> T | None:
        if record_id is None:
            return None
        value = self.db.get(_key(record_type, record_id))
        return value if isinstance(value, record_type) else None

    def _all(self, record_type: type[T]) -> list[T]:
        return [r for r in self.db if isinstance(r, record_type)]

    # -- lookups --------------------------------------------------------

    def get_shift(self, shift_id: str) -> Shift | None:
        return self._get(Shift, shift_id)

    def require_shift(self, shift_id: str) -> Shift:
        shift = self.get_shift(shift_id)
        if shift is None:
            raise NotFoundError("Shift", shift_id)
        return shift

    def get_worker(self, worker_id: str) -> WorkerProfile | None:
        return self._get(WorkerProfile, worker_id)

    def require_worker(self, worker_id: str) -> WorkerProfile:
        worker = self.get_worker(worker_id)
        if worker is None:
            raise NotFoundError("Worker profile", worker_id)
        return worker

    def get_claim(self, claim_id: str) -> Claim | None:
        return self._get(Claim, claim_id)

    def require_claim(self, claim_id: str) -> Claim:
        claim = self.get_claim(claim_id)
        if claim is None:
            raise NotFoundError("Claim", claim_id)
        return claim

    def get_restaurant(self, restaurant_id: str | None) -> RestaurantSettings | None:
        return self._get(RestaurantSettings, restaurant_id)

    def get_network(self, network_id: str | None) -> NetworkSettings | None:
        return self._get(NetworkSettings, network_id)

    def network_for_restaurant(
        self, restaurant: RestaurantSettings | None
    ) -> NetworkSettings | None:
        if restaurant is None:
            return None
        return self.get_network(restaurant.network_id)

    # -- queries --------------------------------------------------------

    def profiles_for_identity(self, user_id: str) -> list[WorkerProfile]:
        profiles = [p for p in self._all(WorkerProfile) if p.user_id == user_id]
        return sorted(profiles, key=lambda p: p.id)

    def open_shifts(self, restaurant_id: str | None = None) -> list[Shift]:
        shifts = [
            s
            for s in self._all(Shift)
            if s.status == ShiftStatus.PUBLISHED_UNASSIGNED
            and (restaurant_id is None or s.restaurant_id == restaurant_id)
        ]
        return sorted(shifts, key=lambda s: (s.start_time, s.id))

    def shifts_for_restaurant(self, restaurant_id: str) -> list[Shift]:
        return [s for s in self._all(Shift) if s.restaurant_id == restaurant_id]

    def workers(self) -> list[WorkerProfile]:
        return sorted(self._all(WorkerProfile), key=lambda p: p.id)

    def active_assignments(self, worker_ids: Iterable[str]) -> list[Shift]:
        ids = set(worker_ids)
        return [
            s
            for s in self._all(Shift)
            if s.assigned_worker_id in ids
            and s.status in ACTIVE_ASSIGNMENT_STATUSES
        ]

    def completed_shifts(self, worker_id: str) -> list[Shift]:
        return [
            s
            for s in self._all(Shift)
            if s.assigned_worker_id == worker_id
            and s.status == ShiftStatus.COMPLETED
        ]

    def approved_time_off(self, worker_ids: Iterable[str]) -> list[TimeOffRequest]:
        ids = set(worker_ids)
        return [
            t
            for t in self._all(TimeOffRequest)
            if t.worker_id in ids and t.status == TimeOffStatus.APPROVED
        ]

    def claims_for_shift(
        self, shift_id: str, status: ClaimStatus | None = None
    ) -> list[Claim]:
        claims = [
            c
            for c in self._all(Claim)
            if c.shift_id == shift_id and (status is None or c.status == status)
        ]
        return sorted(claims, key=lambda c: (c.submitted_at, c.id))

    def claims_for_shifts(
        self, shift_ids: Iterable[str], status: ClaimStatus | None = None
    ) -> list[Claim]:
        ids = set(shift_ids)
        return [
            c
            for c in self._all(Claim)
            if c.shift_id in ids and (status is None or c.status == status)
        ]

    def claims_for_worker(
        self, worker_id: str, status: ClaimStatus | None = None
    ) -> list[Claim]:
        claims = [
            c
            for c in self._all(Claim)
            if c.worker_id == worker_id and (status is None or c.status == status)
        ]
        return sorted(claims, key=lambda c: (c.submitted_at, c.id), reverse=True)

    def earliest_pending_claim_at(self, shift_id: str) -> datetime | None:
        pending = self.claims_for_shift(shift_id, ClaimStatus.PENDING)
        return pending[0].submitted_at if pending else None

    # -- writes ---------------------------------------------------------

    def save_worker(self, worker: WorkerProfile) -> None:
        self.add(worker)

    def save_claim(self, claim: Claim) -> None:
        self.add(claim)

    def delete_claim(self, claim_id: str) -> None:
        self.db.delete(_key(Claim, claim_id))

    def save_shift(self, shift: Shift, *, expected_version: int) -> Shift:
        """
        Write `shift` if the stored copy is still at `expected_version`.
        Returns the stored copy with its version bumped.
        """
        updated = shift.model_copy(update={"version": expected_version + 1})

        def unchanged(current: Record | None) -> bool:
            return isinstance(current, Shift) and current.version == expected_version

        key = _key(Shift, shift.id)
        if not self.db.put_if(key, updated, unchanged):
            current = self.get_shift(shift.id)
            if current is None:
                raise NotFoundError("Shift", shift.id)
            raise StaleShiftError(shift.id, expected_version, current.version)
        return updated
