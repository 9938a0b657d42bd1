"""
Claim arbitration.

Claims are gated at submission, stored as PENDING, and later resolved: the
pending claims for a shift are re-validated, ranked by priority (earlier
submission breaks ties), the top one is approved and the shift confirmed
for that worker, and every other claim is rejected.

Submission and resolution for one shift run under that shift's lock, so two
resolutions can never approve different claims for the same shift. Gating
failures at submission create no claim record.

A manager can also approve or reject one pending claim directly; approval
still re-runs the gate but skips ranking.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from uuid import uuid4

from pydantic import BaseModel, Field, computed_field

from shift_allocation.config import AllocationConfig
from shift_allocation.conflicts import find_scheduling_conflict, find_time_off_conflict
from shift_allocation.errors import (
    ClaimAlreadyResolvedError,
    NotFoundError,
    ShiftUnavailableError,
)
from shift_allocation.locks import ShiftLockRegistry
from shift_allocation.models import (
    REJECTION_MESSAGES,
    Claim,
    ClaimStatus,
    EmploymentStatus,
    RejectionReason,
    Shift,
    ShiftStatus,
    WorkerProfile,
    as_utc,
)
from shift_allocation.notifier import (
    ClaimApproved,
    ClaimRejected,
    EmitFn,
    Event,
    ShiftAssigned,
    dispatch_all,
    log_event,
)
from shift_allocation.priority import compute_priority, ranking_key
from shift_allocation.repository import Repository
from shift_allocation.reputation import ReputationEngine, reliability_for
from shift_allocation.visibility import VisibilityResolver

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]


class ClaimRejection(BaseModel):
    reason: RejectionReason
    message: str
    detail: str | None = None
    required_reputation: float | None = None
    actual_reputation: float | None = None
    conflicting_shift_id: str | None = None
    time_off_id: str | None = None


def rejection(reason: RejectionReason, detail: str | None = None, **extra) -> ClaimRejection:
    return ClaimRejection(
        reason=reason, message=REJECTION_MESSAGES[reason], detail=detail, **extra
    )


class ResolutionOutcome(StrEnum):
    ASSIGNED = "ASSIGNED"
    NO_ELIGIBLE_CLAIMS = "NO_ELIGIBLE_CLAIMS"
    SHIFT_UNAVAILABLE = "SHIFT_UNAVAILABLE"


class ResolutionResult(BaseModel):
    shift_id: str
    outcome: ResolutionOutcome
    shift_status: ShiftStatus
    winner: Claim | None = None
    losers: list[Claim] = Field(default_factory=list)

    @computed_field
    @property
    def approved_count(self) -> int:
        return 1 if self.winner is not None else 0

    @computed_field
    @property
    def rejected_count(self) -> int:
        return len(self.losers)


class ClaimResult(BaseModel):
    accepted: bool
    claim: Claim | None = None
    rejection: ClaimRejection | None = None
    resolution: ResolutionResult | None = None


class ClaimArbiter:
    def __init__(
        self,
        repository: Repository,
        visibility: VisibilityResolver,
        reputation: ReputationEngine,
        config: AllocationConfig,
        *,
        locks: ShiftLockRegistry | None = None,
        emit: EmitFn = log_event,
        now_fn: NowFn | None = None,
        id_fn: Callable[[], str] | None = None,
    ) -> None:
        self.repository = repository
        self.visibility = visibility
        self.reputation = reputation
        self.config = config
        self.locks = locks or ShiftLockRegistry(
            timeout=config.lock_timeout_seconds,
            retry_delay=(config.retry_delay_min_seconds, config.retry_delay_max_seconds),
        )
        self.emit = emit
        self.now_fn = now_fn or (lambda: datetime.now(UTC))
        self.id_fn = id_fn or (lambda: uuid4().hex)

    # -- gating ---------------------------------------------------------

    def gate(
        self, shift: Shift, worker: WorkerProfile, now: datetime
    ) -> ClaimRejection | None:
        """
        Run every claim gate for `worker` on `shift` at `now`. Returns the
        first failure, or None if the worker may hold a claim.
        """
        seen = self.visibility.resolve(shift, worker, now)
        if not seen.visible:
            return rejection(
                seen.reason or RejectionReason.OUTSIDE_VISIBILITY_WINDOW,
                seen.detail,
                required_reputation=seen.required_reputation,
                actual_reputation=seen.actual_reputation,
            )

        if worker.status != EmploymentStatus.ACTIVE:
            return rejection(
                RejectionReason.NOT_VERIFIED,
                f"Employment status is {worker.status}",
            )

        if worker.restaurant_id == shift.restaurant_id:
            # network claimants were already checked by the visibility resolver
            if shift.position not in worker.positions:
                return rejection(
                    RejectionReason.NOT_QUALIFIED,
                    f"Worker is not qualified for position: {shift.position}",
                )
            if shift.min_reputation:
                meets, rating = self.reputation.meets_minimum(
                    worker.user_id, shift.min_reputation
                )
                if not meets:
                    return rejection(
                        RejectionReason.BELOW_MINIMUM_REPUTATION,
                        f"Worker does not meet shift minimum reputation "
                        f"({shift.min_reputation:g})",
                        required_reputation=shift.min_reputation,
                        actual_reputation=rating,
                    )

        conflict = find_scheduling_conflict(self.repository, worker, shift)
        if conflict is not None:
            return rejection(
                RejectionReason.SCHEDULING_CONFLICT,
                f"Overlaps confirmed shift {conflict.id}",
                conflicting_shift_id=conflict.id,
            )

        time_off = find_time_off_conflict(self.repository, worker, shift)
        if time_off is not None:
            return rejection(
                RejectionReason.TIME_OFF_CONFLICT,
                f"Overlaps approved time off {time_off.id}",
                time_off_id=time_off.id,
            )

        return None

    def should_auto_approve(self, shift: Shift, worker: WorkerProfile) -> bool:
        restaurant = self.repository.get_restaurant(shift.restaurant_id)
        if restaurant is None or not restaurant.auto_approve_claims:
            return False
        if reliability_for(worker) < restaurant.auto_approve_threshold:
            return False
        if worker.restaurant_id != shift.restaurant_id:
            network = self.repository.network_for_restaurant(restaurant)
            if network is None or network.require_cross_restaurant_approval:
                return False
        return True

    # -- submission -----------------------------------------------------

    async def submit_claim(
        self,
        shift_id: str,
        worker_id: str,
        submitted_at: datetime | None = None,
        *,
        timeout: float | None = None,
    ) -> ClaimResult:
        self.repository.require_shift(shift_id)
        self.repository.require_worker(worker_id)
        now = as_utc(submitted_at or self.now_fn())

        events: list[Event] = []
        async with self.locks.hold(shift_id, timeout):
            shift = self.repository.require_shift(shift_id)
            worker = self.repository.require_worker(worker_id)

            refused = self._precheck(shift, worker_id) or self.gate(shift, worker, now)
            if refused is not None:
                logger.info(
                    "claim on shift %s by worker %s rejected: %s",
                    shift_id,
                    worker_id,
                    refused.reason,
                )
                return ClaimResult(accepted=False, rejection=refused)

            claim = Claim(
                id=self.id_fn(),
                shift_id=shift_id,
                worker_id=worker_id,
                submitted_at=now,
                priority_score=compute_priority(
                    worker.tier, reliability_for(worker), self.config.priority
                ),
            )
            self.repository.save_claim(claim)
            logger.info(
                "claim %s on shift %s by worker %s (priority %s)",
                claim.id,
                shift_id,
                worker_id,
                claim.priority_score,
            )

            resolution = None
            if self.should_auto_approve(shift, worker):
                logger.info("shift %s auto-approval triggered by claim %s", shift_id, claim.id)
                resolution, events = self._resolve_locked(shift_id, now)

        await dispatch_all(self.emit, events)
        return ClaimResult(
            accepted=True,
            claim=self.repository.get_claim(claim.id) or claim,
            resolution=resolution,
        )

    def _precheck(self, shift: Shift, worker_id: str) -> ClaimRejection | None:
        if shift.status != ShiftStatus.PUBLISHED_UNASSIGNED:
            return rejection(
                RejectionReason.SHIFT_NOT_OPEN, f"Shift status is {shift.status}"
            )
        for existing in self.repository.claims_for_shift(shift.id, ClaimStatus.PENDING):
            if existing.worker_id == worker_id:
                return rejection(
                    RejectionReason.DUPLICATE_CLAIM, f"Pending claim {existing.id}"
                )
        return None

    # -- resolution -----------------------------------------------------

    async def resolve_claims(
        self,
        shift_id: str,
        now: datetime | None = None,
        *,
        timeout: float | None = None,
    ) -> ResolutionResult:
        self.repository.require_shift(shift_id)
        now = as_utc(now or self.now_fn())

        async with self.locks.hold(shift_id, timeout):
            result, events = self._resolve_locked(shift_id, now)

        await dispatch_all(self.emit, events)
        return result

    def _resolve_locked(
        self, shift_id: str, now: datetime
    ) -> tuple[ResolutionResult, list[Event]]:
        """Caller must hold the shift's lock. No awaits in here."""
        shift = self.repository.require_shift(shift_id)
        pending = self.repository.claims_for_shift(shift_id, ClaimStatus.PENDING)

        if shift.status != ShiftStatus.PUBLISHED_UNASSIGNED:
            logger.warning(
                "shift %s is %s, rejecting %d pending claims",
                shift_id,
                shift.status,
                len(pending),
            )
            decisions = [(c, RejectionReason.SHIFT_NOT_OPEN) for c in pending]
            losers, events = self._write_rejections(decisions, now)
            return (
                ResolutionResult(
                    shift_id=shift_id,
                    outcome=ResolutionOutcome.SHIFT_UNAVAILABLE,
                    shift_status=shift.status,
                    losers=losers,
                ),
                events,
            )

        eligible: list[Claim] = []
        decisions: list[tuple[Claim, RejectionReason]] = []
        for claim in pending:
            worker = self.repository.get_worker(claim.worker_id)
            if worker is None:
                decisions.append((claim, RejectionReason.NOT_VERIFIED))
                continue
            refused = self.gate(shift, worker, now)
            if refused is not None:
                logger.info(
                    "claim %s no longer eligible at resolution: %s", claim.id, refused.reason
                )
                decisions.append((claim, refused.reason))
            else:
                eligible.append(claim)

        if not eligible:
            losers, events = self._write_rejections(decisions, now)
            logger.info("shift %s has no eligible claims, stays open", shift_id)
            return (
                ResolutionResult(
                    shift_id=shift_id,
                    outcome=ResolutionOutcome.NO_ELIGIBLE_CLAIMS,
                    shift_status=shift.status,
                    losers=losers,
                ),
                events,
            )

        ranked = sorted(eligible, key=ranking_key)
        decisions.extend((c, RejectionReason.OUTRANKED) for c in ranked[1:])
        return self._assign_locked(shift, ranked[0], decisions, now)

    def _assign_locked(
        self,
        shift: Shift,
        winning: Claim,
        decisions: list[tuple[Claim, RejectionReason]],
        now: datetime,
        resolved_by: str | None = None,
    ) -> tuple[ResolutionResult, list[Event]]:
        # the version check fails (StaleShiftError) if anything bypassed the lock
        assigned = self.repository.save_shift(
            shift.model_copy(
                update={
                    "status": ShiftStatus.CONFIRMED,
                    "assigned_worker_id": winning.worker_id,
                }
            ),
            expected_version=shift.version,
        )
        winner = winning.model_copy(
            update={
                "status": ClaimStatus.APPROVED,
                "resolved_at": now,
                "resolved_by": resolved_by,
            }
        )
        self.repository.save_claim(winner)
        losers, events = self._write_rejections(decisions, now)

        logger.info(
            "shift %s assigned to worker %s via claim %s (%d rejected)",
            shift.id,
            winner.worker_id,
            winner.id,
            len(losers),
        )
        events = [
            ClaimApproved(
                claim_id=winner.id,
                shift_id=shift.id,
                worker_id=winner.worker_id,
                occurred_at=now,
            ),
            ShiftAssigned(
                shift_id=shift.id,
                worker_id=winner.worker_id,
                restaurant_id=assigned.restaurant_id,
                occurred_at=now,
            ),
            *events,
        ]
        return (
            ResolutionResult(
                shift_id=shift.id,
                outcome=ResolutionOutcome.ASSIGNED,
                shift_status=assigned.status,
                winner=winner,
                losers=losers,
            ),
            events,
        )

    def _write_rejections(
        self,
        decisions: list[tuple[Claim, RejectionReason]],
        now: datetime,
        resolved_by: str | None = None,
    ) -> tuple[list[Claim], list[Event]]:
        losers: list[Claim] = []
        events: list[Event] = []
        for claim, reason in decisions:
            rejected = claim.model_copy(
                update={
                    "status": ClaimStatus.REJECTED,
                    "rejection_reason": reason,
                    "resolved_at": now,
                    "resolved_by": resolved_by,
                }
            )
            self.repository.save_claim(rejected)
            losers.append(rejected)
            events.append(
                ClaimRejected(
                    claim_id=claim.id,
                    shift_id=claim.shift_id,
                    worker_id=claim.worker_id,
                    reason=reason,
                    message=REJECTION_MESSAGES[reason],
                    occurred_at=now,
                )
            )
        return losers, events

    # -- manager decisions ----------------------------------------------

    async def approve_claim(
        self,
        claim_id: str,
        resolved_by: str,
        now: datetime | None = None,
        *,
        timeout: float | None = None,
    ) -> ResolutionResult:
        """
        Approve one pending claim ahead of ranking. The claim is gated again
        first; if it no longer passes it is rejected with that reason and
        the shift stays open. Otherwise every other pending claim on the
        shift is rejected as OUTRANKED.
        """
        claim = self.repository.require_claim(claim_id)
        now = as_utc(now or self.now_fn())

        async with self.locks.hold(claim.shift_id, timeout):
            result, events = self._approve_locked(claim_id, resolved_by, now)

        await dispatch_all(self.emit, events)
        return result

    def _approve_locked(
        self, claim_id: str, resolved_by: str, now: datetime
    ) -> tuple[ResolutionResult, list[Event]]:
        claim = self.repository.require_claim(claim_id)
        if claim.status != ClaimStatus.PENDING:
            raise ClaimAlreadyResolvedError(claim_id, claim.status)
        shift = self.repository.require_shift(claim.shift_id)
        if shift.status != ShiftStatus.PUBLISHED_UNASSIGNED:
            raise ShiftUnavailableError(shift.id, shift.status)

        worker = self.repository.get_worker(claim.worker_id)
        refused = (
            rejection(RejectionReason.NOT_VERIFIED, "Worker profile no longer exists")
            if worker is None
            else self.gate(shift, worker, now)
        )
        if refused is not None:
            logger.info(
                "approval of claim %s by %s refused: %s", claim_id, resolved_by, refused.reason
            )
            losers, events = self._write_rejections(
                [(claim, refused.reason)], now, resolved_by
            )
            return (
                ResolutionResult(
                    shift_id=shift.id,
                    outcome=ResolutionOutcome.NO_ELIGIBLE_CLAIMS,
                    shift_status=shift.status,
                    losers=losers,
                ),
                events,
            )

        others = [
            (c, RejectionReason.OUTRANKED)
            for c in self.repository.claims_for_shift(shift.id, ClaimStatus.PENDING)
            if c.id != claim_id
        ]
        logger.info("claim %s approved by %s", claim_id, resolved_by)
        return self._assign_locked(shift, claim, others, now, resolved_by)

    async def reject_claim(
        self,
        claim_id: str,
        resolved_by: str,
        reason: RejectionReason = RejectionReason.MANAGER_REJECTED,
        now: datetime | None = None,
        *,
        timeout: float | None = None,
    ) -> Claim:
        claim = self.repository.require_claim(claim_id)
        now = as_utc(now or self.now_fn())

        async with self.locks.hold(claim.shift_id, timeout):
            claim = self.repository.require_claim(claim_id)
            if claim.status != ClaimStatus.PENDING:
                raise ClaimAlreadyResolvedError(claim_id, claim.status)
            losers, events = self._write_rejections([(claim, reason)], now, resolved_by)
        logger.info("claim %s rejected by %s: %s", claim_id, resolved_by, reason)

        await dispatch_all(self.emit, events)
        return losers[0]

    # -- other operations -----------------------------------------------

    async def withdraw_claim(
        self, claim_id: str, worker_id: str, *, timeout: float | None = None
    ) -> None:
        claim = self.repository.require_claim(claim_id)
        if claim.worker_id != worker_id:
            raise NotFoundError("Claim", claim_id)

        async with self.locks.hold(claim.shift_id, timeout):
            claim = self.repository.require_claim(claim_id)
            if claim.status != ClaimStatus.PENDING:
                raise ClaimAlreadyResolvedError(claim_id, claim.status)
            self.repository.delete_claim(claim_id)
        logger.info("claim %s withdrawn by worker %s", claim_id, worker_id)

    async def assign_shift(
        self,
        shift_id: str,
        worker_id: str,
        now: datetime | None = None,
        *,
        timeout: float | None = None,
    ) -> Shift:
        """Direct manager assignment. Pending claims are left for resolution to report."""
        self.repository.require_worker(worker_id)
        now = as_utc(now or self.now_fn())

        async with self.locks.hold(shift_id, timeout):
            shift = self.repository.require_shift(shift_id)
            if shift.status != ShiftStatus.PUBLISHED_UNASSIGNED:
                raise ShiftUnavailableError(shift_id, shift.status)
            assigned = self.repository.save_shift(
                shift.model_copy(
                    update={
                        "status": ShiftStatus.CONFIRMED,
                        "assigned_worker_id": worker_id,
                    }
                ),
                expected_version=shift.version,
            )
        logger.info("shift %s assigned directly to worker %s", shift_id, worker_id)

        await dispatch_all(
            self.emit,
            [
                ShiftAssigned(
                    shift_id=shift_id,
                    worker_id=worker_id,
                    restaurant_id=assigned.restaurant_id,
                    occurred_at=now,
                )
            ],
        )
        return assigned

    def claims_for_shift(self, shift_id: str) -> list[Claim]:
        self.repository.require_shift(shift_id)
        return sorted(self.repository.claims_for_shift(shift_id), key=ranking_key)

    def claims_for_worker(
        self, worker_id: str, status: ClaimStatus | None = None
    ) -> list[Claim]:
        """A worker's claims, most recent first."""
        self.repository.require_worker(worker_id)
        return self.repository.claims_for_worker(worker_id, status)

    def pending_claims_for_restaurant(self, restaurant_id: str) -> list[Claim]:
        """Pending claims on the restaurant's shifts: soonest shift first, then by rank."""
        starts = {
            s.id: s.start_time
            for s in self.repository.shifts_for_restaurant(restaurant_id)
        }
        pending = self.repository.claims_for_shifts(starts, ClaimStatus.PENDING)
        return sorted(pending, key=lambda c: (starts[c.shift_id], *ranking_key(c)))
