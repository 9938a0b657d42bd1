"""
Entry point for the allocation core.

`AllocationCore` wires the reputation engine, visibility resolver and claim
arbiter around explicitly supplied persistence, cache and notification
collaborators, and exposes the operations callers use.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime

from shift_allocation.arbiter import (
    ClaimArbiter,
    ClaimResult,
    ResolutionOutcome,
    ResolutionResult,
)
from shift_allocation.cache import TTLCache
from shift_allocation.config import AllocationConfig
from shift_allocation.errors import AllocationError, InternalError
from shift_allocation.locks import ShiftLockRegistry
from shift_allocation.models import (
    Claim,
    ClaimStatus,
    NetworkReputation,
    RejectionReason,
    RestaurantReputation,
    Shift,
    WorkerProfile,
)
from shift_allocation.notifier import EmitFn, log_event
from shift_allocation.repository import Repository
from shift_allocation.reputation import ReputationEngine
from shift_allocation.visibility import (
    ShiftAudience,
    ShiftWithVisibility,
    VisibilityPhase,
    VisibilityResolver,
    VisibilityResult,
)
from shift_allocation.windows import ClaimWindowScheduler, window_closes_at

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]
SleepFn = Callable[[float], Awaitable[None]]


@contextmanager
def _internal_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (AllocationError, ValueError):
        raise
    except Exception as exc:
        logger.exception("%s failed", operation)
        raise InternalError(f"{operation} failed") from exc


class AllocationCore:
    def __init__(
        self,
        repository: Repository | None = None,
        cache: TTLCache | None = None,
        config: AllocationConfig | None = None,
        *,
        emit: EmitFn = log_event,
        now_fn: NowFn | None = None,
        sleep_fn: SleepFn = asyncio.sleep,
        id_fn: Callable[[], str] | None = None,
    ) -> None:
        self.config = config or AllocationConfig()
        self.repository = repository or Repository()
        self.now_fn = now_fn or (lambda: datetime.now(UTC))
        self.cache = cache or TTLCache(now_fn=self.now_fn)

        self.reputation = ReputationEngine(
            self.repository, self.cache, self.config, now_fn=self.now_fn
        )
        self.visibility = VisibilityResolver(
            self.repository, self.reputation, self.config
        )
        self.locks = ShiftLockRegistry(
            timeout=self.config.lock_timeout_seconds,
            retry_delay=(
                self.config.retry_delay_min_seconds,
                self.config.retry_delay_max_seconds,
            ),
            sleep_fn=sleep_fn,
        )
        self.arbiter = ClaimArbiter(
            self.repository,
            self.visibility,
            self.reputation,
            self.config,
            locks=self.locks,
            emit=emit,
            now_fn=self.now_fn,
            id_fn=id_fn,
        )
        self.windows = ClaimWindowScheduler(
            self._resolve_on_window_close, now_fn=self.now_fn, sleep_fn=sleep_fn
        )

    # -- visibility -----------------------------------------------------

    async def get_visible_shifts(
        self,
        worker_id: str,
        restaurant_id: str | None = None,
        now: datetime | None = None,
    ) -> list[ShiftWithVisibility]:
        with _internal_errors("get_visible_shifts"):
            worker = self.repository.require_worker(worker_id)
            return self.visibility.visible_shifts(
                worker, now or self.now_fn(), restaurant_id
            )

    async def check_visibility(
        self,
        shift_id: str,
        worker_id: str,
        now: datetime | None = None,
        *,
        exhaustive: bool = False,
    ) -> VisibilityResult:
        with _internal_errors("check_visibility"):
            shift = self.repository.require_shift(shift_id)
            worker = self.repository.require_worker(worker_id)
            return self.visibility.resolve(
                shift, worker, now or self.now_fn(), exhaustive=exhaustive
            )

    async def shift_phases(
        self, restaurant_id: str, now: datetime | None = None
    ) -> dict[VisibilityPhase, list[Shift]]:
        with _internal_errors("shift_phases"):
            return self.visibility.phases_for_restaurant(
                restaurant_id, now or self.now_fn()
            )

    # -- claims ---------------------------------------------------------

    async def submit_claim(
        self,
        shift_id: str,
        worker_id: str,
        now: datetime | None = None,
        *,
        timeout: float | None = None,
    ) -> ClaimResult:
        with _internal_errors("submit_claim"):
            result = await self.arbiter.submit_claim(
                shift_id, worker_id, now, timeout=timeout
            )

        if result.resolution is not None:
            self.windows.cancel(shift_id)
        elif result.accepted:
            self._schedule_window(shift_id)
        return result

    async def resolve_claims(
        self,
        shift_id: str,
        now: datetime | None = None,
        *,
        timeout: float | None = None,
    ) -> ResolutionResult:
        with _internal_errors("resolve_claims"):
            result = await self.arbiter.resolve_claims(shift_id, now, timeout=timeout)
        self.windows.cancel(shift_id)
        return result

    async def _resolve_on_window_close(self, shift_id: str) -> ResolutionResult:
        logger.info("claim window closed for shift %s", shift_id)
        return await self.arbiter.resolve_claims(shift_id)

    def _schedule_window(self, shift_id: str) -> None:
        first_claim_at = self.repository.earliest_pending_claim_at(shift_id)
        if first_claim_at is None:
            return
        shift = self.repository.require_shift(shift_id)
        restaurant = self.repository.get_restaurant(shift.restaurant_id)
        minutes = (
            restaurant.claim_window_minutes
            if restaurant is not None and restaurant.claim_window_minutes is not None
            else self.config.default_claim_window_minutes
        )
        self.windows.schedule(shift_id, window_closes_at(first_claim_at, minutes))

    async def approve_claim(
        self,
        claim_id: str,
        resolved_by: str,
        now: datetime | None = None,
        *,
        timeout: float | None = None,
    ) -> ResolutionResult:
        with _internal_errors("approve_claim"):
            result = await self.arbiter.approve_claim(
                claim_id, resolved_by, now, timeout=timeout
            )
        if result.outcome == ResolutionOutcome.ASSIGNED:
            self.windows.cancel(result.shift_id)
        return result

    async def reject_claim(
        self,
        claim_id: str,
        resolved_by: str,
        reason: RejectionReason = RejectionReason.MANAGER_REJECTED,
        now: datetime | None = None,
        *,
        timeout: float | None = None,
    ) -> Claim:
        with _internal_errors("reject_claim"):
            return await self.arbiter.reject_claim(
                claim_id, resolved_by, reason, now, timeout=timeout
            )

    async def withdraw_claim(
        self, claim_id: str, worker_id: str, *, timeout: float | None = None
    ) -> None:
        with _internal_errors("withdraw_claim"):
            await self.arbiter.withdraw_claim(claim_id, worker_id, timeout=timeout)

    async def assign_shift(
        self,
        shift_id: str,
        worker_id: str,
        now: datetime | None = None,
        *,
        timeout: float | None = None,
    ) -> Shift:
        with _internal_errors("assign_shift"):
            return await self.arbiter.assign_shift(
                shift_id, worker_id, now, timeout=timeout
            )

    async def claims_for_shift(self, shift_id: str) -> list[Claim]:
        with _internal_errors("claims_for_shift"):
            return self.arbiter.claims_for_shift(shift_id)

    async def claims_for_worker(
        self, worker_id: str, status: ClaimStatus | None = None
    ) -> list[Claim]:
        with _internal_errors("claims_for_worker"):
            return self.arbiter.claims_for_worker(worker_id, status)

    async def pending_claims_for_restaurant(self, restaurant_id: str) -> list[Claim]:
        with _internal_errors("pending_claims_for_restaurant"):
            return self.arbiter.pending_claims_for_restaurant(restaurant_id)

    async def workers_who_can_see_shift(
        self, shift_id: str, now: datetime | None = None
    ) -> ShiftAudience:
        with _internal_errors("workers_who_can_see_shift"):
            shift = self.repository.require_shift(shift_id)
            return self.visibility.workers_who_can_see_shift(
                shift, now or self.now_fn()
            )

    # -- reputation -----------------------------------------------------

    async def get_network_reputation(self, user_id: str) -> NetworkReputation:
        with _internal_errors("get_network_reputation"):
            return self.reputation.get_network_reputation(user_id)

    async def get_reputation_breakdown(
        self, user_id: str
    ) -> list[RestaurantReputation]:
        with _internal_errors("get_reputation_breakdown"):
            return self.reputation.get_reputation_breakdown(user_id)

    async def record_shift_completed(
        self,
        worker_id: str,
        shift_id: str,
        *,
        rating: float | None = None,
        was_late: bool = False,
    ) -> WorkerProfile:
        with _internal_errors("record_shift_completed"):
            return self.reputation.record_shift_completed(
                worker_id, shift_id, rating=rating, was_late=was_late
            )

    async def record_no_show(self, worker_id: str, shift_id: str) -> WorkerProfile:
        with _internal_errors("record_no_show"):
            return self.reputation.record_no_show(worker_id, shift_id)

    async def shutdown(self) -> None:
        await self.windows.shutdown()
