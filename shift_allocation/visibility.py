"""
Shift visibility.

A shift moves through three phases as its start time approaches:

    NETWORK         >= visibility threshold before start, restaurant in a
                    network with cross-restaurant shifts enabled
    OWN_RESTAURANT  default; also once inside the threshold
    CLOSED          the shift has started

The phase is never stored. It is recomputed from `now`, the shift start
and configuration on every query.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field, computed_field

from shift_allocation.config import AllocationConfig
from shift_allocation.geo import haversine_miles
from shift_allocation.models import (
    EmploymentStatus,
    NetworkSettings,
    RejectionReason,
    RestaurantSettings,
    Shift,
    WorkerProfile,
    as_utc,
)
from shift_allocation.repository import Repository
from shift_allocation.reputation import ReputationEngine

logger = logging.getLogger(__name__)


class VisibilityPhase(StrEnum):
    OWN_RESTAURANT = "OWN_RESTAURANT"
    NETWORK = "NETWORK"
    CLOSED = "CLOSED"


class VisibilityResult(BaseModel):
    shift_id: str
    worker_id: str
    phase: VisibilityPhase
    visible: bool
    hours_until_start: float
    reason: RejectionReason | None = None
    detail: str | None = None
    distance_miles: float | None = None
    required_reputation: float | None = None
    actual_reputation: float | None = None
    failed_checks: list[RejectionReason] = Field(default_factory=list)


class ShiftWithVisibility(BaseModel):
    shift: Shift
    visibility: VisibilityResult


class ShiftAudience(BaseModel):
    """Workers who can currently see a shift, split by where they work."""

    shift_id: str
    phase: VisibilityPhase
    own_restaurant_workers: list[WorkerProfile] = Field(default_factory=list)
    network_workers: list[WorkerProfile] = Field(default_factory=list)

    @computed_field
    @property
    def total_eligible(self) -> int:
        return len(self.own_restaurant_workers) + len(self.network_workers)


@dataclass
class _CheckOutcome:
    passed: bool
    detail: str | None = None
    required: float | None = None
    actual: float | None = None


def hours_until(start_time: datetime, now: datetime) -> float:
    return (as_utc(start_time) - as_utc(now)).total_seconds() / 3600


def network_enabled(
    restaurant: RestaurantSettings | None, network: NetworkSettings | None
) -> bool:
    return (
        restaurant is not None
        and network is not None
        and restaurant.network_id == network.id
        and network.enable_cross_restaurant_shifts
    )


class VisibilityResolver:
    def __init__(
        self,
        repository: Repository,
        reputation: ReputationEngine,
        config: AllocationConfig,
    ) -> None:
        self.repository = repository
        self.reputation = reputation
        self.config = config

    def visibility_hours(self, restaurant: RestaurantSettings | None) -> float:
        if restaurant is None or restaurant.network_visibility_hours is None:
            return self.config.default_visibility_hours
        return restaurant.network_visibility_hours

    def shift_phase(self, shift: Shift, now: datetime) -> tuple[VisibilityPhase, float]:
        """Phase of `shift` at `now`, plus hours until it starts."""
        hours = hours_until(shift.start_time, now)
        if hours < 0:
            return VisibilityPhase.CLOSED, hours

        restaurant = self.repository.get_restaurant(shift.restaurant_id)
        network = self.repository.network_for_restaurant(restaurant)
        if not network_enabled(restaurant, network):
            return VisibilityPhase.OWN_RESTAURANT, hours
        if hours < self.visibility_hours(restaurant):
            return VisibilityPhase.OWN_RESTAURANT, hours
        return VisibilityPhase.NETWORK, hours

    def resolve(
        self,
        shift: Shift,
        worker: WorkerProfile,
        now: datetime,
        *,
        exhaustive: bool = False,
    ) -> VisibilityResult:
        """
        Decide whether `worker` can see `shift` at `now`.

        Checks run cheapest first and stop at the first failure, which
        becomes `reason`. With `exhaustive=True` every check runs and all
        failures are listed in `failed_checks`; `visible` is the same
        either way.
        """
        phase, hours = self.shift_phase(shift, now)
        shift_restaurant = self.repository.get_restaurant(shift.restaurant_id)
        shift_network = self.repository.network_for_restaurant(shift_restaurant)
        worker_restaurant = self.repository.get_restaurant(worker.restaurant_id)
        distance: float | None = None
        if shift_restaurant is not None and worker_restaurant is not None:
            distance = haversine_miles(
                worker_restaurant.lat,
                worker_restaurant.lng,
                shift_restaurant.lat,
                shift_restaurant.lng,
            )

        def not_started() -> _CheckOutcome:
            if phase == VisibilityPhase.CLOSED:
                return _CheckOutcome(False, "Shift has already started")
            return _CheckOutcome(True)

        def shift_in_network() -> _CheckOutcome:
            if not network_enabled(shift_restaurant, shift_network):
                return _CheckOutcome(
                    False,
                    "Shift restaurant is not in a network or cross-restaurant "
                    "shifts are disabled",
                )
            return _CheckOutcome(True)

        def same_network() -> _CheckOutcome:
            if (
                worker_restaurant is None
                or shift_restaurant is None
                or worker_restaurant.network_id is None
                or worker_restaurant.network_id != shift_restaurant.network_id
            ):
                return _CheckOutcome(False, "Worker is not in the same network")
            return _CheckOutcome(True)

        def network_window() -> _CheckOutcome:
            threshold = self.visibility_hours(shift_restaurant)
            if phase != VisibilityPhase.NETWORK:
                return _CheckOutcome(
                    False,
                    f"Shift is less than {threshold:g} hours away "
                    "(network visibility threshold)",
                )
            return _CheckOutcome(True)

        def holds_position() -> _CheckOutcome:
            if shift.position not in worker.positions:
                return _CheckOutcome(
                    False, f"Worker is not qualified for position: {shift.position}"
                )
            return _CheckOutcome(True)

        def meets_network_minimum() -> _CheckOutcome:
            minimum = shift_network.min_network_reputation if shift_network else 0.0
            return self._reputation_check(worker, minimum, "network")

        def meets_shift_minimum() -> _CheckOutcome:
            return self._reputation_check(worker, shift.min_reputation, "shift")

        def within_distance() -> _CheckOutcome:
            limit = shift_network.max_distance_miles if shift_network else 0.0
            if distance is None or distance > limit:
                shown = "unknown" if distance is None else f"{round(distance)}"
                return _CheckOutcome(
                    False, f"Shift is {shown} miles away (max: {limit:g} miles)"
                )
            return _CheckOutcome(True)

        checks: list[tuple[RejectionReason, Callable[[], _CheckOutcome]]]
        if worker.restaurant_id == shift.restaurant_id:
            checks = [(RejectionReason.OUTSIDE_VISIBILITY_WINDOW, not_started)]
        else:
            checks = [
                (RejectionReason.OUTSIDE_VISIBILITY_WINDOW, not_started),
                (RejectionReason.NETWORK_DISABLED, shift_in_network),
                (RejectionReason.NETWORK_DISABLED, same_network),
                (RejectionReason.OUTSIDE_VISIBILITY_WINDOW, network_window),
                (RejectionReason.NOT_QUALIFIED, holds_position),
                (RejectionReason.BELOW_MINIMUM_REPUTATION, meets_network_minimum),
                (RejectionReason.BELOW_MINIMUM_REPUTATION, meets_shift_minimum),
                (RejectionReason.OUTSIDE_MAX_DISTANCE, within_distance),
            ]

        failures: list[tuple[RejectionReason, _CheckOutcome]] = []
        for reason, check in checks:
            outcome = check()
            if outcome.passed:
                continue
            failures.append((reason, outcome))
            if not exhaustive:
                break

        result = VisibilityResult(
            shift_id=shift.id,
            worker_id=worker.id,
            phase=phase,
            visible=not failures,
            hours_until_start=round(hours, 2),
            distance_miles=round(distance, 1) if distance is not None else None,
            failed_checks=[reason for reason, _ in failures],
        )
        if failures:
            reason, outcome = failures[0]
            result.reason = reason
            result.detail = outcome.detail
            result.required_reputation = outcome.required
            result.actual_reputation = outcome.actual

        logger.debug(
            "visibility shift=%s worker=%s phase=%s visible=%s reason=%s",
            shift.id,
            worker.id,
            phase,
            result.visible,
            result.reason,
        )
        return result

    def _reputation_check(
        self, worker: WorkerProfile, minimum: float | None, scope: str
    ) -> _CheckOutcome:
        if not minimum or minimum <= 0:
            return _CheckOutcome(True)
        meets, rating = self.reputation.meets_minimum(worker.user_id, minimum)
        if meets:
            return _CheckOutcome(True)
        return _CheckOutcome(
            False,
            f"Worker does not meet {scope} minimum reputation ({minimum:g})",
            required=minimum,
            actual=rating,
        )

    def visible_shifts(
        self,
        worker: WorkerProfile,
        now: datetime,
        restaurant_id: str | None = None,
    ) -> list[ShiftWithVisibility]:
        results = []
        for shift in self.repository.open_shifts(restaurant_id):
            visibility = self.resolve(shift, worker, now)
            if visibility.visible:
                results.append(ShiftWithVisibility(shift=shift, visibility=visibility))
        return results

    def phases_for_restaurant(
        self, restaurant_id: str, now: datetime
    ) -> dict[VisibilityPhase, list[Shift]]:
        grouped: dict[VisibilityPhase, list[Shift]] = {p: [] for p in VisibilityPhase}
        for shift in self.repository.open_shifts(restaurant_id):
            phase, _ = self.shift_phase(shift, now)
            grouped[phase].append(shift)
        return grouped

    def workers_who_can_see_shift(self, shift: Shift, now: datetime) -> ShiftAudience:
        """
        Active workers qualified for the shift's position who can see it at
        `now`. Network workers only appear while the shift is in its network
        phase.
        """
        phase, _ = self.shift_phase(shift, now)
        audience = ShiftAudience(shift_id=shift.id, phase=phase)
        for worker in self.repository.workers():
            if worker.status != EmploymentStatus.ACTIVE:
                continue
            if shift.position not in worker.positions:
                continue
            if not self.resolve(shift, worker, now).visible:
                continue
            if worker.restaurant_id == shift.restaurant_id:
                audience.own_restaurant_workers.append(worker)
            else:
                audience.network_workers.append(worker)
        return audience
