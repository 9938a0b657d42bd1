"""
Worker reputation.

Two scores are kept:

- reliability (1.0-5.0), per restaurant profile, a pure function of that
  profile's counters. The `reliability_score` stored on the profile is only
  a cache of it.
- network reputation (0-500), per worker identity, aggregated across every
  profile the identity holds. It is recomputed on demand and cached for a
  short TTL; any counter change invalidates the cached entry.
"""

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from shift_allocation.cache import TTLCache
from shift_allocation.config import AllocationConfig, ReputationWeights
from shift_allocation.errors import NotFoundError
from shift_allocation.models import (
    ACTIVE_ASSIGNMENT_STATUSES,
    NetworkReputation,
    ReputationTier,
    RestaurantReputation,
    Shift,
    ShiftStatus,
    WorkerProfile,
)
from shift_allocation.repository import Repository

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]

NEUTRAL_RELIABILITY = 3.0
DEFAULT_RATING = 3.0


def average_rating(rating_sum: float, rating_count: int) -> float:
    return rating_sum / rating_count if rating_count > 0 else DEFAULT_RATING


def compute_reliability(
    *,
    shifts_completed: int,
    no_show_count: int,
    late_count: int,
    average_rating: float = DEFAULT_RATING,
) -> float:
    """
    Per-restaurant reliability on a 1-5 scale.

    New workers (no completed shifts) get a neutral 3.0. Otherwise start from
    the average manager rating, subtract the no-show and lateness rates
    (no-shows weigh 4x as much), add a small experience bonus, and clamp.
    """
    if shifts_completed <= 0:
        return NEUTRAL_RELIABILITY

    score = average_rating
    score -= (no_show_count / shifts_completed) * 2
    score -= (late_count / shifts_completed) * 0.5

    if shifts_completed >= 50:
        score += 0.2
    elif shifts_completed >= 20:
        score += 0.1

    return max(1.0, min(5.0, round(score, 2)))


def reliability_for(profile: WorkerProfile) -> float:
    return compute_reliability(
        shifts_completed=profile.shifts_completed,
        no_show_count=profile.no_show_count,
        late_count=profile.late_count,
        average_rating=average_rating(profile.rating_sum, profile.rating_count),
    )


def reliability_percent(total_shifts: int, late_count: int) -> int:
    if total_shifts <= 0:
        return 100
    return round((total_shifts - late_count) / total_shifts * 100)


def effective_no_shows(
    no_show_count: int,
    incident_dates: Sequence[datetime],
    now: datetime,
    weights: ReputationWeights,
) -> float:
    """
    Weight no-shows so older incidents count for less.

    In "flat" mode every incident counts `no_show_decay_factor`. In
    "half_life" mode each dated incident counts 0.5 ** (age / half_life);
    incidents without a recorded date still use the flat factor.
    """
    if weights.no_show_decay_mode == "flat":
        return no_show_count * weights.no_show_decay_factor

    dated = sorted(incident_dates, reverse=True)[:no_show_count]
    total = 0.0
    for occurred_at in dated:
        age_days = max(0.0, (now - occurred_at).total_seconds() / 86400)
        total += 0.5 ** (age_days / weights.no_show_half_life_days)
    undated = no_show_count - len(dated)
    return total + undated * weights.no_show_decay_factor


def compute_composite_score(
    *,
    total_shifts: int,
    average_rating: float,
    reliability_pct: int,
    effective_no_show_count: float,
    weights: ReputationWeights,
) -> int:
    score = min(total_shifts * weights.completed_shift_weight, weights.shift_points_cap)
    score += average_rating * weights.rating_weight

    if reliability_pct >= 95:
        score += weights.reliability_weight
    elif reliability_pct >= 90:
        score += weights.reliability_weight * 0.75
    elif reliability_pct >= 80:
        score += weights.reliability_weight * 0.5

    score -= effective_no_show_count * weights.no_show_penalty
    return max(0, min(500, round(score)))


def determine_tier(score: int) -> ReputationTier:
    if score >= 450:
        return ReputationTier.PLATINUM
    if score >= 400:
        return ReputationTier.GOLD
    if score >= 350:
        return ReputationTier.SILVER
    return ReputationTier.BRONZE


def shift_hours(shift: Shift) -> float:
    seconds = (shift.end_time - shift.start_time).total_seconds()
    return seconds / 3600 - shift.break_minutes / 60


def cache_key(user_id: str) -> str:
    return f"reputation:{user_id}"


class ReputationEngine:
    def __init__(
        self,
        repository: Repository,
        cache: TTLCache,
        config: AllocationConfig,
        *,
        now_fn: NowFn | None = None,
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.config = config
        self.now_fn = now_fn or (lambda: datetime.now(UTC))

    @property
    def weights(self) -> ReputationWeights:
        return self.config.reputation

    def _breakdown_for(self, profile: WorkerProfile) -> RestaurantReputation:
        restaurant = self.repository.get_restaurant(profile.restaurant_id)
        hours = sum(shift_hours(s) for s in self.repository.completed_shifts(profile.id))
        return RestaurantReputation(
            restaurant_id=profile.restaurant_id,
            restaurant_name=restaurant.name if restaurant else "",
            worker_id=profile.id,
            shifts_completed=profile.shifts_completed,
            hours_worked=round(hours, 1),
            average_rating=round(
                average_rating(profile.rating_sum, profile.rating_count), 2
            ),
            rating_count=profile.rating_count,
            no_show_count=profile.no_show_count,
            late_count=profile.late_count,
            reliability_score=reliability_for(profile),
            last_shift_at=profile.last_shift_at,
        )

    def _profiles(self, user_id: str) -> list[WorkerProfile]:
        profiles = self.repository.profiles_for_identity(user_id)
        if not profiles:
            raise NotFoundError("Worker identity", user_id)
        return profiles

    def get_reputation_breakdown(self, user_id: str) -> list[RestaurantReputation]:
        breakdown = [self._breakdown_for(p) for p in self._profiles(user_id)]
        return sorted(breakdown, key=lambda r: r.hours_worked, reverse=True)

    def compute_network_reputation(self, user_id: str) -> NetworkReputation:
        """Recompute from every profile of `user_id` and refresh the cache."""
        profiles = self._profiles(user_id)
        now = self.now_fn()

        total_shifts = sum(p.shifts_completed for p in profiles)
        total_no_shows = sum(p.no_show_count for p in profiles)
        total_late = sum(p.late_count for p in profiles)
        rating = average_rating(
            sum(p.rating_sum for p in profiles),
            sum(p.rating_count for p in profiles),
        )
        incident_dates = [d for p in profiles for d in p.no_show_dates]
        pct = reliability_percent(total_shifts, total_late)

        score = compute_composite_score(
            total_shifts=total_shifts,
            average_rating=rating,
            reliability_pct=pct,
            effective_no_show_count=effective_no_shows(
                total_no_shows, incident_dates, now, self.weights
            ),
            weights=self.weights,
        )
        breakdown = sorted(
            (self._breakdown_for(p) for p in profiles),
            key=lambda r: r.hours_worked,
            reverse=True,
        )

        reputation = NetworkReputation(
            user_id=user_id,
            score=score,
            rating=score / 100,
            tier=determine_tier(score),
            total_shifts=total_shifts,
            total_hours=round(sum(r.hours_worked for r in breakdown), 1),
            no_show_count=total_no_shows,
            reliability_percent=pct,
            average_rating=round(rating, 2),
            restaurant_count=len({p.restaurant_id for p in profiles}),
            breakdown=breakdown,
            calculated_at=now,
        )
        self.cache.set(
            cache_key(user_id), reputation, self.config.reputation_cache_ttl_seconds
        )
        logger.debug("reputation for %s recomputed: %s (%s)", user_id, score, reputation.tier)
        return reputation

    def get_network_reputation(self, user_id: str) -> NetworkReputation:
        cached = self.cache.get(cache_key(user_id))
        if isinstance(cached, NetworkReputation):
            logger.debug("reputation cache hit for %s", user_id)
            return cached
        return self.compute_network_reputation(user_id)

    def meets_minimum(self, user_id: str, minimum_rating: float) -> tuple[bool, float]:
        """Compare the identity's 0-5 network rating against `minimum_rating`."""
        rating = self.get_network_reputation(user_id).rating
        return rating >= minimum_rating, rating

    def invalidate(self, user_id: str) -> None:
        self.cache.delete(cache_key(user_id))

    # -- counter updates ------------------------------------------------

    def _finish_shift(self, shift: Shift, worker_id: str, status: ShiftStatus) -> None:
        if shift.assigned_worker_id != worker_id:
            raise ValueError(f"Shift {shift.id} is not assigned to worker {worker_id}")
        if shift.status not in ACTIVE_ASSIGNMENT_STATUSES:
            raise ValueError(
                f"Shift {shift.id} cannot move from {shift.status} to {status}"
            )
        self.repository.save_shift(
            shift.model_copy(update={"status": status}),
            expected_version=shift.version,
        )

    def _store_profile(self, worker: WorkerProfile) -> WorkerProfile:
        worker.reliability_score = reliability_for(worker)
        self.repository.save_worker(worker)
        self.invalidate(worker.user_id)
        return worker

    def record_shift_completed(
        self,
        worker_id: str,
        shift_id: str,
        *,
        rating: float | None = None,
        was_late: bool = False,
    ) -> WorkerProfile:
        if rating is not None and not 1 <= rating <= 5:
            raise ValueError(f"Rating must be between 1 and 5, got {rating}")

        shift = self.repository.require_shift(shift_id)
        worker = self.repository.require_worker(worker_id).model_copy(deep=True)
        self._finish_shift(shift, worker_id, ShiftStatus.COMPLETED)

        worker.shifts_completed += 1
        if was_late:
            worker.late_count += 1
        if rating is not None:
            worker.rating_sum += rating
            worker.rating_count += 1
        worker.last_shift_at = self.now_fn()

        logger.info("worker %s completed shift %s", worker_id, shift_id)
        return self._store_profile(worker)

    def record_no_show(self, worker_id: str, shift_id: str) -> WorkerProfile:
        shift = self.repository.require_shift(shift_id)
        worker = self.repository.require_worker(worker_id).model_copy(deep=True)
        self._finish_shift(shift, worker_id, ShiftStatus.NO_SHOW)

        worker.no_show_count += 1
        worker.no_show_dates.append(self.now_fn())

        logger.info("worker %s no-show on shift %s", worker_id, shift_id)
        return self._store_profile(worker)
