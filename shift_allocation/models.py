"""
Domain records for shift allocation: workers, shifts, claims and the
restaurant/network configuration they are evaluated against.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated

from pydantic import AfterValidator, BaseModel, Field


class WorkerTier(StrEnum):
    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"
    ON_CALL = "ON_CALL"


class EmploymentStatus(StrEnum):
    ACTIVE = "ACTIVE"
    ON_LEAVE = "ON_LEAVE"
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    TERMINATED = "TERMINATED"


class ShiftStatus(StrEnum):
    DRAFT = "DRAFT"
    PUBLISHED_UNASSIGNED = "PUBLISHED_UNASSIGNED"
    PUBLISHED_CLAIMED = "PUBLISHED_CLAIMED"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


ACTIVE_ASSIGNMENT_STATUSES = frozenset(
    {ShiftStatus.CONFIRMED, ShiftStatus.IN_PROGRESS}
)


class ClaimStatus(StrEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class TimeOffStatus(StrEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"


class ReputationTier(StrEnum):
    BRONZE = "BRONZE"
    SILVER = "SILVER"
    GOLD = "GOLD"
    PLATINUM = "PLATINUM"


class RejectionReason(StrEnum):
    NOT_VERIFIED = "NOT_VERIFIED"
    BELOW_MINIMUM_REPUTATION = "BELOW_MINIMUM_REPUTATION"
    SCHEDULING_CONFLICT = "SCHEDULING_CONFLICT"
    NETWORK_DISABLED = "NETWORK_DISABLED"
    TIME_OFF_CONFLICT = "TIME_OFF_CONFLICT"
    OUTSIDE_VISIBILITY_WINDOW = "OUTSIDE_VISIBILITY_WINDOW"
    NOT_QUALIFIED = "NOT_QUALIFIED"
    OUTSIDE_MAX_DISTANCE = "OUTSIDE_MAX_DISTANCE"
    SHIFT_NOT_OPEN = "SHIFT_NOT_OPEN"
    DUPLICATE_CLAIM = "DUPLICATE_CLAIM"
    OUTRANKED = "OUTRANKED"
    MANAGER_REJECTED = "MANAGER_REJECTED"


# Worker-facing text for each rejection code.
REJECTION_MESSAGES: dict[RejectionReason, str] = {
    RejectionReason.NOT_VERIFIED: (
        "Your profile must be active and verified before claiming shifts."
    ),
    RejectionReason.BELOW_MINIMUM_REPUTATION: (
        "Your reputation is below the minimum required for this shift."
    ),
    RejectionReason.SCHEDULING_CONFLICT: (
        "You already have a confirmed shift during this time."
    ),
    RejectionReason.NETWORK_DISABLED: (
        "This shift is not shared with your restaurant's network."
    ),
    RejectionReason.TIME_OFF_CONFLICT: (
        "You have approved time off during this shift."
    ),
    RejectionReason.OUTSIDE_VISIBILITY_WINDOW: (
        "This shift is not open to you at this time."
    ),
    RejectionReason.NOT_QUALIFIED: (
        "You are not qualified for this shift's position."
    ),
    RejectionReason.OUTSIDE_MAX_DISTANCE: (
        "This shift is too far from your home restaurant."
    ),
    RejectionReason.SHIFT_NOT_OPEN: "This shift is no longer available.",
    RejectionReason.DUPLICATE_CLAIM: "You have already claimed this shift.",
    RejectionReason.OUTRANKED: "Another worker was selected for this shift.",
    RejectionReason.MANAGER_REJECTED: "Your claim was declined by the restaurant.",
}


class NetworkSettings(BaseModel):
    id: str
    name: str = ""
    enable_cross_restaurant_shifts: bool = False
    require_cross_restaurant_approval: bool = True
    max_distance_miles: float = 25.0
    min_network_reputation: float = 0.0  # 0-5 rating


class RestaurantSettings(BaseModel):
    id: str
    name: str = ""
    network_id: str | None = None
    lat: float = 0.0
    lng: float = 0.0
    network_visibility_hours: float | None = None  # None: use config default
    auto_approve_claims: bool = False
    auto_approve_threshold: float = 4.0
    claim_window_minutes: int | None = None  # None: use config default


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class WorkerProfile(BaseModel):
    """
    One worker's employment record at one restaurant. `user_id` is the
    identity shared by every profile of the same person.
    """

    id: str
    user_id: str
    restaurant_id: str
    positions: set[str] = Field(default_factory=set)
    tier: WorkerTier = WorkerTier.SECONDARY
    status: EmploymentStatus = EmploymentStatus.ACTIVE
    shifts_completed: int = 0
    no_show_count: int = 0
    late_count: int = 0
    rating_sum: float = 0.0
    rating_count: int = 0
    reliability_score: float = 3.0  # cache of compute_reliability(counters)
    no_show_dates: list[datetime] = Field(default_factory=list)
    last_shift_at: datetime | None = None


class Shift(BaseModel):
    id: str
    restaurant_id: str
    position: str
    start_time: UtcDatetime
    end_time: UtcDatetime
    break_minutes: int = 0
    status: ShiftStatus = ShiftStatus.PUBLISHED_UNASSIGNED
    min_reputation: float | None = None  # 0-5 rating
    assigned_worker_id: str | None = None
    version: int = 0


class Claim(BaseModel):
    id: str
    shift_id: str
    worker_id: str
    submitted_at: UtcDatetime
    priority_score: float
    status: ClaimStatus = ClaimStatus.PENDING
    rejection_reason: RejectionReason | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None  # None: resolved by the system


class TimeOffRequest(BaseModel):
    id: str
    worker_id: str
    start_time: UtcDatetime
    end_time: UtcDatetime
    status: TimeOffStatus = TimeOffStatus.PENDING


class RestaurantReputation(BaseModel):
    restaurant_id: str
    restaurant_name: str
    worker_id: str
    shifts_completed: int
    hours_worked: float
    average_rating: float
    rating_count: int
    no_show_count: int
    late_count: int
    reliability_score: float
    last_shift_at: datetime | None = None


class NetworkReputation(BaseModel):
    user_id: str
    score: int  # 0-500
    rating: float  # score / 100
    tier: ReputationTier
    total_shifts: int
    total_hours: float
    no_show_count: int
    reliability_percent: int
    average_rating: float
    restaurant_count: int
    breakdown: list[RestaurantReputation] = Field(default_factory=list)
    calculated_at: datetime
