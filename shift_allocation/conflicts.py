from datetime import datetime

from shift_allocation.models import Shift, TimeOffRequest, WorkerProfile
from shift_allocation.repository import Repository


def overlaps(
    start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime
) -> bool:
    # back-to-back shifts (one ends exactly when the other starts) do not overlap
    return start_a < end_b and end_a > start_b


def find_scheduling_conflict(
    repository: Repository, worker: WorkerProfile, candidate: Shift
) -> Shift | None:
    """
    First CONFIRMED/IN_PROGRESS shift held by any profile of the worker's
    identity that overlaps `candidate`.
    """
    profile_ids = [p.id for p in repository.profiles_for_identity(worker.user_id)]
    for existing in sorted(
        repository.active_assignments(profile_ids), key=lambda s: s.start_time
    ):
        if existing.id == candidate.id:
            continue
        if overlaps(existing.start_time, existing.end_time, candidate.start_time, candidate.end_time):
            return existing
    return None


def find_time_off_conflict(
    repository: Repository, worker: WorkerProfile, candidate: Shift
) -> TimeOffRequest | None:
    profile_ids = [p.id for p in repository.profiles_for_identity(worker.user_id)]
    for request in repository.approved_time_off(profile_ids):
        if overlaps(request.start_time, request.end_time, candidate.start_time, candidate.end_time):
            return request
    return None
