import itertools
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from shift_allocation.core import AllocationCore
from shift_allocation.models import (
    EmploymentStatus,
    NetworkSettings,
    RestaurantSettings,
    Shift,
    WorkerProfile,
    WorkerTier,
)
from shift_allocation.reputation import reliability_for

NOW = datetime(2025, 7, 2, 8, 0, 0, tzinfo=UTC)


class Clock:
    """Manually advanced now_fn."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def tick(self, **delta: float) -> None:
        self.now += timedelta(**delta)


def seed_network(core: AllocationCore) -> None:
    repo = core.repository
    repo.add(
        NetworkSettings(
            id="net-1",
            name="Harbor Group",
            enable_cross_restaurant_shifts=True,
            require_cross_restaurant_approval=True,
            max_distance_miles=25,
            min_network_reputation=3.0,
        )
    )
    repo.add(
        NetworkSettings(
            id="net-2",
            name="Uptown Collective",
            enable_cross_restaurant_shifts=True,
            max_distance_miles=25,
        )
    )
    # Lower Manhattan / Times Square are ~3.3 miles apart, Philadelphia ~80
    repo.add(RestaurantSettings(id="rest-a", name="Downtown Diner", network_id="net-1", lat=40.7128, lng=-74.0060))
    repo.add(RestaurantSettings(id="rest-b", name="Midtown Grill", network_id="net-1", lat=40.7580, lng=-73.9855))
    repo.add(RestaurantSettings(id="rest-far", name="Philly Cheesery", network_id="net-1", lat=39.9526, lng=-75.1652))
    repo.add(RestaurantSettings(id="rest-solo", name="Corner Cafe", network_id=None, lat=40.7130, lng=-74.0050))
    repo.add(RestaurantSettings(id="rest-other-net", name="Uptown Bistro", network_id="net-2", lat=40.7200, lng=-74.0000))


@pytest.fixture
def clock() -> Clock:
    return Clock(NOW)


@pytest.fixture
def emit() -> AsyncMock:
    return AsyncMock(return_value=None)


@pytest.fixture
def core(clock: Clock, emit: AsyncMock) -> AllocationCore:
    ids = itertools.count(1)
    core = AllocationCore(
        emit=emit, now_fn=clock, id_fn=lambda: f"claim-{next(ids)}"
    )
    seed_network(core)
    return core


@pytest_asyncio.fixture
async def running_core(core: AllocationCore):
    yield core
    # cancel any claim-window tasks still sleeping
    await core.shutdown()


@pytest.fixture
def add_worker(core: AllocationCore) -> Callable[..., WorkerProfile]:
    def _add(
        worker_id: str,
        *,
        user_id: str | None = None,
        restaurant_id: str = "rest-a",
        positions: set[str] | None = None,
        tier: WorkerTier = WorkerTier.PRIMARY,
        status: EmploymentStatus = EmploymentStatus.ACTIVE,
        shifts_completed: int = 10,
        average: float | None = 4.0,
        no_show_count: int = 0,
        late_count: int = 0,
    ) -> WorkerProfile:
        rating_count = shifts_completed if average is not None else 0
        worker = WorkerProfile(
            id=worker_id,
            user_id=user_id or worker_id,
            restaurant_id=restaurant_id,
            positions=positions if positions is not None else {"server"},
            tier=tier,
            status=status,
            shifts_completed=shifts_completed,
            no_show_count=no_show_count,
            late_count=late_count,
            rating_sum=(average or 0) * rating_count,
            rating_count=rating_count,
        )
        worker.reliability_score = reliability_for(worker)
        core.repository.add(worker)
        return worker

    return _add


@pytest.fixture
def add_shift(core: AllocationCore) -> Callable[..., Shift]:
    def _add(
        shift_id: str,
        *,
        restaurant_id: str = "rest-a",
        position: str = "server",
        starts_in: timedelta = timedelta(hours=6),
        length: timedelta = timedelta(hours=8),
        min_reputation: float | None = None,
    ) -> Shift:
        shift = Shift(
            id=shift_id,
            restaurant_id=restaurant_id,
            position=position,
            start_time=NOW + starts_in,
            end_time=NOW + starts_in + length,
            min_reputation=min_reputation,
        )
        core.repository.add(shift)
        return shift

    return _add
