import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from shift_allocation.errors import AllocationError, ConflictError

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]
SleepFn = Callable[[float], Awaitable[None]]
ResolveFn = Callable[[str], Awaitable[object]]


class ClaimWindowScheduler:
    """
    Background tasks that resolve a shift's claims when its claim window
    closes. One task per shift; a task is cancelled if the shift gets
    resolved some other way first.
    """

    def __init__(
        self,
        resolve: ResolveFn,
        *,
        now_fn: NowFn | None = None,
        sleep_fn: SleepFn = asyncio.sleep,
    ) -> None:
        self.resolve = resolve
        self.now_fn = now_fn or (lambda: datetime.now(UTC))
        self.sleep_fn = sleep_fn
        self.tasks: set[asyncio.Task] = set()
        self.tasks_by_shift: dict[str, asyncio.Task] = {}

    def schedule(self, shift_id: str, closes_at: datetime) -> asyncio.Task | None:
        """Start a window task for `shift_id` unless one is already running."""
        existing = self.tasks_by_shift.get(shift_id)
        if existing is not None and not existing.done():
            return None

        task = asyncio.create_task(self._resolve_when_closed(shift_id, closes_at))
        self.tasks.add(task)
        self.tasks_by_shift[shift_id] = task

        def _cleanup(t: asyncio.Task) -> None:
            self.tasks.discard(t)
            if self.tasks_by_shift.get(shift_id) is t:
                self.tasks_by_shift.pop(shift_id, None)

        task.add_done_callback(_cleanup)
        logger.debug("claim window for shift %s closes at %s", shift_id, closes_at)
        return task

    def cancel(self, shift_id: str) -> None:
        task = self.tasks_by_shift.get(shift_id)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def shutdown(self) -> None:
        tasks = list(self.tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _resolve_when_closed(self, shift_id: str, closes_at: datetime) -> None:
        if closes_at.tzinfo is None:
            closes_at = closes_at.replace(tzinfo=UTC)

        try:
            remaining = (closes_at - self.now_fn()).total_seconds()
            if remaining > 0:
                await self.sleep_fn(remaining)
            await self.resolve(shift_id)
        except asyncio.CancelledError:
            return
        except ConflictError:
            logger.warning(
                "claim window resolution for shift %s hit contention", shift_id,
                exc_info=True,
            )
        except AllocationError:
            logger.exception("claim window resolution for shift %s failed", shift_id)


def window_closes_at(first_claim_at: datetime, window_minutes: int) -> datetime:
    return first_claim_at + timedelta(minutes=window_minutes)
