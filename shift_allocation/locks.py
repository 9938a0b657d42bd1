import asyncio
import logging
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from shift_allocation.errors import ShiftContendedError

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class ShiftLockRegistry:
    """
    One asyncio.Lock per shift id. Acquisition is bounded: after a timeout
    it waits a short random delay, tries once more, then raises
    ShiftContendedError instead of blocking.

    A shift's lock is dropped once no task holds or waits on it.
    """

    def __init__(
        self,
        *,
        timeout: float = 2.0,
        retry_delay: tuple[float, float] = (0.01, 0.05),
        sleep_fn: SleepFn = asyncio.sleep,
    ) -> None:
        self.timeout = timeout
        self.retry_delay = retry_delay
        self.sleep_fn = sleep_fn
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def lock_for(self, shift_id: str) -> asyncio.Lock:
        # setdefault has no await point, so two tasks cannot create two locks
        return self._locks.setdefault(shift_id, asyncio.Lock())

    async def _acquire(self, lock: asyncio.Lock, timeout: float) -> bool:
        try:
            async with asyncio.timeout(timeout):
                await lock.acquire()
        except TimeoutError:
            return False
        return True

    def _leave(self, shift_id: str) -> None:
        remaining = self._users.get(shift_id, 0) - 1
        if remaining > 0:
            self._users[shift_id] = remaining
            return
        self._users.pop(shift_id, None)
        self._locks.pop(shift_id, None)

    @asynccontextmanager
    async def hold(
        self, shift_id: str, timeout: float | None = None
    ) -> AsyncIterator[None]:
        timeout = self.timeout if timeout is None else timeout
        lock = self.lock_for(shift_id)
        self._users[shift_id] = self._users.get(shift_id, 0) + 1

        try:
            acquired = await self._acquire(lock, timeout)
            if not acquired:
                delay = random.uniform(*self.retry_delay)
                logger.warning(
                    "shift %s lock contended, retrying once in %.3fs", shift_id, delay
                )
                await self.sleep_fn(delay)
                acquired = await self._acquire(lock, timeout)
            if not acquired:
                raise ShiftContendedError(shift_id, timeout)

            try:
                yield
            finally:
                lock.release()
        finally:
            self._leave(shift_id)

    def is_locked(self, shift_id: str) -> bool:
        lock = self._locks.get(shift_id)
        return lock is not None and lock.locked()
