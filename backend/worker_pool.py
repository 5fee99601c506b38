"""Per-user bounded concurrency for completion work.

Each user gets a semaphore of ``per_user`` slots and every run also takes one of
``global_limit`` shared slots. A caller that cannot get both inside
``queue_timeout_sec`` fails with RateLimitError. User entries with no holders or waiters
are dropped once idle for ``idle_ttl_sec``.
"""

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Optional, TypeVar

from errors import RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _UserSlot:
    __slots__ = ("semaphore", "active", "last_used")

    def __init__(self, limit: int, now: float):
        self.semaphore = asyncio.Semaphore(limit)
        self.active = 0
        self.last_used = now


class UserWorkerPool:
    def __init__(
        self,
        per_user: int = 5,
        global_limit: int = 20,
        queue_timeout_sec: float = 30.0,
        idle_ttl_sec: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.per_user = max(1, per_user)
        self.global_limit = max(1, global_limit)
        self.queue_timeout_sec = queue_timeout_sec
        self.idle_ttl_sec = idle_ttl_sec
        self._clock = clock
        self._global = asyncio.Semaphore(self.global_limit)
        self._slots: dict[str, _UserSlot] = {}

    @classmethod
    def from_settings(cls, settings) -> "UserWorkerPool":
        return cls(
            per_user=settings.per_user_concurrency,
            global_limit=settings.global_concurrency,
            queue_timeout_sec=settings.queue_timeout_sec,
            idle_ttl_sec=settings.worker_idle_ttl_sec,
        )

    def _slot_for(self, user_id: str) -> _UserSlot:
        slot = self._slots.get(user_id)
        if slot is None:
            slot = _UserSlot(self.per_user, self._clock())
            self._slots[user_id] = slot
        return slot

    async def _acquire(self, slot: _UserSlot) -> None:
        # User slot first so one user's backlog never parks on shared capacity.
        await slot.semaphore.acquire()
        try:
            await self._global.acquire()
        except BaseException:
            slot.semaphore.release()
            raise

    async def run(self, user_id: str, fn: Callable[[], Awaitable[T]]) -> T:
        self.evict_idle()
        slot = self._slot_for(user_id)
        slot.active += 1
        try:
            try:
                await asyncio.wait_for(self._acquire(slot), timeout=self.queue_timeout_sec)
            except asyncio.TimeoutError:
                logger.warning("worker budget wait timed out user=%s timeout=%.1fs", user_id, self.queue_timeout_sec)
                raise RateLimitError(
                    "Too many concurrent requests, please try again shortly.",
                    retry_after=max(1, math.ceil(self.queue_timeout_sec)),
                )
            try:
                return await fn()
            finally:
                self._global.release()
                slot.semaphore.release()
        finally:
            slot.active -= 1
            slot.last_used = self._clock()

    def evict_idle(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        stale = [
            user_id
            for user_id, slot in self._slots.items()
            if slot.active == 0 and now - slot.last_used >= self.idle_ttl_sec
        ]
        for user_id in stale:
            del self._slots[user_id]
        if stale:
            logger.debug("evicted %d idle worker entries", len(stale))
        return len(stale)

    def active_for(self, user_id: str) -> int:
        slot = self._slots.get(user_id)
        return slot.active if slot else 0

    def stats(self) -> dict:
        return {
            "users": len(self._slots),
            "active": sum(s.active for s in self._slots.values()),
            "per_user": self.per_user,
            "global_limit": self.global_limit,
        }
