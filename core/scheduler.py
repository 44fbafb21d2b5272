"""
Escalation Scheduler — one deferred fallback per session key.

arm() replaces any pending timer for the key; cancel() is idempotent. When a
timer fires it is removed from the registry before its policy runs, so a
cancel() issued by a concurrent inbound message cannot interrupt a fallback
that has already started. The policy is responsible for re-checking the
session (stage, newer activity) under the session lock.
"""
from __future__ import annotations

import asyncio
import itertools
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from models.schemas import Stage

logger = structlog.get_logger()

TimerPolicy = Callable[["PendingTimer"], Awaitable[Any]]


@dataclass
class PendingTimer:
    key: str
    deadline: float                  # loop.time() when the timer fires
    stage: Stage                     # stage snapshot at arm time
    policy: TimerPolicy
    seq: int
    version: int = 0                 # session version the timer was armed against
    armed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class EscalationScheduler:

    def __init__(self, grace_seconds: float = 60.0):
        self.grace_seconds = grace_seconds
        self._timers: dict[str, PendingTimer] = {}
        self._seq = itertools.count(1)
        self._running_policies: set[asyncio.Task] = set()

    def arm(self, key: str, stage: Stage, policy: TimerPolicy,
            delay: float = None, version: int = 0) -> PendingTimer:
        self.cancel(key)
        loop = asyncio.get_running_loop()
        delay = self.grace_seconds if delay is None else delay
        timer = PendingTimer(
            key=key,
            deadline=loop.time() + delay,
            stage=stage,
            policy=policy,
            seq=next(self._seq),
            version=version,
        )
        timer.task = asyncio.create_task(self._wait_and_fire(timer, delay), name=f"timer:{key}")
        self._timers[key] = timer
        logger.debug("timer_armed", key=key, stage=stage.value, delay_s=delay, seq=timer.seq)
        return timer

    def cancel(self, key: str) -> bool:
        timer = self._timers.pop(key, None)
        if timer is None:
            return False
        if timer.task and not timer.task.done():
            timer.task.cancel()
        logger.debug("timer_cancelled", key=key, seq=timer.seq)
        return True

    def pending(self, key: str) -> Optional[PendingTimer]:
        return self._timers.get(key)

    @property
    def count(self) -> int:
        return len(self._timers)

    async def _wait_and_fire(self, timer: PendingTimer, delay: float) -> None:
        await asyncio.sleep(delay)
        # Detach before running; the policy runs in its own task so a
        # cancel() on this key no longer reaches it.
        if self._timers.get(timer.key) is timer:
            del self._timers[timer.key]
        else:
            return
        task = asyncio.create_task(self._run_policy(timer), name=f"fallback:{timer.key}")
        self._running_policies.add(task)
        task.add_done_callback(self._running_policies.discard)

    async def _run_policy(self, timer: PendingTimer) -> None:
        logger.info("timer_fired", key=timer.key, stage=timer.stage.value, seq=timer.seq)
        try:
            await timer.policy(timer)
        except Exception as e:
            logger.error("timer_policy_failed", key=timer.key, stage=timer.stage.value, error=str(e))

    async def drain(self) -> None:
        """Wait for fallbacks that have already started."""
        while self._running_policies:
            await asyncio.gather(*list(self._running_policies), return_exceptions=True)

    async def shutdown(self) -> None:
        for key in list(self._timers):
            self.cancel(key)
        for task in list(self._running_policies):
            task.cancel()
        if self._running_policies:
            await asyncio.gather(*list(self._running_policies), return_exceptions=True)
        logger.info("scheduler_shutdown")
