"""
Deduplicator — short-window idempotency filter for inbound webhook deliveries.

Best-effort at-most-once handling: a message id seen within the freshness
window is reported as processed. Nothing is persisted.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from typing import Callable, Optional

logger = structlog.get_logger()


class Deduplicator:
    """TTL-based seen-set keyed by inbound message id."""

    def __init__(
        self,
        window_seconds: float = 300.0,
        sweep_interval_seconds: float = 60.0,
        clock: Callable[[], float] = None,
    ):
        self.window = window_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock or time.monotonic
        self._seen: dict[str, float] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def record(self, message_id: str) -> None:
        if message_id:
            self._seen[message_id] = self._clock()

    def is_processed(self, message_id: str) -> bool:
        if not message_id:
            return False
        seen_at = self._seen.get(message_id)
        if seen_at is None:
            return False
        return self._clock() - seen_at <= self.window

    def check_and_record(self, message_id: str) -> bool:
        """True if the id is a fresh duplicate; otherwise records it."""
        if self.is_processed(message_id):
            logger.info("inbound_duplicate_dropped", message_id=message_id)
            return True
        self.record(message_id)
        return False

    def sweep(self) -> int:
        cutoff = self._clock() - self.window
        expired = [k for k, t in self._seen.items() if t < cutoff]
        for k in expired:
            del self._seen[k]
        return len(expired)

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name="dedup_sweeper")

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                dropped = self.sweep()
                if dropped:
                    logger.debug("dedup_swept", dropped=dropped, remaining=len(self._seen))
            except Exception as e:
                logger.error("dedup_sweep_error", error=str(e))

    def __len__(self) -> int:
        return len(self._seen)
