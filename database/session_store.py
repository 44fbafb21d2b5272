"""
SessionStore — Dict-backed, process-local conversation sessions.

Features:
  - Exactly one live session per normalized channel address
  - Shallow-merge updates of the session data bag
  - One asyncio.Lock per key (mutations of a session are serialized,
    different sessions never contend)
  - Periodic sweep: absolute max age, plus a much shorter idle limit for
    sessions still in an unauthenticated stage
  - All data lost on process restart
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from models.schemas import (
    FRAGILE_STAGES, Customer, Sender, Session, Stage, Turn,
)

logger = structlog.get_logger()

_UNSET = object()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore:
    """
    In-memory session registry with TTL eviction.

    `clock` is injectable so sweeps can be exercised deterministically.
    `on_evict` is called with the key of every evicted session (the
    orchestrator uses it to drop pending timers).
    """

    def __init__(
        self,
        max_age_seconds: float = 2 * 60 * 60,
        fragile_idle_seconds: float = 10 * 60,
        sweep_interval_seconds: float = 60.0,
        clock: Callable[[], datetime] = None,
        on_evict: Callable[[str], Any] = None,
    ):
        self.max_age = timedelta(seconds=max_age_seconds)
        self.fragile_idle = timedelta(seconds=fragile_idle_seconds)
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock or _utcnow
        self._on_evict = on_evict
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None

    # ── Lookup ────────────────────────────────────────────

    def get(self, key: str) -> Optional[Session]:
        return self._sessions.get(key)

    def get_or_create(self, key: str, customer: Optional[Customer] = None) -> tuple[Session, bool]:
        """Return (session, created). A new session starts in menu when bound."""
        session = self._sessions.get(key)
        if session:
            return session, False

        now = self._clock()
        session = Session(
            key=key,
            customer=customer,
            stage=Stage.MENU if customer else Stage.IDENTIFYING,
            created_at=now,
            last_activity_at=now,
        )
        self._sessions[key] = session
        logger.info("session_created",
                    key=key,
                    stage=session.stage.value,
                    customer_id=customer.id if customer else None)
        return session, True

    def lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ── Mutation ──────────────────────────────────────────

    def update(
        self,
        key: str,
        *,
        stage: Optional[Stage] = None,
        data: Optional[dict[str, Any]] = None,
        reset: bool = False,
        customer: Any = _UNSET,
        touch: bool = True,
    ) -> Session:
        """
        Partial update. `data` is shallow-merged into the bag; `reset`
        clears the bag first (explicit stage reset only).
        """
        session = self._sessions.get(key)
        if session is None:
            session, _ = self.get_or_create(key)

        if reset:
            session.data = {}
        if data:
            session.data = {**session.data, **data}
        if stage is not None:
            previous = session.stage
            session.stage = Stage.parse(stage)
            if previous != session.stage:
                logger.info("session_stage_changed",
                            key=key, from_stage=previous.value, to_stage=session.stage.value)
        if customer is not _UNSET:
            session.customer = customer
        if touch:
            session.last_activity_at = self._clock()
        session.version += 1
        return session

    def append_turn(self, key: str, sender: Sender, text: str) -> Optional[Session]:
        session = self._sessions.get(key)
        if session is None or not text:
            return session
        session.history.append(Turn(timestamp=self._clock(), sender=sender, text=text))
        if sender == Sender.CUSTOMER:
            session.last_activity_at = self._clock()
        return session

    def remove(self, key: str) -> Optional[Session]:
        removed = self._sessions.pop(key, None)
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            self._locks.pop(key, None)
        if removed:
            logger.info("session_removed", key=key, stage=removed.stage.value)
        return removed

    # ── Sweep ─────────────────────────────────────────────

    def is_expired(self, session: Session, now: datetime = None) -> bool:
        now = now or self._clock()
        if now - session.created_at > self.max_age:
            return True
        if session.stage in FRAGILE_STAGES and now - session.last_activity_at > self.fragile_idle:
            return True
        return False

    def sweep(self, now: datetime = None) -> list[str]:
        """Evict expired sessions; returns the evicted keys."""
        now = now or self._clock()
        expired = [k for k, s in self._sessions.items() if self.is_expired(s, now)]
        for key in expired:
            self.remove(key)
            if self._on_evict:
                try:
                    self._on_evict(key)
                except Exception as e:
                    logger.error("session_evict_hook_failed", key=key, error=str(e))
        if expired:
            logger.info("sessions_swept", evicted=len(expired), remaining=len(self._sessions))
        return expired

    async def start(self) -> None:
        """Start the periodic sweep as a background task."""
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name="session_sweeper")
        logger.info("session_sweeper_started", interval_s=self.sweep_interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("session_sweeper_stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep()
            except Exception as e:
                logger.error("session_sweep_error", error=str(e))

    # ── Stats ─────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._sessions)

    def list_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def stats(self) -> dict[str, Any]:
        by_stage: dict[str, int] = {}
        for s in self._sessions.values():
            by_stage[s.stage.value] = by_stage.get(s.stage.value, 0) + 1
        return {
            "sessions": len(self._sessions),
            "identified": sum(1 for s in self._sessions.values() if s.customer),
            "by_stage": by_stage,
        }
