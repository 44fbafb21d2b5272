"""
Ticket numbering — monotonically increasing service-call ids ("HSC-10001").

An external durable counter is used when one is configured; otherwise (or
when it fails) an in-memory counter seeded at the floor takes over. The
issued number never goes backwards either way.
"""
from __future__ import annotations

import abc
import asyncio
import structlog
from typing import Optional

logger = structlog.get_logger()


class TicketCounterBackend(abc.ABC):
    """Durable counter owned by an external system (spreadsheet, DB sequence)."""

    @abc.abstractmethod
    async def increment(self) -> int:
        """Atomically advance the counter and return the new value."""
        ...


class TicketIssuer:

    def __init__(
        self,
        prefix: str = "HSC-",
        floor: int = 10001,
        backend: Optional[TicketCounterBackend] = None,
    ):
        self.prefix = prefix
        self.floor = floor
        self.backend = backend
        self._last = floor - 1
        self._lock = asyncio.Lock()

    @property
    def last_issued(self) -> int:
        return self._last

    async def next_number(self) -> int:
        async with self._lock:
            candidate = self._last + 1
            if self.backend is not None:
                try:
                    external = int(await self.backend.increment())
                    candidate = max(candidate, external)
                except Exception as e:
                    logger.warning("ticket_counter_fallback", error=str(e), next=candidate)
            self._last = candidate
            return candidate

    async def next_ticket(self) -> str:
        return f"{self.prefix}{await self.next_number()}"
