"""
Channel Adapters — base infrastructure and outbound contracts.

Every customer reply leaves through a ReplySender. Gateways such as Green-API
enforce per-instance send quotas and go down for minutes at a time, so the
base class paces sends with a token bucket and stops hammering a failing
gateway with a circuit breaker. Operational mail and the ticket ledger are
plain contracts (MailSender, LedgerWriter) with no resilience wrapper.
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from collections import deque
from typing import Any, Callable, Optional

from models.schemas import (
    RecordLedgerRow, SendCustomerConfirmation, SendOperationalEmail,
)

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for outbound delivery failures."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class RateLimitedError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"{channel}: send quota exhausted", channel, retryable=True)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"{channel}: gateway marked unavailable", channel, retryable=True)


class DeliveryError(ChannelError):
    """The provider rejected or never acknowledged a send."""


# ══════════════════════════════════════════════════════════════
#  SEND PACING
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Paces outbound sends to a gateway quota.

    `burst` sends may go out back to back; after that one token comes back
    every 1/`rate` seconds.
    """

    def __init__(self, rate: float = 10.0, burst: int = 10,
                 clock: Callable[[], float] = time.monotonic):
        self.rate = max(rate, 0.001)
        self.burst = burst
        self._clock = clock
        self._available = float(burst)
        self._stamp = clock()
        self._lock = asyncio.Lock()

    def _take(self) -> bool:
        now = self._clock()
        self._available = min(self.burst, self._available + (now - self._stamp) * self.rate)
        self._stamp = now
        if self._available < 1.0:
            return False
        self._available -= 1.0
        return True

    async def acquire(self, timeout: float = 5.0) -> bool:
        """Wait for a send slot; False once `timeout` seconds pass without one."""
        give_up_at = self._clock() + timeout
        while True:
            async with self._lock:
                if self._take():
                    return True
            left = give_up_at - self._clock()
            if left <= 0:
                return False
            await asyncio.sleep(min(1.0 / self.rate, left))


# ══════════════════════════════════════════════════════════════
#  GATEWAY CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Stops sending to a gateway after `failure_threshold` consecutive failures.

    States: closed → open → half_open once `recovery_timeout` has elapsed.
    In half_open one probe send is let through; success closes the breaker,
    failure opens it again.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0,
                 name: str = "", clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self._clock = clock
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return "closed"
        if self._clock() - self._opened_at >= self.recovery_timeout:
            return "half_open"
        return "open"

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        probe_failed = self.state == "half_open"
        if probe_failed or self._consecutive_failures >= self.failure_threshold:
            self._opened_at = self._clock()
            logger.warning("gateway_circuit_opened", channel=self.name,
                           failures=self._consecutive_failures, probe_failed=probe_failed)

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("gateway_circuit_closed", channel=self.name)
        self._opened_at = None
        self._consecutive_failures = 0


# ══════════════════════════════════════════════════════════════
#  DELIVERY METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Delivery counters for one channel plus a short window of latencies and errors."""

    def __init__(self, channel: str, window: int = 100):
        self.channel = channel
        self.messages_sent = 0
        self.messages_failed = 0
        self._latencies: deque[float] = deque(maxlen=window)
        self._errors: deque[str] = deque(maxlen=10)

    def record_send(self, latency_ms: float = 0.0) -> None:
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)

    def record_failure(self, error: str = "") -> None:
        self.messages_failed += 1
        if error:
            self._errors.append(error)

    @property
    def avg_latency_ms(self) -> float:
        if not self._latencies:
            return 0.0
        return sum(self._latencies) / len(self._latencies)

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "recent_errors": list(self._errors),
        }


# ══════════════════════════════════════════════════════════════
# ══════════════════════════════════════════════════════════════
#  REPLY SENDER — Abstract Base
# ══════════════════════════════════════════════════════════════

class ReplySender(abc.ABC):
    """
    Base class for customer-facing reply channels.

    Subclasses implement _do_send. The base class wraps every send with rate
    limiting, circuit breaker and metrics, and raises ChannelError on failure.
    """

    channel: str = "reply"

    def __init__(self, rate_limiter: Optional[TokenBucketRateLimiter] = None):
        self._breaker = CircuitBreaker(name=self.channel)
        self._rate_limiter = rate_limiter
        self._metrics = ChannelMetrics(self.channel)

    @abc.abstractmethod
    async def _do_send(self, address: str, text: str) -> dict[str, Any]:
        ...

    async def send_reply(self, address: str, text: str) -> dict[str, Any]:
        start = time.monotonic()

        if self._rate_limiter and not await self._rate_limiter.acquire(timeout=10.0):
            self._metrics.record_failure("rate_limited")
            raise RateLimitedError(self.channel)

        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            raise CircuitOpenError(self.channel)

        try:
            result = await self._do_send(address, text)
        except ChannelError as e:
            self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            raise
        except Exception as e:
            self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            raise DeliveryError(str(e), self.channel, retryable=True) from e

        latency = (time.monotonic() - start) * 1000
        self._breaker.record_success()
        self._metrics.record_send(latency)
        result["latency_ms"] = round(latency, 1)
        return result

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "circuit_breaker": self._breaker.state,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  MAIL & LEDGER CONTRACTS
# ══════════════════════════════════════════════════════════════

class MailSender(abc.ABC):
    """Renders and delivers operational and customer-facing email."""

    @abc.abstractmethod
    async def send_operational(self, intent: SendOperationalEmail) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def send_customer_confirmation(self, intent: SendCustomerConfirmation) -> dict[str, Any]:
        ...


class LedgerWriter(abc.ABC):
    """Append-only record of issued tickets (spreadsheet, table)."""

    @abc.abstractmethod
    async def append(self, row: RecordLedgerRow) -> None:
        ...
