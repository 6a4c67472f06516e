"""
Delivery Channels — base infrastructure for outbound reminder transports.

Provides:
- ChannelError: structured error hierarchy
- TokenBucketRateLimiter: paces pushes to the provider quota
- CircuitBreaker: consecutive-failure breaker with a single half-open probe
- ChannelMetrics: per-channel send/fail/latency tracking
- DeliveryResult: outcome of a single send
- DeliveryChannel: abstract base wrapping every send with resilience,
  configured from the `channel` section of settings

A failed send is always reported, never raised: the dispatcher treats every
failure as transient and retries it on a later scan by releasing its claim.
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from dataclasses import dataclass
from typing import Any, Callable

from config.settings import ChannelConfig

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class RateLimitedError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Rate limit exceeded for {channel}", channel, retryable=True)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Paces pushes to the provider's per-second quota.

    Holds at most `burst` tokens, refilled at `rate` per second. A caller
    that finds the bucket empty sleeps until the next token is due, unless
    that is further away than `max_wait`, in which case it gets False.
    Waiters are served in arrival order.
    """

    def __init__(self, rate: float, burst: int, max_wait: float = 10.0,
                 clock: Callable[[], float] = time.monotonic):
        self.rate = max(rate, 0.001)
        self.burst = max(burst, 1)
        self.max_wait = max_wait
        self._clock = clock
        self._tokens = float(self.burst)
        self._stamp = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> float:
        now = self._clock()
        self._tokens = min(float(self.burst), self._tokens + (now - self._stamp) * self.rate)
        self._stamp = now
        return self._tokens

    async def acquire(self) -> bool:
        async with self._lock:
            shortfall = 1.0 - self._refill()
            if shortfall > 0:
                delay = shortfall / self.rate
                if delay > self.max_wait:
                    return False
                await asyncio.sleep(delay)
                self._refill()
            self._tokens -= 1.0
            return True


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Stops pushing to a provider that keeps failing.

    closed     every send goes through; `failure_threshold` consecutive
               failures open the circuit
    open       sends are refused until `recovery_seconds` have passed
    half_open  exactly one probe send is let through; its outcome closes
               or re-opens the circuit

    A refused send is reported as a failed delivery, so the dispatcher
    releases the claim and the reminder goes out on a later scan.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, channel: str, failure_threshold: int = 5, recovery_seconds: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.channel = channel
        self.failure_threshold = max(failure_threshold, 1)
        self.recovery_seconds = recovery_seconds
        self._clock = clock
        self.state = self.CLOSED
        self.consecutive_failures = 0
        self.times_opened = 0
        self._opened_at = 0.0
        self._probing = False

    def allow(self) -> bool:
        if self.state == self.OPEN:
            if self._clock() - self._opened_at < self.recovery_seconds:
                return False
            self.state = self.HALF_OPEN
            self._probing = False
        if self.state == self.HALF_OPEN:
            if self._probing:
                return False
            self._probing = True
        return True

    def record_success(self) -> None:
        if self.state != self.CLOSED:
            logger.info("circuit_closed", channel=self.channel)
        self.state = self.CLOSED
        self.consecutive_failures = 0
        self._probing = False

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        if self.state == self.HALF_OPEN or self.consecutive_failures >= self.failure_threshold:
            self.state = self.OPEN
            self.times_opened += 1
            self._opened_at = self._clock()
            self._probing = False
            logger.warning("circuit_opened",
                           channel=self.channel,
                           consecutive_failures=self.consecutive_failures,
                           retry_in_seconds=self.recovery_seconds)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "consecutive_failures": self.consecutive_failures,
            "times_opened": self.times_opened,
            "failure_threshold": self.failure_threshold,
            "recovery_seconds": self.recovery_seconds,
        }


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks per-channel send, failure, and latency metrics."""

    def __init__(self, channel: str):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  DELIVERY RESULT
# ══════════════════════════════════════════════════════════════

@dataclass
class DeliveryResult:
    success: bool
    channel_message_id: str = ""
    error: str = ""
    latency_ms: float = 0.0


# ══════════════════════════════════════════════════════════════
#  DELIVERY CHANNEL — Abstract Base
# ══════════════════════════════════════════════════════════════

class DeliveryChannel(abc.ABC):
    """
    Base class for all delivery channels.

    Subclasses implement _do_send. The base class wraps every send with
    rate limiting, circuit breaker, and metrics, and turns exceptions into
    failed results.
    """

    name: str = "channel"

    def __init__(self, config: ChannelConfig = None):
        self.config = config or ChannelConfig()
        self._initialized = False
        self._rate_limiter = TokenBucketRateLimiter(
            rate=self.config.rate_per_second,
            burst=self.config.burst,
            max_wait=self.config.rate_limit_wait_seconds,
        )
        self._breaker = CircuitBreaker(
            self.name,
            failure_threshold=self.config.breaker_failure_threshold,
            recovery_seconds=self.config.breaker_recovery_seconds,
        )
        self._metrics = ChannelMetrics(self.name)

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send(self, address: str, text: str, metadata: dict[str, Any]) -> DeliveryResult:
        ...

    async def initialize(self) -> None:
        self._initialized = True

    # ── Public send ───────────────────────────────────────────

    async def send(self, address: str, text: str, metadata: dict[str, Any] = None) -> DeliveryResult:
        metadata = metadata or {}
        start = time.monotonic()

        if not await self._rate_limiter.acquire():
            self._metrics.record_failure("rate_limited")
            return DeliveryResult(success=False, error=str(RateLimitedError(self.name)))

        if not self._breaker.allow():
            self._metrics.record_failure("circuit_open")
            return DeliveryResult(success=False, error=str(CircuitOpenError(self.name)))

        try:
            result = await self._do_send(address, text, metadata)
        except Exception as e:
            result = DeliveryResult(success=False, error=str(e) or type(e).__name__)

        result.latency_ms = round((time.monotonic() - start) * 1000, 1)
        if result.success:
            self._breaker.record_success()
            self._metrics.record_send(result.latency_ms)
        else:
            self._breaker.record_failure()
            self._metrics.record_failure(result.error)
            logger.warning("channel_send_failed", channel=self.name, error=result.error)
        return result

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.name,
            "initialized": self._initialized,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass
