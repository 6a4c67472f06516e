"""Delivery channels for outbound reminders."""
from channels.base import (
    DeliveryChannel,
    DeliveryResult,
    ChannelError,
    RateLimitedError,
    CircuitOpenError,
    TokenBucketRateLimiter,
    CircuitBreaker,
    ChannelMetrics,
)
from channels.line_adapter import LineAdapter

__all__ = [
    "DeliveryChannel", "DeliveryResult",
    "ChannelError", "RateLimitedError", "CircuitOpenError",
    "TokenBucketRateLimiter", "CircuitBreaker", "ChannelMetrics",
    "LineAdapter",
]
