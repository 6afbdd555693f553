"""Token bucket and sliding window rate limiters with wait/reject policies."""

from api_resilience.errors import RateLimitExceeded
from api_resilience.rate_limit.base import (
    AcquireDecision,
    AdmissionPolicy,
    LimiterMetrics,
    RateLimiter,
)
from api_resilience.rate_limit.sliding_window import (
    SlidingWindowConfig,
    SlidingWindowLimiter,
)
from api_resilience.rate_limit.token_bucket import TokenBucketConfig, TokenBucketLimiter

__all__ = [
    "AcquireDecision",
    "AdmissionPolicy",
    "LimiterMetrics",
    "RateLimitExceeded",
    "RateLimiter",
    "SlidingWindowConfig",
    "SlidingWindowLimiter",
    "TokenBucketConfig",
    "TokenBucketLimiter",
]
