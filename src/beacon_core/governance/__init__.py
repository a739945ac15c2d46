"""Governance module - rate limiting of noisy repeated actions."""

from .rate_limiter import BucketedRateLimiter

__all__ = [
    "BucketedRateLimiter",
]
