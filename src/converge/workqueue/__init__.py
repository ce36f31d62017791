from .limiters import (
    Backoff,
    KeyRateLimiter,
    RateLimiter,
    SlowestOf,
    TokenBucket,
    default_rate_limiter,
)
from .queue import Workqueue

__all__ = [
    'Backoff',
    'KeyRateLimiter',
    'RateLimiter',
    'SlowestOf',
    'TokenBucket',
    'Workqueue',
    'default_rate_limiter',
]
