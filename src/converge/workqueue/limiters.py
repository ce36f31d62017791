"""
Retry delays for reconcile keys.

Every key backs off exponentially on its own. Keys blocked by a quota back
off on a separate, slower curve, and a key whose failure cause changes
starts over at the first step of the new curve. A shared token bucket
spreads the retries of all keys over time.
"""

import dataclasses
import time

from typing import Callable, Dict, List, Tuple


class RateLimiter:
    # Interface

    def delay(self, key, quota=False):
        raise NotImplementedError()

    def forget(self, key):
        raise NotImplementedError()

    def count(self, key):
        raise NotImplementedError()


@dataclasses.dataclass(frozen=True)
class Backoff:
    base: float
    max: float

    def step(self, failures):
        # 2 ** 64 times any sane base is past every cap.
        if failures >= 64:
            return self.max
        return min(self.base * 2 ** failures, self.max)


@dataclasses.dataclass
class KeyRateLimiter(RateLimiter):
    backoff: Backoff = Backoff(0.005, 1000)
    quota_backoff: Backoff = Backoff(5, 300)
    # key -> (blocked by quota, failures so far)
    keys: Dict[object, Tuple[bool, int]] = dataclasses.field(default_factory=dict, init=False)

    def delay(self, key, quota=False):
        blocked, failures = self.keys.get(key, (quota, 0))
        if blocked != quota:
            failures = 0
        self.keys[key] = (quota, failures + 1)
        curve = self.quota_backoff if quota else self.backoff
        return curve.step(failures)

    def forget(self, key):
        self.keys.pop(key, None)

    def count(self, key):
        return self.keys.get(key, (False, 0))[1]


@dataclasses.dataclass
class TokenBucket(RateLimiter):
    """Shared by all keys: `capacity` retries at once, then `rate` per second."""

    capacity: int = 100
    rate: float = 10
    clock: Callable[[], float] = time.monotonic

    def __post_init__(self):
        self._tokens = self.capacity
        self._refilled = self.clock()
        self._waiting = 0

    def _refill(self):
        now = self.clock()
        tokens = int((now - self._refilled) * self.rate)
        if tokens > 0:
            self._tokens = min(self.capacity, self._tokens + tokens)
            self._refilled = now

    def delay(self, key, quota=False):
        self._refill()
        if self._tokens > 0:
            self._tokens -= 1
            self._waiting = 0
            return 0
        # Queue up behind the keys already waiting for a token.
        self._waiting += 1
        return self._waiting / self.rate

    def forget(self, key):
        pass

    def count(self, key):
        return 0


@dataclasses.dataclass(init=False)
class SlowestOf(RateLimiter):
    limiters: List[RateLimiter]

    def __init__(self, *limiters):
        self.limiters = list(limiters)

    def delay(self, key, quota=False):
        return max(limiter.delay(key, quota=quota) for limiter in self.limiters)

    def forget(self, key):
        for limiter in self.limiters:
            limiter.forget(key)

    def count(self, key):
        return max(limiter.count(key) for limiter in self.limiters)


def default_rate_limiter(base_delay=0.005, max_delay=1000, quota_base_delay=5, quota_max_delay=300):
    return SlowestOf(
        KeyRateLimiter(Backoff(base_delay, max_delay), Backoff(quota_base_delay, quota_max_delay)),
        TokenBucket(),
    )
