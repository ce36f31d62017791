import anyio
import pytest

from converge.resources import ReconcileKey
from converge.workqueue import (
    Backoff,
    KeyRateLimiter,
    SlowestOf,
    TokenBucket,
    Workqueue,
    default_rate_limiter,
)


pytestmark = pytest.mark.anyio


WEB = ReconcileKey('ReplicaGroup', 'default', 'web')
DB = ReconcileKey('OrderedSet', 'default', 'db')


class Ticker:
    """A monotonic clock for the token bucket."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestRateLimiters:
    def test_exponential_backoff_per_key(self):
        limiter = KeyRateLimiter(Backoff(1, 10))
        assert [limiter.delay(WEB) for _ in range(6)] == [1, 2, 4, 8, 10, 10]
        assert limiter.count(WEB) == 6
        assert limiter.delay(DB) == 1
        limiter.forget(WEB)
        assert limiter.count(WEB) == 0
        assert limiter.delay(WEB) == 1

    def test_changed_cause_starts_over(self):
        limiter = KeyRateLimiter(Backoff(1, 100), Backoff(10, 100))
        assert [limiter.delay(WEB) for _ in range(3)] == [1, 2, 4]
        assert [limiter.delay(WEB, quota=True) for _ in range(2)] == [10, 20]
        assert limiter.count(WEB) == 2
        assert limiter.delay(WEB) == 1

    def test_long_failure_streaks_stay_capped(self):
        limiter = KeyRateLimiter(Backoff(1, 60))
        for _ in range(100):
            delay = limiter.delay(WEB)
        assert delay == 60

    def test_token_bucket(self):
        ticker = Ticker()
        bucket = TokenBucket(capacity=2, rate=10, clock=ticker)
        assert [bucket.delay(WEB), bucket.delay(DB)] == [0, 0]
        # Empty: every further key waits one more token.
        assert bucket.delay(WEB) == pytest.approx(0.1)
        assert bucket.delay(DB) == pytest.approx(0.2)
        ticker.now += 0.1
        assert bucket.delay(WEB) == 0

    def test_slowest_of(self):
        limiter = SlowestOf(KeyRateLimiter(Backoff(1, 100)), KeyRateLimiter(Backoff(3, 100)))
        assert limiter.delay(WEB) == 3
        assert limiter.count(WEB) == 1
        limiter.forget(WEB)
        assert limiter.count(WEB) == 0

    def test_default_starts_small(self):
        limiter = default_rate_limiter()
        assert limiter.delay(WEB) == pytest.approx(0.005)
        assert limiter.delay(DB, quota=True) == 5


class TestWorkqueue:
    async def test_deduplicates(self):
        queue = Workqueue()
        await queue.add('a')
        await queue.add('a')
        await queue.add('b')
        assert len(queue) == 2
        assert await queue.get() == 'a'
        assert await queue.get() == 'b'

    async def test_item_is_never_processed_twice_at_once(self):
        queue = Workqueue()
        await queue.add('a')
        item = await queue.get()
        # Added again while being processed: held back until done.
        await queue.add('a')
        assert len(queue) == 0
        assert queue.processing == {'a'}
        await queue.done(item)
        assert len(queue) == 1
        assert await queue.get() == 'a'

    async def test_add_after(self):
        queue = Workqueue()
        async with anyio.create_task_group() as tg:
            await tg.start(queue)
            await queue.add_after('a', 0.05)
            assert queue.is_delayed('a')
            assert len(queue) == 0
            with anyio.fail_after(2):
                assert await queue.get() == 'a'
            queue.stop()

    async def test_add_after_keeps_earliest_deadline(self):
        queue = Workqueue()
        async with anyio.create_task_group() as tg:
            await tg.start(queue)
            await queue.add_after('a', 0.05)
            await queue.add_after('a', 60)
            with anyio.fail_after(2):
                assert await queue.get() == 'a'
            queue.stop()

    async def test_rate_limited_uses_quota_limiter(self):
        queue = Workqueue(rate_limiter=KeyRateLimiter(Backoff(0.01, 1), Backoff(100, 300)))
        async with anyio.create_task_group() as tg:
            await tg.start(queue)
            await queue.add_rate_limited('a', quota=True)
            await queue.add_rate_limited('b')
            with anyio.fail_after(2):
                assert await queue.get() == 'b'
            assert queue.is_delayed('a')
            assert await queue.num_requeues('a') == 1
            await queue.forget('a')
            assert await queue.num_requeues('a') == 0
            queue.stop()

    async def test_shutdown_drops_pending_and_releases_getters(self):
        queue = Workqueue()
        await queue.add('a')
        item = await queue.get()
        await queue.add('b')
        await queue.shutdown()
        assert await queue.get() is None
        await queue.add('c')
        assert len(queue) == 0

        drained = anyio.Event()

        async def drain():
            await queue.drain()
            drained.set()

        async with anyio.create_task_group() as tg:
            tg.start_soon(drain)
            await anyio.sleep(0.01)
            assert not drained.is_set()
            await queue.done(item)
        assert drained.is_set()
