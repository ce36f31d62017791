import heapq
import itertools
import logging
import math

import anyio
from anyio import TASK_STATUS_IGNORED
from anyio.abc import TaskStatus

from ..tasks import Task

from .limiters import default_rate_limiter


log = logging.getLogger(__name__)


class Queue:
    """FIFO of unique items."""

    def __init__(self):
        self._items = {}

    def push(self, item):
        self._items[item] = None

    def pop(self):
        k = next(iter(self._items))
        del self._items[k]
        return k

    def clear(self):
        self._items.clear()

    def __contains__(self, item):
        return item in self._items

    def __len__(self):
        return len(self._items)


class Workqueue(Task):
    """Deduplicating work queue with delayed and rate limited re-adds.

    - an item added while it is already queued is coalesced
    - an item added while it is being processed is queued again only after
      `done()`, so an item is never handed to two workers at the same time
    - `add_after` keeps the earliest pending deadline per item
    """

    def __init__(self, rate_limiter=None, name=None):
        super().__init__()
        self.name = name
        self._rate_limiter = rate_limiter or default_rate_limiter()
        self._queue = Queue()
        self._dirty = set()
        self._processing = set()
        self._delayed = {}
        self._heap = []
        self._sequence = itertools.count()
        self._condition = anyio.Condition()
        self._wakeup = anyio.Event()
        self._shutting_down = False
        self._task_group = None

    def __len__(self):
        return len(self._queue)

    def __repr__(self):
        name = f' {self.name}' if self.name else ''
        return (
            f'<Workqueue{name} queued: {len(self._queue)}, delayed: {len(self._delayed)}, '
            f'dirty: {len(self._dirty)}, processing: {len(self._processing)}>'
        )

    @property
    def shutting_down(self):
        return self._shutting_down

    @property
    def processing(self):
        return frozenset(self._processing)

    def is_delayed(self, item):
        return item in self._delayed

    async def add(self, item):
        """Mark item as needing processing."""
        async with self._condition:
            if self._shutting_down:
                return
            if item in self._dirty:
                # Queued already, or re-queued while being processed.
                return
            self._dirty.add(item)
            if item not in self._processing:
                self._queue.push(item)
                self._condition.notify()

    async def get(self):
        """Block until an item can be processed.

        Returns None once the queue is shut down, items that were queued
        but not handed out yet are dropped.
        """
        async with self._condition:
            while len(self._queue) == 0 and not self._shutting_down:
                await self._condition.wait()
            if self._shutting_down:
                return None
            item = self._queue.pop()
            self._processing.add(item)
            self._dirty.discard(item)
            return item

    async def done(self, item):
        """Mark item as done processing. If it has been added again while
        being processed it is queued for re-processing.
        """
        async with self._condition:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.push(item)
            self._condition.notify_all()

    async def add_after(self, item, delay):
        if delay is None or delay <= 0:
            await self.add(item)
            return
        if self._shutting_down:
            return
        ready_at = anyio.current_time() + delay
        current = self._delayed.get(item)
        if current is not None and current <= ready_at:
            return
        self._delayed[item] = ready_at
        heapq.heappush(self._heap, (ready_at, next(self._sequence), item))
        self._wakeup.set()

    async def add_rate_limited(self, item, quota=False):
        await self.add_after(item, self._rate_limiter.delay(item, quota=quota))

    async def forget(self, item):
        self._rate_limiter.forget(item)

    async def num_requeues(self, item):
        return self._rate_limiter.count(item)

    async def shutdown(self):
        """Stop handing out items and drop everything not yet started."""
        async with self._condition:
            self._shutting_down = True
            self._queue.clear()
            self._dirty.clear()
            self._delayed.clear()
            self._heap.clear()
            self._condition.notify_all()
        self._wakeup.set()

    async def drain(self):
        """Wait until all items handed out have been marked done."""
        async with self._condition:
            while self._processing:
                await self._condition.wait()

    async def _release_delayed(self):
        while True:
            now = anyio.current_time()
            while self._heap and self._heap[0][0] <= now:
                ready_at, _, item = heapq.heappop(self._heap)
                if self._delayed.get(item) != ready_at:
                    # Superseded by an earlier deadline.
                    continue
                del self._delayed[item]
                await self.add(item)
            timeout = self._heap[0][0] - now if self._heap else math.inf
            with anyio.move_on_after(timeout):
                await self._wakeup.wait()
            self._wakeup = anyio.Event()

    def stop(self):
        self._stop.set()

    async def __call__(self, task_status: TaskStatus[None] = TASK_STATUS_IGNORED):
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            tg.start_soon(self._release_delayed)
            self._running.set()
            task_status.started()
            await self._stop.wait()
            tg.cancel_scope.cancel()
