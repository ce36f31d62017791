import dataclasses
import logging
import math
import typing

import anyio
from anyio import TASK_STATUS_IGNORED
from anyio.abc import TaskStatus

from .tasks import Task, invoke


__all__ = [
    'EventSource',
    'generation_changed',
]

log = logging.getLogger(__name__)


@dataclasses.dataclass(eq=False)
class EventSource(Task):
    """Turns cache notifications for one kind into reconcile keys.

    Events pass all `predicates`, then `handler(event, **kwargs)` maps them
    to keys which are added to `queue`.
    """

    queue: object
    kind: str
    handler: typing.Callable
    kwargs: dict = None
    predicates: typing.List[typing.Callable] = None

    def __post_init__(self):
        Task.__init__(self)
        self.kwargs = self.kwargs or {}
        self._task_group = None  # Main taskgroup
        self._streams = []
        self.tx = self.rx = None

    def __repr__(self):
        handler = getattr(self.handler, '__name__', self.handler)
        return f'<{self.__class__.__name__} {self.kind} {handler}>'

    @property
    def stream(self):
        """A new send stream, one per informer."""
        stream = self.tx.clone()
        self._streams.append(stream)
        return stream

    async def handle(self, event):
        for predicate in self.predicates or []:
            if not await invoke(predicate, event):
                log.debug('predicate prevented event: %r', event)
                return
        try:
            keys = await invoke(self.handler, event, **self.kwargs)
            for key in keys or ():
                await self.queue.add(key)
        except Exception:
            log.error('failed to process %r', event)
            raise

    async def event_stream_handler(self):
        async with self.rx:
            async for event in self.rx:
                log.debug('received event: %r', event)
                await self.handle(event)

    def stop(self):
        if self._task_group:
            self._task_group.cancel_scope.cancel()

    async def __call__(self, task_status: TaskStatus[None] = TASK_STATUS_IGNORED):
        log.debug('starting %s', self)

        self.tx, self.rx = anyio.create_memory_object_stream(math.inf)
        try:
            async with anyio.create_task_group() as tg:
                self._task_group = tg

                try:
                    tg.start_soon(self.event_stream_handler)

                    log.debug('started %s', self)
                    # Inform any awaiters that we are ready.
                    self._running.set()
                    task_status.started()

                    # Wait until told otherwise.
                    await self._stop.wait()
                    tg.cancel_scope.cancel()

                except anyio.get_cancelled_exc_class():
                    log.debug('canceled %s', self)
                    raise

                finally:
                    log.debug('stopping %s', self)
                    # Informers drop closed streams on their next dispatch.
                    for stream in self._streams:
                        stream.close()
                    self._streams.clear()
                    self.tx.close()
                    self._task_group = None

        finally:
            self.reset_task()
            log.debug('stopped %s', self)


def generation_changed(event):
    """Predicate that ignores updates which did not change the spec."""
    old = getattr(event, 'old', None)
    new = getattr(event, 'new', None)
    if old is None or new is None:
        return True
    return old.generation != new.generation or old.is_terminating != new.is_terminating


generation_changed.__nonblocking__ = True
