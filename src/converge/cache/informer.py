import dataclasses
import logging
import typing

import anyio
from anyio import TASK_STATUS_IGNORED
from anyio.abc import TaskStatus

from ..exceptions import StoreError, TransientStoreError
from ..resources import is_newer_version
from ..tasks import Task
from .events import Added, Deleted, Modified, Resynced


log = logging.getLogger(__name__)


@dataclasses.dataclass(eq=False)
class Informer(Task):
    """Keeps `store` (an Indexer) in sync with one kind in the object store
    and fans out change notifications to the attached streams.

    The list/watch loop is the only writer of `store`.
    """

    client: object
    store: object
    kind: str
    namespace: str = None
    resync_period: float = 10 * 60
    backoff_base: float = 0.5
    backoff_max: float = 30
    transformer: typing.Callable = None
    resource_version: str = None

    def __post_init__(self):
        super().__init__()
        self._task_group = None  # Main taskgroup
        self._streams = {}
        self._synced = anyio.Event()
        self.relists = 0

    def __hash__(self):
        return hash((self.kind, self.namespace))

    def __repr__(self):
        _out = [str(id(self)), self.kind]
        if self.namespace is not None:
            _out.append(self.namespace)
        if self.resource_version:
            _out.append(self.resource_version)
        _s = ' '.join(_out)
        return f'<Informer {_s}>'

    @property
    def has_synced(self):
        return self._synced.is_set()

    async def wait_for_sync(self):
        await self._synced.wait()

    def add_stream(self, stream, key=None):
        if key is None:
            key = stream
        self._streams[key] = stream

    def has_stream(self, stream=None, key=None):
        if key is None:
            key = stream
        return key in self._streams

    def remove_stream(self, stream=None, key=None):
        if key is None:
            key = stream
        self._streams.pop(key, None)

    def purge_streams(self):
        for stream in self._streams.values():
            stream.close()
        self._streams.clear()

    def _dispatch(self, event):
        """Hand the event to all our streams. Never blocks: streams are unbounded."""
        # We iterate over a list of keys because the dict may change
        # while we're iterating over it.
        for key in list(self._streams.keys()):
            try:
                self._streams[key].send_nowait(event)
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                self.remove_stream(key=key)

    def _remember_version(self, obj):
        version = obj.metadata.resource_version
        if version is not None:
            self.resource_version = version

    def _add_or_update(self, obj):
        old = self.store.get_by_key(self.store.key_func(obj))
        if old is None:
            self.store.add(obj)
            self._dispatch(Added(obj))
        elif is_newer_version(obj, old):
            self.store.update(obj)
            self._dispatch(Modified(old, obj))
        else:
            log.debug('dropping stale event for %r, have %r', obj, old)

    def _delete(self, obj):
        old = self.store.get_by_key(self.store.key_func(obj))
        if old is None:
            return
        if is_newer_version(old, obj):
            log.debug('dropping stale delete for %r, have %r', obj, old)
            return
        self.store.delete(obj)
        self._dispatch(Deleted(obj))

    def process_event(self, event_type, obj):
        if callable(self.transformer):
            obj = self.transformer(obj)
        match event_type:
            case 'ADDED' | 'MODIFIED':
                self._add_or_update(obj)
            case 'DELETED':
                self._delete(obj)
            case _:
                log.warning('ignoring unknown event type %s for %r', event_type, obj)
        self._remember_version(obj)

    async def relist(self):
        """List everything and diff it against the store.

        Every listed key gets a Resynced event and keys which vanished
        get a Deleted event, so changes missed while not watching are
        never lost.
        """
        log.debug('start listing %s', self)
        items, resource_version = await self.client.list(self.kind, namespace=self.namespace)
        if callable(self.transformer):
            items = [self.transformer(obj) for obj in items]
        listed = {self.store.key_func(obj): obj for obj in items}
        for obj in list(self.store.list()):
            if self.namespace is not None and obj.metadata.namespace != self.namespace:
                # The store may be shared with informers for other namespaces.
                continue
            if self.store.key_func(obj) not in listed:
                self.store.delete(obj)
                self._dispatch(Deleted(obj))
        for key, obj in listed.items():
            old = self.store.get_by_key(key)
            self.store.update(obj)
            self._dispatch(Resynced(old, obj))
        self.resource_version = resource_version
        self.relists += 1
        self._synced.set()
        log.debug('done listing %s', self)

    async def _watch(self):
        log.debug('start watching %s', self)
        async with self.client.watch(
            self.kind,
            namespace=self.namespace,
            resource_version=self.resource_version,
        ) as events:
            async for event in events:
                self.process_event(event.type, event.obj)
                self._watch_failures = 0

    def _backoff(self, failures):
        return min(self.backoff_base * 2 ** (failures - 1), self.backoff_max)

    def _log_failure(self, what, error, delay):
        # Non transient errors, e.g. missing RBAC, are logged as errors.
        level = logging.WARNING if isinstance(error, TransientStoreError) else logging.ERROR
        log.log(level, '%s %s failed: %r, retrying in %.2fs', what, self, error, delay)

    async def _listwatch(self):
        list_failures = 0
        self._watch_failures = 0
        while True:
            try:
                await self.relist()
            except StoreError as e:
                list_failures += 1
                delay = self._backoff(list_failures)
                self._log_failure('listing', e, delay)
                await anyio.sleep(delay)
                continue
            list_failures = 0

            # We are running and our store is synced.
            self._running.set()

            try:
                with anyio.move_on_after(self.resync_period) as scope:
                    while True:
                        await self._watch()
                if scope.cancelled_caught:
                    log.debug('periodic resync of %s', self)
            except TransientStoreError as e:
                # Covers dropped streams and expired resume points.
                self._watch_failures += 1
                log.info('watch of %s interrupted: %r, relisting', self, e)
                if self._watch_failures > 1:
                    await anyio.sleep(self._backoff(self._watch_failures - 1))
            except StoreError as e:
                self._watch_failures += 1
                delay = self._backoff(self._watch_failures)
                self._log_failure('watching', e, delay)
                await anyio.sleep(delay)

    def stop(self):
        self._stop.set()
        if self._task_group:
            self._task_group.cancel_scope.cancel()

    async def __call__(self, task_status: TaskStatus[None] = TASK_STATUS_IGNORED):
        log.debug('starting %s', self)

        try:
            async with anyio.create_task_group() as tg:
                self._task_group = tg

                try:
                    tg.start_soon(self._listwatch)

                    await self
                    log.info('started %s', self)
                    task_status.started()

                    # Wait until told otherwise.
                    await self._stop.wait()
                    tg.cancel_scope.cancel()

                except anyio.get_cancelled_exc_class():
                    log.debug('canceled %s', self)
                    raise

                finally:
                    log.debug('stopping %s', self)
                    self.purge_streams()

        finally:
            log.info('stopped %s', self)
