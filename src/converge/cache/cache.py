import copy
import logging

import anyio
from anyio import TASK_STATUS_IGNORED
from anyio.abc import TaskStatus

from ..exceptions import NotFoundError
from ..resources import ReconcileKey, match_labels, owner_key
from ..tasks import Task
from .index import Indexer
from .informer import Informer


log = logging.getLogger(__name__)


# - one store (Indexer) for each kind
# - when watching specific namespaces:
#   - one informer for each combination of kind and namespace, all backed
#     by the shared kind store
# - when watching all namespaces:
#   - one informer per kind


class Cache(Task):
    """Eventually consistent local view of the object store.

    Only the informers write to the stores, everybody else reads copies.
    """

    def __init__(self, client, namespaces=None, resync_period=10 * 60):
        super().__init__()
        self.client = client
        self.namespaces = set(namespaces) if namespaces else None
        self.resync_period = resync_period
        self._task_group = None  # Main taskgroup
        self._stores = {}
        self._informers = []

    def __repr__(self):
        kinds = sorted(self._stores)
        return f'<Cache {id(self)} namespaces: {self.namespaces} kinds: {kinds}>'

    @property
    def kinds(self):
        return set(self._stores)

    def get_store(self, kind):
        try:
            return self._stores[kind]
        except KeyError:
            store = self._stores[kind] = Indexer()
            return store

    def get_index(self, kind, index_name):
        return self.get_store(kind).get_index(index_name, kind=kind)

    def get_informers_by(self, kind=None, namespace=None):
        return [
            informer
            for informer in self._informers
            if (kind is None or informer.kind == kind)
            and (namespace is None or informer.namespace == namespace)
        ]

    def watch_kind(self, kind):
        """Ensure informers for `kind` exist (and run, if we are running)."""
        informers = self.get_informers_by(kind=kind)
        if informers:
            return informers
        namespaces = self.namespaces or [None]
        for namespace in sorted(namespaces, key=lambda ns: ns or ''):
            informer = Informer(
                self.client,
                self.get_store(kind),
                kind,
                namespace=namespace,
                resync_period=self.resync_period,
            )
            self._informers.append(informer)
            if self._task_group is not None:
                self._task_group.start_soon(informer)
            informers.append(informer)
        return informers

    def add_stream(self, kind, stream, key):
        """Attach a notification stream to all informers of `kind`, replacing
        an earlier stream registered under `key`."""
        for informer in self.watch_kind(kind):
            informer.add_stream(stream, key=key)

    def remove_stream(self, kind, key):
        for informer in self.get_informers_by(kind=kind):
            informer.remove_stream(key=key)

    @property
    def has_synced(self):
        return all(informer.has_synced for informer in self._informers)

    async def wait_for_sync(self):
        for informer in list(self._informers):
            await informer.wait_for_sync()

    @property
    def synced(self):
        return self.wait_for_sync()

    # Read API. Everything returned is a copy, so that changes made by
    # callers never leak into the store.

    def get(self, kind, namespace, name):
        store = self.get_store(kind)
        key = f'{namespace}/{name}' if namespace is not None else name
        obj = store.get_by_key(key)
        if obj is None:
            raise NotFoundError('not in cache', key=ReconcileKey(kind, namespace, name))
        return copy.deepcopy(obj)

    def get_key(self, key):
        return self.get(key.kind, key.namespace, key.name)

    def list(self, kind, namespace=None, selector=None):
        store = self.get_store(kind)
        if namespace is not None:
            objects = store.by_index('namespace', namespace)
        else:
            objects = store.list()
        return [
            copy.deepcopy(obj)
            for obj in objects
            if match_labels(selector, obj.metadata.labels)
        ]

    def children(self, owner, kind):
        """Objects of `kind` controlled by `owner`, found through the owner index."""
        store = self.get_store(kind)
        objects = store.by_index('owner', owner_key(owner.kind, owner.namespace, owner.name))
        return [
            copy.deepcopy(obj)
            for obj in objects
            if owner.metadata.uid is None
            or obj.controller_ref().uid in (None, owner.metadata.uid)
        ]

    def children_of_key(self, key, kind):
        """Children of an owner that may no longer exist."""
        store = self.get_store(kind)
        objects = store.by_index('owner', owner_key(key.kind, key.namespace, key.name))
        return [copy.deepcopy(obj) for obj in objects]

    def stop(self):
        log.debug('stop %r', self)
        self._stop.set()
        if self._task_group:
            self._task_group.cancel_scope.cancel()

    async def __call__(self, task_status: TaskStatus[None] = TASK_STATUS_IGNORED):
        log.debug('starting %r', self)

        try:
            async with anyio.create_task_group() as tg:
                self._task_group = tg

                try:
                    for informer in self._informers:
                        tg.start_soon(informer)

                    log.info('started %s', self)
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
                    self._task_group = None

        finally:
            log.info('stopped %s', self)
