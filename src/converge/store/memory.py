"""
An in-process object store.

Behaves like an API server as far as the controller is concerned:
integer resource versions, generation bumps on spec changes only, status
subresource writes, finalizers, watches with a bounded history to resume
from, conflicts on stale resource versions and optional quotas.

It also lets tests inject faults and drop watch streams.
"""

import collections
import copy
import logging
import math
import uuid

import anyio

from ..clock import Clock, format_time
from ..exceptions import (
    ConflictError,
    ExpiredError,
    NotFoundError,
    QuotaExceededError,
    TransientStoreError,
)
from ..resources import ReconcileKey, match_labels
from .base import ADDED, DELETED, MODIFIED, ObjectStore, WatchEvent


log = logging.getLogger(__name__)


class MemoryWatch:
    def __init__(self, store, kind, namespace=None, resource_version=None):
        self.store = store
        self.kind = kind
        self.namespace = namespace
        self.resource_version = resource_version
        self._tx, self._rx = anyio.create_memory_object_stream(math.inf)
        self._broken = False

    def __repr__(self):
        return f'<MemoryWatch {self.kind} {self.namespace} {self.resource_version}>'

    async def __aenter__(self):
        self.store._open_watch(self)
        return self

    async def __aexit__(self, *exc_info):
        self.close()

    def matches(self, event):
        if event.obj.kind != self.kind:
            return False
        return self.namespace is None or event.obj.namespace == self.namespace

    def send(self, event):
        try:
            self._tx.send_nowait(copy.deepcopy(event))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            pass

    def disconnect(self):
        self._broken = True
        self._tx.close()

    def close(self):
        self.store._close_watch(self)
        self._tx.close()
        self._rx.close()

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            return await self._rx.receive()
        except (anyio.EndOfStream, anyio.ClosedResourceError):
            if self._broken:
                raise TransientStoreError('watch stream disconnected')
            raise StopAsyncIteration


class MemoryStore(ObjectStore):
    def __init__(self, clock=None, history_size=1000, quotas=None):
        self.clock = clock or Clock()
        self.quotas = dict(quotas or {})
        self._objects = {}
        self._version = 0
        self._history = collections.deque(maxlen=history_size)
        self._watches = []
        self._faults = {}
        self._hooks = []
        # (operation, ReconcileKey) of every successful write, in order.
        self.calls = []

    def __repr__(self):
        return f'<MemoryStore objects: {len(self._objects)} version: {self._version}>'

    # Test helpers

    def inject_fault(self, operation, error, times=1):
        """Make the next `times` calls of `operation` raise `error`."""
        self._faults.setdefault(operation, []).append([error, times])

    def add_hook(self, hook):
        """Call `hook(operation, obj, store)` after every successful write."""
        self._hooks.append(hook)

    def disconnect_watches(self):
        """Drop all open watch streams. Events written afterwards are lost
        for those streams."""
        for watch in list(self._watches):
            self._watches.remove(watch)
            watch.disconnect()

    def writes(self, operation=None, kind=None):
        return [
            (op, key)
            for op, key in self.calls
            if (operation is None or op == operation) and (kind is None or key.kind == kind)
        ]

    def objects(self, kind=None):
        return [
            copy.deepcopy(obj)
            for obj in self._objects.values()
            if kind is None or obj.kind == kind
        ]

    # Internals

    def _check_fault(self, operation):
        faults = self._faults.get(operation)
        if not faults:
            return
        fault = faults[0]
        fault[1] -= 1
        if fault[1] <= 0:
            faults.pop(0)
        raise fault[0]

    def _next_version(self):
        self._version += 1
        return str(self._version)

    def _get(self, kind, namespace, name):
        try:
            return self._objects[(kind, namespace, name)]
        except KeyError:
            raise NotFoundError(
                'not found', key=ReconcileKey(kind, namespace, name)
            ) from None

    def _check_version(self, current, expected):
        if expected is not None and expected != current.metadata.resource_version:
            raise ConflictError(
                f'resourceVersion {expected} is stale, current is '
                f'{current.metadata.resource_version}',
                key=current.key,
            )

    def _emit(self, event_type, obj, operation):
        event = WatchEvent(event_type, copy.deepcopy(obj))
        self._history.append((int(obj.metadata.resource_version), event))
        for watch in list(self._watches):
            if watch.matches(event):
                watch.send(event)
        self.calls.append((operation, obj.key))
        for hook in self._hooks:
            hook(operation, copy.deepcopy(obj), self)

    def _open_watch(self, watch):
        self._check_fault('watch')
        if watch.resource_version is not None:
            since = int(watch.resource_version)
            oldest = self._history[0][0] if self._history else self._version + 1
            if self._history and since < oldest - 1:
                raise ExpiredError(f'resourceVersion {since} is too old')
            for version, event in self._history:
                if version > since and watch.matches(event):
                    watch.send(event)
        self._watches.append(watch)

    def _close_watch(self, watch):
        if watch in self._watches:
            self._watches.remove(watch)

    def _remove(self, obj, operation):
        del self._objects[(obj.kind, obj.namespace, obj.name)]
        obj.metadata.resource_version = self._next_version()
        self._emit(DELETED, obj, operation)
        log.debug('removed %r', obj)

    # ObjectStore interface

    async def get(self, kind, namespace, name):
        self._check_fault('get')
        return copy.deepcopy(self._get(kind, namespace, name))

    async def list(self, kind, namespace=None, selector=None):
        self._check_fault('list')
        items = [
            copy.deepcopy(obj)
            for (k, ns, _), obj in self._objects.items()
            if k == kind
            and (namespace is None or ns == namespace)
            and match_labels(selector, obj.metadata.labels)
        ]
        return items, str(self._version)

    def watch(self, kind, namespace=None, resource_version=None):
        return MemoryWatch(self, kind, namespace=namespace, resource_version=resource_version)

    async def create(self, resource):
        self._check_fault('create')
        key = (resource.kind, resource.namespace, resource.name)
        if key in self._objects:
            raise ConflictError('already exists', key=resource.key)
        quota = self.quotas.get(resource.kind)
        if quota is not None:
            used = sum(1 for (k, _, _) in self._objects if k == resource.kind)
            if used >= quota:
                raise QuotaExceededError(
                    f'exceeded quota: {resource.kind} limited to {quota}',
                    key=resource.key,
                )
        obj = copy.deepcopy(resource)
        obj.metadata.uid = str(uuid.uuid4())
        obj.metadata.generation = 1
        obj.metadata.resource_version = self._next_version()
        obj.metadata.creation_timestamp = format_time(self.clock.now())
        obj.metadata.deletion_timestamp = None
        obj.status = {}
        self._objects[key] = obj
        self._emit(ADDED, obj, 'create')
        return copy.deepcopy(obj)

    async def update(self, resource, expected_resource_version=None):
        self._check_fault('update')
        current = self._get(resource.kind, resource.namespace, resource.name)
        self._check_version(current, expected_resource_version)
        obj = copy.deepcopy(current)
        meta = resource.metadata
        obj.metadata.labels = copy.deepcopy(meta.labels)
        obj.metadata.annotations = copy.deepcopy(meta.annotations)
        obj.metadata.owner_references = copy.deepcopy(meta.owner_references)
        obj.metadata.finalizers = list(meta.finalizers)
        if resource.spec != current.spec:
            obj.spec = copy.deepcopy(resource.spec)
            obj.metadata.generation += 1
        if obj.is_terminating and not obj.metadata.finalizers:
            self._objects[(obj.kind, obj.namespace, obj.name)] = obj
            self._remove(obj, 'update')
            return copy.deepcopy(obj)
        obj.metadata.resource_version = self._next_version()
        self._objects[(obj.kind, obj.namespace, obj.name)] = obj
        self._emit(MODIFIED, obj, 'update')
        return copy.deepcopy(obj)

    async def update_status(self, resource, expected_resource_version=None):
        self._check_fault('update_status')
        current = self._get(resource.kind, resource.namespace, resource.name)
        self._check_version(current, expected_resource_version)
        obj = copy.deepcopy(current)
        obj.status = copy.deepcopy(resource.status)
        obj.metadata.resource_version = self._next_version()
        self._objects[(obj.kind, obj.namespace, obj.name)] = obj
        self._emit(MODIFIED, obj, 'update_status')
        return copy.deepcopy(obj)

    async def delete(self, kind, namespace, name, expected_resource_version=None):
        self._check_fault('delete')
        current = self._get(kind, namespace, name)
        self._check_version(current, expected_resource_version)
        obj = copy.deepcopy(current)
        if obj.metadata.finalizers:
            if obj.is_terminating:
                return obj
            obj.metadata.deletion_timestamp = format_time(self.clock.now())
            obj.metadata.resource_version = self._next_version()
            self._objects[(kind, namespace, name)] = obj
            self._emit(MODIFIED, obj, 'delete')
            return copy.deepcopy(obj)
        self._remove(obj, 'delete')
        return obj
