"""
Object store backed by a Kubernetes API server.

Every kind is addressed through the generic custom objects endpoints
(`/apis/<group>/<version>/...`) of the official client, so any API group
with a CRD or a built-in `/apis` group (e.g. coordination.k8s.io leases)
can be used. The client is synchronous, calls are run in worker threads.
"""

import dataclasses
import functools
import logging

import anyio
import urllib3

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes import watch as k8s_watch
from kubernetes.client.rest import ApiException

from ..exceptions import (
    ConflictError,
    ExpiredError,
    NotFoundError,
    QuotaExceededError,
    StoreError,
    TransientStoreError,
    ValidationError,
)
from ..resources import ReconcileKey, Resource, format_selector
from .base import ObjectStore, WatchEvent


log = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class KindInfo:
    group: str
    version: str
    plural: str
    namespaced: bool = True

    @property
    def api_version(self):
        return f'{self.group}/{self.version}'


DEFAULT_GROUP = 'converge.dev'

DEFAULT_KINDS = {
    'OrderedSet': KindInfo(DEFAULT_GROUP, 'v1', 'orderedsets'),
    'ReplicaGroup': KindInfo(DEFAULT_GROUP, 'v1', 'replicagroups'),
    'Replica': KindInfo(DEFAULT_GROUP, 'v1', 'replicas'),
    'ControllerRevision': KindInfo(DEFAULT_GROUP, 'v1', 'controllerrevisions'),
    'Autoscaler': KindInfo(DEFAULT_GROUP, 'v1', 'autoscalers'),
    'Lease': KindInfo('coordination.k8s.io', 'v1', 'leases'),
}


def map_api_exception(e, key=None):
    """Translate an ApiException into the store error taxonomy."""
    status = e.status
    message = e.reason
    if e.body:
        message = f'{e.reason}: {e.body}'
    match status:
        case 404:
            return NotFoundError(message, key=key)
        case 409:
            return ConflictError(message, key=key)
        case 410:
            return ExpiredError(message, key=key)
        case 400 | 422:
            return ValidationError(message, key=key)
        case 403 if 'exceeded quota' in (e.body or ''):
            return QuotaExceededError(message, key=key)
        case 429:
            return TransientStoreError(message, key=key)
        case _ if status is None or status >= 500:
            return TransientStoreError(message, key=key)
    return StoreError(message, key=key)


def load_config(kubeconfig=None, context=None):
    """Load in-cluster configuration, falling back to a kubeconfig file."""
    try:
        k8s_config.load_incluster_config()
    except k8s_config.ConfigException:
        k8s_config.load_kube_config(config_file=kubeconfig, context=context)


class KubeWatch:
    def __init__(self, store, kind, namespace=None, resource_version=None):
        self.store = store
        self.kind = kind
        self.namespace = namespace
        self.resource_version = resource_version
        self._watch = None
        self._iterator = None

    def __repr__(self):
        return f'<KubeWatch {self.kind} {self.namespace} {self.resource_version}>'

    async def __aenter__(self):
        info = self.store.kind_info(self.kind)
        func, args = self.store._list_call(info, self.namespace)
        kwargs = {'timeout_seconds': self.store.watch_timeout}
        if self.resource_version is not None:
            kwargs['resource_version'] = self.resource_version
        self._watch = k8s_watch.Watch()
        self._iterator = self._watch.stream(func, *args, **kwargs)
        return self

    async def __aexit__(self, *exc_info):
        if self._watch is not None:
            self._watch.stop()

    def __aiter__(self):
        return self

    def _next(self):
        try:
            return next(self._iterator, None)
        except ApiException as e:
            raise map_api_exception(e) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientStoreError(f'watch stream failed: {e}') from e

    async def __anext__(self):
        event = await anyio.to_thread.run_sync(self._next, abandon_on_cancel=True)
        if event is None:
            raise StopAsyncIteration
        raw = event['object']
        if event['type'] == 'ERROR':
            code = raw.get('code') if isinstance(raw, dict) else None
            if code == 410:
                raise ExpiredError(raw.get('message'))
            raise TransientStoreError(f'watch error: {raw}')
        return WatchEvent(event['type'], self.store._to_resource(raw))


class KubeStore(ObjectStore):
    def __init__(self, api_client=None, kinds=None, watch_timeout=300):
        self.api_client = api_client
        self.api = k8s_client.CustomObjectsApi(api_client)
        self.kinds = dict(DEFAULT_KINDS)
        if kinds:
            self.kinds.update(kinds)
        self.watch_timeout = watch_timeout

    def __repr__(self):
        return f'<KubeStore kinds: {sorted(self.kinds)}>'

    def register_kind(self, kind, info):
        self.kinds[kind] = info

    def kind_info(self, kind):
        try:
            return self.kinds[kind]
        except KeyError:
            raise ValidationError(f'unknown kind: {kind}') from None

    def _to_resource(self, raw):
        return Resource.from_dict(raw)

    def _to_body(self, resource, info):
        body = resource.to_dict()
        body['apiVersion'] = info.api_version
        return body

    def _list_call(self, info, namespace):
        if info.namespaced and namespace is not None:
            return (
                self.api.list_namespaced_custom_object,
                (info.group, info.version, namespace, info.plural),
            )
        return (
            self.api.list_cluster_custom_object,
            (info.group, info.version, info.plural),
        )

    async def _call(self, key, func, *args, **kwargs):
        try:
            return await anyio.to_thread.run_sync(functools.partial(func, *args, **kwargs))
        except ApiException as e:
            raise map_api_exception(e, key=key) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientStoreError(str(e), key=key) from e

    async def get(self, kind, namespace, name):
        info = self.kind_info(kind)
        key = ReconcileKey(kind, namespace, name)
        if info.namespaced:
            raw = await self._call(
                key, self.api.get_namespaced_custom_object,
                info.group, info.version, namespace, info.plural, name,
            )
        else:
            raw = await self._call(
                key, self.api.get_cluster_custom_object,
                info.group, info.version, info.plural, name,
            )
        return self._to_resource(raw)

    async def list(self, kind, namespace=None, selector=None):
        info = self.kind_info(kind)
        func, args = self._list_call(info, namespace)
        kwargs = {}
        if selector:
            kwargs['label_selector'] = format_selector(selector)
        raw = await self._call(None, func, *args, **kwargs)
        items = []
        for item in raw.get('items', []):
            # List items do not carry apiVersion/kind.
            item.setdefault('kind', kind)
            items.append(self._to_resource(item))
        return items, raw.get('metadata', {}).get('resourceVersion')

    def watch(self, kind, namespace=None, resource_version=None):
        return KubeWatch(self, kind, namespace=namespace, resource_version=resource_version)

    async def create(self, resource):
        info = self.kind_info(resource.kind)
        body = self._to_body(resource, info)
        body['metadata'].pop('resourceVersion', None)
        if info.namespaced:
            raw = await self._call(
                resource.key, self.api.create_namespaced_custom_object,
                info.group, info.version, resource.namespace, info.plural, body,
            )
        else:
            raw = await self._call(
                resource.key, self.api.create_cluster_custom_object,
                info.group, info.version, info.plural, body,
            )
        return self._to_resource(raw)

    async def _replace(self, resource, expected_resource_version, status):
        info = self.kind_info(resource.kind)
        body = self._to_body(resource, info)
        if expected_resource_version is not None:
            body['metadata']['resourceVersion'] = expected_resource_version
        else:
            body['metadata'].pop('resourceVersion', None)
        if info.namespaced:
            func = (
                self.api.replace_namespaced_custom_object_status
                if status
                else self.api.replace_namespaced_custom_object
            )
            args = (info.group, info.version, resource.namespace, info.plural, resource.name, body)
        else:
            func = (
                self.api.replace_cluster_custom_object_status
                if status
                else self.api.replace_cluster_custom_object
            )
            args = (info.group, info.version, info.plural, resource.name, body)
        raw = await self._call(resource.key, func, *args)
        return self._to_resource(raw)

    async def update(self, resource, expected_resource_version=None):
        return await self._replace(resource, expected_resource_version, status=False)

    async def update_status(self, resource, expected_resource_version=None):
        return await self._replace(resource, expected_resource_version, status=True)

    async def delete(self, kind, namespace, name, expected_resource_version=None):
        info = self.kind_info(kind)
        key = ReconcileKey(kind, namespace, name)
        options = k8s_client.V1DeleteOptions()
        if expected_resource_version is not None:
            options.preconditions = k8s_client.V1Preconditions(
                resource_version=expected_resource_version
            )
        if info.namespaced:
            raw = await self._call(
                key, self.api.delete_namespaced_custom_object,
                info.group, info.version, namespace, info.plural, name, body=options,
            )
        else:
            raw = await self._call(
                key, self.api.delete_cluster_custom_object,
                info.group, info.version, info.plural, name, body=options,
            )
        # Objects held by finalizers come back, removed ones as a Status.
        if isinstance(raw, dict) and raw.get('kind') == kind:
            return self._to_resource(raw)
        return None
