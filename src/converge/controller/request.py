import dataclasses
import logging

from ..resources import ReconcileKey
from ..tasks import nonblocking


log = logging.getLogger(__name__)


@dataclasses.dataclass
class Result:
    """What a successful reconcile asks of the work queue."""

    requeue: bool = False
    requeue_after: float = None


@nonblocking
def keys_from_event_for_object(event):
    seen = set()
    for obj in event.objects:
        key = key_for_object(obj)
        if key not in seen:
            seen.add(key)
            yield key


@nonblocking
def keys_from_event_for_owner(event, owner_kind=None):
    seen = set()
    for obj in event.objects:
        key = key_for_owner(obj, owner_kind)
        if key is not None and key not in seen:
            seen.add(key)
            yield key


def key_for_object(obj):
    return ReconcileKey(obj.kind, obj.namespace, obj.name)


def key_for_owner(obj, owner_kind):
    """Key of the controlling owner of `obj`, if it is of `owner_kind`."""
    ref = obj.controller_ref()
    if ref is None or ref.kind != owner_kind:
        return None
    return ReconcileKey(owner_kind, obj.namespace, ref.name)
