from .base import ADDED, DELETED, MODIFIED, ObjectStore, WatchEvent
from .memory import MemoryStore, MemoryWatch

__all__ = [
    'ADDED',
    'DELETED',
    'MODIFIED',
    'MemoryStore',
    'MemoryWatch',
    'ObjectStore',
    'WatchEvent',
]

# KubeStore pulls in the kubernetes client, import it from `converge.store.kube`.
