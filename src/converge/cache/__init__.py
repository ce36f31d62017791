from .events import (
    Event,
    Added,
    Modified,
    Deleted,
    Resynced,
)
from .index import Indexer, IndexView
from .informer import Informer
from .cache import Cache

__all__ = [
    'Added',
    'Cache',
    'Deleted',
    'Event',
    'IndexView',
    'Indexer',
    'Informer',
    'Modified',
    'Resynced',
]
