import dataclasses

from ..resources import Resource

__all__ = [
    'ADDED',
    'DELETED',
    'MODIFIED',
    'ObjectStore',
    'WatchEvent',
]


ADDED = 'ADDED'
MODIFIED = 'MODIFIED'
DELETED = 'DELETED'


@dataclasses.dataclass
class WatchEvent:
    type: str
    obj: Resource

    def __repr__(self):
        return f'<WatchEvent {self.type} {self.obj!r}>'


class ObjectStore:
    """Interface: typed CRUD + watch over resources.

    All methods are async. Implementations raise the errors defined in
    `converge.exceptions`: NotFoundError, ConflictError, ValidationError,
    QuotaExceededError and TransientStoreError (ExpiredError for watches
    that can not be resumed).
    """

    async def get(self, kind, namespace, name):
        """Return the current object."""
        raise NotImplementedError()

    async def list(self, kind, namespace=None, selector=None):
        """Return a tuple of (objects, resource_version)."""
        raise NotImplementedError()

    def watch(self, kind, namespace=None, resource_version=None):
        """Return an async context manager yielding an async iterator
        of WatchEvents that happened after `resource_version`."""
        raise NotImplementedError()

    async def create(self, resource):
        raise NotImplementedError()

    async def update(self, resource, expected_resource_version=None):
        """Replace metadata and spec. Status is ignored."""
        raise NotImplementedError()

    async def update_status(self, resource, expected_resource_version=None):
        """Replace the status subresource. Spec is ignored."""
        raise NotImplementedError()

    async def delete(self, kind, namespace, name, expected_resource_version=None):
        raise NotImplementedError()
