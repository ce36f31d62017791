"""
Actions are the output of a reconciler: a list of store writes that move
the observed state one step closer to the desired state.
"""

import dataclasses

from .resources import ReconcileKey, Resource

__all__ = [
    'Action',
    'Create',
    'Delete',
    'Update',
    'describe',
]


class Action:
    @property
    def key(self):
        raise NotImplementedError()


@dataclasses.dataclass
class Create(Action):
    resource: Resource

    @property
    def key(self):
        return self.resource.key

    def __repr__(self):
        return f'<Create {self.key}>'


@dataclasses.dataclass
class Update(Action):
    """Write `spec` (and metadata) or the `status` subresource of an object,
    guarded by the resource version it was computed from."""

    resource: Resource
    subresource: str = 'spec'
    expected_resource_version: str = None

    def __post_init__(self):
        if self.subresource not in ('spec', 'status'):
            raise ValueError(f'unknown subresource: {self.subresource}')
        if self.expected_resource_version is None:
            self.expected_resource_version = self.resource.metadata.resource_version

    @property
    def key(self):
        return self.resource.key

    def __repr__(self):
        return f'<Update {self.subresource} {self.key} @{self.expected_resource_version}>'


@dataclasses.dataclass
class Delete(Action):
    kind: str
    namespace: str
    name: str
    expected_resource_version: str = None

    @classmethod
    def of(cls, obj):
        return cls(
            obj.kind,
            obj.namespace,
            obj.name,
            expected_resource_version=obj.metadata.resource_version,
        )

    @property
    def key(self):
        return ReconcileKey(self.kind, self.namespace, self.name)

    def __repr__(self):
        return f'<Delete {self.key} @{self.expected_resource_version}>'


def describe(actions):
    """Compact, comparable summary of an action list, e.g. for tests and logs."""
    out = []
    for action in actions:
        match action:
            case Create():
                out.append(('create', str(action.key)))
            case Update():
                out.append((f'update_{action.subresource}', str(action.key)))
            case Delete():
                out.append(('delete', str(action.key)))
    return out
