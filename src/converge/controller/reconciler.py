"""
Reconcilers compute actions, they never perform them.

A reconciler is registered for one kind. Given the current object and a
read only view of the cache, `plan()` returns the actions that move the
store one step closer to the spec. Running it again without any change in
between must return no actions at all.
"""

import copy
import logging

from ..actions import Delete, Update
from ..exceptions import ConfigError
from ..tasks import invoke, nonblocking
from .request import Result


log = logging.getLogger(__name__)


class Reconciler:
    kind: str = None
    # Added to every object of `kind`, removed after `finalize()` is done.
    finalizer: str = None
    # Child kinds controlled through owner references.
    owns: tuple = ()
    # Extra kinds mapped to keys of `kind`: {kind: handler(event)}.
    watches: dict = None
    # Kinds only read from the cache.
    reads: tuple = ()

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.kind}>'

    @nonblocking
    def validate(self, obj):
        """Raise ValidationError if the spec of `obj` can never be reconciled."""

    def plan(self, obj, view):
        """Return the actions for `obj`, optionally as `(actions, Result)`."""
        raise NotImplementedError()

    @nonblocking
    def finalize(self, obj, view):
        """Actions needed before `obj` may go away."""
        return []

    @nonblocking
    def is_finalized(self, obj, view):
        return True

    @nonblocking
    def cleanup(self, key, view):
        """Delete children left behind by an owner that is gone."""
        actions = []
        for kind in self.owns:
            for child in view.children_of_key(key, kind):
                if not child.is_terminating:
                    actions.append(Delete.of(child))
        return actions


class FunctionReconciler(Reconciler):
    """A reconciler assembled from plain functions, see `ControllerBuilder`."""

    def __init__(
        self,
        kind,
        plan=None,
        validate=None,
        finalize=None,
        finalizer=None,
        owns=(),
        watches=None,
        reads=(),
    ):
        self.kind = kind
        self._plan = plan
        self._validate = validate
        self._finalize = finalize
        self.finalizer = finalizer
        self.owns = tuple(owns)
        self.watches = dict(watches or {})
        self.reads = tuple(reads)
        if finalizer is not None and finalize is None:
            raise ConfigError(f'{kind}: finalizer {finalizer} needs a finalize function')

    def __repr__(self):
        plan = getattr(self._plan, '__name__', self._plan)
        return f'<FunctionReconciler {self.kind} {plan}>'

    async def validate(self, obj):
        if self._validate is not None:
            await invoke(self._validate, obj)

    async def plan(self, obj, view):
        if self._plan is None:
            raise ConfigError(f'{self.kind}: no reconcile function registered')
        return await invoke(self._plan, obj, view)

    async def finalize(self, obj, view):
        if self._finalize is None:
            return []
        return await invoke(self._finalize, obj, view)


class ReconcilerRegistry:
    """One reconciler per kind."""

    def __init__(self):
        self._reconcilers = {}

    def __repr__(self):
        return f'<ReconcilerRegistry {sorted(self._reconcilers)}>'

    def __contains__(self, kind):
        return kind in self._reconcilers

    def __iter__(self):
        return iter(self._reconcilers.values())

    def __len__(self):
        return len(self._reconcilers)

    def register(self, reconciler, kind=None):
        kind = kind or reconciler.kind
        if not kind:
            raise ConfigError(f'{reconciler!r} does not name a kind')
        if kind in self._reconcilers:
            raise ConfigError(f'a reconciler for {kind} is already registered')
        self._reconcilers[kind] = reconciler
        return reconciler

    def get(self, kind):
        try:
            return self._reconcilers[kind]
        except KeyError:
            raise ConfigError(f'no reconciler registered for {kind}') from None

    @property
    def kinds(self):
        return sorted(self._reconcilers)


def status_update(obj, status):
    """An update of the status subresource, or nothing if it did not change."""
    if status == obj.status:
        return []
    updated = copy.deepcopy(obj)
    updated.status = status
    return [Update(updated, subresource='status')]


def split_outcome(outcome):
    """Normalize what `plan()` returned to `(actions, result)`."""
    if outcome is None:
        return [], Result()
    if isinstance(outcome, tuple):
        actions, result = outcome
        return list(actions or []), result or Result()
    return list(outcome), Result()
