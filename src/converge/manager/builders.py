import logging

from ..controller import FunctionReconciler, keys_from_event_for_owner
from ..exceptions import ConfigError


log = logging.getLogger(__name__)


class Builder:
    """A Builder is used to collect information at import time
    that is later used to create actual instances at runtime.
    """


def _decorate(func, decorator):
    if func is None:
        # We're called as @decorator() with parens.
        return decorator
    # We're called as @decorator without parens.
    return decorator(func)


class ControllerBuilder(Builder):
    def __init__(self, manager, kind, name=None) -> None:
        self.manager = manager
        self.kind = kind
        self._kwargs = {
            'name': name,
            'predicates': [],
            'startup': None,
            'shutdown': None,
            'workers': None,
        }
        self._reconciler = {
            'plan': None,
            'validate': None,
            'finalize': None,
            'finalizer': None,
            'owns': [],
            'watches': {},
            'reads': [],
        }
        self._instance = None

    def __repr__(self):
        return f'<ControllerBuilder {self.kind}>'

    def __getattr__(self, key):
        # proxy to Controller instance
        if key.startswith('_') or self._instance is None:
            raise AttributeError(key)
        return getattr(self._instance, key)

    def build_reconciler(self):
        return FunctionReconciler(self.kind, **self._reconciler)

    def _set_once(self, target, key, f):
        existing = target.get(key)
        if callable(existing):
            raise ConfigError(
                f'Controller for {self.kind} already has a {key} function registered: {existing}'
            )
        target[key] = f
        return f

    def owns(self, kind):
        """Watch `kind` and reconcile the controlling owner of changed objects
        if it is of our kind. Owned objects are deleted when the owner is gone.
        """
        self._reconciler['owns'].append(kind)

    def reads(self, kind):
        """Keep `kind` in the cache without reconciling on its changes."""
        self._reconciler['reads'].append(kind)

    def watch(self, kind):
        """Decorator that registers a watch for the given kind.
        The decorated function must yield ReconcileKeys that
        are then added to the workqueue for reconcilation.
        """

        def decorator(f):
            self._reconciler['watches'][kind] = f
            return f

        return decorator

    def watch_owner(self, kind):
        """Watch `kind` and reconcile the controlling owner, without
        deleting orphans."""
        handler = _OwnerHandler(self.kind)
        self._reconciler['watches'][kind] = handler

    def predicate(self, func=None, /):
        """Decorator that registers a predicate function with this controller.
        All registered predicates must return True for a key to be added
        to the workqueue for reconcilation.
        """

        def decorator(f):
            self._kwargs['predicates'].append(f)
            return f

        return _decorate(func, decorator)

    def validate(self, func=None, /):
        """Decorator that registers a function raising ValidationError for
        specs that can never be reconciled."""

        def decorator(f):
            return self._set_once(self._reconciler, 'validate', f)

        return _decorate(func, decorator)

    def finalize(self, finalizer):
        """Decorator that registers a finalize function run before objects
        carrying `finalizer` are removed. It returns the actions still needed,
        the finalizer is dropped once it returns none."""

        def decorator(f):
            self._reconciler['finalizer'] = finalizer
            return self._set_once(self._reconciler, 'finalize', f)

        return decorator

    def startup(self, func=None, /):
        """Decorator that registers an startup function with this controller."""

        def decorator(f):
            return self._set_once(self._kwargs, 'startup', f)

        return _decorate(func, decorator)

    def shutdown(self, func=None, /):
        """Decorator that registers an shutdown function with this controller."""

        def decorator(f):
            return self._set_once(self._kwargs, 'shutdown', f)

        return _decorate(func, decorator)

    def reconcile(self, func=None, /, *, concurrency=None):
        """Decorator that registers a reconcile function with this controller.

        It is called as `reconcile(obj, view)` and returns a list of actions,
        or `(actions, Result)`.
        """
        self._kwargs['workers'] = concurrency

        def decorator(f):
            return self._set_once(self._reconciler, 'plan', f)

        return _decorate(func, decorator)


class _OwnerHandler:
    def __init__(self, owner_kind):
        self.owner_kind = owner_kind
        self.__nonblocking__ = True

    def __repr__(self):
        return f'<OwnerHandler {self.owner_kind}>'

    def __call__(self, event):
        return keys_from_event_for_owner(event, owner_kind=self.owner_kind)
