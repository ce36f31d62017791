"""
The built-in reconcilers.
"""

from ..autoscale import Behavior
from .autoscaler import AutoscalerReconciler
from .orderedset import OrderedSetReconciler
from .replicagroup import ReplicaGroupReconciler
from .workload import WorkloadReconciler

__all__ = [
    'AutoscalerReconciler',
    'OrderedSetReconciler',
    'ReplicaGroupReconciler',
    'WorkloadReconciler',
    'builtin_reconcilers',
]


def builtin_reconcilers(settings, clock=None, metrics=None):
    """Reconcilers for OrderedSet, ReplicaGroup and Autoscaler configured from `settings`."""
    return [
        OrderedSetReconciler(
            clock=clock, revision_history_limit=settings.revision_history_limit
        ),
        ReplicaGroupReconciler(
            clock=clock, revision_history_limit=settings.revision_history_limit
        ),
        AutoscalerReconciler(
            metrics=metrics,
            behavior=Behavior.from_settings(settings),
            clock=clock,
            evaluation_period=settings.evaluation_period,
        ),
    ]
