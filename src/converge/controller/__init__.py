from .request import (
    Result,
    key_for_object,
    key_for_owner,
    keys_from_event_for_object,
    keys_from_event_for_owner,
)
from .reconciler import (
    FunctionReconciler,
    Reconciler,
    ReconcilerRegistry,
    split_outcome,
    status_update,
)
from .controller import (
    Controller,
)

__all__ = [
    'Controller',
    'FunctionReconciler',
    'Reconciler',
    'ReconcilerRegistry',
    'Result',
    'key_for_object',
    'key_for_owner',
    'keys_from_event_for_object',
    'keys_from_event_for_owner',
    'split_outcome',
    'status_update',
]
