from .resources import (
    ObjectMeta,
    OwnerReference,
    ReconcileKey,
    Resource,
    format_selector,
    is_newer_version,
    is_same_version,
    match_labels,
    new_resource,
    owner_key,
    parse_selector,
    set_controller_reference,
)
from . import conditions

__all__ = [
    'ObjectMeta',
    'OwnerReference',
    'ReconcileKey',
    'Resource',
    'conditions',
    'format_selector',
    'is_newer_version',
    'is_same_version',
    'match_labels',
    'new_resource',
    'owner_key',
    'parse_selector',
    'set_controller_reference',
]
