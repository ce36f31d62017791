"""
Status conditions, the only externally visible signal of reconciliation
progress. Conditions are kept as plain dicts inside `status['conditions']`
so they serialize unchanged to any store:

    {type, status, reason, message, lastTransitionTime}
"""

from ..clock import format_time

# Condition types written by the built-in controllers.
AVAILABLE = 'Available'
PROGRESSING = 'Progressing'
DEGRADED = 'Degraded'
VALID = 'Valid'
QUOTA_EXCEEDED = 'QuotaExceeded'
ABLE_TO_SCALE = 'AbleToScale'
SCALING_ACTIVE = 'ScalingActive'

TRUE = 'True'
FALSE = 'False'
UNKNOWN = 'Unknown'


def _as_status(value):
    if value is True:
        return TRUE
    if value is False:
        return FALSE
    return value


def get_condition(status, type_):
    for condition in (status or {}).get('conditions', []):
        if condition.get('type') == type_:
            return condition
    return None


def is_condition_true(status, type_):
    condition = get_condition(status, type_)
    return condition is not None and condition.get('status') == TRUE


def set_condition(status, type_, value, reason='', message='', now=None):
    """Set a condition on the given status dict (in place).

    lastTransitionTime only moves when the condition status flips, so
    computing the same condition twice yields an identical status.
    """
    value = _as_status(value)
    conditions = status.setdefault('conditions', [])
    for condition in conditions:
        if condition.get('type') == type_:
            if condition.get('status') != value:
                condition['lastTransitionTime'] = format_time(now)
            condition['status'] = value
            condition['reason'] = reason
            condition['message'] = message
            return condition
    condition = {
        'type': type_,
        'status': value,
        'reason': reason,
        'message': message,
        'lastTransitionTime': format_time(now),
    }
    conditions.append(condition)
    return condition


def remove_condition(status, type_):
    conditions = status.get('conditions', [])
    status['conditions'] = [c for c in conditions if c.get('type') != type_]

