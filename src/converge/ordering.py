"""
The ordering engine turns the members of a workload into the next batch
of actions.

Ordinal workloads (`ordered_plan`) move strictly one member at a time:
ordinal i is created only once every lower ordinal is Ready and deleted
only once every higher ordinal is gone. Slot workloads (`rolling_plan`)
replace members in batches bounded by `maxSurge` and `maxUnavailable`.

Members are named `<owner>-<index>` and store their index and the template
they were created from in their spec. Members being terminated still hold
their name and count against surge, but are never Ready.
"""

import copy
import dataclasses
import enum
import math

from .actions import Create, Delete
from .exceptions import ValidationError
from .resources import new_resource
from .revisions import HASH_LABEL, OWNER_LABEL, is_drifted, revision_hash


MEMBER_KIND = 'Replica'


class Phase(str, enum.Enum):
    SCALING_UP = 'ScalingUp'
    SCALING_DOWN = 'ScalingDown'
    ROLLING_UPDATE = 'RollingUpdate'
    STABLE = 'Stable'

    def __str__(self):
        return self.value


@dataclasses.dataclass
class ReplicaIntent:
    desired: int
    current: int = 0
    ready: int = 0
    updated: int = 0

    def to_status(self):
        return {
            'replicas': self.current,
            'readyReplicas': self.ready,
            'updatedReplicas': self.updated,
        }


@dataclasses.dataclass
class Plan:
    phase: Phase
    actions: list
    intent: ReplicaIntent


def is_ready(member):
    return not member.is_terminating and member.status.get('ready') is True


def member_index(member):
    return int(member.spec['index'])


def new_member(owner, index, template, update_hash, kind=MEMBER_KIND):
    labels = dict((template or {}).get('labels') or {})
    labels[OWNER_LABEL] = owner.name
    labels[HASH_LABEL] = update_hash
    return new_resource(
        kind,
        f'{owner.name}-{index}',
        namespace=owner.namespace,
        spec={'index': index, 'template': copy.deepcopy(template)},
        labels=labels,
        owner=owner,
    )


def is_old(member, update_hash, revisions_by_hash=None):
    if revision_hash(member) != update_hash:
        return True
    return bool(revisions_by_hash) and is_drifted(member, revisions_by_hash)


def intent_of(members, desired, update_hash, revisions_by_hash=None):
    live = [m for m in members if not m.is_terminating]
    return ReplicaIntent(
        desired=desired,
        current=len(live),
        ready=sum(1 for m in live if is_ready(m)),
        updated=sum(1 for m in live if not is_old(m, update_hash, revisions_by_hash)),
    )


def phase_of(members, desired, update_hash, revisions_by_hash=None):
    """Where a workload stands, judged from its members alone."""
    live = [m for m in members if not m.is_terminating]
    if any(is_old(m, update_hash, revisions_by_hash) for m in live):
        return Phase.ROLLING_UPDATE
    if len(live) < desired:
        return Phase.SCALING_UP
    if len(members) > desired:
        return Phase.SCALING_DOWN
    if not all(is_ready(m) for m in live):
        return Phase.SCALING_UP
    return Phase.STABLE


def resolve_budget(value, desired, round_up, field='value'):
    """An absolute count or a percentage of `desired`."""
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValidationError(f'{field}: expected an integer or percentage, got {value!r}')
    if isinstance(value, int):
        result = value
    elif isinstance(value, str) and value.endswith('%'):
        try:
            percent = int(value[:-1])
        except ValueError:
            raise ValidationError(f'{field}: invalid percentage {value!r}') from None
        scaled = percent * desired / 100
        result = math.ceil(scaled) if round_up else math.floor(scaled)
    else:
        try:
            result = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f'{field}: expected an integer or percentage, got {value!r}') from None
    if result < 0:
        raise ValidationError(f'{field}: must not be negative')
    return result


def _is_zero(value):
    return value in (0, '0', '0%')


def rolling_budgets(strategy, desired):
    strategy = strategy or {}
    surge = resolve_budget(strategy.get('maxSurge', '25%'), desired, True, 'maxSurge')
    unavailable = resolve_budget(
        strategy.get('maxUnavailable', '25%'), desired, False, 'maxUnavailable'
    )
    if surge == 0 and unavailable == 0:
        if _is_zero(strategy.get('maxSurge')) and _is_zero(strategy.get('maxUnavailable')):
            raise ValidationError('maxSurge and maxUnavailable can not both be zero')
        # Percentages rounding to zero on small workloads.
        unavailable = 1
    return surge, unavailable


def ordered_plan(owner, members, desired, update_hash, template, revisions_by_hash=None):
    by_index = {member_index(m): m for m in members}
    intent = intent_of(members, desired, update_hash, revisions_by_hash)

    # Scale up and repair: walk upwards, stop at the first gap or unready member.
    for index in range(desired):
        member = by_index.get(index)
        if member is None:
            action = Create(new_member(owner, index, template, update_hash))
            return Plan(Phase.SCALING_UP, [action], intent)
        if not is_ready(member):
            phase = Phase.ROLLING_UPDATE if member.is_terminating else Phase.SCALING_UP
            return Plan(phase, [], intent)

    terminating = any(m.is_terminating for m in members)

    # Scale down: highest ordinal first, the next one only once it is gone.
    condemned = sorted(
        (m for index, m in by_index.items() if index >= desired),
        key=member_index,
        reverse=True,
    )
    if condemned:
        if terminating:
            return Plan(Phase.SCALING_DOWN, [], intent)
        return Plan(Phase.SCALING_DOWN, [Delete.of(condemned[0])], intent)

    # Rolling update: reverse ordinal order, recreated by the scale up pass.
    old = sorted(
        (m for m in members if is_old(m, update_hash, revisions_by_hash)),
        key=member_index,
        reverse=True,
    )
    if old:
        if terminating:
            return Plan(Phase.ROLLING_UPDATE, [], intent)
        return Plan(Phase.ROLLING_UPDATE, [Delete.of(old[0])], intent)

    return Plan(Phase.STABLE, [], intent)


def free_slots(members, count):
    taken = {member_index(m) for m in members}
    slots = []
    index = 0
    while len(slots) < count:
        if index not in taken:
            slots.append(index)
        index += 1
    return slots


def _age(member):
    return (member.metadata.creation_timestamp or '', member_index(member))


def rolling_plan(
    owner,
    members,
    desired,
    update_hash,
    template,
    max_surge,
    max_unavailable,
    revisions_by_hash=None,
):
    """Surge new members and retire old ones without leaving the
    `[desired - max_unavailable, desired + max_surge]` corridor."""
    live = [m for m in members if not m.is_terminating]
    new = [m for m in live if not is_old(m, update_hash, revisions_by_hash)]
    old = [m for m in live if is_old(m, update_hash, revisions_by_hash)]
    intent = intent_of(members, desired, update_hash, revisions_by_hash)
    phase = phase_of(members, desired, update_hash, revisions_by_hash)

    max_total = desired + max_surge
    min_available = max(desired - max_unavailable, 0)
    available = sum(1 for m in live if is_ready(m))
    actions = []

    # New members, one surge batch at a time.
    in_flight = sum(1 for m in new if not is_ready(m))
    count = min(
        desired - len(new),
        max_total - len(members),
        max(1, max_surge) - in_flight,
    )
    for index in free_slots(members, max(count, 0)):
        actions.append(Create(new_member(owner, index, template, update_hash)))

    # Old members, unready ones first, then oldest first. Every delete
    # counts against the live floor (new members not yet Ready are
    # unavailable too), ready ones also against the availability floor.
    cap = len(live) - min_available - in_flight
    budget = available - min_available
    for member in sorted(old, key=lambda m: (is_ready(m), _age(m))):
        if cap <= 0:
            break
        if is_ready(member):
            if budget <= 0:
                break
            budget -= 1
        cap -= 1
        actions.append(Delete.of(member))

    # Surplus new members once no old ones are left.
    surplus = len(new) - desired
    if not old and surplus > 0:
        unready = [m for m in new if not is_ready(m)]
        ready = sorted((m for m in new if is_ready(m)), key=member_index, reverse=True)
        for member in (unready + ready)[:surplus]:
            actions.append(Delete.of(member))

    return Plan(phase, actions, intent)
