import copy
import logging

from ..actions import Update
from ..clock import Clock
from ..exceptions import NotFoundError, ValidationError
from ..controller import Reconciler, status_update
from ..ordering import MEMBER_KIND, Phase
from ..resources import conditions
from ..revisions import (
    DEFAULT_HISTORY_LIMIT,
    REVISION_KIND,
    history_gc,
    revision_actions,
    revision_hash,
    rollback_action,
)
from ..tasks import nonblocking


log = logging.getLogger(__name__)


# Set to a revision number, or "previous", to restore an earlier template.
ROLLBACK_ANNOTATION = 'converge.dev/rollback-to'


def _non_negative_int(spec, field, default):
    value = spec.get(field, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f'{field}: expected a non negative integer, got {value!r}')
    return value


class WorkloadReconciler(Reconciler):
    """Common ground of workloads made of `Replica` members.

    Spec:

        replicas: int (default 1)
        template: dict, copied into every member
        revisionHistoryLimit: int (default 10)

    Every template the workload ever ran is kept as a ControllerRevision.
    Members are labelled with the hash of their revision.
    The `converge.dev/rollback-to` annotation restores the template of an
    earlier revision and is removed again in the same write.
    """

    owns = (MEMBER_KIND, REVISION_KIND)

    def __init__(self, clock=None, revision_history_limit=DEFAULT_HISTORY_LIMIT):
        self.clock = clock or Clock()
        self.revision_history_limit = revision_history_limit

    @nonblocking
    def validate(self, obj):
        spec = obj.spec
        _non_negative_int(spec, 'replicas', 1)
        _non_negative_int(spec, 'revisionHistoryLimit', self.revision_history_limit)
        template = spec.get('template')
        if not isinstance(template, dict):
            raise ValidationError('template: expected a mapping')

    def desired(self, obj):
        return obj.spec.get('replicas', 1)

    def members_plan(self, obj, members, desired, update_hash, revisions_by_hash):
        raise NotImplementedError()

    def min_available(self, obj, desired):
        return desired

    @nonblocking
    def plan(self, obj, view):
        template = obj.spec['template']
        desired = self.desired(obj)
        members = view.children(obj, MEMBER_KIND)
        revisions = view.children(obj, REVISION_KIND)

        if ROLLBACK_ANNOTATION in obj.metadata.annotations:
            return self.rollback(obj, revisions)

        actions, update_hash = revision_actions(obj, revisions, template)
        by_hash = {revision_hash(r): r for r in revisions}
        for action in actions:
            by_hash[revision_hash(action.resource)] = action.resource

        plan = self.members_plan(obj, members, desired, update_hash, by_hash)
        actions.extend(plan.actions)

        limit = obj.spec.get('revisionHistoryLimit', self.revision_history_limit)
        live_hashes = {revision_hash(m) for m in members}
        actions.extend(history_gc(revisions, live_hashes, {update_hash}, limit))

        status = self.status(obj, plan, update_hash)
        actions.extend(status_update(obj, status))
        return actions

    def rollback(self, obj, revisions):
        value = obj.metadata.annotations[ROLLBACK_ANNOTATION]
        try:
            to_revision = None if value in ('', 'previous') else int(value)
            action = rollback_action(obj, revisions, to_revision)
        except (ValueError, NotFoundError) as e:
            log.warning('%r: ignoring rollback to %r: %s', obj, value, e)
            updated = copy.deepcopy(obj)
            action = Update(updated)
        else:
            log.info('%r: rolling back to revision %s', obj, value or 'previous')
        del action.resource.metadata.annotations[ROLLBACK_ANNOTATION]
        return [action]

    def status(self, obj, plan, update_hash):
        now = self.clock.now()
        intent = plan.intent
        status = copy.deepcopy(obj.status)
        status.update(intent.to_status())
        status['observedGeneration'] = obj.generation
        status['phase'] = str(plan.phase)
        status['updateRevision'] = update_hash
        if plan.phase == Phase.STABLE:
            status['currentRevision'] = update_hash
        conditions.set_condition(status, conditions.VALID, True, 'Valid', now=now)
        if intent.ready >= self.min_available(obj, intent.desired):
            conditions.set_condition(
                status, conditions.AVAILABLE, True, 'MinimumReplicasAvailable', now=now
            )
        else:
            conditions.set_condition(
                status,
                conditions.AVAILABLE,
                False,
                'MinimumReplicasUnavailable',
                f'{intent.ready} of {intent.desired} replicas ready',
                now=now,
            )
        if plan.phase == Phase.STABLE:
            conditions.set_condition(status, conditions.PROGRESSING, False, 'Stable', now=now)
        else:
            conditions.set_condition(
                status, conditions.PROGRESSING, True, str(plan.phase), now=now
            )
        return status
