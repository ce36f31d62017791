import logging

from ..ordering import MEMBER_KIND, ordered_plan
from ..revisions import template_hash
from ..tasks import nonblocking
from .workload import WorkloadReconciler


log = logging.getLogger(__name__)


FINALIZER = 'converge.dev/ordered-teardown'


class OrderedSetReconciler(WorkloadReconciler):
    """StatefulSet style workload: members `<name>-0` .. `<name>-<n-1>`
    are created, replaced and removed strictly one at a time.

    Deleting an OrderedSet tears its members down highest ordinal first
    before the object goes away.
    """

    kind = 'OrderedSet'
    finalizer = FINALIZER

    def members_plan(self, obj, members, desired, update_hash, revisions_by_hash):
        return ordered_plan(
            obj,
            members,
            desired,
            update_hash,
            obj.spec['template'],
            revisions_by_hash=revisions_by_hash,
        )

    @nonblocking
    def finalize(self, obj, view):
        members = view.children(obj, MEMBER_KIND)
        template = obj.spec.get('template')
        plan = ordered_plan(obj, members, 0, template_hash(template), template)
        return plan.actions

    @nonblocking
    def is_finalized(self, obj, view):
        return not view.children(obj, MEMBER_KIND)
