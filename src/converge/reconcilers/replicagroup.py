import logging

from ..ordering import rolling_budgets, rolling_plan
from ..tasks import nonblocking
from .workload import WorkloadReconciler


log = logging.getLogger(__name__)


class ReplicaGroupReconciler(WorkloadReconciler):
    """Deployment style workload with interchangeable members.

    Template changes roll out within the budgets of `strategy`:

        strategy:
          maxSurge: int or percentage (default 25%)
          maxUnavailable: int or percentage (default 25%)
    """

    kind = 'ReplicaGroup'

    @nonblocking
    def validate(self, obj):
        super().validate(obj)
        rolling_budgets(obj.spec.get('strategy'), self.desired(obj))

    def min_available(self, obj, desired):
        _, unavailable = rolling_budgets(obj.spec.get('strategy'), desired)
        return max(desired - unavailable, 0)

    def members_plan(self, obj, members, desired, update_hash, revisions_by_hash):
        surge, unavailable = rolling_budgets(obj.spec.get('strategy'), desired)
        return rolling_plan(
            obj,
            members,
            desired,
            update_hash,
            obj.spec['template'],
            surge,
            unavailable,
            revisions_by_hash=revisions_by_hash,
        )
