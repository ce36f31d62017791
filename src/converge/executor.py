import logging

from .actions import Create, Delete, Update
from .exceptions import LeadershipLost, NotFoundError


log = logging.getLogger(__name__)


class ActionExecutor:
    """Applies action lists against the object store.

    Actions run in order and the first failure stops the list; the error
    propagates to the controller, which decides about retries. When a
    leader elector is given, every single store call requires that we
    still hold the lease.
    """

    def __init__(self, store, leader=None):
        self.store = store
        self.leader = leader

    def __repr__(self):
        return f'<ActionExecutor {self.store!r}>'

    def _check_leadership(self, action):
        if self.leader is not None and not self.leader.is_leader():
            raise LeadershipLost(f'refusing {action!r}, not the leader')

    async def _apply(self, action):
        match action:
            case Create():
                return await self.store.create(action.resource)
            case Update(subresource='status'):
                return await self.store.update_status(
                    action.resource,
                    expected_resource_version=action.expected_resource_version,
                )
            case Update():
                return await self.store.update(
                    action.resource,
                    expected_resource_version=action.expected_resource_version,
                )
            case Delete():
                try:
                    return await self.store.delete(
                        action.kind,
                        action.namespace,
                        action.name,
                        expected_resource_version=action.expected_resource_version,
                    )
                except NotFoundError:
                    # Already gone is what we wanted.
                    log.debug('%r: already deleted', action)
                    return None
        raise TypeError(f'unknown action: {action!r}')

    async def execute(self, actions):
        results = []
        for action in actions:
            self._check_leadership(action)
            log.debug('executing %r', action)
            results.append(await self._apply(action))
        return results
