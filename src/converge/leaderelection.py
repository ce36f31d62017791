"""
Leader election on a lease object in the store.

The lease spec holds `holderIdentity`, `leaseDurationSeconds`,
`acquireTime`, `renewTime` and `leaseTransitions`. A candidate may only
take over once `renewTime + leaseDurationSeconds` has passed. All writes
carry the resourceVersion of the lease they were computed from, so two
candidates can never both win the same round.

`is_leader()` turns false as soon as `renew_deadline` has passed since the
last successful renewal, independent of the election loop. The action
executor checks it before every store call.
"""

import copy
import logging

import anyio
from anyio import TASK_STATUS_IGNORED
from anyio.abc import TaskStatus

from .clock import Clock, format_time, parse_time
from .exceptions import ConfigError, ConflictError, NotFoundError, TransientStoreError
from .resources import new_resource
from .tasks import Task, invoke


log = logging.getLogger(__name__)


LEASE_KIND = 'Lease'


class LeaderElector(Task):
    def __init__(
        self,
        store,
        identity,
        namespace='default',
        name='converge-controller',
        lease_duration=15,
        renew_deadline=10,
        retry_period=2,
        clock=None,
        on_started_leading=None,
        on_stopped_leading=None,
        on_new_leader=None,
        release_on_cancel=True,
    ):
        super().__init__()
        if not identity:
            raise ConfigError('leader election requires an identity')
        if renew_deadline >= lease_duration:
            raise ConfigError('renew_deadline must be shorter than lease_duration')
        if retry_period >= renew_deadline:
            raise ConfigError('retry_period must be shorter than renew_deadline')
        self.store = store
        self.identity = identity
        self.namespace = namespace
        self.name = name
        self.lease_duration = lease_duration
        self.renew_deadline = renew_deadline
        self.retry_period = retry_period
        self.clock = clock or Clock()
        self.on_started_leading = on_started_leading
        self.on_stopped_leading = on_stopped_leading
        self.on_new_leader = on_new_leader
        self.release_on_cancel = release_on_cancel
        self._observed = None
        self._last_renew = None
        self._leading = False
        self._cancel_scope = None

    def __repr__(self):
        return f'<LeaderElector {self.namespace}/{self.name} {self.identity}>'

    @property
    def holder(self):
        if self._observed is None:
            return None
        return self._observed.spec.get('holderIdentity') or None

    @property
    def leading(self):
        return self._leading

    def is_leader(self):
        if self._last_renew is None:
            return False
        return self.clock.now() < self._last_renew + self.renew_deadline

    def _observe(self, lease):
        previous = self.holder
        self._observed = lease
        holder = self.holder
        if holder != previous:
            log.info('%r: lease %s/%s is held by %s', self, self.namespace, self.name, holder)
            if self.on_new_leader is not None and holder:
                self.on_new_leader(holder)

    def _is_expired(self, lease, now):
        spec = lease.spec
        if not spec.get('holderIdentity'):
            return True
        renew_time = parse_time(spec.get('renewTime'))
        if renew_time is None:
            return True
        duration = spec.get('leaseDurationSeconds') or self.lease_duration
        return renew_time + duration <= now

    async def try_acquire_or_renew(self):
        """One election round. Returns True if we hold the lease afterwards."""
        now = self.clock.now()
        timestamp = format_time(now)
        try:
            lease = await self.store.get(LEASE_KIND, self.namespace, self.name)
        except NotFoundError:
            lease = None
        except TransientStoreError as e:
            log.warning('%r: failed to read lease: %r', self, e)
            return False

        if lease is None:
            spec = {
                'holderIdentity': self.identity,
                'leaseDurationSeconds': self.lease_duration,
                'acquireTime': timestamp,
                'renewTime': timestamp,
                'leaseTransitions': 0,
            }
            obj = new_resource(LEASE_KIND, self.name, namespace=self.namespace, spec=spec)
            try:
                created = await self.store.create(obj)
            except (ConflictError, TransientStoreError) as e:
                log.debug('%r: failed to create lease: %r', self, e)
                return False
            self._observe(created)
            self._last_renew = now
            return True

        holder = lease.spec.get('holderIdentity')
        if holder != self.identity and not self._is_expired(lease, now):
            self._observe(lease)
            # Somebody else holds a valid lease, we can not be leading.
            self._last_renew = None
            return False

        updated = copy.deepcopy(lease)
        transitions = int(lease.spec.get('leaseTransitions') or 0)
        if holder == self.identity:
            acquire_time = lease.spec.get('acquireTime') or timestamp
        else:
            acquire_time = timestamp
            if holder:
                transitions += 1
        updated.spec = {
            'holderIdentity': self.identity,
            'leaseDurationSeconds': self.lease_duration,
            'acquireTime': acquire_time,
            'renewTime': timestamp,
            'leaseTransitions': transitions,
        }
        try:
            result = await self.store.update(
                updated, expected_resource_version=lease.resource_version
            )
        except ConflictError:
            log.debug('%r: lost the race for the lease', self)
            return False
        except TransientStoreError as e:
            log.warning('%r: failed to update lease: %r', self, e)
            return False
        self._observe(result)
        self._last_renew = now
        return True

    async def release(self):
        """Give up the lease so another candidate can take over immediately."""
        if not self.is_leader() or self.holder != self.identity:
            return False
        lease = copy.deepcopy(self._observed)
        lease.spec['holderIdentity'] = None
        lease.spec['leaseDurationSeconds'] = 1
        lease.spec['renewTime'] = format_time(self.clock.now())
        self._last_renew = None
        try:
            result = await self.store.update(
                lease, expected_resource_version=self._observed.resource_version
            )
        except (ConflictError, NotFoundError, TransientStoreError) as e:
            log.warning('%r: failed to release lease: %r', self, e)
            return False
        self._observe(result)
        log.info('%r: released lease', self)
        return True

    async def _set_leading(self, leading):
        self._leading = leading
        if leading:
            log.info('%r: started leading', self)
            if self.on_started_leading is not None:
                await invoke(self.on_started_leading)
        else:
            log.info('%r: stopped leading', self)
            if self.on_stopped_leading is not None:
                await invoke(self.on_stopped_leading)

    async def step(self):
        acquired = await self.try_acquire_or_renew()
        if acquired and not self._leading:
            await self._set_leading(True)
        elif self._leading and not self.is_leader():
            await self._set_leading(False)
        return acquired

    def stop(self):
        self._stop.set()
        if self._cancel_scope is not None:
            self._cancel_scope.cancel()

    async def __call__(self, task_status: TaskStatus[None] = TASK_STATUS_IGNORED):
        log.info('%r: starting', self)
        self._running.set()
        task_status.started()
        try:
            with anyio.CancelScope() as self._cancel_scope:
                while not self._stop.is_set():
                    await self.step()
                    await anyio.sleep(self.retry_period)
        finally:
            self._cancel_scope = None
            with anyio.CancelScope(shield=True):
                if self._leading:
                    await self._set_leading(False)
                if self.release_on_cancel:
                    await self.release()
            self._last_renew = None
            log.info('%r: stopped', self)
