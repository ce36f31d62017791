import copy
import logging

import anyio
from anyio import TASK_STATUS_IGNORED
from anyio.abc import CancelScope, TaskStatus

from ..actions import Update
from ..clock import Clock
from ..config import Settings
from ..executor import ActionExecutor
from ..exceptions import (
    ConflictError,
    LeadershipLost,
    NotFoundError,
    PermanentError,
    QuotaExceededError,
    Requeue,
    StoreError,
    TemporaryError,
    ValidationError,
)
from ..resources import conditions
from ..source import EventSource
from ..tasks import Task, invoke
from ..workqueue import Workqueue, default_rate_limiter
from .reconciler import split_outcome
from .request import Result, keys_from_event_for_object, keys_from_event_for_owner


log = logging.getLogger(__name__)


# Reason used for conditions the controller owns itself.
REASON_FAILING = 'ReconcileFailing'
REASON_INVALID = 'InvalidSpec'


class ReconcilerLoggerAdapter(logging.LoggerAdapter):
    """Prefixes the log message with reconcilers number"""

    def process(self, msg, kwargs):
        reconciler = 'reconciler[%i]' % self.extra['num']
        return '%s: %s' % (reconciler, msg), kwargs


class Controller(Task):
    """Runs a pool of workers that feed keys of one kind to a reconciler
    and execute the resulting actions.

    The work queue is the only retry mechanism. How a failure is retried
    depends on the error:

    - conflicts and vanished objects are reconciled again right away
    - invalid specs are reported in status and skipped until the
      generation changes
    - quota errors back off with a longer base delay
    - everything else backs off exponentially
    """

    def __init__(
        self,
        store,
        cache,
        reconciler,
        settings=None,
        executor=None,
        clock=None,
        name=None,
        predicates=None,
        startup=None,
        shutdown=None,
        workers=None,
        wait_for_cache=True,
    ):
        super().__init__()
        self.store = store
        self.cache = cache
        self.reconciler = reconciler
        self.settings = settings or Settings()
        self.executor = executor or ActionExecutor(store)
        self.clock = clock or Clock()
        self.name = name
        self.predicates = predicates or []
        self.startup = startup
        self.shutdown = shutdown
        self.workers = workers or self.settings.workers
        self.wait_for_cache = wait_for_cache

        self._task_group = None  # Main taskgroup
        self._event_sources = []
        # key -> generation found invalid
        self._invalid = {}
        # key -> time of the first failure in a row
        self._failing_since = {}
        self._runs = 0
        self.queue = self._new_queue()
        self._add_event_sources()

    def __repr__(self):
        if self.name is not None:
            return f'<{self.__class__.__name__} {self.name} {self.kind}>'
        return f'<{self.__class__.__name__} {self.kind}>'

    @property
    def kind(self):
        return self.reconciler.kind

    def _new_queue(self):
        return Workqueue(
            rate_limiter=default_rate_limiter(
                self.settings.backoff_base,
                self.settings.backoff_max,
                self.settings.quota_backoff_base,
                self.settings.quota_backoff_max,
            ),
            name=self.kind,
        )

    def _add_event_source(self, kind, handler, **kwargs):
        source = EventSource(
            self.queue,
            kind,
            handler,
            kwargs,
            predicates=self.predicates,
        )
        self._event_sources.append(source)

    def _add_event_sources(self):
        self._event_sources = []
        watches = dict(self.reconciler.watches or {})
        if self.kind not in watches:
            self._add_event_source(self.kind, keys_from_event_for_object)
        for kind in self.reconciler.owns:
            self._add_event_source(kind, keys_from_event_for_owner, owner_kind=self.kind)
        for kind, handler in watches.items():
            self._add_event_source(kind, handler)

    # Status reporting of failures.

    async def _write_conditions(self, key, changes, generation=None):
        """Apply `(type, status, reason, message)` changes to the status of
        the object behind `key`. Failures are logged, the caller decides
        about retries."""
        try:
            obj = await self.store.get(key.kind, key.namespace, key.name)
        except NotFoundError:
            return
        except StoreError as e:
            log.warning('%r: can not read %s to report conditions: %r', self, key, e)
            return
        status = copy.deepcopy(obj.status)
        now = self.clock.now()
        for type_, value, reason, message in changes:
            conditions.set_condition(status, type_, value, reason, message, now=now)
        if generation is not None:
            status['observedGeneration'] = generation
        if status == obj.status:
            return
        obj.status = status
        try:
            await self.executor.execute([Update(obj, subresource='status')])
        except (LeadershipLost, StoreError) as e:
            log.warning('%r: failed to report conditions for %s: %r', self, key, e)

    async def _failed(self, key, error, quota=False):
        now = self.clock.now()
        since = self._failing_since.setdefault(key, now)
        changes = []
        if quota:
            changes.append(
                (conditions.QUOTA_EXCEEDED, conditions.TRUE, 'QuotaExceeded', str(error.message))
            )
        if now - since >= self.settings.degraded_after:
            log.warning('%r: %s failing since %.0fs: %r', self, key, now - since, error)
            changes.append(
                (conditions.DEGRADED, conditions.TRUE, REASON_FAILING, repr(error))
            )
        if changes:
            await self._write_conditions(key, changes)

    async def _succeeded(self, key):
        self._failing_since.pop(key, None)
        try:
            obj = self.cache.get_key(key)
        except NotFoundError:
            return
        changes = []
        if conditions.is_condition_true(obj.status, conditions.QUOTA_EXCEEDED):
            changes.append((conditions.QUOTA_EXCEEDED, conditions.FALSE, 'QuotaAvailable', ''))
        degraded = conditions.get_condition(obj.status, conditions.DEGRADED)
        if degraded and degraded.get('reason') == REASON_FAILING and degraded.get('status') == conditions.TRUE:
            changes.append((conditions.DEGRADED, conditions.FALSE, 'ReconcileSucceeded', ''))
        if changes:
            await self._write_conditions(key, changes)

    async def _mark_invalid(self, key, error):
        try:
            obj = self.cache.get_key(key)
        except NotFoundError:
            return
        self._invalid[key] = obj.generation
        await self._write_conditions(
            key,
            [(conditions.VALID, conditions.FALSE, REASON_INVALID, str(error.message))],
            generation=obj.generation,
        )

    # Reconciliation.

    async def _execute(self, actions):
        if actions:
            return await self.executor.execute(actions)
        return []

    async def reconcile(self, key):
        """Reconcile `key` once. Errors propagate to the caller."""
        reconciler = self.reconciler
        try:
            obj = self.cache.get_key(key)
        except NotFoundError:
            # Deleted: collect whatever it left behind.
            self._invalid.pop(key, None)
            await self._execute(await invoke(reconciler.cleanup, key, self.cache))
            return Result()

        finalizer = reconciler.finalizer
        if obj.is_terminating:
            if finalizer is None or finalizer not in obj.metadata.finalizers:
                return Result()
            actions = list(await invoke(reconciler.finalize, obj, self.cache) or [])
            if actions:
                await self._execute(actions)
                return Result()
            if not await invoke(reconciler.is_finalized, obj, self.cache):
                return Result()
            obj.metadata.finalizers.remove(finalizer)
            log.debug('%r: removing finalizer %s from %s', self, finalizer, key)
            await self._execute([Update(obj)])
            return Result()

        if finalizer is not None and finalizer not in obj.metadata.finalizers:
            obj.metadata.finalizers.append(finalizer)
            await self._execute([Update(obj)])
            # The update brings us back here with the finalizer in place.
            return Result()

        if self._invalid.get(key) == obj.generation:
            log.debug('%r: skipping %s, generation %d is invalid', self, key, obj.generation)
            return Result()
        self._invalid.pop(key, None)
        await invoke(reconciler.validate, obj)

        actions, result = split_outcome(await invoke(reconciler.plan, obj, self.cache))
        await self._execute(actions)
        return result

    async def process(self, key, logger=log):
        """Reconcile `key` and feed the outcome back into the work queue."""
        queue = self.queue
        try:
            result = await self.reconcile(key)
        except LeadershipLost as e:
            # Retried until leadership is back or the controller is stopped.
            logger.warning('%r: %r', key, e)
            await queue.add_rate_limited(key)
        except ConflictError as e:
            # Somebody else wrote first, start over from the new state.
            logger.debug('conflict for %r: %r', key, e)
            await queue.forget(key)
            await queue.add(key)
        except NotFoundError as e:
            logger.debug('not found while reconciling %r: %r', key, e)
            await queue.forget(key)
            await queue.add(key)
        except ValidationError as e:
            logger.error('invalid spec for %r: %s', key, e.message)
            await queue.forget(key)
            self._failing_since.pop(key, None)
            await self._mark_invalid(key, e)
        except QuotaExceededError as e:
            logger.warning('quota exceeded for %r: %s', key, e.message)
            await self._failed(key, e, quota=True)
            await queue.add_rate_limited(key, quota=True)
        except PermanentError as e:
            # The reconciler can not handle this key, give up on it.
            logger.error('%r: %r', key, e)
            await queue.forget(key)
        except TemporaryError as e:
            logger.debug('requeuing with delay %s %r', e.delay, key)
            await self._failed(key, e)
            await queue.add_after(key, e.delay)
        except Requeue as e:
            await queue.forget(key)
            if e.after:
                logger.debug('requeuing with delay %s %r', e.after, key)
                await queue.add_after(key, e.after)
            else:
                logger.debug('requeuing %r', key)
                await queue.add(key)
        except Exception as e:
            # Transient store errors and everything unexpected.
            logger.exception('failed to reconcile %r: %r', key, e)
            await self._failed(key, e)
            retries = await queue.num_requeues(key)
            logger.debug('requeuing with rate limiting %r retries: %d', key, retries)
            await queue.add_rate_limited(key)
        else:
            await queue.forget(key)
            await self._succeeded(key)
            if result.requeue_after:
                await queue.add_after(key, result.requeue_after)
            elif result.requeue:
                await queue.add_rate_limited(key)

    async def _reconciler(self, num):
        logger = ReconcilerLoggerAdapter(log, {'num': num})
        logger.debug('started')
        while True:
            key = await self.queue.get()
            if key is None:
                logger.debug('queue shut down')
                return
            logger.debug('processing %r', key)
            try:
                await self.process(key, logger)
            finally:
                # In any case, mark this key as done.
                with CancelScope(shield=True):
                    await self.queue.done(key)
                logger.debug('done processing %r', key)

    async def _run_reconcilers(self):
        async with anyio.create_task_group() as tg:
            for num in range(self.workers):
                tg.start_soon(self._reconciler, num)

    async def drain(self, timeout=None):
        """Stop handing out keys and give in-flight reconciles `timeout`
        seconds to finish. Keys not started yet are dropped."""
        if timeout is None:
            timeout = self.settings.drain_timeout
        await self.queue.shutdown()
        with anyio.move_on_after(timeout) as scope:
            await self.queue.drain()
        if scope.cancelled_caught:
            log.warning('%r: gave up waiting for %d reconciles', self, len(self.queue.processing))

    def stop(self):
        log.debug('stop %r', self)
        self._stop.set()

    async def __call__(self, task_status: TaskStatus[None] = TASK_STATUS_IGNORED):
        log.debug('starting %s', self)
        if self._runs:
            # Restarted, e.g. after leadership came back.
            self.queue = self._new_queue()
            self._add_event_sources()
        self._runs += 1

        try:
            async with anyio.create_task_group() as tg:
                self._task_group = tg

                try:
                    for source in self._event_sources:
                        await tg.start(source)
                        self.cache.add_stream(source.kind, source.stream, key=source)
                    for kind in self.reconciler.reads:
                        self.cache.watch_kind(kind)

                    await tg.start(self.queue)

                    log.info('started %s', self)
                    # Inform any awaiters that we are ready.
                    self._running.set()
                    task_status.started()

                    if self.wait_for_cache:
                        await self.cache.synced

                    if self.startup is not None:
                        await invoke(self.startup, self.store)

                    tg.start_soon(self._run_reconcilers)

                    # Wait until told otherwise.
                    await self._stop.wait()
                    await self.drain()
                    tg.cancel_scope.cancel()

                except anyio.get_cancelled_exc_class():
                    log.debug('canceled %s', self)
                    raise

                finally:
                    log.debug('stopping %s', self)
                    for source in self._event_sources:
                        self.cache.remove_stream(source.kind, key=source)
                    if self.shutdown is not None:
                        with CancelScope(shield=True):
                            await invoke(self.shutdown, self.store)

        finally:
            self._task_group = None
            self.reset_task()
            log.info('stopped %s', self)
