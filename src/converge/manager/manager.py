import functools
import logging
import math
import platform
import signal
import uuid

import uvloop
import anyio
from anyio import open_signal_receiver
from anyio import TASK_STATUS_IGNORED
from anyio.abc import TaskStatus

from .. import exceptions
from ..autoscale import PrometheusMetricSource
from ..cache import Cache
from ..clock import Clock
from ..config import Settings
from ..controller import Controller, ReconcilerRegistry
from ..executor import ActionExecutor
from ..leaderelection import LeaderElector
from ..reconcilers import builtin_reconcilers
from ..tasks import nonblocking

from .builders import ControllerBuilder


log = logging.getLogger(__name__)


async def signal_handler(manager):
    with open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        async for signum in signals:
            if signum == signal.SIGINT:
                log.warning('Ctrl+C pressed!')
            else:
                log.warning('Terminated!')

            manager.stop()
            return


class Manager:
    """Wires the object store, the cache, the controllers and leader election.

    The cache runs all the time so a standby is warm when it takes over.
    Controllers only run while this process holds the lease.
    """

    def __init__(self, settings=None, store=None, clock=None, identity=None, metrics=None):
        self.settings = settings or Settings()
        self.client = store
        self.clock = clock or Clock()
        self.metrics = metrics
        self.debug = False
        # The unique ID of this process, used in leader election.
        self.identity = identity or '%s-%s' % (
            platform.node(),
            str(uuid.uuid4()).replace('-', '')[:10],
        )
        self.registry = ReconcilerRegistry()
        self.cache = Cache(store, resync_period=self.settings.resync_period)
        self.elector = None
        self.controllers = {}
        self._builders = {}
        self._transitions_tx = None
        self._controllers_stop = None
        self._controllers_done = None
        self._task_group = None  # Main taskgroup
        self._stop = None

    def __repr__(self):
        return f'<Manager {self.identity} namespaces: {self.settings.namespaces} kinds: {self.registry.kinds}>'

    def run(self, namespaces=None, debug=False):
        self.debug = debug
        anyio.run(
            functools.partial(
                self,
                namespaces=namespaces,
                setup_signal_handler=True,
            ),
            backend_options={'loop_factory': uvloop.new_event_loop},
        )

    def stop(self):
        log.debug('stop %r', self)
        if self._stop is not None:
            self._stop.set()

    # Registration.

    def register(self, reconciler):
        """Register a reconciler instance for its kind."""
        return self.registry.register(reconciler)

    def _default_metrics(self):
        if self.settings.prometheus_url is None:
            return None
        return PrometheusMetricSource(
            self.settings.prometheus_url,
            self.settings.metric_queries or {},
            clock=self.clock,
        )

    def use_builtin_reconcilers(self):
        """Register the OrderedSet, ReplicaGroup and Autoscaler reconcilers,
        unless a reconciler for the kind is registered already."""
        if self.metrics is None:
            self.metrics = self._default_metrics()
        for reconciler in builtin_reconcilers(
            self.settings, clock=self.clock, metrics=self.metrics
        ):
            if reconciler.kind not in self.registry:
                self.register(reconciler)

    def controller(self, kind, name=None):
        """Decorator that creates and returns a controller builder."""
        builder = self._builders.get(kind)
        if builder is None:
            builder = self._builders[kind] = ControllerBuilder(self, kind, name=name)
        return builder

    @property
    def kinds(self):
        return sorted(set(self.registry.kinds) | set(self._builders))

    # Setup.

    def _default_store(self):
        from ..store.kube import KubeStore, load_config

        load_config()
        return KubeStore(watch_timeout=self.settings.watch_timeout)

    def configure_cache(self):
        self.cache.client = self.client
        namespaces = self.settings.namespaces
        self.cache.namespaces = set(namespaces) if namespaces else None
        self.cache.resync_period = self.settings.resync_period

    def setup(self, namespaces=None):
        """Create cache, controllers and elector from the registrations."""
        if namespaces is not None:
            self.settings.namespaces = list(namespaces) or None
        if self.client is None:
            self.client = self._default_store()
        self.configure_cache()

        if self.settings.leader_election:
            self.elector = LeaderElector(
                self.client,
                self.identity,
                namespace=self.settings.lease_namespace,
                name=self.settings.lease_name,
                lease_duration=self.settings.lease_duration,
                renew_deadline=self.settings.renew_deadline,
                retry_period=self.settings.retry_period,
                clock=self.clock,
                on_started_leading=self._on_started_leading,
                on_stopped_leading=self._on_stopped_leading,
            )

        controllers = {}
        for builder in self._builders.values():
            log.debug('creating controller from builder: %r', builder)
            controller = self._new_controller(builder.build_reconciler(), **builder._kwargs)
            # The builder needs an instance so it can proxy to it at runtime.
            builder._instance = controller
            controllers[builder.kind] = controller
        for reconciler in self.registry:
            if reconciler.kind in controllers:
                raise exceptions.ConfigError(
                    f'{reconciler.kind} has a registered reconciler and a controller builder'
                )
            controllers[reconciler.kind] = self._new_controller(reconciler)
        if not controllers:
            raise exceptions.ConfigError('nothing to reconcile, no reconcilers registered')
        self.controllers = controllers

    def _new_controller(self, reconciler, **kwargs):
        return Controller(
            self.client,
            self.cache,
            reconciler,
            settings=self.settings,
            executor=ActionExecutor(self.client, leader=self.elector),
            clock=self.clock,
            **kwargs,
        )

    # Leadership.

    def _transition(self, leading):
        try:
            self._transitions_tx.send_nowait(leading)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            # Shutting down, the controllers are gone already.
            log.debug('%r: ignoring leadership change to %s', self, leading)

    @nonblocking
    def _on_started_leading(self):
        self._transition(True)

    @nonblocking
    def _on_stopped_leading(self):
        self._transition(False)

    async def _run_controllers(self, task_status: TaskStatus[None] = TASK_STATUS_IGNORED):
        self._controllers_stop = anyio.Event()
        self._controllers_done = anyio.Event()
        try:
            async with anyio.create_task_group() as tg:
                for controller in self.controllers.values():
                    await tg.start(controller)
                log.info('%r: controllers started', self)
                task_status.started()

                # Wait until told otherwise.
                await self._controllers_stop.wait()
                # Each controller drains its queue before it exits.
                for controller in self.controllers.values():
                    controller.stop()
        finally:
            self._controllers_stop = None
            self._controllers_done.set()
            log.info('%r: controllers stopped', self)

    async def _stop_controllers(self):
        if self._controllers_stop is None:
            return
        done = self._controllers_done
        self._controllers_stop.set()
        await done.wait()

    async def _follow_leadership(self, rx):
        """Start controllers on every leadership gain, stop them on loss.
        Transitions are handled one after the other."""
        async with rx:
            async for leading in rx:
                if leading and self._controllers_stop is None:
                    await self._task_group.start(self._run_controllers)
                elif not leading:
                    await self._stop_controllers()

    async def _shutdown(self):
        log.debug('stopping %s', self)
        await self._stop_controllers()
        if self.elector is not None:
            # Releases the lease.
            self.elector.stop()
        self.cache.stop()
        if self.metrics is not None:
            await self.metrics.aclose()

    async def __call__(self, namespaces=None, setup_signal_handler=False):
        log.debug('startup %s', self)
        self.setup(namespaces=namespaces)
        self._stop = anyio.Event()

        try:
            async with anyio.create_task_group() as tg:
                self._task_group = tg
                if setup_signal_handler:
                    tg.start_soon(signal_handler, self)

                await tg.start(self.cache)

                if self.elector is not None:
                    self._transitions_tx, rx = anyio.create_memory_object_stream(math.inf)
                    tg.start_soon(self._follow_leadership, rx)
                    await tg.start(self.elector)
                else:
                    await tg.start(self._run_controllers)

                log.info('started %s', self)

                # Wait until told otherwise.
                await self._stop.wait()
                with anyio.CancelScope(shield=True):
                    await self._shutdown()
                tg.cancel_scope.cancel()
        except* exceptions.Error as eg:
            if self.debug:
                raise eg
            error_messages = []
            for error in exceptions.iterate_errors(eg):
                error_messages.append(str(error))
            raise exceptions.FatalError(' '.join(error_messages)) from eg
        finally:
            self._task_group = None
            if self._transitions_tx is not None:
                self._transitions_tx.close()
                self._transitions_tx = None

        log.info('stopped %s', self)
