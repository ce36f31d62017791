import anyio
import pytest

from converge.cache import Cache
from converge.clock import FakeClock
from converge.controller import split_outcome
from converge.executor import ActionExecutor
from converge.ordering import MEMBER_KIND
from converge.resources import new_resource
from converge.store import MemoryStore
from converge.tasks import invoke


@pytest.fixture
def anyio_backend():
    return 'asyncio'


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


async def _wait_for(predicate, timeout=5, interval=0.01):
    with anyio.fail_after(timeout):
        while True:
            result = predicate()
            if result:
                return result
            await anyio.sleep(interval)


@pytest.fixture
def wait_for():
    """Poll `predicate` until it returns something truthy."""
    return _wait_for


class Harness:
    """Drives a reconciler step by step against a MemoryStore.

    The cache is refreshed from the store before every plan, so each step
    sees exactly what the previous one wrote.
    """

    def __init__(self, reconciler, clock, store=None, leader=None):
        self.reconciler = reconciler
        self.clock = clock
        self.store = store or MemoryStore(clock=clock)
        self.cache = Cache(self.store)
        self.executor = ActionExecutor(self.store, leader=leader)

    def sync(self):
        kinds = {obj.kind for obj in self.store.objects()} | self.cache.kinds
        for kind in kinds:
            self.cache.get_store(kind).replace(self.store.objects(kind))

    async def create(self, kind, name, spec, namespace='default', **kwargs):
        obj = await self.store.create(
            new_resource(kind, name, namespace=namespace, spec=spec, **kwargs)
        )
        self.sync()
        return obj

    async def update_spec(self, key, **changes):
        obj = await self.store.get(key.kind, key.namespace, key.name)
        obj.spec.update(changes)
        obj = await self.store.update(obj)
        self.sync()
        return obj

    async def plan(self, key):
        self.sync()
        obj = self.cache.get_key(key)
        await invoke(self.reconciler.validate, obj)
        actions, _ = split_outcome(await invoke(self.reconciler.plan, obj, self.cache))
        return actions

    async def step(self, key):
        actions = await self.plan(key)
        await self.executor.execute(actions)
        self.sync()
        return actions

    async def mark_ready(self, kind=MEMBER_KIND, limit=None):
        marked = 0
        for member in sorted(self.store.objects(kind), key=lambda m: m.name):
            if limit is not None and marked >= limit:
                break
            if member.is_terminating or member.status.get('ready') is True:
                continue
            member.status = {'ready': True}
            await self.store.update_status(member)
            marked += 1
        self.sync()
        return marked

    def members(self, kind=MEMBER_KIND):
        return sorted(self.store.objects(kind), key=lambda m: m.spec.get('index', 0))

    def get(self, key):
        return self.cache.get_key(key)


@pytest.fixture
def make_harness(clock):
    def factory(reconciler, **kwargs):
        return Harness(reconciler, clock, **kwargs)

    return factory
