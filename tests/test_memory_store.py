import pytest

from converge.exceptions import (
    ConflictError,
    ExpiredError,
    NotFoundError,
    QuotaExceededError,
    TransientStoreError,
)
from converge.resources import new_resource
from converge.store import ADDED, DELETED, MODIFIED, MemoryStore


pytestmark = pytest.mark.anyio


def replica(name, **spec):
    return new_resource('Replica', name, namespace='default', spec=spec)


class TestMemoryStoreCrud:
    async def test_create_assigns_metadata(self, store):
        obj = await store.create(replica('a', index=0))
        assert obj.metadata.uid
        assert obj.metadata.resource_version == '1'
        assert obj.generation == 1
        assert obj.metadata.creation_timestamp is not None

    async def test_create_twice_conflicts(self, store):
        await store.create(replica('a'))
        with pytest.raises(ConflictError):
            await store.create(replica('a'))

    async def test_generation_only_moves_with_spec(self, store):
        obj = await store.create(replica('a', index=0))
        obj.metadata.labels['x'] = 'y'
        obj = await store.update(obj)
        assert obj.generation == 1

        obj.spec['index'] = 1
        obj = await store.update(obj)
        assert obj.generation == 2

        obj.status = {'ready': True}
        obj = await store.update_status(obj)
        assert obj.generation == 2
        assert obj.status == {'ready': True}

    async def test_update_ignores_status(self, store):
        obj = await store.create(replica('a'))
        obj.status = {'ready': True}
        obj = await store.update(obj)
        assert obj.status == {}

    async def test_stale_resource_version_conflicts(self, store):
        obj = await store.create(replica('a', index=0))
        first = await store.update(obj, expected_resource_version=obj.resource_version)
        with pytest.raises(ConflictError):
            await store.update(obj, expected_resource_version=obj.resource_version)
        with pytest.raises(ConflictError):
            await store.delete('Replica', 'default', 'a', expected_resource_version=obj.resource_version)
        await store.delete('Replica', 'default', 'a', expected_resource_version=first.resource_version)

    async def test_not_found(self, store):
        with pytest.raises(NotFoundError):
            await store.get('Replica', 'default', 'missing')
        with pytest.raises(NotFoundError):
            await store.delete('Replica', 'default', 'missing')

    async def test_list_by_namespace_and_selector(self, store):
        await store.create(new_resource('Replica', 'a', namespace='one', labels={'app': 'web'}))
        await store.create(new_resource('Replica', 'b', namespace='two', labels={'app': 'db'}))
        items, version = await store.list('Replica')
        assert {o.name for o in items} == {'a', 'b'}
        assert version == '2'
        items, _ = await store.list('Replica', namespace='one')
        assert [o.name for o in items] == ['a']
        items, _ = await store.list('Replica', selector='app=db')
        assert [o.name for o in items] == ['b']

    async def test_quota(self):
        store = MemoryStore(quotas={'Replica': 1})
        await store.create(replica('a'))
        with pytest.raises(QuotaExceededError):
            await store.create(replica('b'))


class TestMemoryStoreFinalizers:
    async def test_delete_with_finalizer_marks_terminating(self, store):
        obj = replica('a')
        obj.metadata.finalizers = ['test/finalizer']
        await store.create(obj)
        obj = await store.delete('Replica', 'default', 'a')
        assert obj.is_terminating
        assert (await store.get('Replica', 'default', 'a')).is_terminating

        obj.metadata.finalizers = []
        await store.update(obj)
        with pytest.raises(NotFoundError):
            await store.get('Replica', 'default', 'a')


class TestMemoryStoreFaults:
    async def test_injected_fault_is_raised_once(self, store):
        store.inject_fault('create', TransientStoreError('boom'))
        with pytest.raises(TransientStoreError):
            await store.create(replica('a'))
        await store.create(replica('a'))
        assert store.writes('create') == [('create', replica('a').key)]

    async def test_hooks_see_every_write(self, store):
        seen = []
        store.add_hook(lambda op, obj, s: seen.append((op, obj.name)))
        obj = await store.create(replica('a'))
        await store.update_status(obj)
        await store.delete('Replica', 'default', 'a')
        assert seen == [('create', 'a'), ('update_status', 'a'), ('delete', 'a')]


class TestMemoryStoreWatch:
    async def test_resume_from_resource_version(self, store):
        first = await store.create(replica('a'))
        await store.create(replica('b'))
        await store.delete('Replica', 'default', 'a')
        events = []
        async with store.watch('Replica', resource_version=first.resource_version) as watch:
            async for event in watch:
                events.append((event.type, event.obj.name))
                if len(events) == 2:
                    break
        assert events == [(ADDED, 'b'), (DELETED, 'a')]

    async def test_watch_filters_by_namespace(self, store):
        async with store.watch('Replica', namespace='two') as watch:
            await store.create(new_resource('Replica', 'a', namespace='one'))
            obj = await store.create(new_resource('Replica', 'b', namespace='two'))
            await store.update_status(obj)
            events = []
            async for event in watch:
                events.append((event.type, event.obj.name))
                if len(events) == 2:
                    break
        assert events == [(ADDED, 'b'), (MODIFIED, 'b')]

    async def test_expired_resume_point(self):
        store = MemoryStore(history_size=2)
        for name in 'abcd':
            await store.create(replica(name))
        with pytest.raises(ExpiredError):
            async with store.watch('Replica', resource_version='1'):
                pass

    async def test_disconnect(self, store):
        with pytest.raises(TransientStoreError):
            async with store.watch('Replica') as watch:
                store.disconnect_watches()
                async for _ in watch:
                    pass
