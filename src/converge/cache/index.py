from ..exceptions import StoreKeyError
from ..resources import owner_key


def object_key(obj):
    """`namespace/name`, or just `name` for cluster scoped objects."""
    try:
        name = obj.metadata.name
        namespace = obj.metadata.namespace
    except AttributeError as e:
        raise StoreKeyError(obj) from e
    if namespace is None:
        return name
    return f'{namespace}/{name}'


def index_by_namespace(obj):
    return [obj.metadata.namespace]


def index_by_owner(obj):
    """Index children by their controlling owner, `kind/namespace/name`.

    Ownership is a weak back-reference: the owner is looked up by key,
    never held by the child."""
    ref = obj.controller_ref()
    if ref is None:
        return []
    return [owner_key(ref.kind, obj.metadata.namespace, ref.name)]


class IndexView:
    """A read-only view on one index of an Indexer."""

    def __init__(self, indexer, index_name, kind=None):
        self.indexer = indexer
        self.index_name = index_name
        self.kind = kind

    def __repr__(self):
        if self.kind:
            return f'<IndexView {self.kind} {self.index_name}>'
        return f'<IndexView {self.index_name}>'

    def __getitem__(self, value):
        return self.indexer.by_index(self.index_name, value)

    def __iter__(self):
        return iter(self.keys())

    def keys(self):
        return list(self.indexer._indices[self.index_name])

    def items(self):
        return {value: self[value] for value in self.keys()}

    def values(self):
        return [self[value] for value in self.keys()]


class Indexer:
    """The objects of one kind by `namespace/name`, plus secondary indexes.

    Every object is indexed by namespace and by controlling owner. More
    indexes map an object to any number of values and can be added at any
    time, existing objects are indexed right away.
    """

    def __init__(self, key_func=None, indexers=None):
        self.key_func = key_func or object_key
        self._items = {}
        self._indexers = {}
        # index name -> value -> set of object keys
        self._indices = {}
        self.add_indexers({
            'namespace': index_by_namespace,
            'owner': index_by_owner,
        })
        if indexers is not None:
            self.add_indexers(indexers)

    def __repr__(self):
        return f'<Indexer {list(self._items)}>'

    def __contains__(self, key):
        return key in self._items

    def __len__(self):
        return len(self._items)

    def __getitem__(self, key):
        return self._items[key]

    def _reindex(self, key, old, new, names=None):
        for name in (self._indexers if names is None else names):
            index_func = self._indexers[name]
            before = set(index_func(old)) if old is not None else set()
            after = set(index_func(new)) if new is not None else set()
            if before == after:
                continue
            index = self._indices[name]
            for value in before - after:
                keys = index.get(value)
                if keys is not None:
                    keys.discard(key)
                    if not keys:
                        del index[value]
            for value in after - before:
                index.setdefault(value, set()).add(key)

    def add(self, obj):
        key = self.key_func(obj)
        self._reindex(key, self._items.get(key), obj)
        self._items[key] = obj

    # Updates replace the stored object the same way.
    update = add

    def delete(self, obj):
        key = self.key_func(obj)
        old = self._items.pop(key, None)
        if old is not None:
            self._reindex(key, old, None)

    def get_by_key(self, key):
        return self._items.get(key)

    def keys(self):
        return list(self._items)

    def list(self):
        return list(self._items.values())

    def replace(self, objs):
        """Drop everything and store `objs` instead."""
        self.clear()
        for obj in objs:
            self.add(obj)

    def clear(self):
        self._items.clear()
        for index in self._indices.values():
            index.clear()

    def add_indexers(self, indexers):
        conflicts = set(self._indexers) & set(indexers)
        if conflicts:
            raise ValueError(f'indexer conflict: {conflicts}')
        for name, index_func in indexers.items():
            self._indexers[name] = index_func
            self._indices[name] = {}
        for key, obj in self._items.items():
            self._reindex(key, None, obj, names=indexers)

    def index(self, index_name):
        """Decorator that registers an indexer function with the given name."""

        def decorator(f):
            self.add_indexers({index_name: f})
            return f

        return decorator

    def get_index(self, index_name, kind=None):
        """Return a read-only view on a index."""
        if index_name not in self._indexers:
            raise KeyError(f'no such index: {index_name}')
        return IndexView(self, index_name, kind=kind)

    def by_index(self, index_name, value):
        return [self._items[key] for key in sorted(self._indices[index_name].get(value, ()))]
