import copy
import dataclasses
import typing


@dataclasses.dataclass(frozen=True)
class ReconcileKey:
    """The unit of work. Never carries a payload, forcing a reconciler to
    read the current state of the object from the cache."""

    kind: str
    namespace: typing.Optional[str]
    name: str
    retries: int = dataclasses.field(default=0, compare=False, hash=False)

    def __repr__(self):
        if self.namespace is not None:
            name = f'{self.namespace}/{self.name}'
        else:
            name = self.name
        return f'<ReconcileKey {self.kind} {name} retries: {self.retries}>'

    def __str__(self):
        if self.namespace is not None:
            return f'{self.kind}/{self.namespace}/{self.name}'
        return f'{self.kind}/{self.name}'

    def with_retries(self, retries):
        return dataclasses.replace(self, retries=retries)


@dataclasses.dataclass
class OwnerReference:
    kind: str
    name: str
    uid: str = None
    controller: bool = False

    def to_dict(self):
        out = {'kind': self.kind, 'name': self.name}
        if self.uid is not None:
            out['uid'] = self.uid
        if self.controller:
            out['controller'] = True
        return out

    @classmethod
    def from_dict(cls, data):
        return cls(
            kind=data.get('kind'),
            name=data.get('name'),
            uid=data.get('uid'),
            controller=bool(data.get('controller', False)),
        )


@dataclasses.dataclass
class ObjectMeta:
    name: str = None
    namespace: str = None
    uid: str = None
    generation: int = 0
    resource_version: str = None
    labels: dict = dataclasses.field(default_factory=dict)
    annotations: dict = dataclasses.field(default_factory=dict)
    owner_references: typing.List[OwnerReference] = dataclasses.field(
        default_factory=list
    )
    finalizers: typing.List[str] = dataclasses.field(default_factory=list)
    deletion_timestamp: str = None
    creation_timestamp: str = None

    _wire_names = {
        'resource_version': 'resourceVersion',
        'owner_references': 'ownerReferences',
        'deletion_timestamp': 'deletionTimestamp',
        'creation_timestamp': 'creationTimestamp',
    }

    def to_dict(self):
        out = {}
        for field in dataclasses.fields(self):
            value = getattr(self, field.name)
            if value in (None, {}, []):
                continue
            if field.name == 'owner_references':
                value = [ref.to_dict() for ref in value]
            out[self._wire_names.get(field.name, field.name)] = copy.deepcopy(value)
        return out

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        kwargs = {}
        for field in dataclasses.fields(cls):
            wire = cls._wire_names.get(field.name, field.name)
            if wire in data and data[wire] is not None:
                kwargs[field.name] = copy.deepcopy(data[wire])
        kwargs['owner_references'] = [
            OwnerReference.from_dict(ref) for ref in kwargs.get('owner_references', [])
        ]
        if 'generation' in kwargs:
            kwargs['generation'] = int(kwargs['generation'])
        return cls(**kwargs)


@dataclasses.dataclass
class Resource:
    """An object in the store: user declared `spec`, controller observed `status`."""

    kind: str
    metadata: ObjectMeta = dataclasses.field(default_factory=ObjectMeta)
    spec: dict = dataclasses.field(default_factory=dict)
    status: dict = dataclasses.field(default_factory=dict)
    api_version: str = None

    def __repr__(self):
        out = [self.kind]
        if self.namespace is not None:
            out.append(f'{self.namespace}/{self.name}')
        elif self.name is not None:
            out.append(self.name)
        if self.metadata.resource_version is not None:
            out.append(self.metadata.resource_version)
        ident = ' '.join(out)
        return f'<Object {ident}>'

    @property
    def name(self):
        return self.metadata.name

    @property
    def namespace(self):
        return self.metadata.namespace

    @property
    def resource_version(self):
        return self.metadata.resource_version

    @property
    def generation(self):
        return self.metadata.generation

    @property
    def labels(self):
        return self.metadata.labels

    @property
    def key(self):
        return ReconcileKey(self.kind, self.namespace, self.name)

    @property
    def is_terminating(self):
        return self.metadata.deletion_timestamp is not None

    def controller_ref(self):
        for ref in self.metadata.owner_references:
            if ref.controller:
                return ref
        return None

    def is_owned_by(self, owner):
        ref = self.controller_ref()
        if ref is None:
            return False
        if ref.kind != owner.kind or ref.name != owner.name:
            return False
        return ref.uid is None or owner.metadata.uid is None or ref.uid == owner.metadata.uid

    def to_dict(self):
        out = {}
        if self.api_version is not None:
            out['apiVersion'] = self.api_version
        out['kind'] = self.kind
        out['metadata'] = self.metadata.to_dict()
        out['spec'] = copy.deepcopy(self.spec)
        if self.status:
            out['status'] = copy.deepcopy(self.status)
        return out

    @classmethod
    def from_dict(cls, data):
        return cls(
            kind=data['kind'],
            metadata=ObjectMeta.from_dict(data.get('metadata')),
            spec=copy.deepcopy(data.get('spec') or {}),
            status=copy.deepcopy(data.get('status') or {}),
            api_version=data.get('apiVersion'),
        )


def new_resource(kind, name, namespace=None, spec=None, labels=None, owner=None):
    """Helper to build a fresh object, optionally controlled by `owner`."""
    metadata = ObjectMeta(name=name, namespace=namespace, labels=dict(labels or {}))
    if owner is not None:
        set_controller_reference(owner, metadata)
    return Resource(kind=kind, metadata=metadata, spec=copy.deepcopy(spec or {}))


def set_controller_reference(owner, metadata):
    for existing in metadata.owner_references:
        if existing.controller:
            raise ValueError(f'already owned by a controller: {existing!r}')
    ref = OwnerReference(
        kind=owner.kind,
        name=owner.name,
        uid=owner.metadata.uid,
        controller=True,
    )
    metadata.owner_references.append(ref)
    return ref


def owner_key(kind, namespace, name):
    if namespace is not None:
        return f'{kind}/{namespace}/{name}'
    return f'{kind}/{name}'


def _version_tuple(version):
    if version is None:
        return None
    try:
        return (0, int(version))
    except (TypeError, ValueError):
        return (1, str(version))


def is_same_version(o1, o2):
    v1 = o1.metadata.resource_version
    return v1 is not None and v1 == o2.metadata.resource_version


def is_newer_version(new, old):
    """True if `new` was written after `old`.

    Resource versions are opaque, but every store we talk to hands out
    integers. Anything else is treated as newer so we never drop an event.
    """
    n = _version_tuple(new.metadata.resource_version)
    o = _version_tuple(old.metadata.resource_version)
    if n is None or o is None or n[0] or o[0]:
        return not is_same_version(new, old)
    return n[1] > o[1]


def parse_selector(selector):
    """Turn 'a=b,c=d' or a dict into a dict of required labels."""
    if selector is None:
        return {}
    if isinstance(selector, dict):
        return dict(selector)
    result = {}
    for part in selector.split(','):
        part = part.strip()
        if not part:
            continue
        if '=' not in part:
            raise ValueError(f'unsupported label selector: {selector!r}')
        key, value = part.split('=', 1)
        result[key.strip().rstrip('=')] = value.strip().lstrip('=')
    return result


def match_labels(selector, labels):
    required = parse_selector(selector)
    labels = labels or {}
    return all(labels.get(k) == v for k, v in required.items())


def format_selector(selector):
    return ','.join(f'{k}={v}' for k, v in sorted(parse_selector(selector).items()))
