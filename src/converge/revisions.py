"""
Controller revisions: immutable snapshots of a workload's template.

Members carry the hash of the revision they were created from in a label.
A member whose label differs from the current update revision, or whose
template no longer matches its revision's data, is considered old.
"""

import copy
import hashlib
import json
import logging

from .actions import Create, Delete, Update
from .exceptions import NotFoundError
from .resources import new_resource


log = logging.getLogger(__name__)


REVISION_KIND = 'ControllerRevision'
OWNER_LABEL = 'converge.dev/owner'
HASH_LABEL = 'converge.dev/revision-hash'
DEFAULT_HISTORY_LIMIT = 10


def template_hash(template):
    data = json.dumps(template, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(data.encode('utf-8')).hexdigest()[:10]


def revision_number(revision):
    return int(revision.spec.get('revision', 0))


def revision_hash(obj):
    return obj.metadata.labels.get(HASH_LABEL)


def new_revision(owner, template, number):
    hash_ = template_hash(template)
    return new_resource(
        REVISION_KIND,
        f'{owner.name}-{hash_}',
        namespace=owner.namespace,
        spec={'revision': number, 'data': copy.deepcopy(template)},
        labels={OWNER_LABEL: owner.name, HASH_LABEL: hash_},
        owner=owner,
    )


def revision_actions(owner, revisions, template):
    """Make sure a revision for `template` exists and is the newest one.

    Returns the actions needed and the hash of the update revision.
    Going back to an older template reuses its revision under a new number.
    """
    hash_ = template_hash(template)
    latest = max((revision_number(r) for r in revisions), default=0)
    matching = [r for r in revisions if revision_hash(r) == hash_]
    if not matching:
        return [Create(new_revision(owner, template, latest + 1))], hash_
    revision = matching[0]
    if revision_number(revision) < latest:
        renumbered = copy.deepcopy(revision)
        renumbered.spec['revision'] = latest + 1
        log.debug('%r: reusing revision %s as %d', owner, hash_, latest + 1)
        return [Update(renumbered)], hash_
    return [], hash_


def history_gc(revisions, live_hashes, keep_hashes=(), limit=DEFAULT_HISTORY_LIMIT):
    """Delete the oldest revisions no live member refers to, beyond `limit`."""
    candidates = sorted(
        (
            r for r in revisions
            if revision_hash(r) not in live_hashes and revision_hash(r) not in keep_hashes
        ),
        key=revision_number,
    )
    excess = len(candidates) - max(limit, 0)
    return [Delete.of(r) for r in candidates[:max(excess, 0)]]


def rollback_action(owner, revisions, to_revision=None):
    """Spec update restoring the template of a previous revision.

    Without `to_revision` the newest revision other than the current
    template is used.
    """
    current = template_hash(owner.spec.get('template'))
    ordered = sorted(revisions, key=revision_number)
    if to_revision is None:
        candidates = [r for r in ordered if revision_hash(r) != current]
        if not candidates:
            raise NotFoundError('no previous revision to roll back to', key=owner.key)
        target = candidates[-1]
    else:
        targets = [r for r in ordered if revision_number(r) == to_revision]
        if not targets:
            raise NotFoundError(f'revision {to_revision} not found', key=owner.key)
        target = targets[0]
    updated = copy.deepcopy(owner)
    updated.spec['template'] = copy.deepcopy(target.spec['data'])
    return Update(updated)


def is_drifted(member, revisions_by_hash):
    """True if the member's template was changed behind our back."""
    revision = revisions_by_hash.get(revision_hash(member))
    if revision is None:
        return False
    return member.spec.get('template') != revision.spec.get('data')
