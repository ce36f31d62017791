import pytest

from converge.actions import Create, Delete
from converge.clock import format_time
from converge.exceptions import ValidationError
from converge.ordering import (
    Phase,
    free_slots,
    is_ready,
    member_index,
    new_member,
    ordered_plan,
    phase_of,
    resolve_budget,
    rolling_budgets,
    rolling_plan,
)
from converge.resources import new_resource
from converge.revisions import HASH_LABEL, OWNER_LABEL


BASE = 1_700_000_000.0
TEMPLATE = {'labels': {'app': 'web'}, 'image': 'web:2'}
NEW = 'new-hash'
OLD = 'old-hash'


def make_owner(kind='OrderedSet'):
    owner = new_resource(kind, 'web', namespace='default')
    owner.metadata.uid = 'owner-uid'
    return owner


class Members:
    """A tiny fake of the members of one workload, for driving plans."""

    def __init__(self, owner):
        self.owner = owner
        self.items = []
        self.tick = 0
        self.history = []

    def add(self, index, hash_=NEW, ready=True):
        member = new_member(self.owner, index, TEMPLATE, hash_)
        self.tick += 1
        member.metadata.creation_timestamp = format_time(BASE + self.tick)
        member.metadata.resource_version = str(self.tick)
        if ready:
            member.status = {'ready': True}
        self.items.append(member)
        return member

    def apply(self, actions):
        for action in actions:
            if isinstance(action, Create):
                self.history.append(('create', member_index(action.resource)))
                hash_ = action.resource.labels[HASH_LABEL]
                self.add(member_index(action.resource), hash_, ready=False)
            elif isinstance(action, Delete):
                member = self.by_name(action.name)
                self.history.append(('delete', member_index(member)))
                self.items.remove(member)

    def by_name(self, name):
        return next(m for m in self.items if m.name == name)

    def mark_ready(self):
        for member in self.items:
            if not member.is_terminating:
                member.status = {'ready': True}

    def live(self):
        return [m for m in self.items if not m.is_terminating]

    def ready(self):
        return [m for m in self.items if is_ready(m)]

    def old(self):
        return [m for m in self.live() if m.labels[HASH_LABEL] != NEW]

    def indices(self):
        return sorted(member_index(m) for m in self.items)


class TestNewMember:
    def test_labels_and_owner(self):
        owner = make_owner()
        member = new_member(owner, 3, TEMPLATE, NEW)
        assert member.name == 'web-3'
        assert member.spec == {'index': 3, 'template': TEMPLATE}
        assert member.labels == {'app': 'web', OWNER_LABEL: 'web', HASH_LABEL: NEW}
        assert member.is_owned_by(owner)

    def test_free_slots(self):
        members = Members(make_owner())
        members.add(0)
        members.add(2)
        assert free_slots(members.items, 3) == [1, 3, 4]


class TestOrderedPlan:
    def test_scale_up_one_ordinal_at_a_time(self):
        members = Members(make_owner())
        for _ in range(20):
            plan = ordered_plan(members.owner, members.items, 4, NEW, TEMPLATE)
            assert len(plan.actions) <= 1
            if not plan.actions:
                break
            [action] = plan.actions
            assert isinstance(action, Create)
            index = member_index(action.resource)
            # Every lower ordinal is there and Ready.
            assert members.indices() == list(range(index))
            assert all(is_ready(m) for m in members.items)
            members.apply(plan.actions)

            # Nothing more happens until the new member is Ready.
            waiting = ordered_plan(members.owner, members.items, 4, NEW, TEMPLATE)
            assert waiting.actions == []
            assert waiting.phase == Phase.SCALING_UP
            members.mark_ready()

        assert members.history == [('create', i) for i in range(4)]
        assert plan.phase == Phase.STABLE
        assert plan.intent.to_status() == {'replicas': 4, 'readyReplicas': 4, 'updatedReplicas': 4}

    def test_repairs_lowest_gap_first(self):
        members = Members(make_owner())
        for index in (0, 2, 3):
            members.add(index)
        plan = ordered_plan(members.owner, members.items, 4, NEW, TEMPLATE)
        [action] = plan.actions
        assert member_index(action.resource) == 1

    def test_scale_down_highest_ordinal_first(self):
        members = Members(make_owner())
        for index in range(5):
            members.add(index)

        plan = ordered_plan(members.owner, members.items, 2, NEW, TEMPLATE)
        assert plan.phase == Phase.SCALING_DOWN
        [action] = plan.actions
        assert action.name == 'web-4'

        # Not before web-4 is completely gone.
        members.by_name('web-4').metadata.deletion_timestamp = format_time(BASE)
        assert ordered_plan(members.owner, members.items, 2, NEW, TEMPLATE).actions == []

        members.items.remove(members.by_name('web-4'))
        for _ in range(10):
            plan = ordered_plan(members.owner, members.items, 2, NEW, TEMPLATE)
            members.apply(plan.actions)
            if not plan.actions:
                break
        assert members.history == [('delete', 3), ('delete', 2)]
        assert members.indices() == [0, 1]
        assert plan.phase == Phase.STABLE

    def test_teardown(self):
        members = Members(make_owner())
        for index in range(3):
            members.add(index, ready=(index != 1))
        for _ in range(10):
            plan = ordered_plan(members.owner, members.items, 0, NEW, TEMPLATE)
            members.apply(plan.actions)
            if not plan.actions:
                break
        assert members.history == [('delete', 2), ('delete', 1), ('delete', 0)]

    def test_rolling_update_in_reverse_ordinal_order(self):
        members = Members(make_owner())
        for index in range(3):
            members.add(index, OLD)
        for _ in range(30):
            plan = ordered_plan(members.owner, members.items, 3, NEW, TEMPLATE)
            if not plan.actions:
                if plan.phase == Phase.STABLE:
                    break
                members.mark_ready()
                continue
            assert len(plan.actions) == 1
            members.apply(plan.actions)
        assert members.history == [
            ('delete', 2), ('create', 2),
            ('delete', 1), ('create', 1),
            ('delete', 0), ('create', 0),
        ]
        assert members.old() == []

    def test_update_waits_for_all_ready(self):
        members = Members(make_owner())
        members.add(0, OLD)
        members.add(1, OLD, ready=False)
        plan = ordered_plan(members.owner, members.items, 2, NEW, TEMPLATE)
        assert plan.actions == []


class TestRollingBudgets:
    def test_percentages_round_surge_up_and_unavailable_down(self):
        assert resolve_budget('25%', 10, round_up=True) == 3
        assert resolve_budget('25%', 10, round_up=False) == 2
        assert resolve_budget(2, 10, round_up=True) == 2
        assert rolling_budgets(None, 4) == (1, 1)

    def test_both_zero_is_invalid(self):
        with pytest.raises(ValidationError):
            rolling_budgets({'maxSurge': 0, 'maxUnavailable': '0%'}, 5)

    def test_rounding_to_zero_allows_one_unavailable(self):
        assert rolling_budgets({'maxSurge': '10%', 'maxUnavailable': '10%'}, 3) == (1, 0)
        assert rolling_budgets({'maxSurge': 0, 'maxUnavailable': '10%'}, 3) == (0, 1)

    @pytest.mark.parametrize('value', [True, -1, '-5%', 'x%', 'many', 1.5j])
    def test_invalid_values(self, value):
        with pytest.raises(ValidationError):
            resolve_budget(value, 4, round_up=True)


def drive_rolling(members, desired, surge, unavailable, check=None, limit=100):
    """Plan, apply, make everything Ready, repeat until stable."""
    for _ in range(limit):
        plan = rolling_plan(
            members.owner, members.items, desired, NEW, TEMPLATE, surge, unavailable
        )
        members.apply(plan.actions)
        if check is not None:
            check(plan)
        if not plan.actions:
            if plan.phase == Phase.STABLE:
                return plan
            members.mark_ready()
            if check is not None:
                check(plan)
    raise AssertionError('rolling update did not converge')


class TestRollingPlan:
    def test_bounds_during_update(self):
        members = Members(make_owner('ReplicaGroup'))
        for index in range(3):
            members.add(index, OLD)
        old_counts = [3]

        def check(plan):
            live = len(members.live())
            assert 2 <= live <= 4
            assert len(members.ready()) >= 2
            old_counts.append(len(members.old()))
            assert old_counts[-1] <= old_counts[-2]

        plan = drive_rolling(members, 3, 1, 1, check=check)
        assert members.old() == []
        assert len(members.ready()) == 3
        assert plan.intent.updated == 3

    def test_surge_only_never_drops_availability(self):
        members = Members(make_owner('ReplicaGroup'))
        for index in range(4):
            members.add(index, OLD)

        def check(plan):
            assert len(members.items) <= 5
            assert len(members.ready()) >= 4

        drive_rolling(members, 4, 1, 0, check=check)
        assert members.old() == []

    def test_oldest_old_member_goes_first(self):
        members = Members(make_owner('ReplicaGroup'))
        # Created newest first.
        for index in (2, 1, 0):
            members.add(index, OLD)
        plan = rolling_plan(members.owner, members.items, 3, NEW, TEMPLATE, 0, 1)
        deletes = [a for a in plan.actions if isinstance(a, Delete)]
        assert [a.name for a in deletes] == ['web-2']

    def test_unready_old_members_go_first(self):
        members = Members(make_owner('ReplicaGroup'))
        members.add(0, OLD)
        members.add(1, OLD, ready=False)
        members.add(2, OLD)
        plan = rolling_plan(members.owner, members.items, 3, NEW, TEMPLATE, 0, 1)
        assert [a.name for a in plan.actions if isinstance(a, Delete)] == ['web-1']

    def test_unready_old_members_keep_the_live_floor(self):
        members = Members(make_owner('ReplicaGroup'))
        for index in range(3):
            members.add(index, OLD, ready=False)
        plan = rolling_plan(members.owner, members.items, 3, NEW, TEMPLATE, 1, 1)
        assert [
            (type(a).__name__, a.resource.name if isinstance(a, Create) else a.name)
            for a in plan.actions
        ] == [('Create', 'web-3'), ('Delete', 'web-0')]
        members.apply(plan.actions)
        assert len(members.live()) >= 2

    def test_unready_old_members_are_replaced_without_dropping_below_floor(self):
        members = Members(make_owner('ReplicaGroup'))
        for index in range(3):
            members.add(index, OLD, ready=False)

        def check(plan):
            assert len(members.live()) >= 2

        drive_rolling(members, 3, 1, 1, check=check)
        assert members.old() == []

    def test_scale_up_creates_one_at_a_time(self):
        members = Members(make_owner('ReplicaGroup'))
        members.add(0)
        creates = []
        for _ in range(20):
            plan = rolling_plan(members.owner, members.items, 5, NEW, TEMPLATE, 1, 0)
            new = [a for a in plan.actions if isinstance(a, Create)]
            assert len(new) <= 1
            if new:
                # The previous member reached Ready before this one was created.
                assert all(is_ready(m) for m in members.items)
            creates.extend(member_index(a.resource) for a in new)
            members.apply(plan.actions)
            if not plan.actions and plan.phase == Phase.STABLE:
                break
            members.mark_ready()
        assert creates == [1, 2, 3, 4]
        assert len(members.ready()) == 5
        assert members.old() == []

    def test_scale_from_two_to_five(self):
        members = Members(make_owner('ReplicaGroup'))
        members.add(0)
        members.add(1)
        drive_rolling(members, 5, 1, 0)
        # web-0 and web-1 are already current, so 5 - 2 = 3 creates fill
        # slots 2 to 4 and nothing is replaced. Four creates is the 1 to 5
        # case above.
        assert [h for h in members.history if h[0] == 'create'] == [
            ('create', 2), ('create', 3), ('create', 4),
        ]
        assert len(members.ready()) == 5

    def test_trims_surplus(self):
        members = Members(make_owner('ReplicaGroup'))
        for index in range(4):
            members.add(index, ready=(index != 1))
        plan = rolling_plan(members.owner, members.items, 2, NEW, TEMPLATE, 1, 0)
        assert plan.phase == Phase.SCALING_DOWN
        assert [a.name for a in plan.actions] == ['web-1', 'web-3']


class TestPhase:
    def test_phases(self):
        members = Members(make_owner('ReplicaGroup'))
        members.add(0)
        assert phase_of(members.items, 1, NEW) == Phase.STABLE
        assert phase_of(members.items, 2, NEW) == Phase.SCALING_UP
        assert phase_of(members.items, 0, NEW) == Phase.SCALING_DOWN
        assert phase_of(members.items, 1, OLD) == Phase.ROLLING_UPDATE
        assert str(Phase.ROLLING_UPDATE) == 'RollingUpdate'
