"""Tests for reconciler.differ module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from expressions import UNKNOWN
from reconciler.differ import (
    CREATE,
    DELETE,
    NOOP,
    REPLACE,
    UPDATE,
    Differ,
    Plan,
    PlanError,
    ResourceChange,
    StalePlanError,
    apply_ignore_changes,
)
from reconciler.graph import ResourceGraph
from reconciler.state import ResourceState, StateSnapshot
from stack import Stack


def _make_graph(resources, **extra) -> ResourceGraph:
    data = {'name': 'test', 'resources': resources}
    data.update(extra)
    return ResourceGraph(Stack.from_dict(data))


def _stored(address, attributes, **kwargs) -> ResourceState:
    name = address.split('.')[1].split('[')[0]
    return ResourceState(address=address, type='fake_thing', name=name, provider='fake',
                         attributes=attributes, config_keys=sorted(kwargs.pop('config_keys', attributes)),
                         **kwargs)


def _snapshot(*resources, serial=1) -> StateSnapshot:
    snapshot = StateSnapshot(serial=serial)
    for rs in resources:
        snapshot.set(rs)
    return snapshot


def _actions(plan: Plan) -> dict:
    return {c.address: c.action for c in plan.changes}


class TestPlanActions:
    """Tests for create/update/replace/delete/no-op decisions."""

    def test_empty_state_creates_everything(self, fake_registry):
        graph = _make_graph([
            {'type': 'fake_thing', 'name': 'a', 'attributes': {'name': 'a'}},
            {'type': 'fake_thing', 'name': 'b', 'attributes': {'name': 'b', 'parent': '${fake_thing.a.id}'}},
        ])
        plan = Differ(graph, fake_registry).plan(StateSnapshot(), refresh=False)
        assert _actions(plan) == {'fake_thing.a': CREATE, 'fake_thing.b': CREATE}
        assert plan.get('fake_thing.b').after['parent'] is UNKNOWN
        assert plan.get('fake_thing.b').dependencies == ['fake_thing.a']
        assert plan.summary() == {'add': 2, 'change': 0, 'destroy': 0}

    def test_matching_state_is_noop(self, fake_registry):
        graph = _make_graph([{'type': 'fake_thing', 'name': 'a', 'attributes': {'name': 'a'}}])
        snapshot = _snapshot(_stored('fake_thing.a', {'name': 'a', 'id': 'fake-1', 'serial': 1},
                                     config_keys=['name']))
        plan = Differ(graph, fake_registry).plan(snapshot, refresh=False)
        assert _actions(plan) == {'fake_thing.a': NOOP}
        assert not plan.has_changes

    def test_changed_attribute_is_update(self, fake_registry):
        graph = _make_graph([{'type': 'fake_thing', 'name': 'a', 'attributes': {'name': 'a', 'size': 2}}])
        snapshot = _snapshot(_stored('fake_thing.a', {'name': 'a', 'size': 1, 'id': 'fake-1'},
                                     config_keys=['name', 'size']))
        change = Differ(graph, fake_registry).plan(snapshot, refresh=False).get('fake_thing.a')
        assert change.action == UPDATE
        assert change.changed == ['size']
        assert change.requires_replace == []

    def test_force_new_attribute_is_replace(self, fake_registry):
        graph = _make_graph([{'type': 'fake_thing', 'name': 'a', 'attributes': {'name': 'a', 'zone': 'b'}}])
        snapshot = _snapshot(_stored('fake_thing.a', {'name': 'a', 'zone': 'a', 'id': 'fake-1'},
                                     config_keys=['name', 'zone']))
        plan = Differ(graph, fake_registry).plan(snapshot, refresh=False)
        change = plan.get('fake_thing.a')
        assert change.action == REPLACE
        assert change.requires_replace == ['zone']
        assert 'zone' in change.reason
        assert plan.summary() == {'add': 1, 'change': 0, 'destroy': 1}

    def test_removed_attribute_is_update(self, fake_registry):
        """An attribute dropped from configuration shows as a change."""
        graph = _make_graph([{'type': 'fake_thing', 'name': 'a', 'attributes': {'name': 'a'}}])
        snapshot = _snapshot(_stored('fake_thing.a', {'name': 'a', 'size': 1, 'id': 'fake-1'},
                                     config_keys=['name', 'size']))
        change = Differ(graph, fake_registry).plan(snapshot, refresh=False).get('fake_thing.a')
        assert change.action == UPDATE
        assert change.changed == ['size']

    def test_computed_attributes_ignored(self, fake_registry):
        graph = _make_graph([{'type': 'fake_thing', 'name': 'a', 'attributes': {'name': 'a'}}])
        snapshot = _snapshot(_stored('fake_thing.a', {'name': 'a', 'id': 'fake-9', 'serial': 7},
                                     config_keys=['name']))
        assert _actions(Differ(graph, fake_registry).plan(snapshot, refresh=False)) == {'fake_thing.a': NOOP}

    def test_orphan_is_delete(self, fake_registry):
        graph = _make_graph([{'type': 'fake_thing', 'name': 'a', 'attributes': {'name': 'a'}}])
        snapshot = _snapshot(
            _stored('fake_thing.a', {'name': 'a', 'id': 'fake-1'}, config_keys=['name']),
            _stored('fake_thing.old', {'name': 'old', 'id': 'fake-2'}, dependencies=['fake_thing.a']),
        )
        plan = Differ(graph, fake_registry).plan(snapshot, refresh=False)
        change = plan.get('fake_thing.old')
        assert change.action == DELETE
        assert change.dependencies == ['fake_thing.a']
        assert change.reason == 'no longer in configuration'

    def test_reduced_count_deletes_extra_instances(self, fake_registry):
        graph = _make_graph([{'type': 'fake_thing', 'name': 'a', 'count': 1}])
        snapshot = _snapshot(
            _stored('fake_thing.a[0]', {'id': 'fake-1'}, index_key=0),
            _stored('fake_thing.a[1]', {'id': 'fake-2'}, index_key=1),
        )
        assert _actions(Differ(graph, fake_registry).plan(snapshot, refresh=False)) == {
            'fake_thing.a[0]': NOOP, 'fake_thing.a[1]': DELETE,
        }

    def test_tainted_is_replace(self, fake_registry):
        graph = _make_graph([{'type': 'fake_thing', 'name': 'a', 'attributes': {'name': 'a'}}])
        snapshot = _snapshot(_stored('fake_thing.a', {'name': 'a', 'id': 'fake-1'},
                                     config_keys=['name'], status='tainted'))
        change = Differ(graph, fake_registry).plan(snapshot, refresh=False).get('fake_thing.a')
        assert change.action == REPLACE
        assert change.reason == 'tainted'

    def test_replace_requested(self, fake_registry):
        graph = _make_graph([{'type': 'fake_thing', 'name': 'a', 'attributes': {'name': 'a'}}])
        snapshot = _snapshot(_stored('fake_thing.a', {'name': 'a', 'id': 'fake-1'}, config_keys=['name']))
        plan = Differ(graph, fake_registry).plan(snapshot, replace=['fake_thing.a'], refresh=False)
        assert plan.get('fake_thing.a').action == REPLACE

    def test_replace_unknown_address(self, fake_registry):
        graph = _make_graph([{'type': 'fake_thing', 'name': 'a'}])
        with pytest.raises(PlanError) as exc_info:
            Differ(graph, fake_registry).plan(StateSnapshot(), replace=['fake_thing.zz'], refresh=False)
        assert 'fake_thing.zz' in str(exc_info.value)

    def test_replace_propagates_unknown_to_dependents(self, fake_registry):
        """A dependent reading a replaced resource's id sees it as unknown."""
        graph = _make_graph([
            {'type': 'fake_thing', 'name': 'a', 'attributes': {'name': 'a', 'zone': 'z2'}},
            {'type': 'fake_thing', 'name': 'b', 'attributes': {'name': 'b', 'parent': '${fake_thing.a.id}'}},
        ])
        snapshot = _snapshot(
            _stored('fake_thing.a', {'name': 'a', 'zone': 'z1', 'id': 'fake-1'}, config_keys=['name', 'zone']),
            _stored('fake_thing.b', {'name': 'b', 'parent': 'fake-1', 'id': 'fake-2'},
                    config_keys=['name', 'parent']),
        )
        plan = Differ(graph, fake_registry).plan(snapshot, refresh=False)
        assert _actions(plan) == {'fake_thing.a': REPLACE, 'fake_thing.b': UPDATE}
        assert plan.get('fake_thing.b').after['parent'] is UNKNOWN

    def test_update_makes_computed_values_unknown(self, fake_registry):
        """Dependents of an in-place update re-read its computed attributes."""
        graph = _make_graph([
            {'type': 'fake_thing', 'name': 'a', 'attributes': {'name': 'a', 'color': 'blue'}},
            {'type': 'fake_thing', 'name': 'b',
             'attributes': {'name': 'b', 'seen': '${fake_thing.a.serial}', 'parent': '${fake_thing.a.id}'}},
        ])
        snapshot = _snapshot(
            _stored('fake_thing.a', {'name': 'a', 'color': 'red', 'id': 'fake-1', 'serial': 1},
                    config_keys=['name', 'color']),
            _stored('fake_thing.b', {'name': 'b', 'seen': 1, 'parent': 'fake-1', 'id': 'fake-2', 'serial': 1},
                    config_keys=['name', 'seen', 'parent']),
        )
        plan = Differ(graph, fake_registry).plan(snapshot, refresh=False)
        assert _actions(plan) == {'fake_thing.a': UPDATE, 'fake_thing.b': UPDATE}
        change = plan.get('fake_thing.b')
        assert change.changed == ['seen']
        assert change.after['seen'] is UNKNOWN
        assert change.after['parent'] == 'fake-1'

    def test_noop_dependency_values_are_known(self, fake_registry):
        graph = _make_graph([
            {'type': 'fake_thing', 'name': 'a', 'attributes': {'name': 'a'}},
            {'type': 'fake_thing', 'name': 'b', 'attributes': {'parent': '${fake_thing.a.id}'}},
        ])
        snapshot = _snapshot(_stored('fake_thing.a', {'name': 'a', 'id': 'fake-1'}, config_keys=['name']))
        plan = Differ(graph, fake_registry).plan(snapshot, refresh=False)
        assert plan.get('fake_thing.b').after == {'parent': 'fake-1'}


class TestLifecycle:
    """Tests for lifecycle handling in plans."""

    def test_ignore_changes(self, fake_registry):
        graph = _make_graph([{
            'type': 'fake_thing', 'name': 'a', 'attributes': {'name': 'a', 'size': 5},
            'lifecycle': {'ignore_changes': ['size']},
        }])
        snapshot = _snapshot(_stored('fake_thing.a', {'name': 'a', 'size': 1, 'id': 'fake-1'},
                                     config_keys=['name', 'size']))
        change = Differ(graph, fake_registry).plan(snapshot, refresh=False).get('fake_thing.a')
        assert change.action == NOOP

    def test_prevent_destroy_blocks_replace(self, fake_registry):
        graph = _make_graph([{
            'type': 'fake_thing', 'name': 'a', 'attributes': {'zone': 'new'},
            'lifecycle': {'prevent_destroy': True},
        }])
        snapshot = _snapshot(_stored('fake_thing.a', {'zone': 'old', 'id': 'fake-1'}, config_keys=['zone']))
        with pytest.raises(PlanError) as exc_info:
            Differ(graph, fake_registry).plan(snapshot, refresh=False)
        assert 'prevent_destroy' in str(exc_info.value)

    def test_prevent_destroy_blocks_destroy_plan(self, fake_registry):
        graph = _make_graph([{'type': 'fake_thing', 'name': 'a', 'lifecycle': {'prevent_destroy': True}}])
        snapshot = _snapshot(_stored('fake_thing.a', {'id': 'fake-1'}))
        with pytest.raises(PlanError):
            Differ(graph, fake_registry).plan(snapshot, destroy=True, refresh=False)

    def test_create_before_destroy_recorded(self, fake_registry):
        graph = _make_graph([{
            'type': 'fake_thing', 'name': 'a', 'attributes': {'zone': 'new'},
            'lifecycle': {'create_before_destroy': True},
        }])
        snapshot = _snapshot(_stored('fake_thing.a', {'zone': 'old', 'id': 'fake-1'}, config_keys=['zone']))
        change = Differ(graph, fake_registry).plan(snapshot, refresh=False).get('fake_thing.a')
        assert change.action == REPLACE
        assert change.create_before_destroy

    def test_apply_ignore_changes(self):
        assert apply_ignore_changes({'a': 1, 'b': 2}, {'b': 9}, ['b']) == {'a': 1, 'b': 9}
        assert apply_ignore_changes({'a': 1, 'b': 2}, {}, ['b']) == {'a': 1}


class TestDestroyPlan:
    """Tests for destroy plans."""

    def test_destroy_everything_dependents_first(self, fake_registry):
        graph = _make_graph([
            {'type': 'fake_thing', 'name': 'a'},
            {'type': 'fake_thing', 'name': 'b', 'attributes': {'parent': '${fake_thing.a.id}'}},
        ])
        snapshot = _snapshot(
            _stored('fake_thing.a', {'id': 'fake-1'}),
            _stored('fake_thing.b', {'parent': 'fake-1', 'id': 'fake-2'}, dependencies=['fake_thing.a']),
            _stored('fake_thing.orphan', {'id': 'fake-3'}),
        )
        plan = Differ(graph, fake_registry).plan(snapshot, destroy=True, refresh=False)
        assert plan.destroy
        assert [c.address for c in plan.changes] == ['fake_thing.b', 'fake_thing.a', 'fake_thing.orphan']
        assert all(c.action == DELETE for c in plan.changes)
        assert plan.summary() == {'add': 0, 'change': 0, 'destroy': 3}

    def test_destroy_skips_unmanaged(self, fake_registry):
        graph = _make_graph([{'type': 'fake_thing', 'name': 'a'}])
        plan = Differ(graph, fake_registry).plan(StateSnapshot(), destroy=True, refresh=False)
        assert plan.changes == []


class TestRefresh:
    """Tests for Differ.refresh()."""

    def test_refresh_drops_gone_and_updates_drift(self, fake_provider, fake_registry):
        fake_provider.objects['fake-1'] = {'name': 'a', 'size': 3, 'id': 'fake-1'}
        snapshot = _snapshot(
            _stored('fake_thing.a', {'name': 'a', 'size': 1, 'id': 'fake-1'}),
            _stored('fake_thing.gone', {'name': 'gone', 'id': 'fake-2'}),
        )
        graph = _make_graph([{'type': 'fake_thing', 'name': 'a'}])
        refreshed = Differ(graph, fake_registry).refresh(snapshot)
        assert refreshed.addresses == ['fake_thing.a']
        assert refreshed.get('fake_thing.a').attributes['size'] == 3
        # Input snapshot untouched
        assert snapshot.get('fake_thing.a').attributes['size'] == 1
        assert refreshed.serial == snapshot.serial

    def test_plan_recreates_externally_deleted(self, fake_registry):
        graph = _make_graph([{'type': 'fake_thing', 'name': 'a', 'attributes': {'name': 'a'}}])
        snapshot = _snapshot(_stored('fake_thing.a', {'name': 'a', 'id': 'fake-404'}, config_keys=['name']))
        plan = Differ(graph, fake_registry).plan(snapshot, refresh=True)
        assert plan.get('fake_thing.a').action == CREATE


class TestPlanSerialization:
    """Tests for saving, loading and freshness checks."""

    def test_save_and_load(self, tmp_path, fake_registry):
        graph = _make_graph(
            [
                {'type': 'fake_thing', 'name': 'a', 'attributes': {'name': 'a'}},
                {'type': 'fake_thing', 'name': 'b', 'attributes': {'parent': '${fake_thing.a.id}'}},
            ],
            outputs={'aid': {'value': '${fake_thing.a.id}'}},
        )
        snapshot = StateSnapshot()
        plan = Differ(graph, fake_registry).plan(snapshot, refresh=False, variables={'env': 'dev'})
        path = plan.save(tmp_path / 'plans' / 'plan.json')

        loaded = Plan.load(path)
        assert loaded.lineage == snapshot.lineage
        assert loaded.serial == 0
        assert loaded.variables == {'env': 'dev'}
        assert loaded.get('fake_thing.b').after['parent'] is UNKNOWN
        assert loaded.outputs == {'aid': UNKNOWN}
        assert [c.to_dict() for c in loaded.changes] == [c.to_dict() for c in plan.changes]

    def test_load_missing(self, tmp_path):
        with pytest.raises(PlanError):
            Plan.load(tmp_path / 'missing.json')

    def test_load_bad_action(self):
        with pytest.raises(PlanError):
            ResourceChange.from_dict({'address': 'x.y', 'action': 'explode', 'type': 'x_y'})

    def test_check_fresh(self):
        snapshot = StateSnapshot(serial=3)
        plan = Plan(stack_name='s', lineage=snapshot.lineage, serial=3)
        plan.check_fresh(snapshot)

        snapshot.serial = 4
        with pytest.raises(StalePlanError):
            plan.check_fresh(snapshot)

    def test_check_fresh_lineage(self):
        plan = Plan(stack_name='s', lineage='old', serial=2)
        with pytest.raises(StalePlanError):
            plan.check_fresh(StateSnapshot(serial=2))

    def test_empty_state_lineage_not_compared(self):
        """Empty stores hand out a fresh lineage per read."""
        plan = Plan(stack_name='s', lineage='first-read', serial=0)
        plan.check_fresh(StateSnapshot())
