"""Plan computation for stack reconciliation.

Compares each resource instance's desired attributes (evaluated from the
stack) against stored state and produces a Plan: one ResourceChange per
instance with its action (create, update, replace, delete, no-op).

Planning walks the graph in apply order so that each instance's planned
values are available to the references of its dependents; anything the
provider will only compute during apply is UNKNOWN until then.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

from common import canonical_json
from expressions import UNKNOWN, PartialValue, is_unknown
from reconciler.graph import ResourceGraph
from reconciler.providers import ProviderRegistry
from reconciler.state import StateSnapshot

logger = logging.getLogger(__name__)

# Change actions
CREATE = 'create'
UPDATE = 'update'
REPLACE = 'replace'
DELETE = 'delete'
NOOP = 'no-op'

ACTIONS = (CREATE, UPDATE, REPLACE, DELETE, NOOP)

PLAN_FORMAT = 1
_UNKNOWN_MARKER = '__unknown__'

# Computed attributes an in-place update never changes
IDENTITY_KEYS = frozenset({'id'})


class PlanError(Exception):
    """The plan cannot be produced or applied."""


class StalePlanError(PlanError):
    """A saved plan no longer matches stored state."""


def encode_value(value: Any) -> Any:
    """Make a planned value JSON-safe (UNKNOWN becomes a marker object)."""
    if value is UNKNOWN:
        return {_UNKNOWN_MARKER: True}
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    return value


def decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        if value == {_UNKNOWN_MARKER: True}:
            return UNKNOWN
        return {k: decode_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_value(v) for v in value]
    return value


def apply_ignore_changes(desired: dict, prior: dict, ignore: Iterable[str]) -> dict:
    """Keep prior values for attributes whose changes are ignored."""
    result = dict(desired)
    for key in ignore:
        if key in prior:
            result[key] = prior[key]
        else:
            result.pop(key, None)
    return result


def _differs(desired: Any, prior: Any) -> bool:
    if is_unknown(desired):
        return True
    return canonical_json(desired) != canonical_json(prior)


@dataclass
class ResourceChange:
    """Planned change for one resource instance.

    Attributes:
        address: Instance address
        action: create, update, replace, delete, no-op
        type: Resource type
        before: Stored attributes (None for create)
        after: Desired attributes (None for delete; may hold UNKNOWN)
        changed: Attribute names that differ
        requires_replace: Changed attributes that force replacement
        dependencies: Addresses this change must follow (config for
            create/update/replace, recorded state for delete)
        create_before_destroy: Replacement creates the new object first
        reason: Why the action was chosen (replace/delete)
    """
    address: str
    action: str
    type: str
    before: Optional[dict] = None
    after: Optional[dict] = None
    changed: list[str] = field(default_factory=list)
    requires_replace: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    create_before_destroy: bool = False
    reason: str = ''

    @property
    def is_noop(self) -> bool:
        return self.action == NOOP

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'address': self.address,
            'action': self.action,
            'type': self.type,
            'before': self.before,
            'after': encode_value(self.after),
        }
        if self.changed:
            d['changed'] = self.changed
        if self.requires_replace:
            d['requires_replace'] = self.requires_replace
        if self.dependencies:
            d['dependencies'] = self.dependencies
        if self.create_before_destroy:
            d['create_before_destroy'] = True
        if self.reason:
            d['reason'] = self.reason
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceChange':
        if data.get('action') not in ACTIONS:
            raise PlanError(f"Invalid action in plan: {data.get('action')!r}")
        return cls(
            address=data['address'],
            action=data['action'],
            type=data['type'],
            before=data.get('before'),
            after=decode_value(data.get('after')),
            changed=data.get('changed', []),
            requires_replace=data.get('requires_replace', []),
            dependencies=data.get('dependencies', []),
            create_before_destroy=data.get('create_before_destroy', False),
            reason=data.get('reason', ''),
        )


@dataclass
class Plan:
    """A changeset produced by the Differ.

    Attributes:
        stack_name: Stack the plan was made for
        lineage: State lineage at plan time
        serial: State serial at plan time
        changes: ResourceChanges in apply order (deletes of orphans last)
        destroy: True for a destroy-everything plan
        variables: Root variable values used to build the plan
        outputs: Planned root output values (may hold UNKNOWN)
    """
    stack_name: str
    lineage: str
    serial: int
    changes: list[ResourceChange] = field(default_factory=list)
    destroy: bool = False
    variables: dict = field(default_factory=dict)
    outputs: dict = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return any(not c.is_noop for c in self.changes)

    def get(self, address: str) -> Optional[ResourceChange]:
        for change in self.changes:
            if change.address == address:
                return change
        return None

    def summary(self) -> dict[str, int]:
        """Counts of objects to add, change and destroy."""
        counts = {'add': 0, 'change': 0, 'destroy': 0}
        for change in self.changes:
            if change.action == CREATE:
                counts['add'] += 1
            elif change.action == UPDATE:
                counts['change'] += 1
            elif change.action == REPLACE:
                counts['add'] += 1
                counts['destroy'] += 1
            elif change.action == DELETE:
                counts['destroy'] += 1
        return counts

    def check_fresh(self, snapshot: StateSnapshot) -> None:
        """Verify stored state has not moved since planning.

        Raises:
            StalePlanError: If serial or lineage changed
        """
        if snapshot.serial != self.serial or (self.serial > 0 and snapshot.lineage != self.lineage):
            raise StalePlanError(
                f"Saved plan is stale: state is at serial {snapshot.serial} "
                f"(lineage {snapshot.lineage}), plan was made at serial {self.serial} "
                f"(lineage {self.lineage}). Run plan again."
            )

    def to_dict(self) -> dict:
        return {
            'format': PLAN_FORMAT,
            'stack_name': self.stack_name,
            'lineage': self.lineage,
            'serial': self.serial,
            'destroy': self.destroy,
            'variables': self.variables,
            'changes': [c.to_dict() for c in self.changes],
            'outputs': encode_value(self.outputs),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Plan':
        if data.get('format') != PLAN_FORMAT:
            raise PlanError(f"Unsupported plan format: {data.get('format')!r}")
        return cls(
            stack_name=data['stack_name'],
            lineage=data['lineage'],
            serial=int(data['serial']),
            changes=[ResourceChange.from_dict(c) for c in data.get('changes', [])],
            destroy=bool(data.get('destroy', False)),
            variables=data.get('variables', {}),
            outputs=decode_value(data.get('outputs', {})),
        )

    def save(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.debug(f"Saved plan to {path}")
        return path

    @classmethod
    def load(cls, path: Path) -> 'Plan':
        try:
            with open(path, encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            raise PlanError(f"Plan file not found: {path}")
        except json.JSONDecodeError as e:
            raise PlanError(f"Invalid plan file {path}: {e}")
        return cls.from_dict(data)


class Differ:
    """Computes a Plan from a ResourceGraph and a StateSnapshot."""

    def __init__(self, graph: ResourceGraph, registry: ProviderRegistry):
        self.graph = graph
        self.registry = registry
        self._planned_outputs: dict = {}

    def refresh(self, snapshot: StateSnapshot) -> StateSnapshot:
        """Read live attributes for every stored resource.

        Resources the provider reports as gone are dropped from the
        returned copy; the input snapshot is left untouched.
        """
        refreshed = snapshot.copy()
        for address in snapshot.addresses:
            stored = refreshed.resources[address]
            provider = self.registry.for_type(stored.type)
            current = provider.read(stored.type, dict(stored.attributes))
            if current is None:
                logger.info(f"[refresh] {address} no longer exists")
                refreshed.remove(address)
                continue
            if canonical_json(current) != canonical_json(stored.attributes):
                logger.info(f"[refresh] {address} has drifted")
            stored.attributes = current
        return refreshed

    def plan(
        self,
        snapshot: StateSnapshot,
        destroy: bool = False,
        replace: Iterable[str] = (),
        refresh: bool = True,
        variables: Optional[dict] = None,
    ) -> Plan:
        """Produce the changeset reconciling snapshot with the stack.

        Args:
            snapshot: Stored state as read from the state store
            destroy: Plan deletion of every stored resource
            replace: Addresses to force-replace
            refresh: Read live attributes before diffing
            variables: Root variable values (recorded in the plan)

        Raises:
            PlanError: On prevent_destroy violations or unknown --replace addresses
        """
        replace_set = set(replace)
        unknown_replace = sorted(a for a in replace_set
                                 if a not in self.graph and snapshot.get(a) is None)
        if unknown_replace:
            raise PlanError(f"Cannot replace unknown resource(s): {', '.join(unknown_replace)}")

        current = self.refresh(snapshot) if refresh else snapshot
        plan = Plan(
            stack_name=self.graph.stack.name,
            lineage=snapshot.lineage,
            serial=snapshot.serial,
            destroy=destroy,
            variables=dict(variables or {}),
        )

        if destroy:
            plan.changes = self._destroy_changes(current)
        else:
            plan.changes = self._apply_changes(current, replace_set)
            plan.changes.extend(self._orphan_changes(current))
            plan.outputs = self._planned_outputs

        counts = plan.summary()
        logger.info(
            f"Plan: {counts['add']} to add, {counts['change']} to change, "
            f"{counts['destroy']} to destroy."
        )
        return plan

    def _apply_changes(self, snapshot: StateSnapshot, replace_set: set) -> list:
        planned: dict[str, Any] = {}

        def source(address: str) -> Any:
            return planned.get(address, UNKNOWN)

        changes = []
        for inst in self.graph.apply_order():
            schema = self.registry.schema(inst.type)
            lifecycle = inst.block.lifecycle
            desired = self.graph.evaluate_attributes(inst.address, source)
            prior = snapshot.get(inst.address)

            change = ResourceChange(
                address=inst.address,
                action=CREATE,
                type=inst.type,
                after=desired,
                dependencies=list(inst.dependencies),
                create_before_destroy=lifecycle.create_before_destroy,
            )

            if prior is None:
                planned[inst.address] = PartialValue(desired)
                changes.append(change)
                continue

            change.before = prior.attributes
            effective = apply_ignore_changes(desired, prior.attributes, lifecycle.ignore_changes)
            change.after = effective
            keys = (set(effective) | set(prior.config_keys)) - set(lifecycle.ignore_changes)
            change.changed = sorted(
                k for k in keys
                if k not in schema.computed and _differs(effective.get(k), prior.attributes.get(k))
            )
            change.requires_replace = [k for k in change.changed if k in schema.force_new]

            if prior.tainted:
                change.action, change.reason = REPLACE, 'tainted'
            elif inst.address in replace_set:
                change.action, change.reason = REPLACE, 'replacement requested'
            elif change.requires_replace:
                change.action = REPLACE
                change.reason = f"forces replacement: {', '.join(change.requires_replace)}"
            elif change.changed:
                change.action = UPDATE
            else:
                change.action = NOOP

            if change.action == REPLACE and lifecycle.prevent_destroy:
                raise PlanError(
                    f"{inst.address} has lifecycle.prevent_destroy set but the plan "
                    f"requires replacing it ({change.reason})"
                )

            if change.action == NOOP:
                planned[inst.address] = prior.attributes
            elif change.action == UPDATE:
                # Computed values may change on update; only the identity survives
                merged = {k: v for k, v in prior.attributes.items()
                          if k in IDENTITY_KEYS or k not in schema.computed}
                merged.update(effective)
                planned[inst.address] = PartialValue(merged)
            else:
                change.after = desired
                planned[inst.address] = PartialValue(desired)
            changes.append(change)

        self._planned_outputs = self.graph.evaluate_outputs(source)
        return changes

    def _orphan_changes(self, snapshot: StateSnapshot) -> list:
        changes = []
        for address in snapshot.addresses:
            if address in self.graph:
                continue
            stored = snapshot.resources[address]
            changes.append(ResourceChange(
                address=address,
                action=DELETE,
                type=stored.type,
                before=stored.attributes,
                dependencies=list(stored.dependencies),
                reason='no longer in configuration',
            ))
        return changes

    def _destroy_changes(self, snapshot: StateSnapshot) -> list:
        changes = []
        ordered = [i.address for i in self.graph.destroy_order()]
        ordered += [a for a in snapshot.addresses if a not in self.graph]
        for address in ordered:
            stored = snapshot.get(address)
            if stored is None:
                continue
            if address in self.graph and self.graph.get(address).block.lifecycle.prevent_destroy:
                raise PlanError(f"{address} has lifecycle.prevent_destroy set and cannot be destroyed")
            changes.append(ResourceChange(
                address=address,
                action=DELETE,
                type=stored.type,
                before=stored.attributes,
                dependencies=list(stored.dependencies),
                reason='destroy requested',
            ))
        return changes
