"""Plan executor for stack reconciliation.

Turns a Plan into a DAG of provider operations and walks it with a
thread pool. An operation is submitted once everything it must follow
has completed; state is updated and persisted after each one.

Ordering rules:
    apply(A)   after apply(B) for each dependency B of A
    destroy(A) after destroy(D) for each D recorded as depending on A
    destroy(X) of an orphan, or of the old half of a
               create_before_destroy replacement, after apply(D) for
               each D that used to depend on X
    replace    destroy then create, or create then destroy with
               create_before_destroy
"""

import concurrent.futures
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from common import OperationRecord, OperationResult, canonical_json, redact
from config import ConfigError, Settings
from expressions import UNKNOWN, is_unknown
from reconciler.differ import (
    CREATE, DELETE, NOOP, REPLACE, UPDATE, Plan, PlanError, apply_ignore_changes,
)
from reconciler.graph import ResourceGraph
from reconciler.providers import ProviderError, ProviderRegistry
from reconciler.state import ResourceState, StateError, StateSnapshot, StateStore

logger = logging.getLogger(__name__)

# Operation kinds
APPLY = 'apply'
DESTROY = 'destroy'


@dataclass
class Operation:
    """One provider call in the operation DAG.

    Attributes:
        kind: apply (create/update) or destroy (delete)
        address: Resource instance address
        action: create, update or delete
        position: Ordering tiebreak (plan order)
        requires: Operation keys that must complete first
        required_by: Operation keys waiting on this one
        superseded: Destroy of an object whose replacement already
            exists (create_before_destroy); state keeps the new object
    """
    kind: str
    address: str
    action: str
    position: int
    requires: set = field(default_factory=set)
    required_by: set = field(default_factory=set)
    superseded: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.kind, self.address)

    def __repr__(self) -> str:
        return f"{self.kind}({self.address})"


@dataclass
class ApplyReport:
    """Outcome of executing a plan.

    Attributes:
        stack_name: Stack that was applied
        operations: Per-operation records in execution order
        serial: State serial after the last write
        outputs: Root outputs saved to state
        duration: Total wall time in seconds
        success: True if every operation completed
    """
    stack_name: str
    operations: list[OperationRecord] = field(default_factory=list)
    serial: int = 0
    outputs: dict = field(default_factory=dict)
    duration: float = 0.0
    success: bool = True

    def get(self, address: str, action: Optional[str] = None) -> Optional[OperationRecord]:
        for record in self.operations:
            if record.address == address and (action is None or record.action == action):
                return record
        return None

    def count(self, status: str) -> int:
        return sum(1 for r in self.operations if r.status == status)

    def to_dict(self) -> dict:
        return {
            'stack': self.stack_name,
            'success': self.success,
            'serial': self.serial,
            'duration': round(self.duration, 3),
            'operations': [r.to_dict() for r in self.operations],
            'outputs': self.outputs,
        }


def build_operations(plan: Plan, snapshot: StateSnapshot) -> dict[tuple, Operation]:
    """Build the operation DAG for a plan.

    Raises:
        PlanError: If the ordering constraints form a cycle
    """
    ops: dict[tuple, Operation] = {}
    changes = {c.address: c for c in plan.changes if c.action != NOOP}

    for position, change in enumerate(plan.changes):
        if change.action in (CREATE, UPDATE, REPLACE):
            action = UPDATE if change.action == UPDATE else CREATE
            op = Operation(APPLY, change.address, action, position)
            ops[op.key] = op
        if change.action in (DELETE, REPLACE):
            op = Operation(DESTROY, change.address, DELETE, position)
            ops[op.key] = op

    # Dependents as recorded in state, plus those of destroy-plan changes
    recorded: dict[str, set] = {}
    for address in snapshot.addresses:
        for dep in snapshot.resources[address].dependencies:
            recorded.setdefault(dep, set()).add(address)
    for change in plan.changes:
        if change.action == DELETE:
            for dep in change.dependencies:
                recorded.setdefault(dep, set()).add(change.address)

    # A replacement whose dependents are replaced create-before-destroy
    # must itself be replaced that way
    cbd = {a for a, c in changes.items() if c.action == REPLACE and c.create_before_destroy}
    grew = True
    while grew:
        grew = False
        for address, change in changes.items():
            if change.action == REPLACE and address not in cbd and recorded.get(address, set()) & cbd:
                cbd.add(address)
                grew = True
    for address in cbd:
        ops[(DESTROY, address)].superseded = True

    def edge(before: tuple, after: tuple) -> None:
        if before in ops and after in ops and before != after:
            ops[after].requires.add(before)
            ops[before].required_by.add(after)

    for change in changes.values():
        address = change.address
        if change.action in (CREATE, UPDATE, REPLACE):
            for dep in change.dependencies:
                edge((APPLY, dep), (APPLY, address))
        if change.action in (DELETE, REPLACE):
            for dependent in recorded.get(address, ()):
                edge((DESTROY, dependent), (DESTROY, address))
        if change.action == REPLACE:
            if address in cbd:
                edge((APPLY, address), (DESTROY, address))
                for dependent in recorded.get(address, ()):
                    edge((APPLY, dependent), (DESTROY, address))
            else:
                edge((DESTROY, address), (APPLY, address))
        if change.action == DELETE:
            for dependent in recorded.get(address, ()):
                edge((APPLY, dependent), (DESTROY, address))

    _check_acyclic(ops)
    return ops


def _check_acyclic(ops: dict[tuple, Operation]) -> None:
    remaining = {key: len(op.requires) for key, op in ops.items()}
    ready = [key for key, n in remaining.items() if n == 0]
    visited = 0
    while ready:
        key = ready.pop()
        visited += 1
        for after in ops[key].required_by:
            remaining[after] -= 1
            if remaining[after] == 0:
                ready.append(after)
    if visited != len(ops):
        stuck = sorted(repr(ops[k]) for k, n in remaining.items() if n > 0)
        raise PlanError(f"Operation ordering cycle involving: {', '.join(stuck)}")


class Executor:
    """Executes a Plan against providers and a state store.

    Attributes:
        graph: ResourceGraph for the stack the plan was made from
        registry: Configured providers
        store: State store receiving a write after each operation
        settings: parallelism and on_error
        dry_run: If True, preview operations without calling providers
    """

    def __init__(self, graph: ResourceGraph, registry: ProviderRegistry, store: StateStore,
                 settings: Optional[Settings] = None, dry_run: bool = False):
        self.graph = graph
        self.registry = registry
        self.store = store
        self.settings = settings or Settings()
        self.dry_run = dry_run

    def apply(self, plan: Plan, snapshot: StateSnapshot) -> tuple[bool, ApplyReport]:
        """Execute plan, starting from snapshot.

        snapshot must be the state the plan was made against (possibly
        refreshed); its serial is checked before anything runs.

        Returns:
            Tuple of (success, ApplyReport)

        Raises:
            StalePlanError: If snapshot no longer matches the plan
            PlanError: If the operation DAG has a cycle
        """
        plan.check_fresh(snapshot)
        ops = build_operations(plan, snapshot)
        order = sorted(ops.values(), key=lambda o: (o.position, o.kind != DESTROY))
        report = ApplyReport(stack_name=plan.stack_name, serial=snapshot.serial)
        records = {op.key: OperationRecord(op.address, op.action) for op in order}
        report.operations = list(records.values())

        if self.dry_run:
            self._preview(plan, order)
            return True, report

        start = time.time()
        working = snapshot
        previous_outputs = canonical_json(snapshot.outputs)
        base_serial = snapshot.serial
        success = self._walk(plan, ops, order, records, working)

        if plan.destroy:
            working.outputs = {}
        else:
            try:
                working.outputs = self._collect_outputs(working)
            except ConfigError as e:
                logger.error(f"Failed to evaluate outputs: {e}")
                success = False
        if canonical_json(working.outputs) != previous_outputs or self._unsaved_refresh(working, base_serial):
            success = self._persist(working) and success

        report.serial = working.serial
        report.outputs = working.outputs
        report.duration = time.time() - start
        report.success = success
        logger.info(
            f"Apply finished: {report.count('completed')} completed, "
            f"{report.count('failed')} failed, {report.count('skipped')} skipped"
        )
        return success, report

    # -- walking ----------------------------------------------------------

    def _walk(self, plan: Plan, ops: dict, order: list, records: dict,
              working: StateSnapshot) -> bool:
        changes = {c.address: c for c in plan.changes}
        waiting = {op.key: set(op.requires) for op in order}
        position = {op.key: i for i, op in enumerate(order)}
        ready = [op.key for op in order if not op.requires]
        running: dict[concurrent.futures.Future, tuple] = {}
        halted = False
        success = True

        def fail(key: tuple, message: str) -> None:
            nonlocal halted, success
            success = False
            records[key].status = 'failed'
            records[key].error = message
            logger.error(f"{ops[key].action} {key[1]} failed: {message}")
            for downstream in self._downstream(ops, key):
                record = records[downstream]
                if record.status == 'pending':
                    record.status = 'skipped'
                    record.error = f"dependency {key[1]} failed"
                    waiting.pop(downstream, None)
            if self.settings.on_error == 'stop':
                halted = True

        workers = max(1, int(self.settings.parallelism))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers,
                                                   thread_name_prefix='stackctl') as pool:
            while True:
                if not halted:
                    ready.sort(key=position.get)
                    for key in ready:
                        if records[key].status != 'pending':
                            continue
                        op = ops[key]
                        try:
                            args = self._prepare(op, changes[op.address], working)
                        except (ConfigError, ProviderError) as e:
                            fail(key, str(e))
                            continue
                        records[key].status = 'running'
                        logger.info(f"[{op.action}] {op.address}...")
                        future = pool.submit(self._run, op, *args)
                        running[future] = key
                    ready = []

                if not running:
                    break

                done, _ = concurrent.futures.wait(
                    running, return_when=concurrent.futures.FIRST_COMPLETED,
                )
                for future in done:
                    key = running.pop(future)
                    op = ops[key]
                    result: OperationResult = future.result()
                    records[key].duration = result.duration

                    if not result.success:
                        if result.partial and working.get(op.address) is None:
                            working.set(self._resource_state(op.address, result.attributes, tainted=True))
                            self._persist(working)
                        fail(key, result.message)
                        continue

                    self._commit(op, result, working)
                    if not self._persist(working):
                        fail(key, f"state for {op.address} could not be saved")
                        halted = True
                        continue
                    records[key].status = 'completed'
                    logger.info(f"[{op.action}] {op.address} done in {result.duration:.1f}s")

                    for after in op.required_by:
                        pending = waiting.get(after)
                        if pending is None:
                            continue
                        pending.discard(key)
                        if not pending:
                            ready.append(after)

        for key, record in records.items():
            if record.status == 'pending':
                record.status = 'skipped'
                record.error = record.error or 'not started after an earlier failure'
        return success

    @staticmethod
    def _downstream(ops: dict, key: tuple) -> set:
        seen: set = set()
        stack = list(ops[key].required_by)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(ops[current].required_by)
        return seen

    def _prepare(self, op: Operation, change, working: StateSnapshot) -> tuple:
        """Resolve the provider call arguments against current state."""
        stored = working.get(op.address)
        if op.kind == DESTROY:
            # The replacement may already occupy this address in state
            if change.before is not None:
                return (change.type, dict(change.before), None)
            if stored is None:
                raise ProviderError(f"{op.address} is not in state")
            return (stored.type, dict(stored.attributes), None)

        def source(address: str) -> Any:
            resource = working.get(address)
            return resource.attributes if resource is not None else UNKNOWN

        desired = self.graph.evaluate_attributes(op.address, source)
        if op.action == UPDATE and stored is not None:
            lifecycle = self.graph.get(op.address).block.lifecycle
            desired = apply_ignore_changes(desired, stored.attributes, lifecycle.ignore_changes)
        unresolved = sorted(k for k, v in desired.items() if is_unknown(v))
        if unresolved:
            raise ProviderError(
                f"{op.address}: values still unknown for {', '.join(unresolved)}"
            )
        prior = dict(stored.attributes) if op.action == UPDATE and stored is not None else None
        return (change.type, desired, prior)

    def _run(self, op: Operation, resource_type: str, attributes: dict,
             prior: Optional[dict]) -> OperationResult:
        """Invoke the provider (runs on a worker thread)."""
        provider = self.registry.for_type(resource_type)
        start = time.time()
        try:
            if op.action == CREATE:
                result = provider.create(resource_type, attributes)
            elif op.action == UPDATE:
                result = provider.update(resource_type, prior or {}, attributes)
            else:
                provider.delete(resource_type, attributes)
                result = None
        except ProviderError as e:
            return OperationResult(
                success=False,
                message=e.message,
                duration=time.time() - start,
                attributes=e.partial,
                partial=e.partial is not None,
            )
        except Exception as e:
            logger.exception(f"Unexpected error in {op!r}")
            return OperationResult(success=False, message=f"{type(e).__name__}: {e}",
                                   duration=time.time() - start)
        return OperationResult(
            success=True,
            message=f"{op.action} {op.address}",
            duration=time.time() - start,
            attributes=result,
        )

    def _resource_state(self, address: str, attributes: dict, tainted: bool = False) -> ResourceState:
        inst = self.graph.get(address)
        return ResourceState(
            address=address,
            type=inst.type,
            name=inst.name,
            provider=inst.provider,
            attributes=dict(attributes),
            module_path=list(inst.module_path),
            index_key=inst.index_key,
            dependencies=sorted(inst.dependencies),
            config_keys=sorted(inst.block.attributes),
            status='tainted' if tainted else 'created',
        )

    def _commit(self, op: Operation, result: OperationResult, working: StateSnapshot) -> None:
        if op.kind == DESTROY:
            if not op.superseded:
                working.remove(op.address)
            return
        working.set(self._resource_state(op.address, result.attributes or {}))

    def _unsaved_refresh(self, working: StateSnapshot, base_serial: int) -> bool:
        """Whether refreshed attributes in working were never written."""
        if working.serial != base_serial:
            return False
        try:
            stored = self.store.read()
        except StateError as e:
            logger.warning(f"Could not compare refreshed state: {e}")
            return True
        return canonical_json(stored.to_dict()['resources']) != canonical_json(working.to_dict()['resources'])

    def _persist(self, working: StateSnapshot) -> bool:
        try:
            self.store.write(working)
        except StateError as e:
            logger.error(f"Failed to save state: {e}")
            return False
        return True

    def _collect_outputs(self, working: StateSnapshot) -> dict:
        def source(address: str) -> Any:
            resource = working.get(address)
            return resource.attributes if resource is not None else UNKNOWN

        outputs = {}
        for name, value in self.graph.evaluate_outputs(source).items():
            if is_unknown(value):
                logger.warning(f"Output '{name}' is not known; skipping")
                continue
            outputs[name] = {
                'value': value,
                'sensitive': self.graph.stack.outputs[name].sensitive,
            }
        return outputs

    def _preview(self, plan: Plan, order: list) -> None:
        """Print what would be executed."""
        verb = 'DESTROY' if plan.destroy else 'APPLY'
        print("")
        print("=" * 65)
        print(f"  DRY-RUN {verb}: {plan.stack_name}")
        print(f"  State serial: {plan.serial}")
        print(f"  Parallelism: {self.settings.parallelism}")
        print("=" * 65)
        print("")
        for op in order:
            after = ', '.join(sorted(f"{kind} {address}" for kind, address in op.requires))
            suffix = f"  (after {after})" if after else ''
            print(f"  {op.action:<7} {op.address}{suffix}")
        if not order:
            print("  No changes.")
        print("")
        for name, value in plan.outputs.items():
            sensitive = self.graph.stack.outputs[name].sensitive if name in self.graph.stack.outputs else False
            shown = '(known after apply)' if is_unknown(value) else redact(value, sensitive)
            print(f"  output {name} = {shown}")
