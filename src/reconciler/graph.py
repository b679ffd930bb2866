"""Graph module for stack reconciliation.

Expands a Stack's resource blocks (count, for_each, modules) into resource
instances, wires dependency edges from explicit depends_on and implicit
${...} references, and computes traversal orderings for apply
(dependencies first) and destroy (dependents first).

Expression evaluation also lives here since references are resolved
against the same module scopes the graph is built from.
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from config import ConfigError
from expressions import (
    IndexKey,
    Reference,
    evaluate,
    find_references,
    is_unknown,
    parse_reference,
    walk_path,
)
from stack import ModuleCall, ResourceBlock, Stack, coerce_value

logger = logging.getLogger(__name__)

# Returns the attributes of a resource instance by address (or UNKNOWN)
ValueSource = Callable[[str], Any]


class GraphError(ConfigError):
    """Invalid resource graph (cycles, dangling references)."""


class _StaticReference(Exception):
    """A resource was referenced where only static values are allowed."""


def format_address(module_path: tuple, key: str, index: Optional[IndexKey] = None) -> str:
    """Build a resource instance address.

    Examples: 'null_resource.a', 'local_file.f[0]', 'module.net.random_string.s["x"]'
    """
    prefix = ''.join(f'module.{m}.' for m in module_path)
    suffix = ''
    if isinstance(index, int):
        suffix = f'[{index}]'
    elif index is not None:
        suffix = f'["{index}"]'
    return f'{prefix}{key}{suffix}'


def _index_matches(inst: 'ResourceInstance', index: IndexKey) -> bool:
    # for_each keys are strings; [0] on a for_each list means key "0"
    if inst.block.is_for_each and isinstance(index, int):
        index = str(index)
    return inst.index_key == index


@dataclass
class ResourceInstance:
    """A node in the resource graph.

    Attributes:
        address: Unique instance address
        block: The declaring ResourceBlock
        module_path: Module names from root to the declaring stack
        index_key: count index (int) or for_each key (str); None if single
        each_value: for_each value for this instance
        position: Declaration order, used to break ordering ties
        dependencies: Addresses this instance depends on
        dependents: Addresses depending on this instance
    """
    address: str
    block: ResourceBlock
    module_path: tuple = ()
    index_key: Optional[IndexKey] = None
    each_value: Any = None
    position: int = 0
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)

    @property
    def type(self) -> str:
        return self.block.type

    @property
    def name(self) -> str:
        return self.block.name

    @property
    def provider(self) -> str:
        return self.block.provider

    @property
    def is_root(self) -> bool:
        return not self.dependencies

    def __repr__(self) -> str:
        return f"ResourceInstance({self.address}, deps={len(self.dependencies)})"


class ModuleScope:
    """Evaluation scope for one stack (root or module instance)."""

    def __init__(self, stack: Stack, path: tuple = (), parent: Optional['ModuleScope'] = None,
                 call: Optional[ModuleCall] = None, values: Optional[dict] = None):
        self.stack = stack
        self.path = path
        self.parent = parent
        self.call = call
        self.values = values or {}
        self.children: dict[str, ModuleScope] = {}

    @property
    def label(self) -> str:
        return ''.join(f'module.{m}.' for m in self.path).rstrip('.') or 'root'


class ResourceGraph:
    """Dependency graph of resource instances built from a Stack.

    Provides ordered traversal for reconciliation:
    - apply_order(): dependencies before dependents (stable topological order)
    - destroy_order(): dependents before dependencies
    """

    def __init__(self, stack: Stack, variables: Optional[dict] = None):
        """Build the resource graph.

        Args:
            stack: Loaded root stack (modules already loaded)
            variables: Resolved root variable values

        Raises:
            ConfigError: If count/for_each cannot be evaluated
            GraphError: If references dangle or dependencies form a cycle
        """
        self.stack = stack
        self.root = ModuleScope(stack, values=dict(variables or {}))
        self._instances: dict[str, ResourceInstance] = {}
        self._by_block: dict[tuple, list[ResourceInstance]] = {}
        self._position = 0

        self._expand(self.root)
        self._wire_dependencies()
        self._validate_outputs(self.root)
        self._order = self._topological_order()

    # -- construction -----------------------------------------------------

    def _expand(self, scope: ModuleScope) -> None:
        """Create instances for every resource block, then recurse into modules."""
        for block in scope.stack.resources:
            instances = []
            for index_key, each_value in self._instance_keys(scope, block):
                inst = ResourceInstance(
                    address=format_address(scope.path, block.key, index_key),
                    block=block,
                    module_path=scope.path,
                    index_key=index_key,
                    each_value=each_value,
                    position=self._position,
                )
                self._position += 1
                self._instances[inst.address] = inst
                instances.append(inst)
            self._by_block[(scope.path, block.key)] = instances

        for call in scope.stack.modules:
            if call.stack is None:
                raise ConfigError(f"Module '{call.name}' was not loaded")
            child = ModuleScope(call.stack, scope.path + (call.name,), parent=scope, call=call)
            scope.children[call.name] = child
            self._expand(child)

    def _instance_keys(self, scope: ModuleScope, block: ResourceBlock) -> list[tuple]:
        """Evaluate count/for_each into (index_key, each_value) pairs."""
        where = format_address(scope.path, block.key)
        if block.is_counted:
            count = self._evaluate_static(scope, block.count, where, 'count')
            try:
                count = int(count)
            except (TypeError, ValueError):
                raise ConfigError(f"{where}: count must be a whole number, got {count!r}")
            if count < 0:
                raise ConfigError(f"{where}: count must not be negative")
            return [(i, None) for i in range(count)]

        if block.is_for_each:
            items = self._evaluate_static(scope, block.for_each, where, 'for_each')
            if isinstance(items, dict):
                return [(str(k), items[k]) for k in sorted(items, key=str)]
            if isinstance(items, list):
                keys = [str(i) for i in items]
                if len(set(keys)) != len(keys):
                    raise ConfigError(f"{where}: for_each list contains duplicate values")
                return [(k, k) for k in sorted(keys)]
            raise ConfigError(f"{where}: for_each must be a map or a list, got {type(items).__name__}")

        return [(None, None)]

    def _evaluate_static(self, scope: ModuleScope, value: Any, where: str, what: str) -> Any:
        """Evaluate a value that must be known before any resource is applied."""
        try:
            result = evaluate(value, lambda ref: self._resolve(scope, ref, None, None, frozenset()))
        except _StaticReference as e:
            raise ConfigError(
                f"{where}: {what} depends on resource attributes that cannot be "
                f"determined until apply ({e})"
            )
        if is_unknown(result):
            raise ConfigError(f"{where}: {what} value is not known until apply")
        return result

    def _wire_dependencies(self) -> None:
        for inst in self._instances.values():
            scope = self._scope_for(inst.module_path)
            deps: set[str] = set()
            for ref in find_references(inst.block.attributes):
                deps |= self._ref_dependencies(scope, ref, inst.block, frozenset())
            for entry in inst.block.depends_on:
                deps |= self._explicit_dependencies(scope, entry, inst.address)
            deps.discard(inst.address)
            inst.dependencies = sorted(deps, key=lambda a: self._instances[a].position)

        for inst in self._instances.values():
            for dep in inst.dependencies:
                self._instances[dep].dependents.append(inst.address)

    def _explicit_dependencies(self, scope: ModuleScope, entry: str, address: str) -> set[str]:
        if entry.startswith('module.'):
            prefix = scope.path + (entry.split('.', 1)[1],)
            return {
                a for a, i in self._instances.items()
                if i.module_path[:len(prefix)] == prefix
            }
        ref = parse_reference(entry)
        instances = self._by_block.get((scope.path, ref.name), [])
        if ref.index is None:
            return {i.address for i in instances}
        matched = [i.address for i in instances if _index_matches(i, ref.index)]
        if not matched:
            raise GraphError(f"{address}: depends_on '{entry}' matches no instance")
        return set(matched)

    def _ref_dependencies(self, scope: ModuleScope, ref: Reference,
                          block: Optional[ResourceBlock], visiting: frozenset) -> set[str]:
        """Resource instance addresses a reference ultimately reads from."""
        if ref.kind == 'var':
            self._require_variable(scope, ref)
            if scope.call is None or ref.name not in scope.call.inputs:
                return set()
            key = (scope.path, 'var', ref.name)
            if key in visiting:
                raise GraphError(f"Cycle through variable '{ref.raw}' in {scope.label}")
            return self._collect(scope.parent, scope.call.inputs[ref.name], None, visiting | {key})

        if ref.kind == 'local':
            self._require_local(scope, ref)
            key = (scope.path, 'local', ref.name)
            if key in visiting:
                raise GraphError(f"Cycle through local '{ref.raw}' in {scope.label}")
            return self._collect(scope, scope.stack.locals[ref.name], None, visiting | {key})

        if ref.kind in ('count', 'each'):
            self._require_instance_context(ref, block)
            return set()

        if ref.kind == 'module':
            child, output = self._require_output(scope, ref)
            key = (child.path, 'output', output.name)
            if key in visiting:
                raise GraphError(f"Cycle through module output '{ref.raw}'")
            return self._collect(child, output.value, None, visiting | {key})

        self._require_resource(scope, ref)
        instances = self._by_block.get((scope.path, ref.name), [])
        if ref.index is not None:
            instances = [self._select_instance(instances, ref)]
        return {i.address for i in instances}

    def _collect(self, scope: ModuleScope, value: Any, block: Optional[ResourceBlock],
                 visiting: frozenset) -> set[str]:
        deps: set[str] = set()
        for ref in find_references(value):
            deps |= self._ref_dependencies(scope, ref, block, visiting)
        return deps

    def _validate_outputs(self, scope: ModuleScope) -> None:
        """Surface dangling references in locals, outputs and provider config."""
        self._collect(scope, scope.stack.locals, None, frozenset())
        for output in scope.stack.outputs.values():
            self._collect(scope, output.value, None, frozenset())
        if scope.call is not None:
            self._collect(scope.parent, scope.call.inputs, None, frozenset())
        for child in scope.children.values():
            self._validate_outputs(child)

    def _topological_order(self) -> list[ResourceInstance]:
        """Kahn's algorithm, ties broken by declaration order."""
        indegree = {a: len(i.dependencies) for a, i in self._instances.items()}
        heap = [(i.position, a) for a, i in self._instances.items() if indegree[a] == 0]
        heapq.heapify(heap)
        ordered: list[ResourceInstance] = []
        while heap:
            _, address = heapq.heappop(heap)
            inst = self._instances[address]
            ordered.append(inst)
            for dep_addr in inst.dependents:
                indegree[dep_addr] -= 1
                if indegree[dep_addr] == 0:
                    heapq.heappush(heap, (self._instances[dep_addr].position, dep_addr))

        if len(ordered) != len(self._instances):
            cyclic = sorted(a for a, d in indegree.items() if d > 0)
            raise GraphError(f"Dependency cycle detected involving: {', '.join(cyclic)}")
        return ordered

    # -- validation helpers -----------------------------------------------

    def _scope_for(self, module_path: tuple) -> ModuleScope:
        scope = self.root
        for name in module_path:
            scope = scope.children[name]
        return scope

    def _require_variable(self, scope: ModuleScope, ref: Reference) -> None:
        if ref.name not in scope.stack.variables:
            raise GraphError(f"Reference to undeclared variable '{ref.raw}' in {scope.label}")

    def _require_local(self, scope: ModuleScope, ref: Reference) -> None:
        if ref.name not in scope.stack.locals:
            raise GraphError(f"Reference to undeclared local '{ref.raw}' in {scope.label}")

    def _require_instance_context(self, ref: Reference, block: Optional[ResourceBlock]) -> None:
        if ref.kind == 'count' and (block is None or not block.is_counted):
            raise GraphError(f"'{ref.raw}' used outside a resource with count")
        if ref.kind == 'each' and (block is None or not block.is_for_each):
            raise GraphError(f"'{ref.raw}' used outside a resource with for_each")

    def _require_output(self, scope: ModuleScope, ref: Reference):
        child = scope.children.get(ref.name)
        if child is None:
            raise GraphError(f"Reference to undeclared module '{ref.raw}' in {scope.label}")
        output = child.stack.outputs.get(ref.output or '')
        if output is None:
            raise GraphError(f"Module '{ref.name}' has no output '{ref.output}'")
        return child, output

    def _require_resource(self, scope: ModuleScope, ref: Reference) -> ResourceBlock:
        block = scope.stack.get_resource(ref.name)
        if block is None:
            raise GraphError(f"Reference to undeclared resource '{ref.raw}' in {scope.label}")
        return block

    def _select_instance(self, instances: list[ResourceInstance], ref: Reference) -> ResourceInstance:
        for inst in instances:
            if _index_matches(inst, ref.index):
                return inst
        raise GraphError(f"Reference '{ref.raw}' matches no resource instance")

    # -- evaluation -------------------------------------------------------

    def _resolve(self, scope: ModuleScope, ref: Reference, inst: Optional[ResourceInstance],
                 source: Optional[ValueSource], visiting: frozenset) -> Any:
        """Resolve a reference to its value within a scope."""
        if ref.kind == 'var':
            return walk_path(self._variable_value(scope, ref, source, visiting), ref.path, ref.raw)

        if ref.kind == 'local':
            self._require_local(scope, ref)
            key = (scope.path, 'local', ref.name)
            if key in visiting:
                raise GraphError(f"Cycle through local '{ref.raw}' in {scope.label}")
            value = evaluate(scope.stack.locals[ref.name],
                             lambda r: self._resolve(scope, r, None, source, visiting | {key}))
            return walk_path(value, ref.path, ref.raw)

        if ref.kind in ('count', 'each'):
            if inst is None:
                raise GraphError(f"'{ref.raw}' used outside a resource instance")
            self._require_instance_context(ref, inst.block)
            if ref.kind == 'count' or ref.name == 'key':
                return inst.index_key
            return walk_path(inst.each_value, ref.path, ref.raw)

        if ref.kind == 'module':
            child, output = self._require_output(scope, ref)
            key = (child.path, 'output', output.name)
            if key in visiting:
                raise GraphError(f"Cycle through module output '{ref.raw}'")
            value = evaluate(output.value,
                             lambda r: self._resolve(child, r, None, source, visiting | {key}))
            return walk_path(value, ref.path, ref.raw)

        block = self._require_resource(scope, ref)
        if source is None:
            raise _StaticReference(ref.raw)
        instances = self._by_block.get((scope.path, ref.name), [])
        if ref.index is not None:
            value = source(self._select_instance(instances, ref).address)
        elif block.is_counted:
            value = [source(i.address) for i in instances]
        elif block.is_for_each:
            value = {i.index_key: source(i.address) for i in instances}
        else:
            value = source(format_address(scope.path, ref.name))
        return walk_path(value, ref.path, ref.raw)

    def _variable_value(self, scope: ModuleScope, ref: Reference, source: Optional[ValueSource],
                        visiting: frozenset) -> Any:
        self._require_variable(scope, ref)
        var = scope.stack.variables[ref.name]
        if scope.call is None:
            if ref.name in scope.values:
                return scope.values[ref.name]
            if var.has_default:
                return var.default
            raise ConfigError(f"No value for required variable '{ref.name}'")

        if ref.name not in scope.call.inputs:
            return var.default
        key = (scope.path, 'var', ref.name)
        if key in visiting:
            raise GraphError(f"Cycle through variable '{ref.raw}' in {scope.label}")
        parent = scope.parent
        if parent is None:
            raise GraphError(f"Module call for {scope.label} has no calling scope")
        value = evaluate(scope.call.inputs[ref.name],
                         lambda r: self._resolve(parent, r, None, source, visiting | {key}))
        if is_unknown(value):
            return value
        return coerce_value(ref.name, var.type, value)

    def evaluate_attributes(self, address: str, source: ValueSource) -> dict:
        """Evaluate an instance's configured attributes.

        Args:
            address: Resource instance address
            source: Lookup for other instances' attributes (planned or applied)

        Returns:
            Attribute dict; values not yet known are UNKNOWN
        """
        inst = self._instances[address]
        scope = self._scope_for(inst.module_path)
        return evaluate(inst.block.attributes,
                        lambda ref: self._resolve(scope, ref, inst, source, frozenset()))

    def evaluate_outputs(self, source: ValueSource) -> dict[str, Any]:
        """Evaluate root stack outputs (UNKNOWN where not yet known)."""
        results: dict[str, Any] = {}
        for name, output in self.stack.outputs.items():
            results[name] = evaluate(
                output.value,
                lambda ref: self._resolve(self.root, ref, None, source, frozenset()),
            )
        return results

    def evaluate_providers(self) -> dict[str, dict]:
        """Evaluate root provider configuration (variables and locals only)."""
        return {
            name: self._evaluate_static(self.root, config or {}, f'provider.{name}', 'provider configuration')
            for name, config in self.stack.providers.items()
        }

    # -- traversal --------------------------------------------------------

    @property
    def addresses(self) -> list[str]:
        """All instance addresses in declaration order."""
        return list(self._instances)

    def __contains__(self, address: str) -> bool:
        return address in self._instances

    def __len__(self) -> int:
        return len(self._instances)

    def get(self, address: str) -> ResourceInstance:
        """Get a ResourceInstance by address.

        Raises:
            KeyError: If address not found
        """
        return self._instances[address]

    def instances_of(self, module_path: tuple, key: str) -> list[ResourceInstance]:
        """Instances declared by the block 'TYPE.NAME' in a module."""
        return list(self._by_block.get((module_path, key), []))

    def apply_order(self) -> list[ResourceInstance]:
        """Return instances with every dependency before its dependents."""
        return list(self._order)

    def destroy_order(self) -> list[ResourceInstance]:
        """Return instances with every dependent before its dependencies.

        Reverse of apply_order.
        """
        return list(reversed(self._order))

    def dependencies(self, address: str) -> list[str]:
        return list(self._instances[address].dependencies)

    def dependents(self, address: str) -> list[str]:
        return list(self._instances[address].dependents)

    def transitive_dependents(self, address: str) -> set[str]:
        """All instances downstream of address."""
        seen: set[str] = set()
        stack = list(self._instances[address].dependents)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._instances[current].dependents)
        return seen
