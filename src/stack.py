"""Stack loading and validation for declarative infrastructure.

A stack is a YAML document declaring variables, locals, resources, module
calls, outputs, provider configuration and the state backend. Modules are
directories holding their own stack.yaml; they are loaded recursively and
share the same schema minus backend, settings and providers.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from config import ConfigError
from expressions import find_references

logger = logging.getLogger(__name__)

# Default stack file name inside a stack or module directory
STACK_FILE = 'stack.yaml'

VARIABLE_TYPES = ('string', 'number', 'bool', 'list', 'map', 'any')
BACKEND_TYPES = ('local', 'http')

_STACK_KEYS = {
    'name', 'description', 'backend', 'settings', 'providers', 'variables',
    'locals', 'resources', 'modules', 'outputs',
}
_RESOURCE_KEYS = {'type', 'name', 'count', 'for_each', 'attributes', 'depends_on', 'lifecycle'}
_LIFECYCLE_KEYS = {'create_before_destroy', 'prevent_destroy', 'ignore_changes'}


@dataclass
class Variable:
    """A declared stack input.

    Attributes:
        name: Variable name (referenced as var.NAME)
        type: One of string, number, bool, list, map, any
        default: Default value (None with has_default=False means required)
        description: Human-readable description
        sensitive: Redact the value in plan and output rendering
    """
    name: str
    type: str = 'any'
    default: Any = None
    has_default: bool = False
    description: str = ''
    sensitive: bool = False

    @property
    def is_required(self) -> bool:
        return not self.has_default

    @classmethod
    def from_dict(cls, name: str, data: Any) -> 'Variable':
        """Create Variable from a declaration (a dict, or null for 'any' with no default)."""
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"Variable '{name}' must be a mapping")
        var_type = data.get('type', 'any')
        if var_type not in VARIABLE_TYPES:
            raise ConfigError(
                f"Variable '{name}' has unknown type '{var_type}'. "
                f"Supported: {', '.join(VARIABLE_TYPES)}"
            )
        variable = cls(
            name=name,
            type=var_type,
            has_default='default' in data,
            description=data.get('description', ''),
            sensitive=bool(data.get('sensitive', False)),
        )
        if variable.has_default and data['default'] is not None:
            variable.default = coerce_value(name, var_type, data['default'])
        return variable


@dataclass
class Lifecycle:
    """Per-resource lifecycle customisation."""
    create_before_destroy: bool = False
    prevent_destroy: bool = False
    ignore_changes: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[dict], where: str) -> 'Lifecycle':
        if not data:
            return cls()
        unknown = set(data) - _LIFECYCLE_KEYS
        if unknown:
            raise ConfigError(f"{where}: unknown lifecycle key(s): {', '.join(sorted(unknown))}")
        ignore = data.get('ignore_changes', [])
        if not isinstance(ignore, list):
            raise ConfigError(f"{where}: lifecycle.ignore_changes must be a list")
        return cls(
            create_before_destroy=bool(data.get('create_before_destroy', False)),
            prevent_destroy=bool(data.get('prevent_destroy', False)),
            ignore_changes=[str(a) for a in ignore],
        )


@dataclass
class ResourceBlock:
    """A resource declaration, possibly expanded by count or for_each.

    Attributes:
        type: Resource type (provider prefix before first '_')
        name: Local name, unique per type within a stack
        attributes: Raw attribute values (may contain ${...})
        count: Instance count (int or expression)
        for_each: Instance keys (dict, list, or expression)
        depends_on: Explicit dependency addresses
        lifecycle: Lifecycle customisation
    """
    type: str
    name: str
    attributes: dict = field(default_factory=dict)
    count: Any = None
    for_each: Any = None
    depends_on: list[str] = field(default_factory=list)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)

    @property
    def key(self) -> str:
        return f'{self.type}.{self.name}'

    @property
    def provider(self) -> str:
        return self.type.split('_', 1)[0]

    @property
    def is_counted(self) -> bool:
        return self.count is not None

    @property
    def is_for_each(self) -> bool:
        return self.for_each is not None

    @classmethod
    def from_dict(cls, data: dict, position: int) -> 'ResourceBlock':
        """Create ResourceBlock from dictionary."""
        if not isinstance(data, dict):
            raise ConfigError(f"Resource {position} must be a mapping")
        for required in ('type', 'name'):
            if required not in data:
                raise ConfigError(
                    f"Resource {position} ({data.get('name', 'unnamed')}) missing required field: {required}"
                )
        where = f"Resource '{data['type']}.{data['name']}'"
        if '_' not in data['type']:
            raise ConfigError(f"{where}: type must be '<provider>_<kind>'")
        unknown = set(data) - _RESOURCE_KEYS
        if unknown:
            raise ConfigError(f"{where}: unknown key(s): {', '.join(sorted(unknown))}")
        if data.get('count') is not None and data.get('for_each') is not None:
            raise ConfigError(f"{where}: count and for_each are mutually exclusive")
        attributes = data.get('attributes') or {}
        if not isinstance(attributes, dict):
            raise ConfigError(f"{where}: attributes must be a mapping")
        depends_on = data.get('depends_on') or []
        if not isinstance(depends_on, list):
            raise ConfigError(f"{where}: depends_on must be a list")
        return cls(
            type=str(data['type']),
            name=str(data['name']),
            attributes=attributes,
            count=data.get('count'),
            for_each=data.get('for_each'),
            depends_on=[str(d) for d in depends_on],
            lifecycle=Lifecycle.from_dict(data.get('lifecycle'), where),
        )


@dataclass
class OutputBlock:
    """A stack output value."""
    name: str
    value: Any
    description: str = ''
    sensitive: bool = False

    @classmethod
    def from_dict(cls, name: str, data: Any) -> 'OutputBlock':
        if not isinstance(data, dict) or 'value' not in data:
            raise ConfigError(f"Output '{name}' must be a mapping with a 'value' key")
        return cls(
            name=name,
            value=data['value'],
            description=data.get('description', ''),
            sensitive=bool(data.get('sensitive', False)),
        )


@dataclass
class BackendConfig:
    """State backend selection.

    Attributes:
        type: 'local' (JSON file) or 'http' (remote state over HTTP)
        options: Backend-specific options (path, address, lock_address, ...)
    """
    type: str = 'local'
    options: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'BackendConfig':
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError("backend must be a mapping")
        backend_type = data.get('type', 'local')
        if backend_type not in BACKEND_TYPES:
            raise ConfigError(
                f"Unknown backend type '{backend_type}'. Supported: {', '.join(BACKEND_TYPES)}"
            )
        options = {k: v for k, v in data.items() if k != 'type'}
        if backend_type == 'http' and 'address' not in options:
            raise ConfigError("http backend requires 'address'")
        return cls(type=backend_type, options=options)


@dataclass
class ModuleCall:
    """A module instantiation.

    Attributes:
        name: Module instance name (referenced as module.NAME)
        source: Directory containing the module's stack.yaml
        inputs: Values for the module's variables (evaluated in caller scope)
        stack: The loaded module stack
    """
    name: str
    source: str
    inputs: dict = field(default_factory=dict)
    stack: Optional['Stack'] = None


@dataclass
class Stack:
    """A declarative infrastructure stack (root or module).

    Attributes:
        name: Stack name
        description: Optional description
        variables: Declared inputs by name
        locals: Local values by name (may contain ${...})
        resources: Resource blocks in declaration order
        modules: Module calls in declaration order
        outputs: Output blocks by name
        providers: Provider configuration by provider name
        backend: State backend (root stack only)
        settings: Engine setting overrides (root stack only)
        source_path: File the stack was loaded from
    """
    name: str
    description: str = ''
    variables: dict[str, Variable] = field(default_factory=dict)
    locals: dict[str, Any] = field(default_factory=dict)
    resources: list[ResourceBlock] = field(default_factory=list)
    modules: list[ModuleCall] = field(default_factory=list)
    outputs: dict[str, OutputBlock] = field(default_factory=dict)
    providers: dict[str, dict] = field(default_factory=dict)
    backend: BackendConfig = field(default_factory=BackendConfig)
    settings: dict = field(default_factory=dict)
    source_path: Optional[Path] = None

    def get_resource(self, key: str) -> Optional[ResourceBlock]:
        """Look up a resource block by 'TYPE.NAME'."""
        for block in self.resources:
            if block.key == key:
                return block
        return None

    def get_module(self, name: str) -> Optional[ModuleCall]:
        for call in self.modules:
            if call.name == name:
                return call
        return None

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Stack':
        """Create Stack from dictionary (modules are not loaded).

        Raises:
            ConfigError: If the stack is invalid
        """
        if not isinstance(data, dict):
            raise ConfigError("Stack must be a mapping")
        if 'name' not in data:
            raise ConfigError("Stack missing required field: name")
        unknown = set(data) - _STACK_KEYS
        if unknown:
            raise ConfigError(f"Stack '{data['name']}' has unknown key(s): {', '.join(sorted(unknown))}")

        variables = {
            name: Variable.from_dict(name, decl)
            for name, decl in (data.get('variables') or {}).items()
        }

        resources = [
            ResourceBlock.from_dict(r, i) for i, r in enumerate(data.get('resources') or [])
        ]
        seen: set[str] = set()
        for block in resources:
            if block.key in seen:
                raise ConfigError(f"Duplicate resource: '{block.key}'")
            seen.add(block.key)

        modules = []
        for i, m in enumerate(data.get('modules') or []):
            if not isinstance(m, dict) or 'name' not in m or 'source' not in m:
                raise ConfigError(f"Module {i} requires 'name' and 'source'")
            if any(existing.name == m['name'] for existing in modules):
                raise ConfigError(f"Duplicate module: '{m['name']}'")
            modules.append(ModuleCall(name=str(m['name']), source=str(m['source']),
                                      inputs=m.get('inputs') or {}))

        outputs = {
            name: OutputBlock.from_dict(name, decl)
            for name, decl in (data.get('outputs') or {}).items()
        }

        stack = cls(
            name=str(data['name']),
            description=data.get('description', ''),
            variables=variables,
            locals=data.get('locals') or {},
            resources=resources,
            modules=modules,
            outputs=outputs,
            providers=data.get('providers') or {},
            backend=BackendConfig.from_dict(data.get('backend')),
            settings=data.get('settings') or {},
            source_path=source_path,
        )
        _validate_depends_on(stack)
        # Parse every reference up front so syntax errors surface at load time
        for block in stack.resources:
            find_references([block.attributes, block.count, block.for_each])
        find_references([stack.locals, [o.value for o in stack.outputs.values()], stack.providers])
        return stack


def _validate_depends_on(stack: Stack) -> None:
    """Check explicit depends_on entries name something declared."""
    for block in stack.resources:
        for dep in block.depends_on:
            parts = dep.split('.')
            if parts[0] == 'module':
                if len(parts) != 2 or stack.get_module(parts[1]) is None:
                    raise ConfigError(f"Resource '{block.key}' depends on unknown module '{dep}'")
                continue
            base = dep.split('[', 1)[0]
            if stack.get_resource(base) is None:
                raise ConfigError(f"Resource '{block.key}' depends on unknown resource '{dep}'")
            if base == block.key:
                raise ConfigError(f"Resource '{block.key}' depends on itself")


def coerce_value(name: str, var_type: str, value: Any) -> Any:
    """Coerce a variable value to its declared type.

    Strings from the environment or --var flags are parsed: numbers,
    booleans, and YAML flow text for lists and maps.

    Raises:
        ConfigError: If the value cannot be converted
    """
    if var_type == 'any' or value is None:
        return value
    if var_type == 'string':
        if isinstance(value, (dict, list)):
            raise ConfigError(f"Variable '{name}': expected string, got {type(value).__name__}")
        if isinstance(value, bool):
            return 'true' if value else 'false'
        return str(value)
    if var_type == 'number':
        if isinstance(value, bool):
            raise ConfigError(f"Variable '{name}': expected number, got bool")
        if isinstance(value, (int, float)):
            return value
        try:
            text = str(value).strip()
            return int(text) if text.lstrip('-').isdigit() else float(text)
        except ValueError:
            raise ConfigError(f"Variable '{name}': expected number, got '{value}'")
    if var_type == 'bool':
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ('true', '1', 'yes'):
            return True
        if text in ('false', '0', 'no'):
            return False
        raise ConfigError(f"Variable '{name}': expected bool, got '{value}'")

    # list / map
    expected = list if var_type == 'list' else dict
    if isinstance(value, str):
        try:
            value = yaml.safe_load(value)
        except yaml.YAMLError as e:
            raise ConfigError(f"Variable '{name}': cannot parse {var_type}: {e}")
    if not isinstance(value, expected):
        raise ConfigError(f"Variable '{name}': expected {var_type}, got {type(value).__name__}")
    return value


def resolve_variables(
    stack: Stack,
    env: Optional[dict] = None,
    files: Optional[list[dict]] = None,
    flags: Optional[dict] = None,
) -> dict[str, Any]:
    """Resolve root variable values by precedence.

    Precedence (lowest first): declared default, environment
    (STACKCTL_VAR_*), var files in order, --var flags.

    Environment values for undeclared variables are ignored; undeclared
    names from files or flags are errors.

    Returns:
        Mapping of variable name to coerced value

    Raises:
        ConfigError: If a required variable is missing or a value is invalid
    """
    values: dict[str, Any] = {}
    for name, var in stack.variables.items():
        if var.has_default:
            values[name] = var.default

    for name, raw in (env or {}).items():
        if name in stack.variables:
            values[name] = raw

    for source, supplied in [('var file', f) for f in (files or [])] + [('--var', flags or {})]:
        for name, raw in supplied.items():
            if name not in stack.variables:
                raise ConfigError(f"Value for undeclared variable '{name}' ({source})")
            values[name] = raw

    missing = [n for n in stack.variables if n not in values]
    if missing:
        raise ConfigError(f"No value for required variable(s): {', '.join(sorted(missing))}")

    return {
        name: coerce_value(name, stack.variables[name].type, value)
        for name, value in values.items()
    }


class StackLoader:
    """Loads stacks (and their modules) from YAML files."""

    def __init__(self):
        self._loading: list[Path] = []

    def load_file(self, path: Path) -> Stack:
        """Load a stack from a YAML file, recursively loading its modules.

        Raises:
            ConfigError: If the file is missing, invalid, or modules recurse
        """
        if not path.exists():
            raise ConfigError(f"Stack file not found: {path}")
        try:
            with open(path, encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in stack {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Stack {path} must be a YAML object (dict)")

        stack = Stack.from_dict(data, source_path=path)
        resolved = path.resolve()
        self._loading.append(resolved)
        try:
            for call in stack.modules:
                call.stack = self._load_module(call, path.parent)
        finally:
            self._loading.pop()
        logger.debug(f"Loaded stack '{stack.name}' from {path}")
        return stack

    def load(self, path: Path) -> Stack:
        """Load a stack from a file or a directory containing stack.yaml."""
        if path.is_dir():
            path = path / STACK_FILE
        return self.load_file(path)

    def _load_module(self, call: ModuleCall, base_dir: Path) -> Stack:
        source = (base_dir / call.source)
        module_file = source / STACK_FILE if source.is_dir() else source
        if module_file.resolve() in self._loading:
            raise ConfigError(f"Module '{call.name}' recursively includes {module_file}")
        if not module_file.exists():
            raise ConfigError(f"Module '{call.name}' source not found: {module_file}")

        module = self.load_file(module_file)
        if module.backend.options or module.backend.type != 'local' or module.settings or module.providers:
            raise ConfigError(f"Module '{call.name}' may not declare backend, settings or providers")
        unknown_inputs = set(call.inputs) - set(module.variables)
        if unknown_inputs:
            raise ConfigError(
                f"Module '{call.name}' has no variable(s): {', '.join(sorted(unknown_inputs))}"
            )
        missing = [n for n, v in module.variables.items() if v.is_required and n not in call.inputs]
        if missing:
            raise ConfigError(
                f"Module '{call.name}' missing required input(s): {', '.join(sorted(missing))}"
            )
        return module


def load_stack(path: Optional[str] = None) -> Stack:
    """Load a stack from a path (file or directory; default: ./stack.yaml)."""
    return StackLoader().load(Path(path) if path else Path.cwd())
