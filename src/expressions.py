"""Interpolation and reference handling for stack attribute values.

Strings may embed references as ${ref}. A string consisting of a single
${ref} evaluates to the referenced value with its native type; anything
else is rendered as a string. $${ escapes a literal ${.

Supported references:
    var.NAME[.path]            stack variable
    local.NAME[.path]          local value
    count.index                instance index of a counted resource
    each.key / each.value      instance key/value of a for_each resource
    module.NAME.OUTPUT[.path]  output of a child module
    TYPE.NAME[KEY][.path]      resource instance attributes
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from config import ConfigError

IndexKey = Union[int, str]

_INTERP_RE = re.compile(r'\$\$\{|\$\{([^}]*)\}')
_TOKEN_RE = re.compile(
    r'\s*(?:'
    r'(?P<name>[A-Za-z_][A-Za-z0-9_-]*)'
    r'|\[\s*(?P<int>-?\d+)\s*\]'
    r'|\[\s*"(?P<str>[^"]*)"\s*\]'
    r'|(?P<dot>\.)'
    r')'
)


class ExpressionError(ConfigError):
    """Invalid reference or interpolation."""


class UnknownValue:
    """Placeholder for a value that is only known after apply."""

    _instance: Optional['UnknownValue'] = None

    def __new__(cls) -> 'UnknownValue':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return '(known after apply)'

    def __reduce__(self):
        return (UnknownValue, ())


UNKNOWN = UnknownValue()


class PartialValue(dict):
    """Attributes of a resource that is still to be applied.

    Listed keys are known; any other attribute reads as UNKNOWN.
    """


def is_unknown(value: Any) -> bool:
    """True if value is, or contains, an unknown placeholder."""
    if value is UNKNOWN or isinstance(value, PartialValue):
        return True
    if isinstance(value, dict):
        return any(is_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(is_unknown(v) for v in value)
    return False


@dataclass(frozen=True)
class Reference:
    """A parsed ${...} reference.

    Attributes:
        kind: var, local, count, each, module, resource
        name: Variable/local/module name, 'index'/'key'/'value', or 'TYPE.NAME'
        index: Resource instance key when written as TYPE.NAME[KEY]
        output: Module output name (module references only)
        path: Attribute path walked into the referenced value
        raw: Original reference text
    """
    kind: str
    name: str
    index: Optional[IndexKey] = None
    output: Optional[str] = None
    path: tuple = ()
    raw: str = ''

    @property
    def resource_type(self) -> str:
        return self.name.split('.', 1)[0]

    @property
    def resource_name(self) -> str:
        return self.name.split('.', 1)[1]


def _tokenize(expr: str) -> list[tuple[str, IndexKey]]:
    """Split a reference into ('name', str) and ('index', int|str) steps."""
    steps: list[tuple[str, IndexKey]] = []
    pos = 0
    expect_name = True
    text = expr.strip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise ExpressionError(f"Invalid reference '{expr}' at position {pos}")
        pos = m.end()
        if m.group('dot'):
            if expect_name:
                raise ExpressionError(f"Invalid reference '{expr}': unexpected '.'")
            expect_name = True
        elif m.group('name'):
            if not expect_name:
                raise ExpressionError(f"Invalid reference '{expr}': missing '.' before '{m.group('name')}'")
            steps.append(('name', m.group('name')))
            expect_name = False
        elif m.group('int') is not None:
            if expect_name:
                raise ExpressionError(f"Invalid reference '{expr}': unexpected index")
            steps.append(('index', int(m.group('int'))))
        else:
            if expect_name:
                raise ExpressionError(f"Invalid reference '{expr}': unexpected index")
            steps.append(('index', m.group('str')))
    if not steps or expect_name:
        raise ExpressionError(f"Invalid reference '{expr}'")
    return steps


def _require_name(steps, i: int, expr: str, what: str) -> str:
    if i >= len(steps) or steps[i][0] != 'name':
        raise ExpressionError(f"Invalid reference '{expr}': expected {what}")
    return str(steps[i][1])


def parse_reference(expr: str) -> Reference:
    """Parse the text inside ${...} into a Reference.

    Raises:
        ExpressionError: If the reference is malformed
    """
    steps = _tokenize(expr)
    raw = expr.strip()
    head = _require_name(steps, 0, raw, 'a name')

    if head in ('var', 'local'):
        name = _require_name(steps, 1, raw, f'{head} name')
        return Reference(kind=head, name=name, path=tuple(v for _, v in steps[2:]), raw=raw)

    if head == 'count':
        attr = _require_name(steps, 1, raw, "'index'")
        if attr != 'index' or len(steps) > 2:
            raise ExpressionError(f"Invalid reference '{raw}': only count.index is supported")
        return Reference(kind='count', name='index', raw=raw)

    if head == 'each':
        attr = _require_name(steps, 1, raw, "'key' or 'value'")
        if attr not in ('key', 'value'):
            raise ExpressionError(f"Invalid reference '{raw}': expected each.key or each.value")
        if attr == 'key' and len(steps) > 2:
            raise ExpressionError(f"Invalid reference '{raw}': each.key has no attributes")
        return Reference(kind='each', name=attr, path=tuple(v for _, v in steps[2:]), raw=raw)

    if head == 'module':
        name = _require_name(steps, 1, raw, 'module name')
        output = _require_name(steps, 2, raw, 'module output name')
        return Reference(kind='module', name=name, output=output,
                         path=tuple(v for _, v in steps[3:]), raw=raw)

    # TYPE.NAME[KEY].attr...
    rname = _require_name(steps, 1, raw, 'resource name')
    rest = steps[2:]
    index: Optional[IndexKey] = None
    if rest and rest[0][0] == 'index':
        index = rest[0][1]
        rest = rest[1:]
    return Reference(kind='resource', name=f'{head}.{rname}', index=index,
                     path=tuple(v for _, v in rest), raw=raw)


def find_references(value: Any) -> list[Reference]:
    """Collect every reference in a (possibly nested) value."""
    refs: list[Reference] = []
    if isinstance(value, str):
        for m in _INTERP_RE.finditer(value):
            if m.group(1) is not None:
                refs.append(parse_reference(m.group(1)))
    elif isinstance(value, dict):
        for v in value.values():
            refs.extend(find_references(v))
    elif isinstance(value, (list, tuple)):
        for v in value:
            refs.extend(find_references(v))
    return refs


def to_string(value: Any) -> str:
    """Render a value for string interpolation."""
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _render(text: str, resolve: Callable[[Reference], Any]) -> Any:
    whole = _INTERP_RE.fullmatch(text)
    if whole and whole.group(1) is not None:
        return resolve(parse_reference(whole.group(1)))

    parts: list[str] = []
    unknown = False
    pos = 0
    for m in _INTERP_RE.finditer(text):
        parts.append(text[pos:m.start()])
        pos = m.end()
        if m.group(1) is None:
            parts.append('${')
            continue
        resolved = resolve(parse_reference(m.group(1)))
        if is_unknown(resolved):
            unknown = True
        else:
            parts.append(to_string(resolved))
    parts.append(text[pos:])
    return UNKNOWN if unknown else ''.join(parts)


def evaluate(value: Any, resolve: Callable[[Reference], Any]) -> Any:
    """Evaluate all interpolations in a (possibly nested) value.

    Args:
        value: Raw attribute value from the stack file
        resolve: Callback returning the value for a Reference

    Returns:
        A new value with references substituted
    """
    if isinstance(value, str):
        return _render(value, resolve)
    if isinstance(value, dict):
        return {k: evaluate(v, resolve) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [evaluate(v, resolve) for v in value]
    return value


def walk_path(value: Any, path: tuple, raw: str = '') -> Any:
    """Follow an attribute path into a value.

    Raises:
        ExpressionError: If a step does not exist
    """
    for step in path:
        if value is UNKNOWN:
            return UNKNOWN
        if isinstance(value, dict):
            key = str(step) if isinstance(step, int) and str(step) in value else step
            if key not in value:
                if isinstance(value, PartialValue):
                    return UNKNOWN
                raise ExpressionError(f"Reference '{raw}': no attribute '{step}'")
            value = value[key]
        elif isinstance(value, list) and isinstance(step, int):
            if not -len(value) <= step < len(value):
                raise ExpressionError(f"Reference '{raw}': index {step} out of range")
            value = value[step]
        else:
            raise ExpressionError(f"Reference '{raw}': cannot look up '{step}' in {type(value).__name__}")
    return value
