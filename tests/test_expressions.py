"""Tests for expressions module (reference parsing and interpolation)."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from expressions import (
    UNKNOWN,
    ExpressionError,
    PartialValue,
    evaluate,
    find_references,
    is_unknown,
    parse_reference,
    walk_path,
)


class TestParseReference:
    """Tests for parse_reference()."""

    def test_variable(self):
        ref = parse_reference('var.region')
        assert ref.kind == 'var'
        assert ref.name == 'region'
        assert ref.path == ()

    def test_variable_with_path(self):
        ref = parse_reference('var.tags.owner')
        assert ref.kind == 'var'
        assert ref.path == ('owner',)

    def test_local(self):
        ref = parse_reference('local.prefix')
        assert (ref.kind, ref.name) == ('local', 'prefix')

    def test_count_index(self):
        ref = parse_reference('count.index')
        assert (ref.kind, ref.name) == ('count', 'index')

    def test_each_value_path(self):
        ref = parse_reference('each.value.size')
        assert ref.kind == 'each'
        assert ref.name == 'value'
        assert ref.path == ('size',)

    def test_module_output(self):
        ref = parse_reference('module.net.subnet_id')
        assert ref.kind == 'module'
        assert ref.name == 'net'
        assert ref.output == 'subnet_id'

    def test_resource(self):
        ref = parse_reference('null_resource.a.id')
        assert ref.kind == 'resource'
        assert ref.name == 'null_resource.a'
        assert ref.resource_type == 'null_resource'
        assert ref.resource_name == 'a'
        assert ref.index is None
        assert ref.path == ('id',)

    def test_resource_int_index(self):
        ref = parse_reference('local_file.f[2].filename')
        assert ref.index == 2
        assert ref.path == ('filename',)

    def test_resource_string_index(self):
        ref = parse_reference('random_string.s["web"].result')
        assert ref.index == 'web'
        assert ref.path == ('result',)

    @pytest.mark.parametrize('expr', [
        'var',
        'var.',
        '.var.x',
        'count.value',
        'each.other',
        'each.key.x',
        'module.net',
        'null_resource',
        'null_resource.a..id',
        'var.x y',
    ])
    def test_invalid(self, expr):
        with pytest.raises(ExpressionError):
            parse_reference(expr)


class TestFindReferences:
    """Tests for find_references()."""

    def test_nested_values(self):
        refs = find_references({
            'a': '${var.x}',
            'b': ['plain', 'pre-${local.y}-${null_resource.r.id}'],
            'c': 3,
        })
        assert [r.raw for r in refs] == ['var.x', 'local.y', 'null_resource.r.id']

    def test_escape_is_not_a_reference(self):
        assert find_references('$${var.x}') == []


class TestEvaluate:
    """Tests for evaluate()."""

    @staticmethod
    def _resolver(values):
        return lambda ref: values[ref.raw]

    def test_whole_reference_keeps_type(self):
        resolve = self._resolver({'var.n': 3, 'var.tags': {'a': 1}})
        assert evaluate('${var.n}', resolve) == 3
        assert evaluate('${var.tags}', resolve) == {'a': 1}

    def test_interpolation_renders_strings(self):
        resolve = self._resolver({'var.n': 3, 'var.on': True, 'var.none': None})
        assert evaluate('n=${var.n} on=${var.on} none=[${var.none}]', resolve) == 'n=3 on=true none=[]'

    def test_escape(self):
        assert evaluate('literal $${var.x}', self._resolver({})) == 'literal ${var.x}'

    def test_nested_structures(self):
        resolve = self._resolver({'var.n': 2})
        assert evaluate({'list': ['${var.n}', 'x'], 'flag': False}, resolve) == {
            'list': [2, 'x'], 'flag': False,
        }

    def test_unknown_in_interpolation_is_unknown(self):
        resolve = self._resolver({'null_resource.a.id': UNKNOWN})
        assert evaluate('id-${null_resource.a.id}', resolve) is UNKNOWN


class TestUnknown:
    """Tests for UNKNOWN and PartialValue handling."""

    def test_singleton(self):
        assert type(UNKNOWN)() is UNKNOWN
        assert repr(UNKNOWN) == '(known after apply)'

    def test_is_unknown_nested(self):
        assert is_unknown(UNKNOWN)
        assert is_unknown({'a': [1, UNKNOWN]})
        assert is_unknown(PartialValue({'a': 1}))
        assert not is_unknown({'a': [1, 2]})

    def test_walk_partial_value(self):
        partial = PartialValue({'name': 'x'})
        assert walk_path(partial, ('name',)) == 'x'
        assert walk_path(partial, ('id',)) is UNKNOWN

    def test_walk_through_unknown(self):
        assert walk_path(UNKNOWN, ('a', 'b')) is UNKNOWN

    def test_walk_missing_key_raises(self):
        with pytest.raises(ExpressionError) as exc_info:
            walk_path({'a': 1}, ('b',), 'x.y.b')
        assert "no attribute 'b'" in str(exc_info.value)

    def test_walk_list_index(self):
        assert walk_path([10, 20], (1,)) == 20
        with pytest.raises(ExpressionError):
            walk_path([10, 20], (5,))
