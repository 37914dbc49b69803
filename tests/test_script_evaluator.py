"""
Tests for the safe script evaluator
"""

import pytest
from flowpilot.exceptions import ScriptError
from flowpilot.flow_engine.script_evaluator import (
    evaluate_condition,
    evaluate_expression,
    evaluate_transform,
    normalize_js_syntax,
)
from flowpilot.flow_engine.variable_resolver import VariableResolver


class TestTransforms:
    """Test transform scripts"""

    def test_arithmetic(self):
        """Test basic arithmetic on the input"""
        assert evaluate_transform('data * 2 + 1', 20) == 41

    def test_string_methods(self):
        """Test whitelisted string methods"""
        assert evaluate_transform("data.strip().upper()", '  hi ') == 'HI'
        assert evaluate_transform("', '.join(data)", ['a', 'b']) == 'a, b'

    def test_comprehension_filter(self):
        """Test list comprehension with a condition"""
        items = [{'id': 1, 'active': True}, {'id': 2, 'active': False}, {'id': 3, 'active': True}]

        assert evaluate_transform("[i['id'] for i in data if i['active']]", items) == [1, 3]

    def test_dict_comprehension_and_items(self):
        """Test dict comprehension over items()"""
        result = evaluate_transform("{k: v * 10 for k, v in data.items()}", {'a': 1, 'b': 2})

        assert result == {'a': 10, 'b': 20}

    def test_builtins(self):
        """Test whitelisted builtins"""
        assert evaluate_transform('len(data)', [1, 2, 3]) == 3
        assert evaluate_transform('sum(data) / len(data)', [2, 4]) == 3
        assert evaluate_transform('sorted(data)[0]', [3, 1, 2]) == 1
        assert evaluate_transform("data.get('missing', 'default')", {}) == 'default'

    def test_conditional_expression(self):
        """Test a if cond else b"""
        assert evaluate_transform("'big' if data > 10 else 'small'", 11) == 'big'

    def test_return_prefix_and_js_literals(self):
        """Test JavaScript style bodies are accepted"""
        assert evaluate_transform('return data === null;', None) is True
        assert evaluate_transform('data !== 1 && true', 2) is True

    def test_slices(self):
        """Test slicing"""
        assert evaluate_transform('data[:2]', [1, 2, 3]) == [1, 2]

    @pytest.mark.parametrize('script', [
        '__import__("os")',
        'data.__class__',
        'open("/etc/passwd")',
        'eval("1")',
        '(lambda: 1)()',
        'data.pop()',
        'globals()',
        '[x for x in range(10 ** 9)]',
        '2 ** 100000',
        "'a' * 10 ** 7",
    ])
    def test_rejected(self, script):
        """Test disallowed constructs raise ScriptError"""
        with pytest.raises(ScriptError):
            evaluate_transform(script, [1])

    def test_runtime_error_wrapped(self):
        """Test runtime errors become ScriptError"""
        with pytest.raises(ScriptError):
            evaluate_transform('data / 0', 1)

    def test_syntax_error(self):
        """Test syntax errors become ScriptError"""
        with pytest.raises(ScriptError):
            evaluate_transform('data +', 1)

    def test_empty_script(self):
        """Test empty script is rejected"""
        with pytest.raises(ScriptError):
            evaluate_transform('   ', 1)

    def test_only_data_in_scope(self):
        """Test no other names are reachable"""
        with pytest.raises(ScriptError):
            evaluate_transform('os', 1)


class TestConditions:
    """Test condition expressions with placeholders"""

    def test_placeholders_bound_with_type(self, context):
        """Test placeholders are bound as values, not pasted as text"""
        resolver = VariableResolver(context)

        assert evaluate_condition('{{fetch.result.status}} === 200', resolver) is True
        assert evaluate_condition("{{vars.name}} == 'John' && {{fetch.result.body.total}} > 20", resolver) is True

    def test_string_values_cannot_inject(self, context):
        """Test a resolved string is data, not code"""
        context.vars['evil'] = "1 or __import__('os')"
        resolver = VariableResolver(context)

        assert evaluate_condition("{{vars.evil}} == 'x'", resolver) is False

    def test_unresolved_is_none(self, context):
        """Test unresolved placeholders bind as None"""
        resolver = VariableResolver(context)

        assert evaluate_condition('{{vars.missing}} == null', resolver) is True

    def test_not_operator(self, context):
        """Test ! maps to not"""
        resolver = VariableResolver(context)

        assert evaluate_condition('!{{fetch.result.body.active}}', resolver) is False

    def test_membership(self, context):
        """Test in operator against a list"""
        resolver = VariableResolver(context)

        assert evaluate_condition("'vip' in {{fetch.result.body.contact.tags}}", resolver) is True

    def test_placeholder_inside_quotes(self, context):
        """Test a quoted placeholder compares as the value's text"""
        resolver = VariableResolver(context)

        assert evaluate_condition('"{{vars.name}}" == "John"', resolver) is True
        assert evaluate_condition("'{{fetch.result.status}}' === '200'", resolver) is True
        assert evaluate_condition('"Hi {{vars.name}}!" == "Hi John!"', resolver) is True
        assert evaluate_condition('"{{vars.missing}}" == ""', resolver) is True

    def test_quoted_value_cannot_break_out(self, context):
        """Test quotes in a value interpolated into a literal stay data"""
        context.vars['evil'] = 'x" or "1'
        resolver = VariableResolver(context)

        assert evaluate_condition('"{{vars.evil}}" == "x"', resolver) is False


class TestNormalizeJsSyntax:
    """Test JavaScript operator mapping"""

    def test_operators(self):
        """Test operators are mapped outside strings"""
        assert evaluate_expression(normalize_js_syntax('1 === 1 && !false'), {}) is True

    def test_string_literals_untouched(self):
        """Test operators inside string literals are preserved"""
        assert normalize_js_syntax("x == 'a && b!'") == "x == 'a && b!'"
